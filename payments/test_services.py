import json
import threading
import time
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core import mail
from django.core.management import call_command
from django.db import OperationalError, connections
from django.test import TestCase, TransactionTestCase
from django.urls import reverse

from orders.models import Order

from . import store
from .callbacks import ANOMALY, handle_callback
from .exceptions import (
    AmountMismatch, OrderAlreadyPaid, OrderNotFound, PaymentInProgress, PaymentNotCancellable,
)
from .integrations.mpesa import (
    BadRequest, GatewayUnavailable, InitiateResult, NetworkError, clear_token_caches, initiate_deadline,
)
from .models import PaymentAnomaly, PaymentAttempt
from .poller import StatusPoller
from .services import cancel_payment, initiate_payment, payment_status
from .test_webhook import SUCCESS_ITEMS, stk_callback
from .tests import FakeClock, FakeGateway, FakeResponse, final_status, make_order, pending_status, processing_attempt


class InitiatePaymentTests(TestCase):
    def setUp(self):
        self.order = make_order()

    def test_success_moves_attempt_to_processing(self):
        gateway = FakeGateway()
        attempt = initiate_payment(self.order.pk, client=gateway)
        self.order.refresh_from_db()

        self.assertEqual(attempt.status, PaymentAttempt.Status.PROCESSING)
        self.assertEqual(attempt.merchant_request_id, "ws_MR_1")
        self.assertEqual(attempt.checkout_request_id, "ws_CO_1")
        self.assertEqual(attempt.phone_number, "254712345678")
        self.assertEqual(attempt.amount, Decimal("330.00"))
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PROCESSING)
        self.assertEqual(gateway.initiate_calls[0]["account_reference"], self.order.order_number)

    def test_gateway_failure_marks_attempt_failed_and_propagates(self):
        gateway = FakeGateway(initiate_error=GatewayUnavailable("Service Unavailable", status_code=503))
        with self.assertRaises(GatewayUnavailable):
            initiate_payment(self.order.pk, client=gateway)

        attempt = PaymentAttempt.objects.get()
        self.order.refresh_from_db()
        self.assertEqual(attempt.status, PaymentAttempt.Status.FAILED)
        self.assertEqual(attempt.failure_reason, PaymentAttempt.FailureReason.INITIATE_FAILED)
        self.assertEqual(attempt.result_desc, "Service Unavailable")
        self.assertIsNone(attempt.checkout_request_id)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.FAILED)

        # the order can be retried with a fresh attempt
        retry = initiate_payment(self.order.pk, client=FakeGateway())
        self.assertEqual(retry.status, PaymentAttempt.Status.PROCESSING)
        self.assertEqual(PaymentAttempt.objects.count(), 2)

    def test_rejects_second_attempt_while_one_is_active(self):
        initiate_payment(self.order.pk, client=FakeGateway())
        gateway = FakeGateway()
        with self.assertRaises(PaymentInProgress):
            initiate_payment(self.order.pk, client=gateway)
        self.assertEqual(gateway.initiate_calls, [])
        self.assertEqual(PaymentAttempt.objects.count(), 1)

    def test_rejects_paid_order(self):
        attempt = initiate_payment(self.order.pk, client=FakeGateway())
        store.complete(attempt, receipt_number="ABC123")
        with self.assertRaises(OrderAlreadyPaid):
            initiate_payment(self.order.pk, client=FakeGateway())

    def test_rejects_amount_that_differs_from_total(self):
        with self.assertRaises(AmountMismatch):
            initiate_payment(self.order.pk, amount="300", client=FakeGateway())
        initiate_payment(self.order.pk, amount="330.00", client=FakeGateway())

    def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            initiate_payment("00000000-0000-0000-0000-000000000000", client=FakeGateway())
        with self.assertRaises(OrderNotFound):
            initiate_payment("not-a-uuid", client=FakeGateway())

    def test_invalid_phone_creates_no_attempt(self):
        with self.assertRaises(BadRequest):
            initiate_payment(self.order.pk, phone="12345", client=FakeGateway())
        self.assertFalse(PaymentAttempt.objects.exists())

    def test_attempt_expired_during_initiate_keeps_gateway_ids(self):
        class SlowGateway(FakeGateway):
            # reconcile releases the attempt while the STK push is still in flight
            def initiate(self, *args, **kwargs):
                store.expire_pending(PaymentAttempt.objects.get(), result_desc="stuck")
                return super().initiate(*args, **kwargs)

        attempt = initiate_payment(self.order.pk, client=SlowGateway())
        self.assertEqual(attempt.status, PaymentAttempt.Status.FAILED)
        self.assertEqual(attempt.checkout_request_id, "ws_CO_1")

        # the payer completes the prompt anyway; the late callback is flagged, not lost
        self.assertEqual(handle_callback(stk_callback(items=SUCCESS_ITEMS)).outcome, ANOMALY)
        self.assertTrue(attempt.anomalies.filter(kind=PaymentAnomaly.Kind.SUCCESS_AFTER_FAILURE).exists())


class CancelPaymentTests(TestCase):
    def test_cancel_processing_attempt(self):
        order = make_order()
        processing_attempt(order)
        attempt = cancel_payment(order.pk)
        order.refresh_from_db()
        self.assertEqual(attempt.status, PaymentAttempt.Status.CANCELLED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.CANCELLED)

    def test_cannot_cancel_completed_or_missing_attempt(self):
        order = make_order()
        with self.assertRaises(PaymentNotCancellable):
            cancel_payment(order.pk)
        attempt = processing_attempt(order)
        store.complete(attempt, receipt_number="ABC123")
        with self.assertRaises(PaymentNotCancellable):
            cancel_payment(order.pk)


class StateStoreTests(TestCase):
    def setUp(self):
        self.attempt = processing_attempt(make_order())

    def test_first_writer_wins_success_then_failure(self):
        # two stale copies, as a callback handler and a poller would hold
        from_callback = PaymentAttempt.objects.get(pk=self.attempt.pk)
        from_poller = PaymentAttempt.objects.get(pk=self.attempt.pk)

        self.assertTrue(store.complete(from_callback, receipt_number="ABC123"))
        self.assertFalse(store.fail(from_poller, reason="rejected", result_code="1", result_desc="x"))

        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.COMPLETED)
        self.assertEqual(self.attempt.receipt_number, "ABC123")

    def test_first_writer_wins_failure_then_success(self):
        self.assertTrue(store.fail(self.attempt, reason="rejected", result_code="1", result_desc="x"))
        self.assertFalse(store.complete(self.attempt, receipt_number="ABC123"))
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.FAILED)
        self.assertEqual(self.attempt.receipt_number, "")

    def test_no_transition_out_of_terminal_state(self):
        self.assertTrue(store.cancel(self.attempt))
        self.assertFalse(store.complete(self.attempt, receipt_number="R"))
        self.assertFalse(store.fail(self.attempt, reason="timeout"))
        self.assertFalse(store.mark_processing(self.attempt, merchant_request_id="a", checkout_request_id="b"))
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.CANCELLED)

    def test_claim_blocked_by_active_attempt(self):
        with self.assertRaises(PaymentInProgress):
            store.claim(self.attempt.order, phone_number="254712345678", amount=Decimal("330.00"))


class StatusPollerTests(TestCase):
    def setUp(self):
        self.order = make_order()
        self.attempt = processing_attempt(self.order)
        self.sleeps = []

    def poller(self, gateway, **kwargs):
        kwargs.setdefault("interval", 2)
        kwargs.setdefault("max_attempts", 10)
        kwargs.setdefault("window", 120)
        return StatusPoller(gateway, sleep=self.sleeps.append, clock=kwargs.pop("clock", FakeClock()), **kwargs)

    def test_pending_then_success(self):
        gateway = FakeGateway(statuses=[pending_status(), pending_status(), final_status("0", "processed")])
        status = self.poller(gateway).poll_until_resolved(self.attempt.pk)
        self.assertEqual(status, PaymentAttempt.Status.COMPLETED)
        self.assertEqual(len(gateway.query_calls), 3)
        self.assertEqual(self.sleeps, [2, 2])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.COMPLETED)

    def test_other_result_code_fails(self):
        gateway = FakeGateway(statuses=[final_status("1032", "Request cancelled by user")])
        status = self.poller(gateway).poll_until_resolved(self.attempt.pk)
        self.attempt.refresh_from_db()
        self.assertEqual(status, PaymentAttempt.Status.FAILED)
        self.assertEqual(self.attempt.failure_reason, PaymentAttempt.FailureReason.REJECTED)
        self.assertEqual(self.attempt.result_desc, "Request cancelled by user")

    def test_timeout_after_max_attempts_frees_order(self):
        gateway = FakeGateway(statuses=[pending_status()])
        status = self.poller(gateway, max_attempts=3).poll_until_resolved(self.attempt.pk)
        self.attempt.refresh_from_db()
        self.assertEqual(status, PaymentAttempt.Status.FAILED)
        self.assertEqual(self.attempt.failure_reason, PaymentAttempt.FailureReason.TIMEOUT)
        self.assertEqual(len(gateway.query_calls), 3)

        retry = initiate_payment(self.order.pk, client=FakeGateway([InitiateResult("ws_MR_2", "ws_CO_2")]))
        self.assertEqual(retry.status, PaymentAttempt.Status.PROCESSING)
        self.assertEqual(retry.checkout_request_id, "ws_CO_2")
        self.assertNotEqual(retry.pk, self.attempt.pk)

    def test_timeout_after_wall_clock_window(self):
        clock = FakeClock()
        gateway = FakeGateway(statuses=[pending_status()])
        poller = self.poller(gateway, clock=clock, window=5, max_attempts=100)
        poller.sleep = lambda seconds: clock.advance(seconds)
        status = poller.poll_until_resolved(self.attempt.pk)
        self.assertEqual(status, PaymentAttempt.Status.FAILED)
        self.assertEqual(len(gateway.query_calls), 4)  # t=0, 2, 4, 6

    def test_gateway_errors_are_inconclusive(self):
        gateway = FakeGateway(statuses=[NetworkError("down"), GatewayUnavailable("503"), final_status("0", "ok")])
        status = self.poller(gateway).poll_until_resolved(self.attempt.pk)
        self.assertEqual(status, PaymentAttempt.Status.COMPLETED)
        self.assertEqual(len(gateway.query_calls), 3)

    def test_stops_when_callback_resolved_first(self):
        store.complete(self.attempt, receipt_number="ABC123")
        gateway = FakeGateway(statuses=[final_status("1", "insufficient funds")])
        status = self.poller(gateway).poll_until_resolved(self.attempt.pk)
        self.assertEqual(status, PaymentAttempt.Status.COMPLETED)
        self.assertEqual(gateway.query_calls, [])

    def test_poll_result_loses_to_earlier_callback(self):
        gateway = FakeGateway(statuses=[final_status("1", "insufficient funds")])
        poller = self.poller(gateway)
        stale = PaymentAttempt.objects.get(pk=self.attempt.pk)
        store.complete(self.attempt, receipt_number="ABC123")
        self.assertTrue(poller.poll_once(stale))
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.COMPLETED)

    def test_success_reported_after_cancel_is_flagged(self):
        gateway = FakeGateway(statuses=[final_status("0", "processed")])
        poller = self.poller(gateway)
        first = PaymentAttempt.objects.get(pk=self.attempt.pk)
        second = PaymentAttempt.objects.get(pk=self.attempt.pk)
        cancel_payment(self.order.pk)

        self.assertTrue(poller.poll_once(first))
        self.assertTrue(poller.poll_once(second))

        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.CANCELLED)
        anomalies = PaymentAnomaly.objects.filter(attempt=self.attempt)
        self.assertEqual(list(anomalies.values_list("kind", flat=True)),
                         [PaymentAnomaly.Kind.SUCCESS_AFTER_CANCEL])
        self.assertEqual(len(mail.outbox), 1)

    def test_stale_pending_attempt_is_released(self):
        order = make_order()
        stuck = store.claim(order, phone_number="254712345678", amount=order.total_amount)
        PaymentAttempt.objects.filter(pk=stuck.pk).update(created_at=stuck.created_at.replace(year=2000))
        gateway = FakeGateway(statuses=[pending_status()])

        status = self.poller(gateway, max_attempts=2).poll_until_resolved(stuck.pk)

        stuck.refresh_from_db()
        self.assertEqual(status, PaymentAttempt.Status.FAILED)
        self.assertEqual(stuck.failure_reason, PaymentAttempt.FailureReason.INITIATE_FAILED)
        self.assertEqual(gateway.query_calls, [])
        retry = initiate_payment(order.pk, client=FakeGateway([InitiateResult("ws_MR_2", "ws_CO_2")]))
        self.assertEqual(retry.status, PaymentAttempt.Status.PROCESSING)

    def test_recent_pending_attempt_is_left_alone(self):
        order = make_order()
        attempt = store.claim(order, phone_number="254712345678", amount=order.total_amount)
        status = self.poller(FakeGateway(statuses=[pending_status()]), max_attempts=1).poll_until_resolved(attempt.pk)
        self.assertEqual(status, PaymentAttempt.Status.PENDING)

    def test_pending_grace_covers_worst_case_initiate(self):
        config = {"TIMEOUT": 30, "MAX_ATTEMPTS": 3, "BACKOFF": 0.5}
        # three timed-out posts, two token fetches, one post after a 401, and 0.5 + 1.0 backoff
        self.assertEqual(initiate_deadline(config), 181.5)


@patch("payments.services.MpesaClient.from_settings")
class PaymentViewsTests(TestCase):
    def setUp(self):
        self.order = make_order()

    def _initiate(self, body=None):
        return self.client.post(
            reverse("payments:initiate", kwargs={"order_id": self.order.pk}),
            data=json.dumps(body or {}),
            content_type="application/json",
        )

    def test_initiate_returns_checkout_id(self, from_settings):
        from_settings.return_value = FakeGateway()
        resp = self._initiate({"phone": "0712345678"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["checkout_request_id"], "ws_CO_1")
        self.assertEqual(resp.json()["status"], "PROCESSING")

    def test_initiate_twice_conflicts(self, from_settings):
        from_settings.side_effect = lambda: FakeGateway()
        self._initiate()
        resp = self._initiate()
        self.assertEqual(resp.status_code, 409)

    def test_gateway_error_hides_raw_payload(self, from_settings):
        from_settings.return_value = FakeGateway(
            initiate_error=NetworkError("Gateway request failed: ConnectionError consumer_secret=abc"))
        resp = self._initiate()
        self.assertEqual(resp.status_code, 503)
        self.assertTrue(resp.json()["retryable"])
        self.assertNotIn("consumer_secret", resp.content.decode())

    def test_unknown_order_404(self, from_settings):
        resp = self.client.get(reverse("payments:status", kwargs={"order_id": "00000000-0000-0000-0000-000000000000"}))
        self.assertEqual(resp.status_code, 404)

    def test_status_and_cancel(self, from_settings):
        from_settings.return_value = FakeGateway()
        self._initiate()
        status_url = reverse("payments:status", kwargs={"order_id": self.order.pk})
        self.assertEqual(self.client.get(status_url).json()["status"], "PROCESSING")

        resp = self.client.post(reverse("payments:cancel", kwargs={"order_id": self.order.pk}))
        self.assertEqual(resp.json(), {"ok": True, "status": "CANCELLED"})
        self.assertEqual(self.client.post(reverse("payments:cancel", kwargs={"order_id": self.order.pk})).status_code, 409)

    def test_status_reports_timeout_reason(self, from_settings):
        attempt = processing_attempt(self.order)
        store.fail(attempt, reason=PaymentAttempt.FailureReason.TIMEOUT, result_desc="no answer")
        data = payment_status(self.order.pk)
        self.assertEqual(data["status"], "FAILED")
        self.assertEqual(data["failure_reason"], "timeout")


class EndToEndTests(TestCase):
    """Full flow through the real client with the HTTP layer stubbed."""

    def setUp(self):
        clear_token_caches()
        self.order = make_order()
        self.assertEqual(self.order.total_amount, Decimal("330.00"))

    def tearDown(self):
        clear_token_caches()

    def _run_initiate(self):
        accepted = FakeResponse(200, {
            "MerchantRequestID": "ws_MR_1", "CheckoutRequestID": "ws_CO_1",
            "ResponseCode": "0", "ResponseDescription": "Success. Request accepted for processing",
        })
        with patch("payments.integrations.mpesa.requests.get",
                   return_value=FakeResponse(200, {"access_token": "t", "expires_in": "3599"})), \
                patch("payments.integrations.mpesa.requests.post", return_value=accepted) as post:
            resp = self.client.post(
                reverse("payments:initiate", kwargs={"order_id": self.order.pk}),
                data=json.dumps({"phone": "0712345678"}),
                content_type="application/json",
            )
        self.assertEqual(post.call_args.kwargs["json"]["PhoneNumber"], "254712345678")
        self.assertEqual(post.call_args.kwargs["json"]["Amount"], 330)
        return resp

    def _callback(self, payload):
        return self.client.post(reverse("payments:mpesa_callback"), data=json.dumps(payload),
                                content_type="application/json")

    def test_paid_order(self):
        resp = self._run_initiate()
        self.assertEqual(resp.json()["checkout_request_id"], "ws_CO_1")
        self.assertEqual(PaymentAttempt.objects.get().status, PaymentAttempt.Status.PROCESSING)

        self._callback(stk_callback(items=SUCCESS_ITEMS))
        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.status, PaymentAttempt.Status.COMPLETED)
        self.assertEqual(attempt.receipt_number, "ABC123")
        status = self.client.get(reverse("payments:status", kwargs={"order_id": self.order.pk})).json()
        self.assertEqual(status["receipt_id"], "ABC123")

    def test_insufficient_funds_then_retry(self):
        self._run_initiate()
        self._callback(stk_callback(result_code=1, result_desc="insufficient funds"))
        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.status, PaymentAttempt.Status.FAILED)
        self.assertEqual(attempt.result_desc, "insufficient funds")

        retry = initiate_payment(self.order.pk, client=FakeGateway([InitiateResult("ws_MR_2", "ws_CO_2")]))
        self.assertEqual(retry.status, PaymentAttempt.Status.PROCESSING)
        self.assertEqual(retry.checkout_request_id, "ws_CO_2")


class ReconcileCommandTests(TestCase):
    def test_resolves_and_expires_processing_attempts(self):
        fresh = processing_attempt(make_order())
        stale = processing_attempt(make_order(), merchant="ws_MR_2", checkout="ws_CO_2")
        PaymentAttempt.objects.filter(pk=fresh.pk).update(updated_at=fresh.updated_at.replace(year=2000))
        PaymentAttempt.objects.filter(pk=stale.pk).update(
            created_at=stale.created_at.replace(year=2000), updated_at=stale.updated_at.replace(year=2000)
        )

        def query(checkout_request_id):
            if checkout_request_id == "ws_CO_1":
                return final_status("0", "processed")
            return pending_status(checkout_request_id)

        gateway = FakeGateway(statuses=[pending_status()])
        gateway.query_status = query
        out = StringIO()
        with patch("payments.poller.MpesaClient.from_settings", return_value=gateway):
            call_command("reconcile_mpesa_payments", "--sleep", "0", stdout=out)

        fresh.refresh_from_db()
        stale.refresh_from_db()
        self.assertEqual(fresh.status, PaymentAttempt.Status.COMPLETED)
        self.assertEqual(stale.status, PaymentAttempt.Status.FAILED)
        self.assertEqual(stale.failure_reason, PaymentAttempt.FailureReason.TIMEOUT)
        self.assertIn("resolved 1, expired 1", out.getvalue())

    def test_releases_attempt_stuck_in_pending(self):
        order = make_order()
        stuck = store.claim(order, phone_number="254712345678", amount=order.total_amount)
        recent = store.claim(make_order(), phone_number="254712345678", amount=Decimal("330.00"))
        PaymentAttempt.objects.filter(pk=stuck.pk).update(created_at=stuck.created_at.replace(year=2000))

        out = StringIO()
        with patch("payments.poller.MpesaClient.from_settings", return_value=FakeGateway()):
            call_command("reconcile_mpesa_payments", "--sleep", "0", stdout=out)

        stuck.refresh_from_db()
        recent.refresh_from_db()
        self.assertEqual(stuck.status, PaymentAttempt.Status.FAILED)
        self.assertEqual(stuck.failure_reason, PaymentAttempt.FailureReason.INITIATE_FAILED)
        self.assertEqual(recent.status, PaymentAttempt.Status.PENDING)
        self.assertIn("released 1 stuck", out.getvalue())

        retry = initiate_payment(order.pk, client=FakeGateway([InitiateResult("ws_MR_2", "ws_CO_2")]))
        self.assertEqual(retry.status, PaymentAttempt.Status.PROCESSING)


class ConcurrentTransitionTests(TransactionTestCase):
    """Callback, poller and cancel racing on separate connections."""

    def test_exactly_one_writer_wins(self):
        order = make_order()
        attempt = processing_attempt(order)
        writers = {
            PaymentAttempt.Status.COMPLETED: lambda a: store.complete(a, receipt_number="ABC123"),
            PaymentAttempt.Status.FAILED: lambda a: store.fail(
                a, reason=PaymentAttempt.FailureReason.REJECTED, result_code="1", result_desc="insufficient funds"),
            PaymentAttempt.Status.CANCELLED: store.cancel,
        }
        barrier = threading.Barrier(len(writers), timeout=10)
        results = {}

        def run(target, write):
            copy = PaymentAttempt.objects.get(pk=attempt.pk)
            barrier.wait()
            try:
                for _ in range(100):
                    try:
                        results[target] = write(copy)
                        return
                    except OperationalError:
                        # sqlite reports a locked table instead of waiting for it
                        time.sleep(0.01)
            finally:
                connections.close_all()

        threads = [threading.Thread(target=run, args=item) for item in writers.items()]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(results), len(writers))
        winners = [status for status, won in results.items() if won]
        self.assertEqual(len(winners), 1)
        attempt.refresh_from_db()
        order.refresh_from_db()
        self.assertEqual(attempt.status, winners[0])
        self.assertEqual(order.payment_status, winners[0])
