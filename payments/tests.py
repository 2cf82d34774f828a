import base64
import threading
from decimal import Decimal
from unittest.mock import patch

import requests
from django.test import SimpleTestCase

from orders.services import create_order

from . import store
from .integrations.mpesa import (
    AccessToken, AuthenticationError, AuthFailure, BadRequest, GatewayUnavailable, InitiateResult,
    MpesaClient, NetworkError, RateLimited, StatusResult, TokenCache,
)
from .utils import InvalidPaymentInput, gateway_amount, normalize_msisdn, stk_password


# ---------- shared fixtures ----------
class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class StaticTokens:
    """Token cache stand-in that hands out numbered tokens."""

    def __init__(self):
        self.issued = 0
        self.invalidated = []
        self._token = None

    def get_token(self):
        if self._token is None:
            self.issued += 1
            self._token = AccessToken(value=f"tok{self.issued}", expires_at=10 ** 9)
        return self._token

    def invalidate(self, token=None):
        self.invalidated.append(token)
        self._token = None


class FakeGateway:
    """Stands in for MpesaClient in service-level tests."""

    def __init__(self, initiate_results=None, initiate_error=None, statuses=None):
        self.initiate_results = list(initiate_results or [InitiateResult("ws_MR_1", "ws_CO_1")])
        self.initiate_error = initiate_error
        self.statuses = list(statuses or [])
        self.initiate_calls = []
        self.query_calls = []

    def initiate(self, phone, amount, account_reference, description):
        self.initiate_calls.append({"phone": phone, "amount": amount, "account_reference": account_reference})
        if self.initiate_error:
            raise self.initiate_error
        return self.initiate_results.pop(0)

    def query_status(self, checkout_request_id):
        self.query_calls.append(checkout_request_id)
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item


def pending_status(checkout="ws_CO_1"):
    return StatusResult(checkout, "500.001.1001", "The transaction is being processed")


def final_status(code, desc, checkout="ws_CO_1"):
    return StatusResult(checkout, code, desc, raw={"ResultCode": code, "ResultDesc": desc})


def make_order(total_items=None, phone="0712345678"):
    items = total_items or [
        {"menu_item_id": "m1", "name": "Chapati", "quantity": 2, "unit_price": Decimal("30.00")},
        {"menu_item_id": "m2", "name": "Beans", "quantity": 3, "unit_price": Decimal("90.00")},
    ]
    return create_order(items=items, phone_number=phone)


def processing_attempt(order, merchant="ws_MR_1", checkout="ws_CO_1"):
    attempt = store.claim(order, phone_number="254712345678", amount=order.total_amount)
    store.mark_processing(attempt, merchant_request_id=merchant, checkout_request_id=checkout)
    attempt.refresh_from_db()
    return attempt


# ---------- utils ----------
class NormalizeMsisdnTests(SimpleTestCase):
    def test_local_and_international_forms_match(self):
        self.assertEqual(normalize_msisdn("0712345678"), normalize_msisdn("254712345678"))
        self.assertEqual(normalize_msisdn("0712345678"), "254712345678")

    def test_plus_spaces_and_bare_subscriber_number(self):
        self.assertEqual(normalize_msisdn("+254 712 345 678"), "254712345678")
        self.assertEqual(normalize_msisdn("712-345-678"), "254712345678")
        self.assertEqual(normalize_msisdn("0110345678"), "254110345678")

    def test_rejects_non_kenyan_mobile(self):
        for bad in ("", "12345", "0212345678", "447712345678"):
            with self.subTest(bad=bad), self.assertRaises(InvalidPaymentInput):
                normalize_msisdn(bad)


class GatewayAmountTests(SimpleTestCase):
    def test_rounds_half_up_to_whole_units(self):
        self.assertEqual(gateway_amount(Decimal("330.00")), 330)
        self.assertEqual(gateway_amount("329.50"), 330)
        self.assertEqual(gateway_amount("329.49"), 329)

    def test_rejects_amounts_below_one(self):
        with self.assertRaises(InvalidPaymentInput):
            gateway_amount("0.40")
        with self.assertRaises(InvalidPaymentInput):
            gateway_amount("abc")


class StkPasswordTests(SimpleTestCase):
    def test_password_is_base64_of_shortcode_passkey_timestamp(self):
        pwd = stk_password("174379", "pk", "20240101120000")
        self.assertEqual(base64.b64decode(pwd).decode(), "174379pk20240101120000")


# ---------- token cache ----------
def token_response(value="abc", expires_in="3599"):
    return FakeResponse(200, {"access_token": value, "expires_in": expires_in})


class TokenCacheTests(SimpleTestCase):
    def make_cache(self, clock=None):
        return TokenCache(base_url="https://sandbox.example.com", consumer_key="k", consumer_secret="s",
                          margin=300, clock=clock or FakeClock())

    def test_token_cached_until_margin(self):
        clock = FakeClock()
        cache = self.make_cache(clock)
        with patch("payments.integrations.mpesa.requests.get",
                   side_effect=[token_response("t1"), token_response("t2")]) as get:
            self.assertEqual(cache.get_token().value, "t1")
            clock.advance(3599 - 301)
            self.assertEqual(cache.get_token().value, "t1")
            clock.advance(2)  # now inside the safety margin
            self.assertEqual(cache.get_token().value, "t2")
        self.assertEqual(get.call_count, 2)
        self.assertEqual(get.call_args.kwargs["auth"], ("k", "s"))

    def test_auth_error_raises_authentication_error(self):
        cache = self.make_cache()
        with patch("payments.integrations.mpesa.requests.get", return_value=FakeResponse(400, {"errorMessage": "bad"})):
            with self.assertRaises(AuthenticationError):
                cache.get_token()

    def test_unreachable_endpoint_raises_authentication_error(self):
        cache = self.make_cache()
        with patch("payments.integrations.mpesa.requests.get", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(AuthenticationError):
                cache.get_token()

    def test_missing_credentials(self):
        cache = TokenCache(base_url="https://x", consumer_key="", consumer_secret="")
        with self.assertRaises(AuthenticationError):
            cache.get_token()

    def test_invalidate_only_drops_matching_token(self):
        cache = self.make_cache()
        with patch("payments.integrations.mpesa.requests.get", side_effect=[token_response("t1"), token_response("t2")]):
            old = cache.get_token()
            cache.invalidate(AccessToken("other", 0))
            self.assertEqual(cache.get_token(), old)
            cache.invalidate(old)
            self.assertEqual(cache.get_token().value, "t2")

    def test_concurrent_callers_share_one_request(self):
        cache = self.make_cache()
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_get(*args, **kwargs):
            calls.append(1)
            started.set()
            release.wait(5)
            return token_response("shared")

        results = []

        def worker():
            results.append(cache.get_token().value)

        with patch("payments.integrations.mpesa.requests.get", side_effect=slow_get):
            leader = threading.Thread(target=worker)
            leader.start()
            self.assertTrue(started.wait(5))
            followers = [threading.Thread(target=worker) for _ in range(5)]
            for t in followers:
                t.start()
            release.set()
            for t in [leader, *followers]:
                t.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(results, ["shared"] * 6)


# ---------- client ----------
class MpesaClientTests(SimpleTestCase):
    def setUp(self):
        self.tokens = StaticTokens()
        self.sleeps = []
        self.client = MpesaClient(
            base_url="https://sandbox.example.com", shortcode="174379", passkey="pk",
            callback_url="https://example.com/payments/callback", token_cache=self.tokens,
            max_attempts=3, backoff=0.5, sleep=self.sleeps.append,
        )

    def accepted(self, merchant="ws_MR_1", checkout="ws_CO_1"):
        return FakeResponse(200, {
            "MerchantRequestID": merchant, "CheckoutRequestID": checkout,
            "ResponseCode": "0", "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        })

    def test_initiate_builds_gateway_payload(self):
        with patch("payments.integrations.mpesa.requests.post", return_value=self.accepted()) as post:
            result = self.client.initiate("0712345678", Decimal("330.00"), "ORD-20240101-0001", "Order ORD-1")

        self.assertEqual(result.checkout_request_id, "ws_CO_1")
        self.assertEqual(result.merchant_request_id, "ws_MR_1")
        payload = post.call_args.kwargs["json"]
        self.assertEqual(payload["PhoneNumber"], "254712345678")
        self.assertEqual(payload["PartyA"], "254712345678")
        self.assertEqual(payload["Amount"], 330)
        self.assertEqual(payload["TransactionType"], "CustomerPayBillOnline")
        self.assertEqual(payload["CallBackURL"], "https://example.com/payments/callback")
        self.assertEqual(len(payload["Timestamp"]), 14)
        decoded = base64.b64decode(payload["Password"]).decode()
        self.assertEqual(decoded, "174379pk" + payload["Timestamp"])
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer tok1")

    def test_local_and_international_phone_send_same_number(self):
        with patch("payments.integrations.mpesa.requests.post", return_value=self.accepted()) as post:
            self.client.initiate("0712345678", 330, "ORD", "d")
            self.client.initiate("254712345678", 330, "ORD", "d")
        first, second = (c.kwargs["json"]["PhoneNumber"] for c in post.call_args_list)
        self.assertEqual(first, second)

    def test_password_regenerated_per_call(self):
        with patch("payments.integrations.mpesa.requests.post", return_value=self.accepted()) as post, \
                patch("payments.integrations.mpesa.gateway_timestamp",
                      side_effect=["20240101120000", "20240101120005"]):
            self.client.initiate("0712345678", 330, "ORD", "d")
            self.client.initiate("0712345678", 330, "ORD", "d")
        passwords = [c.kwargs["json"]["Password"] for c in post.call_args_list]
        self.assertNotEqual(passwords[0], passwords[1])

    def test_invalid_phone_is_bad_request_without_calling_gateway(self):
        with patch("payments.integrations.mpesa.requests.post") as post:
            with self.assertRaises(BadRequest):
                self.client.initiate("12345", 330, "ORD", "d")
        post.assert_not_called()

    def test_5xx_retried_with_backoff(self):
        with patch("payments.integrations.mpesa.requests.post",
                   side_effect=[FakeResponse(503, {}), FakeResponse(500, {}), self.accepted()]) as post:
            result = self.client.initiate("0712345678", 330, "ORD", "d")
        self.assertEqual(result.checkout_request_id, "ws_CO_1")
        self.assertEqual(post.call_count, 3)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_5xx_exhausted_raises_gateway_unavailable(self):
        with patch("payments.integrations.mpesa.requests.post", return_value=FakeResponse(503, {})) as post:
            with self.assertRaises(GatewayUnavailable) as cm:
                self.client.initiate("0712345678", 330, "ORD", "d")
        self.assertEqual(post.call_count, 3)
        self.assertTrue(cm.exception.retryable)

    def test_connection_errors_exhausted_raise_network_error(self):
        with patch("payments.integrations.mpesa.requests.post", side_effect=requests.ConnectionError("reset")) as post:
            with self.assertRaises(NetworkError):
                self.client.initiate("0712345678", 330, "ORD", "d")
        self.assertEqual(post.call_count, 3)

    def test_timeout_then_success(self):
        with patch("payments.integrations.mpesa.requests.post",
                   side_effect=[requests.Timeout("slow"), self.accepted()]) as post:
            self.client.initiate("0712345678", 330, "ORD", "d")
        self.assertEqual(post.call_count, 2)

    def test_4xx_not_retried(self):
        body = {"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"}
        with patch("payments.integrations.mpesa.requests.post", return_value=FakeResponse(400, body)) as post:
            with self.assertRaises(BadRequest) as cm:
                self.client.initiate("0712345678", 330, "ORD", "d")
        self.assertEqual(post.call_count, 1)
        self.assertEqual(cm.exception.error_code, "400.002.02")
        self.assertFalse(cm.exception.retryable)

    def test_429_is_rate_limited(self):
        with patch("payments.integrations.mpesa.requests.post", return_value=FakeResponse(429, {})) as post:
            with self.assertRaises(RateLimited):
                self.client.initiate("0712345678", 330, "ORD", "d")
        self.assertEqual(post.call_count, 1)

    def test_single_401_refreshes_token_and_retries_once(self):
        with patch("payments.integrations.mpesa.requests.post",
                   side_effect=[FakeResponse(401, {}), self.accepted()]) as post:
            self.client.initiate("0712345678", 330, "ORD", "d")
        self.assertEqual(post.call_count, 2)
        self.assertEqual(len(self.tokens.invalidated), 1)
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer tok2")

    def test_repeated_401_is_auth_failure(self):
        with patch("payments.integrations.mpesa.requests.post", return_value=FakeResponse(401, {})) as post:
            with self.assertRaises(AuthFailure):
                self.client.initiate("0712345678", 330, "ORD", "d")
        self.assertEqual(post.call_count, 2)

    def test_non_zero_response_code_is_bad_request(self):
        body = {"ResponseCode": "1", "ResponseDescription": "Rejected"}
        with patch("payments.integrations.mpesa.requests.post", return_value=FakeResponse(200, body)):
            with self.assertRaises(BadRequest):
                self.client.initiate("0712345678", 330, "ORD", "d")

    def test_query_still_processing_is_pending_and_not_retried(self):
        body = {"requestId": "1", "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}
        with patch("payments.integrations.mpesa.requests.post", return_value=FakeResponse(500, body)) as post:
            result = self.client.query_status("ws_CO_1")
        self.assertTrue(result.is_pending)
        self.assertEqual(post.call_count, 1)
        self.assertEqual(post.call_args.kwargs["json"]["CheckoutRequestID"], "ws_CO_1")

    def test_query_final_results(self):
        ok = {"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "The service request is processed successfully."}
        cancelled = {"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"}
        with patch("payments.integrations.mpesa.requests.post",
                   side_effect=[FakeResponse(200, ok), FakeResponse(200, cancelled)]):
            first = self.client.query_status("ws_CO_1")
            second = self.client.query_status("ws_CO_1")
        self.assertTrue(first.is_success)
        self.assertFalse(second.is_pending)
        self.assertFalse(second.is_success)
        self.assertEqual(second.result_code, "1032")

