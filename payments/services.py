import logging
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError

from orders.models import Order

from . import store
from .exceptions import (
    AmountMismatch, OrderAlreadyPaid, OrderNotFound, PaymentNotCancellable,
)
from .integrations.mpesa import BadRequest, MpesaClient, MpesaError
from .models import PaymentAttempt
from .utils import InvalidPaymentInput, normalize_msisdn

logger = logging.getLogger(__name__)


def get_order(order_id) -> Order:
    try:
        return Order.objects.get(pk=order_id)
    except (Order.DoesNotExist, ValidationError, ValueError):
        raise OrderNotFound("Order not found")


def current_attempt(order) -> PaymentAttempt | None:
    return order.payment_attempts.order_by("-created_at").first()


def initiate_payment(order_id, phone=None, amount=None, client=None) -> PaymentAttempt:
    """Start an STK Push for ``order_id`` and return the attempt.

    On success the attempt is PROCESSING and carries the checkout request id
    the caller can poll with. Gateway failures mark the attempt FAILED and are
    re-raised so the user can be offered a retry.
    """
    order = get_order(order_id)
    if order.is_paid:
        raise OrderAlreadyPaid("Order has already been paid")
    if amount is not None:
        try:
            matches = Decimal(str(amount)) == order.total_amount
        except (InvalidOperation, ValueError):
            matches = False
        if not matches:
            raise AmountMismatch("Amount does not match the order total")
    try:
        msisdn = normalize_msisdn(phone or order.phone_number)
    except InvalidPaymentInput as e:
        raise BadRequest(str(e)) from e

    attempt = store.claim(order, phone_number=msisdn, amount=order.total_amount)
    client = client or MpesaClient.from_settings()
    try:
        result = client.initiate(
            msisdn,
            order.total_amount,
            account_reference=order.order_number,
            description=f"Order {order.order_number}",
        )
    except MpesaError as e:
        logger.warning("STK push failed for order %s attempt %s: %s (%s)",
                       order.order_number, attempt.pk, e, e.__class__.__name__)
        store.mark_initiate_failed(attempt, result_code=e.error_code or "", result_desc=str(e))
        raise
    except Exception:
        logger.exception("STK push crashed for order %s attempt %s", order.order_number, attempt.pk)
        store.mark_initiate_failed(attempt, result_desc="Internal error while initiating payment")
        raise

    if not store.mark_processing(
        attempt,
        merchant_request_id=result.merchant_request_id,
        checkout_request_id=result.checkout_request_id,
    ):
        # expired by reconcile while the request was in flight; the payer may still pay
        store.attach_late_ids(
            attempt,
            merchant_request_id=result.merchant_request_id,
            checkout_request_id=result.checkout_request_id,
        )
        logger.error("Attempt %s expired before the gateway accepted it (checkout %s)",
                     attempt.pk, result.checkout_request_id)
    attempt.refresh_from_db()
    return attempt


def cancel_payment(order_id) -> PaymentAttempt:
    order = get_order(order_id)
    attempt = current_attempt(order)
    if attempt is None or attempt.status != PaymentAttempt.Status.PROCESSING:
        raise PaymentNotCancellable("No payment in progress to cancel")
    if not store.cancel(attempt):
        attempt.refresh_from_db()
        raise PaymentNotCancellable(f"Payment already {attempt.get_status_display().lower()}")
    logger.info("Payment attempt %s for order %s cancelled by user", attempt.pk, order.order_number)
    attempt.refresh_from_db()
    return attempt


def payment_status(order_id) -> dict:
    """Read-only projection of the order's current attempt."""
    order = get_order(order_id)
    attempt = current_attempt(order)
    data = {
        "order_id": str(order.pk),
        "order_number": order.order_number,
        "status": attempt.status if attempt else order.payment_status,
        "amount": str(order.total_amount),
    }
    if attempt is None:
        return data
    data["attempt_id"] = str(attempt.pk)
    data["checkout_request_id"] = attempt.checkout_request_id
    if attempt.status == PaymentAttempt.Status.COMPLETED:
        data["receipt_id"] = attempt.receipt_number
    elif attempt.status == PaymentAttempt.Status.FAILED:
        data["failure_reason"] = attempt.failure_reason
        if attempt.failure_reason == PaymentAttempt.FailureReason.REJECTED:
            data["result_desc"] = attempt.result_desc
    return data
