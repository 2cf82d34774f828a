"""Conditional writes for payment attempts.

Every status change is one ``UPDATE ... WHERE id = %s AND status IN (...)``.
When two writers race (a callback and a poll, or a cancel and a callback), the
database lets exactly one of them match; the loser sees ``False`` and must
treat the attempt as already resolved. The order's ``payment_status`` mirror
is written in the same transaction, and only by the winner.
"""
import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from orders.models import Order

from .exceptions import PaymentInProgress
from .models import PaymentAttempt

logger = logging.getLogger(__name__)

Status = PaymentAttempt.Status


def _transition(attempt, from_statuses, to_status, **fields) -> bool:
    now = timezone.now()
    with transaction.atomic():
        won = PaymentAttempt.objects.filter(pk=attempt.pk, status__in=from_statuses).update(
            status=to_status, updated_at=now, **fields
        )
        if won:
            Order.objects.filter(pk=attempt.order_id).update(payment_status=to_status, updated_at=now)
    if won:
        logger.info("Attempt %s: %s -> %s", attempt.pk, "/".join(from_statuses), to_status)
    else:
        logger.info("Attempt %s: %s skipped, no longer %s", attempt.pk, to_status, "/".join(from_statuses))
    return bool(won)


def claim(order, *, phone_number, amount) -> PaymentAttempt:
    """Create the order's PENDING attempt; fails if one is already active."""
    try:
        with transaction.atomic():
            attempt = PaymentAttempt.objects.create(
                order=order, phone_number=phone_number, amount=amount, status=Status.PENDING
            )
            Order.objects.filter(pk=order.pk).update(payment_status=Status.PENDING, updated_at=timezone.now())
    except IntegrityError as e:
        raise PaymentInProgress("Payment is already being processed") from e
    return attempt


def mark_processing(attempt, *, merchant_request_id, checkout_request_id) -> bool:
    # ids and status land in the same row write, so a crash cannot leave one without the other
    return _transition(
        attempt, [Status.PENDING], Status.PROCESSING,
        merchant_request_id=merchant_request_id,
        checkout_request_id=checkout_request_id,
    )


def mark_initiate_failed(attempt, *, result_code="", result_desc="") -> bool:
    return _transition(
        attempt, [Status.PENDING], Status.FAILED,
        result_code=result_code or "",
        result_desc=(result_desc or "")[:512],
        failure_reason=PaymentAttempt.FailureReason.INITIATE_FAILED,
    )


def expire_pending(attempt, *, result_desc="") -> bool:
    """Fail an attempt whose initiate request never reported back."""
    return _transition(
        attempt, [Status.PENDING], Status.FAILED,
        result_desc=(result_desc or "")[:512],
        failure_reason=PaymentAttempt.FailureReason.INITIATE_FAILED,
    )


def attach_late_ids(attempt, *, merchant_request_id, checkout_request_id) -> bool:
    """Stamp gateway ids on an attempt expired while its initiate was in flight.

    Lets a later callback find the attempt and flag the payment instead of
    treating it as unmatched. Status is left alone.
    """
    return bool(
        PaymentAttempt.objects.filter(pk=attempt.pk, checkout_request_id__isnull=True).update(
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
            updated_at=timezone.now(),
        )
    )


def complete(attempt, *, receipt_number, result_code="0", result_desc="", confirmed_amount=None,
             confirmed_phone="", raw_callback=None, query_payload=None) -> bool:
    fields = dict(
        receipt_number=receipt_number or "",
        result_code=result_code,
        result_desc=(result_desc or "")[:512],
        confirmed_amount=confirmed_amount,
        confirmed_phone=confirmed_phone or "",
    )
    if raw_callback is not None:
        fields["raw_callback"] = raw_callback
    if query_payload is not None:
        fields["last_query_payload"] = query_payload
    return _transition(attempt, [Status.PROCESSING], Status.COMPLETED, **fields)


def fail(attempt, *, reason, result_code="", result_desc="", raw_callback=None, query_payload=None) -> bool:
    fields = dict(result_code=result_code or "", result_desc=(result_desc or "")[:512], failure_reason=reason)
    if raw_callback is not None:
        fields["raw_callback"] = raw_callback
    if query_payload is not None:
        fields["last_query_payload"] = query_payload
    return _transition(attempt, [Status.PROCESSING], Status.FAILED, **fields)


def cancel(attempt) -> bool:
    return _transition(attempt, [Status.PROCESSING], Status.CANCELLED)


def record_query(attempt, payload) -> None:
    PaymentAttempt.objects.filter(pk=attempt.pk, status=Status.PROCESSING).update(
        last_query_payload=payload, updated_at=timezone.now()
    )


def attach_receipt(attempt, *, receipt_number, raw_callback=None) -> bool:
    """Fill in the receipt of an attempt completed by a status query.

    The query response carries no receipt; the callback that arrives afterwards
    may supply it once. A receipt already set is never replaced.
    """
    fields = {"receipt_number": receipt_number, "updated_at": timezone.now()}
    if raw_callback is not None:
        fields["raw_callback"] = raw_callback
    return bool(
        PaymentAttempt.objects.filter(pk=attempt.pk, status=Status.COMPLETED, receipt_number="").update(**fields)
    )
