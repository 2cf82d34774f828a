"""STK Push result webhook.

The gateway may deliver a result late, twice, or for an attempt we already
resolved by polling or cancelled. Every delivery with a valid envelope is
acknowledged positively so the gateway stops retrying; only the first one that
finds the attempt still PROCESSING changes anything.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from . import store
from .alerts import flag_late_success, record_anomaly
from .exceptions import MalformedCallback
from .integrations.mpesa import SUCCESS_CODE, normalize_result_code
from .models import PaymentAnomaly, PaymentAttempt
from .utils import InvalidPaymentInput, gateway_amount

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
UNMATCHED = "unmatched"
ANOMALY = "anomaly"
ERROR = "error"
MALFORMED = "malformed"


@dataclass(frozen=True)
class StkCallback:
    merchant_request_id: str
    checkout_request_id: str
    result_code: str
    result_desc: str
    receipt_number: str = ""
    amount: Decimal | None = None
    phone_number: str = ""
    payload: dict = field(default_factory=dict, repr=False)

    @property
    def success(self) -> bool:
        return self.result_code == SUCCESS_CODE


@dataclass(frozen=True)
class Acknowledgement:
    outcome: str
    accepted: bool = True
    description: str = "Accepted"

    @property
    def http_status(self) -> int:
        return 200 if self.accepted else 400

    def as_dict(self) -> dict:
        return {"ResultCode": 0 if self.accepted else 1, "ResultDesc": self.description}


def _metadata(stk: dict) -> dict:
    meta = stk.get("CallbackMetadata") or {}
    items = meta.get("Item") if isinstance(meta, dict) else None
    # matched by Name; the gateway does not keep a stable item order
    return {
        item.get("Name"): item.get("Value")
        for item in (items or [])
        if isinstance(item, dict) and item.get("Name")
    }


def parse_callback(payload) -> StkCallback:
    body = payload.get("Body") if isinstance(payload, dict) else None
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        raise MalformedCallback("Invalid callback data structure")
    merchant_id = stk.get("MerchantRequestID")
    result_code = normalize_result_code(stk.get("ResultCode"))
    if not merchant_id or result_code is None:
        raise MalformedCallback("Callback missing MerchantRequestID or ResultCode")

    receipt, amount, phone = "", None, ""
    if result_code == SUCCESS_CODE:
        values = _metadata(stk)
        receipt = str(values.get("MpesaReceiptNumber") or values.get("TransactionID") or "")
        if values.get("Amount") is not None:
            try:
                amount = Decimal(str(values["Amount"]))
            except (InvalidOperation, ValueError):
                amount = None
        phone = str(values.get("PhoneNumber") or "")

    return StkCallback(
        merchant_request_id=str(merchant_id),
        checkout_request_id=str(stk.get("CheckoutRequestID") or ""),
        result_code=result_code,
        result_desc=str(stk.get("ResultDesc") or ""),
        receipt_number=receipt,
        amount=amount,
        phone_number=phone,
        payload=payload,
    )


def _find_attempt(cb: StkCallback) -> PaymentAttempt | None:
    attempt = PaymentAttempt.objects.filter(merchant_request_id=cb.merchant_request_id).first()
    if attempt is None and cb.checkout_request_id:
        attempt = PaymentAttempt.objects.filter(checkout_request_id=cb.checkout_request_id).first()
    return attempt


def _charged_amount(attempt) -> Decimal | None:
    try:
        return Decimal(gateway_amount(attempt.amount))
    except InvalidPaymentInput:
        return None


def _apply(attempt, cb: StkCallback) -> bool:
    if cb.success:
        if not cb.receipt_number:
            logger.warning("Success callback for attempt %s carries no receipt number", attempt.pk)
        won = store.complete(
            attempt,
            receipt_number=cb.receipt_number,
            result_code=cb.result_code,
            result_desc=cb.result_desc,
            confirmed_amount=cb.amount,
            confirmed_phone=cb.phone_number,
            raw_callback=cb.payload,
        )
        if won and cb.amount is not None and cb.amount != _charged_amount(attempt):
            record_anomaly(
                PaymentAnomaly.Kind.AMOUNT_MISMATCH,
                attempt=attempt,
                detail=f"expected {attempt.amount}, gateway confirmed {cb.amount}",
                payload=cb.payload,
            )
        return won
    return store.fail(
        attempt,
        reason=PaymentAttempt.FailureReason.REJECTED,
        result_code=cb.result_code,
        result_desc=cb.result_desc,
        raw_callback=cb.payload,
    )


def process_callback(cb: StkCallback) -> str:
    attempt = _find_attempt(cb)
    if attempt is None:
        record_anomaly(
            PaymentAnomaly.Kind.UNMATCHED_CALLBACK,
            merchant_request_id=cb.merchant_request_id,
            checkout_request_id=cb.checkout_request_id,
            detail=f"ResultCode {cb.result_code}: {cb.result_desc}",
            payload=cb.payload,
        )
        return UNMATCHED

    if attempt.status == PaymentAttempt.Status.PROCESSING:
        if _apply(attempt, cb):
            logger.info("Callback resolved attempt %s (order %s) with ResultCode %s",
                        attempt.pk, attempt.order_id, cb.result_code)
            return APPLIED
        # lost the race to a poll or a cancel
        attempt.refresh_from_db()

    if cb.success and attempt.status in (PaymentAttempt.Status.CANCELLED, PaymentAttempt.Status.FAILED):
        flag_late_success(
            attempt,
            detail=f"receipt {cb.receipt_number or '-'} amount {cb.amount}",
            payload=cb.payload,
        )
        return ANOMALY

    if (cb.success and cb.receipt_number and attempt.status == PaymentAttempt.Status.COMPLETED
            and not attempt.receipt_number):
        store.attach_receipt(attempt, receipt_number=cb.receipt_number, raw_callback=cb.payload)

    logger.info("Duplicate callback for attempt %s (status %s) ignored", attempt.pk, attempt.status)
    return DUPLICATE


def handle_callback(payload) -> Acknowledgement:
    try:
        cb = parse_callback(payload)
    except MalformedCallback as e:
        logger.warning("Rejected M-Pesa callback: %s", e)
        return Acknowledgement(MALFORMED, accepted=False, description=str(e))

    try:
        outcome = process_callback(cb)
    except Exception as e:
        logger.exception("Failed to process callback merchant=%s checkout=%s",
                         cb.merchant_request_id, cb.checkout_request_id)
        try:
            record_anomaly(
                PaymentAnomaly.Kind.CALLBACK_ERROR,
                merchant_request_id=cb.merchant_request_id,
                checkout_request_id=cb.checkout_request_id,
                detail=e.__class__.__name__,
                payload=cb.payload,
            )
        except Exception:
            logger.exception("Could not record callback error for merchant=%s", cb.merchant_request_id)
        outcome = ERROR
    return Acknowledgement(outcome)
