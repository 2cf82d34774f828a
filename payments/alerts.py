import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives

from .models import PaymentAnomaly, PaymentAttempt

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    # Comma-separated list via env or settings; fall back to DEFAULT_FROM_EMAIL/host user
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", None) or getattr(settings, "ADMIN_EMAILS", None)
    if not raw:
        raw = ",".join([
            getattr(settings, "EMAIL_HOST_USER", "") or "",
            getattr(settings, "DEFAULT_FROM_EMAIL", "") or "",
        ])
    emails = [e.strip() for e in (raw or "").split(",") if e and e.strip()]
    # Deduplicate while preserving order
    seen = set()
    uniq: List[str] = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def record_anomaly(kind, *, attempt=None, merchant_request_id="", checkout_request_id="",
                   detail="", payload=None) -> PaymentAnomaly:
    """Persist an anomaly for manual reconciliation and alert the payments admins."""
    anomaly = PaymentAnomaly.objects.create(
        kind=kind,
        attempt=attempt,
        merchant_request_id=merchant_request_id or (attempt.merchant_request_id if attempt else "") or "",
        checkout_request_id=checkout_request_id or (attempt.checkout_request_id if attempt else "") or "",
        detail=(detail or "")[:512],
        payload=payload,
    )
    logger.error(
        "Payment anomaly %s: merchant=%s checkout=%s attempt=%s %s",
        kind, anomaly.merchant_request_id, anomaly.checkout_request_id,
        getattr(attempt, "pk", None), detail,
    )
    send_anomaly_alert(anomaly)
    return anomaly


def send_anomaly_alert(anomaly: PaymentAnomaly) -> None:
    admins = _admin_recipients()
    if not admins:
        return
    from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
    attempt = anomaly.attempt
    lines = [
        f"Kind: {anomaly.get_kind_display()} ({anomaly.kind})",
        f"MerchantRequestID: {anomaly.merchant_request_id or '-'}",
        f"CheckoutRequestID: {anomaly.checkout_request_id or '-'}",
    ]
    if attempt is not None:
        lines += [
            f"Order: {attempt.order.order_number}",
            f"Attempt: {attempt.pk} ({attempt.status})",
            f"Amount: {attempt.amount}",
        ]
    if anomaly.detail:
        lines.append(f"Detail: {anomaly.detail}")
    lines.append("Reconcile manually, then mark the anomaly resolved in the admin.")
    try:
        subject = f"Payment anomaly: {anomaly.kind} {anomaly.merchant_request_id or anomaly.checkout_request_id}"
        msg = EmailMultiAlternatives(subject, "\n".join(lines), from_email, admins)
        msg.send(fail_silently=_fail_silently())
    except Exception:
        logger.exception("Failed to send payment anomaly alert for %s", anomaly.pk)


def flag_late_success(attempt, *, detail="", payload=None):
    """Record money moving for an attempt already CANCELLED or FAILED.

    One anomaly per attempt and kind; callbacks and status queries for the
    same payment share it. Returns the new anomaly, or None.
    """
    kind = (PaymentAnomaly.Kind.SUCCESS_AFTER_CANCEL
            if attempt.status == PaymentAttempt.Status.CANCELLED
            else PaymentAnomaly.Kind.SUCCESS_AFTER_FAILURE)
    if attempt.anomalies.filter(kind=kind).exists():
        return None
    return record_anomaly(kind, attempt=attempt, detail=detail, payload=payload)
