import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from . import services
from .callbacks import MALFORMED, Acknowledgement, handle_callback
from .exceptions import (
    AmountMismatch, OrderAlreadyPaid, OrderNotFound, PaymentError, PaymentInProgress, PaymentNotCancellable,
)
from .integrations.mpesa import (
    AuthFailure, BadRequest, GatewayUnavailable, MpesaError, NetworkError, RateLimited,
)

logger = logging.getLogger(__name__)

PAYMENT_ERROR_STATUS = {
    OrderNotFound: 404,
    OrderAlreadyPaid: 409,
    PaymentInProgress: 409,
    PaymentNotCancellable: 409,
    AmountMismatch: 400,
}

# messages shown to the payer; gateway payloads and credentials stay in the logs
GATEWAY_ERRORS = (
    (BadRequest, 400, "Payment request was rejected. Check the phone number and try again."),
    (RateLimited, 429, "Too many payment requests. Please wait a moment and try again."),
    (AuthFailure, 502, "Payments are temporarily unavailable."),
    (GatewayUnavailable, 503, "M-Pesa is not responding. Please try again."),
    (NetworkError, 503, "M-Pesa could not be reached. Please try again."),
)


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8") or "{}")
    except Exception: return None


def _error(message, status):
    return JsonResponse({"ok": False, "error": message}, status=status)


def _payment_error(e: PaymentError):
    return _error(str(e), PAYMENT_ERROR_STATUS.get(type(e), 400))


def _gateway_error(e: MpesaError):
    for cls, status, message in GATEWAY_ERRORS:
        if isinstance(e, cls):
            if isinstance(e, AuthFailure):
                logger.error("M-Pesa credentials rejected: %s", e)
            return JsonResponse({"ok": False, "error": message, "retryable": e.retryable}, status=status)
    return _error("Failed to initiate payment", 502)


@csrf_exempt
@require_POST
def initiate_payment_view(request, order_id):
    body = _json_body(request)
    if body is None or not isinstance(body, dict):
        return _error("Invalid JSON body", 400)
    try:
        attempt = services.initiate_payment(order_id, phone=body.get("phone"), amount=body.get("amount"))
    except PaymentError as e:
        return _payment_error(e)
    except MpesaError as e:
        return _gateway_error(e)
    return JsonResponse({
        "ok": True,
        "message": "Payment initiated. Check your phone for the M-Pesa prompt.",
        "attempt_id": str(attempt.pk),
        "checkout_request_id": attempt.checkout_request_id,
        "status": attempt.status,
    })


@require_GET
def payment_status_view(request, order_id):
    try:
        data = services.payment_status(order_id)
    except PaymentError as e:
        return _payment_error(e)
    return JsonResponse({"ok": True, **data})


@csrf_exempt
@require_POST
def cancel_payment_view(request, order_id):
    try:
        attempt = services.cancel_payment(order_id)
    except PaymentError as e:
        return _payment_error(e)
    return JsonResponse({"ok": True, "status": attempt.status})


@csrf_exempt
@require_POST
def mpesa_callback_view(request):
    payload = _json_body(request)
    if payload is None:
        ack = Acknowledgement(MALFORMED, accepted=False, description="Invalid JSON")
    else:
        ack = handle_callback(payload)
    return JsonResponse(ack.as_dict(), status=ack.http_status)
