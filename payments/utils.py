import base64
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone

COUNTRY_CODE = "254"
MSISDN_RE = re.compile(r"^254[17]\d{8}$")


class InvalidPaymentInput(ValueError): pass


def normalize_msisdn(phone: str) -> str:
    """Rewrite a Kenyan mobile number into the gateway's ``2547XXXXXXXX`` form.

    ``0712345678``, ``+254 712 345 678``, ``712345678`` and ``254712345678``
    all normalise to ``254712345678``.
    """
    formatted = re.sub(r"[\s\-()]", "", str(phone or ""))
    if formatted.startswith("+"):
        formatted = formatted[1:]
    if formatted.startswith("0"):
        formatted = COUNTRY_CODE + formatted[1:]
    elif len(formatted) == 9:
        formatted = COUNTRY_CODE + formatted
    if not MSISDN_RE.match(formatted):
        raise InvalidPaymentInput("Invalid phone number format")
    return formatted


def gateway_amount(amount) -> int:
    """Whole currency units the payer is charged.

    The gateway only accepts integers; halves round up (329.50 -> 330,
    329.49 -> 329).
    """
    try:
        value = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise InvalidPaymentInput("Invalid amount value")
    if value < 1:
        raise InvalidPaymentInput("Amount must be at least 1")
    return int(value)


def gateway_timestamp(now=None) -> str:
    return timezone.localtime(now).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("utf-8")
