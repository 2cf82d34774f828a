from decimal import Decimal

from django.utils import timezone

ORDER_PREFIX = "ORD"


def order_number_prefix(now=None) -> str:
    # e.g., ORD-20231201-
    now = timezone.localtime(now)
    return f"{ORDER_PREFIX}-{now.strftime('%Y%m%d')}-"


def next_order_number(last_number: str | None, now=None) -> str:
    """Return the number following ``last_number`` within today's sequence.

    Numbers are ``ORD-YYYYMMDD-NNNN``; the sequence restarts at 0001 each day.
    """
    prefix = order_number_prefix(now)
    seq = 0
    if last_number and last_number.startswith(prefix):
        try:
            seq = int(last_number[len(prefix):])
        except ValueError:
            seq = 0
    return f"{prefix}{seq + 1:04d}"


def line_total(unit_price, quantity) -> Decimal:
    return Decimal(str(unit_price)) * int(quantity)


def calculate_order_total(items) -> Decimal:
    return sum((line_total(i["unit_price"], i["quantity"]) for i in items), Decimal("0"))
