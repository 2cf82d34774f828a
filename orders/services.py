import logging

from django.db import IntegrityError, transaction
from django.db.models.functions import Length

from .models import Order, OrderItem
from .utils import calculate_order_total, line_total, next_order_number, order_number_prefix

logger = logging.getLogger(__name__)


class OrderError(Exception): pass


def validate_order_items(items) -> None:
    if not items:
        raise OrderError("Order must contain at least one item")
    for item in items:
        if not item.get("menu_item_id"):
            raise OrderError("Menu item ID is required for each item")
        try:
            quantity = int(item.get("quantity") or 0)
        except (TypeError, ValueError):
            quantity = 0
        if quantity <= 0:
            raise OrderError(f"Valid quantity is required for {item.get('name') or item['menu_item_id']}")
        if item.get("unit_price") is None:
            raise OrderError(f"Price snapshot missing for {item.get('name') or item['menu_item_id']}")


def _allocate_order_number() -> str:
    last = (
        Order.objects.filter(order_number__startswith=order_number_prefix())
        # longest first, so ...-10000 ranks above ...-9999
        .order_by(Length("order_number").desc(), "-order_number")
        .values_list("order_number", flat=True)
        .first()
    )
    return next_order_number(last)


def create_order(*, items, phone_number: str, customer_name: str = "", notes: str = "") -> Order:
    """Persist an order from already-priced line items.

    ``items`` is a list of dicts with ``menu_item_id``, ``name``, ``quantity``
    and ``unit_price``; catalog prices are resolved by the caller and frozen here.
    """
    validate_order_items(items)
    if not phone_number:
        raise OrderError("Phone number is required")

    total = calculate_order_total(items)
    max_attempts = 5
    for attempt in range(1, max_attempts + 1):
        try:
            with transaction.atomic():
                order = Order.objects.create(
                    order_number=_allocate_order_number(),
                    total_amount=total,
                    phone_number=phone_number,
                    customer_name=customer_name or "",
                    notes=notes or "",
                )
                OrderItem.objects.bulk_create([
                    OrderItem(
                        order=order,
                        menu_item_id=str(i["menu_item_id"]),
                        name=i.get("name") or str(i["menu_item_id"]),
                        quantity=int(i["quantity"]),
                        unit_price=i["unit_price"],
                        total_price=line_total(i["unit_price"], i["quantity"]),
                    )
                    for i in items
                ])
        except IntegrityError:
            # another order took the same number; recompute and try again
            if attempt == max_attempts:
                raise
            logger.warning("Order number collision, retrying (attempt %s)", attempt)
            continue
        logger.info("Created order %s total=%s", order.order_number, order.total_amount)
        return order
