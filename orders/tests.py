from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from django.test import SimpleTestCase, TestCase

from .models import Order
from .services import OrderError, create_order
from .utils import next_order_number, order_number_prefix


class NextOrderNumberTests(SimpleTestCase):
    now = datetime(2023, 12, 1, 9, 30, tzinfo=ZoneInfo("Africa/Nairobi"))

    def test_first_order_of_the_day(self):
        self.assertEqual(next_order_number(None, now=self.now), "ORD-20231201-0001")

    def test_increments_same_day_sequence(self):
        self.assertEqual(next_order_number("ORD-20231201-0041", now=self.now), "ORD-20231201-0042")

    def test_previous_day_restarts_sequence(self):
        self.assertEqual(next_order_number("ORD-20231130-0099", now=self.now), "ORD-20231201-0001")


class CreateOrderTests(TestCase):
    items = [
        {"menu_item_id": "m1", "name": "Chapati", "quantity": 2, "unit_price": Decimal("30.00")},
        {"menu_item_id": "m2", "name": "Beans", "quantity": 3, "unit_price": Decimal("90.00")},
    ]

    def test_total_is_sum_of_line_items(self):
        order = create_order(items=self.items, phone_number="0712345678")
        self.assertEqual(order.total_amount, Decimal("330.00"))
        self.assertEqual(order.items.count(), 2)
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)

    def test_line_prices_are_snapshots(self):
        order = create_order(items=self.items, phone_number="0712345678")
        item = order.items.get(menu_item_id="m1")
        self.assertEqual(item.unit_price, Decimal("30.00"))
        self.assertEqual(item.total_price, Decimal("60.00"))

    def test_order_numbers_are_sequential(self):
        first = create_order(items=self.items, phone_number="0712345678")
        second = create_order(items=self.items, phone_number="0712345678")
        self.assertEqual(int(second.order_number[-4:]), int(first.order_number[-4:]) + 1)

    def test_sequence_continues_past_four_digits(self):
        prefix = order_number_prefix()
        for seq in ("9999", "10000"):
            Order.objects.create(order_number=f"{prefix}{seq}", total_amount=Decimal("10.00"),
                                 phone_number="0712345678")
        order = create_order(items=self.items, phone_number="0712345678")
        self.assertEqual(order.order_number, f"{prefix}10001")

    def test_rejects_empty_and_invalid_items(self):
        with self.assertRaises(OrderError):
            create_order(items=[], phone_number="0712345678")
        with self.assertRaises(OrderError):
            create_order(items=[{"menu_item_id": "m1", "quantity": 0, "unit_price": 10}], phone_number="0712345678")
