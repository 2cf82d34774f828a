import uuid

from django.db import models
from django.db.models import Q

from orders.models import Order


class PaymentAttempt(models.Model):
    """One STK Push attempt for an order.

    Rows are never deleted; a retry after failure creates a new row. Status is
    only ever changed through ``payments.store``.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PROCESSING = "PROCESSING", "Processing"
        COMPLETED = "COMPLETED", "Completed"
        FAILED = "FAILED", "Failed"
        CANCELLED = "CANCELLED", "Cancelled"

    class FailureReason(models.TextChoices):
        INITIATE_FAILED = "initiate_failed", "Initiate failed"
        REJECTED = "rejected", "Rejected by gateway"
        TIMEOUT = "timeout", "No answer from gateway"

    ACTIVE_STATUSES = (Status.PENDING, Status.PROCESSING)
    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED, Status.CANCELLED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="payment_attempts")

    # issued by the gateway when it accepts the STK push; null until then
    merchant_request_id = models.CharField(max_length=64, unique=True, null=True, blank=True)
    checkout_request_id = models.CharField(max_length=64, unique=True, null=True, blank=True)

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    phone_number = models.CharField(max_length=16)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)

    result_code = models.CharField(max_length=32, blank=True, default="")
    result_desc = models.CharField(max_length=512, blank=True, default="")
    failure_reason = models.CharField(max_length=32, choices=FailureReason.choices, blank=True, default="")

    receipt_number = models.CharField(max_length=64, blank=True, default="", db_index=True)
    confirmed_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    confirmed_phone = models.CharField(max_length=16, blank=True, default="")

    raw_callback = models.JSONField(blank=True, null=True)
    last_query_payload = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            # the database, not the application, guarantees one in-flight attempt per order
            models.UniqueConstraint(
                fields=["order"],
                condition=Q(status__in=["PENDING", "PROCESSING"]),
                name="payments_one_active_attempt_per_order",
            ),
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def __str__(self):
        return f"{self.order_id}:{self.checkout_request_id or self.id} {self.amount} - {self.status}"


class PaymentAnomaly(models.Model):
    """Something a person has to reconcile by hand."""

    class Kind(models.TextChoices):
        UNMATCHED_CALLBACK = "unmatched_callback", "Callback for unknown attempt"
        SUCCESS_AFTER_CANCEL = "success_after_cancel", "Success reported after cancel"
        SUCCESS_AFTER_FAILURE = "success_after_failure", "Success reported after failure"
        AMOUNT_MISMATCH = "amount_mismatch", "Confirmed amount differs"
        CALLBACK_ERROR = "callback_processing_error", "Callback processing error"

    attempt = models.ForeignKey(
        PaymentAttempt, on_delete=models.PROTECT, related_name="anomalies", null=True, blank=True
    )
    kind = models.CharField(max_length=32, choices=Kind.choices, db_index=True)
    merchant_request_id = models.CharField(max_length=64, blank=True, default="")
    checkout_request_id = models.CharField(max_length=64, blank=True, default="")
    detail = models.CharField(max_length=512, blank=True, default="")
    payload = models.JSONField(blank=True, null=True)
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.kind} {self.merchant_request_id or self.checkout_request_id}"
