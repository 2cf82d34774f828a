from django.contrib import admin
from .models import PaymentAnomaly, PaymentAttempt


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(admin.ModelAdmin):
    list_display = ("checkout_request_id", "order", "status", "amount", "phone_number", "receipt_number",
                    "failure_reason", "created_at", "updated_at")
    search_fields = ("merchant_request_id", "checkout_request_id", "receipt_number", "phone_number",
                     "order__order_number")
    list_filter = ("status", "failure_reason", "created_at")
    # status only moves through payments.store
    readonly_fields = [f.name for f in PaymentAttempt._meta.fields]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PaymentAnomaly)
class PaymentAnomalyAdmin(admin.ModelAdmin):
    list_display = ("kind", "merchant_request_id", "checkout_request_id", "attempt", "resolved", "created_at")
    search_fields = ("merchant_request_id", "checkout_request_id", "detail")
    list_filter = ("kind", "resolved", "created_at")
    readonly_fields = ("kind", "attempt", "merchant_request_id", "checkout_request_id", "detail", "payload",
                       "created_at")
