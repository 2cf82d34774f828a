from django.contrib import admin
from .models import Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ("menu_item_id", "name", "quantity", "unit_price", "total_price")


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "status", "payment_status", "total_amount", "phone_number", "created_at")
    search_fields = ("order_number", "phone_number", "customer_name")
    list_filter = ("status", "payment_status", "created_at")
    # payment_status is owned by the payments app
    readonly_fields = ("order_number", "total_amount", "payment_status", "created_at", "updated_at")
    inlines = [OrderItemInline]
