from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("orders/<str:order_id>/initiate", views.initiate_payment_view, name="initiate"),
    path("orders/<str:order_id>/status", views.payment_status_view, name="status"),
    path("orders/<str:order_id>/cancel", views.cancel_payment_view, name="cancel"),
    # gateway-facing; must match MPESA_CALLBACK_URL
    path("callback", views.mpesa_callback_view, name="mpesa_callback"),
    path("callback/", views.mpesa_callback_view),
]
