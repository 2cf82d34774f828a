from django.contrib import admin
from django.urls import include, path

from . import views

urlpatterns = [
    path("admin/", admin.site.urls),
    path("health", views.health_view, name="health"),
    path("payments/", include("payments.urls")),
]

handler404 = "smartmeal.views.error_404_view"
