from django.conf import settings
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET


@require_GET
def health_view(request):
    return JsonResponse({
        "ok": True,
        "message": "SmartMeal API is running",
        "timestamp": timezone.now().isoformat(),
        "environment": settings.MPESA.get("ENVIRONMENT", ""),
    })


def error_404_view(request, exception):
    # API clients get JSON, never the HTML debug page
    return JsonResponse(
        {"ok": False, "error": "API endpoint not found", "path": request.path, "method": request.method},
        status=404,
    )
