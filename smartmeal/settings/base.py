"""Base settings for the SmartMeal project.

Secrets and gateway credentials come from the environment (a ``.env`` file is
loaded when present); nothing sensitive is committed here.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(BASE_DIR / ".env")


def _env_bool(name, default="false"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "insecure-dev-key-change-me")
DEBUG = _env_bool("DJANGO_DEBUG")
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "orders",
    "payments",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "smartmeal.urls"
WSGI_APPLICATION = "smartmeal.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
        "ATOMIC_REQUESTS": False,
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
# The gateway stamps and validates request timestamps in Kenyan local time.
TIME_ZONE = "Africa/Nairobi"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

# ---------- Email ----------
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "25"))
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = _env_bool("EMAIL_USE_TLS")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "payments@smartmeal.local")
EMAIL_FAIL_SILENTLY = _env_bool("EMAIL_FAIL_SILENTLY", "true")
# Comma-separated recipients for payment anomaly alerts
PAYMENTS_ADMIN_EMAILS = os.getenv("PAYMENTS_ADMIN_EMAILS", "")

# ---------- M-Pesa (Daraja) ----------
MPESA = {
    "ENVIRONMENT": os.getenv("MPESA_ENVIRONMENT", "sandbox"),
    "CONSUMER_KEY": os.getenv("MPESA_CONSUMER_KEY", ""),
    "CONSUMER_SECRET": os.getenv("MPESA_CONSUMER_SECRET", ""),
    "SHORTCODE": os.getenv("MPESA_SHORTCODE", ""),
    "PASSKEY": os.getenv("MPESA_PASSKEY", ""),
    "CALLBACK_URL": os.getenv("MPESA_CALLBACK_URL", ""),
    # HTTP
    "TIMEOUT": float(os.getenv("MPESA_TIMEOUT", "30")),
    "MAX_ATTEMPTS": int(os.getenv("MPESA_MAX_ATTEMPTS", "3")),
    "BACKOFF": float(os.getenv("MPESA_BACKOFF", "0.5")),
    # refresh the bearer token this many seconds before it actually expires
    "TOKEN_MARGIN": int(os.getenv("MPESA_TOKEN_MARGIN", "300")),
    # status polling
    "POLL_INTERVAL": float(os.getenv("MPESA_POLL_INTERVAL", "3")),
    "POLL_MAX_ATTEMPTS": int(os.getenv("MPESA_POLL_MAX_ATTEMPTS", "40")),
    "POLL_WINDOW": float(os.getenv("MPESA_POLL_WINDOW", "180")),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "WARNING")},
    "loggers": {
        "payments": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "orders": {"handlers": ["console"], "level": "INFO", "propagate": False},
    },
}
