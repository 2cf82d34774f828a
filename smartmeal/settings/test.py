from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
PAYMENTS_ADMIN_EMAILS = 'ops@example.com'

MPESA = {
    **MPESA,
    'ENVIRONMENT': 'sandbox',
    'CONSUMER_KEY': 'test-key',
    'CONSUMER_SECRET': 'test-secret',
    'SHORTCODE': '174379',
    'PASSKEY': 'test-passkey',
    'CALLBACK_URL': 'https://example.com/payments/callback',
    'BACKOFF': 0,
    'POLL_INTERVAL': 0,
}
