from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from payments.integrations.mpesa import AuthenticationError, missing_settings, shared_token_cache


class Command(BaseCommand):
    help = "Validate M-Pesa settings and try to obtain an access token"

    def add_arguments(self, parser):
        parser.add_argument("--offline", action="store_true", help="Only check settings, do not call the gateway")

    def handle(self, *args, **opts):
        missing = missing_settings()
        if missing:
            raise CommandError(f"Missing M-Pesa configuration: {', '.join(missing)}")
        config = settings.MPESA
        self.stdout.write(f"Environment: {config.get('ENVIRONMENT')} | Shortcode: {config.get('SHORTCODE')}")
        if opts["offline"]:
            self.stdout.write(self.style.SUCCESS("M-Pesa configuration is complete."))
            return
        try:
            shared_token_cache().get_token()
        except AuthenticationError as e:
            raise CommandError(f"M-Pesa configuration is invalid: {e}")
        self.stdout.write(self.style.SUCCESS("M-Pesa configuration is valid (access token obtained)."))
