from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError

from payments.models import PaymentAttempt
from payments.poller import StatusPoller


class Command(BaseCommand):
    help = "Poll M-Pesa for one payment attempt until it resolves or the polling window closes"

    def add_arguments(self, parser):
        parser.add_argument("attempt_id")
        parser.add_argument("--interval", type=float, default=None)
        parser.add_argument("--max-attempts", type=int, default=None)
        parser.add_argument("--window", type=float, default=None)

    def handle(self, *args, **opts):
        try:
            PaymentAttempt.objects.get(pk=opts["attempt_id"])
        except (PaymentAttempt.DoesNotExist, ValidationError):
            raise CommandError(f"Unknown payment attempt {opts['attempt_id']}")

        poller = StatusPoller(interval=opts["interval"], max_attempts=opts["max_attempts"], window=opts["window"])
        status = poller.poll_until_resolved(opts["attempt_id"])
        style = self.style.SUCCESS if status == PaymentAttempt.Status.COMPLETED else self.style.WARNING
        self.stdout.write(style(f"Attempt {opts['attempt_id']} -> {status}"))
