import time
from django.core.management.base import BaseCommand
from django.utils import timezone
from payments.models import PaymentAttempt
from payments.poller import StatusPoller


class Command(BaseCommand):
    help = "Query M-Pesa once for PROCESSING attempts and expire those past the polling window"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-seconds", type=int, default=30)
        parser.add_argument("--window-seconds", type=float, default=None,
                            help="Expire attempts older than this (default: MPESA_POLL_WINDOW)")

    def handle(self, *args, **opts):
        poller = StatusPoller()
        window = opts["window_seconds"] if opts["window_seconds"] is not None else poller.window
        now = timezone.now()
        cutoff = now - timezone.timedelta(seconds=opts["older_than_seconds"])
        expire_before = now - timezone.timedelta(seconds=window)
        qs = (PaymentAttempt.objects
              .filter(status=PaymentAttempt.Status.PROCESSING, updated_at__lt=cutoff)
              .select_related("order")
              .order_by("created_at")[:opts["max"]])

        stuck = (PaymentAttempt.objects
                 .filter(status=PaymentAttempt.Status.PENDING,
                         created_at__lt=now - timezone.timedelta(seconds=poller.pending_grace))
                 .select_related("order")
                 .order_by("created_at")[:opts["max"]])
        released = 0
        for a in stuck:
            if poller.expire(a):
                released += 1
                self.stdout.write(self.style.WARNING(f"{a.order.order_number} attempt {a.pk} -> initiate never completed"))

        attempts = list(qs)
        if not attempts:
            self.stdout.write(self.style.SUCCESS(f"No processing payments to reconcile (released {released} stuck)."))
            return

        resolved = expired = 0
        for a in attempts:
            if poller.poll_once(a):
                a.refresh_from_db()
                resolved += 1
                self.stdout.write(self.style.SUCCESS(f"{a.order.order_number} {a.checkout_request_id} -> {a.status}"))
            elif a.created_at < expire_before:
                if poller.expire(a):
                    expired += 1
                    self.stdout.write(self.style.WARNING(f"{a.order.order_number} {a.checkout_request_id} -> timed out"))
            else:
                self.stdout.write(f"{a.order.order_number} {a.checkout_request_id}: still processing")
            time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(
            f"Checked {len(attempts)}, resolved {resolved}, expired {expired}, released {released} stuck."
        ))
