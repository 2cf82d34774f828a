import logging
import time

from django.conf import settings
from django.utils import timezone

from . import store
from .alerts import flag_late_success
from .integrations.mpesa import MpesaClient, MpesaError, initiate_deadline
from .models import PaymentAttempt

logger = logging.getLogger(__name__)

TIMEOUT_DESC = "No result from the gateway before the polling window closed"
STALE_PENDING_DESC = "Initiate request never reported back"


class StatusPoller:
    """Resolve an attempt by querying the gateway instead of waiting for the webhook.

    Safe to run from any process alongside the webhook: terminal results go
    through the same guarded writes, so whichever source lands first wins.
    """

    def __init__(self, client=None, *, interval=None, max_attempts=None, window=None,
                 pending_grace=None, sleep=time.sleep, clock=time.monotonic):
        config = settings.MPESA
        self.client = client or MpesaClient.from_settings()
        self.interval = config.get("POLL_INTERVAL", 3) if interval is None else interval
        self.max_attempts = config.get("POLL_MAX_ATTEMPTS", 40) if max_attempts is None else max_attempts
        self.window = config.get("POLL_WINDOW", 180) if window is None else window
        # a PENDING attempt younger than this may still have its initiate call in flight
        self.pending_grace = initiate_deadline(config) if pending_grace is None else pending_grace
        self.sleep = sleep
        self.clock = clock

    def poll_once(self, attempt) -> bool:
        """Query once; return True when the attempt is terminal afterwards."""
        if attempt.is_terminal:
            return True
        if not attempt.checkout_request_id:
            # initiate has not been acknowledged yet
            return False
        try:
            result = self.client.query_status(attempt.checkout_request_id)
        except MpesaError as e:
            logger.warning("Status query for attempt %s inconclusive: %s (%s)",
                           attempt.pk, e, e.__class__.__name__)
            return False

        if result.is_pending:
            store.record_query(attempt, result.raw)
            return False
        if result.is_success:
            won = store.complete(
                attempt,
                receipt_number="",
                result_code=result.result_code,
                result_desc=result.result_desc,
                query_payload=result.raw,
            )
            if not won:
                attempt.refresh_from_db()
                if attempt.status in (PaymentAttempt.Status.CANCELLED, PaymentAttempt.Status.FAILED):
                    flag_late_success(
                        attempt,
                        detail=f"status query reported success: {result.result_desc}",
                        payload=result.raw,
                    )
        else:
            store.fail(
                attempt,
                reason=PaymentAttempt.FailureReason.REJECTED,
                result_code=result.result_code,
                result_desc=result.result_desc,
                query_payload=result.raw,
            )
        # terminal whether this write won or a callback got there first
        return True

    def is_stale_pending(self, attempt, now=None) -> bool:
        if attempt.status != PaymentAttempt.Status.PENDING:
            return False
        now = now or timezone.now()
        return attempt.created_at < now - timezone.timedelta(seconds=self.pending_grace)

    def expire(self, attempt) -> bool:
        """Give up on an unresolved attempt so the order can be paid again.

        PROCESSING attempts fail as timed out. PENDING ones fail only once the
        initiate call that owns them must have finished, since a live request
        will move them itself.
        """
        if attempt.status == PaymentAttempt.Status.PENDING:
            if not self.is_stale_pending(attempt):
                return False
            won = store.expire_pending(attempt, result_desc=STALE_PENDING_DESC)
            if won:
                logger.warning("Attempt %s stuck in PENDING; initiate never completed", attempt.pk)
            return won
        won = store.fail(
            attempt,
            reason=PaymentAttempt.FailureReason.TIMEOUT,
            result_desc=TIMEOUT_DESC,
        )
        if won:
            logger.warning("Attempt %s timed out waiting for the gateway", attempt.pk)
        return won

    def poll_until_resolved(self, attempt_id) -> str:
        attempt = PaymentAttempt.objects.get(pk=attempt_id)
        deadline = self.clock() + self.window
        rounds = 0
        while True:
            rounds += 1
            if self.poll_once(attempt):
                attempt.refresh_from_db()
                return attempt.status
            if rounds >= self.max_attempts or self.clock() >= deadline:
                break
            self.sleep(self.interval)
            attempt.refresh_from_db()

        self.expire(attempt)
        attempt.refresh_from_db()
        return attempt.status
