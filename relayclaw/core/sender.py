import logging
from dataclasses import dataclass

from relayclaw.errors import IllegalTransition, LoopDetected, PlatformError, RateLimited, SendError
from relayclaw.memory.models import SendOutcome

logger = logging.getLogger(__name__)


@dataclass
class SendReport:
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    loop_blocked: int = 0
    released: int = 0
    rate_limited: bool = False

    def __str__(self):
        text = (
            f"{self.sent}/{self.claimed} sent, {self.retried} to retry, {self.failed} failed, "
            f"{self.loop_blocked} loop-blocked"
        )
        if self.rate_limited:
            text += f", rate limited ({self.released} released)"
        return text


class Sender:
    """Post queued responses while holding the API lock."""

    def __init__(self, store, platform, guard, lock, budget, registry, settings):
        self.store = store
        self.platform = platform
        self.guard = guard
        self.lock = lock
        self.budget = budget
        self.registry = registry
        self.settings = settings

    def send_batch(self, limit=None):
        limit = limit or self.settings.send_batch_size
        report = SendReport()
        with self.registry.track("send"), self.lock.hold():
            wait = self.budget.retry_wait()
            if wait > 0:
                logger.info(f"Send skipped: platform rate limit in force for another {wait:.0f}s")
                report.rate_limited = True
                return report
            batch = self.store.claim_next_outbound(limit)
            report.claimed = len(batch)
            for index, item in enumerate(batch):
                if not self._handle(item, report):
                    for rest in batch[index + 1:]:
                        self.store.release_outbound(rest.id)
                        report.released += 1
                    break
        if report.claimed:
            logger.info(f"Send batch: {report}")
        return report

    def _handle(self, item, report):
        """Send one claimed row; no failure leaves it in ``sending``.

        Returns False when the rest of the batch should go back to the queue.
        """
        try:
            return self._send_one(item, report)
        except LoopDetected as e:
            report.loop_blocked += 1
            self._finish(item, SendOutcome.DROPPED, f"loop_detected:{e.decision.value}")
        except IllegalTransition as e:
            logger.warning(f"Response {item.id} changed state while sending: {e}")
            report.failed += 1
        except Exception as e:
            logger.exception(f"Unexpected error sending response {item.id}")
            report.failed += 1
            self._finish(item, SendOutcome.FAILED, f"unexpected: {type(e).__name__}: {e}")
        return True

    def _finish(self, item, outcome, error):
        try:
            self.store.complete_outbound(item.id, outcome, error=error)
        except IllegalTransition as e:
            logger.error(f"Could not record {outcome.value} for response {item.id}: {e}")

    def _send_one(self, item, report):
        decision = self.guard.should_allow_response(item)
        if not decision.allowed:
            raise LoopDetected(decision)

        if self.budget.take("post"):
            self.store.release_outbound(item.id)
            report.released += 1
            report.rate_limited = True
            return False

        check = self.guard.validate_response_content(item.response_text)
        try:
            self.platform.post(item.channel_id, item.thread_id, check.cleaned)
        except RateLimited as e:
            self.budget.defer(e.retry_after)
            status = self.store.complete_outbound(
                item.id, SendOutcome.RETRY, error=f"rate_limited: {e}", retry_after=e.retry_after,
            )
            logger.warning(f"Rate limited sending response {item.id} (retry after {e.retry_after}s), now {status.value}")
            report.retried += 1
            report.rate_limited = True
            return False
        except SendError as e:
            status = self.store.complete_outbound(item.id, SendOutcome.RETRY, error=str(e))
            logger.warning(f"Transient failure sending response {item.id}: {e}, now {status.value}")
            report.retried += 1
            return True
        except PlatformError as e:
            logger.error(f"Failed to send response {item.id}: {e}")
            self.store.complete_outbound(item.id, SendOutcome.FAILED, error=str(e))
            report.failed += 1
            return True

        try:
            self.store.mark_sent(item, posted_text=check.cleaned)
        except IllegalTransition as e:
            # Posted, but the row was recovered meanwhile; still count it for loop detection.
            logger.error(f"Response {item.id} posted but could not be marked sent: {e}")
        self.guard.record_response(item.channel_id, item.thread_id)
        report.sent += 1
        return True
