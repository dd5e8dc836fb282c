import logging
import threading
from dataclasses import dataclass

from relayclaw.core.agent import generate_timed
from relayclaw.core.attachments import attachment_context, binary_paths, load_attachments
from relayclaw.core.prompts import build_prompt, timeout_message
from relayclaw.errors import GenerationError, GenerationTimeout, IllegalTransition, LoopDetected
from relayclaw.memory.models import InboundItem, InboundStatus, OutboundItem

logger = logging.getLogger(__name__)


@dataclass
class ProcessReport:
    claimed: int = 0
    processed: int = 0
    failed: int = 0
    timed_out: int = 0
    loop_blocked: int = 0

    def __str__(self):
        return (
            f"{self.processed}/{self.claimed} processed, {self.failed} failed, "
            f"{self.timed_out} timed out, {self.loop_blocked} loop-blocked"
        )


class Processor:
    """Turn pending inbound messages into queued responses."""

    def __init__(self, store, provider, guard, registry, settings, shutdown=None):
        self.store = store
        self.provider = provider
        self.guard = guard
        self.registry = registry
        self.settings = settings
        self.shutdown = shutdown or threading.Event()

    def process_batch(self, limit=None):
        limit = limit or self.settings.process_batch_size
        report = ProcessReport()
        # One claim per item so nothing new is claimed after shutdown is requested.
        while report.claimed < limit and not self.shutdown.is_set():
            claimed = self.store.claim_next_inbound(1)
            if not claimed:
                break
            report.claimed += 1
            self._handle(claimed[0], report)
        if report.claimed:
            logger.info(f"Process batch: {report}")
        return report

    def _handle(self, item, report):
        """Process one claimed item; no failure leaves it in ``processing``."""
        try:
            self._process_one(item, report)
        except LoopDetected as e:
            report.loop_blocked += 1
            self._finish_error(item, f"loop_detected:{e.decision.value}")
        except IllegalTransition as e:
            # The row was recovered by the monitor while we were generating.
            logger.warning(f"Dropping result for {item.message_id}: {e}")
            report.failed += 1
        except Exception as e:
            logger.exception(f"Unexpected error processing {item.message_id}")
            report.failed += 1
            self._fail(item, f"unexpected: {type(e).__name__}: {e}")

    def _finish_error(self, item, detail):
        try:
            self.store.complete_inbound(item.message_id, InboundStatus.ERROR, error=detail)
        except IllegalTransition as e:
            logger.warning(f"Could not mark {item.message_id} as error: {e}")

    def _fail(self, item, detail):
        self.guard.release_claim(item.message_id)
        self._finish_error(item, detail)

    def _process_one(self, item, report):
        decision = self.guard.check_and_record_message(item)
        if not decision.allowed:
            raise LoopDetected(decision)

        try:
            text = self._generate(item)
        except GenerationTimeout as e:
            logger.error(f"Generation timed out for {item.message_id}: {e}")
            self._fail(item, f"timeout: {e}")
            report.timed_out += 1
            return
        except GenerationError as e:
            logger.error(f"Generation failed for {item.message_id}: {e}")
            self._fail(item, f"generation: {e}")
            report.failed += 1
            return

        check = self.guard.validate_response_content(text)
        if not check.cleaned.strip():
            self._fail(item, "generation: empty response")
            report.failed += 1
            return

        outbound = OutboundItem(
            message_id=item.message_id,
            channel_id=item.channel_id,
            thread_id=item.reply_thread,
            response_text=check.cleaned,
        )
        decision = self.guard.should_allow_response(outbound)
        if not decision.allowed:
            raise LoopDetected(decision)

        self.store.complete_inbound(item.message_id, InboundStatus.PROCESSED, response=outbound)
        report.processed += 1

    def _generate(self, item):
        attachments = load_attachments(item.file_paths, self.settings.max_file_size)
        prompt = build_prompt(item, attachment_context(attachments), self.settings.response_style)
        with self.registry.track("generate"):
            text, latency_ms = generate_timed(self.provider, prompt, binary_paths(attachments))
        logger.info(f"[{item.message_id}] llm:{latency_ms}ms | User: {item.text[:50]}... | Agent: {text[:50]}...")
        return text

    def answer(self, text, attachments=()):
        """Synchronous path: generate a reply without touching the queue."""
        item = InboundItem(message_id="direct", channel_id="direct", channel_name="direct", text=text)
        item.file_paths = list(attachments)
        try:
            return self._generate(item)
        except GenerationTimeout:
            return timeout_message(self.settings.generation_timeout)
