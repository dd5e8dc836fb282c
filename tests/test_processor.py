import threading

import pytest

from conftest import FailingProvider, FakeProvider
from relayclaw.core.agent import AnthropicProvider, CliProvider
from relayclaw.core.processor import Processor
from relayclaw.errors import GenerationError, GenerationTimeout
from relayclaw.memory.models import InboundItem, InboundStatus, OutboundStatus, RespondedRecord


@pytest.fixture
def processor(store, provider, guard, registry, settings):
    return Processor(store, provider, guard, registry, settings)


def enqueue(store, n, clock, text="What is AI?", thread=None, **kwargs):
    store.enqueue_inbound(InboundItem(
        message_id=f"-100:{n}", channel_id="-100", ts=str(n), user_id="u1",
        text=text, thread_id=thread, fetched_at=clock(), **kwargs,
    ))


def test_success_creates_exactly_one_response(processor, store, clock):
    enqueue(store, 1, clock)
    report = processor.process_batch(5)

    assert report.processed == 1
    assert store.get_inbound("-100:1").status is InboundStatus.PROCESSED
    assert store.counts()["outbound"] == {"pending": 1}
    out = store.claim_next_outbound(5)[0]
    assert out.message_id == "-100:1"
    assert out.thread_id == "1"


def test_reply_goes_into_existing_thread(processor, store, clock):
    enqueue(store, 2, clock, thread="1")
    processor.process_batch(5)
    assert store.claim_next_outbound(1)[0].thread_id == "1"


def test_generation_timeout_marks_error_without_response(processor, provider, store, clock):
    provider.errors.append(GenerationTimeout(900))
    enqueue(store, 1, clock)
    report = processor.process_batch(5)

    assert report.timed_out == 1
    item = store.get_inbound("-100:1")
    assert item.status is InboundStatus.ERROR
    assert item.error_message.startswith("timeout")
    assert store.counts()["outbound"] == {}


def test_failed_item_does_not_block_the_batch(processor, provider, store, clock):
    provider.errors.append(GenerationError("model not loaded"))
    enqueue(store, 1, clock)
    clock.advance(seconds=1)
    enqueue(store, 2, clock)

    report = processor.process_batch(5)

    assert (report.claimed, report.failed, report.processed) == (2, 1, 1)
    assert store.get_inbound("-100:1").status is InboundStatus.ERROR
    assert store.get_inbound("-100:2").status is InboundStatus.PROCESSED


def test_failed_item_can_be_retried(store, guard, registry, settings, clock, provider):
    enqueue(store, 1, clock)
    Processor(store, FailingProvider(), guard, registry, settings).process_batch(5)
    store.retry_inbound("-100:1")

    report = Processor(store, provider, guard, registry, settings).process_batch(5)
    assert report.processed == 1


def test_loop_blocked_items_are_counted(processor, store, clock):
    enqueue(store, 1, clock)
    store.record_responded(RespondedRecord(message_id="-100:1", channel_id="-100"))
    report = processor.process_batch(5)

    assert report.loop_blocked == 1
    item = store.get_inbound("-100:1")
    assert item.status is InboundStatus.ERROR
    assert item.error_message == "loop_detected:blocked-duplicate"


def test_trigger_words_are_masked_before_queueing(store, guard, registry, settings, clock):
    enqueue(store, 1, clock)
    Processor(store, FakeProvider("AI can help with that."), guard, registry, settings).process_batch(1)
    assert store.claim_next_outbound(1)[0].response_text == "** can help with that."


def test_no_claims_after_shutdown(store, provider, guard, registry, settings, clock):
    shutdown = threading.Event()
    shutdown.set()
    enqueue(store, 1, clock)
    report = Processor(store, provider, guard, registry, settings, shutdown).process_batch(5)
    assert report.claimed == 0
    assert store.get_inbound("-100:1").status is InboundStatus.PENDING


def test_answer_returns_timeout_message(processor, provider):
    provider.errors.append(GenerationTimeout(900))
    text = processor.answer("Summarise everything")
    assert "Request Timed Out" in text
    assert "900" in text

    assert processor.answer("hello") == provider.reply


def test_text_attachment_is_inlined(processor, provider, store, clock, tmp_path):
    notes = tmp_path / "notes.txt"
    notes.write_text("quarterly numbers")
    enqueue(store, 1, clock, file_paths=[str(notes)])
    processor.process_batch(1)
    assert "quarterly numbers" in provider.prompts[0]
    assert store.counts()["outbound"][OutboundStatus.PENDING.value] == 1


def test_unexpected_error_does_not_strand_the_item(processor, provider, store, clock):
    provider.errors.append(UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"))
    enqueue(store, 1, clock)
    clock.advance(seconds=1)
    enqueue(store, 2, clock)

    report = processor.process_batch(5)

    assert (report.claimed, report.failed, report.processed) == (2, 1, 1)
    item = store.get_inbound("-100:1")
    assert item.status is InboundStatus.ERROR
    assert item.error_message.startswith("unexpected: UnicodeDecodeError")
    assert store.count_inbound(InboundStatus.PROCESSING) == 0

    store.retry_inbound("-100:1")
    assert processor.process_batch(5).processed == 1


def test_unreadable_attachment_is_reported_in_the_prompt(processor, provider, store, clock, tmp_path):
    # A directory passes the size check but cannot be opened as a file.
    broken = tmp_path / "notes.txt"
    broken.mkdir()
    enqueue(store, 1, clock, file_paths=[str(broken)])

    report = processor.process_batch(1)

    assert report.processed == 1
    assert "notes.txt: unreadable" in provider.prompts[0]


def test_unreadable_image_is_a_generation_error(tmp_path):
    provider = AnthropicProvider("claude-3-5-haiku-latest", "sk-test", 30, "system")
    with pytest.raises(GenerationError):
        provider._image_block(str(tmp_path / "gone.png"))


def test_cli_output_that_is_not_utf8_is_replaced():
    provider = CliProvider(r"printf '\377ok'", timeout=10, system_prompt="")
    assert provider.generate("hi") == "\ufffdok"
