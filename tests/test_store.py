import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from relayclaw.errors import DuplicateKey, IllegalTransition
from relayclaw.memory.database import init_db
from relayclaw.memory.inbox import QueueStore, normalize_text, text_similarity
from relayclaw.memory.models import (
    InboundItem,
    InboundStatus,
    OutboundItem,
    OutboundStatus,
    RespondedRecord,
    SelfResponseRecord,
    SendOutcome,
)


def inbound(n, clock=None, **kwargs):
    kwargs.setdefault("text", f"question {n} about AI")
    if clock is not None:
        kwargs.setdefault("fetched_at", clock())
    return InboundItem(message_id=f"-100:{n}", channel_id="-100", ts=str(n), **kwargs)


def queue_response(store, n, clock):
    store.enqueue_inbound(inbound(n, clock))
    store.claim_next_inbound(1)
    out = OutboundItem(message_id=f"-100:{n}", channel_id="-100", thread_id=str(n), response_text=f"answer {n}")
    store.complete_inbound(f"-100:{n}", InboundStatus.PROCESSED, response=out)
    return out


def test_duplicate_inbound_is_rejected(store, clock):
    store.enqueue_inbound(inbound(1, clock))
    with pytest.raises(DuplicateKey):
        store.enqueue_inbound(inbound(1, clock))


def test_claims_oldest_first_and_marks_processing(store, clock):
    for n in (1, 2, 3):
        store.enqueue_inbound(inbound(n, clock))
        clock.advance(seconds=1)
    claimed = store.claim_next_inbound(2)
    assert [i.message_id for i in claimed] == ["-100:1", "-100:2"]
    assert all(i.status is InboundStatus.PROCESSING for i in claimed)
    assert store.count_inbound("pending") == 1


def test_concurrent_claims_are_disjoint(store, settings, clock):
    for n in range(40):
        store.enqueue_inbound(inbound(n, clock))

    other = QueueStore.open(settings.database_path, clock=clock)

    def drain(s):
        got = []
        while True:
            batch = s.claim_next_inbound(3)
            if not batch:
                return got
            got.extend(i.message_id for i in batch)

    with ThreadPoolExecutor(max_workers=2) as pool:
        a, b = pool.map(drain, [store, other])
    other.close()

    assert not set(a) & set(b)
    assert len(a) + len(b) == 40


def test_illegal_transition_is_rejected(store, clock):
    store.enqueue_inbound(inbound(1, clock))
    with pytest.raises(IllegalTransition):
        store.complete_inbound("-100:1", InboundStatus.PROCESSED)


def test_complete_with_response_queues_it(store, clock):
    queue_response(store, 1, clock)
    assert store.get_inbound("-100:1").status is InboundStatus.PROCESSED
    assert store.count_outbound("pending") == 1


def test_error_items_can_be_retried(store, clock):
    store.enqueue_inbound(inbound(1, clock))
    store.claim_next_inbound(1)
    store.complete_inbound("-100:1", InboundStatus.ERROR, error="timeout")
    assert store.get_inbound("-100:1").error_message == "timeout"
    store.retry_inbound("-100:1")
    item = store.get_inbound("-100:1")
    assert item.status is InboundStatus.PENDING
    assert item.error_message is None


def test_retry_counter_stops_at_max(store, clock):
    queue_response(store, 1, clock)
    attempts = 0
    while True:
        batch = store.claim_next_outbound(5)
        if not batch:
            break
        attempts += 1
        status = store.complete_outbound(batch[0].id, SendOutcome.RETRY, error="rate_limited")
        assert store.get_outbound(batch[0].id).retry_count <= store.max_retries
        clock.advance(seconds=store.RETRY_BACKOFF_MAX)
    row = store.get_outbound(1)
    assert attempts == 3
    assert status is OutboundStatus.ERROR
    assert row.retry_count == 3


def test_release_does_not_count_a_retry(store, clock):
    out = queue_response(store, 1, clock)
    store.claim_next_outbound(1)
    store.release_outbound(out.id)
    row = store.get_outbound(out.id)
    assert row.status is OutboundStatus.PENDING
    assert row.retry_count == 0


def test_mark_sent_writes_audit_trail(store, clock):
    out = queue_response(store, 1, clock)
    claimed = store.claim_next_outbound(1)[0]
    store.mark_sent(claimed, posted_text="answer 1")

    assert store.get_outbound(out.id).status is OutboundStatus.SENT
    assert store.has_responded("-100:1")
    assert store.active_threads() == [("-100", "1")]
    assert store.is_self_response("-100", "1", "answer 1")
    with pytest.raises(IllegalTransition):
        store.complete_outbound(out.id, SendOutcome.RETRY)


def test_record_responded_is_idempotent(store):
    record = RespondedRecord(message_id="-100:5", channel_id="-100")
    assert store.record_responded(record)
    assert not store.record_responded(record)
    assert store.has_responded("-100:5")


def test_self_response_matching(store, clock):
    text = "Sure! Machine learning models need lots of training data to generalize well."
    store.record_self_response(SelfResponseRecord(channel_id="-100", thread_id="7", response_text=text, posted_at=clock()))

    assert store.is_self_response("-100", "7", "sure machine learning models need lots of training data to generalize well")
    # Quoted fragment, long enough for the containment rule.
    assert store.is_self_response("-100", "7", "models need lots of training data")
    assert not store.is_self_response("-100", "7", "models need lots of training data", fuzzy=False)
    assert not store.is_self_response("-100", "8", text)
    assert not store.is_self_response("-100", "7", "what is the weather today")

    clock.advance(minutes=11)
    assert not store.is_self_response("-100", "7", text)


def test_self_response_count_respects_window(store, clock):
    for _ in range(3):
        store.record_self_response(SelfResponseRecord(channel_id="-100", thread_id=None, response_text="x", posted_at=clock()))
    assert store.self_response_count("-100", None, within_minutes=60) == 3
    clock.advance(minutes=61)
    assert store.self_response_count("-100", None, within_minutes=60) == 0


def test_recover_abandoned_claims(store, clock):
    store.enqueue_inbound(inbound(1, clock))
    store.claim_next_inbound(1)
    queue_response(store, 2, clock)
    store.claim_next_outbound(1)

    assert store.recover_abandoned(60, is_alive=lambda pid: False) == (0, 0)
    clock.advance(minutes=5)
    assert store.recover_abandoned(60, is_alive=lambda pid: True) == (0, 0)
    assert store.recover_abandoned(60, is_alive=lambda pid: False) == (1, 1)

    assert store.get_inbound("-100:1").status is InboundStatus.ERROR
    row = store.get_outbound(1)
    assert row.status is OutboundStatus.PENDING
    assert row.retry_count == 1


def test_counts_and_purge(store, clock):
    out = queue_response(store, 1, clock)
    store.mark_sent(store.claim_next_outbound(1)[0])
    assert store.counts()["inbound"] == {"processed": 1}
    assert store.counts()["outbound"] == {"sent": 1}

    clock.advance(days=31)
    assert store.purge(30) == 3
    assert store.get_outbound(out.id) is None
    assert store.has_responded("-100:1")


def test_text_helpers():
    assert normalize_text("  Hello,   WORLD!! ") == "hello world"
    assert text_similarity("the quick brown fox", "the quick brown fox") == 1.0
    assert text_similarity("alpha beta", "gamma delta") == 0.0


def test_enqueue_outbound_is_claimable(store, clock):
    out = store.enqueue_outbound(OutboundItem(
        message_id="-100:9", channel_id="-100", thread_id="9", response_text="direct answer", created_at=clock(),
    ))

    assert out.id is not None
    assert out.status is OutboundStatus.PENDING
    assert store.count_outbound(OutboundStatus.PENDING) == 1
    claimed = store.claim_next_outbound(5)
    assert [c.id for c in claimed] == [out.id]
    assert claimed[0].status is OutboundStatus.SENDING
    assert claimed[0].response_text == "direct answer"


def test_thread_watch_upsert_and_expiry(store, clock):
    store.upsert_thread_watch("-100", "5")
    clock.advance(minutes=30)
    store.upsert_thread_watch("-100", "6")
    clock.advance(minutes=1)
    store.upsert_thread_watch("-100", "5")
    assert store.active_threads(since_minutes=60) == [("-100", "5"), ("-100", "6")]
    assert store.counts()["threads"] == 2

    clock.advance(minutes=59, seconds=30)
    assert store.active_threads(since_minutes=60) == [("-100", "5")]
    store.touch_thread("-100", "6")
    assert store.active_threads(since_minutes=60) == [("-100", "6"), ("-100", "5")]


def test_retry_backoff_delays_the_next_claim(store, clock):
    out = queue_response(store, 1, clock)
    store.claim_next_outbound(1)
    store.complete_outbound(out.id, SendOutcome.RETRY, error="timed out")

    row = store.get_outbound(out.id)
    assert row.not_before == clock() + timedelta(seconds=store.RETRY_BACKOFF_BASE)
    assert store.count_outbound(OutboundStatus.PENDING) == 0
    assert store.claim_next_outbound(1) == []

    clock.advance(seconds=store.RETRY_BACKOFF_BASE)
    store.claim_next_outbound(1)
    store.complete_outbound(out.id, SendOutcome.RETRY, retry_after=600)
    assert store.get_outbound(out.id).not_before == clock() + timedelta(seconds=600)
    assert [store.backoff(n) for n in (1, 2, 3, 5)] == [30, 60, 120, 300]


def test_retry_failed_clears_the_backoff(store, clock):
    out = queue_response(store, 1, clock)
    for _ in range(store.max_retries):
        store.claim_next_outbound(1)
        store.complete_outbound(out.id, SendOutcome.RETRY, retry_after=60)
        clock.advance(seconds=60)
    assert store.get_outbound(out.id).status is OutboundStatus.ERROR

    assert store.retry_failed() == (0, 1)
    row = store.get_outbound(out.id)
    assert row.not_before is None
    assert row.retry_count == 0
    assert store.claim_next_outbound(1)[0].id == out.id


def test_our_response_quoted_with_additions_is_recognized(store, clock):
    ours = "Machine learning models need lots of training data to generalize well."
    store.record_self_response(SelfResponseRecord(channel_id="-100", thread_id="7", response_text=ours, posted_at=clock()))

    reply = f"{ours} Thanks, though honestly I disagree with that whole premise about modern vision systems."
    assert store.is_self_response("-100", "7", reply)
    assert not store.is_self_response("-100", "7", reply, fuzzy=False)


def test_old_database_gains_backoff_column(tmp_path):
    path = str(tmp_path / "old.db")
    db = sqlite3.connect(path)
    db.execute(
        """CREATE TABLE response_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT, message_id TEXT NOT NULL, channel_id TEXT NOT NULL,
            thread_id TEXT, response_text TEXT NOT NULL, created_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending', claimed_at TEXT, claimed_by INTEGER, sent_at TEXT,
            error_message TEXT, retry_count INTEGER NOT NULL DEFAULT 0)"""
    )
    db.commit()
    db.close()

    upgraded = init_db(path)
    columns = {row["name"] for row in upgraded.execute("PRAGMA table_info(response_queue)")}
    upgraded.close()
    assert "not_before" in columns
