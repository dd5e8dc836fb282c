import dataclasses

import pytest

from relayclaw.core.fetcher import Fetcher, matches_trigger
from relayclaw.errors import FetchError, RateLimited
from relayclaw.memory.models import RespondedRecord, SelfResponseRecord
from relayclaw.runtime.budget import ApiBudget


@pytest.fixture
def fetcher(store, platform, cache, lock, budget, registry, settings, clock):
    return Fetcher(store, platform, cache, lock, budget, registry, settings, clock=clock)


def test_only_triggering_message_is_queued(fetcher, platform, store):
    platform.add_message("-100", 1, "Does anyone know a good AI tool for notes?")
    platform.add_message("-100", 2, "Lunch at noon?")

    queued = fetcher.fetch_new()

    assert [i.message_id for i in queued] == ["-100:1"]
    assert store.count_inbound("pending") == 1
    assert queued[0].channel_name == "general"


def test_answered_messages_are_never_requeued(fetcher, platform, store):
    platform.add_message("-100", 1, "AI question")
    store.record_responded(RespondedRecord(message_id="-100:1", channel_id="-100"))
    assert fetcher.fetch_new() == []
    assert store.count_inbound("pending") == 0


def test_repeated_fetch_is_idempotent(fetcher, platform, store, clock):
    platform.add_message("-100", 1, "AI question")
    assert len(fetcher.fetch_new()) == 1
    clock.advance(minutes=2)
    assert fetcher.fetch_new() == []
    assert store.counts()["inbound"] == {"pending": 1}


def test_bot_and_self_messages_are_skipped(fetcher, platform, store, clock):
    platform.add_message("-100", 1, "AI bot chatter", is_bot=True)
    platform.add_message("-100", 2, "Here is what I think about AI and its uses", thread_id="9")
    store.record_self_response(SelfResponseRecord(
        channel_id="-100", thread_id="9", response_text="Here is what I think about AI and its uses", posted_at=clock(),
    ))
    assert fetcher.fetch_new() == []


def test_mentions_mode_requires_mention(store, platform, cache, lock, budget, registry, settings, clock):
    settings = dataclasses.replace(settings, response_mode="mentions")
    fetcher = Fetcher(store, platform, cache, lock, budget, registry, settings, clock=clock)
    platform.add_message("-100", 1, "AI is everywhere")
    platform.add_message("-100", 2, "@RelayBot what do you think about AI?")
    assert [i.message_id for i in fetcher.fetch_new()] == ["-100:2"]


def test_cache_saves_platform_calls(fetcher, platform, cache, clock):
    platform.add_message("-100", 1, "AI question")
    fetcher.fetch_new()
    fetcher.fetch_new()
    assert platform.resolve_calls == 1
    assert platform.history_calls == 1
    assert cache.stats()["rate_limits_saved"] == 2

    clock.advance(seconds=31)
    fetcher.fetch_new()
    assert platform.resolve_calls == 1
    assert platform.history_calls == 2


def test_failing_channel_does_not_abort_batch(store, platform, cache, lock, budget, registry, settings, clock):
    platform.add_channel("random", "-200")
    platform.broken.add("-100")
    platform.add_message("-200", 5, "AI in random")
    settings = dataclasses.replace(settings, channels=("general", "random"))
    fetcher = Fetcher(store, platform, cache, lock, budget, registry, settings, clock=clock)

    assert [i.message_id for i in fetcher.fetch_new()] == ["-200:5"]

    platform.broken.add("-200")
    cache.clear()
    with pytest.raises(FetchError):
        fetcher.fetch_new()
    assert not lock.held
    assert not settings.lock_path.exists()


def test_batch_size_caps_new_items(store, platform, cache, lock, budget, registry, settings, clock):
    settings = dataclasses.replace(settings, fetch_batch_size=2)
    fetcher = Fetcher(store, platform, cache, lock, budget, registry, settings, clock=clock)
    for n in range(5):
        platform.add_message("-100", n, f"AI #{n}")
    assert len(fetcher.fetch_new()) == 2
    assert len(fetcher.fetch_new()) == 2


def test_attachments_are_downloaded(fetcher, platform, settings):
    platform.add_message("-100", 1, "AI, read this", files=["doc-1"])
    item = fetcher.fetch_new()[0]
    assert item.file_paths == [f"{settings.attachments_dir / '-100'}/doc-1"]


@pytest.mark.parametrize("text,mode,mention,expected", [
    ("what about ai?", "all", "", True),
    ("nothing here", "all", "", False),
    ("@bot ai please", "mentions", "@bot", True),
    ("ai please", "mentions", "@bot", False),
])
def test_matches_trigger(text, mode, mention, expected):
    assert matches_trigger(text, ("AI",), mode, mention) is expected


def test_mentions_mode_without_keywords_needs_only_mention():
    assert matches_trigger("@bot hello", (), "mentions", "@bot")
    assert not matches_trigger("hello", (), "all", "")


def test_channels_take_turns_when_batch_is_cut_short(store, platform, cache, lock, budget, registry, settings, clock):
    platform.add_channel("random", "-200")
    platform.add_message("-100", 1, "AI in general")
    platform.add_message("-200", 5, "AI in random")
    settings = dataclasses.replace(settings, channels=("general", "random"), fetch_batch_size=1)
    fetcher = Fetcher(store, platform, cache, lock, budget, registry, settings, clock=clock)

    assert [i.message_id for i in fetcher.fetch_new()] == ["-100:1"]
    assert [i.message_id for i in fetcher.fetch_new()] == ["-200:5"]


def test_platform_rate_limit_stops_fetching_everywhere(fetcher, platform, budget, lock):
    calls = []

    def limited(channel_id, window_minutes):
        calls.append(channel_id)
        raise RateLimited(retry_after=120)

    platform.history = limited
    platform.add_message("-100", 1, "AI question")

    assert fetcher.fetch_new() == []
    assert budget.retry_wait() == 120
    assert not lock.held

    with pytest.raises(RateLimited):
        fetcher.fetch_new()
    assert calls == ["-100"]


def test_exhausted_budget_defers_the_call(store, platform, cache, lock, registry, settings, clock):
    budget = ApiBudget(settings.budget_path, bucket_size=1, refill_seconds=60, clock=clock.time)
    fetcher = Fetcher(store, platform, cache, lock, budget, registry, settings, clock=clock)
    platform.add_message("-100", 1, "AI question")

    assert fetcher.fetch_new() == []
    assert platform.resolve_calls == 1
    assert platform.history_calls == 0
    assert budget.stats()["blocked_calls"] == 1
    assert budget.retry_wait() == 0

    clock.advance(seconds=60)
    assert [i.message_id for i in fetcher.fetch_new()] == ["-100:1"]
