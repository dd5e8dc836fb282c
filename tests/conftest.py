from datetime import datetime, timedelta, timezone

import pytest

from relayclaw.bot.platform import ChannelInfo, PlatformMessage, PostConfirmation
from relayclaw.config import Settings
from relayclaw.core.guard import EmergencyStop, LoopGuard
from relayclaw.errors import GenerationError, PlatformError
from relayclaw.memory.cache import TTLCache
from relayclaw.memory.inbox import QueueStore
from relayclaw.runtime.budget import ApiBudget
from relayclaw.runtime.lock import ApiLock
from relayclaw.scheduler.monitor import OperationRegistry


class Clock:
    """Settable clock usable as a datetime source and as a seconds source."""

    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def time(self):
        return self.now.timestamp()

    def advance(self, **delta):
        self.now += timedelta(**delta)


class FakePlatform:
    def __init__(self, mention_token="@relaybot"):
        self.mention_token = mention_token
        self.channels = {}
        self.messages = {}
        self.broken = set()
        self.posts = []
        self.post_errors = []
        self.history_calls = 0
        self.resolve_calls = 0

    def add_channel(self, name, channel_id):
        self.channels[name] = ChannelInfo(id=channel_id, name=name)
        self.messages.setdefault(channel_id, [])

    def add_message(self, channel_id, ts, text, user_id="u1", thread_id=None, is_bot=False, files=()):
        self.messages[channel_id].append(PlatformMessage(
            message_id=f"{channel_id}:{ts}",
            channel_id=channel_id,
            ts=str(ts),
            text=text,
            user_id=user_id,
            thread_id=thread_id,
            is_bot=is_bot,
            files=list(files),
        ))

    def list_channels(self):
        return list(self.channels.values())

    def resolve_channel(self, name):
        self.resolve_calls += 1
        return self.channels.get(name)

    def history(self, channel_id, window_minutes):
        self.history_calls += 1
        if channel_id in self.broken:
            raise PlatformError(f"history unavailable for {channel_id}")
        return list(self.messages.get(channel_id, []))

    def post(self, channel_id, thread_id, text):
        if self.post_errors:
            raise self.post_errors.pop(0)
        self.posts.append((channel_id, thread_id, text))
        return PostConfirmation(channel_id=channel_id, ts=str(1000 + len(self.posts)), thread_id=thread_id)

    def download_file(self, ref, dest_dir):
        return f"{dest_dir}/{ref}"


class FakeProvider:
    def __init__(self, reply="Here is an answer about artificial intelligence."):
        self.reply = reply
        self.prompts = []
        self.errors = []

    def generate(self, prompt, attachments=()):
        self.prompts.append(prompt)
        if self.errors:
            raise self.errors.pop(0)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


class FailingProvider(FakeProvider):
    def generate(self, prompt, attachments=()):
        raise GenerationError("backend down")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        channels=("general",),
        trigger_keywords=("AI",),
        database_path=str(tmp_path / "db" / "queue.db"),
        state_dir=str(tmp_path / "state"),
        log_dir=str(tmp_path / "logs"),
        lock_wait=0,
        fetch_cooldown=60,
        tick_interval=0,
    )


@pytest.fixture
def store(settings, clock):
    s = QueueStore.open(settings.database_path, max_retries=settings.max_retries, clock=clock)
    yield s
    s.close()


@pytest.fixture
def cache(clock):
    return TTLCache(clock=clock.time)


@pytest.fixture
def lock(settings, clock):
    return ApiLock(settings.lock_path, wait=settings.lock_wait, max_hold=settings.lock_max_hold,
                   clock=clock.time, sleep=lambda s: clock.advance(seconds=s))


@pytest.fixture
def budget(settings, clock):
    return ApiBudget(settings.budget_path, settings.api_bucket_size, settings.api_refill_seconds, clock=clock.time)


@pytest.fixture
def registry(settings, clock):
    return OperationRegistry(settings.operations_dir, clock=clock.time)


@pytest.fixture
def emergency_stop(clock):
    return EmergencyStop(clock=clock.time)


@pytest.fixture
def guard(store, cache, emergency_stop, settings, clock):
    return LoopGuard(store, cache, emergency_stop, settings, clock=clock.time)


@pytest.fixture
def platform():
    p = FakePlatform()
    p.add_channel("general", "-100")
    return p


@pytest.fixture
def provider():
    return FakeProvider()
