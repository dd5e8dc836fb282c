import json
import logging
import os
from pathlib import Path

from relayclaw.errors import DuplicateKey, FetchError, PlatformError, RateLimited
from relayclaw.memory.cache import CHANNEL_TTL, HISTORY_TTL
from relayclaw.memory.models import InboundItem, utcnow

logger = logging.getLogger(__name__)


def matches_trigger(text, keywords, mode="all", mention=""):
    """Case-insensitive keyword match; ``mentions`` mode also needs the mention token."""
    lowered = text.lower()
    if mode == "mentions":
        if not mention or mention.lower() not in lowered:
            return False
        return not keywords or any(k.lower() in lowered for k in keywords)
    return any(k.lower() in lowered for k in keywords)


class ChannelRotator:
    """Remembers where the last fetch stopped so every channel gets its turn.

    When a fetch is cut short (batch limit, rate limit) the next one starts
    with the first channel that was skipped.
    """

    def __init__(self, path):
        self.path = Path(path)

    def _start(self):
        try:
            return int(json.loads(self.path.read_text())["next"])
        except FileNotFoundError:
            return 0
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Resetting unreadable channel rotation state {self.path}")
            return 0

    def order(self, channels):
        start = self._start() % len(channels)
        return channels[start:] + channels[:start]

    def advance(self, channels, checked):
        start = (self._start() + checked) % len(channels)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps({"next": start}))
        os.replace(tmp, self.path)
        return start


class Fetcher:
    """Pull recent channel history and queue the messages worth answering."""

    def __init__(self, store, platform, cache, lock, budget, registry, settings, clock=utcnow):
        self.store = store
        self.platform = platform
        self.cache = cache
        self.lock = lock
        self.budget = budget
        self.rotator = ChannelRotator(settings.rotation_path)
        self.registry = registry
        self.settings = settings
        self.clock = clock

    def _call(self, endpoint, call):
        """Make one platform API call against the shared budget."""
        wait = self.budget.take(endpoint)
        if wait:
            raise RateLimited(f"API budget exhausted ({endpoint})", retry_after=wait)
        try:
            return call()
        except RateLimited as e:
            self.budget.defer(e.retry_after)
            raise

    def _cached(self, key, ttl, lookup):
        value = self.cache.get(key)
        if value is not None:
            self.cache.increment_rate_limit_saves()
            return value
        value = lookup()
        if value is not None:
            self.cache.set(key, value, ttl=ttl)
        return value

    def resolve_channel(self, name):
        channel = self._cached(
            f"channel:{name}", CHANNEL_TTL, lambda: self._call("resolve", lambda: self.platform.resolve_channel(name)),
        )
        if channel is None:
            raise PlatformError(f"channel {name} not found")
        return channel

    def _history(self, channel_id, window):
        return self._cached(
            f"history:{channel_id}:{window}",
            HISTORY_TTL,
            lambda: self._call("history", lambda: self.platform.history(channel_id, window)),
        )

    def _mention(self):
        if self.settings.response_mode != "mentions":
            return ""
        return self.settings.mention_token or self._call("mention", lambda: self.platform.mention_token)

    def fetch_new(self, channels=None, window=None):
        channels = list(channels or self.settings.channels)
        window = window or self.settings.check_window_minutes
        if not channels:
            logger.warning("No channels configured (RELAY_CHANNELS)")
            return []

        queued = []
        failed = []
        checked = 0
        limited = False
        with self.registry.track("fetch"), self.lock.hold():
            wait = self.budget.retry_wait()
            if wait > 0:
                raise RateLimited("platform rate limit in force", retry_after=wait)
            mention = self._mention()
            for name in self.rotator.order(channels):
                remaining = self.settings.fetch_batch_size - len(queued)
                if remaining <= 0:
                    logger.info(f"Fetch batch limit ({self.settings.fetch_batch_size}) reached")
                    break
                try:
                    queued.extend(self._fetch_channel(name, window, mention, remaining))
                except RateLimited as e:
                    logger.warning(f"Fetch stopped at {name}: {e}")
                    limited = True
                    break
                except PlatformError as e:
                    logger.error(f"Fetch failed for {name}: {e}")
                    failed.append(name)
                checked += 1
            self.rotator.advance(channels, checked)

        if failed and len(failed) == checked and not limited:
            raise FetchError(f"all {checked} channel(s) failed", channel=failed[0])
        logger.info(f"Fetched {len(queued)} new message(s) from {checked - len(failed)} of {len(channels)} channel(s)")
        return queued

    def _fetch_channel(self, name, window, mention, limit):
        channel = self.resolve_channel(name)
        messages = self._history(channel.id, window)
        queued = []
        for msg in messages:
            if len(queued) >= limit:
                break
            if not self._wanted(msg, mention):
                continue
            item = InboundItem(
                message_id=msg.message_id,
                channel_id=channel.id,
                channel_name=channel.name,
                thread_id=msg.thread_id,
                ts=msg.ts,
                user_id=msg.user_id,
                text=msg.text,
                file_paths=self._download(msg, channel.id),
                fetched_at=self.clock(),
            )
            try:
                self.store.enqueue_inbound(item)
            except DuplicateKey:
                logger.debug(f"{item.message_id} already queued")
                continue
            queued.append(item)
        return queued

    def _wanted(self, msg, mention):
        if not msg.text or not msg.text.strip():
            return False
        if msg.is_bot:
            return False
        if self.store.is_self_response(
            msg.channel_id,
            msg.thread_id,
            msg.text,
            within_minutes=self.settings.self_response_window_minutes,
            fuzzy=self.settings.self_response_fuzzy,
        ):
            logger.debug(f"Skipping {msg.message_id}: our own response")
            return False
        if self.store.has_responded(msg.message_id):
            return False
        if self.store.get_inbound(msg.message_id) is not None:
            return False
        return matches_trigger(msg.text, self.settings.trigger_keywords, self.settings.response_mode, mention)

    def _download(self, msg, channel_id):
        paths = []
        dest = self.settings.attachments_dir / channel_id
        for ref in msg.files:
            try:
                paths.append(self._call("download", lambda: self.platform.download_file(ref, dest)))
            except PlatformError as e:
                logger.warning(f"Could not download attachment {ref} of {msg.message_id}: {e}")
        return paths
