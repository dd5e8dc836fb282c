"""Loop prevention.

The bot answers messages that contain trigger words, so its own replies
(and replies quoting them) could trigger it again. ``LoopGuard`` is consulted
by the processor before a response is queued and by the sender right before
it is posted, since loop state can change in between.
"""

import logging
import re
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from relayclaw.memory.cache import CLAIM_TTL

logger = logging.getLogger(__name__)

RUNAWAY_WINDOW = 10 * 60
AUTO_RECOVER_AFTER = 30 * 60
USER_WINDOW = 60 * 60


class Decision(str, Enum):
    ALLOWED = "allowed"
    BLOCKED_DUPLICATE = "blocked-duplicate"
    BLOCKED_SELF = "blocked-self"
    BLOCKED_EMERGENCY_STOP = "blocked-emergency-stop"
    BLOCKED_RATE_LIMIT = "blocked-rate-limit"

    @property
    def allowed(self):
        return self is Decision.ALLOWED


@dataclass
class ContentCheck:
    modified: bool
    cleaned: str
    triggers: List[str] = field(default_factory=list)


class EmergencyStop:
    """Process-wide kill switch for outgoing responses.

    Starts inactive. A stop raised by the runaway detector clears itself after
    ``recover_after`` seconds; a manual stop stays until deactivated.
    """

    def __init__(self, recover_after=AUTO_RECOVER_AFTER, clock=time.time):
        self.recover_after = recover_after
        self.clock = clock
        self._lock = threading.Lock()
        self._active = False
        self._automatic = False
        self.reason = None
        self.activated_at = None

    def activate(self, reason="manual", automatic=False):
        with self._lock:
            self._active = True
            self._automatic = automatic
            self.reason = reason
            self.activated_at = self.clock()
        logger.error(f"EMERGENCY STOP ACTIVATED: {reason}")

    def deactivate(self):
        with self._lock:
            was_active = self._active
            self._active = False
            self._automatic = False
            self.reason = None
            self.activated_at = None
        if was_active:
            logger.warning("Emergency stop deactivated")
        return was_active

    @property
    def active(self):
        with self._lock:
            if not self._active:
                return False
            if self._automatic and self.clock() - self.activated_at >= self.recover_after:
                self._active = False
                self._automatic = False
                self.reason = None
                self.activated_at = None
                logger.info("Emergency stop auto-recovered")
                return False
            return True

    def status(self):
        active = self.active
        with self._lock:
            return {
                "active": active,
                "automatic": self._automatic,
                "reason": self.reason,
                "activated_at": self.activated_at,
            }


def mask_word(match):
    return re.sub(r"\w", "*", match.group(0))


ZERO_WIDTH_SPACE = "\u200b"


def break_word(match):
    """Split a trigger embedded in a longer word so a substring match no longer finds it."""
    text = match.group(0)
    return text[0] + ZERO_WIDTH_SPACE + text[1:]


class LoopGuard:
    def __init__(self, store, cache, emergency_stop, settings, clock=time.time):
        self.store = store
        self.cache = cache
        self.emergency_stop = emergency_stop
        self.settings = settings
        self.clock = clock
        self._lock = threading.Lock()
        self._user_hits = defaultdict(deque)
        self._thread_hits = defaultdict(deque)
        self._trigger_patterns = [
            re.compile(rf"(?<!\w){re.escape(word)}(?!\w)", re.IGNORECASE)
            for word in settings.trigger_keywords
        ]
        self._embedded_patterns = [re.compile(re.escape(word), re.IGNORECASE) for word in settings.trigger_keywords if len(word) > 1]

    @staticmethod
    def _claim_key(message_id):
        return f"claim:{message_id}"

    def _prune(self, hits, window):
        cutoff = self.clock() - window
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def check_and_record_message(self, item):
        """Decide whether an inbound item may be answered; record a provisional claim if so."""
        if self.store.is_self_response(
            item.channel_id,
            item.thread_id,
            item.text,
            within_minutes=self.settings.self_response_window_minutes,
            fuzzy=self.settings.self_response_fuzzy,
        ):
            return self._blocked(Decision.BLOCKED_SELF, item.message_id)
        if self.store.has_responded(item.message_id) or self._claim_key(item.message_id) in self.cache:
            return self._blocked(Decision.BLOCKED_DUPLICATE, item.message_id)

        if item.user_id:
            with self._lock:
                hits = self._user_hits[item.user_id]
                self._prune(hits, USER_WINDOW)
                if len(hits) >= self.settings.max_responses_per_user_per_hour:
                    return self._blocked(Decision.BLOCKED_RATE_LIMIT, item.message_id)
                hits.append(self.clock())

        self.cache.set(self._claim_key(item.message_id), True, ttl=CLAIM_TTL)
        return Decision.ALLOWED

    def release_claim(self, message_id):
        """Forget a provisional claim so a failed item can be retried."""
        self.cache.delete(self._claim_key(message_id))

    def should_allow_response(self, outbound):
        if self.emergency_stop.active:
            return self._blocked(Decision.BLOCKED_EMERGENCY_STOP, outbound.message_id)
        if self.store.has_responded(outbound.message_id):
            return self._blocked(Decision.BLOCKED_DUPLICATE, outbound.message_id)
        recent = self.store.self_response_count(
            outbound.channel_id, outbound.thread_id, within_minutes=self.settings.thread_window_minutes,
        )
        if recent >= self.settings.max_responses_per_thread:
            return self._blocked(Decision.BLOCKED_RATE_LIMIT, outbound.message_id)
        return Decision.ALLOWED

    def _blocked(self, decision, message_id):
        logger.warning(f"Loop prevention {decision.value} for {message_id}")
        return decision

    def validate_response_content(self, text):
        """Strip signature markers and defuse trigger words in outgoing text.

        Standalone trigger words are masked with asterisks. Triggers inside
        longer words ("said" for "ai") get a zero-width space, since inbound
        triggering is a plain substring match.
        """
        cleaned = text
        for marker in self.settings.signature_markers:
            cleaned = cleaned.replace(marker, "")
        if cleaned != text:
            cleaned = cleaned.strip()

        triggers = []
        for pattern in self._trigger_patterns:
            triggers.extend(m.group(0) for m in pattern.finditer(cleaned))
            cleaned = pattern.sub(mask_word, cleaned)
        for pattern in self._embedded_patterns:
            while True:
                found = [m.group(0) for m in pattern.finditer(cleaned)]
                if not found:
                    break
                triggers.extend(found)
                cleaned = pattern.sub(break_word, cleaned)
        if triggers:
            logger.warning(f"Response contained trigger words {triggers}; masked")
        return ContentCheck(modified=cleaned != text, cleaned=cleaned, triggers=triggers)

    def record_response(self, channel_id, thread_id):
        """Feed the runaway detector after a successful post."""
        now = self.clock()
        with self._lock:
            hits = self._thread_hits[(channel_id, thread_id)]
            hits.append(now)
            total = 0
            for key in list(self._thread_hits):
                self._prune(self._thread_hits[key], RUNAWAY_WINDOW)
                if not self._thread_hits[key]:
                    del self._thread_hits[key]
                else:
                    total += len(self._thread_hits[key])
        if total >= self.settings.emergency_stop_threshold and not self.emergency_stop.active:
            self.emergency_stop.activate(f"{total} responses in {RUNAWAY_WINDOW // 60} minutes", automatic=True)
        return total

    def status(self):
        with self._lock:
            for hits in self._user_hits.values():
                self._prune(hits, USER_WINDOW)
            users = sum(1 for hits in self._user_hits.values() if hits)
            threads = len(self._thread_hits)
        return {
            "emergency_stop": self.emergency_stop.status(),
            "tracked_users": users,
            "tracked_threads": threads,
            "config": {
                "max_responses_per_thread": self.settings.max_responses_per_thread,
                "thread_window_minutes": self.settings.thread_window_minutes,
                "max_responses_per_user_per_hour": self.settings.max_responses_per_user_per_hour,
                "emergency_stop_threshold": self.settings.emergency_stop_threshold,
                "trigger_keywords": list(self.settings.trigger_keywords),
            },
        }
