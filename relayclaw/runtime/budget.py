"""Token bucket for platform API calls, shared across daemon processes.

The bucket lives in a JSON file beside the API lock and is only written by
a process holding that lock, so a plain read-modify-write is safe. It also
remembers the platform-wide retry-after deadline from the last rate-limit
reply, which every daemon honours before touching the API again.
"""

import json
import logging
import os
import time
from pathlib import Path

logger = logging.getLogger(__name__)

# Used when the platform rate-limits us without saying for how long.
DEFAULT_RETRY_AFTER = 30


class ApiBudget:
    def __init__(self, path, bucket_size=20, refill_seconds=3.0, clock=time.time):
        self.path = Path(path)
        self.bucket_size = bucket_size
        self.refill_seconds = refill_seconds
        self.clock = clock

    def _load(self):
        try:
            state = json.loads(self.path.read_text())
        except FileNotFoundError:
            state = {}
        except ValueError:
            logger.warning(f"Resetting unreadable API budget state {self.path}")
            state = {}
        state.setdefault("tokens", float(self.bucket_size))
        state.setdefault("last_refill", self.clock())
        state.setdefault("retry_until", 0.0)
        state.setdefault("total_calls", 0)
        state.setdefault("blocked_calls", 0)
        return state

    def _save(self, state):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(state))
        os.replace(tmp, self.path)

    def _refill(self, state):
        now = self.clock()
        elapsed = max(0.0, now - state["last_refill"])
        state["tokens"] = min(float(self.bucket_size), state["tokens"] + elapsed / self.refill_seconds)
        state["last_refill"] = now
        return now

    def retry_wait(self):
        """Seconds left on the platform's retry-after, 0 when calls may go out."""
        return max(0.0, self._load()["retry_until"] - self.clock())

    def take(self, endpoint):
        """Spend one token on ``endpoint``. Returns 0 when granted, else the seconds to wait."""
        state = self._load()
        now = self._refill(state)
        wait = state["retry_until"] - now
        if wait <= 0:
            if state["tokens"] >= 1:
                state["tokens"] -= 1
                state["total_calls"] += 1
                self._save(state)
                return 0.0
            wait = (1 - state["tokens"]) * self.refill_seconds
        state["blocked_calls"] += 1
        self._save(state)
        logger.warning(f"API budget: {endpoint} call deferred {wait:.0f}s ({state['tokens']:.2f} tokens left)")
        return wait

    def defer(self, retry_after):
        """Record a rate-limit reply; no process calls the API until it has passed."""
        seconds = DEFAULT_RETRY_AFTER if retry_after is None else float(retry_after)
        state = self._load()
        state["retry_until"] = max(state["retry_until"], self.clock() + seconds)
        self._save(state)
        logger.warning(f"Platform rate limit: backing off for {seconds:.0f}s")
        return state["retry_until"]

    def stats(self):
        state = self._load()
        now = self._refill(state)
        return {
            "tokens": round(state["tokens"], 2),
            "bucket_size": self.bucket_size,
            "refill_seconds": self.refill_seconds,
            "retry_in": round(max(0.0, state["retry_until"] - now), 1),
            "total_calls": state["total_calls"],
            "blocked_calls": state["blocked_calls"],
        }
