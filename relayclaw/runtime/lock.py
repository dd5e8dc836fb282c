"""Cross-process lock around the chat platform API.

Fetch and send daemons run as separate processes but share one API budget,
so every platform call happens while holding this lock. The lock is a file
created with O_EXCL that carries an ownership token; only the owner may
release it, and a lock older than ``max_hold`` is treated as abandoned and
reclaimed by whoever finds it.
"""

import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from pathlib import Path

from relayclaw.errors import LockTimeout

logger = logging.getLogger(__name__)


class ApiLock:
    def __init__(self, path, wait=60, max_hold=300, poll=0.5, clock=time.time, sleep=time.sleep):
        self.path = Path(path)
        self.wait = wait
        self.max_hold = max_hold
        self.poll = poll
        self.clock = clock
        self.sleep = sleep
        self.token = None

    @property
    def held(self):
        return self.token is not None

    def read(self):
        """Return the lock file contents, or None when unlocked or unreadable."""
        try:
            return json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except ValueError:
            # Half-written by a crashed holder; age it by mtime instead.
            try:
                return {"token": None, "pid": None, "acquired_at": self.path.stat().st_mtime}
            except FileNotFoundError:
                return None

    def age(self, info=None):
        info = info if info is not None else self.read()
        if info is None:
            return None
        return self.clock() - float(info.get("acquired_at") or 0)

    def is_stale(self, info=None):
        age = self.age(info)
        return age is not None and age > self.max_hold

    def _try_create(self):
        token = uuid.uuid4().hex
        payload = json.dumps({"token": token, "pid": os.getpid(), "acquired_at": self.clock()})
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        with os.fdopen(fd, "w") as fh:
            fh.write(payload)
        return token

    def acquire(self):
        if self.held:
            return self.token
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = self.clock() + self.wait
        while True:
            token = self._try_create()
            if token:
                self.token = token
                logger.debug(f"Acquired API lock {self.path}")
                return token

            info = self.read()
            if info is not None and self.is_stale(info):
                logger.warning(f"Reclaiming stale API lock held by PID {info.get('pid')} ({int(self.age(info))}s old)")
                self._reclaim(info)
                continue

            if self.clock() >= deadline:
                holder = info.get("pid") if info else None
                raise LockTimeout(f"could not acquire {self.path} within {self.wait}s (held by PID {holder})")
            self.sleep(self.poll)

    def _reclaim(self, seen):
        """Remove a stale lock without clobbering a fresh one taken meanwhile."""
        aside = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return False
        try:
            moved = json.loads(aside.read_text())
        except ValueError:
            moved = seen
        if moved.get("token") != seen.get("token") and not self.is_stale(moved):
            # Someone re-took the lock between our read and rename; put it back.
            try:
                os.link(aside, self.path)
            except FileExistsError:
                logger.warning("API lock was re-acquired while restoring a live holder")
            aside.unlink()
            return False
        aside.unlink()
        return True

    def release(self):
        if not self.held:
            return False
        info = self.read()
        token, self.token = self.token, None
        if info is None or info.get("token") != token:
            logger.warning("API lock was reclaimed by another process before release")
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.debug(f"Released API lock {self.path}")
        return True

    def force_clear(self, seen=None):
        """Delete the lock regardless of owner. Used by the stuck-operation sweep.

        With ``seen`` (an earlier ``read()``), only that particular lock is
        removed; a lock re-taken since then is left alone.
        """
        info = seen if seen is not None else self.read()
        if info is None:
            return False
        return self._reclaim(info) if info.get("token") else self._unlink()

    def _unlink(self):
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False

    @contextmanager
    def hold(self):
        self.acquire()
        try:
            yield self
        finally:
            self.release()
