"""PID markers for daemon roles, plus the terminate-then-kill helper."""

import logging
import os
import uuid
from pathlib import Path

import psutil

from relayclaw.errors import AlreadyRunning

logger = logging.getLogger(__name__)


def pid_alive(pid):
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return psutil.pid_exists(pid)


def terminate_process(pid, grace=5.0):
    """SIGTERM, wait ``grace`` seconds, then SIGKILL. Returns how it ended."""
    try:
        proc = psutil.Process(pid)
        proc.terminate()
        try:
            proc.wait(timeout=grace)
            return "terminated"
        except psutil.TimeoutExpired:
            logger.warning(f"PID {pid} ignored SIGTERM for {grace}s, killing")
            proc.kill()
            proc.wait(timeout=grace)
            return "killed"
    except psutil.NoSuchProcess:
        return "gone"
    except psutil.AccessDenied:
        logger.error(f"Not allowed to signal PID {pid}")
        return "denied"


class PidFile:
    """One file per daemon role holding the PID of the live instance."""

    def __init__(self, path, role):
        self.path = Path(path)
        self.role = role
        self.owned = False

    def read(self):
        try:
            return int(self.path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def running_pid(self):
        """PID of a live instance, or None. Markers left by dead processes are removed."""
        pid = self.read()
        if pid is None:
            return None
        if pid_alive(pid):
            return pid
        logger.info(f"Removing stale {self.role} PID marker ({pid})")
        self._reclaim(pid)
        return None

    def _reclaim(self, seen):
        """Remove a dead marker without clobbering a live one written meanwhile."""
        aside = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return False
        try:
            moved = int(aside.read_text().strip())
        except ValueError:
            moved = None
        if moved != seen and pid_alive(moved):
            try:
                os.link(aside, self.path)
            except FileExistsError:
                logger.warning(f"{self.role} PID marker was re-created while restoring PID {moved}")
            aside.unlink()
            return False
        aside.unlink()
        return True

    def create(self):
        """Write our PID, failing if a live instance holds the marker.

        The marker is hard-linked into place from a fully written temp file,
        so creation is exclusive and nobody ever reads a half-written PID.
        """
        me = os.getpid()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{me}.tmp")
        tmp.write_text(str(me))
        try:
            while True:
                try:
                    os.link(tmp, self.path)
                    break
                except FileExistsError:
                    pid = self.read()
                    if pid == me:
                        break
                    if pid is not None and pid_alive(pid):
                        raise AlreadyRunning(self.role, pid)
                    logger.info(f"Removing stale {self.role} PID marker ({pid})")
                    self._reclaim(pid)
        finally:
            tmp.unlink(missing_ok=True)
        self.owned = True
        return self

    def remove(self):
        if self.owned and self.read() == os.getpid():
            self._unlink()
        self.owned = False

    def _unlink(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self):
        return self.create()

    def __exit__(self, *exc):
        self.remove()
        return False
