"""Stuck-operation monitor.

Fetch, generate and send operations drop a small marker file while they
run. ``StuckOperationMonitor.sweep`` compares each marker's age against the
role's ceiling, kills overdue processes, and cleans up what they leave
behind: the API lock and queue rows still claimed by a dead worker.
"""

import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from relayclaw.runtime.pidfile import pid_alive, terminate_process

logger = logging.getLogger(__name__)

LOCK_ROLES = ("fetch", "send")


@dataclass
class Operation:
    role: str
    pid: int
    started_at: float
    path: Path

    def age(self, now):
        return now - self.started_at


class OperationRegistry:
    def __init__(self, directory, clock=time.time):
        self.directory = Path(directory)
        self.clock = clock

    @contextmanager
    def track(self, role, pid=None):
        pid = pid or os.getpid()
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{role}-{pid}.json"
        path.write_text(json.dumps({"role": role, "pid": pid, "started_at": self.clock()}))
        try:
            yield path
        finally:
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def operations(self):
        if not self.directory.exists():
            return []
        found = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                data = json.loads(path.read_text())
                found.append(Operation(data["role"], int(data["pid"]), float(data["started_at"]), path))
            except FileNotFoundError:
                continue
            except (ValueError, KeyError):
                logger.warning(f"Discarding unreadable operation marker {path.name}")
                path.unlink(missing_ok=True)
        return found


@dataclass
class SweepReport:
    terminated: List[str] = field(default_factory=list)
    dropped_markers: int = 0
    lock_cleared: bool = False
    recovered_inbound: int = 0
    recovered_outbound: int = 0

    def __bool__(self):
        return bool(
            self.terminated or self.dropped_markers or self.lock_cleared
            or self.recovered_inbound or self.recovered_outbound
        )

    def summary(self):
        parts = []
        if self.terminated:
            parts.append(f"terminated {', '.join(self.terminated)}")
        if self.dropped_markers:
            parts.append(f"dropped {self.dropped_markers} dead marker(s)")
        if self.lock_cleared:
            parts.append("cleared API lock")
        if self.recovered_inbound or self.recovered_outbound:
            parts.append(f"requeued {self.recovered_inbound} inbound / {self.recovered_outbound} outbound")
        return "; ".join(parts) or "nothing to clean"


class StuckOperationMonitor:
    # Claims younger than this are never touched, even if the owner looks dead.
    CLAIM_GRACE = 60

    def __init__(self, registry, lock, store, ceilings, clock=time.time,
                 is_alive=pid_alive, terminate=terminate_process):
        self.registry = registry
        self.lock = lock
        self.store = store
        self.ceilings = ceilings
        self.clock = clock
        self.is_alive = is_alive
        self.terminate = terminate

    def sweep(self):
        report = SweepReport()
        # Read the lock before the markers: holders register before locking.
        lock_info = self.lock.read()
        now = self.clock()
        live = []

        for op in self.registry.operations():
            if not self.is_alive(op.pid):
                op.path.unlink(missing_ok=True)
                report.dropped_markers += 1
                continue
            ceiling = self.ceilings.get(op.role)
            if ceiling is None or op.age(now) <= ceiling:
                live.append(op)
                continue
            if op.pid == os.getpid():
                logger.warning(f"Own {op.role} operation is {int(op.age(now))}s old (ceiling {ceiling}s)")
                live.append(op)
                continue
            logger.warning(f"Stuck {op.role} operation PID {op.pid}: {int(op.age(now))}s > {ceiling}s, terminating")
            outcome = self.terminate(op.pid)
            op.path.unlink(missing_ok=True)
            report.terminated.append(f"{op.role}:{op.pid} ({outcome})")

        if lock_info is not None:
            holders = [op for op in live if op.role in LOCK_ROLES]
            if not holders:
                logger.warning(f"Clearing orphaned API lock (held by PID {lock_info.get('pid')})")
                report.lock_cleared = self.lock.force_clear(lock_info)
            elif self.lock.is_stale(lock_info):
                logger.warning(f"Clearing API lock held past {self.lock.max_hold}s")
                report.lock_cleared = self.lock.force_clear(lock_info)

        report.recovered_inbound, report.recovered_outbound = self.store.recover_abandoned(
            self.CLAIM_GRACE, is_alive=self.is_alive,
        )
        if report:
            logger.info(f"Sweep: {report.summary()}")
        return report
