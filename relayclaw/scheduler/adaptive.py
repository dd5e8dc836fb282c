"""Daemon loops.

``AdaptiveScheduler`` alternates between delivery and intake: it sends while
responses are waiting and only fetches when the outbound queue is empty and
the fetch cooldown has passed. While the platform's retry-after is in force it
stays off the API and only processes. ``RoleWorker`` runs one phase on a fixed
interval for the single-purpose daemons. ``Daemon`` wraps either with signal
handling and the PID marker.
"""

import logging
import signal
import threading
import time
from enum import Enum

from relayclaw.errors import LockTimeout, RateLimited
from relayclaw.memory.models import InboundStatus, OutboundStatus

logger = logging.getLogger(__name__)

MONITOR_EVERY = 5


class SchedulerState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    FETCHING = "fetching"
    PROCESSING = "processing"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    TERMINATED_FATAL = "terminated-fatal"

    @property
    def terminal(self):
        return self in (SchedulerState.TERMINATED, SchedulerState.TERMINATED_FATAL)


class ShutdownToken(threading.Event):
    """Set once to ask every loop in the process to stop at its next check."""

    reason = None

    def request(self, reason="requested"):
        if not self.is_set():
            self.reason = reason
            logger.info(f"Shutdown requested ({reason})")
        self.set()


class _Loop:
    def __init__(self, settings, shutdown, clock=time.monotonic):
        self.settings = settings
        self.shutdown = shutdown
        self.clock = clock
        self.state = SchedulerState.IDLE
        self.consecutive_errors = 0
        self.ticks = 0

    def _failed(self, phase, exc):
        self.consecutive_errors += 1
        logger.error(
            f"{phase} failed ({self.consecutive_errors}/{self.settings.max_consecutive_errors}): {exc}",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )

    def _check_fatal(self):
        if self.consecutive_errors >= self.settings.max_consecutive_errors:
            logger.error(f"Too many consecutive errors ({self.consecutive_errors}), shutting down")
            self.state = SchedulerState.TERMINATED_FATAL
            return True
        return False

    def _sleep(self, seconds):
        """Sleep in one-second steps so a shutdown request is noticed promptly."""
        deadline = self.clock() + seconds
        while not self.shutdown.is_set():
            remaining = deadline - self.clock()
            if remaining <= 0:
                return
            self.shutdown.wait(min(1.0, remaining))

    def run(self):
        logger.info(f"{type(self).__name__} started")
        while not self.shutdown.is_set() and not self.state.terminal:
            self.tick()
            if self.state.terminal:
                break
            self._sleep(self.interval)
        if not self.state.terminal:
            self.state = SchedulerState.SHUTTING_DOWN
            self.state = SchedulerState.TERMINATED
        logger.info(f"{type(self).__name__} stopped: {self.state.value}")
        return self.state


class AdaptiveScheduler(_Loop):
    def __init__(self, store, fetcher, processor, sender, monitor, budget, settings, shutdown, clock=time.monotonic):
        super().__init__(settings, shutdown, clock)
        self.store = store
        self.fetcher = fetcher
        self.processor = processor
        self.sender = sender
        self.monitor = monitor
        self.budget = budget
        self.last_fetch = None
        self.interval = settings.tick_interval

    def tick(self):
        if self.state.terminal:
            return self.state
        self.ticks += 1
        try:
            self._phase()
        except (LockTimeout, RateLimited) as e:
            logger.warning(f"Skipping tick {self.ticks}: {e}")
        except Exception as e:
            self._failed(self.state.value, e)
        finally:
            self.state = SchedulerState.IDLE

        if self._check_fatal():
            return self.state
        if self.ticks % MONITOR_EVERY == 0 and not self.shutdown.is_set():
            try:
                self.monitor.sweep()
            except Exception as e:
                logger.error(f"Monitor sweep failed: {e}")
        return self.state

    def _phase(self):
        wait = self.budget.retry_wait()
        if wait > 0:
            logger.info(f"Platform rate limit in force for another {wait:.0f}s; processing only")
            self._process_pending()
            return

        pending = self.store.count_outbound(OutboundStatus.PENDING)
        if pending > 0:
            logger.info(f"Found {pending} pending response(s). Sending...")
            self.state = SchedulerState.SENDING
            self.sender.send_batch(self.settings.send_batch_size)
            self.consecutive_errors = 0
            return

        now = self.clock()
        if self.last_fetch is not None and now - self.last_fetch < self.settings.fetch_cooldown:
            wait = int(self.settings.fetch_cooldown - (now - self.last_fetch))
            logger.debug(f"No pending responses. Next fetch in {wait}s")
            return
        if self.shutdown.is_set():
            return

        self.state = SchedulerState.FETCHING
        self.fetcher.fetch_new()
        self.last_fetch = now
        self.consecutive_errors = 0

        self._process_pending()

    def _process_pending(self):
        if self.shutdown.is_set():
            return
        if self.store.count_inbound(InboundStatus.PENDING) > 0:
            self.state = SchedulerState.PROCESSING
            self.processor.process_batch(self.settings.process_batch_size)


class RoleWorker(_Loop):
    """Runs a single phase (fetch, process or send) on its own interval."""

    def __init__(self, role, action, interval, settings, shutdown, clock=time.monotonic):
        super().__init__(settings, shutdown, clock)
        self.role = role
        self.action = action
        self.interval = interval

    def tick(self):
        if self.state.terminal:
            return self.state
        self.ticks += 1
        try:
            self.action()
            self.consecutive_errors = 0
        except (LockTimeout, RateLimited) as e:
            logger.warning(f"Skipping {self.role} tick {self.ticks}: {e}")
        except Exception as e:
            self._failed(self.role, e)
        self._check_fatal()
        return self.state


class Daemon:
    """Signal handling and process bookkeeping around a loop."""

    def __init__(self, role, loop, pidfile, lock, emergency_stop, shutdown):
        self.role = role
        self.loop = loop
        self.pidfile = pidfile
        self.lock = lock
        self.emergency_stop = emergency_stop
        self.shutdown = shutdown

    def _on_stop(self, signum, frame):
        self.shutdown.request(signal.Signals(signum).name)

    def _on_emergency(self, signum, frame):
        if signum == signal.SIGUSR1:
            self.emergency_stop.activate("manual (SIGUSR1)")
        else:
            self.emergency_stop.deactivate()

    def install_signals(self):
        signal.signal(signal.SIGTERM, self._on_stop)
        signal.signal(signal.SIGINT, self._on_stop)
        signal.signal(signal.SIGUSR1, self._on_emergency)
        signal.signal(signal.SIGUSR2, self._on_emergency)

    def run(self):
        """Run until stopped; returns the process exit code."""
        self.pidfile.create()
        logger.info(f"Starting {self.role} daemon (PID: {self.pidfile.read()})")
        try:
            self.install_signals()
            state = self.loop.run()
        finally:
            if self.lock.held:
                self.lock.release()
            self.pidfile.remove()
            logger.info(f"{self.role} daemon stopped")
        return 1 if state is SchedulerState.TERMINATED_FATAL else 0
