"""Start, stop and inspect daemon processes from the command line."""

import logging
import os
import signal
import subprocess
import sys
import time

from relayclaw.errors import AlreadyRunning
from relayclaw.logs import tail
from relayclaw.runtime.pidfile import PidFile, terminate_process

logger = logging.getLogger(__name__)

ROLES = ("adaptive", "fetch", "process", "send")


def pidfile_for(settings, role):
    return PidFile(settings.pid_path(role), role)


def start(settings, role, wait=5.0):
    """Launch ``relayclaw run <role>`` detached and wait for its PID marker."""
    pidfile = pidfile_for(settings, role)
    pid = pidfile.running_pid()
    if pid:
        raise AlreadyRunning(role, pid)
    proc = subprocess.Popen(
        [sys.executable, "-m", "relayclaw.main", "run", role],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        cwd=os.getcwd(),
    )
    deadline = time.monotonic() + wait
    while time.monotonic() < deadline:
        if pidfile.read() == proc.pid:
            return proc.pid
        if proc.poll() is not None:
            break
        time.sleep(0.2)
    if proc.poll() is not None:
        logger.error(f"{role} daemon exited with code {proc.returncode}; see {settings.log_path(role)}")
        return None
    return proc.pid


def stop(settings, role, grace=10.0):
    pidfile = pidfile_for(settings, role)
    pid = pidfile.running_pid()
    if not pid:
        return None
    outcome = terminate_process(pid, grace=grace)
    if outcome == "killed":
        # SIGKILL skips the daemon's own cleanup.
        pidfile.path.unlink(missing_ok=True)
    return outcome


def status(settings):
    rows = []
    for role in ROLES:
        pid = pidfile_for(settings, role).running_pid()
        rows.append({"role": role, "pid": pid, "running": pid is not None})
    return rows


def logs(settings, role, lines=50):
    return tail(settings.log_path(role), lines)


def signal_daemons(settings, signum):
    """Send ``signum`` to every running daemon; returns the roles reached."""
    reached = []
    for role in ROLES:
        pid = pidfile_for(settings, role).running_pid()
        if not pid:
            continue
        try:
            os.kill(pid, signum)
            reached.append(role)
        except ProcessLookupError:
            continue
    return reached


def emergency_stop(settings, on):
    return signal_daemons(settings, signal.SIGUSR1 if on else signal.SIGUSR2)
