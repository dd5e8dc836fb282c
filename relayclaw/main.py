import argparse
import json
import logging
import sys
from functools import cached_property

from relayclaw.bot.telegram_client import TelegramClient
from relayclaw.config import load_settings
from relayclaw.core.agent import create_provider
from relayclaw.core.fetcher import Fetcher
from relayclaw.core.guard import EmergencyStop, LoopGuard
from relayclaw.core.processor import Processor
from relayclaw.core.sender import Sender
from relayclaw.errors import RelayClawError
from relayclaw.logs import setup_logging
from relayclaw.memory.cache import TTLCache
from relayclaw.memory.inbox import QueueStore
from relayclaw.runtime import control
from relayclaw.runtime.budget import ApiBudget
from relayclaw.runtime.lock import ApiLock
from relayclaw.scheduler.adaptive import AdaptiveScheduler, Daemon, RoleWorker, ShutdownToken
from relayclaw.scheduler.monitor import OperationRegistry, StuckOperationMonitor

logger = logging.getLogger(__name__)


class Runtime:
    """Wires the components for one process. Platform and provider are built on first use."""

    def __init__(self, settings):
        self.settings = settings
        self.shutdown = ShutdownToken()
        self.store = QueueStore.open(settings.database_path, max_retries=settings.max_retries)
        self.cache = TTLCache()
        self.lock = ApiLock(settings.lock_path, wait=settings.lock_wait, max_hold=settings.lock_max_hold)
        self.budget = ApiBudget(settings.budget_path, settings.api_bucket_size, settings.api_refill_seconds)
        self.registry = OperationRegistry(settings.operations_dir)
        self.emergency_stop = EmergencyStop()
        self.guard = LoopGuard(self.store, self.cache, self.emergency_stop, settings)
        self.monitor = StuckOperationMonitor(self.registry, self.lock, self.store, settings.role_ceilings)

    @cached_property
    def platform(self):
        s = self.settings
        return TelegramClient(
            s.telegram_token, s.channels, s.mention_token, timeout=s.send_timeout, state_path=s.updates_path,
        )

    @cached_property
    def provider(self):
        return create_provider(self.settings)

    @cached_property
    def fetcher(self):
        return Fetcher(self.store, self.platform, self.cache, self.lock, self.budget, self.registry, self.settings)

    @cached_property
    def processor(self):
        return Processor(self.store, self.provider, self.guard, self.registry, self.settings, self.shutdown)

    @cached_property
    def sender(self):
        return Sender(self.store, self.platform, self.guard, self.lock, self.budget, self.registry, self.settings)

    def send_pending(self):
        if self.store.count_outbound("pending"):
            return self.sender.send_batch()
        return None

    def loop_for(self, role):
        s = self.settings
        if role == "adaptive":
            return AdaptiveScheduler(
                self.store, self.fetcher, self.processor, self.sender, self.monitor, self.budget, s, self.shutdown,
            )
        actions = {
            "fetch": (self.fetcher.fetch_new, s.fetch_interval),
            "process": (self.processor.process_batch, s.process_interval),
            "send": (self.send_pending, s.send_interval),
        }
        action, interval = actions[role]
        return RoleWorker(role, action, interval, s, self.shutdown)

    def close(self):
        self.store.close()


def cmd_run(rt, args):
    daemon = Daemon(
        args.role,
        rt.loop_for(args.role),
        control.pidfile_for(rt.settings, args.role),
        rt.lock,
        rt.emergency_stop,
        rt.shutdown,
    )
    return daemon.run()


def cmd_start(rt, args):
    pid = control.start(rt.settings, args.role)
    if pid is None:
        print(f"{args.role} daemon failed to start")
        return 1
    print(f"{args.role} daemon started (PID: {pid})")
    return 0


def cmd_stop(rt, args):
    outcome = control.stop(rt.settings, args.role)
    print(f"{args.role} daemon {outcome}" if outcome else f"{args.role} daemon is not running")
    return 0


def cmd_restart(rt, args):
    cmd_stop(rt, args)
    return cmd_start(rt, args)


def cmd_status(rt, args):
    for row in control.status(rt.settings):
        state = f"running (PID: {row['pid']})" if row["running"] else "stopped"
        print(f"  {row['role']:<10} {state}")
    return 0


def cmd_logs(rt, args):
    for line in control.logs(rt.settings, args.role, args.lines):
        print(line)
    return 0


def cmd_queue(rt, args):
    if args.action == "fetch":
        items = rt.fetcher.fetch_new()
        print(f"Queued {len(items)} new message(s)")
    elif args.action == "process":
        print(f"Process: {rt.processor.process_batch(args.limit)}")
    elif args.action == "send":
        print(f"Send: {rt.sender.send_batch(args.limit)}")
    elif args.action == "retry":
        inbound, outbound = rt.store.retry_failed()
        print(f"Reset {inbound} inbound and {outbound} outbound item(s) to pending")
    else:
        lock = rt.lock.read()
        print(json.dumps({
            "queues": rt.store.counts(),
            "lock": {"held_by": lock.get("pid"), "age_seconds": round(rt.lock.age(lock), 1)} if lock else None,
            "operations": [{"role": op.role, "pid": op.pid} for op in rt.registry.operations()],
            "api_budget": rt.budget.stats(),
            "loop_prevention": rt.guard.status()["config"],
        }, indent=2))
    return 0


def cmd_emergency_stop(rt, args):
    reached = control.emergency_stop(rt.settings, args.state == "on")
    if not reached:
        print("No running daemons to signal")
        return 1
    print(f"Emergency stop {args.state}: signalled {', '.join(reached)}")
    return 0


def cmd_ask(rt, args):
    print(rt.processor.answer(args.text, args.file or ()))
    return 0


def cmd_sweep(rt, args):
    report = rt.monitor.sweep()
    print(report.summary())
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="relayclaw", description="Telegram relay bot with a persistent work queue")
    sub = parser.add_subparsers(dest="command", required=True)
    roles = control.ROLES

    for name, handler, help_text in (
        ("start", cmd_start, "start a daemon in the background"),
        ("stop", cmd_stop, "stop a running daemon"),
        ("restart", cmd_restart, "stop then start a daemon"),
        ("run", cmd_run, "run a daemon in the foreground"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("role", choices=roles, nargs="?" if name != "run" else None, default="adaptive")
        p.set_defaults(func=handler)

    p = sub.add_parser("status", help="show which daemons are running")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("logs", help="print the tail of a daemon log")
    p.add_argument("role", choices=roles)
    p.add_argument("-n", "--lines", type=int, default=50)
    p.set_defaults(func=cmd_logs)

    p = sub.add_parser("queue", help="run one queue operation now")
    p.add_argument("action", choices=("fetch", "process", "send", "status", "retry"))
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=cmd_queue)

    p = sub.add_parser("emergency-stop", help="pause or resume posting in all daemons")
    p.add_argument("state", choices=("on", "off"))
    p.set_defaults(func=cmd_emergency_stop)

    p = sub.add_parser("ask", help="generate a reply directly, bypassing the queue")
    p.add_argument("text")
    p.add_argument("--file", action="append", help="attachment path (repeatable)")
    p.set_defaults(func=cmd_ask)

    p = sub.add_parser("sweep", help="clean up stuck operations and orphaned locks")
    p.set_defaults(func=cmd_sweep)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
    except RelayClawError as e:
        print(f"ERROR: {e}")
        return 2

    role = args.role if args.command == "run" else "cli"
    setup_logging(settings, role=role, to_file=args.command == "run")
    rt = Runtime(settings)
    try:
        return args.func(rt, args)
    except RelayClawError as e:
        logger.error(str(e))
        print(f"ERROR: {e}")
        return 1
    finally:
        rt.close()


if __name__ == "__main__":
    sys.exit(main())
