"""Exception types shared across the queue pipeline."""


class RelayClawError(Exception):
    pass


class ConfigError(RelayClawError):
    pass


class DuplicateKey(RelayClawError):
    """A row with the same message identifier already exists."""

    def __init__(self, message_id):
        super().__init__(f"duplicate message id: {message_id}")
        self.message_id = message_id


class IllegalTransition(RelayClawError):
    def __init__(self, kind, current, target):
        super().__init__(f"{kind}: cannot move from {current} to {target}")
        self.current = current
        self.target = target


class FetchError(RelayClawError):
    def __init__(self, message, channel=None):
        super().__init__(message)
        self.channel = channel


class GenerationError(RelayClawError):
    pass


class GenerationTimeout(GenerationError):
    def __init__(self, seconds):
        super().__init__(f"generation timed out after {seconds}s")
        self.seconds = seconds


class PlatformError(RelayClawError):
    pass


class RateLimited(PlatformError):
    def __init__(self, message="rate limited", retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


class SendError(PlatformError):
    """A send failed for a transient reason (network, timeout) and may be retried."""


class LockTimeout(RelayClawError):
    pass


class LoopDetected(RelayClawError):
    def __init__(self, decision):
        super().__init__(f"loop prevention: {decision}")
        self.decision = decision


class AlreadyRunning(RelayClawError):
    def __init__(self, role, pid):
        super().__init__(f"{role} daemon is already running (PID {pid})")
        self.role = role
        self.pid = pid
