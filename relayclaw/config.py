"""Configuration loaded from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

from relayclaw.errors import ConfigError

load_dotenv()


def _csv(value):
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _int(name, default):
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float(name, default):
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _bool(name, default):
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes", "on")


# Telegram
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
RELAY_CHANNELS = _csv(os.getenv("RELAY_CHANNELS", ""))

# Triggering
TRIGGER_KEYWORDS = _csv(os.getenv("TRIGGER_KEYWORDS", "AI"))
RESPONSE_MODE = os.getenv("RESPONSE_MODE", "all").lower()
MENTION_TOKEN = os.getenv("MENTION_TOKEN", "")
CHECK_WINDOW_MINUTES = _int("CHECK_WINDOW_MINUTES", 5)

# LLM
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "ollama").lower()
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen2.5:14b-instruct-q5_K_M")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-3-5-haiku-latest")
LLM_CLI_COMMAND = os.getenv("LLM_CLI_COMMAND", "claude")
RESPONSE_STYLE = os.getenv("RESPONSE_STYLE", "conversational")

# Scheduling
TICK_INTERVAL = _float("TICK_INTERVAL", 60)
FETCH_COOLDOWN = _float("FETCH_COOLDOWN", 60)
FETCH_INTERVAL = _float("FETCH_INTERVAL", 180)
PROCESS_INTERVAL = _float("PROCESS_INTERVAL", 30)
SEND_INTERVAL = _float("SEND_INTERVAL", 60)
SEND_BATCH_SIZE = _int("SEND_BATCH_SIZE", 20)
FETCH_BATCH_SIZE = _int("FETCH_BATCH_SIZE", 50)
PROCESS_BATCH_SIZE = _int("PROCESS_BATCH_SIZE", 10)
MAX_RETRIES = _int("MAX_RETRIES", 3)
MAX_CONSECUTIVE_ERRORS = _int("MAX_CONSECUTIVE_ERRORS", 10)

# Per-phase ceilings (seconds)
FETCH_TIMEOUT = _float("FETCH_TIMEOUT", 300)
GENERATION_TIMEOUT = _float("GENERATION_TIMEOUT", 900)
SEND_TIMEOUT = _float("SEND_TIMEOUT", 300)
LOCK_WAIT = _float("LOCK_WAIT", 60)
LOCK_MAX_HOLD = _float("LOCK_MAX_HOLD", 300)

# Global platform API budget: a bucket of API_BUCKET_SIZE calls, one token back every API_REFILL_SECONDS
API_BUCKET_SIZE = _int("API_BUCKET_SIZE", 20)
API_REFILL_SECONDS = _float("API_REFILL_SECONDS", 3.0)

# Loop prevention
MAX_RESPONSES_PER_THREAD = _int("MAX_RESPONSES_PER_THREAD", 10)
THREAD_WINDOW_MINUTES = _int("THREAD_WINDOW_MINUTES", 60)
MAX_RESPONSES_PER_USER_PER_HOUR = _int("MAX_RESPONSES_PER_USER_PER_HOUR", 20)
EMERGENCY_STOP_THRESHOLD = _int("EMERGENCY_STOP_THRESHOLD", 20)
SELF_RESPONSE_WINDOW_MINUTES = _int("SELF_RESPONSE_WINDOW_MINUTES", 10)
SELF_RESPONSE_FUZZY = _bool("SELF_RESPONSE_FUZZY", True)
SIGNATURE_MARKERS = _csv(os.getenv("SIGNATURE_MARKERS", ""))

# Storage
DATABASE_PATH = os.getenv("DATABASE_PATH", "./data/db/relayclaw.db")
STATE_DIR = os.getenv("STATE_DIR", "./data/state")
LOG_DIR = os.getenv("LOG_DIR", "./data/logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
MAX_FILE_SIZE = _int("MAX_FILE_SIZE", 10 * 1024 * 1024)


@dataclass(frozen=True)
class Settings:
    """Static configuration handed to every component at startup."""

    telegram_token: str = ""
    channels: Tuple[str, ...] = ()
    trigger_keywords: Tuple[str, ...] = ("AI",)
    response_mode: str = "all"
    mention_token: str = ""
    check_window_minutes: int = 5

    llm_provider: str = "ollama"
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "qwen2.5:14b-instruct-q5_K_M"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-haiku-latest"
    llm_cli_command: str = "claude"
    response_style: str = "conversational"

    tick_interval: float = 60
    fetch_cooldown: float = 60
    fetch_interval: float = 180
    process_interval: float = 30
    send_interval: float = 60
    send_batch_size: int = 20
    fetch_batch_size: int = 50
    process_batch_size: int = 10
    max_retries: int = 3
    max_consecutive_errors: int = 10

    fetch_timeout: float = 300
    generation_timeout: float = 900
    send_timeout: float = 300
    lock_wait: float = 60
    lock_max_hold: float = 300
    api_bucket_size: int = 20
    api_refill_seconds: float = 3.0

    max_responses_per_thread: int = 10
    thread_window_minutes: int = 60
    max_responses_per_user_per_hour: int = 20
    emergency_stop_threshold: int = 20
    self_response_window_minutes: int = 10
    self_response_fuzzy: bool = True
    signature_markers: Tuple[str, ...] = ()

    database_path: str = "./data/db/relayclaw.db"
    state_dir: str = "./data/state"
    log_dir: str = "./data/logs"
    log_level: str = "INFO"
    max_file_size: int = 10 * 1024 * 1024

    role_ceilings: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.response_mode not in ("all", "mentions"):
            raise ConfigError(f"RESPONSE_MODE must be 'all' or 'mentions', got {self.response_mode!r}")
        if self.max_retries < 1:
            raise ConfigError("MAX_RETRIES must be at least 1")
        if self.max_consecutive_errors < 1:
            raise ConfigError("MAX_CONSECUTIVE_ERRORS must be at least 1")
        if self.api_bucket_size < 1 or self.api_refill_seconds <= 0:
            raise ConfigError("API_BUCKET_SIZE must be at least 1 and API_REFILL_SECONDS positive")
        if not self.role_ceilings:
            object.__setattr__(self, "role_ceilings", {
                "fetch": self.fetch_timeout,
                "generate": self.generation_timeout,
                "send": self.send_timeout,
            })

    @property
    def lock_path(self):
        return Path(self.state_dir) / "platform_api.lock"

    @property
    def budget_path(self):
        return Path(self.state_dir) / "api_budget.json"

    @property
    def updates_path(self):
        return Path(self.state_dir) / "telegram_updates.json"

    @property
    def rotation_path(self):
        return Path(self.state_dir) / "channel_rotation.json"

    @property
    def operations_dir(self):
        return Path(self.state_dir) / "operations"

    @property
    def attachments_dir(self):
        return Path(self.state_dir) / "attachments"

    def pid_path(self, role):
        return Path(self.state_dir) / f"{role}_daemon.pid"

    def log_path(self, role):
        return Path(self.log_dir) / f"{role}_daemon.log"


def load_settings(**overrides):
    values = dict(
        telegram_token=TELEGRAM_BOT_TOKEN,
        channels=RELAY_CHANNELS,
        trigger_keywords=TRIGGER_KEYWORDS,
        response_mode=RESPONSE_MODE,
        mention_token=MENTION_TOKEN,
        check_window_minutes=CHECK_WINDOW_MINUTES,
        llm_provider=LLM_PROVIDER,
        ollama_host=OLLAMA_HOST,
        ollama_model=OLLAMA_MODEL,
        anthropic_api_key=ANTHROPIC_API_KEY,
        anthropic_model=ANTHROPIC_MODEL,
        llm_cli_command=LLM_CLI_COMMAND,
        response_style=RESPONSE_STYLE,
        tick_interval=TICK_INTERVAL,
        fetch_cooldown=FETCH_COOLDOWN,
        fetch_interval=FETCH_INTERVAL,
        process_interval=PROCESS_INTERVAL,
        send_interval=SEND_INTERVAL,
        send_batch_size=SEND_BATCH_SIZE,
        fetch_batch_size=FETCH_BATCH_SIZE,
        process_batch_size=PROCESS_BATCH_SIZE,
        max_retries=MAX_RETRIES,
        max_consecutive_errors=MAX_CONSECUTIVE_ERRORS,
        fetch_timeout=FETCH_TIMEOUT,
        generation_timeout=GENERATION_TIMEOUT,
        send_timeout=SEND_TIMEOUT,
        lock_wait=LOCK_WAIT,
        lock_max_hold=LOCK_MAX_HOLD,
        api_bucket_size=API_BUCKET_SIZE,
        api_refill_seconds=API_REFILL_SECONDS,
        max_responses_per_thread=MAX_RESPONSES_PER_THREAD,
        thread_window_minutes=THREAD_WINDOW_MINUTES,
        max_responses_per_user_per_hour=MAX_RESPONSES_PER_USER_PER_HOUR,
        emergency_stop_threshold=EMERGENCY_STOP_THRESHOLD,
        self_response_window_minutes=SELF_RESPONSE_WINDOW_MINUTES,
        self_response_fuzzy=SELF_RESPONSE_FUZZY,
        signature_markers=SIGNATURE_MARKERS,
        database_path=DATABASE_PATH,
        state_dir=STATE_DIR,
        log_dir=LOG_DIR,
        log_level=LOG_LEVEL,
        max_file_size=MAX_FILE_SIZE,
    )
    values.update(overrides)
    return Settings(**values)
