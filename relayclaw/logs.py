import logging
import sys
from collections import deque
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s - [{role}] - %(levelname)s - %(message)s"


def setup_logging(settings, role="cli", to_file=True):
    """Configure the root logger for one process: stderr plus a per-role file."""
    formatter = logging.Formatter(LOG_FORMAT.format(role=role.upper()))
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if to_file:
        path = settings.log_path(role)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=3)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # httpx logs every request at INFO; the bot polls often enough to drown the log.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return root


def tail(path, lines=50):
    path = Path(path)
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        return [line.rstrip("\n") for line in deque(fh, maxlen=lines)]
