"""
Log setup for the broker.

Everything logs under the "sandterm" logger. Operators get one line per
record on stderr (coloured when stderr is a terminal); LOG_FILE adds a
JSON-lines copy for later analysis. Session context rides along through
``extra=`` using the keys in CONTEXT_FIELDS.

Credentials pass through this process (E2B key, R2 and Azure keys), so every
formatter masks values registered with register_secret() before a line is
written anywhere.

    logger = get_logger("mount")
    logger.info("Mount verified", extra={"sandbox_id": sbx, "backend": "r2"})
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Optional, Set

ROOT = "sandterm"
MASK = "***"

CONTEXT_FIELDS = ("connection_id", "sandbox_id", "backend", "exit_code", "duration")

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}
_RESET = "\033[0m"

# Shorter values would mask ordinary words
_MIN_SECRET_LEN = 6

_secrets: Set[str] = set()
_handlers: Dict[str, logging.Handler] = {}


def register_secret(value: Optional[str]) -> None:
    """Mask value wherever it would appear in log output."""
    if value and len(value) >= _MIN_SECRET_LEN:
        _secrets.add(value)


def redact(text: str) -> str:
    # longest first, so a secret containing another is masked whole
    for secret in sorted(_secrets, key=len, reverse=True):
        text = text.replace(secret, MASK)
    return text


def _context(record: logging.LogRecord) -> Dict[str, object]:
    fields = {}
    for key in CONTEXT_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            fields[key] = value
    return fields


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, timezone.utc)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS [  LEVEL] message key=value ...`` plus any traceback."""

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"[{record.levelname:>7}]"
        if self.color:
            level = f"{_LEVEL_COLORS.get(record.levelno, '')}{level}{_RESET}"
        fields = "".join(f" {key}={value}" for key, value in _context(record).items())

        line = f"{_timestamp(record):%H:%M:%S} {level} {record.getMessage()}{fields}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return redact(line)


class JsonLinesFormatter(logging.Formatter):
    """One JSON object per record; context fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": _timestamp(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[1]:
            entry["error"] = str(record.exc_info[1])
            entry["error_type"] = type(record.exc_info[1]).__name__
        return redact(json.dumps(entry, default=str))


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    secrets: Iterable[str] = (),
) -> None:
    """
    Attach the console handler and, if asked, a JSON-lines file handler.

    May be called repeatedly: the level is updated and secrets are added
    each time, but a destination never gets a second handler.

    Args:
        level: DEBUG, INFO, WARNING or ERROR (unknown names mean INFO)
        log_file: Where to append JSON lines
        secrets: Values to mask in every formatted line
    """
    root = logging.getLogger(ROOT)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for secret in secrets:
        register_secret(secret)

    if "console" not in _handlers:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ConsoleFormatter(color=sys.stderr.isatty()))
        root.addHandler(console)
        _handlers["console"] = console

    if log_file is not None:
        key = str(Path(log_file).resolve())
        if key not in _handlers:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(key)
            handler.setFormatter(JsonLinesFormatter())
            root.addHandler(handler)
            _handlers[key] = handler


def get_logger(name: str) -> logging.Logger:
    """Logger under the sandterm namespace; bare names are prefixed."""
    if name != ROOT and not name.startswith(ROOT + "."):
        name = f"{ROOT}.{name}"
    return logging.getLogger(name)
