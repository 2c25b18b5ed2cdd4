"""Logging utilities for Memini.

Two layers:
- setup_logging(): standard library logging to a timestamped file plus a
  quiet console handler, shared by every module's LOGGER.
- ActivityLog: the bounded, user-visible activity feed the CLI renders each
  tick. Every line is also forwarded to the "memini.activity" logger.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional


def setup_logging(level: int = logging.INFO, log_dir: Optional[Path] = None) -> logging.Logger:
    """Setup logging configuration for Memini.

    Args:
        level: Logging level for the file handler (default: INFO)
        log_dir: Directory for log files (default: ./logs)

    Returns:
        Configured "memini" logger
    """
    log_dir = Path(log_dir) if log_dir else Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"memini_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    logger = logging.getLogger("memini")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    logger.handlers = []

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))

    # Console stays quiet; the activity feed is the user-facing channel.
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.ERROR)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    logger.info("=" * 80)
    logger.info("Memini session started")
    logger.info(f"Log file: {log_file}")
    logger.info("=" * 80)

    return logger


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    USER = "USER"
    ASSISTANT = "MEMINI"


_STDLIB_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.USER: logging.INFO,
    LogLevel.ASSISTANT: logging.INFO,
}


@dataclass(frozen=True)
class LogLine:
    seq: int
    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=datetime.now)

    def render(self) -> str:
        return f"[{self.timestamp.strftime('%H:%M:%S')}] {self.level.value:<6} {self.message}"


class ActivityLog:
    """Bounded activity feed.

    Lines carry a monotonically increasing sequence number so a renderer can
    ask for everything after the last line it printed even after old lines
    have been evicted.
    """

    def __init__(self, max_lines: int = 1000, logger: Optional[logging.Logger] = None):
        self._lines: deque[LogLine] = deque(maxlen=max_lines)
        self._seq = 0
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger("memini.activity")

    def push(self, level: LogLevel | str, message: str) -> LogLine:
        level = _coerce_level(level)
        with self._lock:
            self._seq += 1
            line = LogLine(seq=self._seq, level=level, message=message)
            self._lines.append(line)
        self._logger.log(_STDLIB_LEVELS[level], message)
        return line

    def info(self, message: str) -> LogLine:
        return self.push(LogLevel.INFO, message)

    def warn(self, message: str) -> LogLine:
        return self.push(LogLevel.WARN, message)

    def error(self, message: str) -> LogLine:
        return self.push(LogLevel.ERROR, message)

    def user(self, message: str) -> LogLine:
        return self.push(LogLevel.USER, message)

    def assistant(self, message: str) -> LogLine:
        return self.push(LogLevel.ASSISTANT, message)

    def since(self, seq: int) -> List[LogLine]:
        with self._lock:
            return [line for line in self._lines if line.seq > seq]

    def tail(self, count: int) -> List[LogLine]:
        with self._lock:
            return list(self._lines)[-count:] if count > 0 else []

    def extend(self, level: LogLevel | str, messages: Iterable[str]) -> None:
        for message in messages:
            self.push(level, message)

    @property
    def last_seq(self) -> int:
        return self._seq

    def __len__(self) -> int:
        return len(self._lines)


def _coerce_level(level: LogLevel | str) -> LogLevel:
    if isinstance(level, LogLevel):
        return level
    try:
        return LogLevel(level.upper())
    except ValueError:
        return LogLevel.INFO


def mask_key(key: str) -> str:
    """Mask a secret for display, keeping the last four characters."""
    if len(key) <= 4:
        return "***"
    return f"***{key[-4:]}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the memini namespace."""
    if name.startswith("memini"):
        return logging.getLogger(name)
    return logging.getLogger(f"memini.{name}")
