"""
dreamlight.services.log_buffer — Recent log lines for the staff logs viewer
============================================================================

Each process keeps the last few thousand log records in memory.  The
``/api/staff/logs`` endpoints read them back with level, logger-prefix
and substring filters, and can raise or lower the capture level without
a restart.  Nothing is persisted.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from dreamlight.errors import ValidationError

DEFAULT_CAPACITY = 2000
VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_SERVER_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "discord")

_buffer: LogBuffer | None = None
_handler: BufferHandler | None = None
_install_lock = threading.Lock()


@dataclass(frozen=True, slots=True)
class LogEntry:
    timestamp: str
    level: str
    levelno: int
    logger: str
    message: str

    def to_dict(self) -> dict:
        data = asdict(self)
        del data["levelno"]
        return data


class LogBuffer:
    """Bounded, lock-protected deque of :class:`LogEntry`."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def query(
        self,
        *,
        tail: int = 200,
        level: str | None = None,
        prefix: str | None = None,
        search: str | None = None,
    ) -> list[dict]:
        """Newest-last slice of at most *tail* matching entries."""
        floor = _level_number(level) if level else 0
        needle = search.lower() if search else None
        with self._lock:
            snapshot = list(self._entries)

        matched = [
            e.to_dict()
            for e in snapshot
            if e.levelno >= floor
            and (not prefix or e.logger == prefix or e.logger.startswith(prefix + "."))
            and (needle is None or needle in e.message.lower())
        ]
        return matched[-tail:] if tail > 0 else matched


class BufferHandler(logging.Handler):
    def __init__(self, buffer: LogBuffer, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.buffer = buffer
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append(LogEntry(
                timestamp=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                level=record.levelname,
                levelno=record.levelno,
                logger=record.name,
                message=self.format(record),
            ))
        except Exception:
            self.handleError(record)


def _level_number(name: str) -> int:
    name = name.upper()
    if name not in VALID_LEVELS:
        raise ValidationError(f"Invalid level: {name}. Must be one of {', '.join(VALID_LEVELS)}")
    return getattr(logging, name)


def get_buffer() -> LogBuffer:
    global _buffer
    with _install_lock:
        if _buffer is None:
            _buffer = LogBuffer()
        return _buffer


def install_handler(level: int = logging.INFO) -> BufferHandler:
    """Attach the buffer handler to the root logger once per process.

    Uvicorn and discord.py loggers are switched to propagate so their
    records reach the root handler.
    """
    global _handler
    buffer = get_buffer()
    with _install_lock:
        if _handler is None:
            _handler = BufferHandler(buffer, level)
            logging.getLogger().addHandler(_handler)
            for name in _SERVER_LOGGERS:
                logging.getLogger(name).propagate = True
        else:
            _handler.setLevel(level)
        return _handler


def get_logs(
    tail: int = 200,
    level: str | None = None,
    prefix: str | None = None,
    search: str | None = None,
) -> list[dict]:
    return get_buffer().query(tail=tail, level=level, prefix=prefix, search=search)


def get_current_level() -> str:
    if _handler is None:
        return logging.getLevelName(logging.getLogger().getEffectiveLevel())
    return logging.getLevelName(_handler.level)


def set_capture_level(level_name: str) -> str:
    numeric = _level_number(level_name)
    install_handler(numeric)
    # The root logger must let the records through for the handler to see them
    root = logging.getLogger()
    if root.level > numeric:
        root.setLevel(numeric)
    return logging.getLevelName(numeric)
