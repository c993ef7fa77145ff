"""Structured logging for the proxy.

A :class:`Logger` writes records through a formatter chosen for the cloud
provider it runs on. :class:`Entry` objects carry extra fields and never
change the fields of the entry they were derived from.
"""

from __future__ import annotations

import json
import os
import sys
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TextIO

from modproxy.errors import AthensError, Level, kind_text, ops, severity

__all__ = [
    "LogRecord",
    "JSONFormatter",
    "DevFormatter",
    "Entry",
    "Logger",
    "no_op_logger",
    "set_entry_in_context",
    "entry_from_context",
]

_KEY_TIME = "time"
_KEY_MSG = "msg"
_KEY_LEVEL = "level"

_GCP_FIELD_MAP = {_KEY_LEVEL: "severity", _KEY_MSG: "message", _KEY_TIME: "timestamp"}

_CONTEXT_KEY = "modproxy.log_entry"


@dataclass
class LogRecord:
    """A single message to be formatted and written."""

    level: Level
    message: str
    time: datetime
    data: dict[str, Any] = field(default_factory=dict)


def _rfc3339(moment: datetime) -> str:
    text = moment.isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


def _kitchen(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d}{suffix}"


def _json_value(value: Any) -> Any:
    if isinstance(value, BaseException):
        return str(value)
    return value


class JSONFormatter:
    """Formats records as one JSON object per line, keys sorted."""

    def __init__(
        self,
        field_map: Mapping[str, str] | None = None,
        disable_timestamp: bool = False,
    ) -> None:
        self.field_map = dict(field_map or {})
        self.disable_timestamp = disable_timestamp

    def _key(self, name: str) -> str:
        return self.field_map.get(name, name)

    def format(self, record: LogRecord) -> str:
        """Return the JSON line for ``record``."""
        data = {key: _json_value(value) for key, value in record.data.items()}
        for standard in (_KEY_MSG, _KEY_LEVEL, _KEY_TIME):
            key = self._key(standard)
            if key in data:
                data["fields." + key] = data.pop(key)
        if not self.disable_timestamp:
            data[self._key(_KEY_TIME)] = _rfc3339(record.time)
        data[self._key(_KEY_MSG)] = record.message
        data[self._key(_KEY_LEVEL)] = record.level.label
        encoded = json.dumps(
            data,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        )
        return encoded + "\n"


def _terminal_supports_color() -> bool:
    if "NO_COLOR" in os.environ or os.environ.get("TERM") == "dumb":
        return False
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


class DevFormatter:
    """Human-readable, optionally coloured output for development."""

    _LIGHT_GREY = 0xFFCCC
    _YELLOW = 33
    _RED = 31
    _CYAN = 36
    _MAGENTA = 35

    def __init__(self, color: bool | None = None) -> None:
        self.color = _terminal_supports_color() if color is None else color

    def _paint(self, code: int, text: str) -> str:
        if not self.color:
            return text
        return f"\x1b[{code}m{text}\x1b[0m"

    def format(self, record: LogRecord) -> str:
        """Return the text line for ``record``."""
        code = {
            Level.DEBUG: self._LIGHT_GREY,
            Level.WARN: self._YELLOW,
            Level.ERROR: self._RED,
        }.get(record.level, self._CYAN)
        parts = [
            self._paint(code, record.level.label.upper()),
            f"[{_kitchen(record.time)}]",
            ": ",
            record.message,
            "\t",
        ]
        parts.extend(
            f"{self._paint(self._MAGENTA, key)}={record.data[key]} "
            for key in sorted(record.data)
        )
        parts.append("\n")
        return "".join(parts)


class Entry:
    """A logging handle with contextual fields attached."""

    def __init__(self, logger: Logger, fields: Mapping[str, Any] | None = None) -> None:
        self._logger = logger
        self.fields: dict[str, Any] = dict(fields or {})

    def _log(self, level: Level, fmt: str, args: tuple[Any, ...]) -> None:
        message = fmt % args if args else fmt
        self._logger._emit(level, message, self.fields)

    def debug(self, fmt: str, *args: Any) -> None:
        """Log at DEBUG level."""
        self._log(Level.DEBUG, fmt, args)

    def info(self, fmt: str, *args: Any) -> None:
        """Log at INFO level."""
        self._log(Level.INFO, fmt, args)

    def warn(self, fmt: str, *args: Any) -> None:
        """Log at WARN level."""
        self._log(Level.WARN, fmt, args)

    def error(self, fmt: str, *args: Any) -> None:
        """Log at ERROR level."""
        self._log(Level.ERROR, fmt, args)

    def with_fields(self, fields: Mapping[str, Any]) -> Entry:
        """Return a new entry holding these fields and the current ones."""
        return Entry(self._logger, {**self.fields, **fields})

    def system_err(self, err: BaseException) -> None:
        """Log an error at its own severity, with its context as fields."""
        if not isinstance(err, AthensError):
            self.error("%s", err)
            return
        entry = self.with_fields(
            {
                "operation": err.op,
                "kind": kind_text(err),
                "module": err.module,
                "version": err.version,
                "ops": ops(err),
            }
        )
        level = severity(err)
        log = {
            Level.WARN: entry.warn,
            Level.INFO: entry.info,
            Level.DEBUG: entry.debug,
        }.get(level, entry.error)
        log("%s", err)


class Logger(Entry):
    """The root logger; its formatter depends on the cloud provider.

    ``"GCP"`` selects JSON with Stackdriver field names, ``"none"`` the
    development formatter and anything else plain JSON. A logger whose
    ``out`` is ``None`` writes nothing.
    """

    def __init__(
        self,
        cloud_provider: str = "",
        level: Level = Level.INFO,
        *,
        out: TextIO | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(self)
        if cloud_provider == "GCP":
            self.formatter: JSONFormatter | DevFormatter = JSONFormatter(_GCP_FIELD_MAP)
        elif cloud_provider == "none":
            self.formatter = DevFormatter()
        else:
            self.formatter = JSONFormatter()
        self.level = level
        self.out: TextIO | None = out if out is not None else sys.stderr
        self.clock = clock or (lambda: datetime.now().astimezone())
        self._write_lock = threading.Lock()

    def _emit(self, level: Level, message: str, fields: Mapping[str, Any]) -> None:
        if self.out is None or level > self.level:
            return
        record = LogRecord(level=level, message=message, time=self.clock(), data=dict(fields))
        text = self.formatter.format(record)
        with self._write_lock:
            self.out.write(text)


def no_op_logger() -> Logger:
    """Return a logger that writes nothing."""
    logger = Logger("none", Level.PANIC)
    logger.out = None
    return logger


def set_entry_in_context(ctx: Mapping[str, Any], entry: Entry) -> dict[str, Any]:
    """Return a copy of ``ctx`` that holds ``entry``."""
    return {**ctx, _CONTEXT_KEY: entry}


def entry_from_context(ctx: Mapping[str, Any]) -> Entry:
    """Return the entry held in ``ctx``, or a logger that writes nothing."""
    entry = ctx.get(_CONTEXT_KEY)
    if isinstance(entry, Entry):
        return entry
    return no_op_logger()