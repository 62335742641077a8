"""Streaming JSON event log ("sidecar") written alongside each recording.

The file is opened as soon as the recording starts and entries are appended
as they happen, so an interrupted session still leaves a valid prefix on
disk:

    {
     "header":{"timestamp": "...", "id": "..."},
     "body":[
      {"timestamp": 0.000012, "type": "request-metadata", "data": {...}},
      ...
      {"timestamp": 4.2, "type": "session-end", "data": {}}
     ]
    }

A file without the closing ``]`` / ``}`` is the mark of an unclean shutdown.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import json
import logging
import math
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping, TextIO

import numpy as np

from recorder.errors import SidecarClosedError

SIDECAR_SUFFIX = ".json"
_FOOTER = "\n ]\n}\n"


class LogLevel(enum.IntEnum):
    TRACE = 10
    DEBUG = 20
    INFO = 30
    WARN = 40
    ERROR = 50
    FATAL = 60

    @classmethod
    def parse(cls, value: "str | int | LogLevel") -> "LogLevel":
        if isinstance(value, LogLevel):
            return value
        if isinstance(value, int):
            return cls(value)
        name = str(value).strip().upper()
        if name == "WARNING":
            name = "WARN"
        elif name == "CRITICAL":
            name = "FATAL"
        try:
            return cls[name]
        except KeyError:
            raise ValueError(f"unknown log level: {value!r}") from None

    @property
    def stdlib_level(self) -> int:
        return _STDLIB_LEVELS[self]


_STDLIB_LEVELS = {
    LogLevel.TRACE: logging.DEBUG,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.FATAL: logging.CRITICAL,
}


class EntryKind(str, enum.Enum):
    LIFECYCLE_LOG = "lifecycle-log"
    INBOUND_MESSAGE = "inbound-message"
    OUTBOUND_MESSAGE = "outbound-message"
    STATISTICS_SAMPLE = "statistics-sample"
    REQUEST_METADATA = "request-metadata"
    SESSION_END = "session-end"


def _finite(value: Any) -> Any:
    """Replace NaN and infinities, which strict JSON cannot carry, with None."""
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {key: _finite(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_finite(item) for item in value]
    return value


def _json_default(value: Any) -> Any:
    return _finite(_json_convert(value))


def _json_convert(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return str(value)


class SidecarFileWriter:
    """Append-only event log for a single recording.

    Appends are expected from one logical execution context (the session's
    event loop); entries land in the file in call order.
    """

    def __init__(
        self,
        directory: str | Path,
        *,
        outer_logger: logging.Logger | None = None,
        outer_level: "str | int | LogLevel" = LogLevel.INFO,
        sidecar_level: "str | int | LogLevel" = LogLevel.DEBUG,
        recording_id: str | None = None,
    ) -> None:
        self.id = recording_id or str(uuid.uuid4())
        self.start_time = datetime.now(timezone.utc)
        self._start_ns = time.perf_counter_ns()
        self._last_ns = 0
        self.outer_logger = outer_logger or logging.getLogger("recorder")
        self.min_level_outer = LogLevel.parse(outer_level)
        self.min_level_sidecar = LogLevel.parse(sidecar_level)
        self.row_count = 0

        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        self.filepath = directory / f"{self.id}{SIDECAR_SUFFIX}"
        self._handle: TextIO | None = self.filepath.open("x", encoding="utf-8")
        header = {"timestamp": self.start_time.isoformat(), "id": self.id}
        self._handle.write(f'{{\n "header":{json.dumps(header)},\n "body":[')
        self._handle.flush()
        self.logger = SessionLogger(self)

    @classmethod
    def open(cls, directory: str | Path, **kwargs: Any) -> "SidecarFileWriter":
        return cls(directory, **kwargs)

    @property
    def closed(self) -> bool:
        return self._handle is None

    def elapsed(self) -> float:
        """Seconds since the log was opened; never decreases."""
        now = time.perf_counter_ns() - self._start_ns
        if now < self._last_ns:
            now = self._last_ns
        self._last_ns = now
        return now / 1_000_000_000

    def append(self, kind: EntryKind | str, data: Any) -> None:
        handle = self._handle
        if handle is None:
            raise SidecarClosedError(f"Writer already closed: {self.filepath}")
        kind = EntryKind(kind)
        entry = {"timestamp": self.elapsed(), "type": kind.value, "data": data}
        separator = "" if self.row_count == 0 else ","
        line = json.dumps(_finite(entry), default=_json_default, allow_nan=False)
        handle.write(f"{separator}\n  {line}")
        handle.flush()
        self.row_count += 1

    def write_log_entry(self, level: "LogLevel | int", msg: str) -> None:
        level = LogLevel.parse(level)
        if level >= self.min_level_outer:
            self.outer_logger.log(level.stdlib_level, msg)
        if level >= self.min_level_sidecar and not self.closed:
            self.append(EntryKind.LIFECYCLE_LOG, {"level": int(level), "msg": msg})

    def write_received_message(self, message: Any) -> None:
        self.append(EntryKind.INBOUND_MESSAGE, message)

    def write_sent_message(self, message: Any) -> None:
        self.append(EntryKind.OUTBOUND_MESSAGE, message)

    def write_statistics(self, info: Any) -> None:
        self.append(EntryKind.STATISTICS_SAMPLE, info)

    def write_request_info(self, uri: str, headers: Mapping[str, Any] | None) -> None:
        self.append(EntryKind.REQUEST_METADATA, {"uri": uri, "headers": dict(headers or {})})

    def discard(self) -> None:
        """Close and delete a log whose session never started."""
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.close()
        self.filepath.unlink(missing_ok=True)

    async def close(self) -> None:
        """Write the terminal entry and footer, then flush and close the file."""
        if self._handle is None:
            raise SidecarClosedError(f"Writer already closed: {self.filepath}")
        self.append(EntryKind.SESSION_END, {})
        handle = self._handle
        self._handle = None
        try:
            handle.write(_FOOTER)
        except OSError:
            handle.close()
            raise
        await asyncio.to_thread(_finish, handle)


def _finish(handle: TextIO) -> None:
    try:
        handle.flush()
        os.fsync(handle.fileno())
    finally:
        handle.close()


class SessionLogger:
    """Logger handed to the session engine.

    Lines go to the outer logger and, while the sidecar is open, into it.
    """

    def __init__(self, writer: SidecarFileWriter) -> None:
        self._writer = writer

    def fatal(self, msg: str) -> None:
        self._writer.write_log_entry(LogLevel.FATAL, msg)

    def error(self, msg: str) -> None:
        self._writer.write_log_entry(LogLevel.ERROR, msg)

    def warn(self, msg: str) -> None:
        self._writer.write_log_entry(LogLevel.WARN, msg)

    warning = warn

    def info(self, msg: str) -> None:
        self._writer.write_log_entry(LogLevel.INFO, msg)

    def debug(self, msg: str) -> None:
        self._writer.write_log_entry(LogLevel.DEBUG, msg)

    def trace(self, msg: str) -> None:
        self._writer.write_log_entry(LogLevel.TRACE, msg)
