"""Interfaces the recorder expects from the streaming session engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

CloseHandler = Callable[[], Awaitable[None]]
FiniHandler = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class SelectedMedia:
    """Media parameters negotiated when the session opens."""

    format: str
    rate: int
    channels: Sequence[str]


@dataclass(frozen=True)
class MediaDataFrame:
    """One chunk of audio delivered on the session's ``audio`` event."""

    audio: Any
    rate: int | None = None


OpenHandler = Callable[[Any, Optional[SelectedMedia]], Awaitable[Optional[CloseHandler]]]


class SessionLoggerLike(Protocol):  # pragma: no cover - interface only
    def fatal(self, msg: str) -> None: ...

    def error(self, msg: str) -> None: ...

    def warn(self, msg: str) -> None: ...

    def info(self, msg: str) -> None: ...

    def debug(self, msg: str) -> None: ...

    def trace(self, msg: str) -> None: ...


class ServerSession(Protocol):  # pragma: no cover - interface only
    """Minimal protocol for the engine that drives one streaming session.

    Events: ``statistics``, ``clientMessage``, ``serverMessage`` and ``audio``.
    Open handlers run once media is negotiated and may return a close
    handler; fini handlers run once when the session ends.
    """

    logger: SessionLoggerLike

    def on(self, event: str, handler: Callable[..., Any]) -> None: ...

    def off(self, event: str, handler: Callable[..., Any]) -> None: ...

    def add_open_handler(self, handler: OpenHandler) -> None: ...

    def add_fini_handler(self, handler: FiniHandler) -> None: ...


SessionFactory = Callable[..., ServerSession]
