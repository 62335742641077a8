"""Exception types shared across the recorder package."""

from __future__ import annotations


class RecorderError(Exception):
    """Base class for recorder failures."""


class SidecarClosedError(RecorderError):
    """Raised when a sidecar writer is used after it was closed."""


class AudioWriterError(RecorderError):
    """Raised for unsupported formats or use of a closed WAV writer."""


class ArchivalError(RecorderError):
    """Raised when an artifact cannot be delivered to a storage destination."""

    def __init__(self, message: str, *, destination: str | None = None) -> None:
        super().__init__(message)
        self.destination = destination


def normalize_error(exc: BaseException | object) -> str:
    """Collapse an exception (or anything raised) into a one-line message."""

    if isinstance(exc, BaseException):
        text = str(exc).strip()
        if isinstance(exc, ArchivalError) and exc.__cause__ is not None:
            cause = normalize_error(exc.__cause__)
            text = f"{text}: {cause}" if text else cause
        if not text:
            text = exc.__class__.__name__
        return " ".join(text.split())
    return " ".join(str(exc).split()) or "unknown error"
