"""Lookup of in-flight recordings keyed by recording id."""

from __future__ import annotations

import threading
from typing import Any, Dict


class SessionRegistry:
    """Non-owning index of active recordings.

    Each recording adds itself on creation and removes itself once it is
    archived, so entries are never contended by two owners.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def add(self, recording_id: str, session: Any) -> None:
        with self._lock:
            if recording_id in self._sessions:
                raise KeyError(f"recording already registered: {recording_id}")
            self._sessions[recording_id] = session

    def remove(self, recording_id: str) -> Any | None:
        with self._lock:
            return self._sessions.pop(recording_id, None)

    def get(self, recording_id: str) -> Any | None:
        with self._lock:
            return self._sessions.get(recording_id)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._sessions)

    def describe(self) -> list[dict[str, Any]]:
        """Diagnostics view of every in-flight recording."""
        return [session.describe() for session in self.snapshot().values()]

    def __contains__(self, recording_id: object) -> bool:
        with self._lock:
            return recording_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
