"""Recording lifecycle for one streaming session.

A ``RecordedSession`` opens the sidecar as soon as the session is created,
mirrors session traffic into it, captures audio once media is negotiated
and, when the session ends, closes everything and hands the artifacts to
the configured storage destinations.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from recorder.archival import (
    StorageDestination,
    build_destinations,
    move_file_to_destinations,
    storage_key,
)
from recorder.config import get_cfg, outer_log_level, recordings_dir, sidecar_log_level
from recorder.errors import RecorderError, normalize_error
from recorder.registry import SessionRegistry
from recorder.session_types import CloseHandler, SelectedMedia, ServerSession, SessionFactory
from recorder.sidecar import SidecarFileWriter
from recorder.wav_writer import WavFileWriter

WAV_SUFFIX = ".wav"


def subscribe(session: ServerSession, handlers: Mapping[str, Callable[..., Any]]) -> Callable[[], None]:
    """Register ``handlers`` on ``session``; the returned callable revokes all of them."""

    registered = dict(handlers)
    for event, handler in registered.items():
        session.on(event, handler)

    def _dispose() -> None:
        while registered:
            event, handler = registered.popitem()
            session.off(event, handler)

    return _dispose


@dataclass
class RecordedSessionConfig:
    session_factory: SessionFactory
    recordings_dir: Path
    session_id: str | None = None
    request_uri: str = ""
    request_headers: Mapping[str, Any] = field(default_factory=dict)
    outer_logger: logging.Logger | None = None
    outer_log_level: str = "info"
    sidecar_log_level: str = "debug"
    destinations: Sequence[StorageDestination] = ()

    @classmethod
    def from_cfg(
        cls,
        session_factory: SessionFactory,
        *,
        cfg: Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> "RecordedSessionConfig":
        cfg = cfg if cfg is not None else get_cfg()
        values: dict[str, Any] = {
            "recordings_dir": recordings_dir(cfg),
            "outer_log_level": outer_log_level(cfg),
            "sidecar_log_level": sidecar_log_level(cfg),
            "destinations": build_destinations(cfg),
        }
        values.update(overrides)
        return cls(session_factory=session_factory, **values)


class RecordedSession:
    """Owns the sidecar and WAV writers of one recording.

    State machine: ``created -> active -> finalizing -> archived|abandoned|failed``.
    ``archived``: uploads attempted. ``abandoned``: no destination, files kept
    locally. ``failed``: a local writer could not be closed.
    """

    def __init__(
        self,
        session: ServerSession,
        sidecar: SidecarFileWriter,
        config: RecordedSessionConfig,
        registry: SessionRegistry,
    ) -> None:
        self.recording_id = sidecar.id
        self.session = session
        self.sidecar = sidecar
        self.destinations = list(config.destinations)
        self.registry = registry
        self.outer_logger = sidecar.outer_logger
        self.state = "created"
        self.file_path_wav: Path | None = None
        self.audio_samples: int | None = None
        self.audio_duration: float | None = None
        self.uploaded: dict[str, str] = {}
        self._pending_audio_close: CloseHandler | None = None

        self.session.add_fini_handler(self._on_session_fini)
        self.registry.add(self.recording_id, self)

        self._add_audio_writer()

        self._unsubscribe: Callable[[], None] | None = subscribe(
            self.session,
            {
                "statistics": self.on_statistics_update,
                "clientMessage": self.on_client_message,
                "serverMessage": self.on_server_message,
            },
        )
        self.state = "active"

    @classmethod
    def create(cls, config: RecordedSessionConfig, registry: SessionRegistry) -> "RecordedSession":
        sidecar = SidecarFileWriter.open(
            config.recordings_dir,
            outer_logger=config.outer_logger,
            outer_level=config.outer_log_level,
            sidecar_level=config.sidecar_log_level,
        )
        try:
            sidecar.write_request_info(config.request_uri, config.request_headers)
            session = config.session_factory(session_id=config.session_id, logger=sidecar.logger)
            return cls(session, sidecar, config, registry)
        except BaseException:
            registry.remove(sidecar.id)
            sidecar.discard()
            raise

    @property
    def file_path_sidecar(self) -> Path:
        return self.sidecar.filepath

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.recording_id,
            "state": self.state,
            "start_time": self.sidecar.start_time.isoformat(),
            "sidecar": str(self.sidecar.filepath),
            "wav": str(self.file_path_wav) if self.file_path_wav else None,
        }

    def _add_audio_writer(self) -> None:
        async def _on_open(session: ServerSession, selected_media: SelectedMedia | None) -> CloseHandler | None:
            if not selected_media:
                # No media, no WAV file
                return None
            if self.file_path_wav is not None:
                session.logger.warn(f'WAV file already open: "{self.file_path_wav}"; ignoring repeated open')
                return None
            path = self.sidecar.filepath.with_suffix(WAV_SUFFIX)
            session.logger.info(f'Creating WAV file: "{path}"')
            writer = WavFileWriter.start(
                path, selected_media.format, selected_media.rate, len(selected_media.channels)
            )
            self.file_path_wav = path

            def _on_audio(frame: Any) -> None:
                writer.write_audio(getattr(frame, "audio", frame))

            session.on("audio", _on_audio)

            async def _on_close() -> None:
                if self._pending_audio_close is None:
                    return
                self._pending_audio_close = None
                session.off("audio", _on_audio)
                samples = await writer.close()
                self.audio_samples = samples
                self.audio_duration = samples / selected_media.rate
                session.logger.info(
                    f'Closed WAV file "{path}", SamplesWritten: {samples} ({self.audio_duration}s)'
                )

            self._pending_audio_close = _on_close
            return _on_close

        self.session.add_open_handler(_on_open)

    def on_client_message(self, message: Any) -> None:
        self.sidecar.write_received_message(message)

    def on_server_message(self, message: Any) -> None:
        self.sidecar.write_sent_message(message)

    def on_statistics_update(self, info: Any) -> None:
        self.sidecar.write_statistics(info)

    async def _on_session_fini(self) -> None:
        if self._unsubscribe is None:
            self.outer_logger.warning("Recording %s already finalized", self.recording_id)
            return
        self._unsubscribe()
        self._unsubscribe = None
        self.state = "finalizing"

        failure: BaseException | None = None
        if self._pending_audio_close is not None:
            try:
                await self._pending_audio_close()
            except (OSError, RecorderError) as exc:
                failure = exc
                self.sidecar.logger.error(
                    f'Failed to close WAV file "{self.file_path_wav}": {normalize_error(exc)}'
                )
        # Terminate the sidecar even if the WAV close failed
        try:
            await self.sidecar.close()
        except (OSError, RecorderError) as exc:
            if failure is None:
                failure = exc

        if failure is not None:
            self.state = "failed"
            self.outer_logger.error(
                "Failed to finalize recording %s: %s", self.recording_id, normalize_error(failure)
            )
            self.registry.remove(self.recording_id)
            raise failure

        self.outer_logger.info("Finalized and closed sidecar file: %s", self.sidecar.filepath)

        try:
            if self.destinations:
                await self._archive_artifacts()
                self.state = "archived"
            else:
                self.outer_logger.warning(
                    "No storage destination configured, files not uploaded. Sidecar: %s, WAV: %s",
                    self.sidecar.filepath,
                    self.file_path_wav if self.file_path_wav else "<none>",
                )
                self.state = "abandoned"
        finally:
            self.registry.remove(self.recording_id)

    async def _archive_artifacts(self) -> None:
        artifacts: list[tuple[Path, str]] = []
        if self.file_path_wav is not None:
            artifacts.append((self.file_path_wav, "wav"))
        artifacts.append((self.sidecar.filepath, "json"))
        await asyncio.gather(*(self._archive_artifact(path, ext) for path, ext in artifacts))

    async def _archive_artifact(self, path: Path, extension: str) -> str | None:
        key = storage_key(self.sidecar.start_time, self.recording_id, extension)
        try:
            result = await move_file_to_destinations(path, self.destinations, key)
        except Exception as exc:  # one artifact failing must not cost the other
            self.outer_logger.warning(
                'Error copying "%s" to destination=%s, key=%s: %s',
                path,
                self.destinations[0].name,
                key,
                normalize_error(exc),
            )
            return None
        self.uploaded[extension] = result.uri
        self.outer_logger.info("Moved %s to %s. Size: %s", path, result.uri, result.size)
        return result.uri
