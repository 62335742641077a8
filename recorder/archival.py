#!/usr/bin/env python3
"""Archival upload helpers for recorded sessions.

Each artifact is handed to every configured destination. The first
destination is the primary: its outcome decides whether the local file is
deleted. Secondary destinations are awaited too, but their failures are
only logged.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
import os
import shlex
import shutil
import subprocess
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

import aiohttp

from recorder.config import get_cfg, outer_log_level
from recorder.errors import ArchivalError, normalize_error

log = logging.getLogger("recorder.archival")

COPY_CHUNK_SIZE = 64 * 1024
HEADER_SCAN_BYTES = 64 * 1024


@dataclass(frozen=True)
class UploadResult:
    uri: str
    size: int


class StorageDestination:
    """Minimal protocol for archival backends."""

    @property
    def name(self) -> str:  # pragma: no cover - interface only
        raise NotImplementedError

    async def upload(self, path: Path, key: str) -> str:  # pragma: no cover - interface only
        """Store ``path`` under ``key`` and return the resulting URI."""
        raise NotImplementedError


@dataclass
class NetworkShareDestination(StorageDestination):
    target_dir: Path

    @property
    def name(self) -> str:
        return str(self.target_dir)

    async def upload(self, path: Path, key: str) -> str:
        dest = self.target_dir / key
        await asyncio.to_thread(_copy_streamed, path, dest)
        return dest.resolve().as_uri()


def _copy_streamed(src: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")
    try:
        with src.open("rb") as reader, partial.open("wb") as writer:
            shutil.copyfileobj(reader, writer, COPY_CHUNK_SIZE)
            writer.flush()
            os.fsync(writer.fileno())
        os.replace(partial, dest)
    except OSError:
        partial.unlink(missing_ok=True)
        raise


@dataclass
class RsyncDestination(StorageDestination):
    destination: str
    options: Sequence[str] = ("-az", "--mkpath")
    ssh_identity: str | None = None
    ssh_options: Sequence[str] = ()

    @property
    def name(self) -> str:
        return self.destination

    def command(self, path: Path, remote_path: str) -> list[str]:
        cmd = ["rsync", *self.options]
        ssh_cmd = ["ssh", "-oBatchMode=yes"]
        if self.ssh_identity:
            ssh_cmd.extend(["-i", self.ssh_identity])
        ssh_cmd.extend(self.ssh_options)
        cmd.extend(["-e", shlex.join(ssh_cmd), "--", str(path), remote_path])
        return cmd

    async def upload(self, path: Path, key: str) -> str:
        remote_path = f"{self.destination.rstrip('/')}/{key}"
        cmd = self.command(path, remote_path)
        try:
            await asyncio.to_thread(subprocess.run, cmd, check=True, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise ArchivalError("rsync not available", destination=self.name) from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip()
            message = f"rsync failed ({exc.returncode})"
            if detail:
                message = f"{message}: {detail}"
            raise ArchivalError(message, destination=self.name) from exc
        return remote_path


@dataclass
class HttpPutDestination(StorageDestination):
    base_url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout_sec: float | None = None

    @property
    def name(self) -> str:
        return self.base_url

    async def upload(self, path: Path, key: str) -> str:
        url = f"{self.base_url.rstrip('/')}/{quote(key)}"
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        headers = {"Content-Type": content_type, **dict(self.headers)}
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            with path.open("rb") as handle:
                async with session.put(url, data=handle, headers=headers) as resp:
                    if resp.status >= 300:
                        body = " ".join((await resp.text()).split())[:200]
                        raise ArchivalError(
                            f"HTTP {resp.status} from {url}" + (f": {body}" if body else ""),
                            destination=self.name,
                        )
        return url


def _as_str_list(value: object) -> list[str] | None:
    if isinstance(value, str) or not isinstance(value, Sequence):
        return None
    return [str(item) for item in value]


def _build_destination(entry: object) -> StorageDestination | None:
    if not isinstance(entry, Mapping):
        log.warning("Ignoring archival destination that is not a mapping: %r", entry)
        return None
    backend = str(entry.get("backend", "network_share")).strip().lower()

    if backend == "network_share":
        target = str(entry.get("target_dir") or "").strip()
        if not target:
            log.warning("network_share destination requires target_dir")
            return None
        return NetworkShareDestination(target_dir=Path(target).expanduser())

    if backend == "rsync":
        destination = str(entry.get("destination") or "").strip()
        if not destination:
            log.warning("rsync destination requires destination")
            return None
        options = _as_str_list(entry.get("options")) or ["-az", "--mkpath"]
        ssh_identity = str(entry.get("ssh_identity") or "").strip() or None
        ssh_options = _as_str_list(entry.get("ssh_options")) or []
        return RsyncDestination(
            destination=destination,
            options=options,
            ssh_identity=ssh_identity,
            ssh_options=ssh_options,
        )

    if backend == "http":
        url = str(entry.get("url") or "").strip()
        if not url:
            log.warning("http destination requires url")
            return None
        raw_headers = entry.get("headers")
        headers = (
            {str(k): str(v) for k, v in raw_headers.items()}
            if isinstance(raw_headers, Mapping)
            else {}
        )
        timeout = entry.get("timeout_sec")
        try:
            timeout_sec = float(timeout) if timeout not in (None, "") else None
        except (TypeError, ValueError):
            log.warning("Ignoring invalid http timeout_sec: %r", timeout)
            timeout_sec = None
        return HttpPutDestination(base_url=url, headers=headers, timeout_sec=timeout_sec)

    log.warning("Unknown archival backend: %s", backend)
    return None


def build_destinations(cfg: Mapping | None = None) -> list[StorageDestination]:
    cfg = cfg if cfg is not None else get_cfg()
    arch_cfg = cfg.get("archival") or {}
    if not arch_cfg.get("enabled"):
        return []
    raw = arch_cfg.get("destinations") or []
    if isinstance(raw, Mapping):
        raw = [raw]
    destinations: list[StorageDestination] = []
    for entry in raw:
        destination = _build_destination(entry)
        if destination is not None:
            destinations.append(destination)
    return destinations


def storage_key(start_time: datetime, recording_id: str, extension: str) -> str:
    """``YYYY-MM-DD/<id>.<ext>``, partitioned by the recording's start date."""
    return f"{start_time.isoformat()[:10]}/{recording_id}.{extension.lstrip('.')}"


async def _upload_one(destination: StorageDestination, path: Path, key: str) -> str:
    try:
        return await destination.upload(path, key)
    except ArchivalError:
        raise
    except (OSError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise ArchivalError(f"upload to {destination.name} failed", destination=destination.name) from exc


async def move_file_to_destinations(
    srcpath: str | Path,
    destinations: Sequence[StorageDestination],
    key: str,
) -> UploadResult:
    """Upload ``srcpath`` everywhere and delete it once the primary has it.

    Raises ``ArchivalError`` when the primary destination fails; the local
    file is left in place in that case.
    """
    if not destinations:
        raise ArchivalError("no storage destination configured")
    path = Path(srcpath)
    size = path.stat().st_size

    outcomes = await asyncio.gather(
        *(_upload_one(destination, path, key) for destination in destinations),
        return_exceptions=True,
    )

    primary = destinations[0]
    for destination, outcome in zip(destinations[1:], outcomes[1:]):
        if isinstance(outcome, BaseException):
            log.warning(
                'Error copying "%s" to secondary destination=%s, key=%s: %s',
                path,
                destination.name,
                key,
                normalize_error(outcome),
            )
        else:
            log.info("Copied %s to secondary %s", path, outcome)

    primary_outcome = outcomes[0]
    if isinstance(primary_outcome, BaseException):
        raise primary_outcome

    try:
        await asyncio.to_thread(path.unlink)
    except OSError as exc:
        log.warning("Uploaded %s but could not delete local copy: %s", path, normalize_error(exc))
    return UploadResult(uri=primary_outcome, size=size)


def read_sidecar_header(path: str | Path) -> dict | None:
    """Return the header object of a sidecar file, even a truncated one."""

    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            text = handle.read(HEADER_SCAN_BYTES)
    except OSError:
        return None
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.startswith('"header":'):
            continue
        raw = stripped[len('"header":') :].rstrip(",")
        try:
            header = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return header if isinstance(header, dict) else None
    return None


def key_for_artifact(path: Path) -> str:
    header = read_sidecar_header(path.with_suffix(".json")) or {}
    recording_id = str(header.get("id") or path.stem)
    timestamp = header.get("timestamp")
    if isinstance(timestamp, str) and len(timestamp) >= 10:
        date_prefix = timestamp[:10]
    else:
        mtime = path.stat().st_mtime
        date_prefix = datetime.fromtimestamp(mtime, timezone.utc).isoformat()[:10]
    return f"{date_prefix}/{recording_id}{path.suffix}"


async def upload_paths(
    raw_paths: Iterable[str],
    destinations: Sequence[StorageDestination] | None = None,
) -> int:
    """Upload leftover artifacts; returns the number of failed files."""

    if destinations is None:
        destinations = build_destinations()
    if not destinations:
        log.warning("Archival disabled or no destinations configured; nothing uploaded")
        return 0

    # Keys first: a WAV key is derived from its sidecar, which may be moved
    planned: list[tuple[Path, str]] = []
    for raw_path in raw_paths:
        path = Path(raw_path)
        if not path.exists():
            log.warning("skip missing file: %s", path)
            continue
        planned.append((path, key_for_artifact(path)))

    failures = 0
    for path, key in planned:
        try:
            result = await move_file_to_destinations(path, destinations, key)
        except (ArchivalError, OSError) as exc:
            failures += 1
            log.warning(
                'Error copying "%s" to destination=%s, key=%s: %s',
                path,
                destinations[0].name,
                key,
                normalize_error(exc),
            )
            continue
        log.info("Moved %s to %s. Size: %s", path, result.uri, result.size)
    return failures


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Upload recording artifacts left on disk to the configured archival destinations"
    )
    parser.add_argument("paths", nargs="+", help="Sidecar (.json) or audio (.wav) files to upload")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: from config).")
    args = parser.parse_args(list(argv) if argv is not None else None)

    level_name = (args.log_level or outer_log_level()).upper()
    if level_name == "WARN":
        level_name = "WARNING"
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    destinations = build_destinations()
    if not destinations:
        log.error("Archival is disabled or has no valid destinations")
        return 1
    failures = asyncio.run(upload_paths(args.paths, destinations))
    return 1 if failures else 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
