from __future__ import annotations

import logging
import shlex
from pathlib import Path
from types import SimpleNamespace

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

import recorder.archival as archival
from recorder.errors import ArchivalError


class _FailingDestination(archival.StorageDestination):
    def __init__(self, label: str = "broken") -> None:
        self.label = label
        self.attempts: list[str] = []

    @property
    def name(self) -> str:
        return self.label

    async def upload(self, path: Path, key: str) -> str:
        self.attempts.append(key)
        raise ArchivalError("quota exceeded", destination=self.label)


def _make_artifact(tmp_path: Path, name: str = "rec.json", data: bytes = b'{"x": 1}') -> Path:
    source = tmp_path / "local" / name
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_bytes(data)
    return source


def test_build_destinations_disabled_noop():
    cfg = {"archival": {"enabled": False, "destinations": [{"backend": "network_share", "target_dir": "/x"}]}}
    assert archival.build_destinations(cfg) == []


def test_build_destinations_skips_invalid_entries(tmp_path: Path, caplog):
    cfg = {
        "archival": {
            "enabled": True,
            "destinations": [
                {"backend": "network_share", "target_dir": str(tmp_path)},
                {"backend": "rsync"},
                {"backend": "carrier-pigeon"},
                {"backend": "http", "url": "http://store.local/bucket", "timeout_sec": "30"},
            ],
        }
    }
    with caplog.at_level(logging.WARNING, logger="recorder.archival"):
        destinations = archival.build_destinations(cfg)

    assert [type(dest) for dest in destinations] == [
        archival.NetworkShareDestination,
        archival.HttpPutDestination,
    ]
    assert destinations[1].timeout_sec == 30.0
    assert "rsync destination requires destination" in caplog.text
    assert "Unknown archival backend: carrier-pigeon" in caplog.text


def test_storage_key_uses_start_date():
    from datetime import datetime, timezone

    start = datetime(2024, 3, 9, 23, 59, 1, tzinfo=timezone.utc)
    assert archival.storage_key(start, "abc", "wav") == "2024-03-09/abc.wav"
    assert archival.storage_key(start, "abc", ".json") == "2024-03-09/abc.json"


@pytest.mark.asyncio
async def test_network_share_move_deletes_source(tmp_path: Path):
    source = _make_artifact(tmp_path)
    share = archival.NetworkShareDestination(target_dir=tmp_path / "archive")

    result = await archival.move_file_to_destinations(source, [share], "2024-01-01/rec.json")

    copied = tmp_path / "archive" / "2024-01-01" / "rec.json"
    assert copied.read_bytes() == b'{"x": 1}'
    assert not source.exists()
    assert result.size == 8
    assert result.uri == copied.resolve().as_uri()
    assert not list(copied.parent.glob("*.part"))


@pytest.mark.asyncio
async def test_primary_failure_keeps_local_file(tmp_path: Path):
    source = _make_artifact(tmp_path)
    primary = _FailingDestination()
    secondary = archival.NetworkShareDestination(target_dir=tmp_path / "secondary")

    with pytest.raises(ArchivalError) as excinfo:
        await archival.move_file_to_destinations(source, [primary, secondary], "k/rec.json")

    assert excinfo.value.destination == "broken"
    assert source.exists()
    assert primary.attempts == ["k/rec.json"]
    assert (tmp_path / "secondary" / "k" / "rec.json").exists()


@pytest.mark.asyncio
async def test_secondary_failure_does_not_block_primary(tmp_path: Path, caplog):
    source = _make_artifact(tmp_path)
    primary = archival.NetworkShareDestination(target_dir=tmp_path / "primary")
    secondary = _FailingDestination("mirror")

    with caplog.at_level(logging.WARNING, logger="recorder.archival"):
        result = await archival.move_file_to_destinations(source, [primary, secondary], "k/rec.json")

    assert secondary.attempts == ["k/rec.json"]
    assert not source.exists()
    assert result.uri.endswith("/primary/k/rec.json")
    assert "secondary destination=mirror" in caplog.text
    assert "quota exceeded" in caplog.text


@pytest.mark.asyncio
async def test_move_without_destinations_fails(tmp_path: Path):
    source = _make_artifact(tmp_path)
    with pytest.raises(ArchivalError):
        await archival.move_file_to_destinations(source, [], "k/rec.json")
    assert source.exists()


@pytest.mark.asyncio
async def test_rsync_invocation(monkeypatch, tmp_path: Path):
    sample = _make_artifact(tmp_path, "clip.wav", b"data")
    captured: dict[str, object] = {}

    def fake_run(cmd, **kwargs):
        captured["cmd"] = cmd
        captured["kwargs"] = kwargs
        return SimpleNamespace(stdout="", stderr="")

    monkeypatch.setattr(archival.subprocess, "run", fake_run)

    cfg = {
        "archival": {
            "enabled": True,
            "destinations": [
                {
                    "backend": "rsync",
                    "destination": "user@host:/srv/archive/",
                    "options": ["-az", "--bwlimit=2000"],
                    "ssh_identity": "/home/pi/.ssh/id_ed25519",
                    "ssh_options": ["-oStrictHostKeyChecking=yes"],
                }
            ],
        }
    }
    destinations = archival.build_destinations(cfg)
    result = await archival.move_file_to_destinations(sample, destinations, "2024-01-01/clip.wav")

    expected_shell = shlex.join(
        [
            "ssh",
            "-oBatchMode=yes",
            "-i",
            "/home/pi/.ssh/id_ed25519",
            "-oStrictHostKeyChecking=yes",
        ]
    )
    assert captured["cmd"] == [
        "rsync",
        "-az",
        "--bwlimit=2000",
        "-e",
        expected_shell,
        "--",
        str(sample),
        "user@host:/srv/archive/2024-01-01/clip.wav",
    ]
    assert captured["kwargs"].get("check") is True
    assert result.uri == "user@host:/srv/archive/2024-01-01/clip.wav"
    assert not sample.exists()


@pytest.mark.asyncio
async def test_rsync_failure_is_archival_error(monkeypatch, tmp_path: Path):
    sample = _make_artifact(tmp_path, "clip.wav", b"data")

    def fake_run(cmd, **kwargs):
        raise archival.subprocess.CalledProcessError(12, cmd, stderr="connection refused\n")

    monkeypatch.setattr(archival.subprocess, "run", fake_run)
    destination = archival.RsyncDestination(destination="host:/srv")

    with pytest.raises(ArchivalError, match=r"rsync failed \(12\): connection refused"):
        await archival.move_file_to_destinations(sample, [destination], "k/clip.wav")
    assert sample.exists()


async def _start_store(statuses: dict[str, int]) -> tuple[TestServer, dict[str, bytes]]:
    received: dict[str, bytes] = {}

    async def handle_put(request: web.Request) -> web.Response:
        key = request.match_info["key"]
        received[key] = await request.read()
        return web.Response(status=statuses.get(key, 201), text="nope" if key in statuses else "")

    app = web.Application()
    app.router.add_put("/bucket/{key:.+}", handle_put)
    server = TestServer(app)
    await server.start_server()
    return server, received


@pytest.mark.asyncio
async def test_http_put_streams_file(tmp_path: Path):
    server, received = await _start_store({})
    try:
        source = _make_artifact(tmp_path, "rec.wav", b"RIFF" + b"\x00" * 1000)
        destination = archival.HttpPutDestination(base_url=str(server.make_url("/bucket")))

        result = await archival.move_file_to_destinations(source, [destination], "2024-01-01/rec.wav")
    finally:
        await server.close()

    assert received["2024-01-01/rec.wav"] == b"RIFF" + b"\x00" * 1000
    assert result.size == 1004
    assert result.uri.endswith("/bucket/2024-01-01/rec.wav")
    assert not source.exists()


@pytest.mark.asyncio
async def test_http_put_rejected_keeps_file(tmp_path: Path):
    server, _ = await _start_store({"k/rec.json": 403})
    try:
        source = _make_artifact(tmp_path)
        destination = archival.HttpPutDestination(base_url=str(server.make_url("/bucket")))
        with pytest.raises(ArchivalError, match="HTTP 403"):
            await archival.move_file_to_destinations(source, [destination], "k/rec.json")
    finally:
        await server.close()
    assert source.exists()


def test_read_sidecar_header_tolerates_truncation(tmp_path: Path):
    path = tmp_path / "abc.json"
    path.write_text(
        '{\n "header":{"timestamp": "2024-05-06T10:00:00+00:00", "id": "abc"},\n "body":[\n  {"timestamp": 0.1, "ty',
        encoding="utf-8",
    )
    assert archival.read_sidecar_header(path) == {"timestamp": "2024-05-06T10:00:00+00:00", "id": "abc"}
    assert archival.read_sidecar_header(tmp_path / "missing.json") is None


@pytest.mark.asyncio
async def test_upload_paths_derives_wav_key_from_sidecar(tmp_path: Path):
    rec_dir = tmp_path / "recordings"
    rec_dir.mkdir()
    sidecar = rec_dir / "abc.json"
    sidecar.write_text(
        '{\n "header":{"timestamp": "2024-05-06T10:00:00+00:00", "id": "abc"},\n "body":[',
        encoding="utf-8",
    )
    wav = rec_dir / "abc.wav"
    wav.write_bytes(b"RIFF")
    share = archival.NetworkShareDestination(target_dir=tmp_path / "archive")

    failures = await archival.upload_paths(
        [str(sidecar), str(wav), str(rec_dir / "gone.wav")], [share]
    )

    assert failures == 0
    assert (tmp_path / "archive" / "2024-05-06" / "abc.json").exists()
    assert (tmp_path / "archive" / "2024-05-06" / "abc.wav").exists()
    assert not sidecar.exists()
    assert not wav.exists()


@pytest.mark.asyncio
async def test_upload_paths_counts_failures(tmp_path: Path):
    source = _make_artifact(tmp_path, "orphan.wav", b"RIFF")
    failures = await archival.upload_paths([str(source)], [_FailingDestination()])
    assert failures == 1
    assert source.exists()


def test_main_requires_destinations(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(archival, "get_cfg", lambda: {"archival": {"enabled": False}})
    source = _make_artifact(tmp_path)
    assert archival.main([str(source), "--log-level", "warning"]) == 1
    assert source.exists()
