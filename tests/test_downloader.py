import hashlib

import pytest
import requests

from inventory.downloader import Downloader, part_path_for, total_size_from_headers
from inventory.exceptions import DownloadAborted
from inventory.scheduler import CancellationToken

DATA = bytes(range(256)) * 4
DATA_HASH = hashlib.sha256(DATA).hexdigest().upper()


class FakeResponse:
    def __init__(self, body=b"", status_code=200, headers=None, chunk=64, fail_after=None):
        self.body = body
        self.status_code = status_code
        self.headers = headers or {}
        self.chunk = chunk
        self.fail_after = fail_after

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def iter_content(self, chunk_size=1):
        sent = 0
        for start in range(0, len(self.body), self.chunk):
            if self.fail_after is not None and sent >= self.fail_after:
                raise requests.ConnectionError("connection reset by peer")
            piece = self.body[start:start + self.chunk]
            sent += len(piece)
            yield piece


class FakeSession:
    """Serves DATA, honouring Range requests unless told not to."""

    def __init__(self, body=DATA, honour_range=True, status_code=200, fail_after=None):
        self.body = body
        self.honour_range = honour_range
        self.status_code = status_code
        self.fail_after = fail_after
        self.requests = []

    def get(self, url, headers=None, stream=False, timeout=None):
        headers = headers or {}
        self.requests.append(headers)
        if self.status_code >= 400:
            return FakeResponse(status_code=self.status_code)
        range_header = headers.get("Range")
        if range_header and self.honour_range:
            start = int(range_header.split("=")[1].rstrip("-"))
            return FakeResponse(self.body[start:], 206, {
                "Content-Range": f"bytes {start}-{len(self.body) - 1}/{len(self.body)}",
                "Content-Length": str(len(self.body) - start),
            }, fail_after=self.fail_after)
        return FakeResponse(self.body, 200, {"Content-Length": str(len(self.body))},
                            fail_after=self.fail_after)


def test_download_with_hash(tmp_path):
    progress = []
    dest = tmp_path / "models" / "lora.safetensors"
    result = Downloader(session=FakeSession()).download(
        "https://example.com/lora.safetensors", dest, expected_hash=DATA_HASH.lower(),
        on_progress=lambda done, total, speed: progress.append((done, total)))

    assert result.success
    assert result.sha256 == DATA_HASH
    assert result.bytes_downloaded == len(DATA)
    assert dest.read_bytes() == DATA
    assert not part_path_for(dest).exists()
    assert progress[-1] == (len(DATA), len(DATA))


def test_cancel_keeps_part_file_and_resume_finishes(tmp_path):
    session = FakeSession()
    downloader = Downloader(session=session, progress_interval=0)
    dest = tmp_path / "vae.safetensors"
    token = CancellationToken()

    def stop_early(done, total, speed):
        if done >= 128:
            token.cancel("paused")

    with pytest.raises(DownloadAborted) as excinfo:
        downloader.download("https://example.com/vae", dest, DATA_HASH, stop_early, token)
    assert excinfo.value.bytes_downloaded == 128
    assert part_path_for(dest).read_bytes() == DATA[:128]
    assert not dest.exists()

    result = downloader.download("https://example.com/vae", dest, DATA_HASH)
    assert session.requests[-1]["Range"] == "bytes=128-"
    assert result.success
    assert result.sha256 == DATA_HASH
    assert result.total_bytes == len(DATA)
    assert dest.read_bytes() == DATA


def test_already_cancelled_token_never_requests(tmp_path):
    session = FakeSession()
    token = CancellationToken()
    token.cancel()
    with pytest.raises(DownloadAborted):
        Downloader(session=session).download("https://example.com/x", tmp_path / "x.bin", token=token)
    assert session.requests == []


def test_server_ignoring_range_restarts(tmp_path):
    dest = tmp_path / "model.safetensors"
    part_path_for(dest).write_bytes(b"stale bytes")
    result = Downloader(session=FakeSession(honour_range=False)).download(
        "https://example.com/model", dest, DATA_HASH)

    assert result.success
    assert dest.read_bytes() == DATA


def test_hash_mismatch_discards_part_file(tmp_path):
    dest = tmp_path / "model.safetensors"
    result = Downloader(session=FakeSession()).download("https://example.com/model", dest, "00" * 32)

    assert not result.success
    assert result.error.startswith("Hash mismatch")
    assert not dest.exists()
    assert not part_path_for(dest).exists()


def test_network_error_keeps_partial_bytes(tmp_path):
    dest = tmp_path / "model.safetensors"
    result = Downloader(session=FakeSession(fail_after=256)).download("https://example.com/model", dest)

    assert not result.success
    assert "connection reset" in result.error
    assert result.bytes_downloaded == 256
    assert part_path_for(dest).read_bytes() == DATA[:256]


def test_http_error_is_reported(tmp_path):
    result = Downloader(session=FakeSession(status_code=404)).download(
        "https://example.com/missing", tmp_path / "missing.bin")
    assert not result.success
    assert "404" in result.error


def test_existing_destination_is_replaced(tmp_path):
    dest = tmp_path / "model.safetensors"
    dest.write_bytes(b"old")
    result = Downloader(session=FakeSession()).download("https://example.com/model", dest)
    assert result.success
    assert result.sha256 is None
    assert dest.read_bytes() == DATA


def test_total_size_from_headers():
    assert total_size_from_headers({"Content-Range": "bytes 100-199/200"}, 100) == 200
    assert total_size_from_headers({"Content-Length": "50"}, 100) == 150
    assert total_size_from_headers({}, 0) == 0


class HeadSession:
    def __init__(self, headers=None, error=None):
        self.headers = headers or {}
        self.error = error

    def head(self, url, headers=None, allow_redirects=True, timeout=None):
        if self.error:
            raise self.error
        return FakeResponse(headers=self.headers)


def test_get_file_info():
    info = Downloader(session=HeadSession({
        "Content-Length": "1234",
        "Accept-Ranges": "bytes",
        "Content-Disposition": 'attachment; filename="detail_tweaker.safetensors"',
        "Content-Type": "application/octet-stream",
    })).get_file_info("https://civitai.com/api/download/models/62833")

    assert info == {
        "size": 1234,
        "filename": "detail_tweaker.safetensors",
        "resumable": True,
        "content_type": "application/octet-stream",
    }


def test_get_file_info_falls_back_to_url_name():
    info = Downloader(session=HeadSession()).get_file_info(
        "https://huggingface.co/org/repo/resolve/main/ae%20v2.safetensors")
    assert info["filename"] == "ae v2.safetensors"
    assert info["size"] is None
    assert not info["resumable"]


def test_get_file_info_error():
    info = Downloader(session=HeadSession(error=requests.ConnectionError("offline"))).get_file_info(
        "https://example.com/x")
    assert info == {"error": "offline"}
