"""
Resumable HTTP downloader for model files.

Bytes are streamed into ``<destination>.part``; an interrupted or paused
download continues from that file with a Range request. The part file is only
renamed onto the destination once the whole file arrived and, when a hash is
expected, matched it.
"""

import hashlib
import logging
import re
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import unquote, urlparse

import requests

from .exceptions import DownloadAborted
from .forensics import HASH_READ_SIZE, calculate_full_hash

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024
PART_SUFFIX = ".part"

ProgressCallback = Callable[[int, int, float], None]

_CONTENT_RANGE_TOTAL = re.compile(r"/\s*(\d+)\s*$")
_DISPOSITION_FILENAME = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.IGNORECASE)


@dataclass
class DownloadResult:
    success: bool
    filepath: Optional[str] = None
    bytes_downloaded: int = 0
    total_bytes: int = 0
    sha256: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def part_path_for(destination: Path) -> Path:
    destination = Path(destination)
    return destination.with_name(destination.name + PART_SUFFIX)


def total_size_from_headers(headers, offset: int) -> int:
    """Full file size: Content-Range total, else offset + Content-Length, else 0."""
    content_range = headers.get("Content-Range")
    if content_range:
        match = _CONTENT_RANGE_TOTAL.search(content_range)
        if match:
            return int(match.group(1))
    content_length = headers.get("Content-Length")
    if content_length and str(content_length).isdigit():
        return offset + int(content_length)
    return 0


class Downloader:
    def __init__(self, session: Optional[requests.Session] = None, timeout: int = 30,
                 chunk_size: int = DEFAULT_CHUNK_SIZE, progress_interval: float = 0.5,
                 headers: Optional[Dict[str, str]] = None):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.progress_interval = progress_interval
        self.headers = dict(headers or {})

    def download(self, url: str, destination_path: Path, expected_hash: Optional[str] = None,
                 on_progress: Optional[ProgressCallback] = None, token=None) -> DownloadResult:
        """Download url to destination_path, resuming a previous partial file.

        Args:
            url: Source URL
            destination_path: Final file location
            expected_hash: SHA-256 the finished file must match
            on_progress: Called with (bytes so far, total bytes or 0, bytes/sec)
            token: Cancellation token checked before every chunk

        Returns:
            DownloadResult. Network errors and hash mismatches are reported in
            ``error`` rather than raised.

        Raises:
            DownloadAborted: the token fired; the part file is kept for resuming
        """
        destination = Path(destination_path)
        part = part_path_for(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        offset = part.stat().st_size if part.exists() else 0
        if token is not None and token.cancelled:
            raise DownloadAborted(offset)

        headers = dict(self.headers)
        if offset:
            headers["Range"] = f"bytes={offset}-"
            logger.info(f"⏯️ Resuming {destination.name} from {offset} bytes")

        try:
            response = self.session.get(url, headers=headers, stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"⚠️ Download request failed for {url}: {e}")
            return DownloadResult(False, str(destination), offset, error=str(e))

        downloaded = offset
        total = 0
        speed = 0.0
        hasher = hashlib.sha256() if expected_hash else None

        with response:
            try:
                response.raise_for_status()
                if offset and response.status_code != 206:
                    logger.info(f"🔄 Server ignored the range request, restarting {destination.name}")
                    offset = 0
                    downloaded = 0
                total = total_size_from_headers(response.headers, offset)

                if hasher is not None and offset:
                    self._hash_prefix(part, hasher)

                started = time.monotonic()
                last_report = 0.0
                with open(part, "ab" if offset else "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if token is not None and token.cancelled:
                            raise DownloadAborted(downloaded)
                        if not chunk:
                            continue
                        f.write(chunk)
                        if hasher is not None:
                            hasher.update(chunk)
                        downloaded += len(chunk)

                        now = time.monotonic()
                        elapsed = now - started
                        speed = (downloaded - offset) / elapsed if elapsed > 0 else 0.0
                        if on_progress and now - last_report >= self.progress_interval:
                            on_progress(downloaded, total, speed)
                            last_report = now
            except requests.RequestException as e:
                logger.warning(f"⚠️ Download of {destination.name} failed at {downloaded} bytes: {e}")
                return DownloadResult(False, str(destination), downloaded, total, error=str(e))
            except OSError as e:
                logger.error(f"❌ Could not write {part}: {e}")
                return DownloadResult(False, str(destination), downloaded, total, error=str(e))

        if on_progress:
            on_progress(downloaded, total or downloaded, speed)

        sha256 = None
        if hasher is not None:
            sha256 = hasher.hexdigest().upper()
            if sha256 != expected_hash.strip().upper():
                error = f"Hash mismatch: expected {expected_hash.strip().upper()}, got {sha256}"
                logger.error(f"❌ {destination.name}: {error}")
                self._discard(part)
                return DownloadResult(False, str(destination), downloaded, total, sha256, error)

        try:
            if destination.exists():
                destination.unlink()
            part.replace(destination)
        except OSError as e:
            logger.error(f"❌ Could not move {part} into place: {e}")
            return DownloadResult(False, str(destination), downloaded, total, sha256, str(e))

        logger.info(f"✅ Downloaded {destination.name} ({downloaded} bytes)")
        return DownloadResult(True, str(destination), downloaded, total or downloaded, sha256)

    def get_file_info(self, url: str) -> Dict[str, Any]:
        """HEAD the URL for size, filename and range support."""
        try:
            response = self.session.head(url, headers=self.headers, allow_redirects=True,
                                         timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            return {"error": str(e)}

        filename = None
        disposition = response.headers.get("Content-Disposition")
        if disposition:
            match = _DISPOSITION_FILENAME.search(disposition)
            if match:
                filename = unquote(match.group(1).strip())
        if not filename:
            filename = unquote(Path(urlparse(url).path).name) or None

        return {
            "size": total_size_from_headers(response.headers, 0) or None,
            "filename": filename,
            "resumable": response.headers.get("Accept-Ranges", "").lower() == "bytes",
            "content_type": response.headers.get("Content-Type"),
        }

    def hash_file(self, path: Path) -> Optional[str]:
        return calculate_full_hash(path)

    def _hash_prefix(self, part: Path, hasher):
        with open(part, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_READ_SIZE), b""):
                hasher.update(chunk)

    def _discard(self, part: Path):
        try:
            part.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"⚠️ Could not remove partial file {part}: {e}")
