"""HTTP downloads with progress output and SHA-256 verification."""

from __future__ import annotations

import hashlib
import sys
import time
import urllib.error
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

DEFAULT_DOWNLOAD_TIMEOUT = 3600.0
DEFAULT_PROGRESS_INTERVAL = 5.0

_MB = 1024 * 1024
_CHUNK = 64 * 1024


class DownloadError(Exception):
    """Raised when a download fails."""


class ChecksumError(DownloadError):
    """Raised when a file's checksum does not match or cannot be computed."""


@dataclass(frozen=True)
class UbuntuRelease:
    """An Ubuntu release with its download location and optional SHA-256."""

    version: str
    url: str
    checksum: str = ""


def ubuntu_releases(table: Mapping[str, Mapping[str, Any]]) -> dict[str, UbuntuRelease]:
    """Build releases from a table mapping version to {"url", "checksum"}."""
    return {
        version: UbuntuRelease(
            version=version,
            url=entry.get("url", ""),
            checksum=entry.get("checksum", "") or "",
        )
        for version, entry in table.items()
    }


@dataclass
class ProgressCounter:
    """Counts bytes passing through and prints progress at intervals."""

    total: int = 0
    interval: float = DEFAULT_PROGRESS_INTERVAL
    stream: TextIO | None = None
    current: int = 0
    start_time: float = field(default_factory=time.monotonic)
    last_print: float | None = None

    def write(self, data: bytes) -> int:
        """Account for a chunk of data and return its length."""
        n = len(data)
        self.current += n
        now = time.monotonic()
        if (
            self.last_print is None
            or now - self.last_print > self.interval
            or self.current == self.total
        ):
            self.last_print = now
            self._print_progress()
        return n

    def _print_progress(self) -> None:
        elapsed = max(time.monotonic() - self.start_time, 1e-9)
        speed = self.current / elapsed / _MB
        if self.total > 0:
            percent = self.current / self.total * 100
            line = (
                f"\r   Progress: {self.current / _MB:.1f} MB / {self.total / _MB:.1f} MB "
                f"({percent:.1f}%) - {speed:.1f} MB/s"
            )
        else:
            line = f"\r   Downloaded: {self.current / _MB:.1f} MB - {speed:.1f} MB/s"
        out = self.stream or sys.stdout
        out.write(line)
        out.flush()


def compute_sha256(path: str | Path) -> str:
    """Return the hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(path: str | Path, expected: str) -> None:
    """Raise ChecksumError unless the file's SHA-256 equals expected."""
    try:
        actual = compute_sha256(path)
    except OSError as exc:
        raise ChecksumError(f"failed to compute checksum: {exc}") from exc
    if actual != expected:
        raise ChecksumError(f"checksum mismatch: expected {expected}, got {actual}")


def _base_name(url: str) -> str:
    stripped = url.rstrip("/")
    return stripped.rsplit("/", 1)[-1] if stripped else "/"


def download_file(
    url: str, dest_path: str | Path, timeout: float = DEFAULT_DOWNLOAD_TIMEOUT
) -> None:
    """Download url to dest_path, printing progress to standard output."""
    try:
        out = open(dest_path, "wb")
    except OSError as exc:
        raise DownloadError(f"failed to create file: {exc}") from exc

    with out:
        request = urllib.request.Request(url, method="GET")
        try:
            response = urllib.request.urlopen(request, timeout=timeout)
        except urllib.error.HTTPError as exc:
            exc.close()
            raise DownloadError(f"download failed: HTTP {exc.code}") from None
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise DownloadError(f"failed to download: {exc}") from exc

        with response:
            if response.status != 200:
                raise DownloadError(f"download failed: HTTP {response.status}")

            length = response.headers.get("Content-Length")
            size = int(length) if length and length.isdigit() else -1
            filename = _base_name(url)
            if size > 0:
                print(f"📥 Downloading {filename} ({size / _MB:.1f} MB)...")
            else:
                print(f"📥 Downloading {filename}...")

            counter = ProgressCounter(total=size)
            try:
                for chunk in iter(lambda: response.read(_CHUNK), b""):
                    out.write(chunk)
                    counter.write(chunk)
            except OSError as exc:
                raise DownloadError(f"failed to save file: {exc}") from exc

    print()
    print(f"✅ Download complete: {filename}")