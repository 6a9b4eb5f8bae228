"""
Transfer backends — resumable, segmented file downloads.

Both backends write into ``<name>.part`` and only rename onto the
final name once the transfer is complete.  An interrupted run
therefore never leaves a file that a later presence check would
mistake for a finished download; the next run resumes the ``.part``
instead.

HttpTransfer (urllib):
  - **Resume**: an existing ``.part`` is continued with an HTTP Range
    request; a server that answers 200 instead of 206 restarts it.
  - **Segments**: large files on servers that advertise
    ``Accept-Ranges: bytes`` are fetched as N parallel ranges, each
    into its own resumable ``.part.<i>`` file, then joined.
  - **Size check**: the result must match ``Content-Length`` when the
    server sent one.

Aria2Transfer hands the same job to ``aria2c -c -x N -s N``.
"""

from __future__ import annotations

import hashlib
import http.client
import logging
import math
import os
import shutil
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from aiprovision.adapters.shell.command import run_command
from aiprovision.core.errors import TransferFailure

logger = logging.getLogger(__name__)

USER_AGENT = "aiprovision/1.0"

MiB = 1024 * 1024


def _fmt_size(n: int | float) -> str:
    """Format byte count to human-readable string."""
    for unit in ("B", "KB", "MB", "GB"):
        if n < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} TB"


def part_path(dest: Path) -> Path:
    """Temporary name a transfer writes to before the final rename."""
    return dest.with_name(dest.name + ".part")


def _request(url: str, headers: dict[str, str], method: str | None = None) -> urllib.request.Request:
    """Build a request whose Authorization header is dropped on redirect.

    Hubs answer with a redirect to a CDN or signed storage URL on another
    host; the token must only reach the host it was resolved for.
    """
    req = urllib.request.Request(url, method=method)
    for key, value in headers.items():
        if key.lower() == "authorization":
            req.add_unredirected_header(key, value)
        else:
            req.add_header(key, value)
    return req


def verify_checksum(path: Path, expected: str) -> bool:
    """Verify a file digest.  Format: ``hex`` (sha256) or ``algo:hex``."""
    algo, _, digest = expected.rpartition(":")
    h = hashlib.new(algo or "sha256")
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(MiB), b""):
            h.update(chunk)
    return h.hexdigest() == digest.lower()


@dataclass
class TransferResult:
    """A completed transfer."""

    path: Path
    size_bytes: int
    resumed: bool = False
    segments: int = 1


class Transfer(ABC):
    """A way of moving one URL into one local file."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier (``http``, ``aria2``)."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the backend can run here.  Never raises."""

    @abstractmethod
    def fetch(
        self,
        url: str,
        dest: Path,
        headers: dict[str, str] | None = None,
    ) -> TransferResult:
        """Download ``url`` to ``dest``.

        Raises:
            TransferFailure: On any failure.  Partial data stays in the
                ``.part`` file(s) for the next attempt to resume.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class HttpTransfer(Transfer):
    """Pure-Python transfer over urllib.

    Args:
        segments: Parallel ranges for large files (1 disables).
        segment_min_size: Files smaller than this use a single stream.
        timeout: Socket timeout in seconds.
        chunk_size: Read size per loop iteration.
    """

    def __init__(
        self,
        segments: int = 8,
        segment_min_size: int = 64 * MiB,
        timeout: float = 60.0,
        chunk_size: int = MiB,
    ):
        self.segments = max(segments, 1)
        self.segment_min_size = segment_min_size
        self.timeout = timeout
        self.chunk_size = chunk_size

    @property
    def name(self) -> str:
        return "http"

    def is_available(self) -> bool:
        return True

    def fetch(
        self,
        url: str,
        dest: Path,
        headers: dict[str, str] | None = None,
    ) -> TransferResult:
        headers = {"User-Agent": USER_AGENT, **(headers or {})}
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = part_path(dest)

        total, accepts_ranges = self._probe(url, headers)

        if (
            self.segments > 1
            and accepts_ranges
            and total is not None
            and total >= self.segment_min_size
            and not part.exists()
        ):
            size = self._fetch_segmented(url, part, headers, total)
            resumed, segments = False, self.segments
        else:
            size, resumed = self._fetch_stream(url, part, headers, total)
            segments = 1

        if total is not None and size != total:
            part.unlink(missing_ok=True)
            raise TransferFailure(
                f"Size mismatch for {dest.name}: got {size} bytes, expected {total}"
            )

        os.replace(part, dest)
        logger.debug("Saved %s (%s)", dest, _fmt_size(size))
        return TransferResult(path=dest, size_bytes=size, resumed=resumed, segments=segments)

    # ── Internals ───────────────────────────────────────────────

    def _probe(self, url: str, headers: dict[str, str]) -> tuple[int | None, bool]:
        """HEAD the URL: (Content-Length or None, supports byte ranges)."""
        req = _request(url, headers, method="HEAD")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                length = resp.headers.get("Content-Length")
                ranges = resp.headers.get("Accept-Ranges", "").lower() == "bytes"
        except Exception as e:
            logger.debug("HEAD %s failed (%s) — single stream", url, e)
            return None, False

        try:
            total = int(length) if length is not None else None
        except ValueError:
            total = None
        return total, ranges

    def _open(self, url: str, headers: dict[str, str]):
        req = _request(url, headers)
        try:
            return urllib.request.urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as e:
            raise TransferFailure(f"HTTP {e.code} for {url}") from e
        except (urllib.error.URLError, OSError) as e:
            raise TransferFailure(f"Cannot reach {url}: {e}") from e

    def _fetch_stream(
        self,
        url: str,
        part: Path,
        headers: dict[str, str],
        total: int | None,
    ) -> tuple[int, bool]:
        offset = part.stat().st_size if part.exists() else 0

        if offset and total is not None:
            if offset == total:
                logger.info("Partial file %s is already complete", part.name)
                return offset, True
            if offset > total:
                part.unlink()
                offset = 0

        req_headers = dict(headers)
        if offset:
            req_headers["Range"] = f"bytes={offset}-"
            logger.info("Partial file found: %s (%s), attempting resume", part.name, _fmt_size(offset))

        try:
            resp = self._open(url, req_headers)
        except TransferFailure as e:
            if offset and isinstance(e.__cause__, urllib.error.HTTPError) and e.__cause__.code == 416:
                # Server no longer agrees on the size: start over next time
                part.unlink(missing_ok=True)
            raise

        with resp:
            if offset and resp.getcode() == 206:
                mode = "ab"
                resumed = True
            else:
                mode = "wb"
                offset = 0
                resumed = False

            expected = total
            if expected is None:
                length = resp.headers.get("Content-Length")
                if length and length.isdigit():
                    expected = int(length) + offset

            downloaded = offset
            last_progress = -1
            try:
                with open(part, mode) as f:
                    while True:
                        chunk = resp.read(self.chunk_size)
                        if not chunk:
                            break
                        f.write(chunk)
                        downloaded += len(chunk)

                        if expected:
                            pct = int(downloaded * 100 / expected)
                            if pct >= last_progress + 10:
                                last_progress = pct
                                logger.info(
                                    "%s: %d%% (%s / %s)",
                                    part.name[: -len(".part")],
                                    pct,
                                    _fmt_size(downloaded),
                                    _fmt_size(expected),
                                )
            except (OSError, http.client.HTTPException) as e:
                raise TransferFailure(f"Transfer interrupted for {url}: {e}") from e

        if expected and downloaded < expected:
            raise TransferFailure(
                f"Connection closed early for {url}: {downloaded}/{expected} bytes"
            )
        return downloaded, resumed

    def _fetch_segmented(
        self,
        url: str,
        part: Path,
        headers: dict[str, str],
        total: int,
    ) -> int:
        step = math.ceil(total / self.segments)
        ranges = [
            (i, start, min(start + step, total) - 1)
            for i, start in enumerate(range(0, total, step))
        ]
        seg_paths = [part.with_name(f"{part.name}.{i}") for i, _, _ in ranges]

        logger.info(
            "Fetching %s in %d segments (%s)",
            part.name[: -len(".part")],
            len(ranges),
            _fmt_size(total),
        )

        errors: list[str] = []
        with ThreadPoolExecutor(max_workers=len(ranges)) as pool:
            futures = [
                pool.submit(self._fetch_range, url, seg_paths[i], start, end, headers)
                for i, start, end in ranges
            ]
            for future in futures:
                try:
                    future.result()
                except TransferFailure as e:
                    errors.append(str(e))

        if errors:
            raise TransferFailure(f"{len(errors)} segment(s) failed: {errors[0]}")

        with open(part, "wb") as out:
            for seg in seg_paths:
                with open(seg, "rb") as src:
                    shutil.copyfileobj(src, out, self.chunk_size)
        for seg in seg_paths:
            seg.unlink(missing_ok=True)

        return part.stat().st_size

    def _fetch_range(
        self,
        url: str,
        seg: Path,
        start: int,
        end: int,
        headers: dict[str, str],
    ) -> None:
        expected = end - start + 1
        have = seg.stat().st_size if seg.exists() else 0
        if have == expected:
            return
        if have > expected:
            seg.unlink()
            have = 0

        req_headers = dict(headers)
        req_headers["Range"] = f"bytes={start + have}-{end}"
        resp = self._open(url, req_headers)
        with resp:
            if resp.getcode() != 206:
                raise TransferFailure(f"Server ignored Range request for {url}")
            try:
                with open(seg, "ab") as f:
                    while True:
                        chunk = resp.read(self.chunk_size)
                        if not chunk:
                            break
                        f.write(chunk)
            except (OSError, http.client.HTTPException) as e:
                raise TransferFailure(f"Segment {seg.name} interrupted: {e}") from e

        if seg.stat().st_size != expected:
            raise TransferFailure(
                f"Segment {seg.name} incomplete: {seg.stat().st_size}/{expected} bytes"
            )


class Aria2Transfer(Transfer):
    """Delegate to ``aria2c`` (multi-connection, resumable).

    Args:
        connections: Value for both ``-x`` and ``-s``.
        timeout: Seconds before the aria2c process is killed.
    """

    def __init__(self, connections: int = 16, timeout: int = 6 * 3600):
        self.connections = max(connections, 1)
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "aria2"

    def is_available(self) -> bool:
        return shutil.which("aria2c") is not None

    def fetch(
        self,
        url: str,
        dest: Path,
        headers: dict[str, str] | None = None,
    ) -> TransferResult:
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = part_path(dest)
        resumed = part.exists()

        cmd = [
            "aria2c",
            "-c",
            "-x", str(self.connections),
            "-s", str(self.connections),
            "--auto-file-renaming=false",
            "--allow-overwrite=true",
            "--console-log-level=warn",
            "--summary-interval=0",
            f"--user-agent={USER_AGENT}",
            "-d", str(dest.parent),
            "-o", part.name,
        ]
        for key, value in (headers or {}).items():
            cmd.append(f"--header={key}: {value}")
        cmd.append(url)

        result = run_command(cmd, timeout=self.timeout)
        if not result.ok:
            raise TransferFailure(
                f"aria2c failed for {url}",
                command=f"aria2c ... {url}",
                exit_code=result.exit_code,
                stderr=result.stderr or result.error,
            )

        os.replace(part, dest)
        return TransferResult(
            path=dest,
            size_bytes=dest.stat().st_size,
            resumed=resumed,
            segments=self.connections,
        )


def select_transfer(kind: str = "auto", segments: int = 8) -> Transfer:
    """Pick a backend: ``http``, ``aria2``, or ``auto`` (aria2c if installed)."""
    if kind == "http":
        return HttpTransfer(segments=segments)
    aria2 = Aria2Transfer(connections=max(segments, 1))
    if kind == "aria2":
        return aria2
    if aria2.is_available():
        logger.debug("aria2c found — using it for transfers")
        return aria2
    return HttpTransfer(segments=segments)
