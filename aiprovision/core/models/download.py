"""
Download models — what to fetch and which credential goes where.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator


def derive_filename(url: str, explicit: str | None = None) -> str:
    """Name a downloaded file is stored under.

    An explicit name wins.  Otherwise the last segment of the URL path,
    percent-decoded, with the query string and fragment dropped::

        https://civitai.com/api/download/models/1699918?type=Model  →  1699918

    Raises:
        ValueError: If no usable name can be derived (e.g. the URL path
            ends in ``/``) or the explicit name is a path, not a name.
    """
    if explicit:
        name = explicit
    else:
        name = PurePosixPath(unquote(urlsplit(url).path)).name

    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise ValueError(f"Cannot derive a file name from {url!r}")
    return name


class DownloadSpec(BaseModel):
    """One file to fetch into a directory.

    ``destination_dir`` may be left empty, in which case the batch
    directory handed to the orchestrator is used.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    destination_dir: Path | None = None
    filename: str | None = None
    sha256: str | None = None

    @field_validator("url")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"Not an absolute http(s) URL: {value!r}")
        return value

    @property
    def target_name(self) -> str:
        """Derived (or explicit) file name.  Raises ValueError if invalid."""
        return derive_filename(self.url, self.filename)

    def target_path(self, default_dir: Path) -> Path:
        """Full path of the downloaded file."""
        return (self.destination_dir or default_dir) / self.target_name


class CredentialRule(BaseModel):
    """Maps a host to the environment variable holding its token.

    ``host`` matches the URL host itself or the host with exactly one
    extra leading label, so ``huggingface.co`` covers
    ``cdn-lfs.huggingface.co`` but never ``nothuggingface.co`` or
    ``huggingface.co.evil.net``.
    """

    model_config = ConfigDict(frozen=True)

    host: str
    secret_env_var: str
    schemes: list[str] = Field(default_factory=lambda: ["https"])

    def matches(self, url: str) -> bool:
        parts = urlsplit(url)
        if parts.scheme.lower() not in self.schemes:
            return False

        host = (parts.hostname or "").lower()
        pattern = self.host.lower().strip(".")
        if not host or not pattern:
            return False
        if host == pattern:
            return True
        if not host.endswith("." + pattern):
            return False
        label = host[: -len(pattern) - 1]
        return bool(label) and "." not in label
