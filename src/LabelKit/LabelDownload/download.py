# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.download",
#   "purpose": "Stream installer downloads to a transient file with progress events and place them into a workspace",
#   "sections": [
#     {"id": "events", "name": "Progress & Result Types", "anchor": "EVT", "kind": "api"},
#     {"id": "naming", "name": "Filename Resolution", "anchor": "NAM", "kind": "helpers"},
#     {"id": "coordinator", "name": "DownloadCoordinator", "anchor": "class-downloadcoordinator", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Download coordination for label URLs.

A download runs in two halves.  :meth:`DownloadCoordinator.iter_download`
streams the response body into a transient file outside any workspace and
yields :class:`DownloadProgress` events followed by one :class:`DownloadedFile`.
:meth:`DownloadCoordinator.place` then moves that file into the workspace
under the name the server suggested, which is what the container resolver
starts from.

Only transport-level failures (connection refused, timeouts before the
response arrives) are retried.  A non-2xx status is final and is reported
before any body bytes are written.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterator, Mapping, Optional, Union
from urllib.parse import unquote, urlsplit

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .cancellation import CancellationToken
from .errors import DownloadError, InvalidDownloadURL
from .logging_utils import mask_url
from .models import Workspace
from .net import get_http_client
from .settings import LabelDownloadSettings, get_default_config

LOGGER = logging.getLogger("LabelKit.LabelDownload.download")

__all__ = [
    "DownloadProgress",
    "DownloadedFile",
    "DownloadEvent",
    "DownloadCoordinator",
    "validate_download_url",
    "resolve_download_filename",
    "sanitize_filename",
    "format_transfer_size",
]

_SUPPORTED_SCHEMES = frozenset({"http", "https"})
_RETRYABLE_TRANSPORT_ERRORS = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
)
_MIB = 1_048_576


# --- Progress & result types ----------------------------------------------------


@dataclass(frozen=True, slots=True)
class DownloadProgress:
    """Bytes written so far and, when the server announced it, the expected total."""

    bytes_written: int
    bytes_expected: Optional[int] = None

    @property
    def fraction(self) -> Optional[float]:
        if not self.bytes_expected:
            return None
        return min(self.bytes_written / self.bytes_expected, 1.0)

    @property
    def percent(self) -> Optional[float]:
        fraction = self.fraction
        return None if fraction is None else fraction * 100.0

    def describe(self) -> str:
        return format_transfer_size(self.bytes_written, self.bytes_expected)


@dataclass(frozen=True, slots=True)
class DownloadedFile:
    """Completed transfer sitting in a transient location outside any workspace."""

    location: Path
    suggested_file_name: str
    final_url: str
    status_code: int
    bytes_written: int


DownloadEvent = Union[DownloadProgress, DownloadedFile]


def format_transfer_size(written: int, expected: Optional[int] = None) -> str:
    """Render transfer progress as ``"12.3 MB of 45.6 MB"``.

    Totals above 1000 MB switch to gigabytes.

    Examples:
        >>> format_transfer_size(5 * 1_048_576, 10 * 1_048_576)
        '5.0 MB of 10.0 MB'
        >>> format_transfer_size(1_048_576)
        '1.0 MB'
    """

    written_mb = written / _MIB
    if not expected or expected <= 0:
        return f"{written_mb:.1f} MB"
    total_mb = expected / _MIB
    if total_mb > 1000:
        total_gb = total_mb / 1024
        if total_gb > 1:
            return f"{written_mb / 1024:.2f} GB of {total_gb:.2f} GB"
        return f"{written_mb:.1f} MB of {total_gb:.2f} GB"
    return f"{written_mb:.1f} MB of {total_mb:.1f} MB"


# --- Filename resolution --------------------------------------------------------


def validate_download_url(url: str) -> str:
    """Return ``url`` stripped of surrounding whitespace when it can be downloaded.

    Raises:
        InvalidDownloadURL: For unparseable input, non-HTTP schemes, or a missing host.
    """

    candidate = (url or "").strip()
    if not candidate:
        raise InvalidDownloadURL(url, "URL is empty")
    try:
        parts = urlsplit(candidate)
    except ValueError as exc:
        raise InvalidDownloadURL(url, str(exc)) from exc
    if parts.scheme.lower() not in _SUPPORTED_SCHEMES:
        raise InvalidDownloadURL(url, f"unsupported scheme {parts.scheme or '(none)'!r}")
    if not parts.hostname:
        raise InvalidDownloadURL(url, "URL has no host")
    try:
        httpx.URL(candidate)
    except httpx.InvalidURL as exc:
        raise InvalidDownloadURL(url, str(exc)) from exc
    return candidate


def sanitize_filename(filename: str, fallback: str = "downloaded.tmp") -> str:
    """Sanitize filenames to prevent directory traversal and unsafe characters.

    Args:
        filename: Candidate filename provided by the server or URL.
        fallback: Name used when nothing safe remains.

    Returns:
        Safe filename compatible with local filesystem storage.
    """

    original = filename
    safe = filename.replace(os.sep, "_").replace("/", "_").replace("\\", "_")
    safe = re.sub(r"[^A-Za-z0-9 ._+-]", "_", safe)
    safe = safe.strip(" ._") or fallback
    if len(safe) > 255:
        stem, dot, suffix = safe.rpartition(".")
        safe = f"{stem[: 254 - len(suffix)]}.{suffix}" if dot and len(suffix) < 16 else safe[:255]
    if safe != original:
        LOGGER.warning(
            "sanitized unsafe filename",
            extra={"stage": "download", "original": original, "sanitized": safe},
        )
    return safe


def resolve_download_filename(
    headers: Mapping[str, str],
    final_url: str,
    fallback: str = "downloaded.tmp",
) -> str:
    """Pick the file name for a completed download.

    The ``filename=`` token of ``Content-Disposition`` wins, then the last
    path segment of the final (post-redirect) URL, then ``fallback``.
    """

    disposition = headers.get("content-disposition") or ""
    for part in disposition.split(";"):
        if "filename=" not in part:
            continue
        name = part.rsplit("=", 1)[1].strip().strip("\"'").strip()
        if name:
            return sanitize_filename(name, fallback)
        break

    try:
        path_name = PurePosixPath(unquote(urlsplit(final_url).path)).name
    except ValueError:
        path_name = ""
    if path_name:
        return sanitize_filename(path_name, fallback)
    return fallback


# --- Coordinator ----------------------------------------------------------------


class DownloadCoordinator:
    """Streams label downloads and places them into workspaces.

    Args:
        settings: Settings providing HTTP timeouts, chunking, and retries.
        client: Optional HTTPX client; defaults to the shared client.
    """

    def __init__(
        self,
        settings: Optional[LabelDownloadSettings] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._settings = (settings or get_default_config()).http
        self._client = client

    @property
    def client(self) -> httpx.Client:
        return self._client if self._client is not None else get_http_client(self._settings)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=wait_exponential(multiplier=self._settings.backoff_factor, max=30),
            retry=retry_if_exception_type(_RETRYABLE_TRANSPORT_ERRORS),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )

    def _open(self, url: str) -> httpx.Response:
        client = self.client
        for attempt in self._retrying():
            with attempt:
                request = client.build_request("GET", url)
                return client.send(request, stream=True)
        raise AssertionError("unreachable")  # pragma: no cover

    def iter_download(
        self,
        url: str,
        transfer_dir: Path,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[DownloadEvent]:
        """Stream ``url`` into a transient file under ``transfer_dir``.

        Yields:
            :class:`DownloadProgress` events at most every
            ``progress_interval_bytes`` plus one final progress event, then a
            single :class:`DownloadedFile`.

        Raises:
            InvalidDownloadURL: When ``url`` cannot be downloaded.
            DownloadError: On a non-2xx status or a transport failure.
            ResolutionCancelled: When ``cancel_token`` fires between chunks.
        """

        url = validate_download_url(url)
        transfer_dir.mkdir(parents=True, exist_ok=True)
        LOGGER.info("starting download", extra={"stage": "download", "url": mask_url(url)})

        try:
            response = self._open(url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise DownloadError(
                f"Download failed: {exc}", transport=type(exc).__name__
            ) from exc

        transient: Optional[Path] = None
        completed = False
        try:
            if not response.is_success:
                raise DownloadError(
                    f"Download failed with HTTP status {response.status_code}",
                    status_code=response.status_code,
                )
            expected = _expected_length(response)
            handle = tempfile.NamedTemporaryFile(
                mode="wb", dir=transfer_dir, prefix="download-", suffix=".part", delete=False
            )
            transient = Path(handle.name)
            written = 0
            last_reported = 0
            with handle:
                try:
                    for chunk in response.iter_bytes(self._settings.chunk_size):
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled("next download chunk")
                        handle.write(chunk)
                        written += len(chunk)
                        if written - last_reported >= self._settings.progress_interval_bytes:
                            last_reported = written
                            yield DownloadProgress(written, expected)
                except httpx.HTTPError as exc:
                    raise DownloadError(
                        f"Download interrupted after {written} bytes: {exc}",
                        transport=type(exc).__name__,
                    ) from exc
            yield DownloadProgress(written, expected)

            final_url = str(response.url)
            name = resolve_download_filename(
                response.headers, final_url, self._settings.fallback_filename
            )
            LOGGER.info(
                "download complete",
                extra={
                    "stage": "download",
                    "url": mask_url(final_url),
                    "bytes": written,
                    "file_name": name,
                },
            )
            completed = True
            yield DownloadedFile(
                location=transient,
                suggested_file_name=name,
                final_url=final_url,
                status_code=response.status_code,
                bytes_written=written,
            )
        finally:
            response.close()
            if not completed and transient is not None:
                transient.unlink(missing_ok=True)

    def download(
        self,
        url: str,
        transfer_dir: Path,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DownloadedFile:
        """Run :meth:`iter_download` to completion and return its result."""

        result: Optional[DownloadedFile] = None
        for event in self.iter_download(url, transfer_dir, cancel_token=cancel_token):
            if isinstance(event, DownloadedFile):
                result = event
        if result is None:  # pragma: no cover - iter_download always ends with a file
            raise DownloadError("Download produced no file", transport="incomplete")
        return result

    def place(self, downloaded: DownloadedFile, workspace: Workspace) -> Path:
        """Move the transient file into ``workspace`` under its suggested name."""

        target = workspace.root / downloaded.suggested_file_name
        try:
            shutil.move(os.fspath(downloaded.location), os.fspath(target))
        except OSError as exc:
            downloaded.location.unlink(missing_ok=True)
            raise DownloadError(
                f"Could not move download into workspace: {exc}", transport="filesystem"
            ) from exc
        LOGGER.debug(
            "placed download",
            extra={
                "stage": "download",
                "workspace": workspace.workspace_id,
                "file_name": target.name,
            },
        )
        return target


def _expected_length(response: httpx.Response) -> Optional[int]:
    if response.headers.get("content-encoding"):
        return None
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None
