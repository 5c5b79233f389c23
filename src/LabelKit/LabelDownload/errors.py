# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.errors",
#   "purpose": "Define the exception hierarchy used across download, container resolution, and inspection",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "download", "name": "Download Errors", "anchor": "DWN", "kind": "api"},
#     {"id": "resolution", "name": "Resolution Errors", "anchor": "RES", "kind": "api"},
#     {"id": "inspection", "name": "Inspection Errors", "anchor": "INS", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Exception hierarchy shared across label downloads, unwrapping, and inspection.

The label pipeline spans an HTTP transfer, a chain of subprocess-driven unwrap
steps (archives, disk images, license-gated images), and identity inspection of
the resulting installer package or application bundle.  This module groups the
failure modes so callers can react to the high-level category (a download that
never arrived vs. a container that did not hold what its declared type promised)
while every error still renders as one descriptive message for display.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

__all__ = [
    "LabelDownloadError",
    "ConfigError",
    "DownloadError",
    "InvalidDownloadURL",
    "ResolutionError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "MissingArtifactError",
    "MountError",
    "ConversionError",
    "ResolutionCancelled",
    "InspectionError",
]


class LabelDownloadError(RuntimeError):
    """Base exception for label download, resolution, or inspection failures."""


class ConfigError(LabelDownloadError):
    """Raised when settings or CLI inputs are invalid."""


class DownloadError(LabelDownloadError):
    """Raised when the HTTP transfer fails.

    Exactly one of ``status_code`` (the server answered with a non-2xx status)
    or ``transport`` (the request never produced a usable response) is set for
    failures raised by the download coordinator.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        transport: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transport = transport


class InvalidDownloadURL(DownloadError):
    """Raised when a download URL cannot be parsed or uses an unsupported scheme."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Invalid download URL {url!r}: {reason}", transport="invalid-url")
        self.url = url
        self.reason = reason


class ResolutionError(LabelDownloadError):
    """Base class for failures while unwrapping a downloaded container."""


class ToolExecutionError(ResolutionError):
    """Raised when an external utility exits non-zero or cannot be launched."""

    def __init__(
        self,
        tool: str,
        exit_code: Optional[int],
        *,
        stderr: str = "",
        message: Optional[str] = None,
    ) -> None:
        if message is None:
            message = f"{tool} failed with exit code {exit_code}"
            if stderr:
                message = f"{message}: {stderr}"
        super().__init__(message)
        self.tool = tool
        self.exit_code = exit_code
        self.stderr = stderr


class ToolTimeoutError(ToolExecutionError):
    """Raised when an external utility exceeds its bounded runtime."""

    def __init__(self, tool: str, timeout: float) -> None:
        super().__init__(tool, None, message=f"{tool} exceeded {timeout:g}s timeout")
        self.timeout = timeout


class MissingArtifactError(ResolutionError):
    """Raised when a locate step finds nothing of the expected kind."""

    def __init__(self, expected_kind: str, searched: Union[str, Path, None] = None) -> None:
        message = f"No {expected_kind} found"
        if searched is not None:
            message = f"{message} in {searched}"
        super().__init__(message)
        self.expected_kind = expected_kind
        self.searched = searched


class MountError(ResolutionError):
    """Raised when a disk image cannot be attached."""

    def __init__(
        self,
        image: Union[str, Path],
        reason: str,
        *,
        exit_code: Optional[int] = None,
    ) -> None:
        super().__init__(f"Failed to mount {Path(image).name}: {reason}")
        self.image = Path(image)
        self.exit_code = exit_code


class ConversionError(ResolutionError):
    """Raised when a license-gated disk image cannot be converted."""

    def __init__(self, image: Union[str, Path], reason: str) -> None:
        super().__init__(f"Failed to convert {Path(image).name} with license agreement: {reason}")
        self.image = Path(image)
        self.reason = reason


class ResolutionCancelled(ResolutionError):
    """Raised at a step boundary once cancellation has been requested."""


class InspectionError(LabelDownloadError):
    """Raised by identity inspectors when metadata cannot be extracted."""
