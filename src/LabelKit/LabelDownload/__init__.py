# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload",
#   "purpose": "Package initialization for LabelKit.LabelDownload",
#   "sections": [
#     {
#       "id": "getattr",
#       "name": "__getattr__",
#       "anchor": "function-getattr",
#       "kind": "function"
#     },
#     {
#       "id": "dir",
#       "name": "__dir__",
#       "anchor": "function-dir",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Public API for downloading label installers and unwrapping their containers.

Callers hand a declared container type and a download URL to
:class:`LabelInspectionPipeline`, review the identity candidates it reports,
and then finalize the outcome with ``commit`` or ``cancel``.  Names are
resolved lazily so importing the package does not pull in HTTP or CLI
dependencies until they are used.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any, Dict

__version__ = "0.1.0"

_EXPORT_MAP: Dict[str, str] = {
    "LabelInspectionPipeline": "pipeline",
    "IdentityReviewReady": "pipeline",
    "ResolutionFailed": "pipeline",
    "ContainerResolver": "resolver",
    "ResolutionTrace": "resolver",
    "DownloadCoordinator": "download",
    "DownloadProgress": "download",
    "DownloadedFile": "download",
    "WorkspaceManager": "workspace",
    "SLANormalizer": "sla",
    "SubprocessToolAdapter": "tools",
    "ToolAdapter": "tools",
    "ToolResult": "tools",
    "CancellationToken": "cancellation",
    "DeclaredType": "models",
    "ArtifactKind": "models",
    "FinalizeMode": "models",
    "IdentityCandidate": "models",
    "SignatureVerdict": "models",
    "TerminalArtifact": "models",
    "Workspace": "models",
    "LabelDownloadSettings": "settings",
    "get_default_config": "settings",
    "LabelDownloadError": "errors",
    "DownloadError": "errors",
    "ResolutionError": "errors",
    "InspectionError": "errors",
}

__all__ = [*_EXPORT_MAP, "__version__"]

if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .cancellation import CancellationToken
    from .download import DownloadCoordinator, DownloadedFile, DownloadProgress
    from .errors import DownloadError, InspectionError, LabelDownloadError, ResolutionError
    from .models import (
        ArtifactKind,
        DeclaredType,
        FinalizeMode,
        IdentityCandidate,
        SignatureVerdict,
        TerminalArtifact,
        Workspace,
    )
    from .pipeline import IdentityReviewReady, LabelInspectionPipeline, ResolutionFailed
    from .resolver import ContainerResolver, ResolutionTrace
    from .settings import LabelDownloadSettings, get_default_config
    from .sla import SLANormalizer
    from .tools import SubprocessToolAdapter, ToolAdapter, ToolResult
    from .workspace import WorkspaceManager


def __getattr__(name: str) -> Any:
    module_name = _EXPORT_MAP.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(import_module(f".{module_name}", __name__), name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))
