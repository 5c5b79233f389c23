# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.pipeline",
#   "purpose": "Caller-facing download, resolve, and inspect pipeline with mandatory two-phase finalization",
#   "sections": [
#     {"id": "outcomes", "name": "Outcomes", "anchor": "OUT", "kind": "api"},
#     {"id": "pipeline", "name": "LabelInspectionPipeline", "anchor": "class-labelinspectionpipeline", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Entry point tying download, container resolution, and inspection together.

A resolution ends in exactly one outcome.  :class:`IdentityReviewReady` holds
the identity candidates and signature verdict for the caller to review while
the workspace (and the terminal artifact inside it) stays on disk;
:class:`ResolutionFailed` carries the single error that stopped the run.  Both
must be finalized: ``finalize("commit")`` once the caller accepted the
identity, ``finalize("cancel")`` otherwise.  Either mode removes the
workspace.

Examples:
    >>> with LabelInspectionPipeline() as pipeline:  # doctest: +SKIP
    ...     outcome = pipeline.resolve("dmg", "https://example.com/App.dmg")
    ...     outcome.finalize("cancel")
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

import httpx

from .cancellation import CancellationToken, CancellationTokenGroup
from .download import (
    DownloadCoordinator,
    DownloadedFile,
    DownloadProgress,
    validate_download_url,
)
from .errors import DownloadError, InspectionError, LabelDownloadError
from .inspection import (
    AppInspector,
    InfoPlistAppInspector,
    PackageInspector,
    PkgutilPackageInspector,
    SignatureInspector,
    SpctlSignatureInspector,
    inspect_signature_safely,
)
from .logging_utils import generate_correlation_id, mask_url
from .models import (
    ArtifactKind,
    DeclaredType,
    FinalizeMode,
    IdentityCandidate,
    ResolutionRequest,
    SignatureVerdict,
    TerminalArtifact,
    Workspace,
)
from .resolver import ContainerResolver
from .settings import LabelDownloadSettings, get_default_config
from .tools import SubprocessToolAdapter, ToolAdapter
from .workspace import WorkspaceManager

LOGGER = logging.getLogger("LabelKit.LabelDownload.pipeline")

__all__ = [
    "IdentityReviewReady",
    "ResolutionFailed",
    "Outcome",
    "LabelInspectionPipeline",
]

ProgressCallback = Callable[[DownloadProgress], None]


# --- Outcomes --------------------------------------------------------------------


class _Finalizable:
    workspace: Optional[Workspace]
    _manager: Optional[WorkspaceManager]

    @property
    def finalized(self) -> bool:
        return self.workspace is None or self.workspace.finalized

    def finalize(self, mode: Union[FinalizeMode, str]) -> None:
        """Release the workspace; ``commit`` and ``cancel`` both remove it."""

        mode = FinalizeMode(mode)
        if self.workspace is None or self._manager is None:
            return
        self._manager.finalize(self.workspace, mode)


@dataclass(eq=False)
class IdentityReviewReady(_Finalizable):
    """Identity candidates and signature verdict awaiting the caller's decision."""

    candidates: List[IdentityCandidate]
    signature: SignatureVerdict
    artifact: TerminalArtifact
    workspace: Optional[Workspace]
    _manager: Optional[WorkspaceManager] = field(default=None, repr=False)


@dataclass(eq=False)
class ResolutionFailed(_Finalizable):
    """The single error that ended a resolution, plus the workspace to release."""

    error: BaseException
    workspace: Optional[Workspace] = None
    _manager: Optional[WorkspaceManager] = field(default=None, repr=False)

    @property
    def message(self) -> str:
        return str(self.error)


Outcome = Union[IdentityReviewReady, ResolutionFailed]


# --- Pipeline --------------------------------------------------------------------


class LabelInspectionPipeline:
    """Downloads a label URL, resolves its container, and inspects the result.

    Args:
        settings: Settings for tools, workspaces, resolver, and HTTP.
        adapter: Tool adapter; defaults to the subprocess adapter.
        client: Optional HTTPX client used for downloads.
        package_inspector: Identity inspector for installer packages.
        app_inspector: Identity inspector for application bundles.
        signature_inspector: Signature assessor for either artifact kind.
        max_workers: Worker threads used by :meth:`submit`.
    """

    def __init__(
        self,
        settings: Optional[LabelDownloadSettings] = None,
        *,
        adapter: Optional[ToolAdapter] = None,
        client: Optional[httpx.Client] = None,
        package_inspector: Optional[PackageInspector] = None,
        app_inspector: Optional[AppInspector] = None,
        signature_inspector: Optional[SignatureInspector] = None,
        max_workers: int = 2,
    ) -> None:
        self._settings = settings or get_default_config()
        self._adapter = adapter or SubprocessToolAdapter.from_settings(self._settings)
        self.workspaces = WorkspaceManager(self._adapter, self._settings)
        self._downloads = DownloadCoordinator(self._settings, client)
        self._package_inspector = package_inspector or PkgutilPackageInspector(self._adapter)
        self._app_inspector = app_inspector or InfoPlistAppInspector()
        self._signature_inspector = signature_inspector or SpctlSignatureInspector(self._adapter)
        self._resolver = ContainerResolver(
            self.workspaces,
            self._adapter,
            self._settings,
            signature_inspector=self._signature_inspector,
        )
        self._tokens = CancellationTokenGroup()
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def transfer_dir(self) -> Path:
        return self.workspaces.temp_root / ".transfers"

    def iter_resolve(
        self,
        declared_type: Union[DeclaredType, str],
        url: str,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[Union[DownloadProgress, Outcome]]:
        """Yield download progress events, then exactly one outcome.

        Closing the iterator before the outcome arrives finalizes the
        workspace with ``cancel``.
        """

        correlation_id = generate_correlation_id()
        log_extra = {"stage": "pipeline", "correlation_id": correlation_id}
        try:
            declared = DeclaredType.parse(declared_type)
            url = validate_download_url(url)
        except LabelDownloadError as exc:
            LOGGER.warning("rejected resolution request", extra={**log_extra, "error": str(exc)})
            yield ResolutionFailed(error=exc)
            return

        workspace: Optional[Workspace] = None
        failure: Optional[BaseException] = None
        with self._tokens.track(cancel_token) as token:
            try:
                workspace = self.workspaces.allocate()
                LOGGER.info(
                    "starting resolution",
                    extra={
                        **log_extra,
                        "workspace": workspace.workspace_id,
                        "declared_type": declared.value,
                        "url": mask_url(url),
                    },
                )
                downloaded: Optional[DownloadedFile] = None
                for event in self._downloads.iter_download(
                    url, self.transfer_dir, cancel_token=token
                ):
                    if isinstance(event, DownloadedFile):
                        downloaded = event
                    else:
                        yield event
                if downloaded is None:
                    raise DownloadError("Download produced no file", transport="incomplete")
                source = self._downloads.place(downloaded, workspace)

                request = ResolutionRequest(
                    declared_type=declared, source=source, workspace=workspace
                )
                artifact = self._resolver.resolve(request, cancel_token=token)
                token.raise_if_cancelled("inspection")
                candidates, signature = self._inspect(artifact)
            except GeneratorExit:
                if workspace is not None:
                    self.workspaces.finalize(workspace, FinalizeMode.CANCEL)
                raise
            except (LabelDownloadError, OSError) as exc:
                failure = exc
                LOGGER.warning(
                    "resolution failed",
                    extra={
                        **log_extra,
                        "workspace": workspace.workspace_id if workspace else None,
                        "error": str(exc),
                    },
                )
            except Exception as exc:
                failure = exc
                LOGGER.exception(
                    "resolution failed unexpectedly",
                    extra={
                        **log_extra,
                        "workspace": workspace.workspace_id if workspace else None,
                        "error": str(exc),
                    },
                )

        if failure is not None:
            yield ResolutionFailed(error=failure, workspace=workspace, _manager=self.workspaces)
            return

        LOGGER.info(
            "identity ready for review",
            extra={
                **log_extra,
                "workspace": workspace.workspace_id,
                "candidates": len(candidates),
                "signature_accepted": signature.accepted,
            },
        )
        yield IdentityReviewReady(
            candidates=candidates,
            signature=signature,
            artifact=artifact,
            workspace=workspace,
            _manager=self.workspaces,
        )

    def resolve(
        self,
        declared_type: Union[DeclaredType, str],
        url: str,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Outcome:
        """Run :meth:`iter_resolve` to completion, reporting progress through ``progress``."""

        outcome: Optional[Outcome] = None
        for event in self.iter_resolve(declared_type, url, cancel_token=cancel_token):
            if isinstance(event, DownloadProgress):
                if progress is not None:
                    progress(event)
            else:
                outcome = event
        if outcome is None:  # pragma: no cover - iter_resolve always ends with an outcome
            raise RuntimeError("resolution ended without an outcome")
        return outcome

    def submit(
        self,
        declared_type: Union[DeclaredType, str],
        url: str,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> "Future[Outcome]":
        """Run :meth:`resolve` on a worker thread and return its future."""

        with self._lock:
            if self._closed:
                raise RuntimeError("pipeline has been closed")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="labelfetch"
                )
            executor = self._executor
        return executor.submit(
            self.resolve, declared_type, url, progress=progress, cancel_token=cancel_token
        )

    def close(self) -> None:
        """Cancel in-flight resolutions and finalize every open workspace with ``cancel``."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            executor = self._executor
            self._executor = None
        self._tokens.cancel_all("pipeline closed")
        if executor is not None:
            executor.shutdown(wait=True)
        released = self.workspaces.finalize_all(FinalizeMode.CANCEL)
        if released:
            LOGGER.info(
                "released open workspaces on close",
                extra={"stage": "pipeline", "count": released},
            )

    def __enter__(self) -> "LabelInspectionPipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # --- Internals -------------------------------------------------------

    def _inspect(self, artifact: TerminalArtifact):
        if artifact.kind is ArtifactKind.PACKAGE:
            candidates = self._package_inspector.inspect_package(artifact.path)
        else:
            candidates = self._app_inspector.inspect_app(artifact.path)
        if not candidates:
            raise InspectionError("No valid package metadata found")
        signature = artifact.signature
        if signature is None:
            signature = inspect_signature_safely(
                self._signature_inspector, artifact.path, artifact.kind
            )
        return list(candidates), signature
