# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.resolver",
#   "purpose": "Unwrap downloaded containers down to a terminal installer package or application bundle",
#   "sections": [
#     {"id": "trace", "name": "ResolutionTrace", "anchor": "class-resolutiontrace", "kind": "class"},
#     {"id": "locate", "name": "Locate Helpers", "anchor": "LOC", "kind": "helpers"},
#     {"id": "resolver", "name": "ContainerResolver", "anchor": "class-containerresolver", "kind": "class"},
#     {"id": "steps", "name": "Unwrap Steps", "anchor": "STP", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Container resolution for downloaded label artifacts.

The declared type of a label fixes the unwrap steps applied to its download:

===================== ===========================================================
declared type         steps
===================== ===========================================================
package               none, the download is already terminal
packageInZip          unzip, then the first ``.pkg`` anywhere in the extracted tree
packageInImage        normalize license, attach, copy first root ``.pkg``, detach
packageInImageInZip   unzip, first top-level ``.dmg``, then ``packageInImage``
diskImage             attach (license check opt-in), first root ``.app``, assess, detach
zip                   unzip, first top-level ``.app``
compressedTar         untar, first top-level ``.app``
appInImageInZip       unzip, first top-level ``.dmg``, then ``diskImage``
===================== ===========================================================

Resolution is a small automaton, ``idle -> unwrapping(depth) -> unwrapping(depth
+ 1) | terminal | failed``, recorded in a :class:`ResolutionTrace`.  Only the two
composite ``...InZip`` types recurse, one level deep.  Whatever happens, the
workspace has no attached image when :meth:`ContainerResolver.resolve` returns
or raises.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .cancellation import CancellationToken
from .errors import MissingArtifactError, ResolutionError
from .inspection import SignatureInspector, inspect_signature_safely
from .models import (
    ArtifactKind,
    DeclaredType,
    ResolutionRequest,
    ResolutionState,
    TerminalArtifact,
    Workspace,
)
from .settings import LabelDownloadSettings, get_default_config
from .sla import SLANormalizer
from .tools import ToolAdapter, extract_tar, extract_zip
from .workspace import WorkspaceManager

LOGGER = logging.getLogger("LabelKit.LabelDownload.resolver")

__all__ = [
    "ContainerResolver",
    "ResolutionTrace",
    "find_first_recursive",
    "find_first_top_level",
]

PACKAGE_SUFFIX = ".pkg"
DISK_IMAGE_SUFFIX = ".dmg"
APP_BUNDLE_SUFFIX = ".app"

_INPUT_KIND: Dict[DeclaredType, str] = {
    DeclaredType.PACKAGE: "package",
    DeclaredType.PACKAGE_IN_ZIP: "zipArchive",
    DeclaredType.PACKAGE_IN_IMAGE: "diskImage",
    DeclaredType.PACKAGE_IN_IMAGE_IN_ZIP: "zipArchive",
    DeclaredType.DISK_IMAGE: "diskImage",
    DeclaredType.ZIP: "zipArchive",
    DeclaredType.COMPRESSED_TAR: "tarArchive",
    DeclaredType.APP_IN_IMAGE_IN_ZIP: "zipArchive",
}

_ALLOWED_TRANSITIONS = {
    ResolutionState.IDLE: {ResolutionState.UNWRAPPING},
    ResolutionState.UNWRAPPING: {
        ResolutionState.UNWRAPPING,
        ResolutionState.TERMINAL,
        ResolutionState.FAILED,
    },
    ResolutionState.TERMINAL: set(),
    ResolutionState.FAILED: set(),
}


@dataclass
class ResolutionTrace:
    """Ordered record of the states one resolution passed through."""

    transitions: List[Tuple[ResolutionState, int]] = field(
        default_factory=lambda: [(ResolutionState.IDLE, 0)]
    )

    @property
    def state(self) -> ResolutionState:
        return self.transitions[-1][0]

    @property
    def depth(self) -> int:
        return self.transitions[-1][1]

    def advance(self, state: ResolutionState, depth: Optional[int] = None) -> None:
        if state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal resolution transition {self.state.value} -> {state.value}")
        next_depth = self.depth if depth is None else depth
        if state is ResolutionState.UNWRAPPING and self.state is ResolutionState.UNWRAPPING:
            if next_depth != self.depth + 1:
                raise RuntimeError("nested unwrapping must descend exactly one level")
        self.transitions.append((state, next_depth))


# --- Locate helpers ----------------------------------------------------------


def _visible_entries(directory: Path) -> List[Path]:
    return sorted(
        (entry for entry in directory.iterdir() if not entry.name.startswith(".")),
        key=lambda entry: entry.name,
    )


def _has_suffix(entry: Path, suffix: str) -> bool:
    return entry.suffix.lower() == suffix


def find_first_top_level(
    root: Path, suffix: str, *, directories_only: bool = False
) -> Optional[Path]:
    """Return the first visible entry of ``root`` with ``suffix``, in name order."""

    try:
        entries = _visible_entries(root)
    except OSError as exc:
        raise ResolutionError(f"Cannot list {root}: {exc}") from exc
    for entry in entries:
        if not _has_suffix(entry, suffix):
            continue
        if directories_only and not entry.is_dir():
            continue
        if not directories_only and entry.is_dir() and suffix != PACKAGE_SUFFIX:
            continue
        return entry
    return None


def find_first_recursive(root: Path, suffix: str, max_depth: int) -> Optional[Path]:
    """Depth-first search for the first entry with ``suffix`` under ``root``.

    Entries are visited in name order and matched before descending, so a
    bundle-style package directory is returned rather than searched.  Hidden
    entries are skipped, symlinked directories are not followed, and entries
    more than ``max_depth`` levels below ``root`` are never examined.
    """

    def _walk(directory: Path, depth: int) -> Optional[Path]:
        try:
            entries = _visible_entries(directory)
        except OSError as exc:
            LOGGER.debug(
                "skipping unreadable directory",
                extra={"stage": "resolve", "directory": str(directory), "error": str(exc)},
            )
            return None
        for entry in entries:
            if _has_suffix(entry, suffix):
                return entry
            if depth < max_depth and entry.is_dir() and not entry.is_symlink():
                found = _walk(entry, depth + 1)
                if found is not None:
                    return found
        return None

    if not root.is_dir():
        return None
    return _walk(root, 1)


def _copy_out(source: Path, destination_dir: Path) -> Path:
    target = destination_dir / source.name
    try:
        if source.is_dir():
            shutil.copytree(source, target, symlinks=True)
        else:
            shutil.copy2(source, target)
    except (OSError, shutil.Error) as exc:
        raise ResolutionError(f"Failed to copy {source.name} out of disk image: {exc}") from exc
    return target


# --- Resolver ----------------------------------------------------------------


@dataclass
class _Context:
    workspace: Workspace
    trace: ResolutionTrace
    cancel_token: CancellationToken
    normalizer: SLANormalizer


class ContainerResolver:
    """Unwraps a downloaded file according to its declared type.

    Args:
        workspaces: Manager owning attach/detach for the request's workspace.
        adapter: Tool adapter used for extraction and disk image commands.
        settings: Resolver settings; defaults to the process configuration.
        signature_inspector: Optional collaborator used to assess application
            bundles while they are still inside an attached image.
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        adapter: ToolAdapter,
        settings: Optional[LabelDownloadSettings] = None,
        *,
        signature_inspector: Optional[SignatureInspector] = None,
    ) -> None:
        self._workspaces = workspaces
        self._adapter = adapter
        self._settings = (settings or get_default_config()).resolver
        self._signature_inspector = signature_inspector
        self._steps: Dict[DeclaredType, Callable[[_Context, Path, int], TerminalArtifact]] = {
            DeclaredType.PACKAGE: self._package,
            DeclaredType.PACKAGE_IN_ZIP: self._package_in_zip,
            DeclaredType.PACKAGE_IN_IMAGE: self._package_in_image,
            DeclaredType.PACKAGE_IN_IMAGE_IN_ZIP: self._package_in_image_in_zip,
            DeclaredType.DISK_IMAGE: self._disk_image,
            DeclaredType.ZIP: self._zip,
            DeclaredType.COMPRESSED_TAR: self._compressed_tar,
            DeclaredType.APP_IN_IMAGE_IN_ZIP: self._app_in_image_in_zip,
        }

    def resolve(
        self,
        request: ResolutionRequest,
        *,
        trace: Optional[ResolutionTrace] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TerminalArtifact:
        """Return the terminal artifact for ``request``.

        Raises:
            ResolutionError: Exactly one error when any step fails; no partial
                artifact is returned.
        """

        workspace = request.workspace
        ctx = _Context(
            workspace=workspace,
            trace=trace if trace is not None else ResolutionTrace(),
            cancel_token=cancel_token or CancellationToken(),
            normalizer=SLANormalizer(self._adapter, workspace.root / ".sla"),
        )
        ctx.trace.advance(ResolutionState.UNWRAPPING, 0)
        LOGGER.info(
            "resolving download",
            extra={
                "stage": "resolve",
                "workspace": workspace.workspace_id,
                "declared_type": request.declared_type.value,
                "source": request.source.name,
            },
        )
        try:
            artifact = self._unwrap(ctx, request.declared_type, request.source, 0)
        except ResolutionError as exc:
            ctx.trace.advance(ResolutionState.FAILED)
            LOGGER.warning(
                "resolution failed",
                extra={"stage": "resolve", "workspace": workspace.workspace_id, "error": str(exc)},
            )
            raise
        except OSError as exc:
            ctx.trace.advance(ResolutionState.FAILED)
            raise ResolutionError(f"Failed to resolve {request.source.name}: {exc}") from exc
        finally:
            self._workspaces.detach(workspace)

        ctx.trace.advance(ResolutionState.TERMINAL)
        LOGGER.info(
            "resolved terminal artifact",
            extra={
                "stage": "resolve",
                "workspace": workspace.workspace_id,
                "kind": artifact.kind.value,
                "artifact": artifact.path.name,
            },
        )
        return artifact

    def _unwrap(
        self, ctx: _Context, declared_type: DeclaredType, source: Path, depth: int
    ) -> TerminalArtifact:
        ctx.cancel_token.raise_if_cancelled(f"{declared_type.value} step")
        if not source.exists():
            raise MissingArtifactError(_INPUT_KIND[declared_type], source)
        return self._steps[declared_type](ctx, source, depth)

    def _descend(
        self, ctx: _Context, declared_type: DeclaredType, source: Path, depth: int
    ) -> TerminalArtifact:
        ctx.trace.advance(ResolutionState.UNWRAPPING, depth + 1)
        return self._unwrap(ctx, declared_type, source, depth + 1)

    # --- Unwrap steps ----------------------------------------------------

    def _package(self, ctx: _Context, source: Path, depth: int) -> TerminalArtifact:
        return TerminalArtifact(ArtifactKind.PACKAGE, source)

    def _package_in_zip(self, ctx: _Context, source: Path, depth: int) -> TerminalArtifact:
        extracted = self._unzip(ctx, source)
        package = find_first_recursive(extracted, PACKAGE_SUFFIX, self._settings.max_search_depth)
        if package is None:
            raise MissingArtifactError("package", source.name)
        return TerminalArtifact(ArtifactKind.PACKAGE, package)

    def _package_in_image(self, ctx: _Context, source: Path, depth: int) -> TerminalArtifact:
        image = ctx.normalizer.normalize_if_needed(source)
        ctx.cancel_token.raise_if_cancelled("attach")
        with self._workspaces.mounted(ctx.workspace, image) as mount_point:
            package = find_first_top_level(mount_point, PACKAGE_SUFFIX)
            if package is None:
                raise MissingArtifactError("package", image.name)
            copied = _copy_out(package, self._workspaces.scratch_dir(ctx.workspace, "payload"))
        return TerminalArtifact(ArtifactKind.PACKAGE, copied)

    def _package_in_image_in_zip(
        self, ctx: _Context, source: Path, depth: int
    ) -> TerminalArtifact:
        image = self._image_from_zip(ctx, source)
        return self._descend(ctx, DeclaredType.PACKAGE_IN_IMAGE, image, depth)

    def _disk_image(self, ctx: _Context, source: Path, depth: int) -> TerminalArtifact:
        image = source
        if self._settings.normalize_app_images:
            image = ctx.normalizer.normalize_if_needed(source)
        ctx.cancel_token.raise_if_cancelled("attach")
        with self._workspaces.mounted(ctx.workspace, image) as mount_point:
            app = find_first_top_level(mount_point, APP_BUNDLE_SUFFIX, directories_only=True)
            if app is None:
                raise MissingArtifactError(ArtifactKind.APP_BUNDLE.value, image.name)
            signature = None
            if self._signature_inspector is not None:
                signature = inspect_signature_safely(
                    self._signature_inspector, app, ArtifactKind.APP_BUNDLE
                )
            copied = _copy_out(app, self._workspaces.scratch_dir(ctx.workspace, "payload"))
        return TerminalArtifact(ArtifactKind.APP_BUNDLE, copied, signature=signature)

    def _zip(self, ctx: _Context, source: Path, depth: int) -> TerminalArtifact:
        return self._app_at_top_level(self._unzip(ctx, source), source)

    def _compressed_tar(self, ctx: _Context, source: Path, depth: int) -> TerminalArtifact:
        destination = self._workspaces.scratch_dir(ctx.workspace, "untar")
        extracted = extract_tar(self._adapter, source, destination)
        return self._app_at_top_level(extracted, source)

    def _app_in_image_in_zip(self, ctx: _Context, source: Path, depth: int) -> TerminalArtifact:
        image = self._image_from_zip(ctx, source)
        return self._descend(ctx, DeclaredType.DISK_IMAGE, image, depth)

    # --- Shared pieces ---------------------------------------------------

    def _unzip(self, ctx: _Context, source: Path) -> Path:
        destination = self._workspaces.scratch_dir(ctx.workspace, "unzip")
        return extract_zip(self._adapter, source, destination)

    def _image_from_zip(self, ctx: _Context, source: Path) -> Path:
        extracted = self._unzip(ctx, source)
        image = find_first_top_level(extracted, DISK_IMAGE_SUFFIX)
        if image is None:
            raise MissingArtifactError("diskImage", source.name)
        return image

    def _app_at_top_level(self, extracted: Path, source: Path) -> TerminalArtifact:
        app = find_first_top_level(extracted, APP_BUNDLE_SUFFIX, directories_only=True)
        if app is None:
            raise MissingArtifactError(ArtifactKind.APP_BUNDLE.value, source.name)
        return TerminalArtifact(ArtifactKind.APP_BUNDLE, app)


