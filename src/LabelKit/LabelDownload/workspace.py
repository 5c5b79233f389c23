# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.workspace",
#   "purpose": "Allocate per-resolution scratch directories and own disk image mount lifetimes",
#   "sections": [
#     {"id": "manager", "name": "WorkspaceManager", "anchor": "class-workspacemanager", "kind": "class"},
#     {"id": "mounts", "name": "Attach & Detach", "anchor": "MNT", "kind": "api"},
#     {"id": "finalize", "name": "Finalize", "anchor": "FIN", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Workspace lifetimes for container resolution.

A workspace is a unique scratch directory under the configured temp root plus
at most one attached disk image.  Resolution code attaches and detaches images
through :class:`WorkspaceManager` so the manager always knows whether a mount
is live; :meth:`WorkspaceManager.finalize` is the single operation allowed to
delete a workspace and it always detaches first.

Finalization is deliberately deferred: callers keep the workspace after
inspection so that files next to the terminal artifact (icons, expanded
package metadata) stay readable until the user commits or cancels.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .disk_image import attach_image, detach_image
from .errors import MountError, ToolExecutionError
from .models import FinalizeMode, Workspace
from .settings import LabelDownloadSettings, get_default_config
from .tools import ToolAdapter

LOGGER = logging.getLogger("LabelKit.LabelDownload.workspace")

__all__ = ["WorkspaceManager"]


class WorkspaceManager:
    """Allocates workspaces and tracks their mounts until finalization.

    Each workspace is owned by one resolution; the manager only keeps a
    registry so that :meth:`finalize_all` can release anything still open when
    the process shuts down.

    Args:
        adapter: Tool adapter used for attach and detach.
        settings: Settings providing the temp root.

    Examples:
        >>> manager = WorkspaceManager(adapter)  # doctest: +SKIP
        >>> workspace = manager.allocate()  # doctest: +SKIP
        >>> manager.finalize(workspace, FinalizeMode.CANCEL)  # doctest: +SKIP
    """

    def __init__(
        self,
        adapter: ToolAdapter,
        settings: Optional[LabelDownloadSettings] = None,
    ) -> None:
        self._adapter = adapter
        self._settings = settings or get_default_config()
        self._lock = threading.Lock()
        self._live: Dict[str, Workspace] = {}

    @property
    def temp_root(self) -> Path:
        return self._settings.workspace.temp_root

    def allocate(self) -> Workspace:
        """Create a fresh, uniquely named workspace directory."""

        workspace_id = uuid.uuid4().hex
        root = self.temp_root / workspace_id
        root.mkdir(parents=True, exist_ok=False)
        workspace = Workspace(workspace_id=workspace_id, root=root)
        with self._lock:
            self._live[workspace_id] = workspace
        LOGGER.debug(
            "allocated workspace",
            extra={"stage": "workspace", "workspace": workspace_id, "root": str(root)},
        )
        return workspace

    def live_workspaces(self) -> List[Workspace]:
        with self._lock:
            return list(self._live.values())

    def scratch_dir(self, workspace: Workspace, name: str) -> Path:
        """Create and return a fresh directory named after ``name`` inside ``workspace``."""

        candidate = workspace.root / name
        index = 1
        while candidate.exists():
            index += 1
            candidate = workspace.root / f"{name}-{index}"
        candidate.mkdir(parents=True)
        return candidate

    # --- Attach & Detach -------------------------------------------------

    def attach(self, workspace: Workspace, image: Path) -> Path:
        """Attach ``image`` at the workspace mount point and record it.

        Raises:
            MountError: When a mount is already active or hdiutil fails.  An
                attach that timed out or could not report its status is
                force-detached before the error propagates.
        """

        if workspace.finalized:
            raise MountError(image, "workspace has already been finalized")
        if workspace.active_mount_point is not None:
            raise MountError(
                image, f"workspace already has an image attached at {workspace.active_mount_point}"
            )
        try:
            mount_point = attach_image(self._adapter, image, workspace.mount_point)
        except MountError as exc:
            if isinstance(exc.__cause__, ToolExecutionError):
                # hdiutil may have mounted the volume before it was stopped
                LOGGER.warning(
                    "attach ended without an exit status; detaching",
                    extra={
                        "stage": "workspace",
                        "workspace": workspace.workspace_id,
                        "mount_point": str(workspace.mount_point),
                        "error": str(exc),
                    },
                )
                detach_image(self._adapter, workspace.mount_point)
            raise
        workspace.active_mount_point = mount_point
        LOGGER.info(
            "attached disk image",
            extra={
                "stage": "workspace",
                "workspace": workspace.workspace_id,
                "image": image.name,
                "mount_point": str(mount_point),
            },
        )
        return mount_point

    def detach(self, workspace: Workspace) -> None:
        """Detach the active mount, if any. Safe to call on every exit path."""

        mount_point = workspace.active_mount_point
        if mount_point is None:
            return
        detached = detach_image(self._adapter, mount_point)
        workspace.active_mount_point = None
        LOGGER.info(
            "detached disk image" if detached else "detach reported failure",
            extra={
                "stage": "workspace",
                "workspace": workspace.workspace_id,
                "mount_point": str(mount_point),
            },
        )

    @contextlib.contextmanager
    def mounted(self, workspace: Workspace, image: Path) -> Iterator[Path]:
        """Attach ``image`` for the duration of the ``with`` block."""

        mount_point = self.attach(workspace, image)
        try:
            yield mount_point
        finally:
            self.detach(workspace)

    # --- Finalize --------------------------------------------------------

    def finalize(self, workspace: Workspace, mode: FinalizeMode) -> None:
        """Detach any mount and recursively delete the workspace directory.

        Calling ``finalize`` again on the same workspace is a no-op.
        """

        mode = FinalizeMode(mode)
        if workspace.finalized:
            return
        self.detach(workspace)
        try:
            shutil.rmtree(workspace.root)
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.error(
                "failed to remove workspace",
                extra={"stage": "workspace", "root": str(workspace.root), "error": str(exc)},
            )
            raise
        workspace.finalized = True
        with self._lock:
            self._live.pop(workspace.workspace_id, None)
        LOGGER.info(
            "finalized workspace",
            extra={"stage": "workspace", "workspace": workspace.workspace_id, "mode": mode.value},
        )

    def finalize_all(self, mode: FinalizeMode = FinalizeMode.CANCEL) -> int:
        """Finalize every workspace this manager allocated and still tracks."""

        pending = self.live_workspaces()
        for workspace in pending:
            self.finalize(workspace, mode)
        return len(pending)
