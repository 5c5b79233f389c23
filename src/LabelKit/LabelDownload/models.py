# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.models",
#   "purpose": "Value types shared by the download, resolution, and inspection stages",
#   "sections": [
#     {"id": "enums", "name": "Declared Types & States", "anchor": "ENM", "kind": "api"},
#     {"id": "workspace", "name": "Workspace & Requests", "anchor": "WRK", "kind": "api"},
#     {"id": "artifacts", "name": "Artifacts & Identity", "anchor": "ART", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Value types shared by the download, resolution, and inspection stages.

Attributes:
    DeclaredType: Closed set of container shapes a label may declare.
    ArtifactKind: Kind of terminal artifact a resolution produces.

Examples:
    >>> DeclaredType.parse("pkgindmginzip")
    <DeclaredType.PACKAGE_IN_IMAGE_IN_ZIP: 'packageInImageInZip'>
    >>> DeclaredType.parse("tbz").terminal_kind
    <ArtifactKind.APP_BUNDLE: 'appBundle'>
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import ConfigError

__all__ = [
    "ArtifactKind",
    "DeclaredType",
    "FinalizeMode",
    "ResolutionState",
    "Workspace",
    "ResolutionRequest",
    "TerminalArtifact",
    "IdentityCandidate",
    "SignatureVerdict",
]


class ArtifactKind(str, Enum):
    """Kind of terminal artifact produced by a successful resolution."""

    PACKAGE = "package"
    APP_BUNDLE = "appBundle"


class DeclaredType(str, Enum):
    """Container shape declared by a label; fixes which unwrap steps apply."""

    PACKAGE = "package"
    PACKAGE_IN_ZIP = "packageInZip"
    PACKAGE_IN_IMAGE = "packageInImage"
    PACKAGE_IN_IMAGE_IN_ZIP = "packageInImageInZip"
    DISK_IMAGE = "diskImage"
    ZIP = "zip"
    COMPRESSED_TAR = "compressedTar"
    APP_IN_IMAGE_IN_ZIP = "appInImageInZip"

    @classmethod
    def parse(cls, value: str) -> "DeclaredType":
        """Return the declared type named by ``value``.

        Accepts canonical names in any case as well as the Installomator label
        ``type`` values (``pkg``, ``pkgInDmg``, ``tbz`` ...).

        Raises:
            ConfigError: When ``value`` names no known container type.
        """

        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        declared = _DECLARED_TYPE_LOOKUP.get(key)
        if declared is None:
            raise ConfigError(f"Unsupported type: {value}")
        return declared

    @property
    def terminal_kind(self) -> ArtifactKind:
        if self in _PACKAGE_TYPES:
            return ArtifactKind.PACKAGE
        return ArtifactKind.APP_BUNDLE

    @property
    def aliases(self) -> Tuple[str, ...]:
        return tuple(alias for alias, declared in LABEL_TYPE_ALIASES.items() if declared is self)


_PACKAGE_TYPES = frozenset(
    {
        DeclaredType.PACKAGE,
        DeclaredType.PACKAGE_IN_ZIP,
        DeclaredType.PACKAGE_IN_IMAGE,
        DeclaredType.PACKAGE_IN_IMAGE_IN_ZIP,
    }
)

#: Installomator label ``type`` values mapped to declared container types.
LABEL_TYPE_ALIASES: Dict[str, DeclaredType] = {
    "pkg": DeclaredType.PACKAGE,
    "pkginzip": DeclaredType.PACKAGE_IN_ZIP,
    "pkgindmg": DeclaredType.PACKAGE_IN_IMAGE,
    "pkgindmginzip": DeclaredType.PACKAGE_IN_IMAGE_IN_ZIP,
    "dmg": DeclaredType.DISK_IMAGE,
    "tbz": DeclaredType.COMPRESSED_TAR,
    "appindmginzip": DeclaredType.APP_IN_IMAGE_IN_ZIP,
}

_DECLARED_TYPE_LOOKUP: Dict[str, DeclaredType] = {
    **{member.value.lower(): member for member in DeclaredType},
    **LABEL_TYPE_ALIASES,
}


class FinalizeMode(str, Enum):
    """How the caller ended its review of a resolution."""

    COMMIT = "commit"
    CANCEL = "cancel"


class ResolutionState(str, Enum):
    """States of the container resolution automaton."""

    IDLE = "idle"
    UNWRAPPING = "unwrapping"
    TERMINAL = "terminal"
    FAILED = "failed"


@dataclass(slots=True)
class Workspace:
    """Scratch directory owned by exactly one in-flight resolution.

    Attributes:
        workspace_id: Unique identifier; also the directory name under the temp root.
        root: Directory holding downloads, extracted trees, and copied artifacts.
        active_mount_point: Set only between a successful attach and its detach.
        finalized: True once :meth:`WorkspaceManager.finalize` has run.
    """

    workspace_id: str
    root: Path
    active_mount_point: Optional[Path] = None
    finalized: bool = False

    @property
    def mount_point(self) -> Path:
        return self.root / "mount"

    @property
    def is_attached(self) -> bool:
        return self.active_mount_point is not None


@dataclass(frozen=True, slots=True)
class ResolutionRequest:
    """Inputs of a single resolution; immutable once resolution starts."""

    declared_type: DeclaredType
    source: Path
    workspace: Workspace


@dataclass(frozen=True, slots=True)
class IdentityCandidate:
    """Identifier/version tuple extracted from a terminal artifact."""

    identifier: str
    version: str
    minimum_os: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.identifier} - {self.version}"


@dataclass(frozen=True, slots=True)
class SignatureVerdict:
    """Gatekeeper assessment of a terminal artifact's signature."""

    accepted: bool
    developer_id: str
    developer_team: str
    source: Optional[str] = None

    @classmethod
    def unknown(cls) -> "SignatureVerdict":
        return cls(accepted=False, developer_id="Unknown", developer_team="Unknown")


@dataclass(frozen=True, slots=True)
class TerminalArtifact:
    """Innermost installer package or application bundle of a download.

    ``signature`` is populated only when the signature had to be assessed
    while the artifact still lived inside an attached disk image.
    """

    kind: ArtifactKind
    path: Path
    signature: Optional[SignatureVerdict] = field(default=None, compare=False)
