# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.inspection",
#   "purpose": "Identity and signature inspection contracts plus the pkgutil, Info.plist, and spctl implementations",
#   "sections": [
#     {"id": "protocols", "name": "Inspector Protocols", "anchor": "PRO", "kind": "api"},
#     {"id": "package", "name": "PkgutilPackageInspector", "anchor": "class-pkgutilpackageinspector", "kind": "class"},
#     {"id": "app", "name": "InfoPlistAppInspector", "anchor": "class-infoplistappinspector", "kind": "class"},
#     {"id": "signature", "name": "SpctlSignatureInspector", "anchor": "class-spctlsignatureinspector", "kind": "class"},
#     {"id": "safe", "name": "inspect_signature_safely", "anchor": "function-inspect-signature-safely", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Identity inspection of terminal artifacts.

The pipeline only depends on the three protocols defined here.  Identity
inspection failures are fatal for a resolution because there is nothing to
review without an identifier; signature inspection failures are not, and are
degraded to :meth:`SignatureVerdict.unknown` by :func:`inspect_signature_safely`.
"""

from __future__ import annotations

import logging
import plistlib
import re
from pathlib import Path
from typing import List, Optional, Protocol, runtime_checkable

from .errors import InspectionError
from .models import ArtifactKind, IdentityCandidate, SignatureVerdict
from .tools import ToolAdapter

LOGGER = logging.getLogger("LabelKit.LabelDownload.inspection")

__all__ = [
    "PackageInspector",
    "AppInspector",
    "SignatureInspector",
    "PkgutilPackageInspector",
    "InfoPlistAppInspector",
    "SpctlSignatureInspector",
    "inspect_signature_safely",
    "parse_distribution",
    "parse_package_info",
    "parse_spctl_output",
]

_DISTRIBUTION_PATTERN = re.compile(r'<pkg-ref.*?id="(.*?)".*?version="(.*?)".*?>')
_PACKAGE_INFO_PATTERN = re.compile(r'<pkg-info.*?identifier="(.*?)".*?version="(.*?)".*?>')
_UNKNOWN = "Unknown"


# --- Protocols -------------------------------------------------------------------


@runtime_checkable
class PackageInspector(Protocol):
    def inspect_package(self, path: Path) -> List[IdentityCandidate]:
        ...


@runtime_checkable
class AppInspector(Protocol):
    def inspect_app(self, path: Path) -> List[IdentityCandidate]:
        ...


@runtime_checkable
class SignatureInspector(Protocol):
    def inspect_signature(self, path: Path, kind: ArtifactKind) -> SignatureVerdict:
        ...


# --- Package metadata ------------------------------------------------------------


def _unique(candidates: List[IdentityCandidate]) -> List[IdentityCandidate]:
    seen = set()
    ordered: List[IdentityCandidate] = []
    for candidate in candidates:
        if candidate in seen:
            continue
        seen.add(candidate)
        ordered.append(candidate)
    return ordered


def parse_distribution(xml: str) -> List[IdentityCandidate]:
    """Return ``pkg-ref`` id/version pairs from a ``Distribution`` document."""

    return _unique(
        [
            IdentityCandidate(identifier=identifier, version=version)
            for identifier, version in _DISTRIBUTION_PATTERN.findall(xml)
        ]
    )


def parse_package_info(xml: str) -> List[IdentityCandidate]:
    """Return the ``pkg-info`` identifier/version pair from a ``PackageInfo`` document."""

    return _unique(
        [
            IdentityCandidate(identifier=identifier, version=version)
            for identifier, version in _PACKAGE_INFO_PATTERN.findall(xml)
        ]
    )


class PkgutilPackageInspector:
    """Expands a flat package next to itself and reads its metadata.

    The expanded tree lands beside the package (inside the workspace), so it
    is removed when the workspace is finalized.
    """

    def __init__(self, adapter: ToolAdapter) -> None:
        self._adapter = adapter

    def _expansion_dir(self, package: Path) -> Path:
        candidate = package.parent / "expanded_pkg"
        index = 1
        while candidate.exists():
            index += 1
            candidate = package.parent / f"expanded_pkg-{index}"
        return candidate

    def inspect_package(self, path: Path) -> List[IdentityCandidate]:
        if not path.exists():
            raise InspectionError(f"Package not found: {path.name}")
        expanded = self._expansion_dir(path)
        result = self._adapter.run("pkgutil", ["--expand-full", str(path), str(expanded)])
        if not result.ok:
            raise InspectionError(
                f"Failed to expand {path.name}: pkgutil exited with {result.exit_code}"
            )

        distribution = expanded / "Distribution"
        package_info = expanded / "PackageInfo"
        if distribution.is_file():
            candidates = parse_distribution(distribution.read_text(encoding="utf-8", errors="replace"))
            source = "Distribution"
        elif package_info.is_file():
            candidates = parse_package_info(package_info.read_text(encoding="utf-8", errors="replace"))
            source = "PackageInfo"
        else:
            raise InspectionError(f"No valid metadata file found in {path.name}")

        LOGGER.info(
            "inspected package metadata",
            extra={
                "stage": "inspect",
                "package": path.name,
                "metadata": source,
                "candidates": len(candidates),
            },
        )
        return candidates


# --- Application bundles ---------------------------------------------------------


class InfoPlistAppInspector:
    """Reads identity from ``Contents/Info.plist`` of an application bundle."""

    def inspect_app(self, path: Path) -> List[IdentityCandidate]:
        info_plist = path / "Contents" / "Info.plist"
        if not info_plist.is_file():
            raise InspectionError(f"Info.plist not found in {path.name}")
        try:
            with info_plist.open("rb") as handle:
                info = plistlib.load(handle)
        except (OSError, plistlib.InvalidFileException, ValueError) as exc:
            raise InspectionError(f"Unreadable Info.plist in {path.name}: {exc}") from exc

        identifier = info.get("CFBundleIdentifier") if isinstance(info, dict) else None
        version = info.get("CFBundleShortVersionString") if isinstance(info, dict) else None
        if not isinstance(identifier, str) or not isinstance(version, str):
            raise InspectionError(f"Required keys not found in Info.plist of {path.name}")
        minimum_os = info.get("LSMinimumSystemVersion")
        candidate = IdentityCandidate(
            identifier=identifier,
            version=version,
            minimum_os=minimum_os if isinstance(minimum_os, str) else None,
        )
        LOGGER.info(
            "inspected application bundle",
            extra={"stage": "inspect", "app": path.name, "identifier": identifier},
        )
        return [candidate]


# --- Signatures ------------------------------------------------------------------


def _value_after_equals(line: str) -> Optional[str]:
    parts = [part.strip() for part in line.split("=")]
    if len(parts) != 2:
        return None
    return parts[1]


def parse_spctl_output(output: str) -> SignatureVerdict:
    """Parse ``spctl -a -vv`` output into a verdict.

    Raises:
        InspectionError: When the output reports neither acceptance nor rejection.

    Examples:
        >>> parse_spctl_output(
        ...     "app: accepted\\nsource=Notarized Developer ID\\n"
        ...     "origin=Developer ID Application: Mozilla Corporation (43AQ936H96)\\n"
        ... ).developer_team
        '43AQ936H96'
    """

    if "accepted" in output:
        accepted = True
    elif "rejected" in output:
        accepted = False
    else:
        raise InspectionError(f"Unknown spctl response: {output.strip()}")

    lines = output.splitlines()
    source = next((_value_after_equals(line) for line in lines if "source=" in line), None)

    developer_id = _UNKNOWN
    developer_team = _UNKNOWN
    origin_line = next((line for line in lines if "origin=" in line), None)
    origin = _value_after_equals(origin_line) if origin_line is not None else None
    if origin:
        open_paren = origin.rfind("(")
        close_paren = origin.rfind(")")
        if open_paren != -1 and close_paren > open_paren:
            developer_team = origin[open_paren + 1 : close_paren]
            raw_id = origin[:open_paren].strip()
            _, colon, after = raw_id.partition(":")
            developer_id = after.strip() if colon else raw_id
        else:
            developer_team = origin
            developer_id = origin

    return SignatureVerdict(
        accepted=accepted,
        developer_id=developer_id,
        developer_team=developer_team,
        source=source,
    )


class SpctlSignatureInspector:
    """Assesses signatures with Gatekeeper (``spctl``)."""

    def __init__(self, adapter: ToolAdapter) -> None:
        self._adapter = adapter

    def inspect_signature(self, path: Path, kind: ArtifactKind) -> SignatureVerdict:
        if not path.exists():
            raise InspectionError(f"Cannot assess signature of missing {path.name}")
        assessment = "install" if ArtifactKind(kind) is ArtifactKind.PACKAGE else "execute"
        result = self._adapter.run("spctl", ["-a", "-vv", "-t", assessment, str(path)])
        # spctl reports rejections with a non-zero exit and its verdict on stderr.
        return parse_spctl_output("\n".join(filter(None, [result.stdout_text, result.stderr_text])))


def inspect_signature_safely(
    inspector: SignatureInspector, path: Path, kind: ArtifactKind
) -> SignatureVerdict:
    """Return the inspector's verdict, or :meth:`SignatureVerdict.unknown` on any failure."""

    try:
        return inspector.inspect_signature(path, kind)
    except Exception as exc:  # noqa: BLE001 - any inspector failure degrades to unknown
        LOGGER.warning(
            "signature inspection failed; recording unknown verdict",
            extra={"stage": "inspect", "artifact": path.name, "error": str(exc)},
        )
        return SignatureVerdict.unknown()
