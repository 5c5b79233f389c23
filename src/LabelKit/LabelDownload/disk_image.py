"""hdiutil command contracts used by the workspace manager and SLA normalizer.

Each helper reproduces one fixed argument shape.  Attach and convert report
failures through the error hierarchy; detach never raises because it runs on
cleanup paths where the original error (if any) must win.
"""

from __future__ import annotations

import logging
import plistlib
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ConversionError, MountError, ToolExecutionError
from .tools import ToolAdapter

LOGGER = logging.getLogger("LabelKit.LabelDownload.disk_image")

#: Key in ``hdiutil imageinfo`` ``Properties`` signalling an embedded license.
SLA_PROPERTY = "Software License Agreement"

#: Writable image format conversions target.
WRITABLE_FORMAT = "UDRW"


def attach_image(adapter: ToolAdapter, image: Path, mount_point: Path) -> Path:
    """Attach ``image`` at ``mount_point`` without browsing or prompting."""

    mount_point.mkdir(parents=True, exist_ok=True)
    try:
        result = adapter.run(
            "hdiutil",
            ["attach", str(image), "-mountpoint", str(mount_point), "-nobrowse", "-quiet"],
        )
    except ToolExecutionError as exc:
        raise MountError(image, str(exc)) from exc
    if not result.ok:
        raise MountError(
            image,
            result.stderr_text or f"hdiutil attach exited with {result.exit_code}",
            exit_code=result.exit_code,
        )
    return mount_point


def detach_image(adapter: ToolAdapter, mount_point: Path) -> bool:
    """Force-detach ``mount_point``; returns ``False`` instead of raising."""

    try:
        result = adapter.run("hdiutil", ["detach", str(mount_point), "-quiet", "-force"])
    except ToolExecutionError as exc:
        LOGGER.error(
            "failed to detach disk image",
            extra={"stage": "workspace", "mount_point": str(mount_point), "error": str(exc)},
        )
        return False
    if not result.ok:
        LOGGER.error(
            "failed to detach disk image",
            extra={
                "stage": "workspace",
                "mount_point": str(mount_point),
                "exit_code": result.exit_code,
                "error": result.stderr_text,
            },
        )
        return False
    return True


def image_info(adapter: ToolAdapter, image: Path) -> Optional[Dict[str, Any]]:
    """Return the parsed ``hdiutil imageinfo -plist`` output, or ``None`` on failure."""

    try:
        result = adapter.run("hdiutil", ["imageinfo", str(image), "-plist"])
    except ToolExecutionError as exc:
        LOGGER.warning(
            "failed to query disk image metadata",
            extra={"stage": "sla", "image": image.name, "error": str(exc)},
        )
        return None
    if not result.ok:
        LOGGER.warning(
            "failed to query disk image metadata",
            extra={"stage": "sla", "image": image.name, "exit_code": result.exit_code},
        )
        return None
    try:
        info = plistlib.loads(result.stdout)
    except (plistlib.InvalidFileException, ValueError) as exc:
        LOGGER.warning(
            "unparsable disk image metadata",
            extra={"stage": "sla", "image": image.name, "error": str(exc)},
        )
        return None
    return info if isinstance(info, dict) else None


def has_license_agreement(adapter: ToolAdapter, image: Path) -> bool:
    """Return ``True`` when the image metadata flags an embedded license agreement."""

    info = image_info(adapter, image)
    if info is None:
        return False
    properties = info.get("Properties")
    if not isinstance(properties, dict):
        return False
    return properties.get(SLA_PROPERTY) is True


def convert_image(adapter: ToolAdapter, image: Path, output: Path) -> Path:
    """Convert ``image`` to a writable image at ``output``.

    Raises:
        ConversionError: When hdiutil fails or the converted file is missing.
    """

    output.parent.mkdir(parents=True, exist_ok=True)
    try:
        result = adapter.run(
            "hdiutil", ["convert", "-format", WRITABLE_FORMAT, "-o", str(output), str(image)]
        )
    except ToolExecutionError as exc:
        raise ConversionError(image, str(exc)) from exc
    if not result.ok:
        raise ConversionError(
            image, result.stderr_text or f"hdiutil convert exited with {result.exit_code}"
        )
    if not output.exists():
        raise ConversionError(image, "converted file not found at expected location")
    return output


__all__ = [
    "SLA_PROPERTY",
    "WRITABLE_FORMAT",
    "attach_image",
    "detach_image",
    "image_info",
    "has_license_agreement",
    "convert_image",
]
