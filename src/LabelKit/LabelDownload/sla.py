"""Normalize license-gated disk images before they are attached.

Disk images carrying an embedded Software License Agreement prompt for
acceptance when attached, which makes non-interactive mounting unreliable.
:class:`SLANormalizer` converts such images to a writable format and swaps
the converted file into the original path, so every later step sees one
consistent path whether or not a conversion happened.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Set

from .disk_image import convert_image, has_license_agreement
from .errors import ConversionError
from .tools import ToolAdapter

LOGGER = logging.getLogger("LabelKit.LabelDownload.sla")

__all__ = ["SLANormalizer"]


class SLANormalizer:
    """Converts license-gated images in place, at most once per image.

    Args:
        adapter: Tool adapter used for ``hdiutil imageinfo`` and ``convert``.
        scratch_dir: Workspace-scoped directory receiving converted images
            before they replace the original.
    """

    def __init__(self, adapter: ToolAdapter, scratch_dir: Path) -> None:
        self._adapter = adapter
        self._scratch_dir = scratch_dir
        self._seen: Set[Path] = set()

    def normalize_if_needed(self, image: Path) -> Path:
        """Return a path to ``image`` that can be attached without a license prompt.

        Raises:
            ConversionError: When the image has an agreement and conversion fails.
        """

        key = image.resolve()
        if key in self._seen:
            return image
        self._seen.add(key)

        if not has_license_agreement(self._adapter, image):
            return image

        LOGGER.info(
            "disk image carries a license agreement; converting",
            extra={"stage": "sla", "image": image.name},
        )
        converted = self._scratch_dir / f"{image.stem}-converted.dmg"
        if converted.exists():
            converted.unlink()
        convert_image(self._adapter, image, converted)

        try:
            image.unlink()
            shutil.move(os.fspath(converted), os.fspath(image))
        except OSError as exc:
            raise ConversionError(image, f"could not replace original image: {exc}") from exc

        LOGGER.info("converted disk image with license agreement", extra={"stage": "sla", "image": image.name})
        return image
