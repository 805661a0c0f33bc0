"""Pick the icon to store for a release.

Each platform embeds icons differently; the parser lists them lowest to
highest resolution, so every policy prefers the last usable entry.
"""

import logging
from pathlib import Path
from typing import BinaryIO, Optional

from appdrop.services.package_info import IconCandidate, PackageMetadata, Platform

logger = logging.getLogger(__name__)

# Android adaptive icon descriptors (anydpi) carry no raster image
_ADAPTIVE_ICON_EXTENSIONS = {".xml"}


def _ios_icon(icons: list[IconCandidate]) -> Optional[str]:
    if not icons:
        return None
    return icons[-1].uncrushed_file


def _macos_icon(icon_sets: list[IconCandidate]) -> Optional[str]:
    if not icon_sets:
        return None
    return icon_sets[-1].file


def _android_icon(icons: list[IconCandidate]) -> Optional[str]:
    raster = [
        icon for icon in icons
        if Path(icon.file).suffix.lower() not in _ADAPTIVE_ICON_EXTENSIONS
    ]
    if not raster:
        return None
    return raster[-1].file


def select_icon_path(metadata: PackageMetadata) -> Optional[str]:
    """Path of the best icon for the package, or None."""
    if metadata.platform == Platform.IOS:
        return _ios_icon(metadata.icons)
    if metadata.platform == Platform.MACOS:
        return _macos_icon(metadata.icon_sets)
    if metadata.platform == Platform.ANDROID:
        return _android_icon(metadata.icons)
    return None


def select_icon(metadata: PackageMetadata) -> Optional[BinaryIO]:
    """Open the best icon for reading. No icon is a normal outcome."""
    path = select_icon_path(metadata)
    if not path:
        return None
    try:
        return open(path, "rb")
    except OSError as e:
        logger.warning(f"Selected icon {path} is not readable: {e}")
        return None
