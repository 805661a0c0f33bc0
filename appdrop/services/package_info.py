"""
Package metadata extraction.

``extract(path)`` wraps the configured package parser and always returns an
``ExtractResult``: either the parsed ``PackageMetadata`` or a ``ParseError``
drawn from a closed set of kinds. Parser exceptions never escape.

The parser itself is an external collaborator selected with
``settings.package_parser``. The built-in parser understands iOS ``.ipa``
archives and zipped macOS ``.app`` bundles; Android packages need a
dedicated parser.
"""

import importlib
import logging
import plistlib
import re
import shutil
import tempfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from appdrop.config import get_settings

logger = logging.getLogger(__name__)


class Platform(str, Enum):
    IOS = "iOS"
    ANDROID = "Android"
    MACOS = "macOS"


class ReleaseType(str, Enum):
    """iOS export types. Other platforms report no release type."""
    DEBUG = "debug"
    ADHOC = "adhoc"
    INHOUSE = "inhouse"
    RELEASE = "release"


class ParseErrorKind(str, Enum):
    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    MALFORMED_PACKAGE = "malformed_package"
    UNKNOWN_FAILURE = "unknown_failure"


@dataclass(frozen=True)
class ParseError:
    kind: ParseErrorKind
    detail: str = ""


@dataclass(frozen=True)
class IconCandidate:
    """An icon embedded in a package.

    ``uncrushed_file`` is only set for iOS icons that are plain PNGs (or were
    converted back from Xcode's crushed format by the parser).
    """
    file: str
    uncrushed_file: Optional[str] = None


@dataclass
class PackageMetadata:
    """What the parser learned about one uploaded package.

    Icon lists are ordered from lowest to highest resolution.
    """
    platform: Platform
    bundle_id: str
    name: Optional[str] = None
    release_version: Optional[str] = None
    build_version: Optional[str] = None
    device_type: Optional[str] = None
    release_type: Optional[ReleaseType] = None
    icons: list[IconCandidate] = field(default_factory=list)
    icon_sets: list[IconCandidate] = field(default_factory=list)  # macOS only
    devices: list[str] = field(default_factory=list)  # ad-hoc only
    workdir: Optional[str] = None  # Scratch directory owned by the parser

    @property
    def is_adhoc_ios(self) -> bool:
        return self.platform == Platform.IOS and self.release_type == ReleaseType.ADHOC

    def cleanup(self) -> None:
        """Remove files the parser extracted (icons etc.)."""
        if self.workdir:
            shutil.rmtree(self.workdir, ignore_errors=True)
            self.workdir = None


@dataclass(frozen=True)
class ExtractResult:
    metadata: Optional[PackageMetadata] = None
    error: Optional[ParseError] = None

    @property
    def ok(self) -> bool:
        return self.metadata is not None


class UnsupportedPackageError(Exception):
    """Raised by parsers for files they do not understand."""


class MalformedPackageError(Exception):
    """Raised by parsers for recognised but unreadable packages."""


class PackageParser(ABC):
    """Contract for package parsers: ``parse(path) -> PackageMetadata``."""

    @abstractmethod
    def parse(self, path: str) -> PackageMetadata:
        ...


# Failures that mean "the package is broken", as opposed to parser bugs
_MALFORMED_ERRORS = (
    MalformedPackageError,
    zipfile.BadZipFile,
    plistlib.InvalidFileException,
    KeyError,
    ValueError,
)


def extract(path: str, parser: Optional[PackageParser] = None) -> ExtractResult:
    """Parse ``path`` and normalize every failure into a ``ParseError``."""
    parser = parser or get_package_parser()
    try:
        metadata = parser.parse(path)
    except UnsupportedPackageError as e:
        return ExtractResult(error=ParseError(ParseErrorKind.UNSUPPORTED_FILE_TYPE, str(e)))
    except _MALFORMED_ERRORS as e:
        logger.warning(f"Malformed package {path}: {type(e).__name__}: {e}")
        return ExtractResult(error=ParseError(ParseErrorKind.MALFORMED_PACKAGE, str(e)))
    except Exception as e:
        logger.error(f"Unexpected failure parsing package {path}: {e}", exc_info=True)
        return ExtractResult(
            error=ParseError(ParseErrorKind.UNKNOWN_FAILURE, f"{type(e).__name__}: {e}")
        )

    if not metadata.bundle_id or not metadata.platform:
        metadata.cleanup()
        return ExtractResult(
            error=ParseError(ParseErrorKind.MALFORMED_PACKAGE, "package declares no bundle id or platform")
        )

    try:
        metadata.platform = Platform(metadata.platform)
        if metadata.release_type is not None:
            metadata.release_type = ReleaseType(metadata.release_type)
    except ValueError as e:
        metadata.cleanup()
        return ExtractResult(error=ParseError(ParseErrorKind.MALFORMED_PACKAGE, str(e)))
    return ExtractResult(metadata=metadata)


@lru_cache()
def _load_parser(dotted_path: str) -> PackageParser:
    module_name, _, attr = dotted_path.partition(":")
    target = getattr(importlib.import_module(module_name), attr)
    return target() if isinstance(target, type) else target


def get_package_parser() -> PackageParser:
    """Parser configured by ``settings.package_parser`` (``module:attr``)."""
    return _load_parser(get_settings().package_parser)


# ---------------------------------------------------------------------------
# Built-in parser
# ---------------------------------------------------------------------------

_IOS_INFO_PLIST = re.compile(r"^Payload/[^/]+\.app/Info\.plist$")
_MACOS_INFO_PLIST = re.compile(r"^(?:[^/]+/)?[^/]+\.app/Contents/Info\.plist$")
_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

_DEVICE_FAMILIES = {1: "iPhone", 2: "iPad"}


def _read_profile(data: bytes) -> dict:
    """Pull the plist out of a CMS-signed embedded.mobileprovision."""
    start = data.find(b"<?xml")
    end = data.find(b"</plist>")
    if start < 0 or end < 0:
        raise MalformedPackageError("embedded.mobileprovision has no plist payload")
    return plistlib.loads(data[start:end + len(b"</plist>")])


def _ios_release_type(profile: Optional[dict]) -> ReleaseType:
    if profile is None:
        return ReleaseType.DEBUG
    entitlements = profile.get("Entitlements") or {}
    if entitlements.get("get-task-allow"):
        return ReleaseType.DEBUG
    if profile.get("ProvisionedDevices"):
        return ReleaseType.ADHOC
    if profile.get("ProvisionsAllDevices"):
        return ReleaseType.INHOUSE
    return ReleaseType.RELEASE


def _ios_device_type(info: dict) -> str:
    families = {_DEVICE_FAMILIES.get(f) for f in info.get("UIDeviceFamily") or [1]}
    families.discard(None)
    if len(families) > 1:
        return "Universal"
    return families.pop() if families else "iPhone"


def _is_crushed_png(path: Path) -> bool:
    with path.open("rb") as f:
        head = f.read(16)
    return head.startswith(_PNG_SIGNATURE) and head[12:16] == b"CgBI"


class BuiltinPackageParser(PackageParser):
    """Reads Info.plist based packages (iOS .ipa, zipped macOS .app)."""

    def parse(self, path: str) -> PackageMetadata:
        if not zipfile.is_zipfile(path):
            raise UnsupportedPackageError(f"{Path(path).name} is not a supported package")

        with zipfile.ZipFile(path) as zf:
            names = zf.namelist()

            ios_plist = next((n for n in names if _IOS_INFO_PLIST.match(n)), None)
            if ios_plist:
                return self._parse_ios(zf, ios_plist)

            mac_plists = sorted((n for n in names if _MACOS_INFO_PLIST.match(n)), key=len)
            if mac_plists:
                return self._parse_macos(zf, mac_plists[0])

            if "AndroidManifest.xml" in names:
                raise UnsupportedPackageError(
                    "Android packages require an external parser (settings.package_parser)"
                )

        raise UnsupportedPackageError(f"{Path(path).name} is not a supported package")

    def _parse_ios(self, zf: zipfile.ZipFile, plist_name: str) -> PackageMetadata:
        info = plistlib.loads(zf.read(plist_name))
        app_dir = plist_name[: -len("Info.plist")]

        profile = None
        profile_name = f"{app_dir}embedded.mobileprovision"
        if profile_name in zf.namelist():
            profile = _read_profile(zf.read(profile_name))

        release_type = _ios_release_type(profile)
        devices = list(profile.get("ProvisionedDevices") or []) if profile else []

        workdir = tempfile.mkdtemp(prefix="appdrop-ipa-")
        try:
            icons = self._extract_ios_icons(zf, info, app_dir, Path(workdir))
        except Exception:
            shutil.rmtree(workdir, ignore_errors=True)
            raise

        return PackageMetadata(
            platform=Platform.IOS,
            bundle_id=info.get("CFBundleIdentifier"),
            name=info.get("CFBundleDisplayName") or info.get("CFBundleName"),
            release_version=info.get("CFBundleShortVersionString"),
            build_version=info.get("CFBundleVersion"),
            device_type=_ios_device_type(info),
            release_type=release_type,
            icons=icons,
            devices=devices if release_type == ReleaseType.ADHOC else [],
            workdir=workdir,
        )

    def _extract_ios_icons(
        self, zf: zipfile.ZipFile, info: dict, app_dir: str, workdir: Path
    ) -> list[IconCandidate]:
        icon_names: list[str] = []
        for key in ("CFBundleIcons", "CFBundleIcons~ipad"):
            primary = (info.get(key) or {}).get("CFBundlePrimaryIcon") or {}
            icon_names.extend(primary.get("CFBundleIconFiles") or [])
        icon_names.extend(info.get("CFBundleIconFiles") or [])
        if not icon_names:
            return []

        entries = []
        for zinfo in zf.infolist():
            rel = zinfo.filename[len(app_dir):] if zinfo.filename.startswith(app_dir) else None
            if not rel or "/" in rel or not rel.lower().endswith(".png"):
                continue
            if any(rel.startswith(name) for name in icon_names):
                entries.append(zinfo)

        # Larger files are higher resolution renditions; keep them last.
        entries.sort(key=lambda z: z.file_size)

        candidates = []
        for index, zinfo in enumerate(entries):
            target = workdir / f"{index}_{Path(zinfo.filename).name}"
            target.write_bytes(zf.read(zinfo))
            uncrushed = None if _is_crushed_png(target) else str(target)
            candidates.append(IconCandidate(file=str(target), uncrushed_file=uncrushed))
        return candidates

    def _parse_macos(self, zf: zipfile.ZipFile, plist_name: str) -> PackageMetadata:
        info = plistlib.loads(zf.read(plist_name))
        contents_dir = plist_name[: -len("Info.plist")]

        workdir = tempfile.mkdtemp(prefix="appdrop-mac-")
        icon_sets = []
        icon_file = info.get("CFBundleIconFile")
        if icon_file:
            if not icon_file.endswith(".icns"):
                icon_file = f"{icon_file}.icns"
            entry = f"{contents_dir}Resources/{icon_file}"
            if entry in zf.namelist():
                target = Path(workdir) / icon_file
                target.write_bytes(zf.read(entry))
                icon_sets.append(IconCandidate(file=str(target)))

        return PackageMetadata(
            platform=Platform.MACOS,
            bundle_id=info.get("CFBundleIdentifier"),
            name=info.get("CFBundleDisplayName") or info.get("CFBundleName"),
            release_version=info.get("CFBundleShortVersionString"),
            build_version=info.get("CFBundleVersion"),
            device_type=Platform.MACOS.value,
            icon_sets=icon_sets,
            workdir=workdir,
        )
