"""
Local file storage for packages and icons.

Stored files are addressed by keys relative to ``settings.upload_dir``
(``packages/<uuid>.ipa``, ``icons/<uuid>.png``). Keys are what the database
records; ``resolve_key`` maps them back to paths.
"""

import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from fastapi import UploadFile

from appdrop.config import get_settings
from appdrop.services.errors import UploadTooLargeError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


@dataclass
class StagedUpload:
    """An upload written to the incoming directory, not yet stored."""
    path: Path
    filename: str
    size: int

    def discard(self) -> None:
        self.path.unlink(missing_ok=True)


def _upload_root() -> Path:
    return Path(get_settings().upload_dir)


def resolve_key(key: str) -> Path:
    """Path of a stored file. Rejects keys escaping the upload directory."""
    root = _upload_root().resolve()
    path = (root / key).resolve()
    path.relative_to(root)
    return path


async def stage_upload(upload: UploadFile, max_size: Optional[int] = None) -> StagedUpload:
    """Stream ``upload`` to the incoming directory, enforcing ``max_size``."""
    settings = get_settings()
    limit = max_size if max_size is not None else settings.max_upload_size

    incoming = settings.incoming_dir
    incoming.mkdir(parents=True, exist_ok=True)
    filename = Path(upload.filename or "package").name
    target = incoming / f"{uuid.uuid4().hex}{Path(filename).suffix.lower()}"

    size = 0
    try:
        with target.open("wb") as out:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > limit:
                    raise UploadTooLargeError(limit)
                out.write(chunk)
    except BaseException:
        target.unlink(missing_ok=True)
        raise

    return StagedUpload(path=target, filename=filename, size=size)


def store_package(staged: StagedUpload) -> str:
    """Copy a staged upload into package storage and return its key."""
    packages_dir = get_settings().packages_dir
    packages_dir.mkdir(parents=True, exist_ok=True)
    name = f"{uuid.uuid4().hex}{Path(staged.filename).suffix.lower()}"
    shutil.copyfile(staged.path, packages_dir / name)
    return f"{packages_dir.name}/{name}"


def store_icon(source: BinaryIO, suffix: str = ".png") -> str:
    """Copy an open icon file into icon storage and return its key."""
    icons_dir = get_settings().icons_dir
    icons_dir.mkdir(parents=True, exist_ok=True)
    name = f"{uuid.uuid4().hex}{suffix}"
    with (icons_dir / name).open("wb") as out:
        shutil.copyfileobj(source, out)
    return f"{icons_dir.name}/{name}"


def delete_stored(key: Optional[str]) -> bool:
    """Remove a stored file. Missing files are not an error."""
    if not key:
        return False
    try:
        path = resolve_key(key)
    except ValueError:
        logger.warning(f"Refusing to delete {key}: outside upload directory")
        return False
    if not path.exists():
        return False
    try:
        path.unlink()
    except OSError as e:
        logger.warning(f"Failed to delete stored file {key}: {e}")
        return False
    return True
