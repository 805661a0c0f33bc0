"""
Release ingestion.

``ingest_release`` turns a staged upload into a committed Release:

1. extract package metadata on the bounded worker pool
2. store the package file
3. in one transaction: resolve identity and guard the bundle id, assign the
   version, normalize fields, store the icon, insert the release and
   register ad-hoc devices
4. commit, then hand the upload event to the web hook notifier

A failure anywhere before the commit rolls back every row written by the
request (including newly created apps, schemes and channels) and deletes the
files it stored. Nothing after the commit can undo the release.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.config import get_settings
from appdrop.db.models import ReleaseDB, UserDB
from appdrop.services import storage
from appdrop.services.devices import devices_for
from appdrop.services.errors import PackageRejectedError, PersistenceError
from appdrop.services.icons import select_icon
from appdrop.services.identity import ChannelFields, resolve_identity
from appdrop.services.normalizer import (
    normalize_branch,
    normalize_changelog,
    normalize_custom_fields,
)
from appdrop.services.package_info import PackageMetadata, PackageParser, extract
from appdrop.services.versioning import assign_next_version
from appdrop.services.webhooks import UPLOAD_EVENT, WebhookNotifier, get_notifier

logger = logging.getLogger(__name__)


@dataclass
class UploadRequest:
    """Optional fields sent along with an uploaded package."""
    channel_key: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = None
    release_type: Optional[str] = None
    source: Optional[str] = None
    changelog: Any = None
    branch: Optional[str] = None
    git_commit: Optional[str] = None
    ci_url: Optional[str] = None
    devices: Any = None  # Accepted for compatibility, the package's list wins
    custom_fields: Any = None
    slug: Optional[str] = None
    git_url: Optional[str] = None

    def channel_fields(self) -> ChannelFields:
        return ChannelFields(slug=self.slug, password=self.password, git_url=self.git_url)


# ============ Extraction pool ============

_extract_pool: Optional[ThreadPoolExecutor] = None


def get_extract_pool() -> ThreadPoolExecutor:
    global _extract_pool
    if _extract_pool is None:
        _extract_pool = ThreadPoolExecutor(
            max_workers=get_settings().extract_workers,
            thread_name_prefix="appdrop-extract",
        )
    return _extract_pool


def shutdown_extract_pool() -> None:
    global _extract_pool
    if _extract_pool is not None:
        _extract_pool.shutdown(wait=False, cancel_futures=True)
        _extract_pool = None


async def extract_metadata(path: Path, parser: Optional[PackageParser] = None) -> PackageMetadata:
    """Run the extractor off the event loop; raise on a rejected package."""
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(get_extract_pool(), extract, str(path), parser)
    if not result.ok:
        raise PackageRejectedError(result.error)
    return result.metadata


# ============ Ingestion ============

def _icon_suffix(path: str) -> str:
    return Path(path).suffix.lower() or ".png"


async def _store_icon(metadata: PackageMetadata) -> Optional[str]:
    icon = select_icon(metadata)
    if icon is None:
        return None
    with icon:
        return await asyncio.to_thread(storage.store_icon, icon, _icon_suffix(icon.name))


async def create_release(
    db: AsyncSession,
    *,
    owner: UserDB,
    metadata: PackageMetadata,
    request: UploadRequest,
    file_key: str,
    file_size: Optional[int],
    stored_keys: list[str],
) -> ReleaseDB:
    """Write the release and everything it needs. Does not commit.

    Keys of files stored along the way are appended to ``stored_keys`` so the
    caller can remove them if the transaction fails.
    """
    identity = await resolve_identity(
        db,
        owner=owner,
        metadata=metadata,
        channel_key=request.channel_key,
        app_name=request.name,
        channel_fields=request.channel_fields(),
    )
    channel = identity.channel
    # Pending channel field changes and a new channel must be visible to the counter update
    await db.flush()

    version = await assign_next_version(db, channel.id)

    icon_key = await _store_icon(metadata)
    if icon_key:
        stored_keys.append(icon_key)

    devices = await devices_for(db, metadata)

    release = ReleaseDB(
        channel_id=channel.id,
        channel=channel,
        version=version,
        name=metadata.name,
        bundle_id=metadata.bundle_id,
        release_version=metadata.release_version or "",
        build_version=metadata.build_version or "",
        release_type=request.release_type or (
            metadata.release_type.value if metadata.release_type else None
        ),
        source="Web" if request.source == "Web" else "API",
        branch=normalize_branch(request.branch),
        git_commit=request.git_commit or None,
        ci_url=request.ci_url or None,
        changelog=normalize_changelog(request.changelog),
        custom_fields=normalize_custom_fields(request.custom_fields),
        device=metadata.device_type or channel.device_type,
        file=file_key,
        file_size=file_size,
        icon=icon_key,
        devices=devices,
    )
    db.add(release)
    await db.flush()
    return release


async def ingest_release(
    db: AsyncSession,
    *,
    owner: UserDB,
    staged: storage.StagedUpload,
    request: UploadRequest,
    parser: Optional[PackageParser] = None,
    notifier: Optional[WebhookNotifier] = None,
) -> ReleaseDB:
    """Ingest one staged upload and commit it. See module docstring."""
    metadata = await extract_metadata(staged.path, parser)
    stored_keys: list[str] = []
    try:
        file_key = await asyncio.to_thread(storage.store_package, staged)
        stored_keys.append(file_key)

        try:
            release = await create_release(
                db,
                owner=owner,
                metadata=metadata,
                request=request,
                file_key=file_key,
                file_size=staged.size,
                stored_keys=stored_keys,
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Failed to persist release for {metadata.bundle_id}: {e}", exc_info=True)
            raise PersistenceError(str(e)) from e
        except BaseException:
            await db.rollback()
            raise
    except BaseException:
        for key in stored_keys:
            storage.delete_stored(key)
        raise
    finally:
        metadata.cleanup()

    logger.info(
        f"Release committed: channel={release.channel.slug} version={release.version} "
        f"bundle_id={release.bundle_id} devices={len(release.devices)}"
    )

    (notifier or get_notifier()).notify(release.channel_id, UPLOAD_EVENT, release_id=release.id)
    return release
