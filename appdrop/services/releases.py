"""Reading, correcting and removing releases of a channel."""

import logging
from typing import Any, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.db.models import ChannelDB, ReleaseDB
from appdrop.services.normalizer import (
    normalize_branch,
    normalize_changelog,
    normalize_custom_fields,
)
from appdrop.services.teardown import schedule_teardown
from appdrop.services.webhooks import CHANGELOG_EVENT, WebhookNotifier, get_notifier

logger = logging.getLogger(__name__)

_UNSET: Any = object()


async def list_releases(
    db: AsyncSession, channel: ChannelDB, offset: int = 0, limit: int = 20
) -> tuple[List[ReleaseDB], int]:
    """Releases of ``channel``, newest version first, with the total count."""
    total = await db.scalar(
        select(func.count(ReleaseDB.id)).where(ReleaseDB.channel_id == channel.id)
    )
    result = await db.execute(
        select(ReleaseDB)
        .where(ReleaseDB.channel_id == channel.id)
        .order_by(ReleaseDB.version.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.unique().scalars().all()), total or 0


async def get_release(db: AsyncSession, channel: ChannelDB, release_id: str) -> Optional[ReleaseDB]:
    result = await db.execute(
        select(ReleaseDB).where(ReleaseDB.id == release_id, ReleaseDB.channel_id == channel.id)
    )
    return result.unique().scalar_one_or_none()


async def update_release_metadata(
    db: AsyncSession,
    release: ReleaseDB,
    *,
    changelog: Any = _UNSET,
    custom_fields: Any = _UNSET,
    branch: Any = _UNSET,
    git_commit: Any = _UNSET,
    ci_url: Any = _UNSET,
    notifier: Optional[WebhookNotifier] = None,
) -> ReleaseDB:
    """Correct CI metadata of a release and announce the changelog event.

    Only given fields change. The version is never touched.
    """
    if changelog is not _UNSET:
        release.changelog = normalize_changelog(changelog)
    if custom_fields is not _UNSET:
        release.custom_fields = normalize_custom_fields(custom_fields)
    if branch is not _UNSET:
        release.branch = normalize_branch(branch)
    if git_commit is not _UNSET:
        release.git_commit = git_commit or None
    if ci_url is not _UNSET:
        release.ci_url = ci_url or None

    await db.commit()
    logger.info(f"Release {release.id} (version {release.version}) metadata updated")

    (notifier or get_notifier()).notify(release.channel_id, CHANGELOG_EVENT, release_id=release.id)
    return release


async def delete_release(db: AsyncSession, release: ReleaseDB) -> None:
    """Delete the row, then remove its files in the background.

    Remaining versions keep their numbers.
    """
    release_id, file_key, icon_key = release.id, release.file, release.icon
    await db.delete(release)
    await db.commit()
    logger.info(f"Release {release_id} (version {release.version}) deleted")
    schedule_teardown(release_id, file_key, icon_key)
