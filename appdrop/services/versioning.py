"""
Per-channel release version assignment.

Versions come from ``channels.release_counter``, bumped with a single
``UPDATE ... RETURNING``. The update holds the channel row lock until the
surrounding transaction ends, so concurrent assigners on one channel queue up
behind each other while other channels proceed. The counter is reconciled
with ``max(releases.version)`` so rows written outside the counter (imports,
older data) are never duplicated. ``uq_release_channel_version`` is the
final backstop.
"""

import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.db.models import ChannelDB, ReleaseDB

logger = logging.getLogger(__name__)


async def current_max_version(db: AsyncSession, channel_id: str) -> int:
    result = await db.execute(
        select(func.max(ReleaseDB.version)).where(ReleaseDB.channel_id == channel_id)
    )
    return result.scalar() or 0


async def assign_next_version(db: AsyncSession, channel_id: str) -> int:
    """Reserve and return the next version for ``channel_id``.

    Must run inside the transaction that inserts the release. A rollback
    releases the number again; a version may be skipped, never reused.
    """
    result = await db.execute(
        update(ChannelDB)
        .where(ChannelDB.id == channel_id)
        .values(release_counter=ChannelDB.release_counter + 1)
        .returning(ChannelDB.release_counter)
        .execution_options(synchronize_session=False)
    )
    counter = result.scalar_one()

    next_version = max(counter, await current_max_version(db, channel_id) + 1)
    if next_version != counter:
        logger.info(
            f"Channel {channel_id} counter {counter} behind stored releases, advancing to {next_version}"
        )
        await db.execute(
            update(ChannelDB)
            .where(ChannelDB.id == channel_id)
            .values(release_counter=next_version)
            .execution_options(synchronize_session=False)
        )
    return next_version


async def is_outdated(db: AsyncSession, release: ReleaseDB) -> bool:
    """True when a newer release exists in the same channel."""
    return await current_max_version(db, release.channel_id) > release.version
