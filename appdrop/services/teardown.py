"""Deferred removal of a deleted release's stored files."""

import asyncio
import logging
from typing import Optional

from appdrop.services.storage import delete_stored

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task] = set()


async def _teardown(release_id: str, keys: list[str]) -> None:
    for key in keys:
        removed = await asyncio.to_thread(delete_stored, key)
        if removed:
            logger.info(f"Removed {key} of release {release_id}")


def schedule_teardown(release_id: str, file: Optional[str], icon: Optional[str] = None) -> asyncio.Task:
    """Remove ``file`` and ``icon`` in the background and return the task."""
    keys = [key for key in (file, icon) if key]
    task = asyncio.create_task(_teardown(release_id, keys))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_teardowns() -> None:
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
