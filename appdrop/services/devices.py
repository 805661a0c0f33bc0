"""Device registration for iOS ad-hoc releases."""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.db.models import DeviceDB
from appdrop.services.identity import find_or_create
from appdrop.services.package_info import PackageMetadata

logger = logging.getLogger(__name__)


def distinct_udids(udids: Iterable[Optional[str]]) -> List[str]:
    """Drop blanks and repeats, keep first-seen order."""
    seen = set()
    result = []
    for udid in udids:
        udid = (udid or "").strip()
        if not udid or udid in seen:
            continue
        seen.add(udid)
        result.append(udid)
    return result


async def _find_device(db: AsyncSession, udid: str) -> Optional[DeviceDB]:
    result = await db.execute(select(DeviceDB).where(DeviceDB.udid == udid))
    return result.scalar_one_or_none()


async def register_devices(db: AsyncSession, udids: Iterable[Optional[str]]) -> List[DeviceDB]:
    """Find or create one Device row per distinct UDID.

    Rows are looked up and inserted in sorted UDID order so concurrent
    uploads sharing devices take their row locks in the same order.
    The result keeps first-seen order.
    """
    wanted = distinct_udids(udids)
    by_udid = {}
    for udid in sorted(wanted):
        device, created = await find_or_create(
            db,
            lambda udid=udid: _find_device(db, udid),
            lambda udid=udid: DeviceDB(udid=udid),
            entity=f"device {udid}",
        )
        if created:
            logger.debug(f"Registered device {udid}")
        by_udid[udid] = device
    return [by_udid[udid] for udid in wanted]


async def devices_for(db: AsyncSession, metadata: PackageMetadata) -> List[DeviceDB]:
    """Devices a release built from ``metadata`` is restricted to.

    Empty unless the package is an iOS ad-hoc build listing devices.
    """
    if not metadata.is_adhoc_ios or not metadata.devices:
        return []
    return await register_devices(db, metadata.devices)
