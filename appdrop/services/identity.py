"""
Identity resolution: which App / Scheme / Channel an upload belongs to.

Two paths:
- update path: the upload names an existing channel by key. The chain is
  fixed and the bundle id guard runs before anything is written.
- create path: no channel resolved. App, scheme and channel are found or
  created from the owner and package metadata.

Find-or-create never trusts a lock. Each create runs in a SAVEPOINT; when a
concurrent request wins the unique constraint we roll back to the savepoint
and look again, a bounded number of times.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.config import get_settings
from appdrop.db.models import AppDB, ChannelDB, SchemeDB, UserDB
from appdrop.services.errors import BundleMismatchError, IdentityConflictError
from appdrop.services.package_info import PackageMetadata, Platform, ReleaseType

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEME_NAMES = {
    ReleaseType.DEBUG: "dev variant",
    ReleaseType.ADHOC: "test variant",
    ReleaseType.INHOUSE: "enterprise variant",
    ReleaseType.RELEASE: "production variant",
}
DEFAULT_SCHEME_NAME = "test variant"


async def find_or_create(
    db: AsyncSession,
    find: Callable[[], Awaitable[Optional[T]]],
    build: Callable[[], T],
    *,
    entity: str,
    retries: Optional[int] = None,
) -> tuple[T, bool]:
    """Return ``(row, created)``.

    ``build`` must produce a fresh, unsaved object each call. Raises
    ``IdentityConflictError`` when every attempt loses the race.
    """
    if retries is None:
        retries = get_settings().identity_create_retries
    attempts = retries + 1

    for attempt in range(1, attempts + 1):
        existing = await find()
        if existing is not None:
            return existing, False

        obj = build()
        try:
            async with db.begin_nested():
                db.add(obj)
        except IntegrityError:
            logger.info(f"Lost race creating {entity} (attempt {attempt}/{attempts}), finding again")
            continue
        return obj, True

    logger.warning(f"Giving up creating {entity} after {attempts} attempts")
    raise IdentityConflictError(entity, attempts)


def scheme_name_for(metadata: PackageMetadata) -> str:
    if metadata.platform == Platform.IOS and metadata.release_type in SCHEME_NAMES:
        return SCHEME_NAMES[metadata.release_type]
    return DEFAULT_SCHEME_NAME


def ensure_bundle_matched(channel: ChannelDB, bundle_id: Optional[str]) -> None:
    """Reject packages whose bundle id differs from the channel's anchor."""
    if not channel.bundle_id_matched(bundle_id):
        raise BundleMismatchError(channel.bundle_id, bundle_id, channel.id)


@dataclass
class ChannelFields:
    """Channel attributes an upload may set."""
    slug: Optional[str] = None
    password: Optional[str] = None
    git_url: Optional[str] = None

    def apply(self, channel: ChannelDB) -> None:
        if self.slug:
            channel.slug = self.slug
        if self.password is not None:
            channel.password = self.password or None
        if self.git_url is not None:
            channel.git_url = self.git_url or None


@dataclass
class ResolvedIdentity:
    app: AppDB
    scheme: SchemeDB
    channel: ChannelDB
    update_path: bool


async def find_channel_by_key(db: AsyncSession, key: Optional[str]) -> Optional[ChannelDB]:
    if not key:
        return None
    result = await db.execute(select(ChannelDB).where(ChannelDB.key == key))
    return result.unique().scalar_one_or_none()


async def find_channel_by_slug(db: AsyncSession, slug: str) -> Optional[ChannelDB]:
    result = await db.execute(select(ChannelDB).where(ChannelDB.slug == slug))
    return result.unique().scalar_one_or_none()


async def _find_owned_app(db: AsyncSession, owner: UserDB, name: str) -> Optional[AppDB]:
    result = await db.execute(
        select(AppDB)
        .where(
            AppDB.name == name,
            or_(AppDB.creator_id == owner.id, AppDB.users.any(UserDB.id == owner.id)),
        )
        .order_by(AppDB.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _find_scheme(db: AsyncSession, app: AppDB, name: str) -> Optional[SchemeDB]:
    result = await db.execute(
        select(SchemeDB).where(SchemeDB.app_id == app.id, SchemeDB.name == name)
    )
    return result.unique().scalar_one_or_none()


async def _find_channel(db: AsyncSession, scheme: SchemeDB, name: str) -> Optional[ChannelDB]:
    result = await db.execute(
        select(ChannelDB).where(ChannelDB.scheme_id == scheme.id, ChannelDB.name == name)
    )
    return result.unique().scalar_one_or_none()


async def resolve_identity(
    db: AsyncSession,
    *,
    owner: UserDB,
    metadata: PackageMetadata,
    channel_key: Optional[str] = None,
    app_name: Optional[str] = None,
    channel_fields: Optional[ChannelFields] = None,
) -> ResolvedIdentity:
    """Resolve (or create) the App -> Scheme -> Channel chain for an upload.

    The bundle id guard has run against the returned channel.
    """
    fields = channel_fields or ChannelFields()

    channel = await find_channel_by_key(db, channel_key)
    if channel is not None:
        ensure_bundle_matched(channel, metadata.bundle_id)
        fields.apply(channel)
        return ResolvedIdentity(
            app=channel.scheme.app,
            scheme=channel.scheme,
            channel=channel,
            update_path=True,
        )

    name = app_name or metadata.name or metadata.bundle_id
    app, _ = await find_or_create(
        db,
        lambda: _find_owned_app(db, owner, name),
        lambda: AppDB(name=name, creator_id=owner.id, creator=owner, users=[owner]),
        entity=f"app '{name}'",
    )

    scheme_name = scheme_name_for(metadata)
    scheme, _ = await find_or_create(
        db,
        lambda: _find_scheme(db, app, scheme_name),
        lambda: SchemeDB(app_id=app.id, app=app, name=scheme_name),
        entity=f"scheme '{scheme_name}'",
    )

    platform = Platform(metadata.platform).value

    def build_channel() -> ChannelDB:
        new_channel = ChannelDB(
            scheme_id=scheme.id,
            scheme=scheme,
            name=platform,
            device_type=platform,
        )
        fields.apply(new_channel)
        return new_channel

    channel, created = await find_or_create(
        db,
        lambda: _find_channel(db, scheme, platform),
        build_channel,
        entity=f"channel '{platform}'",
    )

    if not created:
        ensure_bundle_matched(channel, metadata.bundle_id)
        fields.apply(channel)

    return ResolvedIdentity(app=app, scheme=scheme, channel=channel, update_path=False)
