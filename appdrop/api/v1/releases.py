"""
Release API endpoints.

Provides endpoints for:
- Listing a channel's releases (newest version first)
- Getting release details, including whether a newer release exists
- Correcting release metadata (changelog, custom fields, CI info)
- Deleting releases
"""

import logging
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.api.deps import get_channel
from appdrop.db.database import get_db
from appdrop.db.models import ChannelDB, ReleaseDB
from appdrop.services import releases as release_service
from appdrop.services.versioning import is_outdated

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/channels", tags=["releases"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class ChannelSummary(BaseModel):
    id: str
    slug: str
    key: str
    device_type: str


class ReleaseResponse(BaseModel):
    """Response model for a release."""
    id: str
    version: int
    release_version: str
    build_version: str
    bundle_id: str
    name: Optional[str] = None
    app_name: str
    release_type: Optional[str] = None
    source: str
    branch: Optional[str] = None
    git_commit: Optional[str] = None
    short_git_commit: Optional[str] = None
    ci_url: Optional[str] = None
    changelog: Any = None
    custom_fields: Any = None
    device: Optional[str] = None
    devices_count: int = 0
    file: str
    file_size: Optional[int] = None
    icon: Optional[str] = None
    download_filename: str
    outdated: Optional[bool] = None
    channel: ChannelSummary
    created_at: datetime


class ReleaseListResponse(BaseModel):
    """Response for listing releases."""
    releases: List[ReleaseResponse]
    total: int


class ReleaseUpdate(BaseModel):
    """Request model for correcting release metadata. Omitted fields stay."""
    changelog: Any = Field(None, description="Plain text (one entry per line) or JSON")
    custom_fields: Any = Field(None, description="JSON array or object")
    branch: Optional[str] = None
    git_commit: Optional[str] = Field(None, max_length=64)
    ci_url: Optional[str] = Field(None, max_length=1024)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def build_release_response(release: ReleaseDB, outdated: Optional[bool] = None) -> ReleaseResponse:
    channel = release.channel
    return ReleaseResponse(
        id=release.id,
        version=release.version,
        release_version=release.release_version,
        build_version=release.build_version,
        bundle_id=release.bundle_id,
        name=release.name,
        app_name=release.app_name,
        release_type=release.release_type,
        source=release.source,
        branch=release.branch,
        git_commit=release.git_commit,
        short_git_commit=release.short_git_commit,
        ci_url=release.ci_url,
        changelog=release.changelog_list(use_default_changelog=False),
        custom_fields=release.custom_fields or [],
        device=release.device,
        devices_count=len(release.devices),
        file=release.file,
        file_size=release.size,
        icon=release.icon,
        download_filename=release.download_filename,
        outdated=outdated,
        channel=ChannelSummary(
            id=channel.id,
            slug=channel.slug,
            key=channel.key,
            device_type=channel.device_type,
        ),
        created_at=release.created_at,
    )


async def _get_release_or_404(db: AsyncSession, channel: ChannelDB, release_id: str) -> ReleaseDB:
    release = await release_service.get_release(db, channel, release_id)
    if not release:
        raise HTTPException(status_code=404, detail="Release not found")
    return release


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/{slug}/releases", response_model=ReleaseListResponse)
async def list_releases(
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    List releases of a channel, newest version first.
    """
    releases, total = await release_service.list_releases(db, channel, offset=offset, limit=limit)
    return ReleaseListResponse(
        releases=[build_release_response(r) for r in releases],
        total=total,
    )


@router.get("/{slug}/releases/{release_id}", response_model=ReleaseResponse)
async def get_release(
    release_id: str,
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    Get one release. ``outdated`` tells whether a newer version exists.
    """
    release = await _get_release_or_404(db, channel, release_id)
    return build_release_response(release, outdated=await is_outdated(db, release))


@router.patch("/{slug}/releases/{release_id}", response_model=ReleaseResponse)
async def update_release(
    release_id: str,
    data: ReleaseUpdate,
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    Correct release metadata and send the changelog event.

    The version number is immutable.
    """
    release = await _get_release_or_404(db, channel, release_id)
    changes = {name: getattr(data, name) for name in data.model_fields_set}
    release = await release_service.update_release_metadata(db, release, **changes)
    return build_release_response(release)


@router.delete("/{slug}/releases/{release_id}")
async def delete_release(
    release_id: str,
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    Delete a release. Stored files are removed in the background and the
    remaining releases keep their versions.
    """
    release = await _get_release_or_404(db, channel, release_id)
    await release_service.delete_release(db, release)
    return {"message": "Release deleted successfully"}
