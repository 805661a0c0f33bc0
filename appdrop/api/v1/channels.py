"""
Channel settings API endpoints.

Provides endpoints for:
- Reading a channel's settings
- Updating the enforced bundle identifier, download password and git url
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.api.deps import get_channel
from appdrop.db.database import get_db
from appdrop.db.models import ChannelDB

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/channels", tags=["channels"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class ChannelUpdate(BaseModel):
    """Request model for updating a channel. Omitted fields stay unchanged."""
    bundle_id: Optional[str] = Field(
        None, max_length=256, description='Enforced identifier, "*" or empty accepts any'
    )
    password: Optional[str] = Field(None, max_length=128)
    git_url: Optional[str] = Field(None, max_length=512)


class ChannelResponse(BaseModel):
    id: str
    slug: str
    key: str
    name: str
    device_type: str
    bundle_id: Optional[str] = None
    git_url: Optional[str] = None
    has_password: bool


def _build_channel_response(channel: ChannelDB) -> ChannelResponse:
    return ChannelResponse(
        id=channel.id,
        slug=channel.slug,
        key=channel.key,
        name=channel.name,
        device_type=channel.device_type,
        bundle_id=channel.bundle_id,
        git_url=channel.git_url,
        has_password=bool(channel.password),
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/{slug}", response_model=ChannelResponse)
async def get_channel_settings(
    channel: ChannelDB = Depends(get_channel),
):
    """
    Get a channel's settings.
    """
    return _build_channel_response(channel)


@router.patch("/{slug}", response_model=ChannelResponse)
async def update_channel(
    data: ChannelUpdate,
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    Update a channel's settings.

    Setting ``bundle_id`` to a concrete identifier makes every later upload
    to the channel match it. ``"*"`` or an empty string lifts the check.
    """
    for field in data.model_fields_set:
        value = getattr(data, field)
        setattr(channel, field, (value or "").strip() or None)
    await db.commit()
    logger.info(f"Channel {channel.slug} updated: {sorted(data.model_fields_set)}")
    return _build_channel_response(channel)
