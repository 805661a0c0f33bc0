"""
Web hook API endpoints, scoped to a channel.

Provides endpoints for:
- Creating a hook attached to the channel
- Listing the channel's hooks
- Deleting a hook
- Disabling (detaching) and enabling (attaching) an existing hook
- Sending a test event through a hook
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.api.deps import get_channel
from appdrop.db.database import get_db
from appdrop.db.models import ChannelDB, WebHookDB
from appdrop.services.webhooks import get_notifier, normalize_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/channels", tags=["web_hooks"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class WebHookCreate(BaseModel):
    """Request model for creating a web hook."""
    url: str = Field(..., min_length=1, max_length=1024)
    body: Optional[str] = Field(None, description="string.Template body, JSON payload when empty")
    upload_events: bool = True
    changelog_events: bool = False

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v


class WebHookResponse(BaseModel):
    """Response model for a web hook."""
    id: str
    url: str
    body: Optional[str] = None
    upload_events: bool
    changelog_events: bool
    created_at: datetime


class WebHookListResponse(BaseModel):
    web_hooks: List[WebHookResponse]
    total: int


def _build_web_hook_response(hook: WebHookDB) -> WebHookResponse:
    return WebHookResponse(
        id=hook.id,
        url=hook.url,
        body=hook.body,
        upload_events=hook.upload_events,
        changelog_events=hook.changelog_events,
        created_at=hook.created_at,
    )


async def _get_web_hook_or_404(db: AsyncSession, web_hook_id: str) -> WebHookDB:
    result = await db.execute(select(WebHookDB).where(WebHookDB.id == web_hook_id))
    hook = result.scalar_one_or_none()
    if not hook:
        raise HTTPException(status_code=404, detail="Web hook not found")
    return hook


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/{slug}/web_hooks", response_model=WebHookResponse, status_code=201)
async def create_web_hook(
    data: WebHookCreate,
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a web hook and attach it to the channel.
    """
    hook = WebHookDB(
        url=data.url,
        body=data.body or None,
        upload_events=data.upload_events,
        changelog_events=data.changelog_events,
    )
    channel.web_hooks.append(hook)
    await db.commit()
    logger.info(f"Web hook {hook.id} created for channel {channel.slug}")
    return _build_web_hook_response(hook)


@router.get("/{slug}/web_hooks", response_model=WebHookListResponse)
async def list_web_hooks(
    channel: ChannelDB = Depends(get_channel),
):
    """
    List the web hooks attached to the channel.
    """
    hooks = sorted(channel.web_hooks, key=lambda h: h.created_at)
    return WebHookListResponse(
        web_hooks=[_build_web_hook_response(h) for h in hooks],
        total=len(hooks),
    )


@router.delete("/{slug}/web_hooks/{web_hook_id}")
async def delete_web_hook(
    web_hook_id: str,
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    Delete a web hook. It is detached from every channel.
    """
    hook = await _get_web_hook_or_404(db, web_hook_id)
    if hook in channel.web_hooks:
        channel.web_hooks.remove(hook)
    await db.delete(hook)
    await db.commit()
    return {"message": "Web hook deleted successfully"}


@router.post("/{slug}/web_hooks/{web_hook_id}/disable")
async def disable_web_hook(
    web_hook_id: str,
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    Detach a web hook from the channel without deleting it.
    """
    hook = await _get_web_hook_or_404(db, web_hook_id)
    if hook in channel.web_hooks:
        channel.web_hooks.remove(hook)
        await db.commit()
    return {"message": "Web hook disabled for this channel"}


@router.post("/{slug}/web_hooks/{web_hook_id}/enable")
async def enable_web_hook(
    web_hook_id: str,
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    Attach an existing web hook to the channel.
    """
    hook = await _get_web_hook_or_404(db, web_hook_id)
    if hook not in channel.web_hooks:
        channel.web_hooks.append(hook)
        await db.commit()
    return {"message": "Web hook enabled for this channel"}


@router.post("/{slug}/web_hooks/{web_hook_id}/test", status_code=202)
async def test_web_hook(
    web_hook_id: str,
    event: Optional[str] = Query(None, description="upload or changelog"),
    channel: ChannelDB = Depends(get_channel),
    db: AsyncSession = Depends(get_db),
):
    """
    Send ``event`` for the channel's latest release through one hook.

    Delivery happens in the background; the hook's event flags are ignored.
    """
    try:
        event_name = normalize_event(event)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    hook = await _get_web_hook_or_404(db, web_hook_id)
    if hook not in channel.web_hooks:
        raise HTTPException(status_code=404, detail="Web hook is not enabled for this channel")

    get_notifier().notify(channel.id, event_name, hook_id=hook.id)
    return {"message": f"Test {event_name} queued", "web_hook_id": hook.id}
