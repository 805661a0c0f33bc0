"""
Web hook notifier.

Called after a transaction commits. ``notify`` schedules a background task
and returns immediately; the task loads the channel with its own session and
POSTs to every subscribed hook. Each hook is delivered independently with
its own retry/backoff, and failures end in the log, never in the caller.

Event names match the hook flags: ``upload_events`` and ``changelog_events``.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from string import Template
from typing import Any, Optional

import httpx
from sqlalchemy import select

from appdrop.config import get_settings
from appdrop.db.database import AsyncSessionLocal
from appdrop.db.models import ChannelDB, ReleaseDB, WebHookDB

logger = logging.getLogger(__name__)

UPLOAD_EVENT = "upload_events"
CHANGELOG_EVENT = "changelog_events"
EVENTS = (UPLOAD_EVENT, CHANGELOG_EVENT)

USER_AGENT = "appdrop-webhook/1.0"


def normalize_event(name: Optional[str]) -> str:
    """Accept ``upload`` as well as ``upload_events``."""
    if not name:
        return UPLOAD_EVENT
    event = name if name.endswith("_events") else f"{name}_events"
    if event not in EVENTS:
        raise ValueError(f"Unknown web hook event: {name}")
    return event


@dataclass
class WebhookDelivery:
    """One request to send, detached from the database session."""
    hook_id: str
    url: str
    content: bytes
    headers: dict = field(default_factory=dict)


def _changelog_text(changelog: Any) -> str:
    if isinstance(changelog, list):
        lines = []
        for entry in changelog:
            if isinstance(entry, dict) and "message" in entry:
                lines.append(str(entry["message"]))
            else:
                lines.append(json.dumps(entry, ensure_ascii=False))
        return "\n".join(lines)
    if isinstance(changelog, dict):
        return json.dumps(changelog, ensure_ascii=False)
    return str(changelog or "")


def build_payload(event: str, channel: ChannelDB, release: Optional[ReleaseDB] = None) -> dict:
    """JSON document describing ``event`` on ``channel``.

    ``release`` is the release the event is about; the latest release of
    the channel when the event is not tied to one.
    """
    scheme = channel.scheme
    app = scheme.app
    payload = {
        "event": event,
        "title": channel.app_name,
        "app": {"id": app.id, "name": app.name},
        "scheme": {"id": scheme.id, "name": scheme.name},
        "channel": {
            "id": channel.id,
            "name": channel.name,
            "slug": channel.slug,
            "device_type": channel.device_type,
        },
        "release": None,
    }
    if release is not None:
        payload["release"] = {
            "id": release.id,
            "version": release.version,
            "release_version": release.release_version,
            "build_version": release.build_version,
            "bundle_id": release.bundle_id,
            "release_type": release.release_type,
            "source": release.source,
            "branch": release.branch,
            "git_commit": release.git_commit,
            "ci_url": release.ci_url,
            "changelog": release.changelog_list(use_default_changelog=False),
            "custom_fields": release.custom_fields or [],
            "created_at": release.created_at.isoformat() if release.created_at else None,
        }
    return payload


def template_variables(payload: dict) -> dict:
    """Flat ``$name`` variables available to a hook's body template."""
    release = payload.get("release") or {}
    return {
        "event": payload["event"],
        "title": payload["title"],
        "app_name": payload["app"]["name"],
        "scheme_name": payload["scheme"]["name"],
        "channel_name": payload["channel"]["name"],
        "channel_slug": payload["channel"]["slug"],
        "device_type": payload["channel"]["device_type"],
        "version": release.get("version", ""),
        "release_version": release.get("release_version") or "",
        "build_version": release.get("build_version") or "",
        "bundle_id": release.get("bundle_id") or "",
        "release_type": release.get("release_type") or "",
        "branch": release.get("branch") or "",
        "git_commit": release.get("git_commit") or "",
        "ci_url": release.get("ci_url") or "",
        "changelog": _changelog_text(release.get("changelog")),
    }


def render_delivery(hook: WebHookDB, payload: dict) -> WebhookDelivery:
    """JSON body by default, the hook's ``string.Template`` body when set."""
    headers = {"User-Agent": USER_AGENT, "X-Appdrop-Event": payload["event"]}
    if hook.body and hook.body.strip():
        content = Template(hook.body).safe_substitute(template_variables(payload))
        is_json = content.lstrip().startswith(("[", "{"))
        headers["Content-Type"] = "application/json" if is_json else "text/plain"
        return WebhookDelivery(hook.id, hook.url, content.encode("utf-8"), headers)

    headers["Content-Type"] = "application/json"
    content = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    return WebhookDelivery(hook.id, hook.url, content, headers)


class WebhookNotifier:
    """Fire-and-forget delivery of channel events to web hooks."""

    def __init__(
        self,
        session_factory=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self.transport = transport
        self.timeout = settings.webhook_timeout if timeout is None else timeout
        self.max_retries = settings.webhook_max_retries if max_retries is None else max_retries
        self.retry_backoff = settings.webhook_retry_backoff if retry_backoff is None else retry_backoff
        self._tasks: set[asyncio.Task] = set()

    @property
    def session_factory(self):
        if self._session_factory is None:
            self._session_factory = AsyncSessionLocal
        return self._session_factory

    def notify(
        self,
        channel_id: str,
        event: str,
        release_id: Optional[str] = None,
        hook_id: Optional[str] = None,
    ) -> asyncio.Task:
        """Schedule delivery of ``event`` and return without waiting.

        ``hook_id`` restricts delivery to one hook regardless of its event
        flags (manual test trigger).
        """
        task = asyncio.create_task(self._dispatch(channel_id, event, release_id, hook_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled delivery (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _dispatch(
        self,
        channel_id: str,
        event: str,
        release_id: Optional[str],
        hook_id: Optional[str],
    ) -> None:
        try:
            deliveries = await self._collect(channel_id, event, release_id, hook_id)
        except Exception as e:
            logger.error(f"Failed to prepare {event} web hooks for channel {channel_id}: {e}", exc_info=True)
            return

        if not deliveries:
            return

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            await asyncio.gather(
                *(self.deliver(client, delivery) for delivery in deliveries),
                return_exceptions=True,
            )

    async def _collect(
        self,
        channel_id: str,
        event: str,
        release_id: Optional[str],
        hook_id: Optional[str],
    ) -> list[WebhookDelivery]:
        async with self.session_factory() as session:
            channel = await session.get(ChannelDB, channel_id)
            if channel is None:
                logger.warning(f"Channel {channel_id} vanished before {event} web hooks were sent")
                return []

            if hook_id is not None:
                hooks = [h for h in channel.web_hooks if h.id == hook_id]
            else:
                hooks = [h for h in channel.web_hooks if h.subscribes_to(event)]
            if not hooks:
                return []

            release = None
            if release_id is not None:
                release = await session.get(ReleaseDB, release_id)
            if release is None:
                result = await session.execute(
                    select(ReleaseDB)
                    .where(ReleaseDB.channel_id == channel_id)
                    .order_by(ReleaseDB.version.desc())
                    .limit(1)
                )
                release = result.unique().scalar_one_or_none()

            payload = build_payload(event, channel, release)
            return [render_delivery(hook, payload) for hook in hooks]

    async def deliver(self, client: httpx.AsyncClient, delivery: WebhookDelivery) -> bool:
        """POST one delivery, retrying transport errors and non-2xx answers."""
        attempts = self.max_retries + 1
        delay = self.retry_backoff
        for attempt in range(1, attempts + 1):
            try:
                response = await client.post(
                    delivery.url, content=delivery.content, headers=delivery.headers
                )
                if response.is_success:
                    logger.info(f"Web hook {delivery.hook_id} delivered to {delivery.url} ({response.status_code})")
                    return True
                reason = f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                reason = f"{type(e).__name__}: {e}"

            logger.warning(
                f"Web hook {delivery.hook_id} attempt {attempt}/{attempts} to {delivery.url} failed: {reason}"
            )
            if attempt < attempts and delay > 0:
                await asyncio.sleep(delay)
                delay *= 2

        logger.error(f"Giving up on web hook {delivery.hook_id} ({delivery.url}) after {attempts} attempts")
        return False


_notifier: Optional[WebhookNotifier] = None


def get_notifier() -> WebhookNotifier:
    global _notifier
    if _notifier is None:
        _notifier = WebhookNotifier()
    return _notifier


def set_notifier(notifier: Optional[WebhookNotifier]) -> None:
    """Replace the process-wide notifier (tests)."""
    global _notifier
    _notifier = notifier
