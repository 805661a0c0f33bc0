"""
SQLAlchemy ORM models for appdrop.

Tables:
- users: Accounts that own apps
- apps / app_users: Logical products and their owners
- schemes: Build variants within an app
- channels: Distribution lines (one platform) within a scheme
- releases / release_devices: Uploaded builds and the ad-hoc devices they target
- devices: Installation target identifiers (UDIDs)
- web_hooks / channel_web_hooks: Notification targets attached to channels
"""

import secrets
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, List

from sqlalchemy import (
    JSON,
    Column,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    BigInteger,
    Table,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from appdrop.db.database import Base
from appdrop.services.normalizer import changelog_list

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Values of a channel's bundle_id that disable bundle id enforcement
WILDCARD_BUNDLE_IDS = ("", "*")


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


def generate_slug() -> str:
    """Short random slug used in public channel URLs."""
    return secrets.token_hex(5)


def generate_channel_key() -> str:
    """Channel key used to address uploads without a session."""
    return uuid.uuid4().hex


app_users = Table(
    "app_users",
    Base.metadata,
    Column("app_id", String(36), ForeignKey("apps.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)

release_devices = Table(
    "release_devices",
    Base.metadata,
    Column("release_id", String(36), ForeignKey("releases.id", ondelete="CASCADE"), primary_key=True),
    Column("device_id", String(36), ForeignKey("devices.id", ondelete="CASCADE"), primary_key=True),
)

channel_web_hooks = Table(
    "channel_web_hooks",
    Base.metadata,
    Column("channel_id", String(36), ForeignKey("channels.id", ondelete="CASCADE"), primary_key=True),
    Column("web_hook_id", String(36), ForeignKey("web_hooks.id", ondelete="CASCADE"), primary_key=True),
)


class UserDB(Base):
    """
    User accounts. Users own apps and upload releases.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    username: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    password_hash: Mapped[str] = mapped_column(
        String(256), nullable=False
    )
    display_name: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    role: Mapped[str] = mapped_column(
        String(32), default="user", nullable=False
    )  # "admin" or "user"
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<User(username={self.username}, role={self.role})>"


class AppDB(Base):
    """
    A logical product. Created on first upload, never deleted automatically.
    """
    __tablename__ = "apps"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(
        String(128), nullable=False
    )
    creator_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )  # User whose upload created the app
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    creator: Mapped[Optional["UserDB"]] = relationship(
        "UserDB", foreign_keys=[creator_id]
    )
    users: Mapped[List["UserDB"]] = relationship(
        "UserDB", secondary=app_users
    )

    __table_args__ = (
        UniqueConstraint("creator_id", "name", name="uq_app_creator_name"),
        Index("ix_apps_name", "name"),
    )

    def __repr__(self) -> str:
        return f"<App(name={self.name})>"


class SchemeDB(Base):
    """
    A build variant within an app (dev / test / production ...).
    """
    __tablename__ = "schemes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    app_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("apps.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(
        String(64), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Relationships
    app: Mapped["AppDB"] = relationship("AppDB", lazy="joined")

    __table_args__ = (
        UniqueConstraint("app_id", "name", name="uq_scheme_app_name"),
    )

    def __repr__(self) -> str:
        return f"<Scheme(app_id={self.app_id}, name={self.name})>"


class ChannelDB(Base):
    """
    A distribution line within a scheme: one platform, one cadence.

    ``key`` addresses uploads, ``slug`` addresses public pages. Once
    ``bundle_id`` holds a concrete identifier every later upload must match it.
    """
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    scheme_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("schemes.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(
        String(64), nullable=False
    )
    slug: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, default=generate_slug
    )
    key: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True, default=generate_channel_key
    )
    device_type: Mapped[str] = mapped_column(
        String(32), nullable=False
    )  # iOS / Android / macOS
    bundle_id: Mapped[Optional[str]] = mapped_column(
        String(256), nullable=True
    )  # Enforced identifier, None or "*" disables the check
    password: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )  # Optional download gate
    git_url: Mapped[Optional[str]] = mapped_column(
        String(512), nullable=True
    )
    release_counter: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )  # Last version handed out in this channel
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    scheme: Mapped["SchemeDB"] = relationship("SchemeDB", lazy="joined")
    web_hooks: Mapped[List["WebHookDB"]] = relationship(
        "WebHookDB", secondary=channel_web_hooks, lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint("scheme_id", "name", name="uq_channel_scheme_name"),
    )

    @property
    def app(self) -> "AppDB":
        return self.scheme.app

    @property
    def app_name(self) -> str:
        return f"{self.scheme.app.name} {self.scheme.name} {self.name}"

    @property
    def enforces_bundle_id(self) -> bool:
        return (self.bundle_id or "") not in WILDCARD_BUNDLE_IDS

    def bundle_id_matched(self, bundle_id: Optional[str]) -> bool:
        """Case-sensitive exact match, always true when not enforcing."""
        if not self.enforces_bundle_id:
            return True
        return bundle_id == self.bundle_id

    def __repr__(self) -> str:
        return f"<Channel(slug={self.slug}, device_type={self.device_type})>"


class DeviceDB(Base):
    """
    An installation target identifier referenced by ad-hoc iOS releases.
    """
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    udid: Mapped[str] = mapped_column(
        String(128), unique=True, nullable=False, index=True
    )
    name: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Device(udid={self.udid})>"


class ReleaseDB(Base):
    """
    One uploaded build within a channel.

    ``version`` is assigned at ingestion, unique within the channel and
    strictly increasing in creation order. It is never renumbered.
    """
    __tablename__ = "releases"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    channel_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    version: Mapped[int] = mapped_column(
        Integer, nullable=False
    )
    name: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )  # Display name reported by the package
    bundle_id: Mapped[str] = mapped_column(
        String(256), nullable=False
    )
    release_version: Mapped[str] = mapped_column(
        String(64), nullable=False
    )  # e.g. "1.2.0"
    build_version: Mapped[str] = mapped_column(
        String(64), nullable=False
    )  # e.g. "120"
    release_type: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )  # debug / adhoc / inhouse / release or free-form from CI
    source: Mapped[str] = mapped_column(
        String(64), default="API", nullable=False
    )  # API / Web / jenkins ...
    branch: Mapped[Optional[str]] = mapped_column(
        String(256), nullable=True
    )
    git_commit: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    ci_url: Mapped[Optional[str]] = mapped_column(
        String(1024), nullable=True
    )
    changelog: Mapped[Optional[Any]] = mapped_column(
        JSONType, nullable=True
    )  # [{"message": ...}, ...]
    custom_fields: Mapped[Optional[Any]] = mapped_column(
        JSONType, nullable=True
    )
    device: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )  # iPhone / iPad / Universal / Android / macOS
    file: Mapped[str] = mapped_column(
        String(512), nullable=False
    )  # Storage key of the package
    file_size: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    icon: Mapped[Optional[str]] = mapped_column(
        String(512), nullable=True
    )  # Storage key of the icon
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    channel: Mapped["ChannelDB"] = relationship("ChannelDB", lazy="joined")
    devices: Mapped[List["DeviceDB"]] = relationship(
        "DeviceDB", secondary=release_devices, lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint("channel_id", "version", name="uq_release_channel_version"),
        Index("ix_releases_channel_id", "channel_id"),
    )

    @property
    def app_name(self) -> str:
        return self.channel.app_name

    @property
    def size(self) -> Optional[int]:
        return self.file_size

    @property
    def short_git_commit(self) -> Optional[str]:
        if not self.git_commit:
            return None
        return self.git_commit[:9]

    @property
    def file_extname(self) -> str:
        device_type = (self.channel.device_type or "").lower()
        if device_type in ("iphone", "ipad", "ios", "universal"):
            return ".ipa"
        if device_type == "android":
            return ".apk"
        if device_type == "macos":
            return Path(self.file).suffix or ".zip"
        return ".ipa_or_apk.zip"

    @property
    def download_filename(self) -> str:
        parts = [
            self.channel.slug,
            self.release_version,
            self.build_version,
            self.created_at.strftime("%Y%m%d%H%M"),
        ]
        return "_".join(parts) + self.file_extname

    def changelog_list(self, use_default_changelog: bool = True) -> list:
        return changelog_list(self.changelog, use_default_changelog)

    def __repr__(self) -> str:
        return f"<Release(channel_id={self.channel_id}, version={self.version})>"


class WebHookDB(Base):
    """
    A notification target. Attached to one or more channels; each event
    flag opts the hook into that event.
    """
    __tablename__ = "web_hooks"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    url: Mapped[str] = mapped_column(
        String(1024), nullable=False
    )
    body: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True
    )  # Optional string.Template payload, JSON payload when empty
    upload_events: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    changelog_events: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def subscribes_to(self, event: str) -> bool:
        return bool(getattr(self, event, False))

    def __repr__(self) -> str:
        return f"<WebHook(url={self.url})>"
