import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to an aware UTC datetime.

    SQLite hands DateTime(timezone=True) columns back naive; every value we
    write is UTC, so a naive value is taken to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =====================
# Accounts
# =====================

class User(Base):
    """Admins and the crew users linked to them"""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True)
    phone_no: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user", index=True)  # admin|user
    # Crew users point at the admin that created them
    linked_admin_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    push_tokens = relationship("PushToken", back_populates="user", cascade="all, delete-orphan")


class PushToken(Base):
    """Expo push tokens registered by the mobile app"""
    __tablename__ = "push_tokens"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="push_tokens")


# =====================
# Fleet domain
# =====================

class Asset(Base):
    """Tracked fleet vehicle"""
    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = uuid_pk()
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    vin: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    make: Mapped[Optional[str]] = mapped_column(String(100))
    model: Mapped[Optional[str]] = mapped_column(String(255))
    year: Mapped[Optional[int]] = mapped_column(Integer)
    color: Mapped[Optional[str]] = mapped_column(String(50))
    odometer: Mapped[Optional[int]] = mapped_column(Integer)
    mileage: Mapped[Optional[int]] = mapped_column(Integer)
    state: Mapped[Optional[str]] = mapped_column(String(2))  # Two-letter jurisdiction code
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))

    # Relationships
    logs = relationship("AssetLog", back_populates="asset", order_by="AssetLog.occurred_at.desc()")
    reminders = relationship("Reminder", back_populates="asset", order_by="Reminder.primary_schedule_date")

    # Concurrent UPDATEs against a stale version raise StaleDataError
    __mapper_args__ = {"version_id_col": version}


class AssetLog(Base):
    """Append-only log of asset mutations"""
    __tablename__ = "asset_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    asset_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(20))  # admin|user
    action: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # created|updated
    changed_fields: Mapped[Optional[dict]] = mapped_column(JSON)  # {field: {from, to}}
    old_values: Mapped[Optional[dict]] = mapped_column(JSON)
    new_values: Mapped[Optional[dict]] = mapped_column(JSON)
    description: Mapped[Optional[str]] = mapped_column(Text)
    notification_type: Mapped[Optional[str]] = mapped_column(String(100), index=True)  # Maintenance type tag
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    asset = relationship("Asset", back_populates="logs")

    __table_args__ = (
        Index('idx_asset_logs_asset_action_time', 'asset_id', 'action', 'occurred_at'),
    )


class Reminder(Base):
    """Scheduled maintenance reminder, one-time or recurring"""
    __tablename__ = "reminders"

    id: Mapped[uuid.UUID] = uuid_pk()
    asset_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True)
    assignee_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    # [{name, active, schedule_date, time, interval_days}]
    reminder_types: Mapped[list] = mapped_column(JSON, nullable=False)
    primary_schedule_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    interval_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 0 = one-time
    next_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)  # None once terminal
    last_fired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))

    asset = relationship("Asset", back_populates="reminders")


class Notification(Base):
    """In-app notification for a single recipient"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)  # asset_created|maintenance_reminder|reminder_due
    message: Mapped[str] = mapped_column(Text, nullable=False)
    asset_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("assets.id", ondelete="SET NULL"), index=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('idx_notifications_user_read', 'user_id', 'read'),
        Index('idx_notifications_asset_type_created', 'asset_id', 'type', 'created_at'),
    )
