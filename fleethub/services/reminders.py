"""
Maintenance reminder scheduling and poll-based firing.

A reminder is due once `now >= next_due_at`. Firing a recurring reminder moves
`next_due_at` forward by whole intervals until it lies after `now`; firing a
one-time reminder clears it, which makes the reminder terminal.
"""
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Union

import pytz
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Asset, Notification, Reminder, User, utcnow, as_utc
from .errors import DependencyError, NotFoundError, ValidationError


logger = structlog.get_logger(__name__)

# key -> display label; labels are what gets stored
MAINTENANCE_TYPES = {
    "oil_change": "Oil Change",
    "tire_rotation": "Tire Rotation",
    "tire_replacement": "Tire Replacement",
    "tire_rotation_replacement": "Tire Rotation / Replacement",
    "general_inspection": "General Inspection",
    "fluids": "Fluids",
    "belts": "Belts",
    "lights": "Lights",
    "battery": "Battery",
    "brake_inspection": "Brake Inspection",
    "compliance_inspection": "Compliance Inspection",
    "custom_maintenance": "Custom Maintenance",
}

# Older mobile builds submit these longer labels
_LEGACY_LABELS = {
    "compliance inspection (dot, state, cdl-related)": "Compliance Inspection",
    "custom (admin-created)": "Custom Maintenance",
    "custom": "Custom Maintenance",
}

_LABEL_LOOKUP = {label.lower(): label for label in MAINTENANCE_TYPES.values()}

REMINDER_DUE = "reminder_due"


@dataclass
class FiredReminder:
    reminder: Reminder
    notification: Notification


def resolve_maintenance_type(value: Optional[str]) -> str:
    """Map a key or label (any case) to its display label."""
    if not value or not value.strip():
        raise ValidationError("reminder type is required")
    raw = value.strip()
    if raw in MAINTENANCE_TYPES:
        return MAINTENANCE_TYPES[raw]
    lowered = raw.lower()
    if lowered in _LABEL_LOOKUP:
        return _LABEL_LOOKUP[lowered]
    if lowered in _LEGACY_LABELS:
        return _LEGACY_LABELS[lowered]
    raise ValidationError(f"Unknown reminder type: {value}")


def _parse_time(value: Union[str, time, None]) -> time:
    if value is None or value == "":
        return time(0, 0, 0)
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(f"Invalid time: {value!r}, expected HH:MM")


def combine_schedule(
    schedule_date: Union[str, date, datetime, None],
    at_time: Union[str, time, None] = None,
    tz_name: Optional[str] = None,
) -> datetime:
    """Combine a calendar date and a wall-clock time into a UTC instant."""
    tz = pytz.timezone(tz_name or settings.tz_default)

    if schedule_date is None or schedule_date == "":
        raise ValidationError("schedule date is required")

    if isinstance(schedule_date, str):
        raw = schedule_date.strip()
        try:
            schedule_date = date.fromisoformat(raw)
        except ValueError:
            try:
                schedule_date = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError(f"Invalid schedule date: {raw!r}")

    if isinstance(schedule_date, datetime):
        if at_time is None:
            if schedule_date.tzinfo is None:
                return tz.localize(schedule_date).astimezone(timezone.utc)
            return schedule_date.astimezone(timezone.utc)
        schedule_date = schedule_date.date()

    local = datetime.combine(schedule_date, _parse_time(at_time))
    return tz.localize(local).astimezone(timezone.utc)


def _validate_interval(interval_days) -> int:
    if isinstance(interval_days, bool) or not isinstance(interval_days, int):
        raise ValidationError("interval_days must be an integer")
    if interval_days < 0:
        raise ValidationError("interval_days must be 0 or greater")
    return interval_days


def next_occurrence(scheduled_at: datetime, interval_days: int) -> Optional[datetime]:
    """Next due instant after a firing at `scheduled_at`; None for one-time reminders."""
    if interval_days <= 0:
        return None
    return scheduled_at + timedelta(days=interval_days)


def next_due_after(due_at: datetime, interval_days: int, now: datetime) -> Optional[datetime]:
    """First occurrence strictly after `now`, skipping any that were missed."""
    if interval_days <= 0:
        return None
    step = timedelta(days=interval_days)
    missed = (now - due_at) // step + 1 if now >= due_at else 1
    return due_at + step * missed


def is_due(reminder: Reminder, now: Optional[datetime] = None) -> bool:
    if reminder.next_due_at is None:
        return False
    return as_utc(now or utcnow()) >= as_utc(reminder.next_due_at)


def schedule(
    db: Session,
    asset_id: Optional[uuid.UUID],
    reminder_type_name: str,
    schedule_date: Union[str, date, datetime],
    time: Union[str, time, None] = None,
    interval_days: int = 0,
    assignee_id: Optional[uuid.UUID] = None,
    created_by: Optional[uuid.UUID] = None,
    tz_name: Optional[str] = None,
) -> Reminder:
    """
    Create a maintenance reminder for an asset.

    Args:
        db: Database session
        asset_id: Asset the reminder belongs to
        reminder_type_name: Maintenance type key or label
        schedule_date: Calendar date (YYYY-MM-DD)
        time: Optional wall-clock time (HH:MM), default midnight
        interval_days: 0 for one-time, N to repeat every N days
        assignee_id: Optional user to notify when it fires
        created_by: Admin scheduling the reminder

    Returns:
        Persisted Reminder
    """
    if asset_id is None:
        raise ValidationError("asset_id is required")
    type_name = resolve_maintenance_type(reminder_type_name)
    scheduled_at = combine_schedule(schedule_date, time, tz_name)
    interval = _validate_interval(interval_days)

    asset = db.get(Asset, asset_id)
    if asset is None:
        raise NotFoundError("Asset not found")
    if assignee_id is not None and db.get(User, assignee_id) is None:
        raise NotFoundError("Assignee not found")

    local = scheduled_at.astimezone(pytz.timezone(tz_name or settings.tz_default))
    reminder = Reminder(
        asset_id=asset_id,
        assignee_id=assignee_id,
        reminder_types=[{
            "name": type_name,
            "active": True,
            "schedule_date": scheduled_at.isoformat(),
            "time": local.strftime("%H:%M:%S"),
            "interval_days": interval,
        }],
        primary_schedule_date=scheduled_at,
        interval_days=interval,
        next_due_at=scheduled_at,
        created_by=created_by,
    )
    try:
        db.add(reminder)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DependencyError("Failed to save reminder") from e

    db.refresh(reminder)
    logger.info("reminder_scheduled", reminder_id=str(reminder.id), asset_id=str(asset_id), interval_days=interval)
    return reminder


def list_reminders(db: Session, asset_id: uuid.UUID) -> List[Reminder]:
    return (
        db.query(Reminder)
        .filter(Reminder.asset_id == asset_id)
        .order_by(Reminder.primary_schedule_date)
        .all()
    )


def _type_label(reminder: Reminder) -> str:
    for entry in reminder.reminder_types or []:
        if entry.get("active", True) and entry.get("name"):
            return entry["name"]
    return "maintenance"


def fire_due_reminders(
    db: Session,
    now: Optional[datetime] = None,
    owner_id: Optional[uuid.UUID] = None,
) -> List[FiredReminder]:
    """
    Fire every reminder whose next due instant has passed.

    Each fired reminder produces one "reminder_due" notification for its
    assignee, or for the asset owner when unassigned. A reminder fires at
    most once per due instant, even across overlapping polls. Failures are
    logged per reminder and skipped.
    `owner_id` limits the poll to one admin's fleet.
    """
    now = as_utc(now or utcnow())
    query = db.query(Reminder).filter(Reminder.next_due_at.isnot(None), Reminder.next_due_at <= now)
    if owner_id is not None:
        query = query.join(Asset, Reminder.asset_id == Asset.id).filter(Asset.owner_id == owner_id)
    due = query.order_by(Reminder.next_due_at).all()

    fired = []
    for reminder in due:
        if not is_due(reminder, now):
            continue
        reminder_id = reminder.id
        asset = reminder.asset
        seen = reminder.next_due_at
        due_at = as_utc(seen)
        notification = Notification(
            user_id=reminder.assignee_id or asset.owner_id,
            type=REMINDER_DUE,
            message=f"Maintenance due: {asset.name} requires {_type_label(reminder)}",
            asset_id=asset.id,
            read=False,
        )
        try:
            # Claim the instant this poll saw; an overlapping poll that moved it already wins
            claimed = (
                db.query(Reminder)
                .filter(Reminder.id == reminder_id, Reminder.next_due_at == seen)
                .update(
                    {
                        Reminder.next_due_at: next_due_after(due_at, reminder.interval_days, now),
                        Reminder.last_fired_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if claimed != 1:
                db.rollback()
                logger.info("reminder_already_fired", reminder_id=str(reminder_id))
                continue
            db.add(notification)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("reminder_fire_failed", reminder_id=str(reminder_id), error=str(e))
            continue
        fired.append(FiredReminder(reminder=reminder, notification=notification))

    logger.info("reminders_fired", due=len(due), fired=len(fired))
    return fired
