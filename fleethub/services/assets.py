"""
Asset store operations.

Every committed mutation is followed by its audit entry, then by the
notification side effects. Only the asset write itself can fail the call.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import BackgroundTasks
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..models.models import Asset, User, utcnow
from . import audit, notifications
from .errors import ConflictError, DependencyError, NotFoundError, ValidationError
from .reminders import resolve_maintenance_type


logger = structlog.get_logger(__name__)

NUMERIC_FIELDS = ("year", "odometer", "mileage")


def owner_scope(actor: User) -> Optional[uuid.UUID]:
    """Owner id whose fleet the actor sees: admins their own, crew their admin's."""
    if actor.role == "admin":
        return actor.id
    return actor.linked_admin_id


def _validate(values: Dict[str, Any], creating: bool) -> Dict[str, Any]:
    cleaned = dict(values)
    for key in ("name", "vin"):
        if key in cleaned and isinstance(cleaned[key], str):
            cleaned[key] = cleaned[key].strip()
    if creating or "name" in cleaned:
        if not cleaned.get("name"):
            raise ValidationError("name is required")
    if creating and not cleaned.get("vin"):
        raise ValidationError("vin is required")
    for key in NUMERIC_FIELDS:
        value = cleaned.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{key} must be a non-negative integer")
    if cleaned.get("state"):
        cleaned["state"] = cleaned["state"].strip().upper()
    unknown = set(cleaned) - set(audit.TRACKED_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown asset fields: {', '.join(sorted(unknown))}")
    return cleaned


def get_asset_for(db: Session, asset_id: uuid.UUID, actor: User) -> Asset:
    """Asset visible to the actor, else NotFoundError."""
    asset = db.get(Asset, asset_id)
    if asset is None or asset.owner_id != owner_scope(actor):
        raise NotFoundError("Asset not found")
    return asset


def list_assets(db: Session, owner_id: Optional[uuid.UUID], search: Optional[str] = None, limit: Optional[int] = 500) -> List[Asset]:
    """Assets of one owner, newest first. limit=None returns the whole fleet."""
    if owner_id is None:
        return []
    query = db.query(Asset).filter(Asset.owner_id == owner_id)
    if search:
        search_term = f"%{search}%"
        query = query.filter(
            or_(
                Asset.name.ilike(search_term),
                Asset.vin.ilike(search_term),
                Asset.make.ilike(search_term),
                Asset.model.ilike(search_term),
            )
        )
    query = query.order_by(Asset.created_at.desc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def create_asset(
    db: Session,
    values: Dict[str, Any],
    actor: User,
    background: Optional[BackgroundTasks] = None,
    now: Optional[datetime] = None,
) -> Asset:
    """Create an asset owned by the acting admin and fan out its notifications."""
    if actor.role != "admin":
        raise ValidationError("Only admins can create assets")
    cleaned = _validate(values, creating=True)
    now = now or utcnow()

    asset = Asset(**cleaned, owner_id=actor.id, created_by=actor.id, created_at=now)
    try:
        db.add(asset)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DependencyError("Failed to create asset") from e
    db.refresh(asset)

    audit.record(
        db,
        asset.id,
        actor.id,
        audit.ACTION_CREATED,
        None,
        audit.snapshot(asset),
        description=f'Admin created asset "{asset.name}"',
        actor_role=actor.role,
        occurred_at=now,
    )
    # Mileage e-mail goes out even if the crew fan-out fails
    notifications.maybe_alert_mileage(asset, actor, background)
    notifications.on_asset_created(db, asset, actor.id, background)

    logger.info("asset_created", asset_id=str(asset.id), owner_id=str(actor.id))
    return asset


def update_asset(
    db: Session,
    asset_id: uuid.UUID,
    changes: Dict[str, Any],
    actor: User,
    expected_version: Optional[int] = None,
    notification_type: Optional[str] = None,
    background: Optional[BackgroundTasks] = None,
    now: Optional[datetime] = None,
) -> Asset:
    """
    Apply an edit and log the fields that actually changed.

    A no-op edit writes nothing. A stale `expected_version`, or a concurrent
    writer winning the row, raises ConflictError.
    """
    asset = get_asset_for(db, asset_id, actor)
    cleaned = _validate(changes, creating=False)
    tag = resolve_maintenance_type(notification_type) if notification_type else None

    if expected_version is not None and asset.version != expected_version:
        raise ConflictError(f"Asset is at version {asset.version}, not {expected_version}")

    before = audit.snapshot(asset)
    for key, value in cleaned.items():
        setattr(asset, key, value)
    after = audit.snapshot(asset)

    if not audit.compute_diff(before, after):
        return asset

    now = now or utcnow()
    asset.updated_at = now
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConflictError("Asset was modified by someone else") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise DependencyError("Failed to update asset") from e
    db.refresh(asset)

    role_label = "Admin" if actor.role == "admin" else "User"
    audit.record(
        db,
        asset.id,
        actor.id,
        audit.ACTION_UPDATED,
        before,
        after,
        description=f'{role_label} updated asset "{asset.name}"',
        actor_role=actor.role,
        notification_type=tag,
        occurred_at=now,
    )
    if "mileage" in cleaned:
        notifications.maybe_alert_mileage(asset, actor, background)

    logger.info("asset_updated", asset_id=str(asset.id), version=asset.version)
    return asset
