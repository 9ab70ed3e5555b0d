"""
Asset audit log service.
Append-only log of asset mutations with integrity hashing.
"""
import hashlib
import json
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, Iterable, List

import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import AssetLog, utcnow, as_utc
from ..config import settings


logger = structlog.get_logger(__name__)

TRACKED_FIELDS = ("name", "vin", "make", "model", "year", "color", "odometer", "mileage", "state")

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"


def snapshot(asset: Any) -> Dict[str, Any]:
    """Tracked field values of an asset row (or any object exposing them)."""
    return {field: getattr(asset, field, None) for field in TRACKED_FIELDS}


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries, restricted to tracked fields.

    Args:
        before: Before state
        after: After state

    Returns:
        Dict with from/to values for changed fields
    """
    diff = {}
    for key in TRACKED_FIELDS:
        if key not in before and key not in after:
            continue
        before_val = before.get(key)
        after_val = after.get(key)

        if before_val != after_val:
            diff[key] = {
                "from": before_val,
                "to": after_val,
            }

    return diff


def _integrity_hash(entry: AssetLog, secret: str) -> str:
    canonical_data = {
        "asset_id": str(entry.asset_id),
        "actor_id": str(entry.actor_id) if entry.actor_id else None,
        "actor_role": entry.actor_role,
        "action": entry.action,
        "changed_fields": entry.changed_fields,
        "new_values": entry.new_values,
        "description": entry.description,
        "notification_type": entry.notification_type,
        "occurred_at": as_utc(entry.occurred_at).isoformat(),
    }
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def _secret(secret: Optional[str]) -> str:
    return secret or settings.audit_secret or settings.jwt_secret


def record(
    db: Session,
    asset_id: uuid.UUID,
    actor_id: Optional[uuid.UUID],
    action: str,
    before: Optional[Dict],
    after: Dict,
    description: Optional[str] = None,
    actor_role: Optional[str] = None,
    notification_type: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> Optional[AssetLog]:
    """
    Append an audit entry for an asset mutation.

    An "updated" call whose before/after agree on every tracked field writes
    nothing. A store failure is logged and rolled back; the asset mutation
    that triggered it has already been committed and stands.

    Returns:
        The written AssetLog, or None when nothing was written
    """
    if action not in (ACTION_CREATED, ACTION_UPDATED):
        raise ValueError(f"Unsupported audit action: {action}")

    if action == ACTION_CREATED:
        changed_fields = None
        old_values = None
        new_values = {k: after.get(k) for k in TRACKED_FIELDS}
    else:
        changed_fields = compute_diff(before or {}, after)
        if not changed_fields:
            return None
        old_values = {k: v["from"] for k, v in changed_fields.items()}
        new_values = {k: v["to"] for k, v in changed_fields.items()}

    entry = AssetLog(
        id=uuid.uuid4(),
        asset_id=asset_id,
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        changed_fields=changed_fields,
        old_values=old_values,
        new_values=new_values,
        description=description,
        notification_type=notification_type,
        occurred_at=occurred_at or utcnow(),
    )
    entry.integrity_hash = _integrity_hash(entry, _secret(None))

    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("audit_log_append_failed", asset_id=str(asset_id), action=action, error=str(e))
        return None

    db.refresh(entry)
    return entry


def verify_integrity(entry: AssetLog, secret: Optional[str] = None) -> bool:
    """True if the stored hash still matches the entry's content."""
    if not entry.integrity_hash:
        return False
    return entry.integrity_hash == _integrity_hash(entry, _secret(secret))


def list_asset_logs(
    db: Session,
    asset_id: uuid.UUID,
    action: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
) -> List[AssetLog]:
    """Audit entries for one asset, newest first."""
    query = db.query(AssetLog).filter(AssetLog.asset_id == asset_id)

    if action:
        query = query.filter(AssetLog.action == action)

    query = query.order_by(AssetLog.occurred_at.desc())
    return query.limit(limit).offset(offset).all()


def latest_update_timestamps(db: Session, asset_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, datetime]:
    """
    Latest "updated" timestamp per asset in one grouped query.
    Assets without an update entry are absent from the result.
    """
    ids = list(asset_ids)
    if not ids:
        return {}
    rows = (
        db.query(AssetLog.asset_id, func.max(AssetLog.occurred_at))
        .filter(AssetLog.action == ACTION_UPDATED, AssetLog.asset_id.in_(ids))
        .group_by(AssetLog.asset_id)
        .all()
    )
    return {asset_id: as_utc(last) for asset_id, last in rows if last is not None}


def latest_update_for_asset(db: Session, asset_id: uuid.UUID) -> Optional[AssetLog]:
    return (
        db.query(AssetLog)
        .filter(AssetLog.asset_id == asset_id, AssetLog.action == ACTION_UPDATED)
        .order_by(AssetLog.occurred_at.desc())
        .first()
    )
