"""
Overdue detection.

An asset is overdue when its most recent "updated" audit entry falls on or
before the end of the local day `threshold_days` before today. Assets that
were never updated are not overdue.
"""
import uuid
from datetime import datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

import pytz
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Asset, utcnow, as_utc
from . import audit
from .errors import DependencyError, ValidationError


logger = structlog.get_logger(__name__)


def overdue_cutoff(threshold_days: int, now: Optional[datetime] = None, tz_name: Optional[str] = None) -> datetime:
    """End of the local day `threshold_days` before today, as a UTC instant."""
    tz = pytz.timezone(tz_name or settings.tz_default)
    local_now = as_utc(now or utcnow()).astimezone(tz)
    cutoff_day = local_now.date() - timedelta(days=threshold_days)
    cutoff_local = tz.localize(datetime.combine(cutoff_day, time.max))
    return cutoff_local.astimezone(timezone.utc)


def _latest_updates(db: Session, asset_ids: List[uuid.UUID]) -> Dict[uuid.UUID, datetime]:
    try:
        return audit.latest_update_timestamps(db, asset_ids)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("overdue_batch_lookup_failed", assets=len(asset_ids), error=str(e))

    # Batched read failed: look each asset up on its own so one bad row
    # cannot sink the whole report
    result = {}
    for asset_id in asset_ids:
        try:
            entry = audit.latest_update_for_asset(db, asset_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("overdue_lookup_failed", asset_id=str(asset_id), error=str(e))
            continue
        if entry is not None:
            result[asset_id] = as_utc(entry.occurred_at)
    return result


def find_overdue(
    db: Session,
    owner_id: uuid.UUID,
    threshold_days: Optional[int] = None,
    now: Optional[datetime] = None,
    tz_name: Optional[str] = None,
) -> Set[uuid.UUID]:
    """Ids of the owner's assets whose last update is at or before the cutoff."""
    if threshold_days is None:
        threshold_days = settings.overdue_threshold_days
    if threshold_days < 0:
        raise ValidationError("threshold_days must be 0 or greater")

    cutoff = overdue_cutoff(threshold_days, now, tz_name)

    try:
        asset_ids = [row[0] for row in db.query(Asset.id).filter(Asset.owner_id == owner_id).all()]
    except SQLAlchemyError as e:
        db.rollback()
        raise DependencyError("Failed to load assets") from e

    last_updates = _latest_updates(db, asset_ids)
    overdue = {asset_id for asset_id, last in last_updates.items() if last <= cutoff}
    logger.info(
        "overdue_scan_completed",
        owner_id=str(owner_id),
        assets=len(asset_ids),
        overdue=len(overdue),
        cutoff=cutoff.isoformat(),
    )
    return overdue


def hydrate(db: Session, asset_ids: Iterable[uuid.UUID]) -> List[Asset]:
    ids = list(asset_ids)
    if not ids:
        return []
    return db.query(Asset).filter(Asset.id.in_(ids)).order_by(Asset.name).all()
