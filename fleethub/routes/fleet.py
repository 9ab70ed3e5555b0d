import uuid
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..auth.security import get_current_user, require_roles
from ..models.models import User, utcnow
from ..schemas.fleet import (
    AssetCreate,
    AssetUpdate,
    AssetResponse,
    AssetLogResponse,
    FleetHealthResponse,
    OverdueAssetsResponse,
    ReminderCreate,
    ReminderResponse,
    FiredRemindersResponse,
    MaintenanceSweepResponse,
)
from ..services import assets as asset_service
from ..services import audit, fleet_health, notifications, overdue, reminders
from ..services.errors import ValidationError

router = APIRouter(prefix="/fleet", tags=["fleet"])


# ---------- DASHBOARD ----------
@router.get("/health", response_model=FleetHealthResponse)
def get_fleet_health(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Health index and defect counts for the caller's fleet"""
    fleet = asset_service.list_assets(db, asset_service.owner_scope(user), limit=None)
    return FleetHealthResponse(**asdict(fleet_health.score(fleet)))


@router.get("/assets/overdue", response_model=OverdueAssetsResponse)
def list_overdue_assets(
    threshold_days: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Assets whose last recorded update is older than the threshold"""
    owner_id = asset_service.owner_scope(user)
    days = threshold_days if threshold_days is not None else settings.overdue_threshold_days
    now = utcnow()
    if owner_id is None:
        ids = set()
    else:
        ids = overdue.find_overdue(db, owner_id, days, now)
    hydrated = overdue.hydrate(db, ids)
    return OverdueAssetsResponse(
        threshold_days=days,
        cutoff=overdue.overdue_cutoff(days, now),
        count=len(hydrated),
        assets=hydrated,
    )


# ---------- ASSETS ----------
@router.get("/assets", response_model=List[AssetResponse])
def list_assets(
    search: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """List the caller's fleet assets"""
    return asset_service.list_assets(db, asset_service.owner_scope(user), search=search)


@router.get("/assets/{asset_id}", response_model=AssetResponse)
def get_asset(
    asset_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Get asset detail"""
    return asset_service.get_asset_for(db, asset_id, user)


@router.post("/assets", response_model=AssetResponse, status_code=201)
def create_asset(
    asset: AssetCreate,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin")),
):
    """Create a new asset and notify the admin's crew"""
    return asset_service.create_asset(db, asset.model_dump(), user, background)


@router.put("/assets/{asset_id}", response_model=AssetResponse)
def update_asset(
    asset_id: uuid.UUID,
    asset_update: AssetUpdate,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Update an asset; only changed fields are logged"""
    update_data = asset_update.model_dump(exclude_unset=True)
    expected_version = update_data.pop("expected_version", None)
    notification_type = update_data.pop("notification_type", None)
    return asset_service.update_asset(
        db,
        asset_id,
        update_data,
        user,
        expected_version=expected_version,
        notification_type=notification_type,
        background=background,
    )


@router.get("/assets/{asset_id}/logs", response_model=List[AssetLogResponse])
def get_asset_logs(
    asset_id: uuid.UUID,
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Get audit logs for an asset"""
    if action is not None and action not in (audit.ACTION_CREATED, audit.ACTION_UPDATED):
        raise ValidationError(f"Unknown action: {action}")
    asset_service.get_asset_for(db, asset_id, user)
    return audit.list_asset_logs(db, asset_id, action=action, limit=limit, offset=offset)


# ---------- REMINDERS ----------
@router.post("/assets/{asset_id}/reminders", response_model=ReminderResponse, status_code=201)
def create_reminder(
    asset_id: uuid.UUID,
    payload: ReminderCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin")),
):
    """Schedule a maintenance reminder for an asset"""
    asset_service.get_asset_for(db, asset_id, user)
    return reminders.schedule(
        db,
        asset_id,
        payload.reminder_type,
        payload.schedule_date,
        payload.time,
        payload.interval_days,
        payload.assignee_id,
        created_by=user.id,
    )


@router.get("/assets/{asset_id}/reminders", response_model=List[ReminderResponse])
def get_asset_reminders(
    asset_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Get reminders for an asset"""
    asset_service.get_asset_for(db, asset_id, user)
    return reminders.list_reminders(db, asset_id)


@router.post("/reminders/fire-due", response_model=FiredRemindersResponse)
def fire_due_reminders(
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin")),
):
    """Fire every due reminder in the caller's fleet"""
    fired = reminders.fire_due_reminders(db, owner_id=user.id)
    for item in fired:
        background.add_task(
            notifications.dispatch_push,
            notifications.session_factory_for(db),
            [item.notification.user_id],
            "Maintenance Due",
            item.notification.message,
            {"type": reminders.REMINDER_DUE, "asset_id": str(item.reminder.asset_id)},
        )
    return FiredRemindersResponse(fired=len(fired), reminders=[item.reminder for item in fired])


# ---------- MAINTENANCE SWEEP ----------
@router.post("/maintenance-sweep", response_model=MaintenanceSweepResponse)
def run_maintenance_sweep(
    background: BackgroundTasks,
    threshold_days: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin")),
):
    """Send maintenance reminders for the caller's overdue assets"""
    result = notifications.send_maintenance_reminders(db, threshold_days, background=background, admin_id=user.id)
    return MaintenanceSweepResponse(
        assets_overdue=result.assets_overdue,
        notifications_created=result.notifications_created,
        assets_skipped=result.assets_skipped,
        errors=result.errors,
    )
