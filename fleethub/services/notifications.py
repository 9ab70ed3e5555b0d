"""
Notification fan-out.

Notification rows are the durable record and are written in the caller's
transaction. Push and e-mail delivery run afterwards as best-effort jobs,
either on FastAPI's BackgroundTasks or inline when no task queue is given;
their failures are logged and never touch the rows already written.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Any

import structlog
from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..models.models import Asset, Notification, User, utcnow, as_utc
from . import audit, overdue
from .errors import DependencyError, NotFoundError
from .mailer import MaintenanceAlertMailer
from .push import PushDispatcher, PushResult


logger = structlog.get_logger(__name__)

ASSET_CREATED = "asset_created"
MAINTENANCE_REMINDER = "maintenance_reminder"
DEFAULT_MAINTENANCE_TYPE = "General Inspection"


@dataclass
class SweepResult:
    assets_overdue: int = 0
    notifications_created: int = 0
    assets_skipped: int = 0
    errors: List[str] = field(default_factory=list)


def session_factory_for(db: Session) -> Callable[[], Session]:
    """Factory for sessions on the same engine, for jobs that outlive the request."""
    return sessionmaker(bind=db.get_bind(), autoflush=False, autocommit=False, future=True)


def _run(background: Optional[BackgroundTasks], func: Callable, *args, **kwargs) -> None:
    if background is not None:
        background.add_task(func, *args, **kwargs)
    else:
        func(*args, **kwargs)


# ---------- delivery jobs ----------

def dispatch_push(
    session_factory: Callable[[], Session],
    user_ids: List[uuid.UUID],
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
) -> Optional[PushResult]:
    db = session_factory()
    try:
        result = PushDispatcher(db).send(user_ids, title, body, data)
        logger.info("push_dispatched", recipients=len(user_ids), tokens_sent=result.tokens_sent, success=result.success)
        return result
    except (DependencyError, SQLAlchemyError) as e:
        logger.warning("push_dispatch_failed", recipients=len(user_ids), error=str(e))
        return None
    except Exception:
        logger.exception("push_dispatch_failed", recipients=len(user_ids))
        return None
    finally:
        db.close()


def dispatch_mileage_alert(
    asset_id: uuid.UUID,
    asset_name: str,
    mileage: Optional[int],
    recipient_email: Optional[str],
    first_name: Optional[str] = None,
) -> bool:
    try:
        return MaintenanceAlertMailer().send(asset_id, asset_name, mileage, recipient_email, first_name)
    except DependencyError as e:
        logger.warning("mileage_alert_failed", asset_id=str(asset_id), error=str(e))
        return False
    except Exception:
        logger.exception("mileage_alert_failed", asset_id=str(asset_id))
        return False


def maybe_alert_mileage(asset: Asset, actor: Optional[User], background: Optional[BackgroundTasks] = None) -> bool:
    """Queue the high-mileage e-mail if the asset is over the threshold."""
    if not MaintenanceAlertMailer().should_alert(asset.mileage):
        return False
    _run(
        background,
        dispatch_mileage_alert,
        asset.id,
        asset.name,
        asset.mileage,
        actor.email if actor else None,
        actor.first_name if actor else None,
    )
    return True


# ---------- fan-out ----------

def linked_crew(db: Session, admin_id: uuid.UUID) -> List[User]:
    """Active crew users created by the given admin."""
    return (
        db.query(User)
        .filter(
            User.linked_admin_id == admin_id,
            User.role == "user",
            User.is_active.is_(True),
        )
        .all()
    )


def on_asset_created(
    db: Session,
    asset: Asset,
    creating_admin_id: uuid.UUID,
    background: Optional[BackgroundTasks] = None,
) -> List[Notification]:
    """
    Notify every crew user linked to the admin that created the asset.

    Args:
        db: Database session
        asset: The newly created asset
        creating_admin_id: Admin who created it
        background: Task queue for push delivery; runs inline when None

    Returns:
        The notification rows written, one per recipient
    """
    try:
        recipients = linked_crew(db, creating_admin_id)
    except SQLAlchemyError as e:
        db.rollback()
        raise DependencyError("Failed to load notification recipients") from e

    if not recipients:
        return []

    notifications = [
        Notification(
            user_id=user.id,
            type=ASSET_CREATED,
            message=f'New asset "{asset.name}" has been created by your admin.',
            asset_id=asset.id,
            read=False,
        )
        for user in recipients
    ]
    try:
        db.add_all(notifications)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DependencyError(f"Asset {asset.id} was saved but its notifications were not") from e

    _run(
        background,
        dispatch_push,
        session_factory_for(db),
        [user.id for user in recipients],
        "New Asset Created",
        f"{asset.name} has been added to your fleet",
        {"type": ASSET_CREATED, "asset_id": str(asset.id)},
    )
    logger.info("asset_created_fanout", asset_id=str(asset.id), recipients=len(notifications))
    return notifications


def send_maintenance_reminders(
    db: Session,
    threshold_days: Optional[int] = None,
    now: Optional[datetime] = None,
    background: Optional[BackgroundTasks] = None,
    admin_id: Optional[uuid.UUID] = None,
) -> SweepResult:
    """
    Remind crews about their admins' overdue assets.
    Covers every active admin, or only `admin_id` when given.

    Users that already got a maintenance reminder for the same asset inside
    the dedupe window are skipped.
    """
    now = as_utc(now or utcnow())
    since = now - timedelta(hours=settings.reminder_dedupe_hours)
    result = SweepResult()

    query = db.query(User).filter(User.role == "admin", User.is_active.is_(True))
    if admin_id is not None:
        query = query.filter(User.id == admin_id)
    admins = query.all()
    for admin in admins:
        try:
            overdue_ids = overdue.find_overdue(db, admin.id, threshold_days, now)
        except DependencyError as e:
            logger.warning("maintenance_sweep_admin_failed", admin_id=str(admin.id), error=str(e))
            result.errors.append(f"Admin {admin.id}: {e.detail}")
            continue
        if not overdue_ids:
            continue
        result.assets_overdue += len(overdue_ids)

        crew = linked_crew(db, admin.id)
        if not crew:
            logger.info("maintenance_sweep_no_crew", admin_id=str(admin.id))
            continue
        crew_ids = [user.id for user in crew]

        for asset in overdue.hydrate(db, overdue_ids):
            latest = audit.latest_update_for_asset(db, asset.id)
            maintenance_type = (latest.notification_type if latest else None) or DEFAULT_MAINTENANCE_TYPE

            already = {
                row[0]
                for row in db.query(Notification.user_id).filter(
                    Notification.asset_id == asset.id,
                    Notification.type == MAINTENANCE_REMINDER,
                    Notification.created_at >= since,
                    Notification.user_id.in_(crew_ids),
                ).all()
            }
            targets = [user_id for user_id in crew_ids if user_id not in already]
            if not targets:
                result.assets_skipped += 1
                continue

            rows = [
                Notification(
                    user_id=user_id,
                    type=MAINTENANCE_REMINDER,
                    message=f"Maintenance reminder: {asset.name} requires {maintenance_type}",
                    asset_id=asset.id,
                    read=False,
                    created_at=now,
                )
                for user_id in targets
            ]
            try:
                db.add_all(rows)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning("maintenance_reminder_insert_failed", asset_id=str(asset.id), error=str(e))
                result.errors.append(f"Asset {asset.id}: {e}")
                continue

            result.notifications_created += len(rows)
            _run(
                background,
                dispatch_push,
                session_factory_for(db),
                targets,
                "Maintenance Reminder",
                f"{asset.name} is due for maintenance",
                {"type": MAINTENANCE_REMINDER, "asset_id": str(asset.id)},
            )

    logger.info(
        "maintenance_sweep_completed",
        assets_overdue=result.assets_overdue,
        notifications_created=result.notifications_created,
        assets_skipped=result.assets_skipped,
    )
    return result


# ---------- read state ----------

def list_notifications(db: Session, user_id: uuid.UUID, unread_only: bool = False, limit: int = 50) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read.is_(False))
    return query.order_by(Notification.created_at.desc()).limit(limit).all()


def unread_count(db: Session, user_id: uuid.UUID) -> int:
    return db.query(Notification).filter(Notification.user_id == user_id, Notification.read.is_(False)).count()


def mark_read(db: Session, notification_id: uuid.UUID, user_id: uuid.UUID) -> Notification:
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user_id,
    ).first()
    if not notification:
        raise NotFoundError("Notification not found")
    if not notification.read:
        notification.read = True
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise DependencyError("Failed to update notification") from e
        db.refresh(notification)
    return notification


def mark_all_read(db: Session, user_id: uuid.UUID) -> int:
    try:
        updated = (
            db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.read.is_(False))
            .update({Notification.read: True}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DependencyError("Failed to update notifications") from e
    return updated
