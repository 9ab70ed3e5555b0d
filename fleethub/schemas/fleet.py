import uuid
from datetime import datetime
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


def _strip_required(value: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError("must not be empty")
    return value


def _normalize_state(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().upper()
    if not value:
        return None
    if len(value) != 2 or not value.isalpha():
        raise ValueError("state must be a two-letter code")
    return value


# Asset Schemas
class AssetBase(BaseModel):
    name: str
    vin: str
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = Field(default=None, ge=0)
    color: Optional[str] = None
    odometer: Optional[int] = Field(default=None, ge=0)
    mileage: Optional[int] = Field(default=None, ge=0)
    state: Optional[str] = None

    @field_validator("name", "vin")
    @classmethod
    def _required(cls, v):
        return _strip_required(v)

    @field_validator("state")
    @classmethod
    def _state(cls, v):
        return _normalize_state(v)


class AssetCreate(AssetBase):
    pass


class AssetUpdate(BaseModel):
    name: Optional[str] = None
    vin: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = Field(default=None, ge=0)
    color: Optional[str] = None
    odometer: Optional[int] = Field(default=None, ge=0)
    mileage: Optional[int] = Field(default=None, ge=0)
    state: Optional[str] = None
    # Optimistic concurrency: reject the edit if the asset moved past this version
    expected_version: Optional[int] = None
    # Maintenance type this edit relates to, e.g. "oil_change"
    notification_type: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _name(cls, v):
        return None if v is None else _strip_required(v)

    @field_validator("state")
    @classmethod
    def _state(cls, v):
        return _normalize_state(v)


class AssetResponse(BaseModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    name: str
    vin: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    color: Optional[str] = None
    odometer: Optional[int] = None
    mileage: Optional[int] = None
    state: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: Optional[datetime] = None
    created_by: Optional[uuid.UUID] = None

    class Config:
        from_attributes = True


# Audit Log Schemas
class AssetLogResponse(BaseModel):
    id: uuid.UUID
    asset_id: uuid.UUID
    actor_id: Optional[uuid.UUID] = None
    actor_role: Optional[str] = None
    action: str
    changed_fields: Optional[Dict[str, Dict[str, Any]]] = None  # {field: {from, to}}
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    notification_type: Optional[str] = None
    occurred_at: datetime

    class Config:
        from_attributes = True


# Health / Overdue Schemas
class FleetHealthResponse(BaseModel):
    health_index: int
    total_assets: int
    at_risk: int
    maintenance_due: int
    compliance_issues: int

    class Config:
        from_attributes = True


class OverdueAssetsResponse(BaseModel):
    threshold_days: int
    cutoff: datetime
    count: int
    assets: List[AssetResponse]


# Reminder Schemas
class ReminderCreate(BaseModel):
    reminder_type: str
    schedule_date: str  # YYYY-MM-DD
    time: Optional[str] = None  # HH:MM
    interval_days: int = Field(default=0, ge=0)  # 0 = one-time
    assignee_id: Optional[uuid.UUID] = None


class ReminderTypeEntry(BaseModel):
    name: str
    active: bool = True
    schedule_date: str
    time: str
    interval_days: int


class ReminderResponse(BaseModel):
    id: uuid.UUID
    asset_id: uuid.UUID
    assignee_id: Optional[uuid.UUID] = None
    reminder_types: List[ReminderTypeEntry]
    primary_schedule_date: datetime
    interval_days: int
    next_due_at: Optional[datetime] = None
    last_fired_at: Optional[datetime] = None
    created_at: datetime
    created_by: Optional[uuid.UUID] = None

    class Config:
        from_attributes = True


class FiredRemindersResponse(BaseModel):
    fired: int
    reminders: List[ReminderResponse]


class MaintenanceSweepResponse(BaseModel):
    assets_overdue: int
    notifications_created: int
    assets_skipped: int
    errors: List[str] = []
