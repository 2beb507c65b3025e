"""
rows.py — Boundary mapping between persisted rows and domain objects.

Every record read from a store passes through a pydantic row model
before it becomes an Alert / Identity / EvidenceRecord. Malformed rows
(missing columns, unknown status, out-of-range coordinates, a RESOLVED
status without resolved_at, ...) are rejected with PersistenceError
instead of leaking half-populated objects into the lifecycle.

Rows may be plain mappings (in-memory store, JSON payloads) or ORM
instances (SQLAlchemy store). Naive timestamps are read as UTC, which is
what SQLite hands back for timezone-aware columns.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from backend.app.alerts.models import Alert, AlertStatus, EvidenceRecord, Identity
from backend.app.core.errors import PersistenceError

RowT = TypeVar("RowT", bound=BaseModel)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AlertRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    identity_id: str = Field(min_length=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address_text: str
    neighborhood: Optional[str] = None
    status: AlertStatus
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", "expires_at", "resolved_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @model_validator(mode="after")
    def _resolution_matches_status(self) -> "AlertRow":
        if (self.status is AlertStatus.RESOLVED) != (self.resolved_at is not None):
            raise ValueError("resolved_at must be set exactly when status is RESOLVED")
        return self


class IdentityRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    contact_id: str = Field(pattern=r"^\+\d{10,15}$")
    token: str = Field(min_length=4)
    default_address: Optional[str] = None
    default_latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    default_longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    created_at: datetime

    @field_validator("token")
    @classmethod
    def _upper_token(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class EvidenceRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    alert_id: str = Field(min_length=1)
    reference: str = Field(min_length=1)
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


def _validate(model: Type[RowT], row: Any, kind: str) -> RowT:
    try:
        if isinstance(row, Mapping):
            return model.model_validate(dict(row))
        return model.model_validate(row, from_attributes=True)
    except pydantic.ValidationError as exc:
        row_id = row.get("id") if isinstance(row, Mapping) else getattr(row, "id", None)
        raise PersistenceError(
            f"decode_{kind}",
            f"malformed {kind} row",
            row_id=row_id,
            errors=[e["msg"] for e in exc.errors()],
        ) from exc


# ═══════════════════════════════════════════════════════════════════════════
# Row → Domain
# ═══════════════════════════════════════════════════════════════════════════

def alert_from_row(row: Any) -> Alert:
    r = _validate(AlertRow, row, "alert")
    return Alert(
        id=r.id,
        identity_id=r.identity_id,
        latitude=r.latitude,
        longitude=r.longitude,
        address_text=r.address_text,
        neighborhood=r.neighborhood,
        status=r.status,
        notes=r.notes,
        created_at=r.created_at,
        updated_at=r.updated_at,
        expires_at=r.expires_at,
        resolved_at=r.resolved_at,
    )


def identity_from_row(row: Any) -> Identity:
    r = _validate(IdentityRow, row, "identity")
    return Identity(
        id=r.id,
        display_name=r.display_name,
        contact_id=r.contact_id,
        token=r.token,
        default_address=r.default_address,
        default_latitude=r.default_latitude,
        default_longitude=r.default_longitude,
        created_at=r.created_at,
    )


def evidence_from_row(row: Any) -> EvidenceRecord:
    r = _validate(EvidenceRow, row, "evidence")
    return EvidenceRecord(alert_id=r.alert_id, reference=r.reference, created_at=r.created_at)


# ═══════════════════════════════════════════════════════════════════════════
# Domain → Row
# ═══════════════════════════════════════════════════════════════════════════

def alert_to_row(alert: Alert) -> Dict[str, Any]:
    """Column values for an alert; evidence lives in its own table."""
    return {
        "id": alert.id,
        "identity_id": alert.identity_id,
        "latitude": alert.latitude,
        "longitude": alert.longitude,
        "address_text": alert.address_text,
        "neighborhood": alert.neighborhood,
        "status": alert.status.value,
        "notes": alert.notes,
        "created_at": alert.created_at,
        "updated_at": alert.updated_at,
        "expires_at": alert.expires_at,
        "resolved_at": alert.resolved_at,
    }


def identity_to_row(identity: Identity) -> Dict[str, Any]:
    return {
        "id": identity.id,
        "display_name": identity.display_name,
        "contact_id": identity.contact_id,
        "token": identity.token,
        "default_address": identity.default_address,
        "default_latitude": identity.default_latitude,
        "default_longitude": identity.default_longitude,
        "created_at": identity.created_at,
    }


def evidence_to_row(record: EvidenceRecord) -> Dict[str, Any]:
    return {
        "alert_id": record.alert_id,
        "reference": record.reference,
        "created_at": record.created_at,
    }
