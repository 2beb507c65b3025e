"""
models.py — Shared data structures for the flood alert lifecycle.

Defines:
    • AlertStatus     — the three lifecycle states
    • LifecycleEvent  — triggers that move an alert between states
    • GeoBounds       — the service-area bounding rectangle
    • AlertPolicy     — tunable limits (TTL, quota, dedup window, ...)
    • Location        — a reporter's remembered default position
    • Alert           — a citizen flood report
    • Identity        — a registered reporter and its bearer token
    • EvidenceRecord  — one stored photo reference
    • AlertFilter     — the view a sync subscriber asks for

═══════════════════════════════════════════════════════════════════════════
ALERT STATES
═══════════════════════════════════════════════════════════════════════════

    Status      Meaning                                  resolved_at
    ────────    ─────────────────────────────────────    ───────────
    ACTIVE      flooding reported, not yet expired       absent
    EXPIRED     24h elapsed without renewal              absent
    RESOLVED    reporter/operator closed the report      set

"Active for display" is stricter than status == ACTIVE: the alert must
also satisfy now < expires_at. The stored status is corrected lazily the
next time the alert is read (see lifecycle.py).

═══════════════════════════════════════════════════════════════════════════
FILTER PRESETS
═══════════════════════════════════════════════════════════════════════════

    Preset        Shows
    ──────────    ─────────────────────────────────────────
    active-24h    ACTIVE alerts created in the last 24 hours
    active-6h     ACTIVE alerts created in the last 6 hours
    history       every alert, any status
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.core.config import Settings, settings


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertStatus(str, Enum):
    """Persisted lifecycle state of an alert."""
    ACTIVE   = "ACTIVE"
    EXPIRED  = "EXPIRED"
    RESOLVED = "RESOLVED"


class LifecycleEvent(str, Enum):
    """Triggers accepted by the lifecycle state machine."""
    CREATE  = "create"
    EXPIRE  = "expire"    # observed at read time, never scheduled
    RESOLVE = "resolve"
    RENEW   = "renew"     # also used for operator "reactivate"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_alert_id() -> str:
    return uuid.uuid4().hex[:8].upper()


def _generate_identity_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Service Area & Policy
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GeoBounds:
    """Axis-aligned bounding rectangle in decimal degrees (edges inclusive)."""
    north: float
    south: float
    east: float
    west: float

    def __post_init__(self) -> None:
        if self.south > self.north:
            raise ValueError(f"south ({self.south}) must not exceed north ({self.north})")
        if self.west > self.east:
            raise ValueError(f"west ({self.west}) must not exceed east ({self.east})")

    def contains(self, latitude: float, longitude: float) -> bool:
        return (
            self.south <= latitude <= self.north
            and self.west <= longitude <= self.east
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "north": self.north,
            "south": self.south,
            "east": self.east,
            "west": self.west,
        }


# Rio Branco, AC (approximate municipal area)
RIO_BRANCO_BOUNDS = GeoBounds(north=-9.85, south=-10.15, east=-67.65, west=-67.95)


@dataclass(frozen=True)
class AlertPolicy:
    """
    Limits applied by the lifecycle, quota, dedup and sync components.

    Built from Settings in production; tests construct it directly.
    """
    bounds: GeoBounds = RIO_BRANCO_BOUNDS
    ttl: timedelta = timedelta(hours=24)
    max_active_per_identity: int = 3
    dedup_window: timedelta = timedelta(hours=2)
    dedup_radius_m: float = 200.0
    meters_per_degree: float = 111_000.0
    max_evidence: int = 3
    notes_max_length: int = 200
    token_length: int = 6
    phone_country_code: str = "55"
    poll_interval_seconds: float = 30.0

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "AlertPolicy":
        s = source or settings
        return cls(
            bounds=GeoBounds(
                north=s.SERVICE_BOUNDS_NORTH,
                south=s.SERVICE_BOUNDS_SOUTH,
                east=s.SERVICE_BOUNDS_EAST,
                west=s.SERVICE_BOUNDS_WEST,
            ),
            ttl=timedelta(hours=s.ALERT_TTL_HOURS),
            max_active_per_identity=s.MAX_ACTIVE_ALERTS_PER_IDENTITY,
            dedup_window=timedelta(hours=s.DEDUP_WINDOW_HOURS),
            dedup_radius_m=s.DEDUP_RADIUS_METERS,
            meters_per_degree=s.METERS_PER_DEGREE,
            max_evidence=s.MAX_EVIDENCE_PER_ALERT,
            notes_max_length=s.NOTES_MAX_LENGTH,
            token_length=s.TOKEN_LENGTH,
            phone_country_code=s.PHONE_COUNTRY_CODE,
            poll_interval_seconds=s.SYNC_POLL_INTERVAL_SECONDS,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Location:
    """A point plus the free-text address the reporter typed for it."""
    latitude: float
    longitude: float
    address_text: Optional[str] = None


@dataclass
class Alert:
    """
    A citizen flood report.

    Attributes
    ----------
    id : str
        8-character upper-case code shown to the reporter.
    identity_id : str
        Owning reporter.
    latitude, longitude : float
        Reported position in decimal degrees.
    address_text : str
        Street address as typed/geocoded by the submission UI.
    neighborhood : str | None
        Optional district label.
    status : AlertStatus
        Persisted state; see module docstring for display semantics.
    notes : str | None
        Free-text observation (water height, traffic, ...).
    evidence : list of str
        Photo references in upload order.
    created_at, updated_at, expires_at : datetime
        UTC timestamps; expires_at = created_at + TTL at creation.
    resolved_at : datetime | None
        Set exactly when status is RESOLVED.
    """
    identity_id: str
    latitude: float
    longitude: float
    address_text: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    status: AlertStatus = AlertStatus.ACTIVE
    id: str = field(default_factory=_generate_alert_id)
    neighborhood: Optional[str] = None
    notes: Optional[str] = None
    evidence: List[str] = field(default_factory=list)
    resolved_at: Optional[datetime] = None

    def is_display_active(self, now: datetime) -> bool:
        """ACTIVE and not yet past its expiry instant."""
        return self.status is AlertStatus.ACTIVE and now < self.expires_at

    def is_overdue(self, now: datetime) -> bool:
        """Stored as ACTIVE but already past expiry (pending lazy expiry)."""
        return self.status is AlertStatus.ACTIVE and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "identity_id": self.identity_id,
            "location": {
                "latitude": self.latitude,
                "longitude": self.longitude,
            },
            "address_text": self.address_text,
            "neighborhood": self.neighborhood,
            "status": self.status.value,
            "notes": self.notes,
            "evidence": list(self.evidence),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
            "resolved_at": _iso(self.resolved_at),
        }


@dataclass
class Identity:
    """A reporter, keyed naturally by its canonical phone number."""
    display_name: str
    contact_id: str
    token: str
    created_at: datetime = field(default_factory=_now)
    id: str = field(default_factory=_generate_identity_id)
    default_address: Optional[str] = None
    default_latitude: Optional[float] = None
    default_longitude: Optional[float] = None

    @property
    def default_location(self) -> Optional[Location]:
        if self.default_latitude is None or self.default_longitude is None:
            return None
        return Location(self.default_latitude, self.default_longitude, self.default_address)

    def to_dict(self, include_token: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "display_name": self.display_name,
            "contact_id": self.contact_id,
            "default_address": self.default_address,
            "default_latitude": self.default_latitude,
            "default_longitude": self.default_longitude,
            "created_at": _iso(self.created_at),
        }
        if include_token:
            d["token"] = self.token
        return d


@dataclass
class EvidenceRecord:
    """A stored photo reference attached to an alert."""
    alert_id: str
    reference: str
    created_at: datetime = field(default_factory=_now)


# ═══════════════════════════════════════════════════════════════════════════
# Viewer Filters
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AlertFilter:
    """
    Status scope plus optional recency window for a published view.

    include_history=True shows every alert regardless of status or age;
    otherwise only display-active alerts, optionally no older than
    max_age_hours.
    """
    max_age_hours: Optional[float] = None
    include_history: bool = False

    def matches(self, alert: Alert, now: datetime) -> bool:
        if self.include_history:
            return True
        if not alert.is_display_active(now):
            return False
        if self.max_age_hours:
            age_hours = (now - alert.created_at).total_seconds() / 3600
            return age_hours <= self.max_age_hours
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_age_hours": self.max_age_hours,
            "include_history": self.include_history,
        }


FILTER_PRESETS: Dict[str, AlertFilter] = {
    "active-24h": AlertFilter(max_age_hours=24),
    "active-6h":  AlertFilter(max_age_hours=6),
    "history":    AlertFilter(include_history=True),
}

DEFAULT_FILTER_PRESET = "active-24h"
