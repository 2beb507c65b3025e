"""
store.py — Persistence interface for alerts, evidence and identities.

AlertStore is the single shared mutable resource. Components treat it as
a remote request/response store: every read returns fresh domain objects
decoded through rows.py, every write copies the values out. Nothing
keeps references into store internals.

Stores publish on the change feed after each successful mutation so that
sync subscribers wake up (the feed is optional for offline tooling).

Implementations:
    InMemoryAlertStore    — dict-backed; tests and local development
    SqlAlchemyAlertStore  — async SQLAlchemy (see sql_store.py)
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Sequence

from backend.app.alerts.change_feed import (
    REASON_ALERTS,
    REASON_EVIDENCE,
    REASON_IDENTITIES,
    ChangeFeed,
)
from backend.app.alerts.models import Alert, AlertStatus, EvidenceRecord, Identity, _now
from backend.app.alerts.rows import (
    alert_from_row,
    alert_to_row,
    evidence_from_row,
    evidence_to_row,
    identity_from_row,
    identity_to_row,
)
from backend.app.core.errors import NotFoundError, PersistenceError


class AlertStore(Protocol):
    """Request/response persistence contract used by every component."""

    # ── alerts ──
    async def insert_alert(self, alert: Alert) -> Alert: ...

    async def update_alert(self, alert: Alert) -> Alert: ...

    async def delete_alert(self, alert_id: str) -> bool: ...

    async def get_alert(self, alert_id: str) -> Optional[Alert]: ...

    async def list_alerts(
        self,
        *,
        identity_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
    ) -> List[Alert]: ...

    # ── evidence ──
    async def insert_evidence(self, alert_id: str, reference: str) -> EvidenceRecord: ...

    async def list_evidence(
        self, alert_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, List[str]]: ...

    # ── identities ──
    async def insert_identity(self, identity: Identity) -> Identity: ...

    async def update_identity(self, identity: Identity) -> Identity: ...

    async def delete_identity(self, identity_id: str) -> bool: ...

    async def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    async def find_identity_by_contact(self, contact_id: str) -> Optional[Identity]: ...

    async def find_identity_by_token(self, token: str) -> Optional[Identity]: ...

    async def list_identities(self) -> List[Identity]: ...


def group_evidence(records: Sequence[EvidenceRecord]) -> Dict[str, List[str]]:
    """Group references by alert id, keeping upload order."""
    grouped: Dict[str, List[str]] = {}
    for record in records:
        grouped.setdefault(record.alert_id, []).append(record.reference)
    return grouped


class InMemoryAlertStore:
    """
    Dict-backed AlertStore.

    Rows are stored as plain column dicts (never as domain objects) and
    decoded on every read, mirroring a remote table.
    """

    def __init__(self, feed: Optional[ChangeFeed] = None) -> None:
        self._feed = feed
        self._alerts: Dict[str, Dict[str, Any]] = {}
        self._evidence: List[Dict[str, Any]] = []
        self._identities: Dict[str, Dict[str, Any]] = {}

    async def _notify(self, reason: str) -> None:
        if self._feed is not None:
            await self._feed.publish(reason)

    # ── alerts ──

    async def insert_alert(self, alert: Alert) -> Alert:
        if alert.id in self._alerts:
            raise PersistenceError("insert_alert", "duplicate alert id", alert_id=alert.id)
        self._alerts[alert.id] = alert_to_row(alert)
        await self._notify(REASON_ALERTS)
        return alert

    async def update_alert(self, alert: Alert) -> Alert:
        if alert.id not in self._alerts:
            raise NotFoundError("Alert", id=alert.id)
        self._alerts[alert.id] = alert_to_row(alert)
        await self._notify(REASON_ALERTS)
        return alert

    async def delete_alert(self, alert_id: str) -> bool:
        if self._alerts.pop(alert_id, None) is None:
            return False
        self._evidence = [e for e in self._evidence if e["alert_id"] != alert_id]
        await self._notify(REASON_ALERTS)
        return True

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        row = self._alerts.get(alert_id)
        return alert_from_row(row) if row is not None else None

    async def list_alerts(
        self,
        *,
        identity_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
    ) -> List[Alert]:
        alerts = [alert_from_row(row) for row in self._alerts.values()]
        if identity_id is not None:
            alerts = [a for a in alerts if a.identity_id == identity_id]
        if status is not None:
            alerts = [a for a in alerts if a.status is status]
        # Newest first, like the public listing
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    # ── evidence ──

    async def insert_evidence(self, alert_id: str, reference: str) -> EvidenceRecord:
        if alert_id not in self._alerts:
            raise NotFoundError("Alert", id=alert_id)
        record = EvidenceRecord(alert_id=alert_id, reference=reference, created_at=_now())
        self._evidence.append(evidence_to_row(record))
        await self._notify(REASON_EVIDENCE)
        return record

    async def list_evidence(
        self, alert_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, List[str]]:
        wanted = set(alert_ids) if alert_ids is not None else None
        records = [
            evidence_from_row(row) for row in self._evidence
            if wanted is None or row["alert_id"] in wanted
        ]
        return group_evidence(records)

    # ── identities ──

    async def insert_identity(self, identity: Identity) -> Identity:
        for row in self._identities.values():
            if row["contact_id"] == identity.contact_id:
                raise PersistenceError(
                    "insert_identity", "contact id already registered",
                    contact_id=identity.contact_id,
                )
            if row["token"] == identity.token:
                raise PersistenceError("insert_identity", "token collision")
        self._identities[identity.id] = identity_to_row(identity)
        await self._notify(REASON_IDENTITIES)
        return identity

    async def update_identity(self, identity: Identity) -> Identity:
        if identity.id not in self._identities:
            raise NotFoundError("Identity", id=identity.id)
        self._identities[identity.id] = identity_to_row(identity)
        await self._notify(REASON_IDENTITIES)
        return identity

    async def delete_identity(self, identity_id: str) -> bool:
        if self._identities.pop(identity_id, None) is None:
            return False
        await self._notify(REASON_IDENTITIES)
        return True

    async def get_identity(self, identity_id: str) -> Optional[Identity]:
        row = self._identities.get(identity_id)
        return identity_from_row(row) if row is not None else None

    async def find_identity_by_contact(self, contact_id: str) -> Optional[Identity]:
        for row in self._identities.values():
            if row["contact_id"] == contact_id:
                return identity_from_row(row)
        return None

    async def find_identity_by_token(self, token: str) -> Optional[Identity]:
        for row in self._identities.values():
            if row["token"] == token:
                return identity_from_row(row)
        return None

    async def list_identities(self) -> List[Identity]:
        identities = [identity_from_row(row) for row in self._identities.values()]
        return sorted(identities, key=lambda i: i.created_at, reverse=True)
