"""
lifecycle.py — Alert state machine: create, lazy expiry, resolve, renew.

═══════════════════════════════════════════════════════════════════════════
TRANSITION TABLE
═══════════════════════════════════════════════════════════════════════════

    From        Event     To          Effect
    ────────    ───────   ────────    ─────────────────────────────────────
    (none)      create    ACTIVE      created_at = updated_at = now,
                                      expires_at = now + TTL
    ACTIVE      expire    EXPIRED     updated_at = now
    ACTIVE      resolve   RESOLVED    resolved_at = updated_at = now
    EXPIRED     resolve   RESOLVED    resolved_at = updated_at = now
    RESOLVED    resolve   RESOLVED    no-op (idempotent)
    ACTIVE      renew     ACTIVE      expires_at = now + TTL, updated_at = now
    EXPIRED     renew     ACTIVE      expires_at = now + TTL, updated_at = now
    RESOLVED    renew     ACTIVE      expires_at = now + TTL,
                                      resolved_at cleared, updated_at = now

Anything not in the table is rejected. Renewal is permitted from every
state and does not re-check the quota.

═══════════════════════════════════════════════════════════════════════════
LAZY EXPIRY
═══════════════════════════════════════════════════════════════════════════

No background job moves alerts to EXPIRED. Every read path (get, list,
sync refresh) runs apply_expiry() first: ACTIVE rows whose expires_at
has passed are transitioned and written back. If the write-back fails
the caller still sees EXPIRED; the next read retries the write.
sweep_expired() runs the same pass over all ACTIVE rows for deployments
that prefer a periodic job; the observable status is identical.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from backend.app.alerts.evidence import EvidenceItem, EvidenceUploader, attach_evidence
from backend.app.alerts.guards import QuotaEnforcer
from backend.app.alerts.models import Alert, AlertPolicy, AlertStatus, LifecycleEvent, _now
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import (
    FloodAlertError,
    NotFoundError,
    OutOfBoundsError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Transition Table
# ═══════════════════════════════════════════════════════════════════════════

Effect = Callable[[Alert, datetime, AlertPolicy], Alert]


def _expire(alert: Alert, now: datetime, policy: AlertPolicy) -> Alert:
    return replace(alert, status=AlertStatus.EXPIRED, updated_at=now)


def _resolve(alert: Alert, now: datetime, policy: AlertPolicy) -> Alert:
    return replace(alert, status=AlertStatus.RESOLVED, resolved_at=now, updated_at=now)


def _renew(alert: Alert, now: datetime, policy: AlertPolicy) -> Alert:
    return replace(
        alert,
        status=AlertStatus.ACTIVE,
        expires_at=now + policy.ttl,
        resolved_at=None,
        updated_at=now,
    )


@dataclass(frozen=True)
class Transition:
    source: Optional[AlertStatus]
    event: LifecycleEvent
    target: AlertStatus
    effect: Optional[Effect]  # None → no-op, nothing is written


TRANSITIONS: Dict[Tuple[Optional[AlertStatus], LifecycleEvent], Transition] = {
    (t.source, t.event): t
    for t in (
        Transition(None, LifecycleEvent.CREATE, AlertStatus.ACTIVE, None),
        Transition(AlertStatus.ACTIVE, LifecycleEvent.EXPIRE, AlertStatus.EXPIRED, _expire),
        Transition(AlertStatus.ACTIVE, LifecycleEvent.RESOLVE, AlertStatus.RESOLVED, _resolve),
        Transition(AlertStatus.EXPIRED, LifecycleEvent.RESOLVE, AlertStatus.RESOLVED, _resolve),
        Transition(AlertStatus.RESOLVED, LifecycleEvent.RESOLVE, AlertStatus.RESOLVED, None),
        Transition(AlertStatus.ACTIVE, LifecycleEvent.RENEW, AlertStatus.ACTIVE, _renew),
        Transition(AlertStatus.EXPIRED, LifecycleEvent.RENEW, AlertStatus.ACTIVE, _renew),
        Transition(AlertStatus.RESOLVED, LifecycleEvent.RENEW, AlertStatus.ACTIVE, _renew),
    )
}


def lookup_transition(source: Optional[AlertStatus], event: LifecycleEvent) -> Transition:
    transition = TRANSITIONS.get((source, event))
    if transition is None:
        state = source.value if source else "new"
        raise ValidationError(
            f"Cannot {event.value} an alert in state {state}",
            field="status",
        )
    return transition


# ═══════════════════════════════════════════════════════════════════════════
# Drafts
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertDraft:
    """Everything needed to create an alert for an already-known identity."""
    identity_id: str
    latitude: float
    longitude: float
    address_text: str
    evidence: List[EvidenceItem] = field(default_factory=list)
    neighborhood: Optional[str] = None
    notes: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle Manager
# ═══════════════════════════════════════════════════════════════════════════

class LifecycleManager:
    """
    Owns every status change of an alert.

    Parameters
    ----------
    store : AlertStore
    quota : QuotaEnforcer
        Consulted on create only.
    uploader : EvidenceUploader | None
        Needed only for submissions carrying raw photo bytes.
    policy : AlertPolicy | None
    clock : callable returning an aware UTC datetime
    """

    def __init__(
        self,
        store: AlertStore,
        quota: QuotaEnforcer,
        *,
        uploader: Optional[EvidenceUploader] = None,
        policy: Optional[AlertPolicy] = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._store = store
        self._quota = quota
        self._uploader = uploader
        self._policy = policy or AlertPolicy()
        self._clock = clock

    @property
    def policy(self) -> AlertPolicy:
        return self._policy

    # ── validation ──

    def validate_submission(
        self,
        latitude: float,
        longitude: float,
        address_text: str,
        evidence: Sequence[EvidenceItem],
        notes: Optional[str] = None,
    ) -> None:
        """Reject a submission before anything is written."""
        if not (address_text or "").strip():
            raise ValidationError("Address is required", field="address_text")
        if not self._policy.bounds.contains(latitude, longitude):
            raise OutOfBoundsError(latitude, longitude, bounds=self._policy.bounds.to_dict())
        if not evidence:
            raise ValidationError("At least one photo is required", field="evidence")
        if len(evidence) > self._policy.max_evidence:
            raise ValidationError(
                f"At most {self._policy.max_evidence} photos per alert",
                field="evidence", submitted=len(evidence),
            )
        if self._uploader is None and any(item.needs_upload for item in evidence):
            raise ValidationError("Photo upload is not available", field="evidence")
        self._validate_notes(notes)

    def _validate_notes(self, notes: Optional[str]) -> None:
        if notes and len(notes) > self._policy.notes_max_length:
            raise ValidationError(
                f"Notes are limited to {self._policy.notes_max_length} characters",
                field="notes",
            )

    # ── create ──

    async def create(self, draft: AlertDraft) -> Alert:
        """
        Validate, check quota, persist and attach evidence.

        Validation, bounds and quota failures are raised before any
        write. Evidence failures after the insert leave the alert with
        fewer references than submitted (see evidence.py).
        """
        self.validate_submission(
            draft.latitude, draft.longitude, draft.address_text,
            draft.evidence, draft.notes,
        )
        await self._quota.check_and_reserve(draft.identity_id)

        lookup_transition(None, LifecycleEvent.CREATE)
        now = self._clock()
        alert = Alert(
            identity_id=draft.identity_id,
            latitude=draft.latitude,
            longitude=draft.longitude,
            address_text=draft.address_text.strip(),
            neighborhood=(draft.neighborhood or "").strip() or None,
            notes=(draft.notes or "").strip() or None,
            status=AlertStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            expires_at=now + self._policy.ttl,
        )
        await self._store.insert_alert(alert)

        outcome = await attach_evidence(self._store, alert.id, draft.evidence, self._uploader)
        alert.evidence = list(outcome.attached)

        logger.info(
            "Alert %s created (%d/%d evidence)",
            alert.id, len(outcome.attached), outcome.requested,
            extra={"alert_id": alert.id, "identity_id": alert.identity_id},
        )
        return alert

    # ── transitions ──

    async def _fire(self, alert: Alert, event: LifecycleEvent) -> Alert:
        transition = lookup_transition(alert.status, event)
        if transition.effect is None:
            return alert
        updated = transition.effect(alert, self._clock(), self._policy)
        await self._store.update_alert(updated)
        logger.info(
            "Alert %s %s → %s",
            alert.id, alert.status.value, updated.status.value,
            extra={"alert_id": alert.id},
        )
        return updated

    async def resolve(self, alert_id: str) -> Alert:
        """Close an alert; resolving a RESOLVED alert changes nothing."""
        alert = await self.get(alert_id)
        return await self._fire(alert, LifecycleEvent.RESOLVE)

    async def renew(self, alert_id: str) -> Alert:
        """Reopen/extend an alert for another TTL, from any state."""
        alert = await self.get(alert_id)
        return await self._fire(alert, LifecycleEvent.RENEW)

    reactivate = renew

    async def update_notes(self, alert_id: str, notes: Optional[str]) -> Alert:
        self._validate_notes(notes)
        alert = await self.get(alert_id)
        updated = replace(alert, notes=(notes or "").strip() or None, updated_at=self._clock())
        await self._store.update_alert(updated)
        logger.info("Alert %s notes updated", alert_id, extra={"alert_id": alert_id})
        return updated

    # ── reads ──

    async def apply_expiry(
        self, alerts: Sequence[Alert], now: Optional[datetime] = None,
    ) -> List[Alert]:
        """Lazy-expiry pass: transition overdue ACTIVE alerts to EXPIRED."""
        now = now or self._clock()
        result: List[Alert] = []
        for alert in alerts:
            if alert.is_overdue(now):
                transition = lookup_transition(alert.status, LifecycleEvent.EXPIRE)
                expired = transition.effect(alert, now, self._policy)
                try:
                    await self._store.update_alert(expired)
                except FloodAlertError as exc:
                    logger.warning(
                        "Could not persist expiry of alert %s: %s", alert.id, exc.message,
                        extra={"alert_id": alert.id},
                    )
                else:
                    logger.info("Alert %s expired", alert.id, extra={"alert_id": alert.id})
                alert = expired
            result.append(alert)
        return result

    async def _with_evidence(self, alerts: List[Alert]) -> List[Alert]:
        if not alerts:
            return alerts
        references = await self._store.list_evidence([a.id for a in alerts])
        return [replace(a, evidence=references.get(a.id, [])) for a in alerts]

    async def get(self, alert_id: str) -> Alert:
        alert = await self._store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)
        (alert,) = await self.apply_expiry([alert])
        (alert,) = await self._with_evidence([alert])
        return alert

    async def list_alerts(
        self,
        *,
        identity_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
    ) -> List[Alert]:
        """List alerts newest first, with effective status and evidence."""
        # Status filtering happens after expiry so overdue rows land in EXPIRED
        alerts = await self._store.list_alerts(identity_id=identity_id)
        alerts = await self.apply_expiry(alerts)
        if status is not None:
            alerts = [a for a in alerts if a.status is status]
        return await self._with_evidence(alerts)

    async def sweep_expired(self) -> int:
        """Optional periodic pass; returns how many alerts were expired."""
        now = self._clock()
        active = await self._store.list_alerts(status=AlertStatus.ACTIVE)
        overdue = [a for a in active if a.is_overdue(now)]
        await self.apply_expiry(overdue, now=now)
        if overdue:
            logger.info("Expiry sweep moved %d alerts to EXPIRED", len(overdue))
        return len(overdue)
