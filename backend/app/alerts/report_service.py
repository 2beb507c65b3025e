"""
report_service.py — Citizen-facing submission and alert management flows.

This is the coordinator the HTTP layer talks to:
    1. Validates a submission (address, bounds, evidence, notes)
    2. Registers or updates the reporter identity by phone number
    3. Looks for a recent nearby open alert from the same reporter (advisory)
    4. Creates the alert (quota check, insert, evidence attachment)
    5. Returns a receipt carrying the reporter token and any partial-evidence flag

═══════════════════════════════════════════════════════════════════════════
SUBMISSION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Validate        │  Nothing is written if this fails
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Identity upsert │  Canonical phone → existing token kept
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Dedup check     │  Same reporter, < 2h, < 200 m → warn only
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Create          │  Quota (3 active) → insert → evidence
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  5. Receipt         │  alert + token + nearby_alert_id + partial
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
MANAGEMENT
═══════════════════════════════════════════════════════════════════════════

Reporter operations ("my alerts") are authorised by the bearer token
alone. Acting on an alert owned by another identity is reported as
NotFoundError, the same as an unknown id, so a token cannot be used to
probe other reporters' alert ids.

Operator operations (resolve, reactivate, delete, stats) are not
token-scoped; the HTTP layer decides who may reach them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from backend.app.alerts.evidence import EvidenceItem
from backend.app.alerts.guards import DedupGuard
from backend.app.alerts.identity import IdentityStore
from backend.app.alerts.lifecycle import AlertDraft, LifecycleManager
from backend.app.alerts.models import Alert, AlertStatus, Identity, Location, _now
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ReportSubmission:
    """What the submission form sends."""
    display_name: str
    contact_id: str
    latitude: float
    longitude: float
    address_text: str
    evidence: Sequence[EvidenceItem] = field(default_factory=list)
    neighborhood: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class SubmissionReceipt:
    """Result of a successful submission."""
    alert: Alert
    identity: Identity
    nearby_alert_id: Optional[str] = None
    evidence_requested: int = 0

    @property
    def evidence_attached(self) -> int:
        return len(self.alert.evidence)

    @property
    def partial(self) -> bool:
        return self.evidence_attached < self.evidence_requested

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert": self.alert.to_dict(),
            "token": self.identity.token,
            "identity_id": self.identity.id,
            "nearby_alert_id": self.nearby_alert_id,
            "evidence_requested": self.evidence_requested,
            "evidence_attached": self.evidence_attached,
            "partial": self.partial,
        }


class ReportService:
    """Submission, "my alerts" and operator flows on top of the lifecycle."""

    def __init__(
        self,
        store: AlertStore,
        identities: IdentityStore,
        lifecycle: LifecycleManager,
        dedup: DedupGuard,
        *,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._store = store
        self._identities = identities
        self._lifecycle = lifecycle
        self._dedup = dedup
        self._clock = clock

    # ═══════════════════════════════════════════════════════════════════════
    # Submission
    # ═══════════════════════════════════════════════════════════════════════

    async def submit_report(self, submission: ReportSubmission) -> SubmissionReceipt:
        """
        Run the full submission flow.

        Raises
        ------
        ValidationError
            Missing address, bad phone, blank name, no/too many photos,
            notes too long.
        OutOfBoundsError
            Location outside the service area.
        QuotaExceededError
            Reporter already has the maximum number of active alerts.
        PersistenceError
            The store failed before the alert row was written.
        """
        self._lifecycle.validate_submission(
            submission.latitude, submission.longitude, submission.address_text,
            submission.evidence, submission.notes,
        )

        identity = await self._identities.upsert(
            submission.contact_id,
            submission.display_name,
            default_location=Location(
                submission.latitude, submission.longitude,
                submission.address_text.strip(),
            ),
        )

        nearby = await self._dedup.find_nearby_open_alert(
            identity.id, submission.latitude, submission.longitude,
        )

        alert = await self._lifecycle.create(AlertDraft(
            identity_id=identity.id,
            latitude=submission.latitude,
            longitude=submission.longitude,
            address_text=submission.address_text,
            evidence=list(submission.evidence),
            neighborhood=submission.neighborhood,
            notes=submission.notes,
        ))

        receipt = SubmissionReceipt(
            alert=alert,
            identity=identity,
            nearby_alert_id=nearby.id if nearby else None,
            evidence_requested=len(submission.evidence),
        )
        logger.info(
            "Report accepted as alert %s%s",
            alert.id, " (possible duplicate)" if nearby else "",
            extra={"alert_id": alert.id, "identity_id": identity.id},
        )
        return receipt

    # ═══════════════════════════════════════════════════════════════════════
    # Reporter ("my alerts") operations
    # ═══════════════════════════════════════════════════════════════════════

    async def identify(self, token: str) -> Identity:
        return await self._identities.find_by_token(token)

    async def my_alerts(self, token: str) -> List[Alert]:
        """Every alert of the token's identity, newest first."""
        identity = await self._identities.find_by_token(token)
        return await self._lifecycle.list_alerts(identity_id=identity.id)

    async def _owned_alert(self, token: str, alert_id: str) -> Alert:
        identity = await self._identities.find_by_token(token)
        alert = await self._lifecycle.get(alert_id)
        if alert.identity_id != identity.id:
            raise NotFoundError("Alert", id=alert_id)
        return alert

    async def resolve_mine(self, token: str, alert_id: str) -> Alert:
        alert = await self._owned_alert(token, alert_id)
        return await self._lifecycle.resolve(alert.id)

    async def renew_mine(self, token: str, alert_id: str) -> Alert:
        alert = await self._owned_alert(token, alert_id)
        return await self._lifecycle.renew(alert.id)

    async def update_notes_mine(
        self, token: str, alert_id: str, notes: Optional[str],
    ) -> Alert:
        alert = await self._owned_alert(token, alert_id)
        return await self._lifecycle.update_notes(alert.id, notes)

    # ═══════════════════════════════════════════════════════════════════════
    # Operator operations
    # ═══════════════════════════════════════════════════════════════════════

    async def get_alert(self, alert_id: str) -> Alert:
        return await self._lifecycle.get(alert_id)

    async def resolve_alert(self, alert_id: str) -> Alert:
        return await self._lifecycle.resolve(alert_id)

    async def reactivate_alert(self, alert_id: str) -> Alert:
        return await self._lifecycle.reactivate(alert_id)

    async def delete_alert(self, alert_id: str) -> None:
        if not await self._store.delete_alert(alert_id):
            raise NotFoundError("Alert", id=alert_id)
        logger.info("Alert %s deleted", alert_id, extra={"alert_id": alert_id})

    async def delete_identity(self, identity_id: str) -> int:
        """Remove an identity and every alert it owns; returns alerts removed."""
        identity = await self._identities.get(identity_id)
        owned = await self._store.list_alerts(identity_id=identity.id)
        for alert in owned:
            await self._store.delete_alert(alert.id)
        await self._store.delete_identity(identity.id)
        logger.info(
            "Identity deleted with %d alerts", len(owned),
            extra={"identity_id": identity.id},
        )
        return len(owned)

    async def list_identities(self) -> List[Identity]:
        return await self._store.list_identities()

    async def stats(self) -> Dict[str, Any]:
        """Counts by effective status plus totals, for the operator dashboard."""
        alerts = await self._lifecycle.list_alerts()
        identities = await self._store.list_identities()
        by_status = {status.value: 0 for status in AlertStatus}
        for alert in alerts:
            by_status[alert.status.value] += 1
        return {
            "total_alerts": len(alerts),
            "by_status": by_status,
            "active_count": by_status[AlertStatus.ACTIVE.value],
            "total_identities": len(identities),
            "evidence_count": sum(len(a.evidence) for a in alerts),
            "generated_at": self._clock().isoformat(),
        }
