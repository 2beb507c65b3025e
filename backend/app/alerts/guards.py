"""
guards.py — Submission guards: per-identity quota and duplicate detection.

═══════════════════════════════════════════════════════════════════════════
QUOTA
═══════════════════════════════════════════════════════════════════════════

An identity may hold at most ``max_active_per_identity`` (3) alerts that
are active for display. The count ignores ACTIVE rows already past
their expiry, so an overdue alert frees its slot even before lazy expiry
has been written back.

The check and the subsequent insert are two separate store round-trips.
Two concurrent submissions from the same identity can both pass and
leave it one alert over the ceiling; this relaxation is accepted.

═══════════════════════════════════════════════════════════════════════════
DEDUP
═══════════════════════════════════════════════════════════════════════════

A submission is flagged as a likely duplicate when the same identity has
an active alert created within the last 2 hours less than 200 m away.
Distance uses a flat-earth approximation:

    d = sqrt(Δlat² + Δlng²) × 111 000 m

It does not correct for longitude compression (cos φ ≈ 0.985 at Rio
Branco, ≈1.5% over-estimate east-west), which is acceptable at this
latitude band. The result is advisory: callers warn, never block.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Optional

from backend.app.alerts.models import Alert, AlertPolicy, AlertStatus, _now
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import QuotaExceededError

logger = logging.getLogger(__name__)


def planar_distance_m(
    lat1: float, lng1: float, lat2: float, lng2: float,
    meters_per_degree: float = 111_000.0,
) -> float:
    """Flat-earth distance in metres between two points in degrees."""
    return math.hypot(lat1 - lat2, lng1 - lng2) * meters_per_degree


class QuotaEnforcer:
    """Rejects creation once an identity reaches its active-alert ceiling."""

    def __init__(
        self,
        store: AlertStore,
        policy: Optional[AlertPolicy] = None,
        clock: Callable = _now,
    ) -> None:
        self._store = store
        self._policy = policy or AlertPolicy()
        self._clock = clock

    async def count_active(self, identity_id: str) -> int:
        now = self._clock()
        alerts = await self._store.list_alerts(
            identity_id=identity_id, status=AlertStatus.ACTIVE,
        )
        return sum(1 for a in alerts if a.is_display_active(now))

    async def check_and_reserve(self, identity_id: str) -> int:
        """
        Permit one more creation for ``identity_id``.

        Returns
        -------
        int
            The identity's current active count (before the new alert).

        Raises
        ------
        QuotaExceededError
            If the identity is already at the ceiling.
        """
        count = await self.count_active(identity_id)
        limit = self._policy.max_active_per_identity
        if count >= limit:
            logger.info(
                "Quota reached for identity (%d/%d)", count, limit,
                extra={"identity_id": identity_id, "active_count": count},
            )
            raise QuotaExceededError(identity_id, count, limit)
        return count


class DedupGuard:
    """Finds a recent nearby open alert from the same reporter."""

    def __init__(
        self,
        store: AlertStore,
        policy: Optional[AlertPolicy] = None,
        clock: Callable = _now,
    ) -> None:
        self._store = store
        self._policy = policy or AlertPolicy()
        self._clock = clock

    async def find_nearby_open_alert(
        self, identity_id: str, latitude: float, longitude: float,
    ) -> Optional[Alert]:
        now = self._clock()
        window_start = now - self._policy.dedup_window
        candidates = await self._store.list_alerts(
            identity_id=identity_id, status=AlertStatus.ACTIVE,
        )
        for alert in candidates:
            if not alert.is_display_active(now) or alert.created_at < window_start:
                continue
            distance = planar_distance_m(
                alert.latitude, alert.longitude, latitude, longitude,
                self._policy.meters_per_degree,
            )
            if distance < self._policy.dedup_radius_m:
                logger.warning(
                    "Possible duplicate of alert %s (%.0f m away)",
                    alert.id, distance,
                    extra={"alert_id": alert.id, "identity_id": identity_id},
                )
                return alert
        return None
