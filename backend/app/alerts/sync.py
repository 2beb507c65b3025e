"""
sync.py — Keeps every viewer's alert list fresh from push + poll triggers.

═══════════════════════════════════════════════════════════════════════════
REFRESH PIPELINE
═══════════════════════════════════════════════════════════════════════════

    change feed event ─┐
    poll tick (30 s) ──┼──► invalidate() ──► single-flight refresh ──► publish
    refresh() ─────────┘

Each Subscription owns one pipeline. All three triggers go through
invalidate(); there is no second code path.

    1. list every alert (unfiltered)
    2. list evidence for those alerts, grouped by alert id, and join
    3. lazy expiry (LifecycleManager.apply_expiry)
    4. active_count over the unfiltered set
    5. apply the subscription's AlertFilter
    6. publish alerts + active_count together as one SyncSnapshot

active_count and the filtered list come from the same fetch, so they
always agree with each other.

═══════════════════════════════════════════════════════════════════════════
COALESCING & ORDERING
═══════════════════════════════════════════════════════════════════════════

At most one refresh runs per subscription. A trigger that arrives while
one is in flight only sets a "rerun" flag; when the in-flight fetch
finishes exactly one follow-up fetch runs, however many triggers came in.

Every fetch takes a sequence number when it starts. A result is
published only if its number is higher than the last published one.

═══════════════════════════════════════════════════════════════════════════
FAILURE & TEARDOWN
═══════════════════════════════════════════════════════════════════════════

A failed fetch becomes a TransientSyncError. The subscriber keeps its
last good alerts, flagged is_stale, and gets on_error. Polling continues
and the next successful refresh clears the flag.

close() is idempotent. It unsubscribes from the feed and cancels the
poll task. A fetch already in flight is left to finish, but the closed
flag stops it from publishing.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from backend.app.alerts.change_feed import REASON_ALERTS, REASON_EVIDENCE, ChangeFeed
from backend.app.alerts.lifecycle import LifecycleManager
from backend.app.alerts.models import Alert, AlertFilter, AlertPolicy, AlertStatus, _now
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import TransientSyncError

logger = logging.getLogger(__name__)

# Feed reasons that can change what a viewer sees
_VIEW_REASONS = frozenset({REASON_ALERTS, REASON_EVIDENCE})


@dataclass
class SyncSnapshot:
    """The last state delivered to one subscriber."""
    alerts: List[Alert] = field(default_factory=list)
    active_count: int = 0
    last_updated: Optional[datetime] = None
    error: Optional[TransientSyncError] = None
    is_stale: bool = False
    is_loading: bool = True
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alerts": [a.to_dict() for a in self.alerts],
            "active_count": self.active_count,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "error": self.error.message if self.error else None,
            "is_stale": self.is_stale,
            "is_loading": self.is_loading,
            "sequence": self.sequence,
        }


PublishCallback = Callable[[SyncSnapshot], Any]
ErrorCallback = Callable[[TransientSyncError, SyncSnapshot], Any]


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Run a subscriber callback (sync or async); its failures are logged."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Subscriber callback %r raised", callback)


class Subscription:
    """One viewer's coalesced refresh loop. Created by SyncBroadcaster.subscribe."""

    def __init__(
        self,
        broadcaster: "SyncBroadcaster",
        alert_filter: AlertFilter,
        on_publish: Optional[PublishCallback],
        on_error: Optional[ErrorCallback],
        poll_interval: float,
    ) -> None:
        self.subscription_id = uuid.uuid4().hex[:8]
        self.alert_filter = alert_filter
        self.fetches_started = 0

        self._broadcaster = broadcaster
        self._on_publish = on_publish
        self._on_error = on_error
        self._poll_interval = poll_interval

        self._snapshot = SyncSnapshot()
        self._next_sequence = 0
        self._inflight: Optional[asyncio.Task] = None
        self._rerun = False
        self._closed = False
        self._poll_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ── state ──

    @property
    def snapshot(self) -> SyncSnapshot:
        return self._snapshot

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # ── triggers ──

    def _start(self) -> None:
        self._unsubscribe = self._broadcaster.feed.subscribe(self._on_change)
        self._poll_task = asyncio.create_task(self._poll_loop())
        self.invalidate("initial")

    def _on_change(self, reason: str) -> None:
        if reason in _VIEW_REASONS:
            self.invalidate(reason)

    async def _poll_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._poll_interval)
            self.invalidate("poll")

    def invalidate(self, reason: str = "manual") -> None:
        """Request a refresh; coalesces with one already in flight."""
        if self._closed:
            return
        if self.refreshing:
            self._rerun = True
            return
        logger.debug(
            "Refresh triggered (%s)", reason,
            extra={"subscription_id": self.subscription_id},
        )
        self._inflight = asyncio.create_task(self._drain())

    async def refresh(self) -> SyncSnapshot:
        """Trigger a refresh and wait until it (and any follow-up) settles."""
        self.invalidate("manual")
        if self._inflight is not None:
            await asyncio.wait({self._inflight})
        return self._snapshot

    async def wait_idle(self) -> None:
        while self.refreshing:
            await asyncio.wait({self._inflight})

    # ── pipeline ──

    async def _drain(self) -> None:
        while True:
            self._rerun = False
            await self._refresh_once()
            if self._closed or not self._rerun:
                return

    async def _refresh_once(self) -> None:
        self._next_sequence += 1
        sequence = self._next_sequence
        self.fetches_started += 1
        started = time.perf_counter()

        try:
            alerts, active_count, fetched_at = await self._broadcaster.fetch_view(self.alert_filter)
        except Exception as exc:
            await self._fail(sequence, exc)
            return

        if self._closed:
            logger.debug(
                "Discarding refresh #%d after teardown", sequence,
                extra={"subscription_id": self.subscription_id, "sequence": sequence},
            )
            return
        if sequence <= self._snapshot.sequence:
            logger.debug(
                "Discarding out-of-order refresh #%d", sequence,
                extra={"subscription_id": self.subscription_id, "sequence": sequence},
            )
            return

        self._snapshot = SyncSnapshot(
            alerts=alerts,
            active_count=active_count,
            last_updated=fetched_at,
            error=None,
            is_stale=False,
            is_loading=False,
            sequence=sequence,
        )
        logger.debug(
            "Published %d alerts (%d active) in %.1fms",
            len(alerts), active_count, (time.perf_counter() - started) * 1000,
            extra={"subscription_id": self.subscription_id, "sequence": sequence},
        )
        await _invoke(self._on_publish, self._snapshot)

    async def _fail(self, sequence: int, exc: Exception) -> None:
        if isinstance(exc, TransientSyncError):
            error = exc
        else:
            error = TransientSyncError(
                str(exc) or type(exc).__name__,
                subscription_id=self.subscription_id,
            )
            error.__cause__ = exc
        logger.warning(
            "Refresh #%d failed; keeping last snapshot: %s", sequence, error.message,
            exc_info=exc,
            extra={"subscription_id": self.subscription_id, "sequence": sequence},
        )
        if self._closed:
            return
        self._snapshot = replace(self._snapshot, error=error, is_stale=True, is_loading=False)
        await _invoke(self._on_error, error, self._snapshot)

    # ── teardown ──

    async def close(self) -> None:
        """Stop both triggers. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.wait({self._poll_task})
            self._poll_task = None
        self._broadcaster._forget(self)
        logger.debug("Subscription closed", extra={"subscription_id": self.subscription_id})


class SyncBroadcaster:
    """
    Fans the alert table out to any number of independent subscriptions.

    There is no lock shared between subscriptions; each runs its own
    pipeline against the store.
    """

    def __init__(
        self,
        store: AlertStore,
        lifecycle: LifecycleManager,
        feed: ChangeFeed,
        *,
        policy: Optional[AlertPolicy] = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self.feed = feed
        self._policy = policy or lifecycle.policy
        self._clock = clock
        self._subscriptions: Set[Subscription] = set()

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    async def fetch_view(
        self, alert_filter: AlertFilter,
    ) -> Tuple[List[Alert], int, datetime]:
        """
        One fetch → join → expire → count → filter pass.

        Returns (filtered alerts, unfiltered active count, evaluation time).
        """
        alerts = await self._store.list_alerts()
        references = await self._store.list_evidence([a.id for a in alerts])
        joined = [replace(a, evidence=references.get(a.id, [])) for a in alerts]

        now = self._clock()
        current = await self._lifecycle.apply_expiry(joined, now=now)
        active_count = sum(1 for a in current if a.status is AlertStatus.ACTIVE)
        visible = [a for a in current if alert_filter.matches(a, now)]
        return visible, active_count, now

    def subscribe(
        self,
        alert_filter: Optional[AlertFilter] = None,
        on_publish: Optional[PublishCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        *,
        poll_interval: Optional[float] = None,
    ) -> Subscription:
        """Start a subscription; must be called from a running event loop."""
        subscription = Subscription(
            self,
            alert_filter or AlertFilter(),
            on_publish,
            on_error,
            poll_interval if poll_interval is not None else self._policy.poll_interval_seconds,
        )
        self._subscriptions.add(subscription)
        subscription._start()
        logger.info(
            "Subscription opened (filter=%s)", subscription.alert_filter.to_dict(),
            extra={"subscription_id": subscription.subscription_id},
        )
        return subscription

    def invalidate_all(self, reason: str = "manual") -> None:
        for subscription in list(self._subscriptions):
            subscription.invalidate(reason)

    def _forget(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
