"""
Service wiring — builds the alert components from settings.

One AlertServices instance is created per application (see main.py) and
stored on ``app.state.services``. Tests build their own with an
in-memory store and a fake clock.

    Setting               Values          Component
    ─────────────────     ────────────    ──────────────────────────────
    STORE_BACKEND         memory | sql    InMemoryAlertStore / SqlAlchemyAlertStore
    CHANGE_FEED_BACKEND   local | redis   LocalChangeFeed / RedisChangeFeed
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from backend.app.alerts.change_feed import ChangeFeed, RedisChangeFeed, build_change_feed
from backend.app.alerts.evidence import EvidenceUploader
from backend.app.alerts.guards import DedupGuard, QuotaEnforcer
from backend.app.alerts.identity import IdentityStore
from backend.app.alerts.lifecycle import LifecycleManager
from backend.app.alerts.models import AlertPolicy, _now
from backend.app.alerts.report_service import ReportService
from backend.app.alerts.store import AlertStore, InMemoryAlertStore
from backend.app.alerts.sync import SyncBroadcaster
from backend.app.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass
class AlertServices:
    """Every long-lived component the HTTP layer needs."""
    policy: AlertPolicy
    store: AlertStore
    feed: ChangeFeed
    uploader: Optional[EvidenceUploader]
    identities: IdentityStore
    lifecycle: LifecycleManager
    broadcaster: SyncBroadcaster
    reports: ReportService
    engine: Any = None  # AsyncEngine when STORE_BACKEND == "sql"

    async def start(self) -> None:
        if self.engine is not None:
            from backend.app.core.database import init_db
            await init_db(self.engine)
        if isinstance(self.feed, RedisChangeFeed):
            await self.feed.start()

    async def close(self) -> None:
        await self.broadcaster.close()
        await self.feed.close()
        if self.engine is not None:
            from backend.app.core.database import close_db
            await close_db(self.engine)


def build_services(
    config: Optional[Settings] = None,
    *,
    store: Optional[AlertStore] = None,
    feed: Optional[ChangeFeed] = None,
    uploader: Optional[EvidenceUploader] = None,
    policy: Optional[AlertPolicy] = None,
    clock: Callable[[], datetime] = _now,
) -> AlertServices:
    """
    Assemble the component graph.

    Any collaborator passed explicitly wins over the configured backend;
    a supplied ``store`` must already be wired to ``feed``. ``uploader``
    is the object-storage client for raw photo bytes; when omitted, only
    photo references are accepted.
    """
    config = config or default_settings
    policy = policy or AlertPolicy.from_settings(config)
    feed = feed or build_change_feed(config.CHANGE_FEED_BACKEND)
    engine = None

    if store is None:
        backend = config.STORE_BACKEND.lower()
        if backend == "sql":
            from backend.app.alerts.sql_store import SqlAlchemyAlertStore
            from backend.app.core.database import build_engine, build_session_factory

            engine = build_engine(config.DATABASE_URL)
            store = SqlAlchemyAlertStore(build_session_factory(engine), feed=feed)
        elif backend == "memory":
            store = InMemoryAlertStore(feed=feed)
        else:
            raise ValueError(f"Unknown store backend: {backend!r}")

    identities = IdentityStore(store, policy, clock)
    quota = QuotaEnforcer(store, policy, clock)
    lifecycle = LifecycleManager(store, quota, uploader=uploader, policy=policy, clock=clock)
    broadcaster = SyncBroadcaster(store, lifecycle, feed, policy=policy, clock=clock)
    reports = ReportService(
        store, identities, lifecycle, DedupGuard(store, policy, clock), clock=clock,
    )

    logger.info(
        "Services built (store=%s, feed=%s)",
        type(store).__name__, type(feed).__name__,
    )
    return AlertServices(
        policy=policy,
        store=store,
        feed=feed,
        uploader=uploader,
        identities=identities,
        lifecycle=lifecycle,
        broadcaster=broadcaster,
        reports=reports,
        engine=engine,
    )
