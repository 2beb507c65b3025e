"""
sql_store.py — Durable AlertStore on async SQLAlchemy 2.0.

Tables:

    identities       one row per reporter; contact_id and token unique
    alerts           one row per report; indexed by identity_id, status
    alert_evidence   photo references, ordered by insertion id

Every public method runs in its own session/transaction. Driver errors
surface as PersistenceError; rows are decoded through rows.py so a
corrupt record fails loudly instead of reaching the lifecycle.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Sequence

from sqlalchemy import DateTime, Float, Integer, String, Text, delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

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
    identity_from_row,
    identity_to_row,
)
from backend.app.alerts.store import group_evidence
from backend.app.core.database import Base
from backend.app.core.errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ORM Tables
# ═══════════════════════════════════════════════════════════════════════════

class IdentityTable(Base):
    __tablename__ = "identities"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(200))
    contact_id: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    token: Mapped[str] = mapped_column(String(16), unique=True, index=True)
    default_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    default_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    default_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class AlertTable(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(16), primary_key=True)
    identity_id: Mapped[str] = mapped_column(String(32), index=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    address_text: Mapped[str] = mapped_column(Text)
    neighborhood: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class EvidenceTable(Base):
    __tablename__ = "alert_evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[str] = mapped_column(String(16), index=True)
    reference: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlchemyAlertStore:
    """AlertStore backed by any async SQLAlchemy dialect (asyncpg, aiosqlite)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: Optional[ChangeFeed] = None,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError as exc:
            logger.warning("Constraint violation during %s: %s", operation, exc.orig)
            raise PersistenceError(operation, "constraint violation") from exc
        except SQLAlchemyError as exc:
            logger.error("Database error during %s: %s", operation, exc)
            raise PersistenceError(operation, str(exc)) from exc

    async def _notify(self, reason: str) -> None:
        if self._feed is not None:
            await self._feed.publish(reason)

    # ── alerts ──

    async def insert_alert(self, alert: Alert) -> Alert:
        async with self._transaction("insert_alert") as session:
            session.add(AlertTable(**alert_to_row(alert)))
        await self._notify(REASON_ALERTS)
        return alert

    async def update_alert(self, alert: Alert) -> Alert:
        async with self._transaction("update_alert") as session:
            row = await session.get(AlertTable, alert.id)
            if row is None:
                raise NotFoundError("Alert", id=alert.id)
            for column, value in alert_to_row(alert).items():
                setattr(row, column, value)
        await self._notify(REASON_ALERTS)
        return alert

    async def delete_alert(self, alert_id: str) -> bool:
        async with self._transaction("delete_alert") as session:
            row = await session.get(AlertTable, alert_id)
            if row is None:
                return False
            await session.execute(delete(EvidenceTable).where(EvidenceTable.alert_id == alert_id))
            await session.delete(row)
        await self._notify(REASON_ALERTS)
        return True

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        async with self._transaction("get_alert") as session:
            row = await session.get(AlertTable, alert_id)
            return alert_from_row(row) if row is not None else None

    async def list_alerts(
        self,
        *,
        identity_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
    ) -> List[Alert]:
        stmt = select(AlertTable).order_by(AlertTable.created_at.desc())
        if identity_id is not None:
            stmt = stmt.where(AlertTable.identity_id == identity_id)
        if status is not None:
            stmt = stmt.where(AlertTable.status == status.value)
        async with self._transaction("list_alerts") as session:
            rows = (await session.scalars(stmt)).all()
            return [alert_from_row(row) for row in rows]

    # ── evidence ──

    async def insert_evidence(self, alert_id: str, reference: str) -> EvidenceRecord:
        record = EvidenceRecord(alert_id=alert_id, reference=reference, created_at=_now())
        async with self._transaction("insert_evidence") as session:
            if await session.get(AlertTable, alert_id) is None:
                raise NotFoundError("Alert", id=alert_id)
            session.add(EvidenceTable(
                alert_id=record.alert_id,
                reference=record.reference,
                created_at=record.created_at,
            ))
        await self._notify(REASON_EVIDENCE)
        return record

    async def list_evidence(
        self, alert_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, List[str]]:
        if alert_ids is not None and not alert_ids:
            return {}
        stmt = select(EvidenceTable).order_by(EvidenceTable.id)
        if alert_ids is not None:
            stmt = stmt.where(EvidenceTable.alert_id.in_(list(alert_ids)))
        async with self._transaction("list_evidence") as session:
            rows = (await session.scalars(stmt)).all()
            return group_evidence([evidence_from_row(row) for row in rows])

    # ── identities ──

    async def insert_identity(self, identity: Identity) -> Identity:
        async with self._transaction("insert_identity") as session:
            session.add(IdentityTable(**identity_to_row(identity)))
        await self._notify(REASON_IDENTITIES)
        return identity

    async def update_identity(self, identity: Identity) -> Identity:
        async with self._transaction("update_identity") as session:
            row = await session.get(IdentityTable, identity.id)
            if row is None:
                raise NotFoundError("Identity", id=identity.id)
            for column, value in identity_to_row(identity).items():
                setattr(row, column, value)
        await self._notify(REASON_IDENTITIES)
        return identity

    async def delete_identity(self, identity_id: str) -> bool:
        async with self._transaction("delete_identity") as session:
            row = await session.get(IdentityTable, identity_id)
            if row is None:
                return False
            await session.delete(row)
        await self._notify(REASON_IDENTITIES)
        return True

    async def get_identity(self, identity_id: str) -> Optional[Identity]:
        async with self._transaction("get_identity") as session:
            row = await session.get(IdentityTable, identity_id)
            return identity_from_row(row) if row is not None else None

    async def _find_identity(self, operation: str, stmt) -> Optional[Identity]:
        async with self._transaction(operation) as session:
            row = (await session.scalars(stmt.limit(1))).first()
            return identity_from_row(row) if row is not None else None

    async def find_identity_by_contact(self, contact_id: str) -> Optional[Identity]:
        stmt = select(IdentityTable).where(IdentityTable.contact_id == contact_id)
        return await self._find_identity("find_identity_by_contact", stmt)

    async def find_identity_by_token(self, token: str) -> Optional[Identity]:
        stmt = select(IdentityTable).where(IdentityTable.token == token)
        return await self._find_identity("find_identity_by_token", stmt)

    async def list_identities(self) -> List[Identity]:
        stmt = select(IdentityTable).order_by(IdentityTable.created_at.desc())
        async with self._transaction("list_identities") as session:
            rows = (await session.scalars(stmt)).all()
            return [identity_from_row(row) for row in rows]
