"""
test_store.py — Tests for the persistence layer.

Covers:
    • Row decoding (malformed rows → PersistenceError, naive → UTC)
    • InMemoryAlertStore contract and change notifications
    • SqlAlchemyAlertStore against SQLite (aiosqlite)
    • Change feed fan-out and unsubscribe

Run with:
    pytest tests/test_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.alerts.change_feed import (
    REASON_ALERTS,
    REASON_EVIDENCE,
    REASON_IDENTITIES,
    LocalChangeFeed,
    build_change_feed,
)
from backend.app.alerts.evidence import EvidenceItem
from backend.app.alerts.lifecycle import AlertDraft
from backend.app.alerts.models import Alert, AlertStatus, Identity
from backend.app.alerts.rows import alert_from_row, alert_to_row, identity_from_row
from backend.app.alerts.sql_store import SqlAlchemyAlertStore
from backend.app.core.database import build_engine, build_session_factory, close_db, init_db
from backend.app.core.errors import NotFoundError, PersistenceError
from backend.app.services import build_services

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _alert(
    alert_id: str = "3FA2C91B",
    identity_id: str = "reporter-1",
    created_at: datetime = T0,
    status: AlertStatus = AlertStatus.ACTIVE,
) -> Alert:
    return Alert(
        id=alert_id,
        identity_id=identity_id,
        latitude=-9.9747,
        longitude=-67.8107,
        address_text="Rua Epaminondas Jácome, 10",
        created_at=created_at,
        updated_at=created_at,
        expires_at=created_at + timedelta(hours=24),
        status=status,
        resolved_at=created_at if status is AlertStatus.RESOLVED else None,
    )


def _identity(identity_id: str = "id-1", contact: str = "+5568992288071", token: str = "AB12CD") -> Identity:
    return Identity(
        id=identity_id,
        display_name="João Pereira",
        contact_id=contact,
        token=token,
        created_at=T0,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Row decoding
# ═══════════════════════════════════════════════════════════════════════════

class TestRows:
    """Test the row boundary."""

    def test_alert_row_round_trip(self):
        alert = _alert()
        decoded = alert_from_row(alert_to_row(alert))
        assert decoded == alert

    def test_unknown_status_rejected(self):
        row = {**alert_to_row(_alert()), "status": "FLOODED"}
        with pytest.raises(PersistenceError) as exc_info:
            alert_from_row(row)
        assert exc_info.value.details["operation"] == "decode_alert"
        assert exc_info.value.details["row_id"] == "3FA2C91B"

    def test_missing_column_rejected(self):
        row = alert_to_row(_alert())
        del row["expires_at"]
        with pytest.raises(PersistenceError):
            alert_from_row(row)

    def test_resolved_without_timestamp_rejected(self):
        row = {**alert_to_row(_alert()), "status": "RESOLVED", "resolved_at": None}
        with pytest.raises(PersistenceError):
            alert_from_row(row)

    def test_active_with_resolved_at_rejected(self):
        row = {**alert_to_row(_alert()), "resolved_at": T0}
        with pytest.raises(PersistenceError):
            alert_from_row(row)

    def test_naive_timestamps_read_as_utc(self):
        naive = T0.replace(tzinfo=None)
        row = {**alert_to_row(_alert()), "created_at": naive, "updated_at": naive,
               "expires_at": naive + timedelta(hours=24)}
        decoded = alert_from_row(row)
        assert decoded.created_at == T0
        assert decoded.created_at.tzinfo is not None

    def test_bad_contact_rejected(self):
        row = {"id": "x", "display_name": "A", "contact_id": "99228", "token": "AB12CD", "created_at": T0}
        with pytest.raises(PersistenceError):
            identity_from_row(row)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: In-memory store
# ═══════════════════════════════════════════════════════════════════════════

class TestInMemoryStore:
    """Test InMemoryAlertStore."""

    def test_reads_return_copies(self, store):
        alert = _alert()
        asyncio.run(store.insert_alert(alert))
        read = asyncio.run(store.get_alert(alert.id))
        assert read == alert
        assert read is not alert
        read.notes = "mutated"
        assert asyncio.run(store.get_alert(alert.id)).notes is None

    def test_duplicate_id_rejected(self, store):
        asyncio.run(store.insert_alert(_alert()))
        with pytest.raises(PersistenceError):
            asyncio.run(store.insert_alert(_alert()))

    def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            asyncio.run(store.update_alert(_alert()))

    def test_list_filters_and_order(self, store):
        asyncio.run(store.insert_alert(_alert("AAAA0001", "r1", T0)))
        asyncio.run(store.insert_alert(_alert("AAAA0002", "r1", T0 + timedelta(hours=1))))
        asyncio.run(store.insert_alert(_alert("AAAA0003", "r2", T0 + timedelta(hours=2), AlertStatus.RESOLVED)))

        assert [a.id for a in asyncio.run(store.list_alerts())] == ["AAAA0003", "AAAA0002", "AAAA0001"]
        assert [a.id for a in asyncio.run(store.list_alerts(identity_id="r1"))] == ["AAAA0002", "AAAA0001"]
        resolved = asyncio.run(store.list_alerts(status=AlertStatus.RESOLVED))
        assert [a.id for a in resolved] == ["AAAA0003"]

    def test_evidence_grouped_in_order(self, store):
        asyncio.run(store.insert_alert(_alert("AAAA0001")))
        asyncio.run(store.insert_alert(_alert("AAAA0002")))
        for alert_id, ref in [("AAAA0001", "a"), ("AAAA0002", "x"), ("AAAA0001", "b")]:
            asyncio.run(store.insert_evidence(alert_id, ref))
        assert asyncio.run(store.list_evidence()) == {"AAAA0001": ["a", "b"], "AAAA0002": ["x"]}
        assert asyncio.run(store.list_evidence(["AAAA0002"])) == {"AAAA0002": ["x"]}

    def test_evidence_for_unknown_alert(self, store):
        with pytest.raises(NotFoundError):
            asyncio.run(store.insert_evidence("MISSING1", "ref"))

    def test_delete_alert_removes_evidence(self, store):
        asyncio.run(store.insert_alert(_alert()))
        asyncio.run(store.insert_evidence("3FA2C91B", "ref"))
        assert asyncio.run(store.delete_alert("3FA2C91B")) is True
        assert asyncio.run(store.delete_alert("3FA2C91B")) is False
        assert asyncio.run(store.list_evidence()) == {}

    def test_identity_lookups(self, store):
        identity = _identity()
        asyncio.run(store.insert_identity(identity))
        assert asyncio.run(store.find_identity_by_contact("+5568992288071")).id == "id-1"
        assert asyncio.run(store.find_identity_by_token("AB12CD")).id == "id-1"
        assert asyncio.run(store.find_identity_by_token("ZZZZZZ")) is None

    def test_duplicate_contact_rejected(self, store):
        asyncio.run(store.insert_identity(_identity()))
        with pytest.raises(PersistenceError):
            asyncio.run(store.insert_identity(_identity("id-2", token="QQ11QQ")))

    def test_malformed_row_surfaces_as_persistence_error(self, store):
        asyncio.run(store.insert_alert(_alert()))
        store._alerts["3FA2C91B"]["latitude"] = "not-a-number"
        with pytest.raises(PersistenceError):
            asyncio.run(store.list_alerts())

    def test_mutations_publish_reasons(self, store, feed):
        reasons = []
        feed.subscribe(reasons.append)
        asyncio.run(store.insert_alert(_alert()))
        asyncio.run(store.insert_evidence("3FA2C91B", "ref"))
        asyncio.run(store.insert_identity(_identity()))
        asyncio.run(store.get_alert("3FA2C91B"))
        assert reasons == [REASON_ALERTS, REASON_EVIDENCE, REASON_IDENTITIES]


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Change feed
# ═══════════════════════════════════════════════════════════════════════════

class TestLocalChangeFeed:
    """Test in-process fan-out."""

    def test_unsubscribe_is_idempotent(self):
        feed = LocalChangeFeed()
        calls = []
        unsubscribe = feed.subscribe(calls.append)
        asyncio.run(feed.publish())
        unsubscribe()
        unsubscribe()
        asyncio.run(feed.publish())
        assert calls == [REASON_ALERTS]
        assert feed.listener_count == 0

    def test_failing_listener_isolated(self):
        feed = LocalChangeFeed()
        calls = []

        def broken(reason):
            raise RuntimeError("boom")

        feed.subscribe(broken)
        feed.subscribe(calls.append)
        asyncio.run(feed.publish(REASON_EVIDENCE))
        assert calls == [REASON_EVIDENCE]

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_change_feed("carrier-pigeon")


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: SQLAlchemy store
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def sql_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}"


def _run_sql(url, scenario):
    """Run ``scenario(store, feed)`` against a fresh SQLite database."""
    async def main():
        engine = build_engine(url)
        await init_db(engine)
        feed = LocalChangeFeed()
        store = SqlAlchemyAlertStore(build_session_factory(engine), feed=feed)
        try:
            return await scenario(store, feed)
        finally:
            await close_db(engine)

    return asyncio.run(main())


class TestSqlAlchemyStore:
    """Test SqlAlchemyAlertStore on SQLite."""

    def test_alert_round_trip(self, sql_url):
        async def scenario(store, feed):
            alert = _alert()
            await store.insert_alert(alert)
            return alert, await store.get_alert(alert.id)

        original, read = _run_sql(sql_url, scenario)
        assert read == original
        assert read.created_at.tzinfo is not None

    def test_update_and_filters(self, sql_url):
        async def scenario(store, feed):
            await store.insert_alert(_alert("AAAA0001", "r1", T0))
            await store.insert_alert(_alert("AAAA0002", "r1", T0 + timedelta(hours=1)))
            await store.insert_alert(_alert("AAAA0003", "r2", T0 + timedelta(hours=2)))
            resolved = _alert("AAAA0001", "r1", T0)
            resolved.status = AlertStatus.RESOLVED
            resolved.resolved_at = T0 + timedelta(hours=3)
            await store.update_alert(resolved)
            return (
                [a.id for a in await store.list_alerts()],
                [a.id for a in await store.list_alerts(identity_id="r1", status=AlertStatus.ACTIVE)],
                await store.get_alert("AAAA0001"),
            )

        everything, r1_active, resolved = _run_sql(sql_url, scenario)
        assert everything == ["AAAA0003", "AAAA0002", "AAAA0001"]
        assert r1_active == ["AAAA0002"]
        assert resolved.status is AlertStatus.RESOLVED
        assert resolved.resolved_at == T0 + timedelta(hours=3)

    def test_update_missing(self, sql_url):
        async def scenario(store, feed):
            with pytest.raises(NotFoundError):
                await store.update_alert(_alert())

        _run_sql(sql_url, scenario)

    def test_evidence(self, sql_url):
        async def scenario(store, feed):
            await store.insert_alert(_alert("AAAA0001"))
            await store.insert_alert(_alert("AAAA0002"))
            await store.insert_evidence("AAAA0001", "a")
            await store.insert_evidence("AAAA0002", "x")
            await store.insert_evidence("AAAA0001", "b")
            grouped = await store.list_evidence(["AAAA0001", "AAAA0002"])
            empty = await store.list_evidence([])
            await store.delete_alert("AAAA0001")
            after_delete = await store.list_evidence()
            return grouped, empty, after_delete

        grouped, empty, after_delete = _run_sql(sql_url, scenario)
        assert grouped == {"AAAA0001": ["a", "b"], "AAAA0002": ["x"]}
        assert empty == {}
        assert after_delete == {"AAAA0002": ["x"]}

    def test_identities(self, sql_url):
        async def scenario(store, feed):
            identity = _identity()
            await store.insert_identity(identity)
            identity.display_name = "João P."
            await store.update_identity(identity)
            by_token = await store.find_identity_by_token("AB12CD")
            by_contact = await store.find_identity_by_contact("+5568992288071")
            listed = await store.list_identities()
            deleted = await store.delete_identity("id-1")
            missing = await store.get_identity("id-1")
            return by_token, by_contact, listed, deleted, missing

        by_token, by_contact, listed, deleted, missing = _run_sql(sql_url, scenario)
        assert by_token.display_name == "João P."
        assert by_contact.id == "id-1"
        assert [i.id for i in listed] == ["id-1"]
        assert deleted is True
        assert missing is None

    def test_unique_contact_violation(self, sql_url):
        async def scenario(store, feed):
            await store.insert_identity(_identity())
            with pytest.raises(PersistenceError) as exc_info:
                await store.insert_identity(_identity("id-2", token="QQ11QQ"))
            return exc_info.value

        error = _run_sql(sql_url, scenario)
        assert error.details["operation"] == "insert_identity"
        assert error.status_code == 503

    def test_mutations_publish(self, sql_url):
        async def scenario(store, feed):
            reasons = []
            feed.subscribe(reasons.append)
            await store.insert_alert(_alert())
            await store.insert_evidence("3FA2C91B", "ref")
            await store.list_alerts()
            return reasons

        assert _run_sql(sql_url, scenario) == [REASON_ALERTS, REASON_EVIDENCE]

    def test_lifecycle_on_sql(self, sql_url, clock, policy):
        async def scenario(store, feed):
            services = build_services(store=store, feed=feed, policy=policy, clock=clock)
            alert = await services.lifecycle.create(AlertDraft(
                identity_id="reporter-1",
                latitude=-9.9747,
                longitude=-67.8107,
                address_text="Rua A, 1",
                evidence=[EvidenceItem.from_reference("ref-1")],
            ))
            clock.advance(hours=25)
            return await services.lifecycle.get(alert.id)

        read = _run_sql(sql_url, scenario)
        assert read.status is AlertStatus.EXPIRED
        assert read.evidence == ["ref-1"]
