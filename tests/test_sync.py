"""
test_sync.py — Tests for the sync broadcaster.

Covers:
    • fetch_view (join, lazy expiry, unfiltered active count, presets)
    • Initial, push-triggered and poll-triggered refreshes
    • Coalescing: events during a refresh cause at most one follow-up
    • Out-of-order results are discarded
    • Failure keeps the last good list and marks it stale
    • Teardown (idempotent, no publish after close)

Each scenario is an async function run with asyncio.run so the
subscription's tasks live on that test's event loop.

Run with:
    pytest tests/test_sync.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.alerts.change_feed import REASON_ALERTS, REASON_IDENTITIES
from backend.app.alerts.evidence import EvidenceItem
from backend.app.alerts.lifecycle import AlertDraft
from backend.app.alerts.models import FILTER_PRESETS, AlertStatus
from backend.app.core.errors import TransientSyncError

# Polling is disabled (hour-long interval) unless a test is about polling
NO_POLL = 3600.0


def _draft(identity_id: str = "reporter-1", lat: float = -9.9747, lng: float = -67.8107) -> AlertDraft:
    return AlertDraft(
        identity_id=identity_id,
        latitude=lat,
        longitude=lng,
        address_text="Avenida Ceará, 500",
        evidence=[EvidenceItem.from_reference("https://cdn.example.org/evidence/b2.jpg")],
    )


async def _settle() -> None:
    """Let freshly created tasks run up to their first real suspension."""
    for _ in range(5):
        await asyncio.sleep(0)


def _gate_store(store):
    """Make store.list_alerts block until the returned event is set."""
    gate = asyncio.Event()
    original = store.list_alerts

    async def gated(**kwargs):
        await gate.wait()
        return await original(**kwargs)

    store.list_alerts = gated
    return gate


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: fetch_view
# ═══════════════════════════════════════════════════════════════════════════

class TestFetchView:
    """Test the single-pass view computation."""

    def test_presets_and_active_count(self, services, clock):
        async def scenario():
            older = await services.lifecycle.create(_draft("reporter-1"))
            clock.advance(hours=7)
            newer = await services.lifecycle.create(_draft("reporter-2"))

            recent, active_count, _ = await services.broadcaster.fetch_view(FILTER_PRESETS["active-6h"])
            assert [a.id for a in recent] == [newer.id]
            # Count ignores the filter
            assert active_count == 2

            history, _, _ = await services.broadcaster.fetch_view(FILTER_PRESETS["history"])
            assert {a.id for a in history} == {older.id, newer.id}

        asyncio.run(scenario())

    def test_expiry_applied_before_count(self, services, store, clock):
        async def scenario():
            older = await services.lifecycle.create(_draft("reporter-1"))
            clock.advance(hours=7)
            newer = await services.lifecycle.create(_draft("reporter-2"))
            clock.advance(hours=20)

            visible, active_count, fetched_at = await services.broadcaster.fetch_view(
                FILTER_PRESETS["active-24h"],
            )
            assert [a.id for a in visible] == [newer.id]
            assert active_count == 1
            assert fetched_at == clock.now
            assert (await store.get_alert(older.id)).status is AlertStatus.EXPIRED

        asyncio.run(scenario())

    def test_evidence_joined(self, services):
        async def scenario():
            alert = await services.lifecycle.create(_draft())
            visible, _, _ = await services.broadcaster.fetch_view(FILTER_PRESETS["history"])
            assert visible[0].id == alert.id
            assert visible[0].evidence == ["https://cdn.example.org/evidence/b2.jpg"]

        asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Refresh triggers
# ═══════════════════════════════════════════════════════════════════════════

class TestRefreshTriggers:
    """Test initial, push and poll refreshes."""

    def test_initial_refresh_publishes(self, services):
        async def scenario():
            await services.lifecycle.create(_draft())
            published = []
            sub = services.broadcaster.subscribe(
                FILTER_PRESETS["active-24h"], on_publish=published.append, poll_interval=NO_POLL,
            )
            assert sub.snapshot.is_loading
            await sub.wait_idle()
            await sub.close()
            return published

        published = asyncio.run(scenario())
        assert len(published) == 1
        snapshot = published[0]
        assert len(snapshot.alerts) == 1
        assert snapshot.active_count == 1
        assert not snapshot.is_loading
        assert not snapshot.is_stale
        assert snapshot.sequence == 1

    def test_store_change_triggers_refresh(self, services):
        async def scenario():
            published = []
            sub = services.broadcaster.subscribe(on_publish=published.append, poll_interval=NO_POLL)
            await sub.wait_idle()
            await services.lifecycle.create(_draft())
            await sub.wait_idle()
            await sub.close()
            return published

        published = asyncio.run(scenario())
        assert published[0].alerts == []
        assert len(published[-1].alerts) == 1
        assert published[-1].active_count == 1

    def test_identity_changes_ignored(self, services, feed):
        async def scenario():
            sub = services.broadcaster.subscribe(poll_interval=NO_POLL)
            await sub.wait_idle()
            await feed.publish(REASON_IDENTITIES)
            refreshing = sub.refreshing
            await sub.close()
            return refreshing, sub.fetches_started

        refreshing, fetches = asyncio.run(scenario())
        assert not refreshing
        assert fetches == 1

    def test_poll_refreshes_without_events(self, services):
        async def scenario():
            sub = services.broadcaster.subscribe(poll_interval=0.01)
            await asyncio.sleep(0.1)
            await sub.close()
            return sub.fetches_started

        assert asyncio.run(scenario()) >= 2

    def test_async_callback_supported(self, services):
        async def scenario():
            seen = []

            async def on_publish(snapshot):
                await asyncio.sleep(0)
                seen.append(snapshot.sequence)

            sub = services.broadcaster.subscribe(on_publish=on_publish, poll_interval=NO_POLL)
            await sub.wait_idle()
            await sub.close()
            return seen

        assert asyncio.run(scenario()) == [1]

    def test_callback_failure_does_not_break_subscription(self, services):
        async def scenario():
            def on_publish(snapshot):
                raise RuntimeError("renderer crashed")

            sub = services.broadcaster.subscribe(on_publish=on_publish, poll_interval=NO_POLL)
            await sub.wait_idle()
            await services.lifecycle.create(_draft())
            await sub.wait_idle()
            await sub.close()
            return sub.snapshot

        snapshot = asyncio.run(scenario())
        assert len(snapshot.alerts) == 1

    def test_invalidate_all(self, services):
        async def scenario():
            subs = [services.broadcaster.subscribe(poll_interval=NO_POLL) for _ in range(3)]
            for sub in subs:
                await sub.wait_idle()
            services.broadcaster.invalidate_all()
            for sub in subs:
                await sub.wait_idle()
            counts = [sub.fetches_started for sub in subs]
            await services.broadcaster.close()
            return counts

        assert asyncio.run(scenario()) == [2, 2, 2]


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Coalescing & ordering
# ═══════════════════════════════════════════════════════════════════════════

class TestCoalescing:
    """Test single-flight refreshes."""

    def test_events_during_refresh_cause_one_follow_up(self, services, store, feed):
        async def scenario():
            gate = _gate_store(store)
            sub = services.broadcaster.subscribe(poll_interval=NO_POLL)
            await _settle()
            assert sub.fetches_started == 1
            assert sub.refreshing

            await feed.publish(REASON_ALERTS)
            await feed.publish(REASON_ALERTS)
            sub.invalidate()
            assert sub.fetches_started == 1

            gate.set()
            await sub.wait_idle()
            fetches = sub.fetches_started
            await sub.close()
            return fetches

        assert asyncio.run(scenario()) == 2

    def test_no_follow_up_without_events(self, services, store):
        async def scenario():
            gate = _gate_store(store)
            sub = services.broadcaster.subscribe(poll_interval=NO_POLL)
            await _settle()
            gate.set()
            await sub.wait_idle()
            await sub.close()
            return sub.fetches_started

        assert asyncio.run(scenario()) == 1

    def test_older_result_discarded(self, services, store):
        async def scenario():
            original = store.list_alerts
            gates = []

            async def gated(**kwargs):
                gate = asyncio.Event()
                gates.append(gate)
                await gate.wait()
                return await original(**kwargs)

            published = []
            sub = services.broadcaster.subscribe(on_publish=published.append, poll_interval=NO_POLL)
            await sub.wait_idle()
            store.list_alerts = gated

            # Two overlapping fetches that complete in reverse order
            slow = asyncio.create_task(sub._refresh_once())
            fast = asyncio.create_task(sub._refresh_once())
            await _settle()
            gates[1].set()
            await fast
            gates[0].set()
            await slow
            await sub.close()
            return published, sub.snapshot

        published, snapshot = asyncio.run(scenario())
        assert [s.sequence for s in published] == [1, 3]
        assert snapshot.sequence == 3


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Failure handling
# ═══════════════════════════════════════════════════════════════════════════

class TestFailure:
    """Test stale handling on fetch failure."""

    def test_failure_keeps_last_good_list(self, services, store):
        async def scenario():
            await services.lifecycle.create(_draft())
            errors = []
            sub = services.broadcaster.subscribe(
                on_error=lambda err, snap: errors.append((err, snap)),
                poll_interval=NO_POLL,
            )
            await sub.wait_idle()
            good = sub.snapshot

            original = store.list_alerts

            async def broken(**kwargs):
                raise RuntimeError("connection reset")

            store.list_alerts = broken
            stale = await sub.refresh()

            store.list_alerts = original
            recovered = await sub.refresh()
            await sub.close()
            return good, stale, recovered, errors

        good, stale, recovered, errors = asyncio.run(scenario())
        assert stale.is_stale
        assert [a.id for a in stale.alerts] == [a.id for a in good.alerts]
        assert stale.active_count == good.active_count
        assert isinstance(stale.error, TransientSyncError)
        assert "connection reset" in stale.error.message

        assert len(errors) == 1
        assert isinstance(errors[0][0], TransientSyncError)
        assert errors[0][1].is_stale

        assert not recovered.is_stale
        assert recovered.error is None

    def test_failure_before_first_success(self, services, store):
        async def scenario():
            async def broken(**kwargs):
                raise RuntimeError("offline")

            store.list_alerts = broken
            sub = services.broadcaster.subscribe(poll_interval=NO_POLL)
            await sub.wait_idle()
            await sub.close()
            return sub.snapshot

        snapshot = asyncio.run(scenario())
        assert snapshot.is_stale
        assert not snapshot.is_loading
        assert snapshot.alerts == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Teardown
# ═══════════════════════════════════════════════════════════════════════════

class TestTeardown:
    """Test Subscription.close."""

    def test_close_releases_feed_and_poll(self, services, feed):
        async def scenario():
            sub = services.broadcaster.subscribe(poll_interval=NO_POLL)
            await sub.wait_idle()
            assert feed.listener_count == 1
            await sub.close()
            await sub.close()  # idempotent
            listeners = feed.listener_count
            before = sub.fetches_started
            await feed.publish(REASON_ALERTS)
            sub.invalidate()
            await _settle()
            return sub, listeners, before

        sub, listeners, before = asyncio.run(scenario())
        assert sub.closed
        assert listeners == 0
        assert sub.fetches_started == before
        assert services.broadcaster.subscriptions == []

    def test_in_flight_refresh_does_not_publish_after_close(self, services, store):
        async def scenario():
            gate = _gate_store(store)
            published = []
            sub = services.broadcaster.subscribe(on_publish=published.append, poll_interval=NO_POLL)
            await _settle()
            assert sub.refreshing
            await sub.close()
            gate.set()
            await sub.wait_idle()
            return published, sub.snapshot

        published, snapshot = asyncio.run(scenario())
        assert published == []
        assert snapshot.is_loading

    def test_broadcaster_close_tears_down_everything(self, services, feed):
        async def scenario():
            subs = [services.broadcaster.subscribe(poll_interval=NO_POLL) for _ in range(2)]
            for sub in subs:
                await sub.wait_idle()
            await services.broadcaster.close()
            return subs

        subs = asyncio.run(scenario())
        assert all(sub.closed for sub in subs)
        assert feed.listener_count == 0


def test_snapshot_to_dict(services):
    async def scenario():
        await services.lifecycle.create(_draft())
        sub = services.broadcaster.subscribe(poll_interval=NO_POLL)
        await sub.wait_idle()
        await sub.close()
        return sub.snapshot.to_dict()

    payload = asyncio.run(scenario())
    assert payload["active_count"] == 1
    assert payload["alerts"][0]["status"] == "ACTIVE"
    assert payload["error"] is None
    assert payload["is_stale"] is False
    assert payload["last_updated"] is not None
