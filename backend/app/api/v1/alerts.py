"""
FastAPI routes: citizen flood alerts.

Public:
    POST   /api/v1/alerts                    — submit a report
    GET    /api/v1/alerts?preset=active-24h  — current list + active count
    GET    /api/v1/alerts/presets            — available list filters
    GET    /api/v1/alerts/stream             — live list (server-sent events)
    GET    /api/v1/alerts/{id}               — one alert

Reporter (X-Reporter-Token header):
    GET    /api/v1/me                        — identity behind the token
    GET    /api/v1/me/alerts                 — my alerts, any status
    POST   /api/v1/me/alerts/{id}/resolve
    POST   /api/v1/me/alerts/{id}/renew
    PATCH  /api/v1/me/alerts/{id}/notes

Operator:
    GET    /api/v1/admin/stats
    GET    /api/v1/admin/identities
    POST   /api/v1/admin/alerts/{id}/resolve
    POST   /api/v1/admin/alerts/{id}/reactivate
    POST   /api/v1/admin/expiry-sweep
    DELETE /api/v1/admin/alerts/{id}
    DELETE /api/v1/admin/identities/{id}

Handlers are thin: every rule lives in backend.app.alerts and errors
propagate to the handlers registered in core/errors.py.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Tuple

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import StreamingResponse

from backend.app.alerts.models import DEFAULT_FILTER_PRESET, FILTER_PRESETS, AlertFilter
from backend.app.api.schemas import NotesUpdate, ReportRequest
from backend.app.core.errors import PersistenceError, TransientSyncError, ValidationError
from backend.app.services import AlertServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/alerts", tags=["citizen-alerts"])
me_router = APIRouter(prefix="/api/v1/me", tags=["my-alerts"])
admin_router = APIRouter(prefix="/api/v1/admin", tags=["alert-admin"])

# Seconds between SSE comments that keep idle proxies from closing the stream
KEEPALIVE_SECONDS = 15.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _services(request: Request) -> AlertServices:
    return request.app.state.services


def _resolve_preset(preset: str) -> AlertFilter:
    alert_filter = FILTER_PRESETS.get(preset)
    if alert_filter is None:
        raise ValidationError(
            f"Unknown preset '{preset}'",
            field="preset", allowed=sorted(FILTER_PRESETS),
        )
    return alert_filter


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------

@router.post("", status_code=201)
async def submit_report(request: Request, body: ReportRequest):
    """
    Submit a flood report.

    The response carries the reporter token (keep it to manage your
    alerts later), ``nearby_alert_id`` when a recent report of yours is
    within 200 m, and ``partial`` when some photos could not be stored.
    """
    receipt = await _services(request).reports.submit_report(body.to_submission())
    return receipt.to_dict()


@router.get("")
async def list_alerts(
    request: Request,
    preset: str = Query(DEFAULT_FILTER_PRESET, examples=["active-24h"]),
):
    alert_filter = _resolve_preset(preset)
    try:
        alerts, active_count, fetched_at = await _services(request).broadcaster.fetch_view(alert_filter)
    except PersistenceError as exc:
        raise TransientSyncError(exc.message) from exc
    return {
        "preset": preset,
        "filter": alert_filter.to_dict(),
        "alerts": [a.to_dict() for a in alerts],
        "count": len(alerts),
        "active_count": active_count,
        "last_updated": fetched_at.isoformat(),
    }


@router.get("/presets")
async def list_presets():
    return {
        "default": DEFAULT_FILTER_PRESET,
        "presets": {name: f.to_dict() for name, f in FILTER_PRESETS.items()},
    }


@router.get("/stream")
async def stream_alerts(
    request: Request,
    preset: str = Query(DEFAULT_FILTER_PRESET),
):
    """
    Server-sent events: a ``snapshot`` event on every refresh and a
    ``stale`` event when a refresh fails. Each connection owns one sync
    subscription, torn down when the client disconnects.
    """
    alert_filter = _resolve_preset(preset)
    broadcaster = _services(request).broadcaster

    async def events() -> AsyncIterator[str]:
        queue: "asyncio.Queue[Tuple[str, Dict[str, Any]]]" = asyncio.Queue()
        subscription = broadcaster.subscribe(
            alert_filter,
            on_publish=lambda snap: queue.put_nowait(("snapshot", snap.to_dict())),
            on_error=lambda err, snap: queue.put_nowait(("stale", snap.to_dict())),
        )
        try:
            while not await request.is_disconnected():
                try:
                    event, payload = await asyncio.wait_for(queue.get(), KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(event, payload)
        finally:
            await subscription.close()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/{alert_id}")
async def get_alert(request: Request, alert_id: str):
    alert = await _services(request).reports.get_alert(alert_id.upper())
    return alert.to_dict()


# ---------------------------------------------------------------------------
# Reporter endpoints
# ---------------------------------------------------------------------------

@me_router.get("")
async def whoami(request: Request, token: str = Header(..., alias="X-Reporter-Token")):
    identity = await _services(request).reports.identify(token)
    return identity.to_dict()


@me_router.get("/alerts")
async def my_alerts(request: Request, token: str = Header(..., alias="X-Reporter-Token")):
    alerts = await _services(request).reports.my_alerts(token)
    return {"alerts": [a.to_dict() for a in alerts], "count": len(alerts)}


@me_router.post("/alerts/{alert_id}/resolve")
async def resolve_my_alert(
    request: Request,
    alert_id: str,
    token: str = Header(..., alias="X-Reporter-Token"),
):
    alert = await _services(request).reports.resolve_mine(token, alert_id.upper())
    return alert.to_dict()


@me_router.post("/alerts/{alert_id}/renew")
async def renew_my_alert(
    request: Request,
    alert_id: str,
    token: str = Header(..., alias="X-Reporter-Token"),
):
    alert = await _services(request).reports.renew_mine(token, alert_id.upper())
    return alert.to_dict()


@me_router.patch("/alerts/{alert_id}/notes")
async def update_my_notes(
    request: Request,
    alert_id: str,
    body: NotesUpdate,
    token: str = Header(..., alias="X-Reporter-Token"),
):
    alert = await _services(request).reports.update_notes_mine(
        token, alert_id.upper(), body.notes,
    )
    return alert.to_dict()


# ---------------------------------------------------------------------------
# Operator endpoints
# ---------------------------------------------------------------------------

@admin_router.get("/stats")
async def stats(request: Request):
    return await _services(request).reports.stats()


@admin_router.get("/identities")
async def list_identities(request: Request):
    identities = await _services(request).reports.list_identities()
    return {"identities": [i.to_dict() for i in identities], "count": len(identities)}


@admin_router.post("/alerts/{alert_id}/resolve")
async def admin_resolve(request: Request, alert_id: str):
    alert = await _services(request).reports.resolve_alert(alert_id.upper())
    return alert.to_dict()


@admin_router.post("/alerts/{alert_id}/reactivate")
async def admin_reactivate(request: Request, alert_id: str):
    alert = await _services(request).reports.reactivate_alert(alert_id.upper())
    return alert.to_dict()


@admin_router.post("/expiry-sweep")
async def expiry_sweep(request: Request):
    expired = await _services(request).lifecycle.sweep_expired()
    return {"expired": expired}


@admin_router.delete("/alerts/{alert_id}")
async def admin_delete_alert(request: Request, alert_id: str):
    await _services(request).reports.delete_alert(alert_id.upper())
    return {"deleted": alert_id.upper()}


@admin_router.delete("/identities/{identity_id}")
async def admin_delete_identity(request: Request, identity_id: str):
    removed = await _services(request).reports.delete_identity(identity_id)
    return {"deleted": identity_id, "alerts_removed": removed}
