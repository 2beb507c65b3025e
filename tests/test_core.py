"""
test_core.py — Tests for configuration, error bodies and log formatting.

Run with:
    pytest tests/test_core.py -v
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import timedelta

from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.app.alerts.models import AlertPolicy, GeoBounds
from backend.app.core.config import Settings
from backend.app.core.errors import QuotaExceededError, register_error_handlers
from backend.app.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    get_request_context,
    set_request_context,
    setup_logging,
)


def _record(msg: str = "Alert created", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="backend.app.alerts.lifecycle", level=logging.INFO,
        pathname=__file__, lineno=1, msg=msg, args=(), exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSettings:
    """Test Settings → AlertPolicy."""

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("ALERT_TTL_HOURS", "12")
        monkeypatch.setenv("MAX_ACTIVE_ALERTS_PER_IDENTITY", "5")
        policy = AlertPolicy.from_settings(Settings())
        assert policy.ttl == timedelta(hours=12)
        assert policy.max_active_per_identity == 5

    def test_defaults_match_policy(self):
        policy = AlertPolicy.from_settings(Settings())
        assert policy == AlertPolicy()
        assert policy.bounds == GeoBounds(north=-9.85, south=-10.15, east=-67.65, west=-67.95)


class TestErrorHandlers:
    """Test the JSON error envelope."""

    def test_domain_error_body(self):
        app = FastAPI()
        register_error_handlers(app)

        @app.get("/boom")
        async def boom():
            raise QuotaExceededError("id-1", active_count=3, limit=3)

        response = TestClient(app).get("/boom")
        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "QUOTA_EXCEEDED"
        assert error["details"]["limit"] == 3

    def test_unhandled_error_is_500(self):
        app = FastAPI()
        register_error_handlers(app)

        @app.get("/crash")
        async def crash():
            raise RuntimeError("unexpected")

        response = TestClient(app, raise_server_exceptions=False).get("/crash")
        assert response.status_code == 500


class TestJSONFormatter:
    """Test structured log output."""

    def test_extra_keys_promoted(self):
        payload = json.loads(JSONFormatter().format(_record(alert_id="3FA2C91B", sequence=4)))
        assert payload["message"] == "Alert created"
        assert payload["alert_id"] == "3FA2C91B"
        assert payload["sequence"] == 4
        assert "identity_id" not in payload

    def test_request_context_included(self):
        set_request_context(request_id="abc123", method="GET")
        try:
            payload = json.loads(JSONFormatter().format(_record()))
            assert payload["context"]["request_id"] == "abc123"
        finally:
            set_request_context()
        assert get_request_context() == {}

    def test_exception_summarised(self):
        try:
            raise ValueError("bad row")
        except ValueError:
            record = _record(msg="failed")
            record.exc_info = sys.exc_info()
        payload = json.loads(JSONFormatter().format(record))
        assert payload["exception"] == {"type": "ValueError", "message": "bad row"}


class TestPrettyFormatterAndSetup:
    """Test console output and handler installation."""

    def test_domain_ids_tagged(self):
        line = PrettyFormatter().format(_record(alert_id="3FA2C91B", subscription_id="ab12cd34"))
        assert "Alert created" in line
        assert "alert=3FA2C91B" in line
        assert "sub=ab12cd34" in line

    def test_setup_installs_single_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(json_logs=True)
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            setup_logging(json_logs=False)
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, PrettyFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
