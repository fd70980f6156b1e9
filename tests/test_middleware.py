# tests/test_middleware.py
"""Tests for app/transport/middleware.py: request ID, request logging, error handling."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.transport.middleware import (
    EMPTY_TWIML,
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)


def _build_app(raise_for: set[str] | None = None, log_requests: bool = False):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    # Order matters: ErrorHandling wraps RequestID
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=log_requests)
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    @app.post("/webhooks/twilio/sms")
    def twilio_endpoint():
        if "/webhooks/twilio/sms" in raise_for:
            raise RuntimeError("twilio boom")
        return {"ok": True}

    @app.post("/push/{notification_id}/delivered")
    def push_endpoint(notification_id: str):
        raise RuntimeError("push boom")

    return app


# ============================================================================
# RequestIDMiddleware
# ============================================================================

class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        resp = TestClient(_build_app()).get("/test")
        assert resp.status_code == 200
        # UUID4 with dashes
        assert len(resp.headers["X-Request-ID"]) == 36

    def test_preserves_existing_request_id(self):
        resp = TestClient(_build_app()).get("/test", headers={"X-Request-ID": "req-abc-123"})
        assert resp.headers["X-Request-ID"] == "req-abc-123"


class TestRequestLoggingMiddleware:
    def test_logged_request_passes_through(self):
        resp = TestClient(_build_app(log_requests=True)).get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}


# ============================================================================
# ErrorHandlingMiddleware
# ============================================================================

class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        client = TestClient(_build_app(), raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_sms_webhook_error_returns_twiml_200(self):
        client = TestClient(_build_app(raise_for={"/webhooks/twilio/sms"}), raise_server_exceptions=False)
        resp = client.post("/webhooks/twilio/sms")
        assert resp.status_code == 200
        assert "application/xml" in resp.headers.get("content-type", "")
        assert resp.text == EMPTY_TWIML

    def test_push_error_is_plain_500(self):
        client = TestClient(_build_app(), raise_server_exceptions=False)
        resp = client.post("/push/n-1/delivered")
        assert resp.status_code == 500
        assert resp.json()["error"] == "Internal server error"

    def test_generic_error_returns_500_with_request_id(self):
        client = TestClient(_build_app(raise_for={"/test"}, log_requests=True), raise_server_exceptions=False)
        resp = client.get("/test", headers={"X-Request-ID": "req-42"})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error", "request_id": "req-42"}
