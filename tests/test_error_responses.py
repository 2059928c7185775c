"""Tests for structured error responses with request_id."""
from __future__ import annotations

import json
import logging

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from app.errors import error_detail, register_error_handlers
from app.logging import JsonLogFormatter
from app.observability import ObservabilityMiddleware


class _Body(BaseModel):
    amount: int


@pytest.fixture
def app_with_errors() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)

    @app.get("/ok")
    def ok():
        return {"ok": True}

    @app.get("/http-error")
    def http_error():
        raise HTTPException(status_code=403, detail="Forbidden")

    @app.get("/domain-error")
    def domain_error():
        raise HTTPException(
            status_code=404,
            detail=error_detail(
                "entitlement_not_found", "No active entitlement", {"product": "p1"}
            ),
        )

    @app.get("/auth-error")
    def auth_error():
        raise HTTPException(
            status_code=401,
            detail=error_detail("unauthorized", "Missing bearer token"),
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.post("/validate")
    def validate(body: _Body):
        return body

    @app.get("/crash")
    def crash():
        raise RuntimeError("boom")

    return app


@pytest.fixture
def client(app_with_errors: FastAPI) -> TestClient:
    return TestClient(app_with_errors, raise_server_exceptions=False)


class TestErrorResponses:
    def test_http_error_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/http-error")
        assert resp.status_code == 403
        body = resp.json()
        assert "request_id" in body
        assert body["code"] == "http_403"
        assert body["message"] == "Forbidden"

    def test_domain_error_keeps_its_code(self, client: TestClient) -> None:
        resp = client.get("/domain-error")
        assert resp.status_code == 404
        body = resp.json()
        assert body["code"] == "entitlement_not_found"
        assert body["message"] == "No active entitlement"
        assert body["details"] == {"product": "p1"}

    def test_headers_pass_through(self, client: TestClient) -> None:
        resp = client.get("/auth-error")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_unknown_route_uses_envelope(self, client: TestClient) -> None:
        resp = client.get("/nowhere")
        assert resp.status_code == 404
        assert resp.json()["code"] == "http_404"

    def test_validation_error(self, client: TestClient) -> None:
        resp = client.post("/validate", json={"amount": "lots"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["details"][0]["loc"] == ["body", "amount"]

    def test_unhandled_exception_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/crash")
        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "internal_error"
        assert body["message"] == "Internal server error"
        assert "request_id" in body
        # Should NOT leak exception details
        assert body["details"] is None

    def test_request_id_propagated_from_header(self, client: TestClient) -> None:
        custom_id = "test-request-id-12345"
        resp = client.get("/http-error", headers={"X-Request-Id": custom_id})
        assert resp.json()["request_id"] == custom_id

    def test_success_response_has_request_id_header(self, client: TestClient) -> None:
        resp = client.get("/ok")
        assert resp.status_code == 200
        assert "x-request-id" in resp.headers


class TestJsonLogFormatter:
    def test_includes_event_extras(self) -> None:
        record = logging.LogRecord(
            "app.services.billing.webhooks", logging.INFO, __file__, 1,
            "Webhook %s", ("processed",), None,
        )
        record.event_id = "evt_1"
        record.event_type = "invoice.paid"
        record.user_id = "user_1"

        payload = json.loads(JsonLogFormatter().format(record))

        assert payload["message"] == "Webhook processed"
        assert payload["level"] == "INFO"
        assert payload["event_id"] == "evt_1"
        assert payload["event_type"] == "invoice.paid"
        assert payload["user_id"] == "user_1"
        assert "product_id" not in payload
