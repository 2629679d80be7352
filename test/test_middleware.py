"""
Tests for structured logging and request context propagation
"""

import json
import logging

from medtenancy.middleware.logging import (
    RequestContextFilter,
    StructuredFormatter,
    request_id_var,
    tenant_code_var,
)


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("medtenancy.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_json_fields(self):
        record = _record(method="GET", path="/api/telemedicine/sessions", status_code=200)
        RequestContextFilter().filter(record)

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["method"] == "GET"
        assert data["status_code"] == 200
        assert "tenant_code" in data

    def test_context_vars_are_attached(self):
        request_token = request_id_var.set("req-123")
        tenant_token = tenant_code_var.set("clinic_a")
        try:
            record = _record()
            RequestContextFilter().filter(record)
        finally:
            request_id_var.reset(request_token)
            tenant_code_var.reset(tenant_token)

        data = json.loads(StructuredFormatter().format(record))
        assert data["request_id"] == "req-123"
        assert data["tenant_code"] == "clinic_a"


class TestRequestIdHeader:
    def test_incoming_request_id_is_echoed(self, client):
        response = client.get("/api/tenants", headers={"X-Request-ID": "trace-42"})
        assert response.headers["X-Request-ID"] == "trace-42"

    def test_request_id_is_generated(self, client):
        response = client.get("/api/tenants")
        assert len(response.headers["X-Request-ID"]) == 36
