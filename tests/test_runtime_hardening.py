from fastapi import FastAPI
from fastapi.testclient import TestClient

from servicebook.config import settings
from servicebook.core.middleware import RequestTracingMiddleware
from servicebook.main import app


def test_health_ready_ok_without_redis():
    previous_redis = settings.REDIS_URL
    try:
        settings.REDIS_URL = ""
        client = TestClient(app)
        response = client.get("/health/ready")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ready"
        assert payload["checks"]["db"] == "ok"
        assert payload["checks"]["redis"] == "skipped"
    finally:
        settings.REDIS_URL = previous_redis


def test_ping_and_request_id_propagation():
    client = TestClient(app)
    response = client.get("/ping", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert response.headers.get("X-Request-ID") == "req-123"

    generated = client.get("/health")
    assert generated.headers.get("X-Request-ID")


def test_security_headers_are_present():
    previous_security_headers = bool(settings.SECURITY_HEADERS_ENABLED)
    try:
        settings.SECURITY_HEADERS_ENABLED = True
        client = TestClient(app)
        response = client.get("/health")
        assert response.status_code == 200
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("Referrer-Policy") == "no-referrer"
    finally:
        settings.SECURITY_HEADERS_ENABLED = previous_security_headers


def test_maintenance_mode_blocks_business_endpoints():
    previous_maintenance_mode = bool(settings.MAINTENANCE_MODE)
    previous_retry_after = int(settings.MAINTENANCE_RETRY_AFTER_SECONDS)
    try:
        settings.MAINTENANCE_MODE = True
        settings.MAINTENANCE_RETRY_AFTER_SECONDS = 30
        client = TestClient(app)
        blocked = client.get("/api/service-points")
        assert blocked.status_code == 503
        assert blocked.headers.get("Retry-After") == "30"
        assert blocked.headers.get("X-Request-ID")

        health = client.get("/health")
        assert health.status_code == 200
    finally:
        settings.MAINTENANCE_MODE = previous_maintenance_mode
        settings.MAINTENANCE_RETRY_AFTER_SECONDS = previous_retry_after


def test_read_only_mode_blocks_mutations_but_allows_reads():
    previous_read_only = bool(settings.MAINTENANCE_READ_ONLY)
    try:
        settings.MAINTENANCE_READ_ONLY = True
        client = TestClient(app)
        blocked = client.post(
            "/api/partners",
            json={"email": "ro@tyremasters.com", "company_name": "Read Only", "phone": "12345"},
        )
        assert blocked.status_code == 503

        allowed = client.get("/api/v2/regions")
        assert allowed.status_code == 200
    finally:
        settings.MAINTENANCE_READ_ONLY = previous_read_only


def test_unexpected_errors_return_500_without_trace():
    broken = FastAPI()
    broken.add_middleware(RequestTracingMiddleware)

    @broken.get("/boom")
    def boom():
        raise RuntimeError("database password is hunter2")

    client = TestClient(broken)
    response = client.get("/boom", headers={"X-Request-ID": "req-boom"})
    assert response.status_code == 500
    assert response.json() == {"detail": "Internal Server Error", "request_id": "req-boom"}
    assert response.headers.get("X-Request-ID") == "req-boom"
    assert "hunter2" not in response.text
    assert "Traceback" not in response.text
