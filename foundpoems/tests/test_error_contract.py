"""Tests for normalized error responses."""

from fastapi import APIRouter
from fastapi.testclient import TestClient

from foundpoems.main import app


def test_not_found_has_standard_shape(client):
    resp = client.get("/api/sessions/nope")
    assert resp.status_code == 404
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "not_found"
    assert body["error"]["request_id"] == rid
    assert body["detail"] == "Session not found"


def test_incoming_request_id_is_echoed(client):
    resp = client.get("/api/sessions/nope", headers={"x-request-id": "rid-123"})
    assert resp.headers["x-request-id"] == "rid-123"
    assert resp.json()["error"]["request_id"] == "rid-123"


def test_validation_error_lists_issues(client, admin_headers):
    resp = client.post("/api/sessions", json={"title": "x"}, headers=admin_headers)
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    fields = {issue["field"] for issue in body["error"]["issues"]}
    assert {"title", "startsAt", "durationMinutes", "source"} <= fields


def test_unhandled_exception_is_internal_error():
    router = APIRouter()

    @router.get("/__boom")
    def boom():
        raise RuntimeError("kaboom")

    app.include_router(router)
    try:
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/__boom")
    finally:
        app.router.routes[:] = [r for r in app.router.routes if getattr(r, "path", None) != "/__boom"]

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal_error"
    assert "kaboom" not in body["error"]["message"]
