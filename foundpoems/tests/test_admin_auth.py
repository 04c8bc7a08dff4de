"""
foundpoems/tests/test_admin_auth.py
Admin authentication: bearer JWT allow-list and legacy X-Admin-Key.
"""

from foundpoems.tests.mocks import make_admin_token


def _list(client, headers=None):
    return client.get("/api/admin/sessions", headers=headers or {})


def test_valid_admin_token(client):
    resp = _list(client, {"Authorization": f"Bearer {make_admin_token()}"})
    assert resp.status_code == 200
    assert resp.json() == {"sessions": [], "count": 0}


def test_email_claim_is_case_insensitive(client):
    resp = _list(client, {"Authorization": f"Bearer {make_admin_token(email='ADMIN@example.com')}"})
    assert resp.status_code == 200


def test_missing_token_is_401(client):
    resp = _list(client)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "admin_unauthorized"


def test_bad_signature_is_401(client):
    resp = _list(client, {"Authorization": f"Bearer {make_admin_token(secret='other-secret')}"})
    assert resp.status_code == 401


def test_expired_token_is_401(client):
    resp = _list(client, {"Authorization": f"Bearer {make_admin_token(expires_in=-60)}"})
    assert resp.status_code == 401


def test_non_admin_email_is_403(client):
    resp = _list(client, {"Authorization": f"Bearer {make_admin_token(email='reader@example.com')}"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_unconfigured_auth_is_503(client, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "ADMIN_JWT_SECRET", None)
    monkeypatch.setattr(test_settings, "ADMIN_EMAILS", "")
    resp = _list(client, {"Authorization": f"Bearer {make_admin_token()}"})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "admin_auth_unconfigured"


class TestLegacyKey:
    def test_legacy_mode_accepts_key(self, client, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "ADMIN_KEY", "s3cret")
        monkeypatch.setattr(test_settings, "ADMIN_AUTH_MODE", "legacy")
        assert _list(client, {"X-Admin-Key": "s3cret"}).status_code == 200
        assert _list(client, {"X-Admin-Key": "wrong"}).status_code == 401

    def test_jwt_mode_ignores_key(self, client, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "ADMIN_KEY", "s3cret")
        assert _list(client, {"X-Admin-Key": "s3cret"}).status_code == 401

    def test_hybrid_mode_blocks_key_in_prod(self, client, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "ADMIN_KEY", "s3cret")
        monkeypatch.setattr(test_settings, "ADMIN_AUTH_MODE", "hybrid")
        assert _list(client, {"X-Admin-Key": "s3cret"}).status_code == 200

        monkeypatch.setattr(test_settings, "ENVIRONMENT", "prod")
        assert _list(client, {"X-Admin-Key": "s3cret"}).status_code == 401
        assert _list(client, {"Authorization": f"Bearer {make_admin_token()}"}).status_code == 200
