"""
foundpoems/tests/test_sessions_api.py
Sessions HTTP surface: create, detail, state changes, publish, ledger, poems.
"""

from datetime import datetime, timedelta, timezone

from foundpoems.tests.mocks import LOREM, invite_tokens

STARTS = datetime(2030, 4, 2, 15, 0, tzinfo=timezone.utc)


def _create_body(**overrides) -> dict:
    body = {
        "title": "Harbor Night",
        "startsAt": STARTS.isoformat(),
        "durationMinutes": 10,
        "source": {"title": "Harbor log", "body": LOREM},
        "inviteEmails": ["Ada@Example.com", "ada@example.com", "bo@example.com"],
    }
    body.update(overrides)
    return body


def _create(client, admin_headers, **overrides) -> dict:
    resp = client.post("/api/sessions", json=_create_body(**overrides), headers=admin_headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestCreate:
    def test_create_session(self, client, admin_headers):
        created = _create(client, admin_headers)
        assert created["wordCount"] == len(LOREM.split())
        assert created["inviteCount"] == 2
        assert created["endsAt"] == (STARTS + timedelta(minutes=10)).isoformat()
        assert set(invite_tokens(created["sessionId"])) == {"ada@example.com", "bo@example.com"}

    def test_duration_out_of_range(self, client, admin_headers):
        resp = client.post("/api/sessions", json=_create_body(durationMinutes=61), headers=admin_headers)
        assert resp.status_code == 400
        issues = resp.json()["error"]["issues"]
        assert any(i["field"] == "durationMinutes" for i in issues)

    def test_short_source_body_rejected(self, client, admin_headers):
        body = _create_body(source={"title": "Tiny", "body": "one two three"})
        resp = client.post("/api/sessions", json=body, headers=admin_headers)
        assert resp.status_code == 400

    def test_invalid_invite_email(self, client, admin_headers):
        resp = client.post("/api/sessions", json=_create_body(inviteEmails=["nope"]), headers=admin_headers)
        assert resp.status_code == 400

    def test_requires_admin(self, client):
        resp = client.post("/api/sessions", json=_create_body())
        assert resp.status_code == 401


class TestDetail:
    def test_detail_with_fixed_now(self, client, admin_headers):
        sid = _create(client, admin_headers)["sessionId"]
        resp = client.get(f"/api/sessions/{sid}", params={"now": (STARTS + timedelta(minutes=1)).isoformat()})
        assert resp.status_code == 200
        session = resp.json()["session"]
        assert session["phase"] == "active"
        assert session["status"] == "scheduled"
        assert session["source"]["title"] == "Harbor log"
        assert session["maxParticipants"] is None
        assert session["connected"] == 0
        assert all("token" not in inv for inv in session["invites"])

    def test_bad_now_parameter(self, client, admin_headers):
        sid = _create(client, admin_headers)["sessionId"]
        resp = client.get(f"/api/sessions/{sid}", params={"now": "yesterday"})
        assert resp.status_code == 400

    def test_unknown_session(self, client):
        resp = client.get("/api/sessions/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_words_listing(self, client, admin_headers):
        sid = _create(client, admin_headers, source={"title": "Log", "body": LOREM})["sessionId"]
        words = client.get(f"/api/sessions/{sid}/words").json()["words"]
        assert [w["text"] for w in words] == LOREM.split()
        assert words[0]["hidden"] is False


class TestStateAndPublish:
    def test_state_change_and_conflict(self, client, admin_headers):
        sid = _create(client, admin_headers)["sessionId"]

        ok = client.patch(f"/api/sessions/{sid}/state", json={"status": "active"}, headers=admin_headers)
        assert ok.status_code == 200
        assert ok.json()["session"]["status"] == "active"

        same = client.patch(f"/api/sessions/{sid}/state", json={"status": "active"}, headers=admin_headers)
        assert same.status_code == 200

        back = client.patch(f"/api/sessions/{sid}/state", json={"status": "scheduled"}, headers=admin_headers)
        assert back.status_code == 409
        assert back.json()["error"]["code"] == "conflict"

    def test_unknown_status_value(self, client, admin_headers):
        sid = _create(client, admin_headers)["sessionId"]
        resp = client.patch(f"/api/sessions/{sid}/state", json={"status": "archived"}, headers=admin_headers)
        assert resp.status_code == 400

    def test_publish_flow(self, client, admin_headers):
        sid = _create(client, admin_headers)["sessionId"]
        early = client.post(
            f"/api/sessions/{sid}/publish", json={"title": "Found", "body": "lights dim"}, headers=admin_headers
        )
        assert early.status_code == 409

        client.patch(f"/api/sessions/{sid}/state", json={"status": "closed"}, headers=admin_headers)
        resp = client.post(
            f"/api/sessions/{sid}/publish", json={"title": "Found", "body": "lights dim"}, headers=admin_headers
        )
        assert resp.status_code == 201
        poem = resp.json()["poem"]
        assert poem["sessionId"] == sid

        poems = client.get("/api/poems").json()["poems"]
        assert [p["id"] for p in poems] == [poem["id"]]
        detail = client.get(f"/api/sessions/{sid}").json()["session"]
        assert detail["status"] == "published"
        assert detail["poem"]["body"] == "lights dim"

    def test_admin_list_filters_by_status(self, client, admin_headers):
        first = _create(client, admin_headers)["sessionId"]
        _create(client, admin_headers)
        client.patch(f"/api/sessions/{first}/state", json={"status": "closed"}, headers=admin_headers)

        closed = client.get("/api/admin/sessions", params={"status": "closed"}, headers=admin_headers).json()
        assert closed["count"] == 1
        assert closed["sessions"][0]["id"] == first
        everything = client.get("/api/admin/sessions", headers=admin_headers).json()
        assert everything["count"] == 2


class TestHideWord:
    def test_hide_unknown_word(self, client):
        resp = client.patch("/api/words/missing/hide")
        assert resp.status_code == 404

    def test_hide_outside_window(self, client, admin_headers):
        sid = _create(client, admin_headers)["sessionId"]
        word_id = client.get(f"/api/sessions/{sid}/words").json()["words"][0]["id"]
        resp = client.patch(f"/api/words/{word_id}/hide")
        assert resp.status_code == 409

    def test_hide_is_idempotent(self, client, admin_headers):
        starts = datetime.now(timezone.utc) - timedelta(minutes=1)
        sid = _create(client, admin_headers, startsAt=starts.isoformat())["sessionId"]
        word_id = client.get(f"/api/sessions/{sid}/words").json()["words"][0]["id"]

        first = client.patch(f"/api/words/{word_id}/hide", headers={"x-actor-id": "ada"})
        second = client.patch(f"/api/words/{word_id}/hide", headers={"x-actor-id": "bo"})
        assert first.json()["changed"] is True
        assert second.json()["changed"] is False
        assert first.json()["word"]["hiddenAt"] == second.json()["word"]["hiddenAt"]

        detail = client.get(f"/api/sessions/{sid}").json()["session"]
        assert detail["metrics"]["hiddenWords"] == 1
