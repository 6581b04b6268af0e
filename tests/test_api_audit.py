"""
tests/test_api_audit.py -- Integration tests for GET /api/v1/audit/events and /stats.

Covers:
  - requires a bearer token with the operator role
  - events written by the session flows are listed newest first
  - action / actorId filters and the limit bound
  - /stats counts events per action, optionally within a time range
"""

from __future__ import annotations

from conftest import OPERATOR_EMAIL, OPERATOR_SECRET

EVENTS = "/api/v1/audit/events"
STATS = "/api/v1/audit/stats"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestAuditEvents:
    def test_requires_authentication(self, api_client) -> None:
        client, _services, _operator = api_client
        assert client.get(EVENTS).status_code == 401

    def test_lists_session_events(self, api_client, login_tokens) -> None:
        client, _services, operator = api_client
        resp = client.get(EVENTS, headers=_bearer(login_tokens["accessToken"]))
        assert resp.status_code == 200, resp.text
        events = resp.json()
        # Provisioning (CREATE) then login (LOGIN), newest first.
        assert [e["action"] for e in events] == ["LOGIN", "CREATE"]
        assert events[0]["actorId"] == operator.id
        assert events[0]["entityType"] == "operator"
        assert events[0]["createdAt"]

    def test_filters(self, api_client, login_tokens) -> None:
        client, _services, operator = api_client
        client.post("/api/v1/auth/login", json={"email": OPERATOR_EMAIL, "secret": OPERATOR_SECRET})
        headers = _bearer(login_tokens["accessToken"])

        logins = client.get(EVENTS, params={"action": "LOGIN"}, headers=headers).json()
        assert len(logins) == 2
        assert {e["action"] for e in logins} == {"LOGIN"}

        mine = client.get(EVENTS, params={"actorId": operator.id, "limit": 1}, headers=headers).json()
        assert len(mine) == 1

    def test_limit_out_of_range_is_400(self, api_client, login_tokens) -> None:
        client, _services, _operator = api_client
        resp = client.get(EVENTS, params={"limit": 501}, headers=_bearer(login_tokens["accessToken"]))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_failed"

    def test_unknown_action_is_400(self, api_client, login_tokens) -> None:
        client, _services, _operator = api_client
        resp = client.get(EVENTS, params={"action": "EXPLODE"}, headers=_bearer(login_tokens["accessToken"]))
        assert resp.status_code == 400


class TestAuditStats:
    def test_counts_per_action(self, api_client, login_tokens) -> None:
        client, _services, _operator = api_client
        client.post("/api/v1/auth/login", json={"email": OPERATOR_EMAIL, "secret": OPERATOR_SECRET})
        resp = client.get(STATS, headers=_bearer(login_tokens["accessToken"]))
        assert resp.status_code == 200, resp.text
        assert resp.json() == {"total": 3, "byAction": {"CREATE": 1, "LOGIN": 2}}

    def test_future_window_is_empty(self, api_client, login_tokens) -> None:
        client, _services, _operator = api_client
        resp = client.get(
            STATS,
            params={"since": "2999-01-01T00:00:00+00:00"},
            headers=_bearer(login_tokens["accessToken"]),
        )
        assert resp.json() == {"total": 0, "byAction": {}}

    def test_requires_authentication(self, api_client) -> None:
        client, _services, _operator = api_client
        assert client.get(STATS).status_code == 401
