from __future__ import annotations

import pytest

from conftest import ALICE_QUOTA, login
from relayum.common.throttle import Rate, parse_rate
from relayum.extensions import db
from relayum.models import AuditEvent, LoginEvent, User


def test_register_login_and_me(app, client):
    registered = client.post("/auth/register", json={"username": "carol", "password": "carolpass", "email": "c@x.io"})
    assert registered.status_code == 201
    body = registered.get_json()
    assert body["user"]["username"] == "carol"
    assert body["user"]["disk_quota_bytes"] == ALICE_QUOTA
    assert body["access_token"]
    assert body["refresh_token"]

    headers = login(client, "carol", "carolpass")
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.get_json()["user"]["username"] == "carol"
    assert me.get_json()["disk_usage"]["used_bytes"] == 0

    with app.app_context():
        carol = User.query.filter_by(username="carol").one()
        assert carol.master_key_sealed
        assert AuditEvent.query.filter_by(action="auth.register").count() == 1
        db.session.remove()


def test_register_validation(client):
    assert client.post("/auth/register", json={"username": "ab", "password": "longenough"}).status_code == 400
    assert client.post("/auth/register", json={"username": "dave", "password": "short"}).status_code == 400

    duplicate = client.post("/auth/register", json={"username": "ALICE", "password": "longenough"})
    assert duplicate.status_code == 409
    assert duplicate.get_json()["code"] == "USER_EXISTS"


class TestRegistrationClosed:
    @pytest.fixture
    def config_overrides(self) -> dict:
        return {"ALLOW_REGISTRATION": False}

    def test_register_refused(self, client):
        response = client.post("/auth/register", json={"username": "erin", "password": "erinpass1"})
        assert response.status_code == 403
        assert response.get_json()["code"] == "REGISTRATION_DISABLED"


def test_login_events_are_recorded(app, client):
    bad = client.post("/auth/login", json={"username": "alice", "password": "wrong-password"})
    assert bad.status_code == 401
    assert bad.get_json()["code"] == "INVALID_CREDENTIALS"
    login(client)

    with app.app_context():
        events = LoginEvent.query.filter_by(username="alice").order_by(LoginEvent.id).all()
        assert [event.successful for event in events] == [False, True]
        assert AuditEvent.query.filter_by(action="auth.login_failed").count() == 1
        db.session.remove()


def test_login_rate_limit(client):
    for _ in range(5):
        response = client.post("/auth/login", json={"username": "bob", "password": "not-his-password"})
        assert response.status_code == 401

    blocked = client.post("/auth/login", json={"username": "bob", "password": "bobpass12"})
    assert blocked.status_code == 429
    assert blocked.get_json()["retry_after"] > 0


def test_protected_routes_require_token(client):
    response = client.get("/auth/me")
    assert response.status_code == 401
    assert response.get_json()["code"] == "UNAUTHENTICATED"

    garbage = client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert garbage.status_code == 401


def test_refresh_and_password_change(client):
    tokens = client.post("/auth/login", json={"username": "alice", "password": "alicepass"}).get_json()

    refreshed = client.post("/auth/refresh", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert refreshed.status_code == 200
    headers = {"Authorization": f"Bearer {refreshed.get_json()['access_token']}"}

    wrong = client.post("/auth/password", json={"current_password": "nope", "new_password": "freshpass"}, headers=headers)
    assert wrong.status_code == 401

    changed = client.post(
        "/auth/password", json={"current_password": "alicepass", "new_password": "freshpass"}, headers=headers
    )
    assert changed.status_code == 200
    login(client, "alice", "freshpass")


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}


def test_parse_rate():
    assert parse_rate("20/min") == Rate(20, 60)
    assert parse_rate("5/30s") == Rate(5, 30)
    assert parse_rate("100/hours") == Rate(100, 3600)
    assert parse_rate("7") == Rate(7, 60)
    assert parse_rate("garbage") == Rate(600, 60)


class TestRequestThrottle:
    @pytest.fixture
    def config_overrides(self) -> dict:
        return {"FEATURE_FLAGS": {"security.rate_limit": True}, "RATE_LIMIT_DEFAULT": "2/min"}

    def test_default_class_is_limited(self, client):
        assert client.get("/health").status_code == 200
        assert client.get("/health").status_code == 200

        limited = client.get("/health")
        assert limited.status_code == 429
        assert limited.get_json()["code"] == "RATE_LIMITED"
        assert limited.get_json()["retry_after"] >= 1
