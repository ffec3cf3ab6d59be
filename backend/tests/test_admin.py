from __future__ import annotations

from conftest import upload
from relayum.extensions import db
from relayum.models import File, Share, User
from relayum.storage import storage_engine, user_tenant


def _user_id(app, username: str) -> int:
    with app.app_context():
        user_id = User.query.filter_by(username=username).one().id
        db.session.remove()
    return user_id


def test_non_admin_is_refused(client, alice_headers):
    response = client.get("/admin/users", headers=alice_headers)
    assert response.status_code == 403
    assert response.get_json()["code"] == "FORBIDDEN"


def test_list_users(client, admin_headers):
    users = client.get("/admin/users", headers=admin_headers).get_json()["users"]
    assert {user["username"] for user in users} == {"alice", "bob", "root"}
    assert all("quota" in user for user in users)


def test_quota_override_lifecycle(app, client, admin_headers, alice_headers):
    alice_id = _user_id(app, "alice")

    response = client.put(
        f"/admin/users/{alice_id}/overrides",
        json={"override_type": "disk_quota", "value": 100},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.get_json()["quota"]["quota_bytes"] == 100
    assert response.get_json()["quota"]["has_admin_override"] is True

    assert upload(client, alice_headers, b"x" * 64).status_code == 413

    invalid = client.put(
        f"/admin/users/{alice_id}/overrides", json={"override_type": "bandwidth", "value": 1}, headers=admin_headers
    )
    assert invalid.status_code == 400

    cleared = client.delete(f"/admin/users/{alice_id}/overrides/disk_quota", headers=admin_headers)
    assert cleared.status_code == 200
    assert cleared.get_json()["quota"]["has_admin_override"] is False
    assert upload(client, alice_headers, b"x" * 64).status_code == 201

    again = client.delete(f"/admin/users/{alice_id}/overrides/disk_quota", headers=admin_headers)
    assert again.status_code == 404


def test_expiration_override_applies_to_new_files(app, client, admin_headers, alice_headers):
    alice_id = _user_id(app, "alice")
    client.put(
        f"/admin/users/{alice_id}/overrides",
        json={"override_type": "file_expiration", "value": 0},
        headers=admin_headers,
    )

    stored = upload(client, alice_headers, b"forever").get_json()["files"][0]
    assert stored["expires_at"] is None


def test_validate_storage_reports_tampering(app, client, admin_headers, alice_headers):
    alice_id = _user_id(app, "alice")
    good = upload(client, alice_headers, b"good file").get_json()["files"][0]
    bad = upload(client, alice_headers, b"bad file!", "bad.txt").get_json()["files"][0]

    with app.app_context():
        path = storage_engine().blob_path(user_tenant(alice_id), bad["file_id"])
        data = bytearray(path.read_bytes())
        data[-1] ^= 0xFF
        path.write_bytes(bytes(data))
        db.session.remove()

    report = client.get(f"/admin/users/{alice_id}/validate-storage", headers=admin_headers).get_json()
    assert report["valid"] == 1
    assert report["invalid"] == 1
    statuses = {item["file_id"]: item["status"] for item in report["blobs"]}
    assert statuses[good["file_id"]] == "valid"
    assert statuses[bad["file_id"]] == "integrity-mismatch"
    assert report["orphaned_blobs"] == []
    assert report["missing_blobs"] == []


def test_recompute_usage(app, client, admin_headers, alice_headers):
    alice_id = _user_id(app, "alice")
    stored = upload(client, alice_headers, b"twelve bytes").get_json()["files"][0]

    with app.app_context():
        alice = db.session.get(User, alice_id)
        alice.disk_used_bytes = 999_999
        db.session.commit()

    response = client.post(f"/admin/users/{alice_id}/recompute-usage", headers=admin_headers).get_json()
    assert response["previous_bytes"] == 999_999
    assert response["current_bytes"] == stored["encrypted_size"]


def test_delete_user_removes_storage(app, client, admin_headers, alice_headers, bob_headers):
    alice_id = _user_id(app, "alice")
    file_id = upload(client, alice_headers, b"doomed").get_json()["files"][0]["id"]
    client.post("/shares", json={"file_id": file_id, "usernames": ["bob"]}, headers=alice_headers)

    assert client.delete(f"/admin/users/{_user_id(app, 'root')}", headers=admin_headers).status_code == 400

    response = client.delete(f"/admin/users/{alice_id}", headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["file_count"] == 1

    with app.app_context():
        assert db.session.get(User, alice_id) is None
        assert File.query.count() == 0
        assert Share.query.count() == 0
        assert not storage_engine().tenant_dir(user_tenant(alice_id)).exists()
        db.session.remove()

    assert client.get("/shares/received", headers=bob_headers).get_json()["shares"] == []


def test_infected_files_are_not_served(client, admin_headers, alice_headers):
    file_id = upload(client, alice_headers, b"eicar-ish").get_json()["files"][0]["id"]

    marked = client.put(
        f"/admin/files/{file_id}/scan-status",
        json={"status": "infected", "threat_name": "Test.Signature"},
        headers=admin_headers,
    )
    assert marked.status_code == 200
    assert marked.get_json()["file"]["virus_scan_status"] == "infected"

    response = client.get(f"/download/file/{file_id}", headers=alice_headers)
    assert response.status_code == 403
    assert response.get_json()["code"] == "FILE_INFECTED"


def test_ip_ban_blocks_requests(client, admin_headers):
    banned = {"X-Forwarded-For": "203.0.113.9"}
    assert client.get("/health", headers=banned).status_code == 200

    created = client.post(
        "/admin/ip-bans",
        json={"ip_address": "203.0.113.9", "reason": "abuse", "duration_hours": 2},
        headers=admin_headers,
    )
    assert created.status_code == 201
    ban_id = created.get_json()["ban"]["id"]

    blocked = client.get("/health", headers=banned)
    assert blocked.status_code == 403
    assert blocked.get_json()["code"] == "IP_BANNED"
    assert client.get("/health").status_code == 200

    assert len(client.get("/admin/ip-bans", headers=admin_headers).get_json()["bans"]) == 1
    assert client.delete(f"/admin/ip-bans/{ban_id}", headers=admin_headers).status_code == 200
    assert client.get("/health", headers=banned).status_code == 200


def test_event_listings(client, admin_headers):
    client.post("/auth/login", json={"username": "bob", "password": "wrong-password"})

    events = client.get("/admin/login-events?username=bob", headers=admin_headers).get_json()["events"]
    assert len(events) == 1
    assert events[0]["successful"] is False

    failures = client.get("/admin/audit-events?action=auth.login_failed", headers=admin_headers).get_json()["events"]
    assert len(failures) == 1
    assert failures[0]["success"] is False
