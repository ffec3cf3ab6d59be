from __future__ import annotations

import threading

import pytest

from conftest import ALICE_QUOTA, upload
from relayum.common.errors import QuotaExceeded
from relayum.extensions import db
from relayum.models import AdminOverride, File, OverrideType, User
from relayum.quota.accountant import (
    commit_reservation,
    effective_expiration_days,
    effective_quota,
    quota_snapshot,
    recompute_usage,
    reserve_quota,
    rollback_reservation,
)
from relayum.storage import storage_engine, user_tenant
from relayum.storage.container import HEADER_SIZE


def _alice() -> User:
    return User.query.filter_by(username="alice").one()


def test_reservation_commit_and_rollback(app):
    with app.app_context():
        alice = _alice()
        reservation = reserve_quota(alice.id, 500)
        db.session.refresh(alice)
        assert alice.disk_used_bytes == 500

        commit_reservation(reservation, 300)
        db.session.refresh(alice)
        assert alice.disk_used_bytes == 300

        second = reserve_quota(alice.id, 100)
        rollback_reservation(second)
        rollback_reservation(second)
        db.session.refresh(alice)
        assert alice.disk_used_bytes == 300
        assert second.state == "rolled_back"


def test_reservation_beyond_quota_is_refused(app):
    with app.app_context():
        alice = _alice()
        alice.disk_used_bytes = ALICE_QUOTA - 50
        db.session.commit()

        with pytest.raises(QuotaExceeded) as excinfo:
            reserve_quota(alice.id, 100)

        assert excinfo.value.status_code == 413
        assert excinfo.value.details["available_bytes"] == 50
        assert excinfo.value.details["quota_bytes"] == ALICE_QUOTA
        assert excinfo.value.details["has_admin_override"] is False
        db.session.refresh(alice)
        assert alice.disk_used_bytes == ALICE_QUOTA - 50


def test_overrides_take_precedence(app):
    with app.app_context():
        alice = _alice()
        assert effective_quota(alice) == ALICE_QUOTA
        assert effective_expiration_days(alice) == 30

        alice.file_expiration_days = 5
        assert effective_expiration_days(alice) == 5

        alice.overrides.append(AdminOverride(override_type=OverrideType.DISK_QUOTA, value=200))
        alice.overrides.append(AdminOverride(override_type=OverrideType.FILE_EXPIRATION, value=0))
        db.session.commit()

        snapshot = quota_snapshot(alice)
        assert snapshot["quota_bytes"] == 200
        assert snapshot["has_admin_override"] is True
        assert snapshot["effective_file_expiration_days"] == 0
        with pytest.raises(QuotaExceeded):
            reserve_quota(alice.id, 201)


def test_recompute_matches_live_files(client, app, alice_headers):
    assert upload(client, alice_headers, b"a" * 10, "a.txt").status_code == 201
    assert upload(client, alice_headers, b"b" * 20, "b.txt").status_code == 201

    with app.app_context():
        alice = _alice()
        expected = 10 + 20 + 2 * HEADER_SIZE
        assert alice.disk_used_bytes == expected

        previous, current = recompute_usage(alice.id)
        db.session.commit()
        assert previous == current == expected

        alice.disk_used_bytes = 1
        db.session.commit()
        previous, current = recompute_usage(alice.id)
        db.session.commit()
        assert (previous, current) == (1, expected)


def test_usage_endpoints(client, alice_headers):
    upload(client, alice_headers, b"hello world", "hello.txt")
    upload(client, alice_headers, b"{}", "data.json")

    quota = client.get("/users/quota", headers=alice_headers)
    assert quota.status_code == 200
    assert quota.get_json()["used_bytes"] == 11 + 2 + 2 * HEADER_SIZE

    usage = client.get("/users/usage", headers=alice_headers).get_json()
    assert usage["file_count"] == 2
    assert usage["total_size"] == 13
    assert {item["mime_type"] for item in usage["by_mime_type"]} == {"text/plain", "application/json"}

    recalculated = client.post("/users/recalculate-usage", headers=alice_headers)
    assert recalculated.status_code == 200
    assert recalculated.get_json()["previous_bytes"] == recalculated.get_json()["current_bytes"]


def test_parallel_uploads_never_exceed_quota(client, app, alice_headers):
    per_file = 100 + HEADER_SIZE
    fitting = 10
    attempts = 14
    with app.app_context():
        alice = _alice()
        alice.disk_quota_bytes = per_file * fitting
        db.session.commit()
        alice_id = alice.id

    statuses: list[int] = []
    lock = threading.Lock()
    barrier = threading.Barrier(attempts)

    def worker(index: int) -> None:
        local_client = app.test_client()
        barrier.wait()
        response = upload(local_client, alice_headers, bytes([index]) * 100, f"f{index}.bin")
        with lock:
            statuses.append(response.status_code)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=120)

    assert sorted(statuses) == [201] * fitting + [413] * (attempts - fitting)

    with app.app_context():
        alice = db.session.get(User, alice_id)
        assert alice.disk_used_bytes == per_file * fitting
        assert File.query.filter_by(owner_id=alice_id).count() == fitting
        assert len(list(storage_engine().iter_blobs(user_tenant(alice_id)))) == fitting
