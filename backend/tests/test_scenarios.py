"""End-to-end flows through the HTTP surface."""
from __future__ import annotations

import io
import logging
import zipfile
from datetime import timedelta

import pytest

from conftest import ALICE_QUOTA, upload
from relayum.common.errors import IntegrityError
from relayum.extensions import db
from relayum.models import File, Share, User, utc_now
from relayum.storage import storage_engine, user_tenant
from relayum.storage.container import HEADER_SIZE


def _flip_byte(app, file_pk: int, offset: int) -> None:
    with app.app_context():
        row = db.session.get(File, file_pk)
        path = storage_engine().blob_path(user_tenant(row.owner_id), row.file_id)
        data = bytearray(path.read_bytes())
        data[offset] ^= 0x01
        path.write_bytes(bytes(data))
        db.session.remove()


def test_upload_and_download_round_trip(client, alice_headers):
    response = upload(client, alice_headers, b"hello world", "hello.txt")

    assert response.status_code == 201
    body = response.get_json()
    stored = body["files"][0]
    assert stored["filename"] == "hello.txt"
    assert stored["size"] == 11
    assert stored["encrypted"] is True
    assert body["disk_usage"]["used_bytes"] == 11 + HEADER_SIZE
    assert body["disk_usage"]["quota_bytes"] == ALICE_QUOTA

    download = client.get(f"/download/file/{stored['id']}", headers=alice_headers)
    assert download.status_code == 200
    assert download.data == b"hello world"
    assert download.headers["Content-Length"] == "11"
    assert 'filename="hello.txt"' in download.headers["Content-Disposition"]


def test_upload_refused_when_quota_is_short(app, client, alice_headers):
    with app.app_context():
        alice = User.query.filter_by(username="alice").one()
        alice.disk_used_bytes = ALICE_QUOTA - 50
        db.session.commit()

    response = upload(client, alice_headers, b"x" * 100, "big.bin")

    assert response.status_code == 413
    body = response.get_json()
    assert body["code"] == "QUOTA_EXCEEDED"
    assert body["available_bytes"] == 50

    with app.app_context():
        alice = User.query.filter_by(username="alice").one()
        assert alice.disk_used_bytes == ALICE_QUOTA - 50
        assert File.query.count() == 0
        assert list(storage_engine().iter_blobs(user_tenant(alice.id))) == []
        db.session.remove()


def test_password_protected_public_share(client, alice_headers):
    file_id = upload(client, alice_headers, b"hello world").get_json()["files"][0]["id"]
    expires_at = (utc_now() + timedelta(hours=1)).isoformat()
    created = client.post(
        "/shares",
        json={"file_id": file_id, "public": True, "password": "s3cret", "expires_at": expires_at},
        headers=alice_headers,
    )
    assert created.status_code == 201
    share = created.get_json()["shares"][0]
    assert share["has_password"] is True
    token = share["public_token"]

    locked = client.get(f"/shares/public/{token}")
    assert locked.status_code == 401
    assert locked.get_json()["error"] == "Password required"

    wrong = client.get(f"/shares/public/{token}?password=nope")
    assert wrong.status_code == 401
    assert wrong.get_json()["code"] == "INVALID_PASSWORD"

    unlocked = client.get(f"/shares/public/{token}?password=s3cret")
    assert unlocked.status_code == 200
    assert unlocked.get_json()["share"]["item"]["filename"] == "hello.txt"
    assert "filepath" not in unlocked.get_data(as_text=True)

    posted = client.post(f"/shares/public/{token}", json={"password": "s3cret"})
    assert posted.status_code == 200

    download = client.get(f"/download/public/{token}?password=s3cret")
    assert download.status_code == 200
    assert download.data == b"hello world"


def test_expired_share_is_gone(app, client, alice_headers):
    file_id = upload(client, alice_headers, b"hello world").get_json()["files"][0]["id"]
    token = client.post("/shares", json={"file_id": file_id, "public": True}, headers=alice_headers).get_json()[
        "shares"
    ][0]["public_token"]

    with app.app_context():
        share = Share.query.filter_by(public_token=token).one()
        share.expires_at = utc_now() - timedelta(minutes=1)
        db.session.commit()

    response = client.get(f"/shares/public/{token}")
    assert response.status_code == 410
    assert response.get_json()["error"] == "Share not found or expired"
    assert client.get(f"/download/public/{token}").status_code == 410


def test_tampered_blob_is_refused(app, client, alice_headers, caplog):
    file_pk = upload(client, alice_headers, bytes(range(256)) + b"z" * 44, "data.bin").get_json()["files"][0]["id"]
    _flip_byte(app, file_pk, 200)

    with caplog.at_level(logging.ERROR):
        response = client.get(f"/download/file/{file_pk}", headers=alice_headers)

    assert response.status_code == 500
    assert response.get_json()["code"] == "INTEGRITY_ERROR"
    assert "IntegrityError" in caplog.text


class TestStreamedTamper:
    @pytest.fixture
    def config_overrides(self) -> dict:
        return {"MAX_BUFFERED_SIZE": 1024, "STREAM_CHUNK_SIZE": 1024}

    def test_tamper_aborts_stream(self, app, client, alice_headers):
        file_pk = upload(client, alice_headers, b"q" * 5000, "stream.bin").get_json()["files"][0]["id"]
        _flip_byte(app, file_pk, HEADER_SIZE + 3000)

        with pytest.raises(IntegrityError):
            response = client.get(f"/download/file/{file_pk}", headers=alice_headers)
            response.get_data()

    def test_intact_stream_downloads(self, client, alice_headers):
        content = bytes(range(256)) * 20
        file_pk = upload(client, alice_headers, content, "stream.bin").get_json()["files"][0]["id"]

        response = client.get(f"/download/file/{file_pk}", headers=alice_headers)
        assert response.status_code == 200
        assert response.get_data() == content


def test_single_file_folder_download_skips_zip(client, alice_headers):
    folder_id = client.post("/folders", json={"name": "F"}, headers=alice_headers).get_json()["folder"]["id"]
    upload(client, alice_headers, b"just me", "only.txt", folder_id=folder_id)
    token = client.post("/shares", json={"folder_id": folder_id, "public": True}, headers=alice_headers).get_json()[
        "shares"
    ][0]["public_token"]

    response = client.get(f"/download/public/{token}")

    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith("text/plain")
    assert response.data == b"just me"
    assert 'filename="only.txt"' in response.headers["Content-Disposition"]


def _two_file_folder(client, headers) -> tuple[int, int, int]:
    folder_id = client.post("/folders", json={"name": "pair"}, headers=headers).get_json()["folder"]["id"]
    first = upload(client, headers, b"first member", "a.txt", folder_id=folder_id).get_json()["files"][0]["id"]
    second = upload(client, headers, b"second member", "b.txt", folder_id=folder_id).get_json()["files"][0]["id"]
    return folder_id, first, second


def test_zip_with_corrupt_header_fails_before_status(app, client, alice_headers, caplog):
    folder_id, first, _ = _two_file_folder(client, alice_headers)
    _flip_byte(app, first, 0)

    with caplog.at_level(logging.ERROR):
        response = client.get(f"/download/folder/{folder_id}", headers=alice_headers)

    assert response.status_code == 500
    assert response.get_json()["code"] == "FORMAT_ERROR"
    assert "FormatError" in caplog.text


def test_zip_with_tampered_member_fails_before_status(app, client, alice_headers):
    folder_id, first, _ = _two_file_folder(client, alice_headers)
    _flip_byte(app, first, HEADER_SIZE + 2)

    response = client.get(f"/download/folder/{folder_id}", headers=alice_headers)

    assert response.status_code == 500
    assert response.get_json()["code"] == "INTEGRITY_ERROR"


def test_zip_with_missing_member_is_not_found(app, client, alice_headers):
    folder_id, _, second = _two_file_folder(client, alice_headers)
    with app.app_context():
        row = db.session.get(File, second)
        storage_engine().blob_path(user_tenant(row.owner_id), row.file_id).unlink()
        db.session.remove()

    response = client.get(f"/download/folder/{folder_id}", headers=alice_headers)

    assert response.status_code == 404
    assert response.get_json()["code"] == "FILE_MISSING"


def test_intact_zip_lists_both_members(client, alice_headers):
    folder_id, _, _ = _two_file_folder(client, alice_headers)

    response = client.get(f"/download/folder/{folder_id}", headers=alice_headers)

    assert response.status_code == 200
    with zipfile.ZipFile(io.BytesIO(response.get_data())) as archive:
        assert sorted(archive.namelist()) == ["a.txt", "b.txt"]
        assert archive.read("a.txt") == b"first member"
