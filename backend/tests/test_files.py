from __future__ import annotations

import io

import pytest
from sqlalchemy.dialects import postgresql

from conftest import ALICE_QUOTA, upload
from relayum.extensions import db
from relayum.files.routes import owned_file_query
from relayum.models import File, Folder, User
from relayum.storage import storage_engine, user_tenant


def _upload_many(client, headers, files: list[tuple[bytes, str]], **fields):
    data = {"files": [(io.BytesIO(content), name) for content, name in files], **fields}
    return client.post("/files/upload", data=data, headers=headers, content_type="multipart/form-data")


def test_list_details_and_move(client, alice_headers, bob_headers):
    folder_id = client.post("/folders", json={"name": "inbox"}, headers=alice_headers).get_json()["folder"]["id"]
    file_id = upload(client, alice_headers, b"movable", "m.txt").get_json()["files"][0]["id"]

    root_listing = client.get("/files", headers=alice_headers).get_json()["files"]
    assert [item["filename"] for item in root_listing] == ["m.txt"]

    details = client.get(f"/files/{file_id}", headers=alice_headers).get_json()["file"]
    assert details["size"] == 7
    assert details["expires_at"] is not None
    assert client.get(f"/files/{file_id}", headers=bob_headers).status_code == 404

    moved = client.put(f"/files/{file_id}/move", json={"folder_id": folder_id}, headers=alice_headers)
    assert moved.status_code == 200
    assert moved.get_json()["file"]["folder_id"] == folder_id
    assert client.get("/files", headers=alice_headers).get_json()["files"] == []
    assert len(client.get(f"/files?folder_id={folder_id}", headers=alice_headers).get_json()["files"]) == 1

    assert client.get("/files?folder_id=abc", headers=alice_headers).status_code == 400


def test_delete_releases_quota_and_blob(app, client, alice_headers):
    stored = upload(client, alice_headers, b"to be removed").get_json()["files"][0]

    response = client.delete(f"/files/{stored['id']}", headers=alice_headers)
    assert response.status_code == 200
    assert response.get_json()["disk_usage"]["used_bytes"] == 0

    with app.app_context():
        alice = User.query.filter_by(username="alice").one()
        path = storage_engine().blob_path(user_tenant(alice.id), stored["file_id"])
        assert not path.exists()
        db.session.remove()

    assert client.delete(f"/files/{stored['id']}", headers=alice_headers).status_code == 404


def test_relative_paths_create_folders(app, client, alice_headers):
    response = _upload_many(
        client,
        alice_headers,
        [(b"one", "one.txt"), (b"two", "two.txt")],
        relative_paths=["album/2024/one.txt", "album/two.txt"],
    )
    assert response.status_code == 201

    with app.app_context():
        album = Folder.query.filter_by(name="album", parent_id=None).one()
        year = Folder.query.filter_by(name="2024", parent_id=album.id).one()
        assert {row.filename: row.folder_id for row in File.query.all()} == {"one.txt": year.id, "two.txt": album.id}
        db.session.remove()


def test_missing_multipart_field(client, alice_headers):
    response = client.post("/files/upload", data={}, headers=alice_headers, content_type="multipart/form-data")
    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_FILE"


def test_upload_into_foreign_folder_is_refused(client, alice_headers, bob_headers):
    folder_id = client.post("/folders", json={"name": "bob-only"}, headers=bob_headers).get_json()["folder"]["id"]
    assert upload(client, alice_headers, b"x", folder_id=folder_id).status_code == 404


class TestBatchFailure:
    @pytest.fixture
    def config_overrides(self) -> dict:
        return {"MAX_FILE_SIZE": 50}

    def test_failed_batch_removes_earlier_files(self, app, client, alice_headers):
        response = _upload_many(client, alice_headers, [(b"small", "ok.txt"), (b"x" * 60, "big.bin")])
        assert response.status_code == 413

        with app.app_context():
            alice = User.query.filter_by(username="alice").one()
            assert File.query.count() == 0
            assert alice.disk_used_bytes == 0
            assert list(storage_engine().iter_blobs(user_tenant(alice.id))) == []
            db.session.remove()

    def test_failed_batch_removes_folders_it_created(self, app, client, alice_headers):
        response = _upload_many(
            client,
            alice_headers,
            [(b"small", "a.txt"), (b"x" * 60, "b.bin")],
            relative_paths=["pics/2024/a.txt", "pics/2024/b.bin"],
        )
        assert response.status_code == 413

        with app.app_context():
            assert Folder.query.count() == 0
            db.session.remove()


def test_quota_refusal_leaves_no_new_folders(app, client, alice_headers):
    kept = client.post("/folders", json={"name": "deep"}, headers=alice_headers).get_json()["folder"]["id"]
    with app.app_context():
        alice = User.query.filter_by(username="alice").one()
        alice.disk_used_bytes = ALICE_QUOTA - 10
        db.session.commit()
        db.session.remove()

    response = upload(client, alice_headers, b"x" * 100, "f.txt", relative_paths="deep/er/f.txt")
    assert response.status_code == 413

    with app.app_context():
        assert [folder.id for folder in Folder.query.all()] == [kept]
        db.session.remove()


def test_file_move_and_delete_lock_the_row(app):
    with app.app_context():
        alice = User.query.filter_by(username="alice").one()
        dialect = postgresql.dialect()
        locked = str(owned_file_query(alice, 1, lock=True).statement.compile(dialect=dialect))
        plain = str(owned_file_query(alice, 1).statement.compile(dialect=dialect))
        assert "FOR UPDATE" in locked
        assert "FOR UPDATE" not in plain
        db.session.remove()
