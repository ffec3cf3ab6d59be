from __future__ import annotations

import pytest

from conftest import upload
from relayum.extensions import db
from relayum.folders.queries import ancestry, breadcrumb, folder_tree, subtree_files, subtree_folders
from relayum.models import Folder, User


def _create(client, headers, name, parent_id=None) -> int:
    response = client.post("/folders", json={"name": name, "parent_id": parent_id}, headers=headers)
    assert response.status_code == 201
    return response.get_json()["folder"]["id"]


def test_folder_crud_and_tree(client, alice_headers):
    docs = _create(client, alice_headers, "docs")
    reports = _create(client, alice_headers, "reports", docs)
    _create(client, alice_headers, "reports", docs)
    assert upload(client, alice_headers, b"q1", "q1.txt", folder_id=reports).status_code == 201

    children = client.get(f"/folders?parent_id={docs}", headers=alice_headers).get_json()["folders"]
    assert [item["name"] for item in children] == ["reports", "reports"]

    details = client.get(f"/folders/{reports}", headers=alice_headers).get_json()
    assert details["folder"]["file_count"] == 1
    assert details["folder"]["total_size"] == 2
    assert [crumb["name"] for crumb in details["breadcrumb"]] == ["docs", "reports"]

    tree = client.get("/folders/tree", headers=alice_headers).get_json()["tree"]
    assert len(tree) == 1
    assert tree[0]["name"] == "docs"
    assert tree[0]["subfolder_count"] == 2
    assert {child["id"] for child in tree[0]["children"]} >= {reports}


def test_folder_names_are_validated(client, alice_headers):
    response = client.post("/folders", json={"name": "a/b"}, headers=alice_headers)
    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_NAME"


def test_move_rejects_cycles(client, alice_headers):
    outer = _create(client, alice_headers, "outer")
    inner = _create(client, alice_headers, "inner", outer)

    response = client.put(f"/folders/{outer}/move", json={"parent_id": inner}, headers=alice_headers)
    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_MOVE"

    response = client.put(f"/folders/{outer}/move", json={"parent_id": outer}, headers=alice_headers)
    assert response.status_code == 400

    other = _create(client, alice_headers, "other")
    response = client.put(f"/folders/{inner}/move", json={"parent_id": other}, headers=alice_headers)
    assert response.status_code == 200
    assert response.get_json()["folder"]["parent_id"] == other


def test_other_users_folders_are_invisible(client, alice_headers, bob_headers):
    bobs = _create(client, bob_headers, "private")
    assert client.get(f"/folders/{bobs}", headers=alice_headers).status_code == 404
    assert client.post("/folders", json={"name": "x", "parent_id": bobs}, headers=alice_headers).status_code == 404
    assert client.delete(f"/folders/{bobs}", headers=alice_headers).status_code == 404


def test_delete_folder_removes_files_and_quota(client, app, alice_headers):
    top = _create(client, alice_headers, "top")
    nested = _create(client, alice_headers, "nested", top)
    upload(client, alice_headers, b"one", "1.txt", folder_id=top)
    upload(client, alice_headers, b"two", "2.txt", folder_id=nested)

    response = client.delete(f"/folders/{top}", headers=alice_headers)
    assert response.status_code == 200
    assert response.get_json()["deleted_files"] == 2
    assert response.get_json()["disk_usage"]["used_bytes"] == 0

    with app.app_context():
        assert Folder.query.count() == 0


def test_recursive_walks_terminate_on_malformed_parents(app):
    with app.app_context():
        alice = User.query.filter_by(username="alice").one()
        bob = User.query.filter_by(username="bob").one()
        first = Folder(name="first", owner_id=alice.id)
        second = Folder(name="second", owner_id=alice.id)
        db.session.add_all([first, second])
        db.session.flush()
        first.parent_id = second.id
        second.parent_id = first.id
        intruder = Folder(name="intruder", owner_id=bob.id, parent_id=first.id)
        db.session.add(intruder)
        db.session.commit()

        assert {item.id for item in subtree_folders(first)} == {first.id, second.id}
        assert subtree_files(first) == []
        assert {crumb["id"] for crumb in breadcrumb(first)} == {first.id, second.id}
        lineage = ancestry(second)
        assert lineage.ids == {first.id, second.id}
        assert not lineage.complete
        assert folder_tree(alice.id) == []


def test_depth_cap_bounds_deep_chains(app):
    with app.app_context():
        alice = User.query.filter_by(username="alice").one()
        parent = None
        chain = []
        for index in range(10):
            folder = Folder(name=f"level{index}", owner_id=alice.id, parent_id=parent.id if parent else None)
            db.session.add(folder)
            db.session.flush()
            chain.append(folder)
            parent = folder
        db.session.commit()

        assert len(subtree_folders(chain[0], max_depth=3)) == 4
        assert len(breadcrumb(chain[-1], max_depth=3)) == 4
        assert len(subtree_folders(chain[0])) == 10


def test_ancestry_reports_depth_below_root(app):
    with app.app_context():
        alice = User.query.filter_by(username="alice").one()
        top = Folder(name="top", owner_id=alice.id)
        db.session.add(top)
        db.session.flush()
        middle = Folder(name="middle", owner_id=alice.id, parent_id=top.id)
        db.session.add(middle)
        db.session.flush()
        db.session.commit()

        assert ancestry(top).depth == 0
        assert ancestry(middle).depth == 1
        assert ancestry(middle).complete


class TestDepthCap:
    @pytest.fixture
    def config_overrides(self) -> dict:
        return {"FOLDER_MAX_DEPTH": 3}

    def _raw_chain(self, app, length: int) -> list[int]:
        with app.app_context():
            alice = User.query.filter_by(username="alice").one()
            parent_id = None
            ids = []
            for index in range(length):
                folder = Folder(name=f"d{index}", owner_id=alice.id, parent_id=parent_id)
                db.session.add(folder)
                db.session.flush()
                ids.append(folder.id)
                parent_id = folder.id
            db.session.commit()
            db.session.remove()
        return ids

    def test_create_stops_at_the_cap(self, client, alice_headers):
        parent = None
        for index in range(4):
            parent = _create(client, alice_headers, f"d{index}", parent)

        response = client.post("/folders", json={"name": "d4", "parent_id": parent}, headers=alice_headers)
        assert response.status_code == 400
        assert response.get_json()["code"] == "FOLDER_TOO_DEEP"
        assert response.get_json()["max_depth"] == 3

    def test_move_below_chain_deeper_than_cap_is_refused(self, app, client, alice_headers):
        ids = self._raw_chain(app, 6)

        response = client.put(f"/folders/{ids[0]}/move", json={"parent_id": ids[-1]}, headers=alice_headers)
        assert response.status_code == 400
        assert response.get_json()["code"] == "INVALID_MOVE"

        with app.app_context():
            assert db.session.get(Folder, ids[0]).parent_id is None
            db.session.remove()

    def test_move_counts_the_moved_subtree(self, client, alice_headers):
        a0 = _create(client, alice_headers, "a0")
        _create(client, alice_headers, "a1", a0)
        b0 = _create(client, alice_headers, "b0")
        b1 = _create(client, alice_headers, "b1", b0)
        b2 = _create(client, alice_headers, "b2", b1)

        response = client.put(f"/folders/{a0}/move", json={"parent_id": b2}, headers=alice_headers)
        assert response.status_code == 400
        assert response.get_json()["code"] == "FOLDER_TOO_DEEP"

        response = client.put(f"/folders/{a0}/move", json={"parent_id": b1}, headers=alice_headers)
        assert response.status_code == 200
        assert response.get_json()["folder"]["parent_id"] == b1

    def test_relative_paths_stop_at_the_cap(self, app, client, alice_headers):
        response = upload(client, alice_headers, b"deep", "f.txt", relative_paths="a/b/c/d/e/f.txt")
        assert response.status_code == 400
        assert response.get_json()["code"] == "FOLDER_TOO_DEEP"

        with app.app_context():
            assert Folder.query.count() == 0
            db.session.remove()
