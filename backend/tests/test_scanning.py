from __future__ import annotations

import io

import pytest

from conftest import upload
from relayum import shutdown_background
from relayum.extensions import db
from relayum.models import File, VirusScanStatus


def _signature_scanner(chunks):
    content = b"".join(chunks)
    if b"EICAR" in content:
        return VirusScanStatus.INFECTED, "Test.EICAR"
    return VirusScanStatus.CLEAN, None


def _broken_scanner(chunks):
    raise ConnectionError("scanner offline")


@pytest.fixture
def config_overrides() -> dict:
    return {"VIRUS_SCANNING_ENABLED": True, "SCAN_HOOK_SYNCHRONOUS": True, "SCAN_MAX_RETRIES": 0}


def test_unregistered_scanner_leaves_files_pending(client, alice_headers):
    stored = upload(client, alice_headers, b"nobody looks").get_json()["files"][0]
    assert stored["virus_scan_status"] == "pending"


def test_scanner_verdicts_are_recorded(app, client, alice_headers):
    app.extensions["relayum.scan_hook"].register_scanner(_signature_scanner)

    clean = upload(client, alice_headers, b"harmless", "ok.txt").get_json()["files"][0]
    infected = upload(client, alice_headers, b"xxEICARxx", "bad.txt").get_json()["files"][0]

    assert clean["virus_scan_status"] == "clean"
    assert infected["virus_scan_status"] == "infected"
    assert client.get(f"/download/file/{clean['id']}", headers=alice_headers).status_code == 200
    assert client.get(f"/download/file/{infected['id']}", headers=alice_headers).status_code == 403


def test_scanner_failure_marks_error(app, client, alice_headers, caplog):
    app.extensions["relayum.scan_hook"].register_scanner(_broken_scanner)

    stored = upload(client, alice_headers, b"unscannable").get_json()["files"][0]

    assert stored["virus_scan_status"] == "error"
    assert "scanner offline" in caplog.text


def _anonymous_upload(client, files: list[tuple[bytes, str]]):
    data = {"files": [(io.BytesIO(content), name) for content, name in files]}
    return client.post("/anonymous/upload", data=data, content_type="multipart/form-data")


def test_anonymous_uploads_are_scanned(app, client):
    app.extensions["relayum.scan_hook"].register_scanner(_signature_scanner)

    created = _anonymous_upload(client, [(b"fine", "ok.txt"), (b"xxEICARxx", "bad.txt")]).get_json()
    statuses = {item["filename"]: item["virus_scan_status"] for item in created["files"]}
    assert statuses == {"ok.txt": "clean", "bad.txt": "infected"}

    token = created["share_token"]
    bad = next(item["id"] for item in created["files"] if item["filename"] == "bad.txt")
    refused = client.get(f"/anonymous/download/{token}/{bad}")
    assert refused.status_code == 403
    assert refused.get_json()["code"] == "FILE_INFECTED"

    whole = client.get(f"/anonymous/download/{token}")
    assert whole.status_code == 200
    assert whole.data == b"fine"


def test_anonymous_share_with_only_infected_files_is_refused(app, client):
    app.extensions["relayum.scan_hook"].register_scanner(_signature_scanner)

    token = _anonymous_upload(client, [(b"EICAR", "bad.txt")]).get_json()["share_token"]

    response = client.get(f"/anonymous/download/{token}")
    assert response.status_code == 403
    assert response.get_json()["code"] == "FILE_INFECTED"


class TestBackgroundScans:
    @pytest.fixture
    def config_overrides(self) -> dict:
        return {"VIRUS_SCANNING_ENABLED": True, "SCAN_HOOK_SYNCHRONOUS": False, "SCAN_MAX_RETRIES": 0}

    def test_shutdown_waits_for_queued_scans(self, app, client, alice_headers):
        hook = app.extensions["relayum.scan_hook"]
        hook.register_scanner(_signature_scanner)

        stored = upload(client, alice_headers, b"xxEICARxx", "bad.txt").get_json()["files"][0]
        hook.shutdown()

        with app.app_context():
            assert db.session.get(File, stored["id"]).virus_scan_status == VirusScanStatus.INFECTED
            db.session.remove()

    def test_submissions_after_shutdown_stay_pending(self, app, client, alice_headers, caplog):
        hook = app.extensions["relayum.scan_hook"]
        hook.register_scanner(_signature_scanner)
        shutdown_background(app)

        stored = upload(client, alice_headers, b"late", "late.txt").get_json()["files"][0]

        assert stored["virus_scan_status"] == "pending"
        assert "scan hook is shut down" in caplog.text
