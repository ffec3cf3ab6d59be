from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..common.errors import ForbiddenError, NotFoundError
from ..config import current_settings
from ..download.egress import file_response, source_for_anonymous, zip_response
from ..files.ingest import incoming_from_request, upload_slot
from ..models import AnonymousFile, AnonymousShare, VirusScanStatus
from ..shares.service import record_access, request_password, resolve_anonymous
from .service import create_anonymous_share, ensure_enabled


anonymous_bp = Blueprint("anonymous", __name__, url_prefix="/anonymous")


def _share_url(token: str) -> str:
    base = current_app.config.get("PUBLIC_BASE_URL") or request.host_url
    return f"{base.rstrip('/')}/anonymous/access/{token}"


def _resolve(token: str) -> AnonymousShare:
    ensure_enabled()
    share = resolve_anonymous(token, request_password()).require()
    assert isinstance(share, AnonymousShare)
    return share


def _recorder(share: AnonymousShare):
    return lambda: record_access(share)


def _member_name(row: AnonymousFile) -> str:
    return row.relative_path or row.original_filename


@anonymous_bp.get("/config")
def anonymous_config():
    settings = current_settings()
    return jsonify(
        {
            "enabled": settings.anonymous_enabled,
            "max_file_size": settings.anonymous_max_file_size,
            "expiration_days": settings.anonymous_expiration_days,
            "max_access": settings.anonymous_max_access,
        }
    )


@anonymous_bp.post("/upload")
def anonymous_upload():
    ensure_enabled()
    uploads = request.files.getlist("files") or request.files.getlist("file")
    items = incoming_from_request(uploads, request.form.getlist("relative_paths"))

    with upload_slot():
        share = create_anonymous_share(items, request.form.get("password") or None, request.form.get("max_access"))

    payload = share.to_dict()
    payload["share_url"] = _share_url(share.share_token)
    return jsonify(payload), 201


@anonymous_bp.route("/access/<token>", methods=["GET", "POST"])
def anonymous_access(token: str):
    share = _resolve(token)
    payload = share.to_dict()
    payload.pop("share_token", None)
    payload["total_size"] = sum(item.size for item in share.files)
    return jsonify({"share": payload})


@anonymous_bp.route("/download/<token>", methods=["GET", "POST"])
def anonymous_download(token: str):
    share = _resolve(token)
    rows = [row for row in share.files if row.virus_scan_status != VirusScanStatus.INFECTED]
    if not rows:
        raise ForbiddenError("File is quarantined.", code="FILE_INFECTED")
    if len(rows) == 1:
        return file_response(source_for_anonymous(share, rows[0]), on_complete=_recorder(share))
    entries = [(_member_name(row), source_for_anonymous(share, row)) for row in rows]
    return zip_response(entries, "relayum-share", on_complete=_recorder(share))


@anonymous_bp.route("/download/<token>/<int:file_pk>", methods=["GET", "POST"])
def anonymous_download_file(token: str, file_pk: int):
    share = _resolve(token)
    row = next((item for item in share.files if item.id == file_pk), None)
    if row is None:
        raise NotFoundError("File not found in share.", code="FILE_NOT_FOUND")
    return file_response(source_for_anonymous(share, row), on_complete=_recorder(share))
