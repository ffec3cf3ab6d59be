from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required

from ..common.audit import audit
from ..common.errors import NotFoundError
from ..common.params import parse_nullable_int
from ..common.rbac import current_user
from ..extensions import db
from ..models import File, User
from ..quota.accountant import quota_snapshot
from .ingest import incoming_from_request, ingest_batch, resolve_target_folder, upload_slot
from .service import delete_blobs, delete_file_rows


files_bp = Blueprint("files", __name__, url_prefix="/files")


def owned_file_query(user: User, file_pk: int, lock: bool = False):
    query = File.query.filter_by(id=file_pk, owner_id=user.id)
    if lock:
        query = query.with_for_update()
    return query


def _get_owned_file(user: User, file_pk: int, lock: bool = False) -> File:
    row = owned_file_query(user, file_pk, lock).one_or_none()
    if row is None:
        raise NotFoundError("File not found.", code="FILE_NOT_FOUND")
    return row


@files_bp.post("/upload")
@jwt_required()
def upload_files():
    user = current_user(required=True)
    assert user is not None

    uploads = request.files.getlist("files") or request.files.getlist("file")
    relative_paths = request.form.getlist("relative_paths")
    folder_pk = parse_nullable_int(request.form.get("folder_id"), "folder_id")

    items = incoming_from_request(uploads, relative_paths)
    with upload_slot():
        created = ingest_batch(user, folder_pk, items)

    db.session.refresh(user)
    return jsonify({"files": [row.to_dict() for row in created], "disk_usage": quota_snapshot(user)}), 201


@files_bp.get("")
@jwt_required()
def list_files():
    user = current_user(required=True)
    assert user is not None

    folder_pk = parse_nullable_int(request.args.get("folder_id"), "folder_id")
    folder = resolve_target_folder(user, folder_pk)
    query = File.query.filter_by(owner_id=user.id, folder_id=folder.id if folder is not None else None)
    items = query.order_by(File.filename.asc(), File.id.asc()).all()

    return jsonify({"files": [item.to_dict() for item in items]})


@files_bp.get("/<int:file_pk>")
@jwt_required()
def file_details(file_pk: int):
    user = current_user(required=True)
    assert user is not None
    return jsonify({"file": _get_owned_file(user, file_pk).to_dict()})


@files_bp.delete("/<int:file_pk>")
@jwt_required()
def delete_file(file_pk: int):
    user = current_user(required=True)
    assert user is not None

    row = _get_owned_file(user, file_pk, lock=True)
    filename = row.filename
    refs = delete_file_rows([row])
    audit(
        action="files.delete",
        actor=user,
        target_type="file",
        target_id=str(file_pk),
        details={"filename": filename},
    )
    db.session.commit()
    delete_blobs(refs)

    db.session.refresh(user)
    return jsonify({"deleted": True, "disk_usage": quota_snapshot(user)})


@files_bp.put("/<int:file_pk>/move")
@jwt_required()
def move_file(file_pk: int):
    user = current_user(required=True)
    assert user is not None

    row = _get_owned_file(user, file_pk, lock=True)
    payload = request.get_json(silent=True) or {}
    target = resolve_target_folder(user, parse_nullable_int(payload.get("folder_id"), "folder_id"))

    previous = row.folder_id
    row.folder_id = target.id if target is not None else None
    audit(
        action="files.move",
        actor=user,
        target_type="file",
        target_id=str(row.id),
        details={"from_folder_id": previous, "to_folder_id": row.folder_id},
    )
    db.session.commit()

    return jsonify({"file": row.to_dict()})
