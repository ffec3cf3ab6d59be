from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required
from sqlalchemy import func

from ..common.audit import audit
from ..common.errors import NotFoundError, ValidationError
from ..common.names import validate_node_name
from ..common.params import parse_nullable_int
from ..common.rbac import current_user
from ..config import current_settings
from ..extensions import db
from ..files.service import collect_folder_files, delete_blobs, delete_file_rows
from ..models import File, Folder, User
from ..quota.accountant import quota_snapshot
from .queries import ancestry, breadcrumb, folder_too_deep, folder_tree, subtree_height


folders_bp = Blueprint("folders", __name__, url_prefix="/folders")


def _get_owned_folder(user: User, folder_pk: int, lock: bool = False) -> Folder:
    query = Folder.query.filter_by(id=folder_pk, owner_id=user.id)
    if lock:
        query = query.with_for_update()
    folder = query.one_or_none()
    if folder is None:
        raise NotFoundError("Folder not found.", code="FOLDER_NOT_FOUND")
    return folder


def _folder_payload(folder: Folder) -> dict:
    payload = folder.to_dict()
    payload["subfolder_count"] = Folder.query.filter_by(parent_id=folder.id, owner_id=folder.owner_id).count()
    payload["file_count"] = File.query.filter_by(folder_id=folder.id).count()
    return payload


@folders_bp.post("")
@jwt_required()
def create_folder():
    user = current_user(required=True)
    assert user is not None

    payload = request.get_json(silent=True) or {}
    name = validate_node_name(payload.get("name") or "")
    parent_pk = parse_nullable_int(payload.get("parent_id"), "parent_id")
    if parent_pk is not None:
        lineage = ancestry(_get_owned_folder(user, parent_pk))
        if not lineage.complete or lineage.depth + 1 > current_settings().folder_max_depth:
            raise folder_too_deep()

    folder = Folder(name=name, parent_id=parent_pk, owner_id=user.id)
    db.session.add(folder)
    db.session.flush()
    audit(
        action="folders.create",
        actor=user,
        target_type="folder",
        target_id=str(folder.id),
        details={"name": name, "parent_id": parent_pk},
    )
    db.session.commit()

    return jsonify({"folder": folder.to_dict()}), 201


@folders_bp.get("")
@jwt_required()
def list_folders():
    user = current_user(required=True)
    assert user is not None

    parent_pk = parse_nullable_int(request.args.get("parent_id"), "parent_id")
    if parent_pk is not None:
        _get_owned_folder(user, parent_pk)
    items = (
        Folder.query.filter_by(owner_id=user.id, parent_id=parent_pk)
        .order_by(func.lower(Folder.name).asc(), Folder.id.asc())
        .all()
    )
    return jsonify({"folders": [_folder_payload(item) for item in items]})


@folders_bp.get("/tree")
@jwt_required()
def tree():
    user = current_user(required=True)
    assert user is not None
    return jsonify({"tree": folder_tree(user.id)})


@folders_bp.get("/<int:folder_pk>")
@jwt_required()
def folder_details(folder_pk: int):
    user = current_user(required=True)
    assert user is not None

    folder = _get_owned_folder(user, folder_pk)
    total_size = (
        db.session.query(func.coalesce(func.sum(File.size), 0)).filter(File.folder_id == folder.id).scalar() or 0
    )
    payload = _folder_payload(folder)
    payload["total_size"] = int(total_size)
    return jsonify({"folder": payload, "breadcrumb": breadcrumb(folder)})


@folders_bp.get("/<int:folder_pk>/breadcrumb")
@jwt_required()
def folder_breadcrumb(folder_pk: int):
    user = current_user(required=True)
    assert user is not None
    return jsonify({"breadcrumb": breadcrumb(_get_owned_folder(user, folder_pk))})


@folders_bp.put("/<int:folder_pk>/move")
@jwt_required()
def move_folder(folder_pk: int):
    user = current_user(required=True)
    assert user is not None

    folder = _get_owned_folder(user, folder_pk, lock=True)
    payload = request.get_json(silent=True) or {}
    target_pk = parse_nullable_int(payload.get("parent_id"), "parent_id")

    depth = 0
    if target_pk is not None:
        target = _get_owned_folder(user, target_pk, lock=True)
        lineage = ancestry(target)
        if folder.id in lineage.ids or not lineage.complete:
            raise ValidationError("Cannot move a folder into itself or its descendants.", code="INVALID_MOVE")
        depth = lineage.depth + 1
    if depth + subtree_height(folder) > current_settings().folder_max_depth:
        raise folder_too_deep()

    previous = folder.parent_id
    folder.parent_id = target_pk
    audit(
        action="folders.move",
        actor=user,
        target_type="folder",
        target_id=str(folder.id),
        details={"from_parent_id": previous, "to_parent_id": target_pk},
    )
    db.session.commit()

    return jsonify({"folder": folder.to_dict()})


@folders_bp.patch("/<int:folder_pk>")
@jwt_required()
def rename_folder(folder_pk: int):
    user = current_user(required=True)
    assert user is not None

    folder = _get_owned_folder(user, folder_pk)
    payload = request.get_json(silent=True) or {}
    folder.name = validate_node_name(payload.get("name") or "")
    db.session.commit()

    return jsonify({"folder": folder.to_dict()})


@folders_bp.delete("/<int:folder_pk>")
@jwt_required()
def delete_folder(folder_pk: int):
    user = current_user(required=True)
    assert user is not None

    folder = _get_owned_folder(user, folder_pk)
    rows = collect_folder_files(folder)
    refs = delete_file_rows(rows)
    db.session.delete(folder)
    audit(
        action="folders.delete",
        actor=user,
        target_type="folder",
        target_id=str(folder_pk),
        details={"deleted_files": len(rows)},
    )
    db.session.commit()
    delete_blobs(refs)

    db.session.refresh(user)
    return jsonify({"deleted_files": len(rows), "disk_usage": quota_snapshot(user)})
