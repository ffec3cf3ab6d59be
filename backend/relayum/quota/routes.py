from __future__ import annotations

from flask import Blueprint, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func

from ..common.audit import audit
from ..common.rbac import current_user
from ..extensions import db
from ..models import File, Folder, Share
from .accountant import quota_snapshot, recompute_usage


users_bp = Blueprint("users", __name__, url_prefix="/users")


@users_bp.get("/quota")
@jwt_required()
def quota():
    user = current_user(required=True)
    assert user is not None
    return jsonify(quota_snapshot(user))


@users_bp.get("/usage")
@jwt_required()
def usage():
    user = current_user(required=True)
    assert user is not None

    by_mime = (
        db.session.query(File.mime_type, func.count(File.id), func.coalesce(func.sum(File.size), 0))
        .filter(File.owner_id == user.id)
        .group_by(File.mime_type)
        .all()
    )
    total_size = sum(int(size) for _, _, size in by_mime)
    return jsonify(
        {
            "quota": quota_snapshot(user),
            "file_count": sum(count for _, count, _ in by_mime),
            "folder_count": Folder.query.filter_by(owner_id=user.id).count(),
            "share_count": Share.query.filter_by(shared_by_id=user.id).count(),
            "total_size": total_size,
            "by_mime_type": [
                {"mime_type": mime or "application/octet-stream", "count": count, "size": int(size)}
                for mime, count, size in sorted(by_mime, key=lambda item: -int(item[2]))
            ],
        }
    )


@users_bp.post("/recalculate-usage")
@jwt_required()
def recalculate_usage():
    user = current_user(required=True)
    assert user is not None

    previous, current = recompute_usage(user.id)
    audit(
        action="users.recalculate_usage",
        actor=user,
        target_type="user",
        target_id=str(user.id),
        details={"previous_bytes": previous, "current_bytes": current},
    )
    db.session.commit()

    return jsonify({"previous_bytes": previous, "current_bytes": current, "quota": quota_snapshot(user)})
