from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import jwt_required

from ..common.audit import audit
from ..common.params import parse_int, parse_nullable_int
from ..common.rbac import current_user
from ..extensions import db
from ..models import File, Share
from .service import (
    RECEIVED_PAGE_LIMIT,
    create_shares,
    folder_share_contents,
    get_received_share,
    get_sent_share,
    list_received,
    list_sent,
    request_password,
    resolve_private,
    resolve_public,
    share_descriptor,
    shared_root,
    unviewed_count,
)


shares_bp = Blueprint("shares", __name__, url_prefix="/shares")


def _public_url(token: str) -> str:
    base = current_app.config.get("PUBLIC_BASE_URL") or request.host_url
    return f"{base.rstrip('/')}/shares/public/{token}"


def _sent_payload(share: Share) -> dict[str, Any]:
    payload = share.to_dict()
    payload.pop("private_token", None)
    if share.public_token:
        payload["public_url"] = _public_url(share.public_token)
    return payload


def _contents_payload(share: Share) -> dict[str, Any]:
    item = shared_root(share)
    if isinstance(item, File):
        return {
            "folder": None,
            "folders": [],
            "files": [
                {
                    "id": item.id,
                    "filename": item.filename,
                    "size": item.size,
                    "mime_type": item.mime_type,
                    "folder_id": None,
                    "relative_path": item.filename,
                }
            ],
        }
    return folder_share_contents(item)


@shares_bp.post("")
@jwt_required()
def create_share():
    user = current_user(required=True)
    assert user is not None

    payload = request.get_json(silent=True) or {}
    usernames = payload.get("usernames")
    if usernames is None and payload.get("username"):
        usernames = [payload.get("username")]

    shares = create_shares(
        user,
        file_pk=parse_nullable_int(payload.get("file_id"), "file_id"),
        folder_pk=parse_nullable_int(payload.get("folder_id"), "folder_id"),
        usernames=usernames if isinstance(usernames, list) else None,
        public=bool(payload.get("public")),
        expires_at=payload.get("expires_at"),
        password=payload.get("password") or None,
    )
    for share in shares:
        audit(
            action="shares.create",
            actor=user,
            target_type="share",
            target_id=str(share.id),
            details={
                "public": share.is_public,
                "shared_with_id": share.shared_with_id,
                "file_id": share.file_id,
                "folder_id": share.folder_id,
            },
        )
    db.session.commit()

    return jsonify({"shares": [_sent_payload(share) for share in shares]}), 201


@shares_bp.get("/sent")
@jwt_required()
def sent_shares():
    user = current_user(required=True)
    assert user is not None
    return jsonify({"shares": [_sent_payload(share) for share in list_sent(user)]})


@shares_bp.get("/received")
@jwt_required()
def received_shares():
    user = current_user(required=True)
    assert user is not None

    limit = parse_int(request.args.get("limit"), "limit", default=RECEIVED_PAGE_LIMIT)
    offset = parse_int(request.args.get("offset"), "offset", default=0)
    shares = list_received(user, limit=limit, offset=offset)
    payload = [share.to_dict() for share in shares]
    db.session.commit()

    return jsonify({"shares": payload})


@shares_bp.get("/unviewed-count")
@jwt_required()
def unviewed_shares():
    user = current_user(required=True)
    assert user is not None
    return jsonify({"count": unviewed_count(user)})


@shares_bp.get("/private/<token>")
@jwt_required()
def private_share(token: str):
    user = current_user(required=True)
    assert user is not None

    share = resolve_private(token, user).require()
    assert isinstance(share, Share)
    return jsonify({"share": share_descriptor(share)})


@shares_bp.get("/<int:share_pk>/contents")
@jwt_required()
def share_contents(share_pk: int):
    user = current_user(required=True)
    assert user is not None

    share = db.session.get(Share, share_pk)
    if share is not None and share.shared_by_id == user.id:
        return jsonify(_contents_payload(share))
    share = get_received_share(user, share_pk)
    resolve_private(share.private_token or "", user).require()
    return jsonify(_contents_payload(share))


@shares_bp.delete("/<int:share_pk>")
@jwt_required()
def delete_share(share_pk: int):
    user = current_user(required=True)
    assert user is not None

    share = get_sent_share(user, share_pk)
    db.session.delete(share)
    audit(action="shares.delete", actor=user, target_type="share", target_id=str(share_pk))
    db.session.commit()

    return jsonify({"deleted": True})


@shares_bp.delete("/received/<int:share_pk>")
@jwt_required()
def remove_received_share(share_pk: int):
    user = current_user(required=True)
    assert user is not None

    share = get_received_share(user, share_pk)
    db.session.delete(share)
    audit(
        action="shares.delete",
        actor=user,
        target_type="share",
        target_id=str(share_pk),
        details={"side": "recipient"},
    )
    db.session.commit()

    return jsonify({"deleted": True})


@shares_bp.route("/public/<token>", methods=["GET", "POST"])
def public_share(token: str):
    share = resolve_public(token, request_password()).require()
    assert isinstance(share, Share)
    return jsonify({"share": share_descriptor(share)})


@shares_bp.route("/public/<token>/contents", methods=["GET", "POST"])
def public_share_contents(token: str):
    share = resolve_public(token, request_password()).require()
    assert isinstance(share, Share)
    return jsonify(_contents_payload(share))
