from __future__ import annotations

import time
from datetime import timedelta

from flask import Blueprint, jsonify, request
from flask_jwt_extended import jwt_required
from sqlalchemy import or_

from ..common.audit import audit
from ..common.errors import NotFoundError, ValidationError
from ..common.params import parse_int, parse_nullable_int
from ..common.rbac import admin_required, current_user
from ..config import current_settings
from ..extensions import db
from ..models import (
    AdminOverride,
    AuditEvent,
    File,
    IpBan,
    LoginEvent,
    OverrideType,
    Share,
    User,
    VirusScanStatus,
    utc_now,
)
from ..quota.accountant import quota_snapshot, recompute_usage
from ..storage import storage_engine, user_tenant
from ..storage.keys import user_master_key


admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found.", code="USER_NOT_FOUND")
    return user


def _parse_override_type(value: str | None) -> OverrideType:
    try:
        return OverrideType((value or "").strip().lower())
    except ValueError as error:
        raise ValidationError("override_type must be 'disk_quota' or 'file_expiration'.", code="INVALID_OVERRIDE") from error


def _page_limit() -> int:
    return max(1, min(parse_int(request.args.get("limit"), "limit", default=100), 500))


@admin_bp.get("/users")
@jwt_required()
@admin_required
def list_users():
    users = User.query.order_by(User.id.asc()).all()
    return jsonify({"users": [{**user.to_dict(), "quota": quota_snapshot(user)} for user in users]})


@admin_bp.put("/users/<int:user_id>/overrides")
@jwt_required()
@admin_required
def set_override(user_id: int):
    actor = current_user(required=True)
    assert actor is not None
    user = _get_user(user_id)

    payload = request.get_json(silent=True) or {}
    override_type = _parse_override_type(payload.get("override_type"))
    value = parse_int(payload.get("value"), "value")
    if value < 0:
        raise ValidationError("value must be >= 0.", code="INVALID_OVERRIDE")

    override = AdminOverride.query.filter_by(user_id=user.id, override_type=override_type).one_or_none()
    if override is None:
        override = AdminOverride(user_id=user.id, override_type=override_type, value=value, created_by_id=actor.id)
        db.session.add(override)
    else:
        override.value = value
        override.created_by_id = actor.id
    db.session.flush()
    audit(
        action="admin.override_set",
        actor=actor,
        target_type="user",
        target_id=str(user.id),
        details={"override_type": override_type.value, "value": value},
    )
    db.session.commit()

    db.session.refresh(user)
    return jsonify({"override": override.to_dict(), "quota": quota_snapshot(user)})


@admin_bp.delete("/users/<int:user_id>/overrides/<override_type>")
@jwt_required()
@admin_required
def clear_override(user_id: int, override_type: str):
    actor = current_user(required=True)
    assert actor is not None
    user = _get_user(user_id)
    kind = _parse_override_type(override_type)

    override = AdminOverride.query.filter_by(user_id=user.id, override_type=kind).one_or_none()
    if override is None:
        raise NotFoundError("Override not found.", code="OVERRIDE_NOT_FOUND")
    db.session.delete(override)
    audit(
        action="admin.override_clear",
        actor=actor,
        target_type="user",
        target_id=str(user.id),
        details={"override_type": kind.value},
    )
    db.session.commit()

    db.session.refresh(user)
    return jsonify({"quota": quota_snapshot(user)})


@admin_bp.post("/users/<int:user_id>/recompute-usage")
@jwt_required()
@admin_required
def admin_recompute_usage(user_id: int):
    actor = current_user(required=True)
    assert actor is not None
    user = _get_user(user_id)

    previous, current = recompute_usage(user.id)
    audit(
        action="admin.recompute_usage",
        actor=actor,
        target_type="user",
        target_id=str(user.id),
        details={"previous_bytes": previous, "current_bytes": current},
    )
    db.session.commit()

    return jsonify({"previous_bytes": previous, "current_bytes": current})


def storage_report(user: User) -> dict:
    """Check every blob of ``user`` and cross-reference blobs with file rows."""
    engine = storage_engine()
    tenant = user_tenant(user.id)
    deadline = time.monotonic() + current_settings().download_deadline_seconds
    blobs = engine.validate(tenant, user_master_key(user), deadline=deadline)

    known = {row.file_id for row in File.query.filter_by(owner_id=user.id).with_entities(File.file_id)}
    on_disk = {item["file_id"] for item in blobs}
    return {
        "user_id": user.id,
        "blobs": blobs,
        "valid": sum(1 for item in blobs if item["status"] == "valid"),
        "invalid": sum(1 for item in blobs if item["status"] != "valid"),
        "orphaned_blobs": sorted(on_disk - known),
        "missing_blobs": sorted(known - on_disk),
    }


@admin_bp.get("/users/<int:user_id>/validate-storage")
@jwt_required()
@admin_required
def validate_storage(user_id: int):
    actor = current_user(required=True)
    assert actor is not None
    user = _get_user(user_id)

    report = storage_report(user)
    audit(
        action="admin.validate_storage",
        actor=actor,
        target_type="user",
        target_id=str(user.id),
        details={"valid": report["valid"], "invalid": report["invalid"]},
        severity="warning" if report["invalid"] else "info",
    )
    db.session.commit()

    return jsonify(report)


@admin_bp.delete("/users/<int:user_id>")
@jwt_required()
@admin_required
def delete_user(user_id: int):
    actor = current_user(required=True)
    assert actor is not None
    if actor.id == user_id:
        raise ValidationError("You cannot delete your own account.", code="INVALID_TARGET")

    user = _get_user(user_id)
    username = user.username
    file_count = File.query.filter_by(owner_id=user.id).count()
    Share.query.filter(or_(Share.shared_by_id == user.id, Share.shared_with_id == user.id)).delete(
        synchronize_session="fetch"
    )
    db.session.delete(user)
    audit(
        action="admin.user_delete",
        actor=actor,
        target_type="user",
        target_id=str(user_id),
        details={"username": username, "file_count": file_count},
        severity="warning",
    )
    db.session.commit()
    storage_engine().delete_tenant(user_tenant(user_id))

    return jsonify({"deleted": True, "file_count": file_count})


@admin_bp.put("/files/<int:file_pk>/scan-status")
@jwt_required()
@admin_required
def set_scan_status(file_pk: int):
    actor = current_user(required=True)
    assert actor is not None
    row = db.session.get(File, file_pk)
    if row is None:
        raise NotFoundError("File not found.", code="FILE_NOT_FOUND")

    payload = request.get_json(silent=True) or {}
    try:
        status = VirusScanStatus((payload.get("status") or "").strip().lower())
    except ValueError as error:
        raise ValidationError("Unknown scan status.", code="INVALID_SCAN_STATUS") from error

    row.virus_scan_status = status
    row.scanned_at = utc_now()
    row.threat_name = (payload.get("threat_name") or None) if status == VirusScanStatus.INFECTED else None
    audit(
        action="admin.scan_status",
        actor=actor,
        target_type="file",
        target_id=str(row.id),
        details={"status": status.value, "threat_name": row.threat_name},
        severity="warning" if status == VirusScanStatus.INFECTED else "info",
    )
    db.session.commit()

    return jsonify({"file": row.to_dict()})


@admin_bp.get("/ip-bans")
@jwt_required()
@admin_required
def list_ip_bans():
    bans = IpBan.query.order_by(IpBan.created_at.desc()).all()
    return jsonify({"bans": [ban.to_dict() for ban in bans]})


@admin_bp.post("/ip-bans")
@jwt_required()
@admin_required
def create_ip_ban():
    actor = current_user(required=True)
    assert actor is not None

    payload = request.get_json(silent=True) or {}
    ip_address = (payload.get("ip_address") or "").strip()
    if not ip_address:
        raise ValidationError("ip_address is required.", code="INVALID_IP")
    hours = parse_nullable_int(payload.get("duration_hours"), "duration_hours")

    ban = IpBan(
        ip_address=ip_address,
        reason=payload.get("reason") or None,
        banned_by_id=actor.id,
        expires_at=utc_now() + timedelta(hours=hours) if hours else None,
        is_active=True,
    )
    db.session.add(ban)
    db.session.flush()
    audit(
        action="admin.ip_ban",
        actor=actor,
        target_type="ip_ban",
        target_id=str(ban.id),
        details={"ip_address": ip_address, "duration_hours": hours},
        severity="warning",
    )
    db.session.commit()

    return jsonify({"ban": ban.to_dict()}), 201


@admin_bp.delete("/ip-bans/<int:ban_id>")
@jwt_required()
@admin_required
def lift_ip_ban(ban_id: int):
    actor = current_user(required=True)
    assert actor is not None
    ban = db.session.get(IpBan, ban_id)
    if ban is None:
        raise NotFoundError("Ban not found.", code="BAN_NOT_FOUND")

    ban.is_active = False
    audit(
        action="admin.ip_unban",
        actor=actor,
        target_type="ip_ban",
        target_id=str(ban.id),
        details={"ip_address": ban.ip_address},
    )
    db.session.commit()

    return jsonify({"ban": ban.to_dict()})


@admin_bp.get("/login-events")
@jwt_required()
@admin_required
def login_events():
    query = LoginEvent.query
    username = (request.args.get("username") or "").strip()
    if username:
        query = query.filter(LoginEvent.username == username)
    events = query.order_by(LoginEvent.created_at.desc(), LoginEvent.id.desc()).limit(_page_limit()).all()
    return jsonify({"events": [event.to_dict() for event in events]})


@admin_bp.get("/audit-events")
@jwt_required()
@admin_required
def audit_events():
    query = AuditEvent.query
    action = (request.args.get("action") or "").strip()
    if action:
        query = query.filter(AuditEvent.action == action)
    events = query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(_page_limit()).all()
    return jsonify({"events": [event.to_dict() for event in events]})
