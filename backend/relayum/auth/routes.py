from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError as DatabaseIntegrityError

from ..common.audit import audit
from ..common.errors import AuthError, ConflictError, ForbiddenError, RateLimited, ValidationError
from ..common.netutil import client_ip, client_user_agent
from ..common.throttle import login_rate, login_window
from ..common.rbac import current_user
from ..config import current_settings
from ..extensions import db
from ..models import LoginEvent, User, UserRole
from ..quota.accountant import quota_snapshot
from ..storage.keys import provision_user_keys


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _token_response(user: User) -> dict[str, Any]:
    identity = str(user.id)
    claims = {"role": user.role.value}
    return {
        "access_token": create_access_token(identity=identity, additional_claims=claims),
        "refresh_token": create_refresh_token(identity=identity),
        "user": user.to_dict(),
    }


def create_user(username: str, password: str, email: str | None = None, role: UserRole = UserRole.USER) -> User:
    """Add a user with provisioned storage keys; the caller commits."""
    if len(username) < 3:
        raise ValidationError("Username must be at least 3 characters.", code="INVALID_USERNAME")
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters.", code="INVALID_PASSWORD")

    existing = User.query.filter(func.lower(User.username) == username.lower()).one_or_none()
    if existing is not None:
        raise ConflictError("Username is already taken.", code="USER_EXISTS")

    user = User(
        username=username,
        email=email or None,
        role=role,
        is_active=True,
        disk_quota_bytes=current_settings().default_quota_bytes,
        disk_used_bytes=0,
    )
    user.set_password(password)
    provision_user_keys(user, password)
    db.session.add(user)
    try:
        db.session.flush()
    except DatabaseIntegrityError as error:
        db.session.rollback()
        raise ConflictError("Username or email is already taken.", code="USER_EXISTS") from error
    return user


@auth_bp.post("/register")
def register():
    if not current_app.config.get("ALLOW_REGISTRATION", True):
        raise ForbiddenError("Registration is disabled.", code="REGISTRATION_DISABLED")

    payload = request.get_json(silent=True) or {}
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    email = (payload.get("email") or "").strip() or None

    user = create_user(username, password, email)
    audit(
        action="auth.register",
        actor=user,
        target_type="user",
        target_id=str(user.id),
        details={"username": username},
    )
    db.session.commit()

    return jsonify(_token_response(user)), 201


@auth_bp.post("/login")
def login():
    payload = request.get_json(silent=True) or {}
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""

    if not username or not password:
        raise ValidationError("Username and password are required.", code="INVALID_CREDENTIALS")

    remote_ip = client_ip() or "unknown"
    rate_limit_key = f"{remote_ip}:{username.lower()}"
    rate = login_rate()

    if login_window().full(rate_limit_key, rate):
        audit(
            action="auth.login_rate_limited",
            target_type="auth",
            target_id=username.lower(),
            details={"username": username, "ip": remote_ip},
            severity="warning",
            success=False,
        )
        db.session.commit()
        raise RateLimited("Too many login attempts. Please try again later.", rate.window_seconds)

    user = User.query.filter(func.lower(User.username) == username.lower()).one_or_none()
    successful = user is not None and user.is_active and user.verify_password(password)
    db.session.add(
        LoginEvent(
            username=username,
            ip_address=remote_ip,
            user_agent=client_user_agent(),
            successful=successful,
        )
    )

    if not successful:
        login_window().record(rate_limit_key)
        audit(
            action="auth.login_failed",
            actor=user,
            target_type="user",
            target_id=str(user.id) if user is not None else None,
            details={"username": username, "ip": remote_ip},
            severity="warning",
            success=False,
        )
        db.session.commit()
        raise AuthError("Invalid username or password.", code="INVALID_CREDENTIALS")

    assert user is not None
    login_window().reset(rate_limit_key)
    audit(
        action="auth.login",
        actor=user,
        target_type="user",
        target_id=str(user.id),
        details={"ip": remote_ip},
    )
    db.session.commit()

    return jsonify(_token_response(user))


@auth_bp.get("/me")
@jwt_required()
def me():
    user = current_user(required=True)
    assert user is not None
    return jsonify({"user": user.to_dict(), "disk_usage": quota_snapshot(user)})


@auth_bp.post("/password")
@jwt_required()
def change_password():
    user = current_user(required=True)
    assert user is not None

    payload = request.get_json(silent=True) or {}
    if not user.verify_password(payload.get("current_password") or ""):
        raise AuthError("Current password is incorrect.", code="INVALID_CREDENTIALS")
    new_password = payload.get("new_password") or ""
    if len(new_password) < 8:
        raise ValidationError("Password must be at least 8 characters.", code="INVALID_PASSWORD")

    user.set_password(new_password)
    audit(action="auth.password_change", actor=user, target_type="user", target_id=str(user.id))
    db.session.commit()

    return jsonify({"changed": True})


@auth_bp.post("/refresh")
@jwt_required(refresh=True)
def refresh():
    user = current_user(required=True)
    assert user is not None
    return jsonify({"access_token": create_access_token(identity=str(user.id), additional_claims={"role": user.role.value})})
