from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask import g
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from ..extensions import db
from ..models import User, UserRole
from .errors import AuthError, ForbiddenError


def current_user(required: bool = True) -> User | None:
    """The active user behind the request's JWT, loaded once per request."""
    cached = g.get("relayum_user")
    if cached is not None:
        return cached

    identity = get_jwt_identity()
    user = db.session.get(User, int(identity)) if identity is not None else None
    if user is not None and not user.is_active:
        user = None
    if user is None:
        if required:
            raise AuthError("Authentication required." if identity is None else "Invalid session.")
        return None

    g.relayum_user = user
    return user


def role_required(*roles: UserRole) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            verify_jwt_in_request()
            user = current_user(required=True)
            assert user is not None
            if user.role not in roles:
                raise ForbiddenError("Admin access required." if roles == (UserRole.ADMIN,) else "Insufficient role.")
            return func(*args, **kwargs)

        return wrapper

    return decorator


admin_required = role_required(UserRole.ADMIN)
