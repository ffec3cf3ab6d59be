from __future__ import annotations

from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditEvent, User
from .netutil import client_ip, client_user_agent


def audit(
    action: str,
    actor: User | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    details: dict[str, Any] | None = None,
    *,
    severity: str = "info",
    success: bool = True,
) -> AuditEvent | None:
    entry = AuditEvent(
        actor_user_id=actor.id if actor else None,
        actor_ip=client_ip(),
        user_agent=client_user_agent(),
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
        severity=(severity or "info").lower(),
        success=bool(success),
    )
    # Audit must never break the primary action.
    try:
        with db.session.begin_nested():
            db.session.add(entry)
            db.session.flush([entry])
    except SQLAlchemyError as error:
        current_app.logger.warning("audit write failed for %s: %s", action, error)
        return None

    return entry
