"""Per-user disk usage accounting.

Usage is reserved before a blob is written, settled to the blob's encrypted size
in the same transaction that inserts the file row, and released on delete.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, update

from ..common.errors import NotFoundError, QuotaExceeded
from ..common.sizes import format_file_size
from ..config import current_settings
from ..extensions import db
from ..models import File, OverrideType, User


@dataclass
class Reservation:
    user_id: int
    amount: int
    state: str = "open"


def effective_quota(user: User) -> int:
    override = user.override_value(OverrideType.DISK_QUOTA)
    if override is not None:
        return int(override)
    return int(user.disk_quota_bytes)


def effective_expiration_days(user: User) -> int:
    override = user.override_value(OverrideType.FILE_EXPIRATION)
    if override is not None:
        return int(override)
    if user.file_expiration_days is not None:
        return int(user.file_expiration_days)
    return current_settings().default_file_expiration_days


def quota_snapshot(user: User) -> dict[str, Any]:
    quota = effective_quota(user)
    used = int(user.disk_used_bytes)
    available = max(0, quota - used)
    return {
        "quota_bytes": quota,
        "used_bytes": used,
        "available_bytes": available,
        "usage_percentage": round(used / quota * 100, 2) if quota > 0 else 0.0,
        "has_admin_override": user.override_value(OverrideType.DISK_QUOTA) is not None,
        "effective_file_expiration_days": effective_expiration_days(user),
    }


def _load_locked(user_id: int) -> User:
    user = User.query.filter_by(id=user_id).with_for_update().one_or_none()
    if user is None:
        raise NotFoundError("User not found.", code="USER_NOT_FOUND")
    return user


def reserve_quota(user_id: int, amount: int) -> Reservation:
    """Atomically add ``amount`` to the user's usage and commit, or raise QuotaExceeded."""
    user = _load_locked(user_id)
    limit = effective_quota(user)

    result = db.session.execute(
        update(User)
        .where(User.id == user_id, User.disk_used_bytes + amount <= limit)
        .values(disk_used_bytes=User.disk_used_bytes + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        db.session.refresh(user)
        snapshot = quota_snapshot(user)
        raise QuotaExceeded(
            f"Disk quota exceeded. {format_file_size(snapshot['available_bytes'])} available.",
            {
                "quota_bytes": snapshot["quota_bytes"],
                "used_bytes": snapshot["used_bytes"],
                "available_bytes": snapshot["available_bytes"],
                "has_admin_override": snapshot["has_admin_override"],
            },
        )
    db.session.commit()
    return Reservation(user_id=user_id, amount=amount)


def commit_reservation(reservation: Reservation, actual_amount: int) -> None:
    """Settle the reservation to ``actual_amount`` and commit the pending session work with it."""
    if reservation.state != "open":
        return
    delta = actual_amount - reservation.amount
    if delta:
        db.session.execute(
            update(User)
            .where(User.id == reservation.user_id)
            .values(disk_used_bytes=User.disk_used_bytes + delta)
            .execution_options(synchronize_session=False)
        )
    db.session.commit()
    reservation.amount = actual_amount
    reservation.state = "committed"


def rollback_reservation(reservation: Reservation) -> None:
    if reservation.state != "open":
        return
    release_quota(reservation.user_id, reservation.amount)
    db.session.commit()
    reservation.state = "rolled_back"


def release_quota(user_id: int, amount: int) -> None:
    if amount <= 0:
        return
    result = db.session.execute(
        update(User)
        .where(User.id == user_id, User.disk_used_bytes >= amount)
        .values(disk_used_bytes=User.disk_used_bytes - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.execute(
            update(User).where(User.id == user_id).values(disk_used_bytes=0).execution_options(synchronize_session=False)
        )


def recompute_usage(user_id: int) -> tuple[int, int]:
    user = _load_locked(user_id)
    previous = int(user.disk_used_bytes)
    total = db.session.query(func.coalesce(func.sum(File.encrypted_size), 0)).filter(File.owner_id == user_id).scalar()
    user.disk_used_bytes = int(total or 0)
    return previous, user.disk_used_bytes
