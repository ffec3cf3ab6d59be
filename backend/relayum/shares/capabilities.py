"""Capability kinds and the pure share resolver."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Union

from ..common.errors import APIError, AuthError, GoneError, NotFoundError
from ..models import AnonymousShare, Share, as_utc, utc_now, verify_secret


SHARE_UNAVAILABLE = "Share not found or expired"


class ResolveStatus(str, enum.Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    PASSWORD_REQUIRED = "password_required"
    BAD_PASSWORD = "bad_password"
    ACCESS_LIMIT_REACHED = "access_limit_reached"


@dataclass(frozen=True)
class OwnerCapability:
    user_id: int


@dataclass(frozen=True)
class PrivateToUser:
    recipient_id: int
    token: str | None


@dataclass(frozen=True)
class PublicCapability:
    token: str
    password_hash: str | None


@dataclass(frozen=True)
class AnonymousCapability:
    token: str
    password_hash: str | None
    max_access: int


Capability = Union[OwnerCapability, PrivateToUser, PublicCapability, AnonymousCapability]


def capability_of(row: Share | AnonymousShare) -> Capability:
    if isinstance(row, AnonymousShare):
        return AnonymousCapability(token=row.share_token, password_hash=row.password_hash, max_access=row.max_access_count)
    if row.public_token is not None:
        return PublicCapability(token=row.public_token, password_hash=row.password_hash)
    if row.shared_with_id is not None:
        return PrivateToUser(recipient_id=row.shared_with_id, token=row.private_token)
    raise ValueError(f"share {row.id} carries no capability")


def permits(capability: Capability, principal_id: int | None) -> bool:
    if isinstance(capability, OwnerCapability):
        return principal_id is not None and principal_id == capability.user_id
    if isinstance(capability, PrivateToUser):
        return principal_id is not None and principal_id == capability.recipient_id
    return True


def evaluate(row: Share | AnonymousShare, password: str | None, now: datetime | None = None) -> ResolveStatus:
    now = now or utc_now()
    expires_at = as_utc(row.expires_at)
    if expires_at is not None and expires_at <= now:
        return ResolveStatus.EXPIRED

    capability = capability_of(row)
    if isinstance(capability, OwnerCapability):
        return ResolveStatus.OK
    if isinstance(capability, PrivateToUser):
        return ResolveStatus.OK
    if isinstance(capability, AnonymousCapability) and row.access_count >= capability.max_access:
        return ResolveStatus.ACCESS_LIMIT_REACHED

    if capability.password_hash:
        if not password:
            return ResolveStatus.PASSWORD_REQUIRED
        if not verify_secret(capability.password_hash, password):
            return ResolveStatus.BAD_PASSWORD
    return ResolveStatus.OK


@dataclass(frozen=True)
class Resolution:
    status: ResolveStatus
    share: Share | AnonymousShare | None = None

    @property
    def ok(self) -> bool:
        return self.status == ResolveStatus.OK

    def to_error(self) -> APIError:
        if self.status == ResolveStatus.EXPIRED:
            return GoneError(SHARE_UNAVAILABLE, code="SHARE_EXPIRED")
        if self.status == ResolveStatus.PASSWORD_REQUIRED:
            return AuthError("Password required", {"password_required": True}, code="PASSWORD_REQUIRED")
        if self.status == ResolveStatus.BAD_PASSWORD:
            return AuthError("Invalid password", {"password_required": True}, code="INVALID_PASSWORD")
        if self.status == ResolveStatus.ACCESS_LIMIT_REACHED:
            return GoneError("Share access limit reached", code="ACCESS_LIMIT_REACHED")
        return NotFoundError(SHARE_UNAVAILABLE, code="SHARE_NOT_FOUND")

    def require(self) -> Share | AnonymousShare:
        if not self.ok:
            raise self.to_error()
        assert self.share is not None
        return self.share
