from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from .extensions import db


pwd_hasher = PasswordHasher()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def hash_secret(secret: str) -> str:
    return pwd_hasher.hash(secret)


def verify_secret(secret_hash: str | None, candidate: str) -> bool:
    if not secret_hash:
        return False
    try:
        return pwd_hasher.verify(secret_hash, candidate)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class VirusScanStatus(str, enum.Enum):
    PENDING = "pending"
    CLEAN = "clean"
    INFECTED = "infected"
    ERROR = "error"
    SKIPPED = "skipped"


class OverrideType(str, enum.Enum):
    DISK_QUOTA = "disk_quota"
    FILE_EXPIRATION = "file_expiration"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.Enum(UserRole), nullable=False, default=UserRole.USER)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    disk_quota_bytes = db.Column(db.BigInteger, nullable=False, default=0)
    disk_used_bytes = db.Column(db.BigInteger, nullable=False, default=0)
    file_expiration_days = db.Column(db.Integer, nullable=True)
    master_key_sealed = db.Column(db.Text, nullable=True)
    master_key_salt = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    folders = db.relationship("Folder", back_populates="owner", cascade="all, delete-orphan")
    files = db.relationship("File", back_populates="owner", cascade="all, delete-orphan")
    overrides = db.relationship("AdminOverride", foreign_keys="AdminOverride.user_id", cascade="all, delete-orphan")

    def set_password(self, password: str) -> None:
        self.password_hash = pwd_hasher.hash(password)

    def verify_password(self, password: str) -> bool:
        return verify_secret(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def override_value(self, override_type: OverrideType) -> int | None:
        for override in self.overrides:
            if override.override_type == override_type:
                return override.value
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
            "is_active": self.is_active,
            "disk_quota_bytes": self.disk_quota_bytes,
            "disk_used_bytes": self.disk_used_bytes,
            "file_expiration_days": self.file_expiration_days,
            "created_at": _iso(self.created_at),
        }


class AdminOverride(db.Model):
    __tablename__ = "admin_overrides"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    override_type = db.Column(db.Enum(OverrideType), nullable=False)
    value = db.Column(db.BigInteger, nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (db.UniqueConstraint("user_id", "override_type", name="uq_admin_override_user_type"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "override_type": self.override_type.value,
            "value": self.value,
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
        }


class Folder(db.Model):
    __tablename__ = "folders"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey("folders.id", ondelete="CASCADE"), nullable=True, index=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    owner = db.relationship("User", back_populates="folders")
    parent = db.relationship("Folder", remote_side=[id], back_populates="children")
    children = db.relationship("Folder", back_populates="parent", cascade="all")
    files = db.relationship("File", back_populates="folder", cascade="all")
    shares = db.relationship("Share", back_populates="folder", cascade="all")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "owner_id": self.owner_id,
            "created_at": _iso(self.created_at),
        }


class File(db.Model):
    __tablename__ = "files"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    folder_id = db.Column(db.Integer, db.ForeignKey("folders.id", ondelete="CASCADE"), nullable=True, index=True)
    filename = db.Column(db.String(255), nullable=False)
    mime_type = db.Column(db.String(255), nullable=True)
    size = db.Column(db.BigInteger, nullable=False)
    encrypted_size = db.Column(db.BigInteger, nullable=False)
    file_id = db.Column(db.String(64), unique=True, nullable=False)
    content_hash = db.Column(db.String(64), nullable=False)
    encrypted = db.Column(db.Boolean, nullable=False, default=True)
    virus_scan_status = db.Column(db.Enum(VirusScanStatus), nullable=False, default=VirusScanStatus.SKIPPED)
    scanned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    threat_name = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    download_count = db.Column(db.Integer, nullable=False, default=0)

    owner = db.relationship("User", back_populates="files")
    folder = db.relationship("Folder", back_populates="files")
    shares = db.relationship("Share", back_populates="file", cascade="all")

    __table_args__ = (db.UniqueConstraint("owner_id", "file_id", name="uq_file_owner_blob"),)

    def is_expired(self, now: datetime | None = None) -> bool:
        expires_at = as_utc(self.expires_at)
        return expires_at is not None and expires_at <= (now or utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "folder_id": self.folder_id,
            "filename": self.filename,
            "mime_type": self.mime_type,
            "size": self.size,
            "encrypted_size": self.encrypted_size,
            "file_id": self.file_id,
            "file_hash": self.content_hash,
            "encrypted": self.encrypted,
            "virus_scan_status": self.virus_scan_status.value,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "download_count": self.download_count,
        }


class Share(db.Model):
    __tablename__ = "shares"

    id = db.Column(db.Integer, primary_key=True)
    file_id = db.Column(db.Integer, db.ForeignKey("files.id", ondelete="CASCADE"), nullable=True, index=True)
    folder_id = db.Column(db.Integer, db.ForeignKey("folders.id", ondelete="CASCADE"), nullable=True, index=True)
    shared_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    shared_with_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    public_token = db.Column(db.String(64), unique=True, nullable=True)
    private_token = db.Column(db.String(64), unique=True, nullable=True)
    password_hash = db.Column(db.String(255), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_viewed = db.Column(db.Boolean, nullable=False, default=False)
    viewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    access_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    file = db.relationship("File", back_populates="shares")
    folder = db.relationship("Folder", back_populates="shares")
    shared_by = db.relationship("User", foreign_keys=[shared_by_id])
    shared_with = db.relationship("User", foreign_keys=[shared_with_id])

    __table_args__ = (
        db.CheckConstraint(
            "(file_id IS NOT NULL AND folder_id IS NULL) OR (file_id IS NULL AND folder_id IS NOT NULL)",
            name="ck_share_file_or_folder",
        ),
        db.CheckConstraint(
            "(shared_with_id IS NOT NULL AND public_token IS NULL) OR (shared_with_id IS NULL AND public_token IS NOT NULL)",
            name="ck_share_private_or_public",
        ),
    )

    @property
    def is_public(self) -> bool:
        return self.public_token is not None

    def to_dict(self) -> dict[str, Any]:
        item = self.file or self.folder
        return {
            "id": self.id,
            "file_id": self.file_id,
            "folder_id": self.folder_id,
            "item_type": "file" if self.file_id is not None else "folder",
            "item_name": (self.file.filename if self.file else self.folder.name) if item is not None else None,
            "shared_by": self.shared_by_id,
            "shared_by_username": self.shared_by.username if self.shared_by else None,
            "shared_with": self.shared_with_id,
            "shared_with_username": self.shared_with.username if self.shared_with else None,
            "public_token": self.public_token,
            "private_token": self.private_token,
            "has_password": self.password_hash is not None,
            "expires_at": _iso(self.expires_at),
            "is_viewed": self.is_viewed,
            "viewed_at": _iso(self.viewed_at),
            "access_count": self.access_count,
            "created_at": _iso(self.created_at),
        }


class AnonymousShare(db.Model):
    __tablename__ = "anonymous_shares"

    id = db.Column(db.Integer, primary_key=True)
    share_token = db.Column(db.String(64), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=True)
    master_key_sealed = db.Column(db.Text, nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    access_count = db.Column(db.Integer, nullable=False, default=0)
    max_access_count = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    files = db.relationship(
        "AnonymousFile",
        back_populates="share",
        cascade="all, delete-orphan",
        order_by="AnonymousFile.id",
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "share_token": self.share_token,
            "has_password": self.password_hash is not None,
            "expires_at": _iso(self.expires_at),
            "access_count": self.access_count,
            "max_access_count": self.max_access_count,
            "created_at": _iso(self.created_at),
            "files": [item.to_dict() for item in self.files],
        }


class AnonymousFile(db.Model):
    __tablename__ = "anonymous_files"

    id = db.Column(db.Integer, primary_key=True)
    anonymous_share_id = db.Column(
        db.Integer,
        db.ForeignKey("anonymous_shares.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_filename = db.Column(db.String(255), nullable=False)
    relative_path = db.Column(db.String(1024), nullable=True)
    mime_type = db.Column(db.String(255), nullable=True)
    size = db.Column(db.BigInteger, nullable=False)
    encrypted_size = db.Column(db.BigInteger, nullable=False)
    file_id = db.Column(db.String(64), unique=True, nullable=False)
    content_hash = db.Column(db.String(64), nullable=False)
    virus_scan_status = db.Column(db.Enum(VirusScanStatus), nullable=False, default=VirusScanStatus.SKIPPED)
    scanned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    threat_name = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    share = db.relationship("AnonymousShare", back_populates="files")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.original_filename,
            "relative_path": self.relative_path,
            "mime_type": self.mime_type,
            "size": self.size,
            "virus_scan_status": self.virus_scan_status.value,
            "created_at": _iso(self.created_at),
        }


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    actor_ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    action = db.Column(db.String(128), nullable=False, index=True)
    target_type = db.Column(db.String(64), nullable=True)
    target_id = db.Column(db.String(128), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    severity = db.Column(db.String(16), nullable=False, default="info")
    success = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "actor_ip": self.actor_ip,
            "action": self.action,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "details": self.details,
            "severity": self.severity,
            "success": self.success,
            "created_at": _iso(self.created_at),
        }


class LoginEvent(db.Model):
    __tablename__ = "login_events"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(120), nullable=False, index=True)
    ip_address = db.Column(db.String(64), nullable=True, index=True)
    user_agent = db.Column(db.String(512), nullable=True)
    successful = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "successful": self.successful,
            "created_at": _iso(self.created_at),
        }


class IpBan(db.Model):
    __tablename__ = "ip_bans"

    id = db.Column(db.Integer, primary_key=True)
    ip_address = db.Column(db.String(64), nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)
    banned_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    def is_effective(self, now: datetime | None = None) -> bool:
        if not self.is_active:
            return False
        expires_at = as_utc(self.expires_at)
        return expires_at is None or expires_at > (now or utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ip_address": self.ip_address,
            "reason": self.reason,
            "banned_by_id": self.banned_by_id,
            "expires_at": _iso(self.expires_at),
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }
