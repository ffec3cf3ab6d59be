from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from flask import current_app

from ..common.audit import audit
from ..common.errors import ForbiddenError, PayloadTooLarge, ValidationError
from ..common.names import split_relative_dirs
from ..common.sizes import format_file_size
from ..config import current_settings
from ..extensions import db
from ..files.ingest import IncomingFile
from ..models import AnonymousFile, AnonymousShare, VirusScanStatus, hash_secret, utc_now
from ..scanning.hook import scan_hook
from ..storage import anonymous_tenant, storage_engine
from ..storage.crypto import random_token
from ..storage.keys import new_anonymous_key


def ensure_enabled() -> None:
    if not current_settings().anonymous_enabled:
        raise ForbiddenError("Anonymous sharing is disabled.", code="ANONYMOUS_DISABLED")


def _member_path(item: IncomingFile) -> str | None:
    if not item.relative_path:
        return None
    return "/".join([*split_relative_dirs(item.relative_path), item.filename])


def _parse_max_access(raw: Any, ceiling: int) -> int:
    if raw in (None, ""):
        return ceiling
    try:
        value = int(raw)
    except (TypeError, ValueError) as error:
        raise ValidationError("max_access must be an integer.", code="INVALID_PARAMETER") from error
    if value < 1:
        raise ValidationError("max_access must be at least 1.", code="INVALID_PARAMETER")
    return min(value, ceiling)


def create_anonymous_share(items: list[IncomingFile], password: str | None, max_access: Any = None) -> AnonymousShare:
    ensure_enabled()
    settings = current_settings()
    if not items:
        raise ValidationError("At least one file is required.", code="INVALID_FILE")
    for item in items:
        if item.declared_size > settings.anonymous_max_file_size:
            raise PayloadTooLarge(
                f"File exceeds the anonymous upload limit of {format_file_size(settings.anonymous_max_file_size)}.",
                {"max_bytes": settings.anonymous_max_file_size},
            )

    token = random_token()
    tenant = anonymous_tenant(token)
    engine = storage_engine()
    master_key, sealed_key = new_anonymous_key()

    share = AnonymousShare(
        share_token=token,
        password_hash=hash_secret(password) if password else None,
        master_key_sealed=sealed_key,
        expires_at=utc_now() + timedelta(days=settings.anonymous_expiration_days),
        max_access_count=_parse_max_access(max_access, settings.anonymous_max_access),
    )
    db.session.add(share)

    try:
        for item in items:
            blob = engine.put(
                tenant,
                master_key,
                item.stream,
                item.filename,
                item.mime,
                max_size=settings.anonymous_max_file_size,
            )
            share.files.append(
                AnonymousFile(
                    original_filename=item.filename,
                    relative_path=_member_path(item),
                    mime_type=item.mime,
                    size=blob.original_size,
                    encrypted_size=blob.encrypted_size,
                    file_id=blob.file_id,
                    content_hash=blob.content_hash,
                    virus_scan_status=VirusScanStatus.PENDING if settings.scanning_enabled else VirusScanStatus.SKIPPED,
                )
            )
        db.session.flush()
        audit(
            action="anonymous.upload",
            target_type="anonymous_share",
            target_id=str(share.id),
            details={"file_count": len(items), "has_password": bool(password)},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        engine.delete_tenant(tenant)
        current_app.logger.warning("anonymous upload failed; tenancy %s removed", token[:8])
        raise

    if settings.scanning_enabled:
        hook = scan_hook()
        for row in share.files:
            hook.submit(row)
    return share


def purge_expired_anonymous(now: datetime | None = None) -> int:
    now = now or utc_now()
    engine = storage_engine()
    expired = AnonymousShare.query.filter(AnonymousShare.expires_at <= now).all()
    purged = 0
    for share in expired:
        token = share.share_token
        db.session.delete(share)
        db.session.commit()
        try:
            engine.delete_tenant(anonymous_tenant(token))
        except OSError as error:
            current_app.logger.error("could not remove anonymous tenancy %s: %s", token[:8], error)
            continue
        purged += 1
    return purged
