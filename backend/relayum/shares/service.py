from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from flask import request
from sqlalchemy import update

from ..common.errors import GoneError, NotFoundError, ValidationError
from ..extensions import db
from ..folders.queries import subtree_files, subtree_folders
from ..models import AnonymousShare, File, Folder, Share, User, hash_secret, utc_now, verify_secret
from ..storage.crypto import random_token
from .capabilities import Resolution, ResolveStatus, capability_of, evaluate, permits


TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64}$")
RECEIVED_PAGE_LIMIT = 200

# Verified against on unknown tokens so lookups cost the same either way.
_DUMMY_HASH = hash_secret("relayum-share-placeholder")


def token_well_formed(token: str | None) -> bool:
    return bool(token) and TOKEN_PATTERN.match(token or "") is not None


def parse_expiry(raw: Any) -> datetime | None:
    if raw in (None, ""):
        return None
    if not isinstance(raw, str):
        raise ValidationError("expires_at must be an ISO 8601 string.", code="INVALID_EXPIRY")
    cleaned = raw.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(cleaned)
    except ValueError as error:
        raise ValidationError("expires_at must be an ISO 8601 string.", code="INVALID_EXPIRY") from error
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    if value <= utc_now():
        raise ValidationError("Expiration date must be in the future.", code="INVALID_EXPIRY")
    return value


def _owned_item(owner: User, file_pk: int | None, folder_pk: int | None) -> File | Folder:
    if (file_pk is None) == (folder_pk is None):
        raise ValidationError("Provide exactly one of file_id or folder_id.", code="INVALID_SHARE_TARGET")
    if file_pk is not None:
        item = db.session.get(File, file_pk)
    else:
        item = db.session.get(Folder, folder_pk)
    if item is None or item.owner_id != owner.id:
        raise NotFoundError("File or folder not found.", code="ITEM_NOT_FOUND")
    return item


def create_shares(
    owner: User,
    *,
    file_pk: int | None = None,
    folder_pk: int | None = None,
    usernames: list[str] | None = None,
    public: bool = False,
    expires_at: Any = None,
    password: str | None = None,
) -> list[Share]:
    item = _owned_item(owner, file_pk, folder_pk)
    expiry = parse_expiry(expires_at)
    usernames = [name.strip() for name in (usernames or []) if isinstance(name, str) and name.strip()]

    if public == bool(usernames):
        raise ValidationError("A share is either public or addressed to recipients.", code="INVALID_SHARE_KIND")
    if password and not public:
        raise ValidationError("Passwords apply to public shares only.", code="INVALID_SHARE_PASSWORD")

    base: dict[str, Any] = {
        "file_id": item.id if isinstance(item, File) else None,
        "folder_id": item.id if isinstance(item, Folder) else None,
        "shared_by_id": owner.id,
        "expires_at": expiry,
    }

    if public:
        share = Share(public_token=random_token(), password_hash=hash_secret(password) if password else None, **base)
        db.session.add(share)
        db.session.flush()
        return [share]

    shares: list[Share] = []
    seen: set[int] = set()
    for username in usernames:
        recipient = User.query.filter_by(username=username).one_or_none()
        if recipient is None or not recipient.is_active:
            raise NotFoundError(f"User '{username}' not found.", code="USER_NOT_FOUND")
        if recipient.id == owner.id:
            raise ValidationError("You cannot share with yourself.", code="INVALID_RECIPIENT")
        if recipient.id in seen:
            continue
        seen.add(recipient.id)
        share = Share(shared_with_id=recipient.id, private_token=random_token(), **base)
        db.session.add(share)
        shares.append(share)
    db.session.flush()
    return shares


def resolve_public(token: str, password: str | None) -> Resolution:
    if not token_well_formed(token):
        return Resolution(ResolveStatus.NOT_FOUND)
    share = Share.query.filter_by(public_token=token).one_or_none()
    if share is None:
        verify_secret(_DUMMY_HASH, password or "")
        return Resolution(ResolveStatus.NOT_FOUND)
    return Resolution(evaluate(share, password), share)


def resolve_private(token: str, user: User) -> Resolution:
    if not token_well_formed(token):
        return Resolution(ResolveStatus.NOT_FOUND)
    share = Share.query.filter_by(private_token=token).one_or_none()
    if share is None or not permits(capability_of(share), user.id):
        return Resolution(ResolveStatus.NOT_FOUND)
    return Resolution(evaluate(share, None), share)


def resolve_anonymous(token: str, password: str | None) -> Resolution:
    if not token_well_formed(token):
        return Resolution(ResolveStatus.NOT_FOUND)
    share = AnonymousShare.query.filter_by(share_token=token).one_or_none()
    if share is None:
        verify_secret(_DUMMY_HASH, password or "")
        return Resolution(ResolveStatus.NOT_FOUND)
    return Resolution(evaluate(share, password), share)


def record_access(share: Share | AnonymousShare) -> None:
    """Count one successful access against the share; the caller commits."""
    if isinstance(share, AnonymousShare):
        db.session.query(AnonymousShare).filter_by(id=share.id).with_for_update().one()
        result = db.session.execute(
            update(AnonymousShare)
            .where(AnonymousShare.id == share.id, AnonymousShare.access_count < AnonymousShare.max_access_count)
            .values(access_count=AnonymousShare.access_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise GoneError("Share access limit reached", code="ACCESS_LIMIT_REACHED")
        return

    db.session.query(Share).filter_by(id=share.id).with_for_update().one()
    db.session.execute(
        update(Share)
        .where(Share.id == share.id)
        .values(access_count=Share.access_count + 1, is_viewed=True, viewed_at=utc_now())
        .execution_options(synchronize_session=False)
    )


def shared_root(share: Share) -> File | Folder:
    item = share.file if share.file_id is not None else share.folder
    if item is None:
        raise NotFoundError("Share not found or expired", code="SHARE_NOT_FOUND")
    return item


def share_descriptor(share: Share) -> dict[str, Any]:
    item = shared_root(share)
    payload = share.to_dict()
    payload.pop("private_token", None)
    if isinstance(item, File):
        payload["item"] = {
            "id": item.id,
            "filename": item.filename,
            "size": item.size,
            "mime_type": item.mime_type,
            "created_at": item.to_dict()["created_at"],
        }
    else:
        payload["item"] = {"id": item.id, "name": item.name}
    return payload


def folder_share_contents(folder: Folder) -> dict[str, Any]:
    folders = subtree_folders(folder)
    files = subtree_files(folder)
    return {
        "folder": {"id": folder.id, "name": folder.name},
        "folders": [
            {"id": item.id, "name": item.name, "parent_id": item.parent_id, "relative_path": item.path}
            for item in folders
            if item.id != folder.id
        ],
        "files": [
            {
                "id": row.id,
                "filename": row.filename,
                "size": row.size,
                "mime_type": row.mime_type,
                "folder_id": row.folder_id,
                "relative_path": path,
            }
            for path, row in files
        ],
    }


def file_in_share(share: Share, file_pk: int) -> File:
    if share.file_id is not None:
        if share.file_id != file_pk:
            raise NotFoundError("File not found in share.", code="FILE_NOT_FOUND")
        item = shared_root(share)
        assert isinstance(item, File)
        return item
    folder = shared_root(share)
    assert isinstance(folder, Folder)
    for _, row in subtree_files(folder):
        if row.id == file_pk:
            return row
    raise NotFoundError("File not found in share.", code="FILE_NOT_FOUND")


def list_sent(user: User) -> list[Share]:
    return Share.query.filter_by(shared_by_id=user.id).order_by(Share.created_at.desc()).all()


def list_received(user: User, limit: int = RECEIVED_PAGE_LIMIT, offset: int = 0) -> list[Share]:
    limit = max(1, min(limit, RECEIVED_PAGE_LIMIT))
    shares = (
        Share.query.filter_by(shared_with_id=user.id)
        .order_by(Share.created_at.desc(), Share.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )
    unseen = [share.id for share in shares if not share.is_viewed]
    if unseen:
        db.session.execute(
            update(Share)
            .where(Share.id.in_(unseen))
            .values(is_viewed=True, viewed_at=utc_now())
            .execution_options(synchronize_session=False)
        )
    return shares


def unviewed_count(user: User) -> int:
    return Share.query.filter_by(shared_with_id=user.id, is_viewed=False).count()


def get_sent_share(user: User, share_pk: int) -> Share:
    share = db.session.get(Share, share_pk)
    if share is None or (share.shared_by_id != user.id and not user.is_admin):
        raise NotFoundError("Share not found.", code="SHARE_NOT_FOUND")
    return share


def get_received_share(user: User, share_pk: int) -> Share:
    share = db.session.get(Share, share_pk)
    if share is None or share.shared_with_id != user.id:
        raise NotFoundError("Share not found.", code="SHARE_NOT_FOUND")
    return share


def request_password() -> str | None:
    password = request.args.get("password")
    if not password and request.method == "POST":
        payload = request.get_json(silent=True) or {}
        password = payload.get("password") or request.form.get("password")
    return password or None
