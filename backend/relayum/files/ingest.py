from __future__ import annotations

import mimetypes
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import BinaryIO

from flask import current_app
from werkzeug.datastructures import FileStorage

from ..common.audit import audit
from ..common.errors import NotFoundError, PayloadTooLarge, ServiceBusy, ValidationError
from ..common.names import split_relative_dirs, upload_filename
from ..common.sizes import format_file_size
from ..config import current_settings
from ..extensions import db
from ..folders.queries import ancestry, folder_too_deep
from ..models import File, Folder, User, VirusScanStatus, utc_now
from ..quota.accountant import commit_reservation, effective_expiration_days, reserve_quota, rollback_reservation
from ..scanning.hook import scan_hook
from ..storage import storage_engine, user_tenant
from ..storage.container import HEADER_SIZE
from ..storage.keys import user_master_key
from .service import delete_blobs, delete_file_rows


@dataclass
class IncomingFile:
    filename: str
    mime: str | None
    stream: BinaryIO
    declared_size: int
    relative_path: str | None = None


def guess_mime(filename: str, declared: str | None) -> str:
    if declared and declared != "application/octet-stream":
        return declared
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


def _stream_size(stream: BinaryIO) -> int:
    current = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(current)
    return size


def incoming_from_request(uploads: list[FileStorage], relative_paths: list[str]) -> list[IncomingFile]:
    if not uploads:
        raise ValidationError("Multipart field 'files' is required.", code="INVALID_FILE")
    items: list[IncomingFile] = []
    for index, upload in enumerate(uploads):
        filename = upload_filename(upload.filename)
        relative_path = relative_paths[index] if index < len(relative_paths) else None
        items.append(
            IncomingFile(
                filename=filename,
                mime=guess_mime(filename, upload.mimetype),
                stream=upload.stream,
                declared_size=_stream_size(upload.stream),
                relative_path=relative_path or None,
            )
        )
    return items


@contextmanager
def upload_slot() -> Iterator[None]:
    gate: threading.BoundedSemaphore = current_app.extensions["relayum.upload_gate"]
    if not gate.acquire(blocking=False):
        raise ServiceBusy("Too many uploads in progress. Try again shortly.")
    try:
        yield
    finally:
        gate.release()


def resolve_target_folder(user: User, folder_pk: int | None) -> Folder | None:
    if folder_pk is None:
        return None
    folder = db.session.get(Folder, folder_pk)
    if folder is None or folder.owner_id != user.id:
        raise NotFoundError("Folder not found.", code="FOLDER_NOT_FOUND")
    return folder


def _base_depth(base: Folder | None) -> int:
    if base is None:
        return -1
    lineage = ancestry(base)
    if not lineage.complete:
        raise folder_too_deep()
    return lineage.depth


def ensure_folder_path(user: User, base: Folder | None, names: list[str], created: list[Folder]) -> Folder | None:
    """Walk or create ``names`` below ``base``; new folders are appended to ``created``."""
    if not names:
        return base
    if _base_depth(base) + len(names) > current_settings().folder_max_depth:
        raise folder_too_deep()

    current = base
    fresh = False
    for name in names:
        parent_id = current.id if current is not None else None
        existing = Folder.query.filter_by(owner_id=user.id, parent_id=parent_id, name=name).order_by(Folder.id.asc()).first()
        if existing is None:
            existing = Folder(name=name, owner_id=user.id, parent_id=parent_id)
            db.session.add(existing)
            db.session.flush()
            created.append(existing)
            fresh = True
        current = existing
    if fresh:
        db.session.commit()
    return current


def drop_empty_folders(folders: list[Folder]) -> None:
    """Delete the given folders, deepest first, unless something else now lives in them."""
    for folder in reversed(folders):
        if File.query.filter_by(folder_id=folder.id).count():
            continue
        if Folder.query.filter_by(parent_id=folder.id).count():
            continue
        db.session.delete(folder)
        db.session.flush()


def _ingest_one(user: User, base: Folder | None, item: IncomingFile, master_key: bytes, new_folders: list[Folder]) -> File:
    settings = current_settings()
    if item.declared_size > settings.max_file_size:
        raise PayloadTooLarge(
            f"File exceeds the maximum size of {format_file_size(settings.max_file_size)}.",
            {"max_bytes": settings.max_file_size},
        )

    folder = ensure_folder_path(user, base, split_relative_dirs(item.relative_path), new_folders)
    folder_id = folder.id if folder is not None else None
    tenant = user_tenant(user.id)
    engine = storage_engine()

    reservation = reserve_quota(user.id, item.declared_size + HEADER_SIZE)
    blob = None
    try:
        blob = engine.put(tenant, master_key, item.stream, item.filename, item.mime, max_size=settings.max_file_size)
        days = effective_expiration_days(user)
        now = utc_now()
        row = File(
            owner_id=user.id,
            folder_id=folder_id,
            filename=item.filename,
            mime_type=item.mime,
            size=blob.original_size,
            encrypted_size=blob.encrypted_size,
            file_id=blob.file_id,
            content_hash=blob.content_hash,
            encrypted=True,
            virus_scan_status=VirusScanStatus.PENDING if settings.scanning_enabled else VirusScanStatus.SKIPPED,
            created_at=now,
            expires_at=now + timedelta(days=days) if days > 0 else None,
        )
        db.session.add(row)
        db.session.flush()
        audit(
            action="files.upload",
            actor=user,
            target_type="file",
            target_id=str(row.id),
            details={"filename": item.filename, "size": blob.original_size, "folder_id": folder_id},
        )
        commit_reservation(reservation, blob.encrypted_size)
    except Exception:
        db.session.rollback()
        if blob is not None:
            engine.delete(tenant, blob.file_id)
        rollback_reservation(reservation)
        current_app.logger.warning("upload of %r for user %s failed; blob and quota rolled back", item.filename, user.id)
        raise
    return row


def ingest_batch(user: User, folder_pk: int | None, items: list[IncomingFile]) -> list[File]:
    """Store each item in order; a failure removes every file and folder the batch created."""
    base = resolve_target_folder(user, folder_pk)
    master_key = user_master_key(user)
    created: list[File] = []
    new_folders: list[Folder] = []
    try:
        for item in items:
            created.append(_ingest_one(user, base, item, master_key, new_folders))
    except Exception:
        refs = delete_file_rows(created) if created else []
        drop_empty_folders(new_folders)
        db.session.commit()
        delete_blobs(refs)
        raise

    if current_settings().scanning_enabled:
        hook = scan_hook()
        for row in created:
            hook.submit(row)
    return created
