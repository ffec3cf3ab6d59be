from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import File, Folder, utc_now
from ..quota.accountant import release_quota
from ..storage import Tenant, storage_engine, user_tenant


BlobRef = tuple[Tenant, str]


def collect_folder_files(root: Folder) -> list[File]:
    stack = [root]
    seen: set[int] = set()
    collected: list[File] = []
    while stack:
        current = stack.pop()
        if current.id in seen:
            continue
        seen.add(current.id)
        collected.extend(current.files)
        stack.extend(child for child in current.children if child.owner_id == root.owner_id)
    return collected


def release_files(rows: list[File]) -> list[BlobRef]:
    """Release quota for rows about to be deleted and return their blob references."""
    per_owner: dict[int, int] = defaultdict(int)
    refs: list[BlobRef] = []
    for row in rows:
        per_owner[row.owner_id] += int(row.encrypted_size)
        refs.append((user_tenant(row.owner_id), row.file_id))
    for owner_id, amount in per_owner.items():
        release_quota(owner_id, amount)
    return refs


def delete_file_rows(rows: list[File]) -> list[BlobRef]:
    refs = release_files(rows)
    for row in rows:
        db.session.delete(row)
    return refs


def delete_blobs(refs: list[BlobRef]) -> int:
    engine = storage_engine()
    removed = 0
    for tenant, file_id in refs:
        try:
            if engine.delete(tenant, file_id):
                removed += 1
        except OSError as error:
            current_app.logger.error("secure delete of blob %s failed: %s", file_id, error)
    return removed


def purge_expired_files(now: datetime | None = None, batch_size: int = 500) -> int:
    """Delete every file whose expiry has passed, releasing its quota."""
    now = now or utc_now()
    purged = 0
    while True:
        rows = File.query.filter(File.expires_at.isnot(None), File.expires_at <= now).order_by(File.id).limit(batch_size).all()
        if not rows:
            return purged
        refs = delete_file_rows(rows)
        db.session.commit()
        delete_blobs(refs)
        purged += len(rows)
