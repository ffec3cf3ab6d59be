from __future__ import annotations

from flask import current_app

from .engine import StorageEngine, StoredBlob, Tenant, anonymous_tenant, user_tenant


def storage_engine() -> StorageEngine:
    return current_app.extensions["relayum.storage"]


__all__ = ["StorageEngine", "StoredBlob", "Tenant", "anonymous_tenant", "storage_engine", "user_tenant"]
