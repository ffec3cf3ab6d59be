from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from flask import current_app

from .common.sizes import parse_file_size


BASE_DIR = Path(__file__).resolve().parents[2]


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    cleaned = raw.strip()
    return cleaned or default


def env_size(name: str, default: str) -> int:
    raw = os.getenv(name)
    try:
        return parse_file_size(raw if raw and raw.strip() else default)
    except ValueError:
        return parse_file_size(default)


def env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or list(default)


class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", f"sqlite:///{BASE_DIR / 'relayum.db'}")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-jwt-secret-key-change-me-at-least-32-bytes")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=env_int("ACCESS_TOKEN_EXPIRES_MINUTES", 15))
    JWT_REFRESH_TOKEN_EXPIRES = timedelta(days=env_int("REFRESH_TOKEN_EXPIRES_DAYS", 7))

    FRONTEND_ORIGINS = env_list("FRONTEND_ORIGINS", ["http://localhost:3000", "http://127.0.0.1:3000"])
    PUBLIC_BASE_URL = env_str("PUBLIC_BASE_URL", "")

    METADATA_ENCRYPTION_KEY = os.getenv("METADATA_ENCRYPTION_KEY", "")
    STORAGE_ROOT = os.getenv("STORAGE_ROOT", str(BASE_DIR / "storage"))
    STREAM_CHUNK_SIZE = env_size("STREAM_CHUNK_SIZE", "64KB")
    MAX_BUFFERED_SIZE = env_size("MAX_BUFFERED_SIZE", "1MB")
    MAX_FILE_SIZE = env_size("MAX_FILE_SIZE", "100MB")
    MAX_DOWNLOAD_SIZE = env_size("MAX_DOWNLOAD_SIZE", "5GB")
    DOWNLOAD_DEADLINE_SECONDS = env_int("DOWNLOAD_DEADLINE_SECONDS", 900)
    ENABLE_SECURE_DELETE = env_bool("ENABLE_SECURE_DELETE", True)
    MAX_SECURE_DELETE_SIZE = env_size("MAX_SECURE_DELETE_SIZE", "100MB")
    UPLOAD_CONCURRENCY = env_int("UPLOAD_CONCURRENCY", 8)
    FOLDER_MAX_DEPTH = env_int("FOLDER_MAX_DEPTH", 64)

    ALLOW_REGISTRATION = env_bool("ALLOW_REGISTRATION", True)
    DEFAULT_DISK_QUOTA = env_size("DEFAULT_DISK_QUOTA", "1GB")
    DEFAULT_FILE_EXPIRATION_DAYS = env_int("DEFAULT_FILE_EXPIRATION_DAYS", 30)

    ALLOW_ANONYMOUS_SHARING = env_bool("ALLOW_ANONYMOUS_SHARING", True)
    ANONYMOUS_MAX_FILE_SIZE = env_size("ANONYMOUS_MAX_FILE_SIZE", "100MB")
    ANONYMOUS_SHARE_EXPIRATION_DAYS = env_int("ANONYMOUS_SHARE_EXPIRATION_DAYS", 7)
    ANONYMOUS_SHARE_MAX_ACCESS = env_int("ANONYMOUS_SHARE_MAX_ACCESS", 1000)

    VIRUS_SCANNING_ENABLED = env_bool("VIRUS_SCANNING_ENABLED", False)
    SCAN_MAX_RETRIES = env_int("SCAN_MAX_RETRIES", 3)
    SCAN_HOOK_SYNCHRONOUS = env_bool("SCAN_HOOK_SYNCHRONOUS", False)

    JANITOR_INTERVAL_SECONDS = max(60, env_int("JANITOR_INTERVAL_SECONDS", 3600))

    TRUST_PROXY_HEADERS = env_list("TRUST_PROXY_HEADERS", ["X-Forwarded-For"])

    LOGIN_RATE_LIMIT_WINDOW_SECONDS = env_int("LOGIN_RATE_LIMIT_WINDOW_SECONDS", 900)
    LOGIN_RATE_LIMIT_MAX_ATTEMPTS = env_int("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", 5)
    RATE_LIMIT_DEFAULT = env_str("RATE_LIMIT_DEFAULT", "600/min")
    RATE_LIMIT_AUTH = env_str("RATE_LIMIT_AUTH", "20/min")
    RATE_LIMIT_FILES_READ = env_str("RATE_LIMIT_FILES_READ", "600/min")
    RATE_LIMIT_FILES_WRITE = env_str("RATE_LIMIT_FILES_WRITE", "120/min")
    RATE_LIMIT_SHARES = env_str("RATE_LIMIT_SHARES", "120/min")
    RATE_LIMIT_DOWNLOAD = env_str("RATE_LIMIT_DOWNLOAD", "200/min")
    RATE_LIMIT_ANONYMOUS = env_str("RATE_LIMIT_ANONYMOUS", "30/min")

    FEATURE_FLAGS: dict[str, bool] = {}
    FEATURE_FLAGS_FILE = os.getenv("FEATURE_FLAGS_FILE", "")

    MAX_CONTENT_LENGTH = env_int("MAX_CONTENT_LENGTH", 1024 * 1024 * 1024)


class TestingConfig(Config):
    TESTING = True


@dataclass(frozen=True)
class CoreSettings:
    storage_root: Path
    metadata_key: bytes
    chunk_size: int
    max_buffered_size: int
    max_file_size: int
    max_download_size: int
    download_deadline_seconds: int
    secure_delete_enabled: bool
    max_secure_delete_size: int
    upload_concurrency: int
    folder_max_depth: int
    default_quota_bytes: int
    default_file_expiration_days: int
    anonymous_enabled: bool
    anonymous_max_file_size: int
    anonymous_expiration_days: int
    anonymous_max_access: int
    scanning_enabled: bool
    scan_max_retries: int
    scan_synchronous: bool

    @classmethod
    def from_mapping(cls, config: dict[str, Any], metadata_key: bytes) -> "CoreSettings":
        return cls(
            storage_root=Path(config["STORAGE_ROOT"]).resolve(),
            metadata_key=metadata_key,
            chunk_size=max(1024, parse_file_size(config["STREAM_CHUNK_SIZE"])),
            max_buffered_size=parse_file_size(config["MAX_BUFFERED_SIZE"]),
            max_file_size=parse_file_size(config["MAX_FILE_SIZE"]),
            max_download_size=parse_file_size(config["MAX_DOWNLOAD_SIZE"]),
            download_deadline_seconds=max(1, int(config["DOWNLOAD_DEADLINE_SECONDS"])),
            secure_delete_enabled=bool(config["ENABLE_SECURE_DELETE"]),
            max_secure_delete_size=parse_file_size(config["MAX_SECURE_DELETE_SIZE"]),
            upload_concurrency=max(1, int(config["UPLOAD_CONCURRENCY"])),
            folder_max_depth=max(1, int(config["FOLDER_MAX_DEPTH"])),
            default_quota_bytes=parse_file_size(config["DEFAULT_DISK_QUOTA"]),
            default_file_expiration_days=int(config["DEFAULT_FILE_EXPIRATION_DAYS"]),
            anonymous_enabled=bool(config["ALLOW_ANONYMOUS_SHARING"]),
            anonymous_max_file_size=parse_file_size(config["ANONYMOUS_MAX_FILE_SIZE"]),
            anonymous_expiration_days=max(1, int(config["ANONYMOUS_SHARE_EXPIRATION_DAYS"])),
            anonymous_max_access=max(1, int(config["ANONYMOUS_SHARE_MAX_ACCESS"])),
            scanning_enabled=bool(config["VIRUS_SCANNING_ENABLED"]),
            scan_max_retries=max(0, int(config["SCAN_MAX_RETRIES"])),
            scan_synchronous=bool(config["SCAN_HOOK_SYNCHRONOUS"]),
        )


def current_settings() -> CoreSettings:
    return current_app.extensions["relayum.settings"]
