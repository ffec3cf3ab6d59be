from __future__ import annotations

import io
from pathlib import Path

import pytest

from relayum import create_app, shutdown_background
from relayum.extensions import db
from relayum.models import User, UserRole
from relayum.storage.keys import provision_user_keys


METADATA_KEY = "8f3a1c9e4b7d2f6a0e5c8b1d4f7a2c9e6b3d0f5a8c1e4b7d2a9f6c3e0b5d8a1f"
ALICE_QUOTA = 10 * 1024 * 1024


def make_user(username: str, password: str, quota: int = ALICE_QUOTA, role: UserRole = UserRole.USER) -> User:
    user = User(username=username, disk_quota_bytes=quota, disk_used_bytes=0, is_active=True, role=role)
    user.set_password(password)
    provision_user_keys(user, password)
    db.session.add(user)
    db.session.commit()
    return user


def base_config(tmp_path: Path) -> dict:
    return {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 30}},
        "STORAGE_ROOT": str(tmp_path / "storage"),
        "JWT_SECRET_KEY": "test-secret-key-at-least-32-bytes-long",
        "METADATA_ENCRYPTION_KEY": METADATA_KEY,
        "ALLOW_REGISTRATION": True,
        "DEFAULT_DISK_QUOTA": ALICE_QUOTA,
        "VIRUS_SCANNING_ENABLED": False,
        "ENABLE_SECURE_DELETE": True,
        "UPLOAD_CONCURRENCY": 32,
        "FRONTEND_ORIGINS": ["http://localhost:5173"],
    }


@pytest.fixture
def config_overrides() -> dict:
    return {}


@pytest.fixture
def app(tmp_path: Path, config_overrides: dict):
    app = create_app({**base_config(tmp_path), **config_overrides})

    with app.app_context():
        db.create_all()
        make_user("alice", "alicepass")
        make_user("bob", "bobpass12")
        make_user("root", "rootpass", role=UserRole.ADMIN)

    yield app

    shutdown_background(app)
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, username: str = "alice", password: str = "alicepass") -> dict[str, str]:
    response = client.post("/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.get_json()['access_token']}"}


@pytest.fixture
def alice_headers(client) -> dict[str, str]:
    return login(client)


@pytest.fixture
def bob_headers(client) -> dict[str, str]:
    return login(client, "bob", "bobpass12")


@pytest.fixture
def admin_headers(client) -> dict[str, str]:
    return login(client, "root", "rootpass")


def upload(client, headers, content: bytes, filename: str = "hello.txt", folder_id: int | None = None, **extra):
    data = {"files": (io.BytesIO(content), filename), **extra}
    if folder_id is not None:
        data["folder_id"] = str(folder_id)
    return client.post("/files/upload", data=data, headers=headers, content_type="multipart/form-data")
