from __future__ import annotations

from ..common.errors import InfraError
from ..config import current_settings
from ..models import AnonymousShare, User
from .crypto import KEY_LENGTH, derive_master_key, open_bytes, random_bytes, seal_bytes


def provision_user_keys(user: User, password: str) -> None:
    if user.master_key_sealed:
        return
    master_key, salt = derive_master_key(password)
    user.master_key_sealed = seal_bytes(master_key, current_settings().metadata_key)
    user.master_key_salt = salt.hex()


def user_master_key(user: User) -> bytes:
    if not user.master_key_sealed:
        raise InfraError("User has no storage key.", code="KEY_MISSING")
    return open_bytes(user.master_key_sealed, current_settings().metadata_key)


def new_anonymous_key() -> tuple[bytes, str]:
    master_key = random_bytes(KEY_LENGTH)
    return master_key, seal_bytes(master_key, current_settings().metadata_key)


def anonymous_master_key(share: AnonymousShare) -> bytes:
    return open_bytes(share.master_key_sealed, current_settings().metadata_key)
