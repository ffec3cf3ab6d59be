from __future__ import annotations

import json
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import AEADDecryptionContext, AEADEncryptionContext, Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..common.errors import ConfigError, IntegrityError


KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16
SALT_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
TOKEN_BYTES = 32


def random_bytes(length: int) -> bytes:
    return secrets.token_bytes(length)


def random_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def key_well_formed(key: bytes | None) -> bool:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        return False
    if not any(key):
        return False
    return len(set(key)) >= 2


def load_metadata_key(raw: str | None) -> bytes:
    cleaned = (raw or "").strip()
    if not cleaned:
        raise ConfigError("METADATA_ENCRYPTION_KEY is required.")
    if len(cleaned) != KEY_LENGTH * 2:
        raise ConfigError("METADATA_ENCRYPTION_KEY must be 64 hex characters.")
    try:
        key = bytes.fromhex(cleaned)
    except ValueError as error:
        raise ConfigError("METADATA_ENCRYPTION_KEY must be hex encoded.") from error
    if not key_well_formed(key):
        raise ConfigError("METADATA_ENCRYPTION_KEY is too weak.")
    return key


def derive_master_key(password: str, salt: bytes | None = None) -> tuple[bytes, bytes]:
    salt = salt if salt is not None else random_bytes(SALT_LENGTH)
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(password.encode("utf-8")), salt


def derive_file_key(master_key: bytes, file_id: str) -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=None, info=f"file:{file_id}".encode("utf-8"))
    return hkdf.derive(master_key)


def new_encryptor(key: bytes, iv: bytes) -> AEADEncryptionContext:
    return Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()


def new_decryptor(key: bytes, iv: bytes, tag: bytes) -> AEADDecryptionContext:
    return Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()


def finalize_decryptor(decryptor: AEADDecryptionContext) -> bytes:
    try:
        return decryptor.finalize()
    except InvalidTag as error:
        raise IntegrityError("Authentication tag mismatch.") from error


def encrypt_buffer(key: bytes, plaintext: bytes) -> tuple[bytes, bytes, bytes]:
    iv = random_bytes(IV_LENGTH)
    encryptor = new_encryptor(key, iv)
    ciphertext = encryptor.update(plaintext) + encryptor.finalize()
    return ciphertext, iv, encryptor.tag


def decrypt_buffer(key: bytes, ciphertext: bytes, iv: bytes, tag: bytes) -> bytes:
    if len(tag) != TAG_LENGTH:
        raise IntegrityError("Authentication tag has the wrong length.")
    decryptor = new_decryptor(key, iv, tag)
    plaintext = decryptor.update(ciphertext)
    return plaintext + finalize_decryptor(decryptor)


def _require_metadata_key(key: bytes) -> None:
    if not key_well_formed(key):
        raise ConfigError("Metadata key is missing or malformed.")


def seal_bytes(data: bytes, key: bytes) -> str:
    _require_metadata_key(key)
    ciphertext, iv, tag = encrypt_buffer(key, data)
    return (iv + tag + ciphertext).hex()


def open_bytes(sealed: str, key: bytes) -> bytes:
    _require_metadata_key(key)
    try:
        raw = bytes.fromhex(sealed)
    except (TypeError, ValueError) as error:
        raise IntegrityError("Sealed value is not hex encoded.") from error
    if len(raw) < IV_LENGTH + TAG_LENGTH:
        raise IntegrityError("Sealed value is truncated.")
    iv = raw[:IV_LENGTH]
    tag = raw[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
    return decrypt_buffer(key, raw[IV_LENGTH + TAG_LENGTH :], iv, tag)


def seal_metadata(obj: dict[str, Any], key: bytes) -> str:
    return seal_bytes(json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8"), key)


def open_metadata(sealed: str, key: bytes) -> dict[str, Any]:
    return json.loads(open_bytes(sealed, key).decode("utf-8"))
