from __future__ import annotations

import hashlib
import hmac
import os
import re
import secrets
import shutil
import time
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO

from cryptography.hazmat.primitives.ciphers import AEADDecryptionContext

from ..common.errors import DeadlineExceeded, FormatError, IntegrityError, PayloadTooLarge, ValidationError
from ..common.sizes import format_file_size
from ..config import CoreSettings
from .container import HEADER_SIZE, BlobHeader, finalize_header, read_header, read_header_from, write_header_placeholder
from .crypto import IV_LENGTH, derive_file_key, finalize_decryptor, new_decryptor, new_encryptor, open_metadata, random_bytes, seal_metadata


FILE_ID_PATTERN = re.compile(r"^[0-9a-f]{64}$")
SIDECAR_SUFFIX = ".meta"
SECURE_DELETE_CHUNK = 1024 * 1024
SINGLE_PASS_THRESHOLD = 10 * 1024 * 1024


@dataclass(frozen=True)
class Tenant:
    kind: str
    ident: str

    @property
    def parts(self) -> tuple[str, str]:
        return self.kind, self.ident


def user_tenant(user_id: int) -> Tenant:
    return Tenant("users", str(int(user_id)))


def anonymous_tenant(token: str) -> Tenant:
    if not FILE_ID_PATTERN.match(token or ""):
        raise ValidationError("Malformed anonymous token.")
    return Tenant("anonymous", token)


@dataclass(frozen=True)
class StoredBlob:
    file_id: str
    original_size: int
    encrypted_size: int
    content_hash: str


def new_file_id(original_name: str, owner: str) -> str:
    uploaded_ms = int(time.time() * 1000)
    seed = f"{original_name}:{owner}:{uploaded_ms}:{secrets.token_hex(16)}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def secure_delete_passes(size: int, enabled: bool, max_size: int) -> int:
    if not enabled or size > max_size:
        return 0
    if size > SINGLE_PASS_THRESHOLD:
        return 1
    return 2


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise DeadlineExceeded("Operation exceeded its deadline.")


class StorageEngine:
    def __init__(
        self,
        root: Path,
        metadata_key: bytes,
        chunk_size: int = 64 * 1024,
        max_buffered_size: int = 1024 * 1024,
        secure_delete_enabled: bool = True,
        max_secure_delete_size: int = 100 * 1024 * 1024,
    ) -> None:
        self.root = Path(root).resolve()
        self._metadata_key = metadata_key
        self.chunk_size = chunk_size
        self.max_buffered_size = max_buffered_size
        self.secure_delete_enabled = secure_delete_enabled
        self.max_secure_delete_size = max_secure_delete_size

    @classmethod
    def from_settings(cls, settings: CoreSettings) -> "StorageEngine":
        return cls(
            root=settings.storage_root,
            metadata_key=settings.metadata_key,
            chunk_size=settings.chunk_size,
            max_buffered_size=settings.max_buffered_size,
            secure_delete_enabled=settings.secure_delete_enabled,
            max_secure_delete_size=settings.max_secure_delete_size,
        )

    def _safe_resolve(self, *parts: str) -> Path:
        candidate = self.root.joinpath(*parts).resolve()
        if os.path.commonpath([str(self.root), str(candidate)]) != str(self.root):
            raise ValidationError("Invalid storage path.", code="INVALID_PATH")
        return candidate

    def tenant_dir(self, tenant: Tenant) -> Path:
        return self._safe_resolve(*tenant.parts)

    def blob_path(self, tenant: Tenant, file_id: str) -> Path:
        if not FILE_ID_PATTERN.match(file_id or ""):
            raise ValidationError("Malformed file id.", code="INVALID_FILE_ID")
        return self._safe_resolve(*tenant.parts, file_id[:2], file_id)

    def _sidecar_path(self, blob_path: Path) -> Path:
        return blob_path.with_name(blob_path.name + SIDECAR_SUFFIX)

    def put(
        self,
        tenant: Tenant,
        master_key: bytes,
        source: BinaryIO,
        original_name: str,
        mime: str | None,
        max_size: int | None = None,
        deadline: float | None = None,
    ) -> StoredBlob:
        file_id = new_file_id(original_name, tenant.ident)
        destination = self.blob_path(tenant, file_id)
        destination.parent.mkdir(parents=True, exist_ok=True)

        iv = random_bytes(IV_LENGTH)
        encryptor = new_encryptor(derive_file_key(master_key, file_id), iv)
        hasher = hashlib.sha256()
        original_size = 0

        try:
            with destination.open("wb") as output:
                write_header_placeholder(output, iv)
                while True:
                    chunk = source.read(self.chunk_size)
                    if not chunk:
                        break
                    original_size += len(chunk)
                    if max_size is not None and original_size > max_size:
                        raise PayloadTooLarge(
                            f"File exceeds the maximum size of {format_file_size(max_size)}.",
                            {"max_bytes": max_size},
                        )
                    _check_deadline(deadline)
                    hasher.update(chunk)
                    output.write(encryptor.update(chunk))
                output.write(encryptor.finalize())
                finalize_header(output, encryptor.tag, hasher.digest())
                output.flush()
                os.fsync(output.fileno())

            encrypted_size = destination.stat().st_size
            content_hash = hasher.hexdigest()
            sidecar = seal_metadata(
                {
                    "original_name": original_name,
                    "mime": mime,
                    "uploaded_at": datetime.now(timezone.utc).isoformat(),
                    "original_size": original_size,
                    "hash": content_hash,
                },
                self._metadata_key,
            )
            self._sidecar_path(destination).write_text(sidecar, encoding="ascii")
        except Exception:
            self._discard(destination)
            raise

        return StoredBlob(
            file_id=file_id,
            original_size=original_size,
            encrypted_size=encrypted_size,
            content_hash=content_hash,
        )

    def _discard(self, blob_path: Path) -> None:
        for path in (blob_path, self._sidecar_path(blob_path)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def read_sidecar(self, tenant: Tenant, file_id: str) -> dict[str, Any]:
        sidecar = self._sidecar_path(self.blob_path(tenant, file_id))
        return open_metadata(sidecar.read_text(encoding="ascii"), self._metadata_key)

    def header(self, tenant: Tenant, file_id: str) -> BlobHeader:
        return read_header(self.blob_path(tenant, file_id))

    def plaintext_size(self, tenant: Tenant, file_id: str) -> int:
        return self.blob_path(tenant, file_id).stat().st_size - HEADER_SIZE

    def get_buffered(self, tenant: Tenant, master_key: bytes, file_id: str) -> bytes:
        return b"".join(self.stream_get(tenant, master_key, file_id))

    def get(self, tenant: Tenant, master_key: bytes, file_id: str) -> bytes | Iterator[bytes]:
        if self.plaintext_size(tenant, file_id) <= self.max_buffered_size:
            return self.get_buffered(tenant, master_key, file_id)
        return self.stream_get(tenant, master_key, file_id)

    def stream_get(
        self,
        tenant: Tenant,
        master_key: bytes,
        file_id: str,
        deadline: float | None = None,
    ) -> Iterator[bytes]:
        path = self.blob_path(tenant, file_id)
        handle = path.open("rb")
        try:
            header = read_header_from(handle)
        except Exception:
            handle.close()
            raise
        decryptor = new_decryptor(derive_file_key(master_key, file_id), header.iv, header.tag)
        return self._decrypt_chunks(handle, decryptor, header, deadline)

    def _decrypt_chunks(
        self,
        handle: BinaryIO,
        decryptor: AEADDecryptionContext,
        header: BlobHeader,
        deadline: float | None,
    ) -> Iterator[bytes]:
        hasher = hashlib.sha256()
        with handle:
            while True:
                chunk = handle.read(self.chunk_size)
                if not chunk:
                    break
                _check_deadline(deadline)
                plaintext = decryptor.update(chunk)
                if plaintext:
                    hasher.update(plaintext)
                    yield plaintext
            tail = finalize_decryptor(decryptor)
            if tail:
                hasher.update(tail)
            if not hmac.compare_digest(hasher.digest(), header.plaintext_hash):
                raise IntegrityError("Plaintext hash mismatch.")
            if tail:
                yield tail

    def delete(self, tenant: Tenant, file_id: str) -> bool:
        path = self.blob_path(tenant, file_id)
        existed = self._secure_unlink(path)
        try:
            self._sidecar_path(path).unlink()
        except FileNotFoundError:
            pass
        return existed

    def _secure_unlink(self, path: Path) -> bool:
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return False

        passes = secure_delete_passes(size, self.secure_delete_enabled, self.max_secure_delete_size)
        if passes:
            with path.open("r+b") as handle:
                for _ in range(passes):
                    handle.seek(0)
                    remaining = size
                    while remaining > 0:
                        step = min(SECURE_DELETE_CHUNK, remaining)
                        handle.write(random_bytes(step))
                        remaining -= step
                    handle.flush()
                    os.fsync(handle.fileno())

        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def iter_blobs(self, tenant: Tenant) -> Iterator[Path]:
        base = self.tenant_dir(tenant)
        if not base.exists():
            return
        for shard in sorted(base.iterdir()):
            if not shard.is_dir():
                continue
            for entry in sorted(shard.iterdir()):
                if entry.is_file() and FILE_ID_PATTERN.match(entry.name):
                    yield entry

    def delete_tenant(self, tenant: Tenant) -> int:
        removed = 0
        for blob in list(self.iter_blobs(tenant)):
            if self.delete(tenant, blob.name):
                removed += 1
        base = self.tenant_dir(tenant)
        if base.exists():
            shutil.rmtree(base)
        return removed

    def validate(
        self,
        tenant: Tenant,
        master_key: bytes | None,
        deadline: float | None = None,
    ) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for blob in self.iter_blobs(tenant):
            _check_deadline(deadline)
            file_id = blob.name
            status = "valid"
            detail: str | None = None
            try:
                read_header(blob)
                if master_key is not None:
                    for _ in self.stream_get(tenant, master_key, file_id, deadline=deadline):
                        pass
            except (FormatError, OSError) as error:
                status, detail = "header-corrupt", str(error)
            except IntegrityError as error:
                status, detail = "integrity-mismatch", error.message
            results.append({"file_id": file_id, "status": status, "detail": detail, "size": blob.stat().st_size})
        return results
