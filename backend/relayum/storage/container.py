from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from ..common.errors import FormatError
from .crypto import IV_LENGTH, TAG_LENGTH


MAGIC = b"RELAYUM1"
HASH_LENGTH = 32
TAG_OFFSET = len(MAGIC) + IV_LENGTH
HASH_OFFSET = TAG_OFFSET + TAG_LENGTH
HEADER_SIZE = HASH_OFFSET + HASH_LENGTH


@dataclass(frozen=True)
class BlobHeader:
    iv: bytes
    tag: bytes
    plaintext_hash: bytes
    data_offset: int = HEADER_SIZE


def write_header_placeholder(stream: BinaryIO, iv: bytes) -> None:
    if len(iv) != IV_LENGTH:
        raise ValueError("IV must be 12 bytes.")
    stream.write(MAGIC + iv + bytes(TAG_LENGTH) + bytes(HASH_LENGTH))


def finalize_header(stream: BinaryIO, tag: bytes, plaintext_hash: bytes) -> None:
    if len(tag) != TAG_LENGTH or len(plaintext_hash) != HASH_LENGTH:
        raise ValueError("Tag must be 16 bytes and hash 32 bytes.")
    stream.seek(TAG_OFFSET)
    stream.write(tag + plaintext_hash)


def parse_header(raw: bytes) -> BlobHeader:
    if len(raw) < HEADER_SIZE:
        raise OSError(f"Truncated blob header ({len(raw)} of {HEADER_SIZE} bytes).")
    if raw[: len(MAGIC)] != MAGIC:
        raise FormatError("Blob header magic mismatch.")
    return BlobHeader(
        iv=raw[len(MAGIC) : TAG_OFFSET],
        tag=raw[TAG_OFFSET:HASH_OFFSET],
        plaintext_hash=raw[HASH_OFFSET:HEADER_SIZE],
    )


def read_header_from(stream: BinaryIO) -> BlobHeader:
    return parse_header(stream.read(HEADER_SIZE))


def read_header(path: Path) -> BlobHeader:
    with path.open("rb") as handle:
        return read_header_from(handle)
