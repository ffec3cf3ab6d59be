from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import quote

from flask import Response, current_app, stream_with_context
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from stream_zip import ZIP_64, stream_zip

from ..common.errors import APIError, ForbiddenError, FormatError, GoneError, IntegrityError, NotFoundError, PayloadTooLarge
from ..common.sizes import format_file_size
from ..config import current_settings
from ..extensions import db
from ..models import AnonymousFile, AnonymousShare, File, VirusScanStatus, as_utc
from ..storage import Tenant, anonymous_tenant, storage_engine, user_tenant
from ..storage.keys import anonymous_master_key, user_master_key


@dataclass(frozen=True)
class EgressSource:
    tenant: Tenant
    master_key: bytes
    file_id: str
    filename: str
    mime: str
    size: int
    modified_at: datetime


def ensure_servable(row: File) -> None:
    if row.virus_scan_status == VirusScanStatus.INFECTED:
        raise ForbiddenError("File is quarantined.", code="FILE_INFECTED")
    if row.is_expired():
        raise GoneError("File has expired.", code="FILE_EXPIRED")


def source_for_file(row: File) -> EgressSource:
    ensure_servable(row)
    return EgressSource(
        tenant=user_tenant(row.owner_id),
        master_key=user_master_key(row.owner),
        file_id=row.file_id,
        filename=row.filename,
        mime=row.mime_type or "application/octet-stream",
        size=int(row.size),
        modified_at=as_utc(row.created_at),  # type: ignore[arg-type]
    )


def source_for_anonymous(share: AnonymousShare, row: AnonymousFile) -> EgressSource:
    if row.virus_scan_status == VirusScanStatus.INFECTED:
        raise ForbiddenError("File is quarantined.", code="FILE_INFECTED")
    return EgressSource(
        tenant=anonymous_tenant(share.share_token),
        master_key=anonymous_master_key(share),
        file_id=row.file_id,
        filename=row.original_filename,
        mime=row.mime_type or "application/octet-stream",
        size=int(row.size),
        modified_at=as_utc(row.created_at),  # type: ignore[arg-type]
    )


def content_disposition(filename: str, disposition: str = "attachment") -> str:
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        return f"{disposition}; filename*=UTF-8''{quote(filename, safe='')}"
    escaped = filename.replace("\\", "\\\\").replace('"', '\\"')
    return f'{disposition}; filename="{escaped}"'


def count_downloads(file_pks: Iterable[int]) -> None:
    ids = list(file_pks)
    if ids:
        db.session.execute(
            update(File)
            .where(File.id.in_(ids))
            .values(download_count=File.download_count + 1)
            .execution_options(synchronize_session=False)
        )


def _finish(on_complete: Callable[[], None] | None) -> None:
    if on_complete is None:
        return
    try:
        on_complete()
        db.session.commit()
    except (SQLAlchemyError, APIError) as error:
        db.session.rollback()
        current_app.logger.warning("download completed but access could not be recorded: %s", error)


def _guard(chunks: Iterator[bytes], source: EgressSource) -> Iterator[bytes]:
    try:
        yield from chunks
    except IntegrityError:
        current_app.logger.error("IntegrityError while streaming blob %s (%s)", source.file_id, source.filename)
        raise


def file_response(
    source: EgressSource,
    on_complete: Callable[[], None] | None = None,
    disposition: str = "attachment",
) -> Response:
    """Serve one decrypted file.

    Buffered files are fully decrypted and verified before the status line is
    committed; larger files are primed with their first decrypted chunk and then
    streamed, so a tamper detected later aborts the connection instead.
    """
    engine = storage_engine()
    try:
        body = engine.get(source.tenant, source.master_key, source.file_id)
    except FileNotFoundError as error:
        raise NotFoundError("File data not found on disk.", code="FILE_MISSING") from error
    except IntegrityError:
        current_app.logger.error("IntegrityError while reading blob %s (%s)", source.file_id, source.filename)
        raise

    if isinstance(body, bytes):
        chunks: Iterator[bytes] = iter([body])
    else:
        chunks = _guard(body, source)
        first = next(chunks, b"")
        chunks = _prepend(first, chunks)

    def generate() -> Iterator[bytes]:
        yield from chunks
        _finish(on_complete)

    response = Response(stream_with_context(generate()), mimetype=source.mime)
    response.headers["Content-Length"] = str(source.size)
    response.headers["Content-Disposition"] = content_disposition(source.filename, disposition)
    response.headers["Cache-Control"] = "no-store"
    return response


def _prepend(first: bytes, rest: Iterator[bytes]) -> Iterator[bytes]:
    if first:
        yield first
    yield from rest


def enforce_download_size(sources: list[EgressSource]) -> int:
    total = sum(source.size for source in sources)
    limit = current_settings().max_download_size
    if total > limit:
        raise PayloadTooLarge(
            f"Download exceeds the maximum size of {format_file_size(limit)}.",
            {"total_bytes": total, "max_bytes": limit},
        )
    return total


def zip_response(
    entries: list[tuple[str, EgressSource]],
    archive_name: str,
    on_complete: Callable[[], None] | None = None,
) -> Response:
    """Stream ``entries`` as one ZIP64 archive.

    Every member header is checked and the archive is primed with its first
    chunk, which pulls decrypted bytes of the first member, before the status
    line is committed.
    """
    enforce_download_size([source for _, source in entries])
    settings = current_settings()
    engine = storage_engine()
    deadline = time.monotonic() + settings.download_deadline_seconds

    for _, source in entries:
        try:
            engine.header(source.tenant, source.file_id)
        except FileNotFoundError as error:
            raise NotFoundError("File data not found on disk.", code="FILE_MISSING") from error
        except FormatError:
            current_app.logger.error("FormatError while reading blob %s (%s)", source.file_id, source.filename)
            raise

    def members() -> Iterator[tuple[str, datetime, int, object, Iterator[bytes]]]:
        for path, source in entries:
            chunks = engine.stream_get(source.tenant, source.master_key, source.file_id, deadline=deadline)
            yield path, source.modified_at, 0o644, ZIP_64, _guard(chunks, source)

    archive = stream_zip(members(), chunk_size=settings.chunk_size)
    first = next(archive, b"")
    chunks = _prepend(first, archive)

    def generate() -> Iterator[bytes]:
        yield from chunks
        _finish(on_complete)

    response = Response(stream_with_context(generate()), mimetype="application/zip")
    response.headers["Content-Disposition"] = content_disposition(f"{archive_name}.zip")
    response.headers["Cache-Control"] = "no-store"
    return response
