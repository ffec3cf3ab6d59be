from __future__ import annotations

from collections.abc import Callable

from flask import Blueprint, Response
from flask_jwt_extended import jwt_required

from ..common.errors import NotFoundError
from ..common.rbac import current_user
from ..extensions import db
from ..folders.queries import subtree_files
from ..models import File, Folder, Share, VirusScanStatus
from ..shares.capabilities import OwnerCapability, permits
from ..shares.service import file_in_share, record_access, request_password, resolve_private, resolve_public, shared_root
from .egress import count_downloads, file_response, source_for_file, zip_response


download_bp = Blueprint("download", __name__, url_prefix="/download")


def _servable(row: File) -> bool:
    return row.virus_scan_status != VirusScanStatus.INFECTED and not row.is_expired()


def _share_recorder(share: Share, file_pks: list[int]) -> Callable[[], None]:
    def record() -> None:
        record_access(share)
        count_downloads(file_pks)

    return record


def folder_response(folder: Folder, on_complete: Callable[[File | None], Callable[[], None]]) -> Response:
    """Serve a folder as a ZIP, or its only file directly."""
    rows = [(path, row) for path, row in subtree_files(folder) if _servable(row)]
    if len(rows) == 1:
        _, row = rows[0]
        return file_response(source_for_file(row), on_complete=on_complete(row))
    entries = [(path, source_for_file(row)) for path, row in rows]
    return zip_response(entries, folder.name, on_complete=on_complete(None))


def _serve_share(share: Share) -> Response:
    item = shared_root(share)
    if isinstance(item, File):
        return file_response(source_for_file(item), on_complete=_share_recorder(share, [item.id]))

    def recorder(row: File | None) -> Callable[[], None]:
        if row is not None:
            return _share_recorder(share, [row.id])
        return _share_recorder(share, [file_row.id for _, file_row in subtree_files(item)])

    return folder_response(item, recorder)


def _owned_file(file_pk: int) -> File:
    user = current_user(required=True)
    assert user is not None
    row = db.session.get(File, file_pk)
    if row is None or not permits(OwnerCapability(row.owner_id), user.id):
        raise NotFoundError("File not found.", code="FILE_NOT_FOUND")
    return row


@download_bp.get("/file/<int:file_pk>")
@jwt_required()
def download_file(file_pk: int):
    row = _owned_file(file_pk)
    return file_response(source_for_file(row), on_complete=lambda: count_downloads([file_pk]))


@download_bp.get("/folder/<int:folder_pk>")
@jwt_required()
def download_folder(folder_pk: int):
    user = current_user(required=True)
    assert user is not None
    folder = db.session.get(Folder, folder_pk)
    if folder is None or not permits(OwnerCapability(folder.owner_id), user.id):
        raise NotFoundError("Folder not found.", code="FOLDER_NOT_FOUND")

    def recorder(row: File | None) -> Callable[[], None]:
        if row is not None:
            return lambda: count_downloads([row.id])
        return lambda: None

    return folder_response(folder, recorder)


@download_bp.route("/public/<token>", methods=["GET", "POST"])
def download_public(token: str):
    share = resolve_public(token, request_password()).require()
    assert isinstance(share, Share)
    return _serve_share(share)


@download_bp.route("/public/<token>/file/<int:file_pk>", methods=["GET", "POST"])
def download_public_file(token: str, file_pk: int):
    share = resolve_public(token, request_password()).require()
    assert isinstance(share, Share)
    row = file_in_share(share, file_pk)
    return file_response(source_for_file(row), on_complete=_share_recorder(share, [row.id]))


@download_bp.get("/private/<token>")
@jwt_required()
def download_private(token: str):
    user = current_user(required=True)
    assert user is not None
    share = resolve_private(token, user).require()
    assert isinstance(share, Share)
    return _serve_share(share)


@download_bp.get("/private/<token>/file/<int:file_pk>")
@jwt_required()
def download_private_file(token: str, file_pk: int):
    user = current_user(required=True)
    assert user is not None
    share = resolve_private(token, user).require()
    assert isinstance(share, Share)
    row = file_in_share(share, file_pk)
    return file_response(source_for_file(row), on_complete=_share_recorder(share, [row.id]))
