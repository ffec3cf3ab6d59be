"""Recursive folder walks.

Every walk is bounded by the configured maximum depth and re-checks the owner on
each row, so a malformed parent chain (including a cycle) can neither loop forever
nor leak another user's folders.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Integer, Text, cast, func, literal, select
from sqlalchemy.orm import aliased

from ..common.errors import ValidationError
from ..config import current_settings
from ..extensions import db
from ..models import File, Folder


@dataclass(frozen=True)
class SubtreeFolder:
    id: int
    parent_id: int | None
    name: str
    path: str
    depth: int


def _max_depth(max_depth: int | None) -> int:
    return max_depth if max_depth is not None else current_settings().folder_max_depth


def folder_too_deep() -> ValidationError:
    limit = current_settings().folder_max_depth
    return ValidationError(f"Folders cannot be nested more than {limit} levels deep.", {"max_depth": limit}, code="FOLDER_TOO_DEEP")


def folder_tree(owner_id: int, max_depth: int | None = None) -> list[dict[str, Any]]:
    depth_cap = _max_depth(max_depth)
    tree = (
        select(Folder.id, Folder.parent_id, Folder.name, literal(0, type_=Integer).label("depth"))
        .where(Folder.owner_id == owner_id, Folder.parent_id.is_(None))
        .cte("folder_tree", recursive=True)
    )
    child = aliased(Folder)
    tree = tree.union_all(
        select(child.id, child.parent_id, child.name, tree.c.depth + 1)
        .join(tree, child.parent_id == tree.c.id)
        .where(child.owner_id == owner_id, tree.c.depth < depth_cap)
    )
    rows = db.session.execute(select(tree.c.id, tree.c.parent_id, tree.c.name, tree.c.depth)).all()

    folder_ids = [row.id for row in rows]
    file_counts = _file_counts(folder_ids)
    subfolder_counts: dict[int, int] = {}
    for row in rows:
        if row.parent_id is not None:
            subfolder_counts[row.parent_id] = subfolder_counts.get(row.parent_id, 0) + 1

    indexed: dict[int, dict[str, Any]] = {}
    roots: list[dict[str, Any]] = []
    for row in rows:
        if row.id in indexed:
            continue
        indexed[row.id] = {
            "id": row.id,
            "name": row.name,
            "parent_id": row.parent_id,
            "depth": row.depth,
            "file_count": file_counts.get(row.id, 0),
            "subfolder_count": subfolder_counts.get(row.id, 0),
            "children": [],
        }

    for node in sorted(indexed.values(), key=lambda item: (item["depth"], item["name"].lower())):
        parent = indexed.get(node["parent_id"]) if node["parent_id"] is not None else None
        if parent is not None:
            parent["children"].append(node)
        else:
            roots.append(node)
    return roots


def _file_counts(folder_ids: list[int]) -> dict[int, int]:
    if not folder_ids:
        return {}
    rows = (
        db.session.query(File.folder_id, func.count(File.id))
        .filter(File.folder_id.in_(folder_ids))
        .group_by(File.folder_id)
        .all()
    )
    return {folder_id: count for folder_id, count in rows}


@dataclass(frozen=True)
class Ancestry:
    ids: frozenset[int]
    depth: int
    complete: bool


def _ancestor_rows(folder: Folder, depth_cap: int) -> list[Any]:
    crumbs = (
        select(Folder.id, Folder.parent_id, Folder.name, literal(0, type_=Integer).label("depth"))
        .where(Folder.id == folder.id, Folder.owner_id == folder.owner_id)
        .cte("breadcrumb", recursive=True)
    )
    parent = aliased(Folder)
    crumbs = crumbs.union_all(
        select(parent.id, parent.parent_id, parent.name, crumbs.c.depth + 1)
        .join(crumbs, parent.id == crumbs.c.parent_id)
        .where(parent.owner_id == folder.owner_id, crumbs.c.depth < depth_cap)
    )
    query = select(crumbs.c.id, crumbs.c.parent_id, crumbs.c.name, crumbs.c.depth).order_by(crumbs.c.depth.desc())
    return list(db.session.execute(query).all())


def breadcrumb(folder: Folder, max_depth: int | None = None) -> list[dict[str, Any]]:
    seen: set[int] = set()
    chain: list[dict[str, Any]] = []
    for row in _ancestor_rows(folder, _max_depth(max_depth)):
        if row.id in seen:
            continue
        seen.add(row.id)
        chain.append({"id": row.id, "name": row.name})
    return chain


def ancestry(folder: Folder, max_depth: int | None = None) -> Ancestry:
    """Ancestor ids of ``folder`` (itself included) and its depth below a root folder.

    ``complete`` is false when the walk stopped at the depth cap, or on a cycle,
    without reaching a folder whose parent is null. ``depth`` is then meaningless.
    """
    rows = _ancestor_rows(folder, _max_depth(max_depth))
    roots = [row.depth for row in rows if row.parent_id is None]
    return Ancestry(
        ids=frozenset(row.id for row in rows),
        depth=roots[0] if roots else -1,
        complete=bool(roots),
    )


def subtree_height(root: Folder, max_depth: int | None = None) -> int:
    """Levels below ``root``; a subtree deeper than the cap reports cap + 1."""
    depth_cap = _max_depth(max_depth)
    return max(item.depth for item in subtree_folders(root, depth_cap + 1))


def subtree_folders(root: Folder, max_depth: int | None = None) -> list[SubtreeFolder]:
    depth_cap = _max_depth(max_depth)
    tree = (
        select(
            Folder.id,
            Folder.parent_id,
            Folder.name,
            cast(literal(""), Text).label("path"),
            literal(0, type_=Integer).label("depth"),
        )
        .where(Folder.id == root.id, Folder.owner_id == root.owner_id)
        .cte("folder_subtree", recursive=True)
    )
    child = aliased(Folder)
    tree = tree.union_all(
        select(
            child.id,
            child.parent_id,
            child.name,
            cast(tree.c.path + child.name + "/", Text),
            tree.c.depth + 1,
        )
        .join(tree, child.parent_id == tree.c.id)
        .where(child.owner_id == root.owner_id, tree.c.depth < depth_cap)
    )
    rows = db.session.execute(select(tree).order_by(tree.c.depth, tree.c.name)).all()

    seen: set[int] = set()
    result: list[SubtreeFolder] = []
    for row in rows:
        if row.id in seen:
            continue
        seen.add(row.id)
        result.append(SubtreeFolder(id=row.id, parent_id=row.parent_id, name=row.name, path=row.path, depth=row.depth))
    return result


def subtree_files(root: Folder, max_depth: int | None = None) -> list[tuple[str, File]]:
    """Files under ``root`` paired with their path relative to it."""
    folders = {item.id: item for item in subtree_folders(root, max_depth)}
    if not folders:
        return []
    rows = (
        File.query.filter(File.folder_id.in_(list(folders)), File.owner_id == root.owner_id)
        .order_by(File.folder_id.asc(), File.filename.asc())
        .all()
    )
    return [(folders[row.folder_id].path + row.filename, row) for row in rows]
