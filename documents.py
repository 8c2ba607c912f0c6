"""Projection of filesystem entries into API records."""
from __future__ import annotations

import posixpath
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from pydantic import BaseModel

from sandbox_paths import SandboxResolver


FILE_TYPES_BY_EXTENSION = {
    ".md": "markdown",
    ".markdown": "markdown",
    ".html": "html",
    ".htm": "html",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
}

EXTENSIONS_BY_FILE_TYPE = {
    "markdown": ".md",
    "html": ".html",
    "json": ".json",
    "yaml": ".yaml",
}

TEXT_FILE_EXTENSIONS = {
    ".md",
    ".markdown",
    ".txt",
    ".html",
    ".htm",
    ".css",
    ".js",
    ".ts",
    ".json",
    ".xml",
    ".yaml",
    ".yml",
    ".py",
    ".go",
}


class Document(BaseModel):
    id: int
    title: str
    type: str
    status: int = 0
    description: str = ""
    tags: str = ""
    file_path: str
    file_name: str
    file_size: int
    parent_path: str
    is_directory: bool
    user_id: int = 0
    is_public: bool = False
    share_token: Optional[str] = None
    view_count: int = 0
    created_at: str
    updated_at: str
    last_viewed: Optional[str] = None
    last_sync: Optional[str] = None


class FileTreeNode(BaseModel):
    id: int
    name: str
    path: str
    parentPath: str
    type: str
    fileType: Optional[str] = None
    size: int
    modified_at: str
    children: Optional[List["FileTreeNode"]] = None


FileTreeNode.model_rebuild()


def file_type_by_ext(name: str) -> str:
    return FILE_TYPES_BY_EXTENSION.get(Path(name).suffix.lower(), "text")


def ensure_ext_by_type(base: str, file_type: str | None) -> str:
    """Append the extension for ``file_type`` unless ``base`` already has one."""

    if "." in base:
        return base
    return base + EXTENSIONS_BY_FILE_TYPE.get((file_type or "").lower(), ".txt")


def is_text_file(path: Path) -> bool:
    return path.suffix.lower() in TEXT_FILE_EXTENSIONS


def iso_time(timestamp: float) -> str:
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(microsecond=0)
    return moment.isoformat().replace("+00:00", "Z")


def parent_of(rel: str) -> str:
    parent = posixpath.dirname(rel)
    return "" if parent in (".", "/") else parent


def _title(name: str, is_dir: bool) -> str:
    return name if is_dir else Path(name).stem


def document_from_path(ident: int, rel: str, entry: Path, resolver: SandboxResolver) -> Document:
    stat = entry.stat()
    is_dir = entry.is_dir()
    modified = iso_time(stat.st_mtime)

    return Document(
        id=ident,
        title=_title(entry.name, is_dir),
        type="directory" if is_dir else file_type_by_ext(entry.name),
        file_path=resolver.to_display_path(rel),
        file_name=entry.name,
        file_size=0 if is_dir else stat.st_size,
        parent_path=parent_of(rel),
        is_directory=is_dir,
        created_at=modified,
        updated_at=modified,
    )


def tree_node_from_path(ident: int, rel: str, entry: Path, resolver: SandboxResolver) -> FileTreeNode:
    stat = entry.stat()
    is_dir = entry.is_dir()

    return FileTreeNode(
        id=ident,
        name=_title(entry.name, is_dir),
        path=resolver.to_display_path(rel),
        parentPath=resolver.to_display_path(parent_of(rel)),
        type="folder" if is_dir else "file",
        fileType=None if is_dir else file_type_by_ext(entry.name),
        size=0 if is_dir else stat.st_size,
        modified_at=iso_time(stat.st_mtime),
    )


def _sorted_children(directory: Path, root: Path) -> List[Path]:
    # broken symlinks have nothing to stat; links leaving the root are not ours
    real_root = root.resolve()
    children = [
        child
        for child in directory.iterdir()
        if not child.name.startswith(".") and child.exists() and child.resolve().is_relative_to(real_root)
    ]
    return sorted(children, key=lambda p: (p.is_file(), p.name.lower()))


def walk_tree(root: Path, directory: Path | None = None) -> Iterator[Tuple[str, Path]]:
    """Yield ``(relative path, absolute path)`` for every visible entry.

    Folders come before files at each level; hidden entries (including the
    reserved configuration directory) are skipped along with their contents.
    Symlinks whose target lies outside ``root`` are skipped as well.
    """

    directory = root if directory is None else directory

    for child in _sorted_children(directory, root):
        yield child.relative_to(root).as_posix(), child
        if child.is_dir() and not child.is_symlink():
            yield from walk_tree(root, child)


def list_children(directory: Path, root: Path) -> List[Tuple[str, Path]]:
    return [(child.relative_to(root).as_posix(), child) for child in _sorted_children(directory, root)]


def nest_tree_nodes(nodes: List[FileTreeNode], resolver: SandboxResolver) -> List[FileTreeNode]:
    """Arrange a flat, parent-first node list into a nested forest."""

    by_path = {}
    roots: List[FileTreeNode] = []
    top_level = resolver.to_display_path("")

    for node in nodes:
        if node.type == "folder":
            node.children = []
        by_path[node.path] = node

        parent = by_path.get(node.parentPath)
        if node.parentPath == top_level or parent is None:
            roots.append(node)
        else:
            parent.children.append(node)

    return roots
