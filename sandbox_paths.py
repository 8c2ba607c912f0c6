"""Sandbox path resolution for the document vault.

Client requests carry paths in several shapes: UI paths prefixed with the
virtual workspace segment (``/workspace/notes/todo.md``), bare relative
paths (``notes/todo.md``), Windows-style separators, stray whitespace.
``SandboxResolver`` turns all of them into:

- a canonical relative path (forward slashes, no leading slash, lexically
  cleaned) used as the identity map key, and
- an absolute filesystem path that is guaranteed to sit under the root.

Escapes are rejected with ``SandboxViolation``; they are never clamped
back to the root.
"""
from __future__ import annotations

import os
import posixpath
from pathlib import Path

DEFAULT_WORKSPACE_PREFIX = "/workspace"


class SandboxViolation(ValueError):
    """Raised when a path would resolve outside the sandbox root."""


def _is_escape(relative: str) -> bool:
    return relative == ".." or relative.startswith("../")


class SandboxResolver:
    def __init__(self, root: Path, workspace_prefix: str = DEFAULT_WORKSPACE_PREFIX) -> None:
        self.root = Path(root).resolve()
        stripped = (workspace_prefix or "").strip().strip("/")
        self.workspace_prefix = f"/{stripped}" if stripped else ""

    def normalize(self, client_path: str | None) -> str:
        """Return the canonical relative form of ``client_path``.

        Never fails: ``..`` segments that survive cleaning are left in place
        for ``resolve`` to reject.
        """

        p = (client_path or "").replace("\\", "/").strip()

        prefix = self.workspace_prefix
        if prefix:
            if p in (prefix, prefix + "/"):
                return ""
            if p.startswith(prefix + "/"):
                p = p[len(prefix) + 1 :]

        p = p.lstrip("/")
        p = posixpath.normpath(p) if p else "."
        # normpath keeps a leading "//" on POSIX
        p = p.lstrip("/")

        if p in (".", ""):
            return ""
        return p

    def resolve(self, relative_path: str) -> Path:
        """Return the absolute path for ``relative_path`` under the root.

        The returned path is the joined entry itself, not its symlink target,
        so callers act on the mapped entry. Symlinks are followed only to
        check that the target stays inside the root.
        """

        raw = (relative_path or "").replace("\\", "/").lstrip("/")
        clean = posixpath.normpath(raw) if raw else "."
        if _is_escape(clean):
            raise SandboxViolation(f"Path escapes the sandbox root: {relative_path!r}")

        if clean == ".":
            return self.root

        joined = self.root / clean
        if not self.contains(joined):
            raise SandboxViolation(f"Resolved path escapes the sandbox root: {relative_path!r}")

        return joined

    def contains(self, path: Path) -> bool:
        """Whether ``path``, after following symlinks, still lies under the root."""

        derived = Path(os.path.relpath(Path(path).resolve(), self.root)).as_posix()
        return not (_is_escape(derived) or os.path.isabs(derived))

    def to_display_path(self, relative_path: str) -> str:
        rel = (relative_path or "").strip("/")
        if not rel:
            return self.workspace_prefix or "/"
        return f"{self.workspace_prefix}/{rel}"
