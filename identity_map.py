"""Durable path -> id ledger for the document vault.

Every entry under the sandbox root gets an integer id the first time it is
seen. The id follows the entry across renames and moves and is retired
(never reissued) when the entry is deleted. The ledger lives in a single
JSON record under the reserved configuration directory::

    {"next_id": 4, "paths": {"notes": 2, "notes/todo.md": 1}}

The map performs no filesystem existence checks: callers mutate it only
after the corresponding filesystem operation has succeeded.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, conint


logger = logging.getLogger("docvault.identity")


class NotFound(LookupError):
    """No live mapping exists for the requested id or path."""


class StorageError(RuntimeError):
    """Writing or reading the durable record failed.

    When raised from a mutating operation the in-memory map already holds
    the change; a later successful ``persist()`` brings the disk in line.
    """


class MalformedRecord(ValueError):
    """The durable record exists but cannot be trusted."""


class IdentityRecord(BaseModel):
    next_id: conint(ge=1) = 1
    paths: Dict[str, conint(ge=1)] = {}

    model_config = ConfigDict(extra="ignore")


def is_within(path: str, prefix: str) -> bool:
    """Return True if ``path`` is ``prefix`` or nested under it."""

    return path == prefix or path.startswith(prefix + "/")


def replace_prefix(path: str, old_prefix: str, new_prefix: str) -> str:
    return new_prefix + path[len(old_prefix) :]


class IdentityMap:
    def __init__(self, record_path: Path) -> None:
        self.record_path = Path(record_path)
        self._lock = threading.RLock()
        self._next_id = 1
        self._paths: Dict[str, int] = {}
        self._ids: Dict[int, str] = {}

    @classmethod
    def open(cls, record_path: Path) -> "IdentityMap":
        identity = cls(record_path)
        identity.load()
        return identity

    @property
    def next_id(self) -> int:
        return self._next_id

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, path: object) -> bool:
        return path in self._paths

    # Forward and reverse entries only change together, through these two.

    def _bind(self, path: str, ident: int) -> None:
        previous = self._paths.get(path)
        if previous is not None and previous != ident:
            del self._ids[previous]
        self._paths[path] = ident
        self._ids[ident] = path

    def _unbind(self, path: str) -> int | None:
        ident = self._paths.pop(path, None)
        if ident is not None:
            del self._ids[ident]
        return ident

    def _mint(self, path: str) -> Tuple[int, bool]:
        existing = self._paths.get(path)
        if existing is not None:
            return existing, False
        ident = self._next_id
        self._next_id += 1
        self._bind(path, ident)
        logger.debug("minted id=%s path=%s", ident, path)
        return ident, True

    def load(self) -> None:
        """Read the durable record, creating an empty one if none exists."""

        with self._lock:
            if not self.record_path.is_file():
                self._next_id = 1
                self._paths = {}
                self._ids = {}
                self.persist()
                logger.info("initialized empty identity record path=%s", self.record_path)
                return

            try:
                raw = self.record_path.read_bytes()
            except OSError as exc:
                raise StorageError(f"Cannot read identity record: {exc}") from exc

            try:
                record = IdentityRecord.model_validate(json.loads(raw.decode("utf8")))
            except (ValueError, ValidationError) as exc:
                raise MalformedRecord(f"Identity record {self.record_path} is unreadable: {exc}") from exc

            ids: Dict[int, str] = {}
            for path, ident in record.paths.items():
                if ident >= record.next_id:
                    raise MalformedRecord(
                        f"Identity record maps {path!r} to {ident}, not below next_id {record.next_id}"
                    )
                if ident in ids:
                    raise MalformedRecord(
                        f"Identity record maps both {ids[ident]!r} and {path!r} to {ident}"
                    )
                ids[ident] = path

            self._next_id = record.next_id
            self._paths = dict(record.paths)
            self._ids = ids

            logger.info(
                "loaded identity record path=%s entries=%s next_id=%s",
                self.record_path,
                len(self._paths),
                self._next_id,
            )

    def persist(self) -> None:
        """Atomically replace the durable record with the in-memory state."""

        with self._lock:
            data = {"next_id": self._next_id, "paths": self._paths}
            payload = json.dumps(data, indent=2, sort_keys=True)
            tmp_path = self.record_path.with_name(self.record_path.name + ".tmp")

            try:
                self.record_path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self.record_path)
            except OSError as exc:
                logger.exception("failed to persist identity record path=%s", self.record_path)
                try:
                    tmp_path.unlink()
                except OSError:
                    pass
                raise StorageError(f"Cannot write identity record: {exc}") from exc

    def assign(self, path: str) -> int:
        with self._lock:
            ident, created = self._mint(path)
            if created:
                self.persist()
            return ident

    def assign_all(self, paths: Iterable[str]) -> Dict[str, int]:
        """Assign ids to every path, persisting once if anything was minted."""

        with self._lock:
            result: Dict[str, int] = {}
            changed = False
            for path in paths:
                ident, created = self._mint(path)
                result[path] = ident
                changed = changed or created
            if changed:
                self.persist()
            return result

    def lookup(self, ident: int) -> str:
        with self._lock:
            try:
                return self._ids[ident]
            except KeyError:
                raise NotFound(f"No document with id {ident}") from None

    def id_for(self, path: str) -> int:
        with self._lock:
            try:
                return self._paths[path]
            except KeyError:
                raise NotFound(f"No document at {path!r}") from None

    def rewrite(self, ident: int, new_path: str) -> None:
        with self._lock:
            old_path = self._ids.get(ident)
            if old_path is None or old_path == new_path:
                return
            del self._paths[old_path]
            self._bind(new_path, ident)
            logger.debug("rewrote id=%s %s -> %s", ident, old_path, new_path)
            self.persist()

    def rewrite_subtree(self, old_prefix: str, new_prefix: str) -> int:
        """Move every mapping at or below ``old_prefix`` under ``new_prefix``.

        Returns the number of rewritten mappings.
        """

        with self._lock:
            moved: List[Tuple[int, str]] = []
            for path, ident in list(self._paths.items()):
                if is_within(path, old_prefix):
                    moved.append((ident, replace_prefix(path, old_prefix, new_prefix)))
                    self._unbind(path)

            if not moved:
                return 0

            for ident, new_path in moved:
                self._bind(new_path, ident)

            logger.debug("rewrote subtree %s -> %s count=%s", old_prefix, new_prefix, len(moved))
            self.persist()
            return len(moved)

    def release(self, path: str) -> None:
        with self._lock:
            ident = self._unbind(path)
            if ident is None:
                return
            logger.debug("released id=%s path=%s", ident, path)
            self.persist()

    def release_subtree(self, prefix: str) -> int:
        with self._lock:
            doomed = [path for path in self._paths if is_within(path, prefix)]
            for path in doomed:
                self._unbind(path)
            if doomed:
                logger.debug("released subtree %s count=%s", prefix, len(doomed))
                self.persist()
            return len(doomed)

    def snapshot(self) -> IdentityRecord:
        with self._lock:
            return IdentityRecord(next_id=self._next_id, paths=dict(self._paths))
