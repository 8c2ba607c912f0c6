"""FastAPI entrypoint for the document vault backend.

The backend exposes a sandboxed directory tree as "documents" addressed by
stable integer ids. It covers:
- Centralized resolution of the vault root and its reserved config dir.
- Sandboxed translation of client paths (``sandbox_paths``).
- The durable id ledger that survives renames and moves (``identity_map``).
- Document CRUD, move/rename, flat and nested tree listing, resync, search.
- A websocket endpoint broadcasting change notifications (``change_hub``).
"""
from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import shutil
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.requests import HTTPConnection, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from change_hub import ChangeEvent, ChangeHub, Subscription
from documents import (
    document_from_path,
    ensure_ext_by_type,
    is_text_file,
    list_children,
    nest_tree_nodes,
    parent_of,
    tree_node_from_path,
    walk_tree,
)
from identity_map import IdentityMap, NotFound, StorageError, is_within
from sandbox_paths import DEFAULT_WORKSPACE_PREFIX, SandboxResolver


APP_ROOT = Path(__file__).resolve().parent
APP_VERSION = "0.1.0"
CONFIG_DIR_NAME = ".docvault"
IDS_FILE_NAME = "ids.json"

logger = logging.getLogger("docvault")


class AppConfig:
    """Application configuration for the document vault.

    - notes_root: sandbox root holding every document
    - workspace_prefix: UI-facing prefix of display paths
    - config_dir / ids_path: reserved directory and the id ledger inside it

    The root can be configured via the DOCVAULT_ROOT environment variable.
    If it is a relative path, it is resolved relative to APP_ROOT. If
    omitted, it defaults to APP_ROOT / "workbase".
    """

    def __init__(self) -> None:
        self.notes_root = self._resolve_notes_root()
        self.workspace_prefix = (
            os.getenv("DOCVAULT_WORKSPACE_PREFIX") or DEFAULT_WORKSPACE_PREFIX
        ).rstrip("/")
        self.config_dir = self.notes_root / CONFIG_DIR_NAME
        self.ids_path = self.config_dir / IDS_FILE_NAME

    @staticmethod
    def _resolve_notes_root() -> Path:
        env_value = os.getenv("DOCVAULT_ROOT")

        if env_value:
            candidate = Path(env_value)
            if not candidate.is_absolute():
                candidate = (APP_ROOT / candidate).resolve()
        else:
            candidate = (APP_ROOT / "workbase").resolve()

        candidate.mkdir(parents=True, exist_ok=True)
        return candidate


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Return a cached AppConfig instance."""

    return AppConfig()


@dataclass
class Vault:
    config: AppConfig
    resolver: SandboxResolver
    identity: IdentityMap
    hub: ChangeHub


def open_vault(cfg: AppConfig) -> Vault:
    """Build the resolver, load the id ledger and create the change hub.

    Raises ``MalformedRecord`` when the ledger on disk cannot be parsed.
    """

    cfg.config_dir.mkdir(parents=True, exist_ok=True)
    resolver = SandboxResolver(cfg.notes_root, cfg.workspace_prefix)
    identity = IdentityMap.open(cfg.ids_path)
    return Vault(config=cfg, resolver=resolver, identity=identity, hub=ChangeHub())


def get_vault(connection: HTTPConnection) -> Vault:
    return connection.app.state.vault


SEARCH_MAX_MATCHES_PER_FILE = 20
SEARCH_MAX_RESULTS = 1000
SEARCH_MAX_QUERY_LENGTH = 200


class CreateDocumentRequest(BaseModel):
    title: str = ""
    type: str = ""
    content: str = ""
    parent_path: str = ""
    is_directory: bool = False


class UpdateDocumentRequest(BaseModel):
    """Only the content is stored; documents carry no editable metadata.

    Unknown keys (such as the title or status some clients still send)
    are dropped by pydantic. Renames go through the rename route.
    """

    content: Optional[str] = None


class CreateDirectoryRequest(BaseModel):
    name: str
    parent_path: str = ""


class MoveDocumentRequest(BaseModel):
    new_parent_path: str = ""


class RenameDocumentRequest(BaseModel):
    new_name: str


def _ok(data: Any = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"code": 0, "message": "ok"}
    if data is not None:
        payload["data"] = data
    return payload


def _validate_name(name: str) -> str:
    raw = name.strip()
    if not raw:
        raise ValueError("Name must not be empty")
    if "/" in raw or "\\" in raw:
        raise ValueError("Name must not contain path separators")
    if raw in (".", ".."):
        raise ValueError("Name must not be a relative path segment")
    return raw


def _resolve_client_path(vault: Vault, client_path: str) -> Tuple[str, Path]:
    rel = vault.resolver.normalize(client_path)
    if is_within(rel, CONFIG_DIR_NAME):
        raise ValueError("Path points into the reserved configuration directory")
    return rel, vault.resolver.resolve(rel)


def _join(parent_rel: str, name: str) -> str:
    return posixpath.join(parent_rel, name) if parent_rel else name


def _missing_ancestors(vault: Vault, rel: str) -> List[str]:
    """Folders above ``rel`` that do not exist yet, outermost first."""

    missing: List[str] = []
    parent = parent_of(rel)
    while parent and not vault.resolver.resolve(parent).exists():
        missing.append(parent)
        parent = parent_of(parent)
    return missing[::-1]


def _locate(vault: Vault, document_id: int) -> Tuple[str, Path]:
    try:
        rel = vault.identity.lookup(document_id)
        target = vault.resolver.resolve(rel)
    except (NotFound, ValueError) as exc:
        raise HTTPException(status_code=404, detail="Document not found") from exc

    if not target.exists():
        raise HTTPException(status_code=404, detail="Document not found")

    return rel, target


def _entry_kind(path: Path) -> str:
    return "folder" if path.is_dir() else "file"


def _document_payload(vault: Vault, ident: int, rel: str, entry: Path) -> Dict[str, Any]:
    return document_from_path(ident, rel, entry, vault.resolver).model_dump()


async def _handle_storage_error(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("identity ledger write failed path=%s error=%s", request.url.path, exc)
    message = "Failed to persist document identity ledger"
    return JSONResponse(status_code=500, content={"code": 1, "message": message, "detail": message})


async def _handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": 1, "message": detail, "detail": detail},
        headers=getattr(exc, "headers", None),
    )


router = APIRouter()


@router.get("/ping", response_class=PlainTextResponse, tags=["system"])
@router.get("/v1/ping", response_class=PlainTextResponse, tags=["system"])
def ping() -> str:
    return "pong"


@router.get("/health", tags=["system"])
def health(vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    """Basic health and configuration probe.

    Confirms that the application is running, where the sandbox root lives
    and how many entries the id ledger currently tracks.
    """

    cfg = vault.config

    return {
        "status": "ok",
        "version": APP_VERSION,
        "notesRoot": str(cfg.notes_root),
        "idsPath": str(cfg.ids_path),
        "mappedEntries": len(vault.identity),
        "nextId": vault.identity.next_id,
    }


@router.post("/v1/documents", tags=["documents"])
def create_document(payload: CreateDocumentRequest, vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    try:
        parent_rel, parent_dir = _resolve_client_path(vault, payload.parent_path)
        name = _validate_name(payload.title)
        if not payload.is_directory:
            name = ensure_ext_by_type(name, payload.type)
        rel, target = _resolve_client_path(vault, _join(parent_rel, name))
        created_parents = _missing_ancestors(vault, rel)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if parent_dir.exists() and not parent_dir.is_dir():
        raise HTTPException(status_code=409, detail="Parent path is not a folder")

    if payload.is_directory:
        if target.exists() and not target.is_dir():
            raise HTTPException(status_code=409, detail="A file with that name already exists")
        target.mkdir(parents=True, exist_ok=True)
    else:
        if target.exists():
            raise HTTPException(status_code=409, detail="Document already exists")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(payload.content, encoding="utf8")

    ident = vault.identity.assign_all([*created_parents, rel])[rel]
    logger.info("created document id=%s path=%s directory=%s", ident, rel, payload.is_directory)
    vault.hub.broadcast(
        ChangeEvent(type=_entry_kind(target), action="created", path=vault.resolver.to_display_path(rel), id=ident)
    )

    return _ok(_document_payload(vault, ident, rel, target))


@router.get("/v1/documents", tags=["documents"])
def list_documents(parent_path: str = "", vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    try:
        _, directory = _resolve_client_path(vault, parent_path)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if not directory.is_dir():
        raise HTTPException(status_code=404, detail="Folder not found")

    entries = list_children(directory, vault.resolver.root)
    ids = vault.identity.assign_all(rel for rel, _ in entries)

    return _ok([_document_payload(vault, ids[rel], rel, entry) for rel, entry in entries])


@router.get("/v1/documents/tree", tags=["documents"])
def get_tree(nested: bool = False, vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    root = vault.resolver.root
    entries = list(walk_tree(root))
    ids = vault.identity.assign_all(rel for rel, _ in entries)

    nodes = [tree_node_from_path(ids[rel], rel, entry, vault.resolver) for rel, entry in entries]
    if nested:
        nodes = nest_tree_nodes(nodes, vault.resolver)

    return _ok({"nodes": [node.model_dump(exclude_none=True) for node in nodes]})


@router.post("/v1/documents/directories", tags=["documents"])
def create_directory(payload: CreateDirectoryRequest, vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    try:
        parent_rel, _ = _resolve_client_path(vault, payload.parent_path)
        name = _validate_name(payload.name)
        rel, folder = _resolve_client_path(vault, _join(parent_rel, name))
        created_parents = _missing_ancestors(vault, rel)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if folder.exists() and not folder.is_dir():
        raise HTTPException(status_code=409, detail="A file with that name already exists")

    folder.mkdir(parents=True, exist_ok=True)

    ident = vault.identity.assign_all([*created_parents, rel])[rel]
    logger.info("created folder id=%s path=%s", ident, rel)
    vault.hub.broadcast(
        ChangeEvent(type="folder", action="created", path=vault.resolver.to_display_path(rel), id=ident)
    )

    return _ok(_document_payload(vault, ident, rel, folder))


@router.post("/v1/documents/sync", tags=["documents"])
def resync(prune: bool = False, vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    """Walk the whole tree and make sure every visible entry has an id.

    With ``prune=true`` mappings whose entry vanished outside the API are
    released as well.
    """

    identity = vault.identity
    before = identity.next_id
    entries = list(walk_tree(vault.resolver.root))
    identity.assign_all(rel for rel, _ in entries)

    released = 0
    if prune:
        for rel in identity.snapshot().paths:
            try:
                present = vault.resolver.resolve(rel).exists()
            except ValueError:
                present = False
            if not present:
                identity.release(rel)
                released += 1

    minted = identity.next_id - before
    logger.info("resync completed scanned=%s minted=%s released=%s", len(entries), minted, released)
    vault.hub.broadcast(ChangeEvent(type="folder", action="synced", path=vault.resolver.to_display_path("")))

    return _ok({"scanned": len(entries), "minted": minted, "released": released, "nextId": identity.next_id})


@router.get("/v1/documents/search", tags=["documents"])
def search_documents(q: str, vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    query = q.strip()
    if not query:
        return _ok({"query": query, "results": []})
    if len(query) > SEARCH_MAX_QUERY_LENGTH:
        raise HTTPException(status_code=400, detail="Query too long")

    lower_query = query.lower()
    hits: List[Tuple[str, Path, List[Dict[str, Any]]]] = []
    total_matches = 0

    for rel, entry in walk_tree(vault.resolver.root):
        matches: List[Dict[str, Any]] = []

        if entry.is_file() and is_text_file(entry):
            try:
                text = entry.read_text(encoding="utf8")
            except (OSError, UnicodeDecodeError):
                text = ""

            for index, line in enumerate(text.splitlines(), start=1):
                column = line.lower().find(lower_query)
                if column < 0:
                    continue
                matches.append({"line": index, "column": column + 1, "text": line})
                total_matches += 1
                if len(matches) >= SEARCH_MAX_MATCHES_PER_FILE or total_matches >= SEARCH_MAX_RESULTS:
                    break

        if matches or lower_query in entry.name.lower():
            hits.append((rel, entry, matches))

        if total_matches >= SEARCH_MAX_RESULTS:
            break

    ids = vault.identity.assign_all(rel for rel, _, _ in hits)
    results = [
        {"document": _document_payload(vault, ids[rel], rel, entry), "matches": matches}
        for rel, entry, matches in hits
    ]

    return _ok({"query": query, "results": results})


@router.get("/v1/documents/{document_id}", tags=["documents"])
def get_document(document_id: int, vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    rel, target = _locate(vault, document_id)
    return _ok(_document_payload(vault, document_id, rel, target))


@router.get("/v1/documents/{document_id}/content", tags=["documents"])
def get_document_content(document_id: int, vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    rel, target = _locate(vault, document_id)

    if not target.is_file():
        raise HTTPException(status_code=400, detail="Document is not a file")

    try:
        content = target.read_text(encoding="utf8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="Document is not a text file") from exc

    return _ok({"document": _document_payload(vault, document_id, rel, target), "content": content})


@router.put("/v1/documents/{document_id}", tags=["documents"])
def update_document(
    document_id: int,
    payload: UpdateDocumentRequest,
    vault: Vault = Depends(get_vault),
) -> Dict[str, Any]:
    rel, target = _locate(vault, document_id)

    if not target.is_file():
        raise HTTPException(status_code=400, detail="Document is not a file")

    if payload.content is not None:
        target.write_text(payload.content, encoding="utf8")
        logger.info("updated document id=%s path=%s", document_id, rel)
        vault.hub.broadcast(
            ChangeEvent(type="file", action="updated", path=vault.resolver.to_display_path(rel), id=document_id)
        )

    return _ok(_document_payload(vault, document_id, rel, target))


@router.delete("/v1/documents/{document_id}", tags=["documents"])
def delete_document(document_id: int, vault: Vault = Depends(get_vault)) -> Dict[str, Any]:
    rel, target = _locate(vault, document_id)
    kind = _entry_kind(target)

    if kind == "folder":
        # a linked folder is removed as a link, its target stays
        if target.is_symlink():
            target.unlink()
        else:
            shutil.rmtree(target)
        released = vault.identity.release_subtree(rel)
    else:
        target.unlink()
        vault.identity.release(rel)
        released = 1

    display = vault.resolver.to_display_path(rel)
    logger.info("deleted document id=%s path=%s released=%s", document_id, rel, released)
    vault.hub.broadcast(ChangeEvent(type=kind, action="deleted", path=display, id=document_id))

    return _ok({"id": document_id, "path": display, "deleted": True, "released": released})


def _relocate(vault: Vault, document_id: int, rel: str, source: Path, new_rel: str, action: str) -> Dict[str, Any]:
    """Rename ``source`` to ``new_rel`` on disk, then carry its ids along."""

    try:
        if is_within(new_rel, CONFIG_DIR_NAME):
            raise ValueError("Path points into the reserved configuration directory")
        destination = vault.resolver.resolve(new_rel)
        created_parents = _missing_ancestors(vault, new_rel)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if new_rel == rel:
        return _ok(_document_payload(vault, document_id, rel, source))

    kind = _entry_kind(source)
    if kind == "folder" and is_within(new_rel, rel):
        raise HTTPException(status_code=400, detail="Cannot move a folder into itself")

    if destination.exists():
        raise HTTPException(status_code=409, detail="Destination already exists")

    destination.parent.mkdir(parents=True, exist_ok=True)
    source.rename(destination)

    if kind == "folder":
        vault.identity.rewrite_subtree(rel, new_rel)
    else:
        vault.identity.rewrite(document_id, new_rel)
    if created_parents:
        vault.identity.assign_all(created_parents)

    logger.info("%s document id=%s %s -> %s", action, document_id, rel, new_rel)
    vault.hub.broadcast(
        ChangeEvent(
            type=kind,
            action=action,
            path=vault.resolver.to_display_path(new_rel),
            id=document_id,
            from_path=vault.resolver.to_display_path(rel),
            to_path=vault.resolver.to_display_path(new_rel),
        )
    )

    return _ok(_document_payload(vault, document_id, new_rel, destination))


@router.post("/v1/documents/{document_id}/move", tags=["documents"])
def move_document(
    document_id: int,
    payload: MoveDocumentRequest,
    vault: Vault = Depends(get_vault),
) -> Dict[str, Any]:
    rel, source = _locate(vault, document_id)

    try:
        new_parent_rel, new_parent = _resolve_client_path(vault, payload.new_parent_path)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if new_parent.exists() and not new_parent.is_dir():
        raise HTTPException(status_code=400, detail="Destination is not a folder")

    new_rel = _join(new_parent_rel, posixpath.basename(rel))
    return _relocate(vault, document_id, rel, source, new_rel, "moved")


@router.post("/v1/documents/{document_id}/rename", tags=["documents"])
def rename_document(
    document_id: int,
    payload: RenameDocumentRequest,
    vault: Vault = Depends(get_vault),
) -> Dict[str, Any]:
    rel, source = _locate(vault, document_id)

    try:
        new_name = _validate_name(payload.new_name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if source.is_file() and not Path(new_name).suffix:
        new_name = f"{new_name}{Path(rel).suffix}"

    new_rel = _join(parent_of(rel), new_name)
    return _relocate(vault, document_id, rel, source, new_rel, "renamed")


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        message = await subscription.next_message()
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError):
            return


@router.websocket("/ws")
async def changes_socket(websocket: WebSocket, vault: Vault = Depends(get_vault)) -> None:
    subscription = vault.hub.subscribe()
    await websocket.accept()
    forwarder = asyncio.create_task(_forward_events(websocket, subscription))

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        forwarder.cancel()
        vault.hub.unsubscribe(subscription)


def create_app(cfg: AppConfig | None = None) -> FastAPI:
    cfg = cfg or get_config()

    application = FastAPI(title="Document Vault", version=APP_VERSION)
    application.state.vault = open_vault(cfg)
    application.add_exception_handler(StorageError, _handle_storage_error)
    application.add_exception_handler(StarletteHTTPException, _handle_http_error)
    application.include_router(router)

    return application


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual/dev entrypoint
    # This allows `python main.py` in addition to `uvicorn main:app`.
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "6066")),
        reload=os.getenv("UVICORN_RELOAD", "false").lower() == "true",
    )
