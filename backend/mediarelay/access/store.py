"""Durable whitelist storage.

The whitelist is persisted as a record set with columns
``(kind, id, label)``. Two stores implement it:

- DuckDBWhitelistStore: a ``whitelist`` table in an embedded DuckDB file.
- DriveDocumentWhitelistStore: a ``whitelist.json`` document in the archive
  root folder on Google Drive, holding ``{"entries": [{kind, id, label}]}``.

Both raise ``WhitelistPersistFailure`` on any read or write error. A
``save`` followed by ``load`` reproduces the same set of entries.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

import duckdb
import httpx
from pydantic import ValidationError

from mediarelay.errors import RelayError, WhitelistPersistFailure
from mediarelay.storage.base import FolderHandle
from mediarelay.storage.google_drive import DriveBackend
from mediarelay.storage.resolver import FolderResolver

from .schemas import Principal, PrincipalKind, WhitelistEntry

logger = logging.getLogger(__name__)


def entries_to_records(entries: Iterable[WhitelistEntry]) -> List[dict]:
    return [
        {"kind": e.principal.kind.value, "id": e.principal.id, "label": e.label}
        for e in entries
    ]


def records_to_entries(records: Iterable[dict]) -> List[WhitelistEntry]:
    """Parse persisted records, dropping malformed rows and duplicates."""
    seen = set()
    entries: List[WhitelistEntry] = []
    for record in records:
        try:
            entry = WhitelistEntry(
                principal=Principal(kind=PrincipalKind(record["kind"]), id=record["id"]),
                label=record.get("label"),
            )
        except (KeyError, ValueError, ValidationError, TypeError):
            logger.warning("Skipping malformed whitelist record: %r", record)
            continue
        if entry.key in seen:
            continue
        seen.add(entry.key)
        entries.append(entry)
    return entries


class WhitelistStore(ABC):
    """Abstract durable whitelist."""

    @abstractmethod
    async def load(self) -> List[WhitelistEntry]:
        """Return every persisted entry."""

    @abstractmethod
    async def save(self, entries: List[WhitelistEntry]) -> None:
        """Replace the persisted set with *entries*."""

    async def append(self, entry: WhitelistEntry) -> None:
        """Add *entry* (replacing an entry for the same principal)."""
        entries = [e for e in await self.load() if e.principal != entry.principal]
        entries.append(entry)
        await self.save(entries)

    async def remove(self, principal: Principal) -> bool:
        """Remove the entry for *principal*; returns whether one existed."""
        entries = await self.load()
        kept = [e for e in entries if e.principal != principal]
        if len(kept) == len(entries):
            return False
        await self.save(kept)
        return True

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# DuckDB
# ---------------------------------------------------------------------------

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS whitelist (
    kind       VARCHAR NOT NULL,
    id         VARCHAR NOT NULL,
    label      VARCHAR,
    created_at TIMESTAMP NOT NULL,
    PRIMARY KEY (kind, id)
)
"""


class DuckDBWhitelistStore(WhitelistStore):
    """Whitelist table in an embedded DuckDB file.

    DuckDB calls are blocking, so each one runs in a worker thread; the
    connection is only ever used by one call at a time because AccessGate
    serializes all mutations.
    """

    _default_db_path: str = "whitelist.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        try:
            self._conn = duckdb.connect(self._db_path)
            self._conn.execute(_CREATE_TABLE)
        except duckdb.Error as e:
            raise WhitelistPersistFailure(f"Cannot open whitelist db {self._db_path}: {e}") from e
        logger.info("[DuckDBWhitelistStore] Initialized with db=%s", self._db_path)

    def _load_sync(self) -> List[WhitelistEntry]:
        rows = self._conn.execute(
            "SELECT kind, id, label FROM whitelist ORDER BY created_at ASC"
        ).fetchall()
        return records_to_entries({"kind": r[0], "id": r[1], "label": r[2]} for r in rows)

    def _save_sync(self, entries: List[WhitelistEntry]) -> None:
        now = datetime.utcnow()
        self._conn.execute("BEGIN TRANSACTION")
        try:
            self._conn.execute("DELETE FROM whitelist")
            for record in entries_to_records(entries):
                self._conn.execute(
                    "INSERT INTO whitelist (kind, id, label, created_at) VALUES (?, ?, ?, ?)",
                    [record["kind"], record["id"], record["label"], now],
                )
            self._conn.execute("COMMIT")
        except duckdb.Error:
            self._conn.execute("ROLLBACK")
            raise

    def _append_sync(self, entry: WhitelistEntry) -> None:
        self._conn.execute(
            """
            INSERT INTO whitelist (kind, id, label, created_at) VALUES (?, ?, ?, ?)
            ON CONFLICT (kind, id) DO UPDATE SET label = excluded.label
            """,
            [entry.principal.kind.value, entry.principal.id, entry.label, datetime.utcnow()],
        )

    def _remove_sync(self, principal: Principal) -> bool:
        removed = self._conn.execute(
            "DELETE FROM whitelist WHERE kind = ? AND id = ? RETURNING id",
            [principal.kind.value, principal.id],
        ).fetchall()
        return len(removed) > 0

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except duckdb.Error as e:
            raise WhitelistPersistFailure(f"DuckDB whitelist error: {e}") from e

    async def load(self) -> List[WhitelistEntry]:
        return await self._run(self._load_sync)

    async def save(self, entries: List[WhitelistEntry]) -> None:
        await self._run(self._save_sync, list(entries))

    async def append(self, entry: WhitelistEntry) -> None:
        await self._run(self._append_sync, entry)

    async def remove(self, principal: Principal) -> bool:
        return await self._run(self._remove_sync, principal)

    async def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Google Drive document
# ---------------------------------------------------------------------------


class DriveDocumentWhitelistStore(WhitelistStore):
    """JSON whitelist document stored next to the archive on Google Drive."""

    def __init__(
        self,
        backend: DriveBackend,
        root_folder: str,
        document_name: str = "whitelist.json",
        resolver: Optional[FolderResolver] = None,
    ) -> None:
        self._backend = backend
        # Shared with the upload router so the archive root is created once.
        self._resolver = resolver or FolderResolver()
        self._root_folder = root_folder
        self._document_name = document_name
        self._file_id: Optional[str] = None
        self._folder: Optional[FolderHandle] = None

    async def _ensure_document(self) -> str:
        """Locate the document, creating an empty one on first use."""
        if self._file_id is not None:
            return self._file_id
        await self._backend.ensure_ready()
        if self._folder is None:
            self._folder = await self._resolver.resolve(self._backend, (self._root_folder,))
        file_id = await self._backend.find_file_id(self._folder, self._document_name)
        if file_id is None:
            file_id = await self._backend.create_text(
                self._folder, self._document_name, json.dumps({"entries": []}, indent=2)
            )
            logger.info("Created whitelist document %s/%s", self._root_folder, self._document_name)
        self._file_id = file_id
        return file_id

    async def load(self) -> List[WhitelistEntry]:
        try:
            file_id = await self._ensure_document()
            raw = await self._backend.read_text(file_id)
            data = json.loads(raw) if raw.strip() else {}
        except (RelayError, httpx.HTTPError, ValueError) as e:
            raise WhitelistPersistFailure(f"Cannot load whitelist document: {e}") from e
        if not isinstance(data, dict):
            raise WhitelistPersistFailure("Invalid whitelist document: root is not object")
        return records_to_entries(data.get("entries") or [])

    async def save(self, entries: List[WhitelistEntry]) -> None:
        body = json.dumps({"entries": entries_to_records(entries)}, indent=2, ensure_ascii=False)
        try:
            file_id = await self._ensure_document()
            await self._backend.update_text(file_id, body)
        except (RelayError, httpx.HTTPError) as e:
            raise WhitelistPersistFailure(f"Cannot save whitelist document: {e}") from e
