"""
Persistence adapters for conversation trees.

Every adapter stores a ConversationTree as its pydantic JSON dump keyed by
session id and implements the same async interface: ``save``, ``load``,
``delete``, ``list`` and ``exists``. Blocking file and SQLite work runs in a
worker thread so the event loop stays responsive.
"""

import asyncio
import logging
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from grading_config import SessionConfig, StorageBackend, get_config
from grading_entities import ConversationTree
from grading_errors import PersistenceError, safe_error_message
from grading_validation import validate_session_id


logger = logging.getLogger(__name__)


def serialize_tree(tree: ConversationTree) -> str:
    return tree.model_dump_json()


def deserialize_tree(data: str, session_id: str) -> ConversationTree:
    try:
        return ConversationTree.model_validate_json(data)
    except PydanticValidationError as e:
        message = f"Stored data for session {session_id} is corrupted: {e.error_count()} errors"
        logger.error(message)
        raise PersistenceError(message, session_id) from e


class PersistenceAdapter(ABC):
    """Storage back-end for saved sessions."""

    @abstractmethod
    async def save(self, session_id: str, tree: ConversationTree) -> None:
        """Store ``tree`` under ``session_id``, replacing any previous copy."""

    @abstractmethod
    async def load(self, session_id: str) -> Optional[ConversationTree]:
        """Return the stored tree, or None if nothing is stored."""

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove the stored tree; returns whether anything was removed."""

    @abstractmethod
    async def list(self) -> List[str]:
        """Session ids with a stored tree."""

    @abstractmethod
    async def exists(self, session_id: str) -> bool:
        ...

    def close(self) -> None:
        """Release any held resources."""


class InMemoryPersistenceAdapter(PersistenceAdapter):
    """Keeps serialised trees in a dict; useful for tests and single processes."""

    def __init__(self):
        self._storage: Dict[str, str] = {}
        self._lock = threading.Lock()

    async def save(self, session_id: str, tree: ConversationTree) -> None:
        validate_session_id(session_id)
        data = serialize_tree(tree)
        with self._lock:
            self._storage[session_id] = data

    async def load(self, session_id: str) -> Optional[ConversationTree]:
        validate_session_id(session_id)
        with self._lock:
            data = self._storage.get(session_id)
        return deserialize_tree(data, session_id) if data is not None else None

    async def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._storage.pop(session_id, None) is not None

    async def list(self) -> List[str]:
        with self._lock:
            return list(self._storage)

    async def exists(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._storage

    def clear(self) -> None:
        with self._lock:
            self._storage.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._storage)


class FilePersistenceAdapter(PersistenceAdapter):
    """One JSON document per session in a directory."""

    SUFFIX = ".json"

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory or get_config().session.storage_path)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, session_id: str) -> Path:
        validate_session_id(session_id)
        return self.directory / f"{session_id}{self.SUFFIX}"

    def _write(self, path: Path, data: str) -> None:
        tmp_path = path.with_suffix(".tmp")
        with self._lock:
            tmp_path.write_text(data, encoding="utf-8")
            os.replace(tmp_path, path)

    def _read(self, path: Path) -> Optional[str]:
        with self._lock:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

    def _unlink(self, path: Path) -> bool:
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
            return True

    async def save(self, session_id: str, tree: ConversationTree) -> None:
        path = self._path(session_id)
        try:
            await asyncio.to_thread(self._write, path, serialize_tree(tree))
        except OSError as e:
            raise PersistenceError(
                safe_error_message(e, f"Failed to save session {session_id}"), session_id
            ) from e

    async def load(self, session_id: str) -> Optional[ConversationTree]:
        path = self._path(session_id)
        try:
            data = await asyncio.to_thread(self._read, path)
        except OSError as e:
            raise PersistenceError(
                safe_error_message(e, f"Failed to load session {session_id}"), session_id
            ) from e
        return deserialize_tree(data, session_id) if data is not None else None

    async def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        try:
            return await asyncio.to_thread(self._unlink, path)
        except OSError as e:
            raise PersistenceError(
                safe_error_message(e, f"Failed to delete session {session_id}"), session_id
            ) from e

    async def list(self) -> List[str]:
        return sorted(path.stem for path in self.directory.glob(f"*{self.SUFFIX}"))

    async def exists(self, session_id: str) -> bool:
        return self._path(session_id).exists()


class SQLitePersistenceAdapter(PersistenceAdapter):
    """One row per session in a local SQLite database."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or get_config().session.storage_path / "sessions.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                node_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at);
        """)
        self._conn.commit()

    def _execute(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        if self._conn is None:
            raise PersistenceError("SQLite persistence adapter is closed")
        with self._lock:
            cursor = self._conn.execute(sql, params)
            rows = cursor.fetchall()
            self._conn.commit()
            return rows

    async def _run(self, session_id: Optional[str], action: str, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return await asyncio.to_thread(self._execute, sql, params)
        except sqlite3.Error as e:
            message = safe_error_message(e, f"Failed to {action}")
            logger.error(message)
            raise PersistenceError(message, session_id) from e

    async def save(self, session_id: str, tree: ConversationTree) -> None:
        validate_session_id(session_id)
        await self._run(session_id, f"save session {session_id}", """
            INSERT INTO sessions (session_id, data, node_count, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(session_id) DO UPDATE SET
                data = excluded.data,
                node_count = excluded.node_count,
                updated_at = CURRENT_TIMESTAMP
        """, (session_id, serialize_tree(tree), len(tree.nodes)))

    async def load(self, session_id: str) -> Optional[ConversationTree]:
        validate_session_id(session_id)
        rows = await self._run(
            session_id, f"load session {session_id}",
            "SELECT data FROM sessions WHERE session_id = ?", (session_id,),
        )
        if not rows:
            return None
        return deserialize_tree(rows[0]["data"], session_id)

    async def delete(self, session_id: str) -> bool:
        if not await self.exists(session_id):
            return False
        await self._run(
            session_id, f"delete session {session_id}",
            "DELETE FROM sessions WHERE session_id = ?", (session_id,),
        )
        return True

    async def list(self) -> List[str]:
        rows = await self._run(None, "list sessions", "SELECT session_id FROM sessions ORDER BY session_id")
        return [row["session_id"] for row in rows]

    async def exists(self, session_id: str) -> bool:
        rows = await self._run(
            session_id, f"look up session {session_id}",
            "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,),
        )
        return bool(rows)

    def close(self):
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


def create_persistence_adapter(session_config: Optional[SessionConfig] = None) -> PersistenceAdapter:
    """Build the adapter selected by ``SESSION_STORAGE_BACKEND``."""
    session_config = session_config or get_config().session
    backend = session_config.storage_backend

    if backend == StorageBackend.FILE:
        return FilePersistenceAdapter(session_config.storage_path)
    if backend == StorageBackend.SQLITE:
        return SQLitePersistenceAdapter(session_config.storage_path / "sessions.db")
    return InMemoryPersistenceAdapter()
