"""
Session registry for the conversation grading engine.

``SessionManager`` tracks SessionInfo records and the latest tree snapshot of
every session, expires idle sessions and moves trees to and from a
persistence adapter. All registry access goes through one re-entrant lock so
sessions can be created, deleted and swept from several threads.
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

import logfire

from grading_entities import ConversationTree, MemoryStats, SessionInfo
from grading_errors import (
    PersistenceError,
    SessionExistsError,
    SessionNotFoundError,
    TreeIntegrityError,
)
from grading_storage import PersistenceAdapter
from grading_validation import validate_session_id, validate_tree_integrity


logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid4().hex[:12]}"


class SessionManager:
    """Thread-safe registry of conversation sessions."""

    def __init__(self, persistence_adapter: Optional[PersistenceAdapter] = None):
        self._sessions: Dict[str, SessionInfo] = {}
        self._session_trees: Dict[str, ConversationTree] = {}
        self._persistence_adapter = persistence_adapter
        self._lock = threading.RLock()

    @property
    def persistence_adapter(self) -> Optional[PersistenceAdapter]:
        return self._persistence_adapter

    def _require_adapter(self) -> PersistenceAdapter:
        if self._persistence_adapter is None:
            raise PersistenceError("No persistence adapter configured")
        return self._persistence_adapter

    def create_session(
        self,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SessionInfo:
        """
        Register a new session with an empty tree.

        Args:
            session_id: Id to use; generated when omitted
            metadata: Free-form session annotations

        Raises:
            ValidationError: If the id is malformed
            SessionExistsError: If the id is already registered
        """
        session_id = session_id or generate_session_id()
        validate_session_id(session_id)

        with self._lock:
            if session_id in self._sessions:
                raise SessionExistsError(session_id)
            info = SessionInfo(session_id=session_id, metadata=dict(metadata or {}))
            self._sessions[session_id] = info
            self._session_trees[session_id] = ConversationTree(session_id=session_id)

        logger.info(f"Created session {session_id}")
        return info.model_copy(deep=True)

    def get_session(self, session_id: str) -> Optional[SessionInfo]:
        with self._lock:
            info = self._sessions.get(session_id)
            return info.model_copy(deep=True) if info is not None else None

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def update_session_access(self, session_id: str) -> None:
        with self._lock:
            info = self._sessions.get(session_id)
            if info is not None:
                info.touch()

    def delete_session(self, session_id: str) -> bool:
        """Forget a session in memory; persisted copies are left alone."""
        with self._lock:
            existed = self._sessions.pop(session_id, None) is not None
            self._session_trees.pop(session_id, None)
        if existed:
            logger.info(f"Deleted session {session_id}")
        return existed

    def list_sessions(self) -> List[SessionInfo]:
        with self._lock:
            return [info.model_copy(deep=True) for info in self._sessions.values()]

    def cleanup_expired_sessions(self, max_age_ms: float, exclude: Iterable[str] = ()) -> int:
        """
        Delete sessions idle for longer than ``max_age_ms`` milliseconds.

        Args:
            max_age_ms: Maximum idle time
            exclude: Session ids that must survive the sweep

        Returns:
            Number of sessions removed
        """
        cutoff = datetime.now() - timedelta(milliseconds=max_age_ms)
        keep = set(exclude)

        with self._lock:
            expired = [
                session_id for session_id, info in self._sessions.items()
                if info.last_accessed_at < cutoff and session_id not in keep
            ]
            for session_id in expired:
                self.delete_session(session_id)

        if expired:
            logfire.info('Expired sessions removed', count=len(expired), session_ids=expired)
        return len(expired)

    def get_session_tree(self, session_id: str) -> Optional[ConversationTree]:
        with self._lock:
            tree = self._session_trees.get(session_id)
            if tree is None:
                return None
            self.update_session_access(session_id)
            return tree.snapshot()

    def set_session_tree(self, session_id: str, tree: ConversationTree) -> None:
        with self._lock:
            if session_id not in self._sessions:
                raise SessionNotFoundError(session_id)
            self._session_trees[session_id] = tree.snapshot()
            self.update_session_access(session_id)

    def register_session(
        self,
        session_id: str,
        tree: ConversationTree,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SessionInfo:
        """Create the session if needed and install ``tree`` in one step."""
        validate_session_id(session_id)
        with self._lock:
            info = self._sessions.get(session_id)
            if info is None:
                info = SessionInfo(session_id=session_id, metadata=dict(metadata or {}))
                self._sessions[session_id] = info
            info.touch()
            self._session_trees[session_id] = tree.snapshot()
            return info.model_copy(deep=True)

    async def save_session(self, session_id: str) -> None:
        """
        Persist the stored tree of a session.

        Raises:
            PersistenceError: Without an adapter or when the adapter fails
            SessionNotFoundError: If the session is not registered
        """
        adapter = self._require_adapter()
        with self._lock:
            tree = self._session_trees.get(session_id)
            if tree is None:
                raise SessionNotFoundError(session_id)
            tree = tree.snapshot()

        with logfire.span('session_manager.save_session', session_id=session_id) as span:
            await adapter.save(session_id, tree)
            span.set_attribute('node_count', len(tree.nodes))

    async def fetch_session(self, session_id: str) -> Optional[ConversationTree]:
        """
        Read a persisted tree without touching the registry.

        Raises:
            PersistenceError: Without an adapter, on adapter failure, or if
                the stored tree breaks a structural invariant
        """
        validate_session_id(session_id)
        adapter = self._require_adapter()
        tree = await adapter.load(session_id)
        if tree is None:
            return None
        try:
            validate_tree_integrity(tree)
        except TreeIntegrityError as e:
            raise PersistenceError(
                f"Stored tree for session {session_id} is inconsistent: {e}", session_id
            ) from e
        return tree

    async def load_session(self, session_id: str) -> Optional[ConversationTree]:
        """Fetch a persisted tree and register it verbatim."""
        tree = await self.fetch_session(session_id)
        if tree is not None:
            self.register_session(session_id, tree)
        return tree

    def get_memory_stats(self) -> MemoryStats:
        with self._lock:
            total_sessions = len(self._sessions)
            total_nodes = sum(len(tree.nodes) for tree in self._session_trees.values())
            created = [info.created_at for info in self._sessions.values()]

        return MemoryStats(
            total_sessions=total_sessions,
            total_nodes=total_nodes,
            average_nodes_per_session=total_nodes / total_sessions if total_sessions else 0.0,
            oldest_session=min(created) if created else None,
            newest_session=max(created) if created else None,
        )

    def dispose(self) -> None:
        """Drop every session and close the persistence adapter."""
        with self._lock:
            self._sessions.clear()
            self._session_trees.clear()
        if self._persistence_adapter is not None:
            self._persistence_adapter.close()
