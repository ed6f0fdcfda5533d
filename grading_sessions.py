"""
Multi-session conversation grading.

``ConversationGradingSystemWithSessions`` keeps one isolated
ConversationGradingSystem per session, routes every call to the active
session and mirrors the active tree into the SessionManager so it can be
saved, expired and reported on.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import logfire

from grading_config import get_config
from grading_entities import (
    ConversationTree,
    CurrentPosition,
    GradingStats,
    QAPair,
    SessionInfo,
    TopicNode,
)
from grading_errors import (
    ActiveSessionError,
    GradingError,
    PersistenceError,
    SessionNotFoundError,
    safe_error_message,
)
from grading_storage import PersistenceAdapter
from grading_system import ConversationGradingSystem
from grading_validation import validate_session_id
from scoring import ScoringStrategy
from session_manager import SessionManager
from topic_analyzer import BaseTopicAnalyzer


logger = logging.getLogger(__name__)


SystemFactory = Callable[[str], ConversationGradingSystem]


def sort_nodes_by_dependency(tree: ConversationTree) -> List[TopicNode]:
    """Nodes ordered so every parent precedes its children, otherwise insertion order."""
    ordered: List[TopicNode] = []
    processed = set()

    for node in tree.nodes.values():
        chain: List[TopicNode] = []
        chain_ids = set()
        current: Optional[TopicNode] = node
        while current is not None and current.id not in processed and current.id not in chain_ids:
            chain.append(current)
            chain_ids.add(current.id)
            current = tree.nodes.get(current.parent_topic) if current.parent_topic else None
        for pending in reversed(chain):
            ordered.append(pending)
            processed.add(pending.id)
    return ordered


class ConversationGradingSystemWithSessions:
    """Session-aware facade over ConversationGradingSystem."""

    def __init__(
        self,
        initial_session_id: Optional[str] = None,
        persistence_adapter: Optional[PersistenceAdapter] = None,
        auto_save: Optional[bool] = None,
        system_factory: Optional[SystemFactory] = None,
    ):
        session_config = get_config().session
        self._session_manager = SessionManager(persistence_adapter)
        self._system_factory: SystemFactory = system_factory or ConversationGradingSystem
        self._systems: Dict[str, ConversationGradingSystem] = {}
        # Guards _systems and _current_session_id across check-then-act sequences
        self._lock = threading.RLock()
        self.auto_save = session_config.auto_save if auto_save is None else auto_save

        self._current_session_id = self.create_session(
            initial_session_id or session_config.default_session_id
        )

    @property
    def session_manager(self) -> SessionManager:
        return self._session_manager

    def _current(self) -> Tuple[str, ConversationGradingSystem]:
        with self._lock:
            session_id = self._current_session_id
            system = self._systems.get(session_id)
            if system is None:
                raise SessionNotFoundError(session_id)
        self._session_manager.update_session_access(session_id)
        return session_id, system

    def _current_system(self) -> ConversationGradingSystem:
        return self._current()[1]

    async def _after_mutation(self, session_id: str, system: ConversationGradingSystem) -> None:
        """Mirror and auto-save the session that was mutated, even if another is active now."""
        with self._lock:
            if self._systems.get(session_id) is not system:
                logger.debug(f"Session {session_id} was removed during a mutation; not syncing")
                return
            self._session_manager.set_session_tree(session_id, system.get_topic_tree())
        if not self.auto_save or self._session_manager.persistence_adapter is None:
            return
        try:
            await self._session_manager.save_session(session_id)
        except PersistenceError as e:
            # Auto-save is best effort; explicit save_session still raises
            logger.warning(safe_error_message(e, f"Auto-save failed for session {session_id}"))

    def create_session(self, session_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Create an isolated session and return its id."""
        with self._lock:
            info = self._session_manager.create_session(session_id, metadata)
            self._systems[info.session_id] = self._system_factory(info.session_id)
        return info.session_id

    def switch_session(self, session_id: str) -> None:
        validate_session_id(session_id)
        with self._lock:
            if not self._session_manager.has_session(session_id) or session_id not in self._systems:
                raise SessionNotFoundError(session_id)
            self._current_session_id = session_id
            self._session_manager.update_session_access(session_id)
        logfire.info('Switched session', session_id=session_id)

    def get_current_session_id(self) -> str:
        with self._lock:
            return self._current_session_id

    def delete_session(self, session_id: str) -> None:
        """
        Delete a session from memory.

        Raises:
            ActiveSessionError: For the active session
            SessionNotFoundError: For unknown ids
        """
        with self._lock:
            if session_id == self._current_session_id:
                raise ActiveSessionError(session_id)
            if not self._session_manager.has_session(session_id):
                raise SessionNotFoundError(session_id)
            self._systems.pop(session_id, None)
            self._session_manager.delete_session(session_id)

    def list_sessions(self) -> List[SessionInfo]:
        return self._session_manager.list_sessions()

    async def save_session(self, session_id: Optional[str] = None) -> None:
        """Persist a session (the active one by default)."""
        with self._lock:
            target = session_id or self._current_session_id
            system = self._systems.get(target)
            if system is None:
                raise SessionNotFoundError(target)
            self._session_manager.set_session_tree(target, system.get_topic_tree())
        await self._session_manager.save_session(target)
        logfire.info('Session saved', session_id=target)

    async def load_session(self, session_id: str, rescore: bool = False) -> bool:
        """
        Rebuild a persisted session in a fresh grading system.

        Nodes are replayed parent-first through ``add_qa_pair``. Persisted
        scores are passed as explicit scores unless ``rescore`` is set, and
        visit bookkeeping is carried over to the node each replay lands on.
        The session registry only changes once the replay succeeded.

        Returns:
            False if nothing is stored under ``session_id``

        Raises:
            PersistenceError: If reading or replaying the stored tree fails
        """
        with logfire.span('grading_sessions.load_session', session_id=session_id) as span:
            tree = await self._session_manager.fetch_session(session_id)
            if tree is None:
                span.set_attribute('found', False)
                return False

            system = self._system_factory(session_id)
            try:
                for node in sort_nodes_by_dependency(tree):
                    landed_on: Optional[str] = None
                    for qa_pair in node.metadata.qa_pairs:
                        landed_on = await system.add_qa_pair(qa_pair, None if rescore else node.score)
                    has_state = node.metadata.visit_count > 0 or node.metadata.is_exhausted
                    if landed_on is not None and has_state:
                        system.restore_exploration_state(landed_on, node.metadata)
            except PersistenceError:
                raise
            except GradingError as e:
                raise PersistenceError(
                    safe_error_message(e, f"Failed to replay session {session_id}"), session_id
                ) from e

            with self._lock:
                self._systems[session_id] = system
                self._session_manager.register_session(session_id, system.get_topic_tree())

            span.set_attribute('found', True)
            span.set_attribute('node_count', len(tree.nodes))
            logfire.info('Session loaded', session_id=session_id, rescored=rescore)
            return True

    async def delete_persisted_session(self, session_id: str) -> bool:
        adapter = self._session_manager.persistence_adapter
        if adapter is None:
            raise PersistenceError("No persistence adapter configured", session_id)
        return await adapter.delete(session_id)

    async def list_saved_sessions(self) -> List[str]:
        adapter = self._session_manager.persistence_adapter
        if adapter is None:
            raise PersistenceError("No persistence adapter configured")
        return await adapter.list()

    def cleanup_expired_sessions(self, max_age_ms: Optional[float] = None) -> int:
        """Remove idle sessions other than the active one; returns the count removed."""
        if max_age_ms is None:
            max_age_ms = get_config().session.max_age_seconds * 1000
        with self._lock:
            removed = self._session_manager.cleanup_expired_sessions(
                max_age_ms, exclude={self._current_session_id}
            )
            for session_id in list(self._systems):
                if not self._session_manager.has_session(session_id):
                    del self._systems[session_id]
        return removed

    async def add_qa_pair(self, qa_pair: QAPair, score: Optional[float] = None) -> str:
        session_id, system = self._current()
        node_id = await system.add_qa_pair(qa_pair, score)
        await self._after_mutation(session_id, system)
        return node_id

    async def mark_topic_as_visited(self, node_id: str) -> None:
        session_id, system = self._current()
        system.mark_topic_as_visited(node_id)
        await self._after_mutation(session_id, system)

    async def mark_topic_as_exhausted(self, node_id: str) -> None:
        session_id, system = self._current()
        system.mark_topic_as_exhausted(node_id)
        await self._after_mutation(session_id, system)

    async def clear(self) -> None:
        session_id, system = self._current()
        await system.clear()
        await self._after_mutation(session_id, system)

    def get_topic_tree(self) -> ConversationTree:
        return self._current_system().get_topic_tree()

    def get_depth_from_root(self, node_id: str) -> int:
        return self._current_system().get_depth_from_root(node_id)

    def get_deepest_unvisited_branch(self) -> Optional[TopicNode]:
        return self._current_system().get_deepest_unvisited_branch()

    def get_current_topic(self) -> Optional[TopicNode]:
        return self._current_system().get_current_topic()

    def get_current_position(self) -> CurrentPosition:
        return self._current_system().get_current_position()

    def set_scoring_strategy(self, strategy: ScoringStrategy) -> None:
        """Swap the scoring strategy of the active session only."""
        self._current_system().set_scoring_strategy(strategy)

    def set_topic_analyzer(self, analyzer: BaseTopicAnalyzer) -> None:
        """Swap the topic analyzer of the active session only."""
        self._current_system().set_topic_analyzer(analyzer)

    def get_stats(self) -> GradingStats:
        return self._current_system().get_stats()

    def get_all_sessions_stats(self) -> Dict[str, Any]:
        with self._lock:
            sessions = self._session_manager.list_sessions()
            systems = dict(self._systems)
            current_session = self._current_session_id
        session_stats = [
            {
                "session_id": info.session_id,
                "stats": systems[info.session_id].get_stats(),
                "session_info": info,
            }
            for info in sessions
            if info.session_id in systems
        ]
        return {
            "total_sessions": len(sessions),
            "current_session": current_session,
            "memory_stats": self._session_manager.get_memory_stats(),
            "session_stats": session_stats,
        }

    def dispose(self) -> None:
        """Release every session; the instance is unusable afterwards."""
        with self._lock:
            self._systems.clear()
            self._session_manager.dispose()
