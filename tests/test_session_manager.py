"""
Tests for the session registry.
"""

import pytest
import threading
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

from grading_entities import ConversationTree, TopicNode
from grading_errors import (
    PersistenceError,
    SessionExistsError,
    SessionNotFoundError,
    ValidationError,
)
from grading_storage import InMemoryPersistenceAdapter
from session_manager import SessionManager, generate_session_id


def tree_with_root(session_id="s1") -> ConversationTree:
    return ConversationTree(
        nodes={"root": TopicNode(id="root", topic="databases")},
        root_nodes=["root"],
        session_id=session_id,
    )


def age_session(manager, session_id, hours=2):
    manager._sessions[session_id].last_accessed_at = datetime.now() - timedelta(hours=hours)


class TestSessionRegistry:
    """Test creating, listing and deleting sessions."""

    @pytest.fixture
    def manager(self):
        return SessionManager()

    def test_generated_ids(self, manager):
        info = manager.create_session()

        assert info.session_id.startswith("session_")
        assert manager.has_session(info.session_id)
        assert generate_session_id() != generate_session_id()

    def test_create_with_metadata(self, manager):
        info = manager.create_session("s1", {"candidate": "c-42"})

        assert info.metadata == {"candidate": "c-42"}
        assert manager.get_session_tree("s1").nodes == {}

    def test_duplicate_session(self, manager):
        manager.create_session("s1")

        with pytest.raises(SessionExistsError):
            manager.create_session("s1")

    def test_invalid_session_id(self, manager):
        with pytest.raises(ValidationError):
            manager.create_session("bad id")

    def test_delete(self, manager):
        manager.create_session("s1")

        assert manager.delete_session("s1")
        assert not manager.delete_session("s1")
        assert manager.get_session("s1") is None
        assert manager.get_session_tree("s1") is None

    def test_list_returns_copies(self, manager):
        manager.create_session("s1")

        listed = manager.list_sessions()
        listed[0].metadata["changed"] = True

        assert manager.get_session("s1").metadata == {}

    def test_access_tracking(self, manager):
        manager.create_session("s1")
        age_session(manager, "s1")
        before = manager.get_session("s1").last_accessed_at

        manager.update_session_access("s1")

        assert manager.get_session("s1").last_accessed_at > before

    def test_concurrent_creation(self, manager):
        """Test the registry stays consistent under concurrent creates."""
        errors = []

        def create(index):
            try:
                manager.create_session(f"s{index}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=create, args=(i,)) for i in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(manager.list_sessions()) == 20


class TestSessionTrees:
    """Test tree snapshots held per session."""

    @pytest.fixture
    def manager(self):
        manager = SessionManager()
        manager.create_session("s1")
        return manager

    def test_set_and_get_tree(self, manager):
        manager.set_session_tree("s1", tree_with_root())

        tree = manager.get_session_tree("s1")
        tree.nodes["root"].topic = "changed"

        assert manager.get_session_tree("s1").nodes["root"].topic == "databases"

    def test_set_tree_for_unknown_session(self, manager):
        with pytest.raises(SessionNotFoundError):
            manager.set_session_tree("missing", tree_with_root())

    def test_register_session(self, manager):
        info = manager.register_session("s2", tree_with_root("s2"), {"source": "import"})

        assert info.metadata == {"source": "import"}
        assert "root" in manager.get_session_tree("s2").nodes

    def test_memory_stats(self, manager):
        manager.set_session_tree("s1", tree_with_root())
        manager.create_session("s2")

        stats = manager.get_memory_stats()

        assert stats.total_sessions == 2
        assert stats.total_nodes == 1
        assert stats.average_nodes_per_session == 0.5
        assert stats.oldest_session <= stats.newest_session


class TestExpiry:
    """Test idle session cleanup."""

    def test_expired_sessions_are_removed(self):
        manager = SessionManager()
        manager.create_session("old")
        manager.create_session("fresh")
        age_session(manager, "old")

        removed = manager.cleanup_expired_sessions(max_age_ms=60 * 60 * 1000)

        assert removed == 1
        assert [info.session_id for info in manager.list_sessions()] == ["fresh"]

    def test_excluded_sessions_survive(self):
        manager = SessionManager()
        manager.create_session("old")
        age_session(manager, "old")

        removed = manager.cleanup_expired_sessions(max_age_ms=1000, exclude={"old"})

        assert removed == 0
        assert manager.has_session("old")


class TestPersistence:
    """Test saving and loading through an adapter."""

    @pytest.mark.asyncio
    async def test_save_without_adapter(self):
        manager = SessionManager()
        manager.create_session("s1")

        with pytest.raises(PersistenceError):
            await manager.save_session("s1")

    @pytest.mark.asyncio
    async def test_save_and_load(self):
        adapter = InMemoryPersistenceAdapter()
        manager = SessionManager(adapter)
        manager.create_session("s1")
        manager.set_session_tree("s1", tree_with_root())

        await manager.save_session("s1")
        manager.delete_session("s1")
        tree = await manager.load_session("s1")

        assert "root" in tree.nodes
        assert manager.has_session("s1")
        assert "root" in manager.get_session_tree("s1").nodes

    @pytest.mark.asyncio
    async def test_save_unknown_session(self):
        manager = SessionManager(InMemoryPersistenceAdapter())

        with pytest.raises(SessionNotFoundError):
            await manager.save_session("missing")

    @pytest.mark.asyncio
    async def test_load_missing(self):
        manager = SessionManager(InMemoryPersistenceAdapter())

        assert await manager.load_session("missing") is None
        assert not manager.has_session("missing")

    @pytest.mark.asyncio
    async def test_inconsistent_stored_tree(self):
        """Test a stored tree that breaks an invariant is refused and not registered."""
        adapter = InMemoryPersistenceAdapter()
        broken = ConversationTree(
            nodes={"orphan": TopicNode(id="orphan", topic="x", parent_topic="gone", depth=2)},
            session_id="broken",
        )
        await adapter.save("broken", broken)
        manager = SessionManager(adapter)

        with pytest.raises(PersistenceError):
            await manager.load_session("broken")
        assert not manager.has_session("broken")

    @pytest.mark.asyncio
    async def test_adapter_failure_propagates(self):
        adapter = Mock()
        adapter.load = AsyncMock(side_effect=PersistenceError("disk gone", "s1"))
        manager = SessionManager(adapter)

        with pytest.raises(PersistenceError):
            await manager.fetch_session("s1")

    def test_dispose_closes_adapter(self):
        adapter = Mock()
        manager = SessionManager(adapter)
        manager.create_session("s1")

        manager.dispose()

        assert manager.list_sessions() == []
        adapter.close.assert_called_once()
