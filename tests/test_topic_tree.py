"""
Tests for the topic tree manager.
"""

import pytest

from grading_entities import QAPair, TopicMetadata, TopicNode
from grading_errors import NodeNotFoundError, TreeIntegrityError, ValidationError
from topic_tree import TopicTreeManager

from test_utils.pydantic_graph_helpers import make_node


def child_ids(manager, node_id):
    return [node.id for node in manager.get_children(node_id)]


@pytest.fixture
def manager():
    manager = TopicTreeManager("tree")
    manager.add_node(make_node("a"))
    manager.add_node(make_node("b", parent="a"))
    manager.add_node(make_node("c", parent="a"))
    manager.add_node(make_node("d", parent="b"))
    return manager


class TestAddNode:
    """Test node insertion."""

    def test_root_and_children(self, manager):
        assert manager.get_node("a").depth == 1
        assert manager.get_node("d").depth == 3
        assert child_ids(manager, "a") == ["b", "c"]
        assert [node.id for node in manager.get_root_nodes()] == ["a"]
        manager.validate()

    def test_depth_is_derived_from_parent(self):
        manager = TopicTreeManager("derived")
        manager.add_node(make_node("a"))

        manager.add_node(make_node("b", parent="a", depth=9))

        assert manager.get_node("b").depth == 2

    def test_input_node_is_copied(self):
        manager = TopicTreeManager("copied")
        node = make_node("a")

        manager.add_node(node)
        node.topic = "changed"

        assert manager.get_node("a").topic == "topic a"

    def test_duplicate_id(self, manager):
        with pytest.raises(ValidationError):
            manager.add_node(make_node("a"))

    def test_missing_parent(self, manager):
        """Test orphans are refused and the tree is unchanged."""
        with pytest.raises(TreeIntegrityError):
            manager.add_node(make_node("orphan", parent="missing"))

        assert manager.node_count == 4
        assert not manager.has_node("orphan")

    @pytest.mark.parametrize("bad_node", [
        TopicNode(id="bad id", topic="topic"),
        TopicNode(id="ok", topic="   "),
        TopicNode(id="ok", topic="topic", children=["x"]),
    ])
    def test_malformed_nodes(self, manager, bad_node):
        with pytest.raises(ValidationError):
            manager.add_node(bad_node)
        assert manager.node_count == 4

    def test_max_depth(self):
        manager = TopicTreeManager("deep", max_depth=2)
        manager.add_node(make_node("a"))
        manager.add_node(make_node("b", parent="a"))

        with pytest.raises(TreeIntegrityError):
            manager.add_node(make_node("c", parent="b"))
        assert manager.node_count == 2

    def test_max_nodes(self):
        manager = TopicTreeManager("small", max_nodes=2)
        manager.add_node(make_node("a"))
        manager.add_node(make_node("b"))

        with pytest.raises(TreeIntegrityError):
            manager.add_node(make_node("c"))
        assert manager.node_count == 2


class TestUpdateNode:
    """Test field updates and re-parenting."""

    def test_update_fields(self, manager):
        manager.update_node("b", {"topic": "renamed", "score": 80})

        node = manager.get_node("b")
        assert node.topic == "renamed"
        assert node.score == 80

    def test_metadata_dict_is_merged(self, manager):
        manager.add_qa_pair_to_node("b", QAPair(question="q", answer="a"))

        manager.update_node("b", {"metadata": {"visit_count": 2}})

        metadata = manager.get_node("b").metadata
        assert metadata.visit_count == 2
        assert len(metadata.qa_pairs) == 1

    def test_metadata_model_replaces(self, manager):
        manager.update_node("b", {"metadata": TopicMetadata(is_exhausted=True)})

        assert manager.get_node("b").metadata.is_exhausted

    def test_invalid_updates(self, manager):
        with pytest.raises(ValidationError):
            manager.update_node("b", {"children": []})
        with pytest.raises(ValidationError):
            manager.update_node("b", {"score": 101})
        with pytest.raises(ValidationError):
            manager.update_node("b", {"metadata": "nope"})
        with pytest.raises(NodeNotFoundError):
            manager.update_node("missing", {"topic": "x"})

    def test_move_subtree(self, manager):
        """Test moving a node carries its subtree and recomputes depths."""
        manager.update_node("b", {"parent_topic": "c"})

        assert child_ids(manager, "a") == ["c"]
        assert child_ids(manager, "c") == ["b"]
        assert manager.get_node("b").depth == 3
        assert manager.get_node("d").depth == 4
        manager.validate()

    def test_move_to_root(self, manager):
        manager.update_node("b", {"parent_topic": None})

        assert [node.id for node in manager.get_root_nodes()] == ["a", "b"]
        assert manager.get_node("b").depth == 1
        assert manager.get_node("d").depth == 2
        manager.validate()

    @pytest.mark.parametrize("node_id,new_parent", [("a", "d"), ("b", "b"), ("b", "d")])
    def test_cycles_are_refused(self, manager, node_id, new_parent):
        """Test moves under a node's own subtree leave the tree unchanged."""
        before = manager.get_tree()

        with pytest.raises(TreeIntegrityError):
            manager.update_node(node_id, {"parent_topic": new_parent})

        after = manager.get_tree()
        assert after.root_nodes == before.root_nodes
        assert {k: v.parent_topic for k, v in after.nodes.items()} == \
            {k: v.parent_topic for k, v in before.nodes.items()}

    def test_move_past_max_depth_rolls_back(self):
        manager = TopicTreeManager("limit", max_depth=3)
        manager.add_node(make_node("a"))
        manager.add_node(make_node("b", parent="a"))
        manager.add_node(make_node("c", parent="a"))
        manager.add_node(make_node("d", parent="b"))

        with pytest.raises(TreeIntegrityError):
            manager.update_node("c", {"parent_topic": "d"})

        assert manager.get_node("c").parent_topic == "a"
        assert manager.get_node("c").depth == 2

    def test_move_reroutes_current_path(self, manager):
        manager.set_current_node("d")

        manager.update_node("b", {"parent_topic": "c"})

        assert manager.get_current_path() == ["a", "c", "b", "d"]


class TestRemoveNode:
    """Test node removal."""

    def test_children_move_to_parent(self, manager):
        manager.remove_node("b")

        assert not manager.has_node("b")
        assert child_ids(manager, "a") == ["d", "c"]
        assert manager.get_node("d").depth == 2
        manager.validate()

    def test_removing_root_promotes_children(self, manager):
        manager.add_node(make_node("e"))

        manager.remove_node("a")

        assert [node.id for node in manager.get_root_nodes()] == ["b", "c", "e"]
        assert manager.get_node("d").depth == 2
        manager.validate()

    def test_current_path_stays_valid(self, manager):
        manager.set_current_node("d")

        manager.remove_node("b")

        assert manager.get_current_path() == ["a", "d"]
        assert manager.get_current_topic().id == "d"

    def test_unknown_node(self, manager):
        with pytest.raises(NodeNotFoundError):
            manager.remove_node("missing")


class TestTransactions:
    """Test atomic mutation groups."""

    def test_exception_rolls_back(self, manager):
        with pytest.raises(RuntimeError):
            with manager.transaction():
                manager.add_node(make_node("e"))
                manager.update_node("b", {"topic": "changed"})
                raise RuntimeError("abort")

        assert not manager.has_node("e")
        assert manager.get_node("b").topic == "topic b"

    def test_nested_transactions_join_outer(self, manager):
        with manager.transaction():
            manager.add_node(make_node("e"))
            with manager.transaction():
                manager.add_node(make_node("f", parent="e"))

        assert manager.get_node("f").depth == 2

    def test_invalid_current_path_is_refused(self, manager):
        with pytest.raises(TreeIntegrityError):
            manager.set_current_path(["b", "d"])

        assert manager.get_current_path() == []


class TestQueries:
    """Test read operations and exploration bookkeeping."""

    def test_set_current_node(self, manager):
        manager.set_current_node("d")

        assert manager.get_current_path() == ["a", "b", "d"]
        assert manager.get_current_topic().id == "d"

    def test_calculate_depth(self, manager):
        assert manager.calculate_depth("d") == 3
        with pytest.raises(NodeNotFoundError):
            manager.calculate_depth("missing")

    def test_mark_visited_with_exhaustion(self, manager):
        node = manager.mark_node_visited("c", exhaust_after=2)
        assert not node.metadata.is_exhausted

        node = manager.mark_node_visited("c", exhaust_after=2)
        assert node.metadata.visit_count == 2
        assert node.metadata.is_exhausted

    def test_stats(self, manager):
        stats = manager.get_stats()

        assert stats.total_nodes == 4
        assert stats.root_nodes == 1
        assert stats.leaf_nodes == 2
        assert stats.max_depth == 3

    def test_get_tree_is_a_copy(self, manager):
        tree = manager.get_tree()
        tree.nodes["a"].children.clear()

        assert child_ids(manager, "a") == ["b", "c"]

    def test_clear(self, manager):
        manager.clear()

        assert manager.node_count == 0
        assert manager.session_id == "tree"
        assert manager.get_current_topic() is None
