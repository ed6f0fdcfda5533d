"""
Tests for the conversation tree entity models.
"""

import pytest
from datetime import datetime, timedelta

from pydantic import ValidationError as PydanticValidationError

from grading_entities import (
    ConversationTree,
    QAPair,
    ScoringContext,
    TopicNode,
    TopicRelationship,
    RelationshipType,
)


class TestQAPair:
    """Test QAPair model."""

    def test_defaults(self):
        qa = QAPair(question="What is AI?", answer="Machines that think.")

        assert qa.metadata is None
        assert isinstance(qa.timestamp, datetime)

    def test_is_immutable(self):
        """Test Q&A pairs cannot be modified after creation."""
        qa = QAPair(question="What is AI?", answer="Machines that think.")

        with pytest.raises(PydanticValidationError):
            qa.answer = "Something else"


class TestTopicNode:
    """Test TopicNode model and helpers."""

    @pytest.fixture
    def node(self):
        return TopicNode(id="node_1", topic="machine learning")

    def test_defaults(self, node):
        assert node.is_root()
        assert node.is_leaf()
        assert node.is_unvisited()
        assert not node.has_score()
        assert node.depth == 1

    def test_mark_as_visited(self, node):
        """Test visiting updates bookkeeping without exhausting."""
        node.mark_as_visited()
        node.mark_as_visited()

        assert node.metadata.visit_count == 2
        assert node.metadata.last_visited is not None
        assert not node.metadata.is_exhausted
        assert not node.is_unvisited()

    def test_mark_as_exhausted(self, node):
        node.mark_as_exhausted()

        assert node.metadata.is_exhausted
        assert node.metadata.visit_count == 0
        assert not node.is_unvisited()

    def test_score_helpers(self, node):
        node.update_score(72.5)
        assert node.has_score()

        node.clear_score()
        assert node.score is None

    def test_score_range_enforced_on_assignment(self, node):
        """Test out-of-range scores are rejected by the model."""
        with pytest.raises(PydanticValidationError):
            node.update_score(150)

    def test_add_qa_pair_touches(self, node):
        before = node.updated_at
        node.updated_at = before - timedelta(seconds=5)

        node.add_qa_pair(QAPair(question="q", answer="a"))

        assert len(node.metadata.qa_pairs) == 1
        assert node.updated_at > before - timedelta(seconds=5)

    def test_snapshot_is_independent(self, node):
        """Test snapshots share no state with the original."""
        copy = node.snapshot()
        copy.children.append("other")
        copy.metadata.visit_count = 3

        assert node.children == []
        assert node.metadata.visit_count == 0


class TestConversationTree:
    """Test ConversationTree model."""

    def test_all_qa_pairs_sorted_by_timestamp(self):
        now = datetime.now()
        late = QAPair(question="late", answer="a", timestamp=now)
        early = QAPair(question="early", answer="a", timestamp=now - timedelta(minutes=1))
        first = TopicNode(id="a", topic="alpha")
        second = TopicNode(id="b", topic="beta")
        first.add_qa_pair(late)
        second.add_qa_pair(early)
        tree = ConversationTree(nodes={"a": first, "b": second}, root_nodes=["a", "b"])

        assert [qa.question for qa in tree.all_qa_pairs()] == ["early", "late"]

    def test_snapshot_is_deep(self):
        tree = ConversationTree(nodes={"a": TopicNode(id="a", topic="alpha")}, root_nodes=["a"])

        copy = tree.snapshot()
        copy.nodes["a"].topic = "changed"
        copy.root_nodes.append("b")

        assert tree.nodes["a"].topic == "alpha"
        assert tree.root_nodes == ["a"]


class TestTransientModels:
    """Test relationship and scoring context models."""

    def test_relationship_confidence_range(self):
        with pytest.raises(PydanticValidationError):
            TopicRelationship(type=RelationshipType.NEW_ROOT, confidence=1.5)

    def test_scoring_context_is_frozen(self):
        context = ScoringContext(current_topic=TopicNode(id="a", topic="alpha"), topic_depth=1)

        with pytest.raises(PydanticValidationError):
            context.topic_depth = 2
