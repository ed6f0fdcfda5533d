"""
Conversation grading system.

``ConversationGradingSystem`` orchestrates one conversation: it validates
incoming Q&A pairs, asks the topic analyzer where they belong, scores them
through the scoring engine and grows the topic tree accordingly.

Mutating calls are serialised per system with an ``asyncio.Lock``. Topic
extraction, classification and scoring all run before the tree is touched;
the resulting mutations are then applied in one synchronous transaction, so
readers only ever see the tree before or after a call, never in between.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional
from uuid import uuid4

import logfire

from grading_config import get_config
from grading_entities import (
    ConversationTree,
    CurrentPosition,
    GradingStats,
    QAPair,
    RelationshipType,
    ScoringContext,
    TopicMetadata,
    TopicNode,
    TopicRelationship,
)
from grading_errors import ClassificationError, NodeNotFoundError, ValidationError, safe_error_message
from grading_validation import (
    sanitize_qa_pair,
    validate_node_id,
    validate_score,
    validate_topic_name,
    validate_tree_depth,
    validate_tree_size,
)
from scoring import ScoringEngine, ScoringStrategy
from topic_analyzer import BaseTopicAnalyzer, TopicAnalyzer
from topic_tree import TopicTreeManager


logger = logging.getLogger(__name__)


def generate_node_id() -> str:
    return f"node_{uuid4().hex}"


class ConversationGradingSystem:
    """Grades one conversation and maintains its topic tree."""

    def __init__(
        self,
        session_id: str = "default",
        topic_analyzer: Optional[BaseTopicAnalyzer] = None,
        scoring_strategy: Optional[ScoringStrategy] = None,
        scoring_engine: Optional[ScoringEngine] = None,
        max_depth: Optional[int] = None,
        max_nodes: Optional[int] = None,
        exhaust_after_visits: Optional[int] = None,
    ):
        self._tree_manager = TopicTreeManager(session_id, max_depth=max_depth, max_nodes=max_nodes)
        self._topic_analyzer: BaseTopicAnalyzer = TopicAnalyzer()
        if topic_analyzer is not None:
            self.set_topic_analyzer(topic_analyzer)
        self._scoring_engine = scoring_engine or ScoringEngine()
        if scoring_strategy is not None:
            self._scoring_engine.set_strategy(scoring_strategy)
        if exhaust_after_visits is None:
            exhaust_after_visits = get_config().session.exhaust_after_visits
        self.exhaust_after_visits = exhaust_after_visits
        self._lock = asyncio.Lock()

    @property
    def session_id(self) -> str:
        return self._tree_manager.session_id

    @property
    def tree_manager(self) -> TopicTreeManager:
        return self._tree_manager

    @property
    def scoring_engine(self) -> ScoringEngine:
        return self._scoring_engine

    @property
    def topic_analyzer(self) -> BaseTopicAnalyzer:
        return self._topic_analyzer

    def set_scoring_strategy(self, strategy: ScoringStrategy) -> None:
        self._scoring_engine.set_strategy(strategy)

    def set_topic_analyzer(self, analyzer: BaseTopicAnalyzer) -> None:
        """Swap the topic analyzer.

        Raises:
            ValidationError: If ``analyzer`` lacks the analyzer methods
        """
        for method in ("extract_topics", "determine_relationship"):
            if not callable(getattr(analyzer, method, None)):
                raise ValidationError(f"Topic analyzer must implement {method}", "analyzer", analyzer)
        self._topic_analyzer = analyzer

    async def _extract_primary_topic(self, qa_pair: QAPair) -> str:
        try:
            topics = await self._topic_analyzer.extract_topics(qa_pair)
        except ClassificationError:
            raise
        except Exception as e:
            logger.warning(safe_error_message(e, "Topic extraction failed"))
            raise ClassificationError(f"Topic extraction failed: {e}", e) from e

        if not topics:
            raise ClassificationError("No topics extracted from Q&A pair")
        primary = topics[0]
        try:
            validate_topic_name(primary)
        except ValidationError as e:
            raise ClassificationError(f"Analyzer returned an invalid topic: {e}", e) from e
        return primary

    def _classify(self, topic: str, existing_nodes: List[TopicNode]) -> TopicRelationship:
        try:
            relationship = self._topic_analyzer.determine_relationship(topic, existing_nodes)
        except ClassificationError:
            raise
        except Exception as e:
            logger.warning(safe_error_message(e, "Relationship classification failed"))
            raise ClassificationError(f"Relationship classification failed: {e}", e) from e

        known_ids = {node.id for node in existing_nodes}
        if relationship.type != RelationshipType.NEW_ROOT and relationship.parent_node_id not in known_ids:
            raise ClassificationError(
                f"Relationship {relationship.type.value} targets unknown node {relationship.parent_node_id}"
            )
        return relationship

    async def add_qa_pair(self, qa_pair: QAPair, score: Optional[float] = None) -> str:
        """
        Place a Q&A pair in the topic tree and score it.

        Args:
            qa_pair: The question/answer turn
            score: Explicit score; when omitted the scoring engine computes one

        Returns:
            Id of the node that received the pair (new or existing)

        Raises:
            ValidationError: Malformed pair or score; the tree is untouched
            ClassificationError: The analyzer failed; the tree is untouched
            TreeIntegrityError: The placement would break a tree limit
        """
        validate_score(score)
        sanitized = sanitize_qa_pair(qa_pair)

        async with self._lock:
            with logfire.span('grading_system.add_qa_pair', session_id=self.session_id) as span:
                snapshot = self._tree_manager.get_tree()
                existing_nodes = list(snapshot.nodes.values())

                primary_topic = await self._extract_primary_topic(sanitized)
                relationship = self._classify(primary_topic, existing_nodes)

                parent_id = (
                    None if relationship.type == RelationshipType.NEW_ROOT
                    else relationship.parent_node_id
                )
                parent = snapshot.nodes.get(parent_id) if parent_id is not None else None

                if parent is not None and parent.topic == primary_topic:
                    target = parent.model_copy(deep=True)
                    is_new = False
                else:
                    validate_tree_size(len(snapshot.nodes) + 1, self._tree_manager.max_nodes)
                    depth = parent.depth + 1 if parent is not None else 1
                    validate_tree_depth(depth, self._tree_manager.max_depth)
                    target = TopicNode(
                        id=generate_node_id(),
                        topic=primary_topic,
                        parent_topic=parent_id,
                        depth=depth,
                    )
                    is_new = True
                target.metadata.qa_pairs.append(sanitized)

                if score is None:
                    context = ScoringContext(
                        current_topic=target.snapshot(),
                        conversation_history=tuple(snapshot.all_qa_pairs()) + (sanitized,),
                        topic_depth=target.depth,
                    )
                    score = await self._scoring_engine.calculate_score(sanitized, context)

                node_id = self._apply(target, sanitized, float(score), is_new)

                span.set_attribute('node_id', node_id)
                span.set_attribute('relationship', relationship.type.value)
                span.set_attribute('score', score)
                logfire.info('Q&A pair graded',
                             node_id=node_id,
                             topic=primary_topic,
                             relationship=relationship.type.value,
                             confidence=relationship.confidence,
                             related_node_id=relationship.related_node_id,
                             created=is_new,
                             score=score)
                return node_id

    def _apply(self, target: TopicNode, qa_pair: QAPair, score: float, is_new: bool) -> str:
        with self._tree_manager.transaction():
            if is_new:
                node = target.model_copy(update={"score": score}, deep=True)
                self._tree_manager.add_node(node)
            else:
                self._tree_manager.add_qa_pair_to_node(target.id, qa_pair)
                self._tree_manager.update_node(target.id, {"score": score})
            self._tree_manager.set_current_node(target.id)
        return target.id

    def get_topic_tree(self) -> ConversationTree:
        """A deep-copied snapshot of the tree."""
        return self._tree_manager.get_tree()

    def get_node(self, node_id: str) -> Optional[TopicNode]:
        return self._tree_manager.get_node(node_id)

    def get_all_nodes(self) -> List[TopicNode]:
        return self._tree_manager.get_all_nodes()

    def get_depth_from_root(self, node_id: str) -> int:
        return self._tree_manager.calculate_depth(node_id)

    def get_deepest_unvisited_branch(self) -> Optional[TopicNode]:
        return self._tree_manager.find_deepest_unvisited_branch()

    def get_current_topic(self) -> Optional[TopicNode]:
        return self._tree_manager.get_current_topic()

    def get_current_path(self) -> List[str]:
        return self._tree_manager.get_current_path()

    def get_current_position(self) -> CurrentPosition:
        return self._tree_manager.get_current_position()

    def mark_topic_as_visited(self, node_id: str) -> None:
        """Count a visit to ``node_id``.

        Visiting only exhausts a topic when ``exhaust_after_visits`` is set.
        """
        node = self._tree_manager.mark_node_visited(node_id, self.exhaust_after_visits)
        logfire.info('Topic visited',
                     node_id=node_id,
                     visit_count=node.metadata.visit_count,
                     exhausted=node.metadata.is_exhausted)

    def mark_topic_as_exhausted(self, node_id: str) -> None:
        self._tree_manager.mark_node_exhausted(node_id)
        logfire.info('Topic exhausted', node_id=node_id)

    def restore_exploration_state(self, node_id: str, metadata: TopicMetadata) -> None:
        """Merge visit bookkeeping from a persisted node into ``node_id``.

        Several persisted nodes can replay into the same node, so counts take
        the maximum and the exhausted flag is sticky.
        """
        node = self._tree_manager.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        current = node.metadata
        visited_times = [t for t in (current.last_visited, metadata.last_visited) if t is not None]
        self._tree_manager.update_node(node_id, {
            "metadata": {
                "visit_count": max(current.visit_count, metadata.visit_count),
                "last_visited": max(visited_times) if visited_times else None,
                "is_exhausted": current.is_exhausted or metadata.is_exhausted,
            }
        })

    def _require_node(self, node_id: str) -> None:
        validate_node_id(node_id)
        if not self._tree_manager.has_node(node_id):
            raise NodeNotFoundError(node_id)

    def get_ancestors(self, node_id: str) -> List[TopicNode]:
        self._require_node(node_id)
        return self._tree_manager.navigator().get_ancestors(node_id)

    def get_descendants(self, node_id: str) -> List[TopicNode]:
        self._require_node(node_id)
        return self._tree_manager.navigator().get_descendants(node_id)

    def get_siblings(self, node_id: str) -> List[TopicNode]:
        self._require_node(node_id)
        return self._tree_manager.navigator().get_siblings(node_id)

    def get_children(self, node_id: str) -> List[TopicNode]:
        return self._tree_manager.get_children(node_id)

    def get_parent(self, node_id: str) -> Optional[TopicNode]:
        return self._tree_manager.get_parent(node_id)

    def get_root_nodes(self) -> List[TopicNode]:
        return self._tree_manager.get_root_nodes()

    def get_leaf_nodes(self) -> List[TopicNode]:
        return self._tree_manager.navigator().get_leaf_nodes()

    def get_unvisited_branches(self) -> List[TopicNode]:
        return self._tree_manager.navigator().get_unvisited_branches()

    def get_nodes_at_depth(self, depth: int) -> List[TopicNode]:
        return self._tree_manager.navigator().get_nodes_at_depth(depth)

    def find_path(self, from_id: str, to_id: str) -> List[str]:
        return self._tree_manager.navigator().find_path(from_id, to_id)

    def is_ancestor(self, ancestor_id: str, node_id: str) -> bool:
        return self._tree_manager.navigator().is_ancestor(ancestor_id, node_id)

    def is_descendant(self, descendant_id: str, node_id: str) -> bool:
        return self._tree_manager.navigator().is_descendant(descendant_id, node_id)

    def get_stats(self) -> GradingStats:
        tree = self._tree_manager.get_tree()
        tree_stats = self._tree_manager.get_stats()
        nodes = list(tree.nodes.values())
        scores = [node.score for node in nodes if node.score is not None]

        return GradingStats(
            **tree_stats.model_dump(),
            total_qa_pairs=sum(len(node.metadata.qa_pairs) for node in nodes),
            average_score=sum(scores) / len(scores) if scores else None,
            visited_nodes=sum(1 for node in nodes if node.metadata.visit_count > 0),
            exhausted_nodes=sum(1 for node in nodes if node.metadata.is_exhausted),
            scoring_failures=self._scoring_engine.failure_count,
        )

    async def clear(self) -> None:
        """Reset the tree to empty once any in-flight mutation finishes."""
        async with self._lock:
            self._tree_manager.clear()
            logfire.info('Conversation tree cleared', session_id=self.session_id)

