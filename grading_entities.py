"""
Pydantic models for the conversation topic tree.

These models describe the Q&A evidence collected during a conversation, the
topic nodes that organise it, the per-session tree, and the transient
results (relationships, scoring contexts, statistics) exchanged between the
analyzer, the tree manager and the scoring engine.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class QAPair(BaseModel):
    """One question/answer turn of a conversation.

    Instances are immutable. Content rules (non-empty, length limits) are
    enforced where pairs enter the grading system so that rejection is
    reported as a grading ``ValidationError``.
    """

    model_config = ConfigDict(frozen=True)

    question: str = Field(..., description="The question that was asked")
    answer: str = Field(..., description="The answer that was given")
    timestamp: datetime = Field(default_factory=datetime.now, description="When the turn happened")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Free-form annotations")


class TopicMetadata(BaseModel):
    """Evidence and exploration state attached to a topic node."""

    model_config = ConfigDict(validate_assignment=True)

    qa_pairs: List[QAPair] = Field(default_factory=list)
    visit_count: int = Field(default=0, ge=0)
    last_visited: Optional[datetime] = None
    is_exhausted: bool = False


class TopicNode(BaseModel):
    """A vertex of the conversation tree.

    ``parent_topic`` is a back-reference by id; the parent's ``children``
    list is the authoritative ownership link.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., description="Unique, stable node identifier")
    topic: str = Field(..., description="Short topic label")
    parent_topic: Optional[str] = Field(default=None, description="Parent node id, None for roots")
    children: List[str] = Field(default_factory=list, description="Ordered child node ids")
    depth: int = Field(default=1, ge=1, description="1 for roots, parent depth + 1 otherwise")
    score: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    metadata: TopicMetadata = Field(default_factory=TopicMetadata)

    def touch(self) -> None:
        """Update the updated_at timestamp to current time."""
        self.updated_at = datetime.now()

    def add_qa_pair(self, qa_pair: QAPair) -> None:
        self.metadata.qa_pairs.append(qa_pair)
        self.touch()

    def mark_as_visited(self) -> None:
        self.metadata.visit_count += 1
        self.metadata.last_visited = datetime.now()
        self.touch()

    def mark_as_exhausted(self) -> None:
        """Mark this node as needing no further questions."""
        self.metadata.is_exhausted = True
        self.touch()

    def update_score(self, score: float) -> None:
        self.score = score
        self.touch()

    def clear_score(self) -> None:
        self.score = None
        self.touch()

    def has_score(self) -> bool:
        return self.score is not None

    def is_leaf(self) -> bool:
        return not self.children

    def is_root(self) -> bool:
        return self.parent_topic is None

    def is_unvisited(self) -> bool:
        """A node is a navigation candidate until visited or exhausted."""
        return self.metadata.visit_count == 0 and not self.metadata.is_exhausted

    def snapshot(self) -> TopicNode:
        """Return a deep copy that shares no state with this node."""
        return self.model_copy(deep=True)


class ConversationTree(BaseModel):
    """The per-session forest of topic nodes."""

    nodes: Dict[str, TopicNode] = Field(default_factory=dict)
    root_nodes: List[str] = Field(default_factory=list)
    current_path: List[str] = Field(default_factory=list)
    session_id: str = "default"
    created_at: datetime = Field(default_factory=datetime.now)

    def snapshot(self) -> ConversationTree:
        """Return a deep copy suitable for read-only queries."""
        return self.model_copy(deep=True)

    def all_qa_pairs(self) -> List[QAPair]:
        """All Q&A pairs in the tree ordered by timestamp."""
        pairs = [qa for node in self.nodes.values() for qa in node.metadata.qa_pairs]
        return sorted(pairs, key=lambda qa: qa.timestamp)


class RelationshipType(str, Enum):
    """How a new topic relates to the existing tree."""
    NEW_ROOT = "new_root"
    CHILD_OF = "child_of"
    SIBLING_OF = "sibling_of"
    CONTINUATION = "continuation"


class TopicRelationship(BaseModel):
    """Classification result for a new topic label."""

    type: RelationshipType
    parent_node_id: Optional[str] = None
    related_node_id: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)


class ScoringContext(BaseModel):
    """Read-only inputs handed to a scoring strategy.

    Everything in here is a snapshot; strategies never see live tree state.
    """

    model_config = ConfigDict(frozen=True)

    current_topic: TopicNode
    conversation_history: Tuple[QAPair, ...] = ()
    topic_depth: int = Field(..., ge=1)


class SessionInfo(BaseModel):
    """Lifecycle record of one conversation session."""

    session_id: str
    created_at: datetime = Field(default_factory=datetime.now)
    last_accessed_at: datetime = Field(default_factory=datetime.now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        self.last_accessed_at = datetime.now()


class TreeStats(BaseModel):
    """Structural statistics of a tree."""

    total_nodes: int = 0
    root_nodes: int = 0
    leaf_nodes: int = 0
    max_depth: int = 0


class GradingStats(TreeStats):
    """Tree statistics plus evidence and scoring totals."""

    total_qa_pairs: int = 0
    average_score: Optional[float] = None
    visited_nodes: int = 0
    exhausted_nodes: int = 0
    scoring_failures: int = 0


class CurrentPosition(BaseModel):
    """Where the conversation currently stands in the tree."""

    current_node: Optional[TopicNode] = None
    depth: int = 0
    path_from_root: List[str] = Field(default_factory=list)
    available_children: List[TopicNode] = Field(default_factory=list)
    siblings: List[TopicNode] = Field(default_factory=list)


class MemoryStats(BaseModel):
    """Aggregate footprint of all registered sessions."""

    total_sessions: int = 0
    total_nodes: int = 0
    average_nodes_per_session: float = 0.0
    oldest_session: Optional[datetime] = None
    newest_session: Optional[datetime] = None
