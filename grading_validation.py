"""
Input validation, sanitisation and tree integrity checks.

Every check raises a grading ``ValidationError`` (caller mistakes) or a
``TreeIntegrityError`` (structural invariant violations) so that callers can
tell the two apart.
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Optional, Set

from grading_entities import ConversationTree, QAPair, ScoringContext, TopicNode
from grading_errors import TreeIntegrityError, ValidationError


MAX_QUESTION_LENGTH = 10000
MAX_ANSWER_LENGTH = 50000
MAX_TOPIC_LENGTH = 500
MAX_ID_LENGTH = 255
MIN_SCORE = 0.0
MAX_SCORE = 100.0

_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def _validate_text(value: Any, field: str, max_length: int) -> None:
    label = field.capitalize()
    if value is None:
        raise ValidationError(f"{label} is required", field, value)
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string", field, value)
    if not value.strip():
        raise ValidationError(f"{label} cannot be empty", field, value)
    if len(value) > max_length:
        raise ValidationError(
            f"{label} exceeds maximum length of {max_length} characters", field, value
        )


def validate_qa_pair(qa_pair: Any) -> None:
    """Validate Q&A pair structure and content."""
    if not isinstance(qa_pair, QAPair):
        raise ValidationError("Q&A pair must be a QAPair instance", "qaPair", qa_pair)
    _validate_text(qa_pair.question, "question", MAX_QUESTION_LENGTH)
    _validate_text(qa_pair.answer, "answer", MAX_ANSWER_LENGTH)


def _validate_identifier(value: Any, field: str, label: str) -> None:
    if not value:
        raise ValidationError(f"{label} is required", field, value)
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string", field, value)
    if not value.strip():
        raise ValidationError(f"{label} cannot be empty or whitespace only", field, value)
    if len(value) > MAX_ID_LENGTH:
        raise ValidationError(
            f"{label} exceeds maximum length of {MAX_ID_LENGTH} characters", field, value
        )
    if not _ID_PATTERN.match(value):
        raise ValidationError(
            f"{label} can only contain alphanumeric characters, underscores, and hyphens",
            field,
            value,
        )


def validate_node_id(node_id: Any) -> None:
    _validate_identifier(node_id, "nodeId", "Node ID")


def validate_session_id(session_id: Any) -> None:
    _validate_identifier(session_id, "sessionId", "Session ID")


def validate_topic_name(topic: Any) -> None:
    if not topic:
        raise ValidationError("Topic name is required", "topic", topic)
    if not isinstance(topic, str):
        raise ValidationError("Topic name must be a string", "topic", topic)
    if not topic.strip():
        raise ValidationError("Topic name cannot be empty or whitespace only", "topic", topic)
    if len(topic) > MAX_TOPIC_LENGTH:
        raise ValidationError(
            f"Topic name exceeds maximum length of {MAX_TOPIC_LENGTH} characters", "topic", topic
        )


def validate_score(score: Any) -> None:
    """Validate a score; ``None`` means unscored and is accepted."""
    if score is None:
        return
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise ValidationError("Score must be a number", "score", score)
    if math.isnan(score) or math.isinf(score):
        raise ValidationError("Score must be a finite number", "score", score)
    if score < MIN_SCORE or score > MAX_SCORE:
        raise ValidationError(
            f"Score must be between {MIN_SCORE:g} and {MAX_SCORE:g}", "score", score
        )


def validate_tree_depth(depth: int, max_depth: int) -> None:
    if depth > max_depth:
        raise TreeIntegrityError(
            f"Tree depth {depth} exceeds maximum allowed depth of {max_depth}"
        )


def validate_tree_size(node_count: int, max_nodes: int) -> None:
    if node_count > max_nodes:
        raise TreeIntegrityError(
            f"Tree size {node_count} exceeds maximum allowed nodes of {max_nodes}"
        )


def validate_scoring_context(context: Any) -> None:
    if not isinstance(context, ScoringContext):
        raise ValidationError("Scoring context must be a ScoringContext", "context", context)


def sanitize_string(value: str) -> str:
    """Remove control characters (except newlines and tabs) and trim."""
    if not isinstance(value, str):
        return ""
    return _CONTROL_CHARS.sub("", value).strip()


def sanitize_qa_pair(qa_pair: QAPair) -> QAPair:
    """Validate a Q&A pair and return a sanitised copy."""
    validate_qa_pair(qa_pair)
    sanitized = qa_pair.model_copy(
        update={
            "question": sanitize_string(qa_pair.question),
            "answer": sanitize_string(qa_pair.answer),
            "metadata": dict(qa_pair.metadata) if qa_pair.metadata is not None else None,
        }
    )
    # Control-character-only text is empty once sanitised
    validate_qa_pair(sanitized)
    return sanitized


def _compute_depth(node_id: str, nodes: Dict[str, TopicNode]) -> int:
    depth = 1
    seen: Set[str] = {node_id}
    current = nodes[node_id]
    while current.parent_topic is not None:
        parent_id = current.parent_topic
        if parent_id in seen:
            raise TreeIntegrityError(
                f"Circular reference detected starting from node {node_id}", node_id
            )
        if parent_id not in nodes:
            raise TreeIntegrityError(
                f"Node {current.id} references non-existent parent {parent_id}", current.id
            )
        seen.add(parent_id)
        current = nodes[parent_id]
        depth += 1
    return depth


def validate_tree_integrity(
    tree: ConversationTree,
    max_depth: Optional[int] = None,
    max_nodes: Optional[int] = None,
) -> None:
    """Check every structural invariant of a conversation tree.

    Raises:
        TreeIntegrityError: On the first violation found
    """
    nodes = tree.nodes

    if max_nodes is not None:
        validate_tree_size(len(nodes), max_nodes)

    if len(set(tree.root_nodes)) != len(tree.root_nodes):
        raise TreeIntegrityError("Root node list contains duplicates")

    root_set = set(tree.root_nodes)
    for root_id in tree.root_nodes:
        root = nodes.get(root_id)
        if root is None:
            raise TreeIntegrityError(f"Root node {root_id} not found in nodes map", root_id)
        if root.parent_topic is not None:
            raise TreeIntegrityError(f"Root node {root_id} has a parent topic", root_id)

    for node_id, node in nodes.items():
        if node.id != node_id:
            raise TreeIntegrityError(
                f"Node ID mismatch: map key {node_id} vs node.id {node.id}", node_id
            )

        if node.parent_topic is None:
            if node_id not in root_set:
                raise TreeIntegrityError(f"Parentless node {node_id} is not a root", node_id)
        else:
            parent = nodes.get(node.parent_topic)
            if parent is None:
                raise TreeIntegrityError(
                    f"Node {node_id} references non-existent parent {node.parent_topic}", node_id
                )
            if node_id not in parent.children:
                raise TreeIntegrityError(
                    f"Parent {node.parent_topic} doesn't list {node_id} as child", node_id
                )

        if len(set(node.children)) != len(node.children):
            raise TreeIntegrityError(f"Node {node_id} lists a child twice", node_id)
        for child_id in node.children:
            child = nodes.get(child_id)
            if child is None:
                raise TreeIntegrityError(
                    f"Node {node_id} references non-existent child {child_id}", node_id
                )
            if child.parent_topic != node_id:
                raise TreeIntegrityError(
                    f"Child {child_id} doesn't reference {node_id} as parent", node_id
                )

        depth = _compute_depth(node_id, nodes)
        if node.depth != depth:
            raise TreeIntegrityError(
                f"Node {node_id} depth mismatch: stored {node.depth} vs calculated {depth}",
                node_id,
            )
        if max_depth is not None:
            validate_tree_depth(depth, max_depth)

    validate_current_path(tree)


def validate_current_path(tree: ConversationTree) -> None:
    """The current path must be empty or a root-to-node chain."""
    path = tree.current_path
    for index, node_id in enumerate(path):
        node = tree.nodes.get(node_id)
        if node is None:
            raise TreeIntegrityError(f"Node {node_id} in current path not found", node_id)
        if index == 0:
            if node.parent_topic is not None:
                raise TreeIntegrityError(
                    f"Current path must start at a root, {node_id} has a parent", node_id
                )
        elif node.parent_topic != path[index - 1]:
            raise TreeIntegrityError(
                f"Invalid path: {node_id} is not a child of {path[index - 1]}", node_id
            )
