"""
Topic tree management.

``TopicTreeManager`` owns one ConversationTree. Every mutation runs inside a
transaction that snapshots the tree, applies the change, revalidates every
structural invariant and restores the snapshot if anything fails, so callers
never observe a half-applied mutation.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from grading_config import get_config
from grading_entities import (
    ConversationTree,
    CurrentPosition,
    QAPair,
    TopicMetadata,
    TopicNode,
    TreeStats,
)
from grading_errors import NodeNotFoundError, TreeIntegrityError, ValidationError
from grading_validation import (
    validate_node_id,
    validate_score,
    validate_session_id,
    validate_topic_name,
    validate_tree_depth,
    validate_tree_integrity,
    validate_tree_size,
)
from tree_navigator import TreeNavigator


logger = logging.getLogger(__name__)


UPDATABLE_FIELDS = frozenset({"topic", "parent_topic", "score", "metadata"})


class TopicTreeManager:
    """Owns a conversation tree and enforces its invariants."""

    def __init__(
        self,
        session_id: str = "default",
        max_depth: Optional[int] = None,
        max_nodes: Optional[int] = None,
    ):
        validate_session_id(session_id)
        tree_config = get_config().tree
        self.max_depth = max_depth if max_depth is not None else tree_config.max_depth
        self.max_nodes = max_nodes if max_nodes is not None else tree_config.max_nodes
        self._tree = ConversationTree(session_id=session_id)
        self._transaction_depth = 0

    @property
    def session_id(self) -> str:
        return self._tree.session_id

    @property
    def node_count(self) -> int:
        return len(self._tree.nodes)

    @property
    def _navigator(self) -> TreeNavigator:
        # Navigator results are copies, so querying the live tree is safe
        return TreeNavigator(self._tree)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Group mutations so they are applied atomically.

        The outermost transaction snapshots the tree, validates integrity on
        exit and restores the snapshot if the block or the validation raises.
        Nested transactions join the outer one.
        """
        if self._transaction_depth:
            self._transaction_depth += 1
            try:
                yield
            finally:
                self._transaction_depth -= 1
            return

        backup = self._tree.model_copy(deep=True)
        self._transaction_depth = 1
        try:
            yield
            validate_tree_integrity(self._tree, self.max_depth, self.max_nodes)
        except Exception:
            self._tree = backup
            logger.debug("Rolled back tree %s after failed mutation", self.session_id)
            raise
        finally:
            self._transaction_depth = 0

    def _require(self, node_id: str) -> TopicNode:
        validate_node_id(node_id)
        node = self._tree.nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def add_node(self, node: TopicNode) -> str:
        """
        Insert a new node as a root or under an existing parent.

        Args:
            node: The node to insert; it is copied, and its depth is derived
                from its parent

        Returns:
            The inserted node id

        Raises:
            ValidationError: On malformed fields or a duplicate id
            TreeIntegrityError: On a missing parent or exceeded limits
        """
        if not isinstance(node, TopicNode):
            raise ValidationError("Node must be a TopicNode", "node", node)
        validate_node_id(node.id)
        validate_topic_name(node.topic)
        validate_score(node.score)
        if node.children:
            raise ValidationError("New nodes cannot already have children", "children", node.children)
        if node.id in self._tree.nodes:
            raise ValidationError(f"Node with ID {node.id} already exists", "nodeId", node.id)

        validate_tree_size(len(self._tree.nodes) + 1, self.max_nodes)

        new_node = node.snapshot()
        with self.transaction():
            if new_node.parent_topic is None:
                new_node.depth = 1
                self._tree.nodes[new_node.id] = new_node
                self._tree.root_nodes.append(new_node.id)
            else:
                parent = self._tree.nodes.get(new_node.parent_topic)
                if parent is None:
                    raise TreeIntegrityError(
                        f"Parent node {new_node.parent_topic} not found", new_node.id
                    )
                validate_tree_depth(parent.depth + 1, self.max_depth)
                new_node.depth = parent.depth + 1
                self._tree.nodes[new_node.id] = new_node
                parent.children.append(new_node.id)
                parent.touch()

        return new_node.id

    def update_node(self, node_id: str, updates: Dict[str, Any]) -> None:
        """
        Merge field updates into a node.

        Supported fields are ``topic``, ``score``, ``metadata`` and
        ``parent_topic``. Changing ``parent_topic`` moves the node (and its
        subtree) under the new parent, or to the root list for ``None``.

        Raises:
            ValidationError: On unknown fields or invalid values
            NodeNotFoundError: If the node or new parent does not exist
            TreeIntegrityError: If the move would create a cycle or exceed limits
        """
        node = self._require(node_id)
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unsupported node fields: {sorted(unknown)}", "updates", updates)

        if "topic" in updates:
            validate_topic_name(updates["topic"])
        if "score" in updates:
            validate_score(updates["score"])

        metadata = updates.get("metadata")
        if "metadata" in updates and not isinstance(metadata, TopicMetadata):
            if not isinstance(metadata, dict):
                raise ValidationError("Metadata must be a TopicMetadata or dict", "metadata", metadata)
            metadata = TopicMetadata.model_validate({**node.metadata.model_dump(), **metadata})

        with self.transaction():
            node = self._tree.nodes[node_id]
            if "parent_topic" in updates and updates["parent_topic"] != node.parent_topic:
                self._move_node(node_id, updates["parent_topic"])
            if "topic" in updates:
                node.topic = updates["topic"]
            if "score" in updates:
                node.score = updates["score"]
            if metadata is not None:
                node.metadata = metadata.model_copy(deep=True)
            node.touch()

    def _move_node(self, node_id: str, new_parent_id: Optional[str]) -> None:
        node = self._tree.nodes[node_id]
        navigator = TreeNavigator(self._tree)

        if new_parent_id is not None:
            new_parent = self._require(new_parent_id)
            if new_parent_id == node_id or navigator.is_descendant(new_parent_id, node_id):
                raise TreeIntegrityError(
                    f"Cannot move node {node_id} under {new_parent_id}: would create circular reference",
                    node_id,
                )
        else:
            new_parent = None

        self._detach(node)
        node.parent_topic = new_parent_id
        if new_parent is None:
            self._tree.root_nodes.append(node_id)
        else:
            new_parent.children.append(node_id)
            new_parent.touch()
        self._recompute_depths(node_id)

        # Moving a node on the current path re-routes the path through its new ancestors
        if node_id in self._tree.current_path:
            self._tree.current_path = TreeNavigator(self._tree).get_path_from_root(
                self._tree.current_path[-1]
            )

    def _detach(self, node: TopicNode) -> None:
        if node.parent_topic is None:
            self._tree.root_nodes.remove(node.id)
        else:
            parent = self._tree.nodes.get(node.parent_topic)
            if parent is not None and node.id in parent.children:
                parent.children.remove(node.id)
                parent.touch()

    def _recompute_depths(self, node_id: str) -> None:
        node = self._tree.nodes[node_id]
        parent = self._tree.nodes.get(node.parent_topic) if node.parent_topic else None
        stack = [(node_id, parent.depth + 1 if parent is not None else 1)]
        while stack:
            current_id, depth = stack.pop()
            validate_tree_depth(depth, self.max_depth)
            current = self._tree.nodes[current_id]
            current.depth = depth
            stack.extend((child_id, depth + 1) for child_id in current.children)

    def remove_node(self, node_id: str) -> None:
        """
        Remove a node, handing its children to its parent.

        Children of a removed root become roots themselves. The node is
        dropped from the current path, which stays a valid chain because its
        children now hang off its former parent.
        """
        node = self._require(node_id)

        with self.transaction():
            node = self._tree.nodes[node_id]
            parent_id = node.parent_topic
            parent = self._tree.nodes.get(parent_id) if parent_id is not None else None

            if parent is None:
                position = self._tree.root_nodes.index(node_id)
                self._tree.root_nodes[position:position + 1] = node.children
            else:
                position = parent.children.index(node_id)
                parent.children[position:position + 1] = node.children
                parent.touch()

            for child_id in node.children:
                child = self._tree.nodes[child_id]
                child.parent_topic = parent_id
                child.touch()
                self._recompute_depths(child_id)

            del self._tree.nodes[node_id]
            self._tree.current_path = [
                path_id for path_id in self._tree.current_path if path_id != node_id
            ]

    def add_qa_pair_to_node(self, node_id: str, qa_pair: QAPair) -> None:
        node = self._require(node_id)
        node.add_qa_pair(qa_pair)

    def mark_node_visited(self, node_id: str, exhaust_after: Optional[int] = None) -> TopicNode:
        """Record a visit; optionally exhaust the node once it reaches ``exhaust_after`` visits."""
        node = self._require(node_id)
        node.mark_as_visited()
        if exhaust_after is not None and node.metadata.visit_count >= exhaust_after:
            node.mark_as_exhausted()
        return node.snapshot()

    def mark_node_exhausted(self, node_id: str) -> None:
        self._require(node_id).mark_as_exhausted()

    def set_current_path(self, path: List[str]) -> None:
        with self.transaction():
            self._tree.current_path = list(path)

    def set_current_node(self, node_id: str) -> None:
        """Point the current path at ``node_id``, replacing the old suffix."""
        self._require(node_id)
        self.set_current_path(TreeNavigator(self._tree).get_path_from_root(node_id))

    def get_current_path(self) -> List[str]:
        return list(self._tree.current_path)

    def get_current_topic(self) -> Optional[TopicNode]:
        if not self._tree.current_path:
            return None
        return self.get_node(self._tree.current_path[-1])

    def get_node(self, node_id: str) -> Optional[TopicNode]:
        node = self._tree.nodes.get(node_id)
        return node.snapshot() if node is not None else None

    def has_node(self, node_id: str) -> bool:
        return node_id in self._tree.nodes

    def get_all_nodes(self) -> List[TopicNode]:
        """Copies of every node in insertion order."""
        return [node.snapshot() for node in self._tree.nodes.values()]

    def calculate_depth(self, node_id: str) -> int:
        self._require(node_id)
        return self._navigator.get_depth_from_root(node_id)

    def get_root_nodes(self) -> List[TopicNode]:
        return self._navigator.get_root_nodes()

    def get_children(self, node_id: str) -> List[TopicNode]:
        return self._navigator.get_children(node_id)

    def get_parent(self, node_id: str) -> Optional[TopicNode]:
        return self._navigator.get_parent(node_id)

    def get_stats(self) -> TreeStats:
        nodes = self._tree.nodes.values()
        return TreeStats(
            total_nodes=len(self._tree.nodes),
            root_nodes=len(self._tree.root_nodes),
            leaf_nodes=sum(1 for node in nodes if node.is_leaf()),
            max_depth=max((node.depth for node in nodes), default=0),
        )

    def find_deepest_unvisited_branch(self) -> Optional[TopicNode]:
        return self._navigator.get_deepest_unvisited_branch()

    def get_tree(self) -> ConversationTree:
        """A deep copy of the whole tree."""
        return self._tree.snapshot()

    def navigator(self) -> TreeNavigator:
        """A navigator over a snapshot of the current tree."""
        return TreeNavigator(self._tree.snapshot())

    def get_current_position(self) -> CurrentPosition:
        return self._navigator.get_current_position()

    def validate(self) -> None:
        validate_tree_integrity(self._tree, self.max_depth, self.max_nodes)

    def clear(self) -> None:
        """Reset to an empty tree, keeping the session id."""
        self._tree = ConversationTree(session_id=self.session_id)
