"""
Read-only traversal and query layer over a conversation tree.

The navigator never mutates the tree it is given. Every node it returns is a
deep copy so that callers cannot reach back into live tree state.
"""

from __future__ import annotations

from collections import deque
from typing import Dict, List, Optional

from grading_entities import ConversationTree, CurrentPosition, TopicNode
from grading_errors import TreeIntegrityError


class TreeNavigator:
    """Queries over a ConversationTree snapshot."""

    def __init__(self, tree: ConversationTree):
        self._tree = tree

    @property
    def _nodes(self) -> Dict[str, TopicNode]:
        return self._tree.nodes

    def _copy(self, node_ids: List[str]) -> List[TopicNode]:
        return [self._nodes[node_id].snapshot() for node_id in node_ids if node_id in self._nodes]

    def get_node(self, node_id: str) -> Optional[TopicNode]:
        node = self._nodes.get(node_id)
        return node.snapshot() if node is not None else None

    def get_path_to_root(self, node_id: str) -> List[str]:
        """Node ids from ``node_id`` up to its root, inclusive."""
        path: List[str] = []
        current_id: Optional[str] = node_id
        while current_id is not None:
            if current_id in path:
                raise TreeIntegrityError(f"Circular reference detected at node {current_id}", current_id)
            node = self._nodes.get(current_id)
            if node is None:
                break
            path.append(current_id)
            current_id = node.parent_topic
        return path

    def get_path_from_root(self, node_id: str) -> List[str]:
        """Node ids from the root down to ``node_id``, inclusive."""
        return list(reversed(self.get_path_to_root(node_id)))

    def get_depth_from_root(self, node_id: str) -> int:
        """Number of nodes on the root path; 0 for unknown ids."""
        return len(self.get_path_to_root(node_id))

    def get_ancestors(self, node_id: str) -> List[TopicNode]:
        """Ancestors ordered from the immediate parent up to the root."""
        return self._copy(self.get_path_to_root(node_id)[1:])

    def get_descendants(self, node_id: str) -> List[TopicNode]:
        """All descendants in breadth-first order."""
        node = self._nodes.get(node_id)
        if node is None:
            return []

        result: List[str] = []
        seen = {node_id}
        queue = deque(node.children)
        while queue:
            child_id = queue.popleft()
            if child_id in seen or child_id not in self._nodes:
                continue
            seen.add(child_id)
            result.append(child_id)
            queue.extend(self._nodes[child_id].children)
        return self._copy(result)

    def get_siblings(self, node_id: str) -> List[TopicNode]:
        """Nodes sharing this node's parent; for roots, the other roots."""
        node = self._nodes.get(node_id)
        if node is None:
            return []

        if node.parent_topic is None:
            candidates = self._tree.root_nodes
        else:
            parent = self._nodes.get(node.parent_topic)
            candidates = parent.children if parent is not None else []
        return self._copy([candidate for candidate in candidates if candidate != node_id])

    def get_children(self, node_id: str) -> List[TopicNode]:
        node = self._nodes.get(node_id)
        return self._copy(node.children) if node is not None else []

    def get_parent(self, node_id: str) -> Optional[TopicNode]:
        node = self._nodes.get(node_id)
        if node is None or node.parent_topic is None:
            return None
        return self.get_node(node.parent_topic)

    def get_root_nodes(self) -> List[TopicNode]:
        return self._copy(self._tree.root_nodes)

    def get_leaf_nodes(self) -> List[TopicNode]:
        """Leaves in insertion order."""
        return [node.snapshot() for node in self._nodes.values() if node.is_leaf()]

    def get_unvisited_branches(self) -> List[TopicNode]:
        """Leaves that are neither visited nor exhausted, in insertion order."""
        return [node.snapshot() for node in self._nodes.values() if node.is_leaf() and node.is_unvisited()]

    def get_deepest_unvisited_branch(self) -> Optional[TopicNode]:
        """
        Find the deepest unvisited, non-exhausted leaf.

        Among leaves of equal depth the earliest inserted one is returned.

        Returns:
            A copy of the selected leaf, or None when every leaf has been
            visited or exhausted
        """
        deepest: Optional[TopicNode] = None
        for node in self._nodes.values():
            if not node.is_leaf() or not node.is_unvisited():
                continue
            # Strict comparison keeps the first candidate on ties
            if deepest is None or node.depth > deepest.depth:
                deepest = node
        return deepest.snapshot() if deepest is not None else None

    def get_nodes_at_depth(self, depth: int) -> List[TopicNode]:
        return [node.snapshot() for node in self._nodes.values() if node.depth == depth]

    def get_max_depth(self) -> int:
        return max((node.depth for node in self._nodes.values()), default=0)

    def find_path(self, from_id: str, to_id: str) -> List[str]:
        """
        Shortest path of node ids between two nodes through their lowest
        common ancestor.

        Returns an empty list if either node is missing or the nodes live in
        different root trees.
        """
        if from_id not in self._nodes or to_id not in self._nodes:
            return []
        if from_id == to_id:
            return [from_id]

        from_path = self.get_path_to_root(from_id)
        to_path = self.get_path_to_root(to_id)
        to_index = {node_id: index for index, node_id in enumerate(to_path)}

        for index, node_id in enumerate(from_path):
            if node_id in to_index:
                upward = from_path[:index + 1]
                downward = list(reversed(to_path[:to_index[node_id]]))
                return upward + downward
        return []

    def is_ancestor(self, ancestor_id: str, node_id: str) -> bool:
        """True when ``ancestor_id`` is a strict ancestor of ``node_id``."""
        if ancestor_id == node_id:
            return False
        return ancestor_id in self.get_path_to_root(node_id)[1:]

    def is_descendant(self, descendant_id: str, node_id: str) -> bool:
        """True when ``descendant_id`` is a strict descendant of ``node_id``."""
        return self.is_ancestor(node_id, descendant_id)

    def get_current_position(self) -> CurrentPosition:
        """Describe the end of the current path and its neighbourhood."""
        path = [node_id for node_id in self._tree.current_path if node_id in self._nodes]
        if not path:
            return CurrentPosition()

        current_id = path[-1]
        return CurrentPosition(
            current_node=self.get_node(current_id),
            depth=self.get_depth_from_root(current_id),
            path_from_root=self.get_path_from_root(current_id),
            available_children=self.get_children(current_id),
            siblings=self.get_siblings(current_id),
        )
