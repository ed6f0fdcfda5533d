#!/usr/bin/env python3
"""
Inspection CLI for persisted grading sessions.

This script lists the sessions stored by the configured persistence
backend, prints a stored topic tree with its scores, and deletes
sessions that are no longer needed.
"""

import asyncio
import sys
import argparse
import logging
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from grading_config import StorageBackend, get_config
from grading_entities import ConversationTree
from grading_errors import GradingError
from grading_storage import create_persistence_adapter
from grading_validation import validate_tree_integrity
from session_manager import SessionManager


# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def format_score(score) -> str:
    return "unscored" if score is None else f"{score:.0f}"


def print_tree(tree: ConversationTree):
    """Print a stored tree, one line per topic."""
    current = set(tree.current_path)

    def walk(node_id: str):
        node = tree.nodes[node_id]
        marker = " *" if node_id in current else ""
        flags = []
        if node.metadata.visit_count:
            flags.append(f"visited x{node.metadata.visit_count}")
        if node.metadata.is_exhausted:
            flags.append("exhausted")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"{'  ' * (node.depth - 1)}- {node.topic} ({format_score(node.score)}){suffix}{marker}")
        for child_id in node.children:
            walk(child_id)

    for root_id in tree.root_nodes:
        walk(root_id)


async def list_command(manager: SessionManager, args):
    """Handle list command."""
    session_ids = await manager.persistence_adapter.list()
    if not session_ids:
        print("No saved sessions")
        return 0
    for session_id in session_ids:
        print(session_id)
    return 0


async def show_command(manager: SessionManager, args):
    """Handle show command."""
    tree = await manager.fetch_session(args.session_id)
    if tree is None:
        logger.error(f"Session not found: {args.session_id}")
        return 1

    if args.json:
        print(tree.model_dump_json(indent=2))
        return 0

    scores = [node.score for node in tree.nodes.values() if node.score is not None]
    print("\n" + "="*60)
    print(f"SESSION {args.session_id}")
    print("="*60)
    print(f"Topics: {len(tree.nodes)}")
    print(f"Answers: {len(tree.all_qa_pairs())}")
    print(f"Average score: {format_score(sum(scores) / len(scores) if scores else None)}")
    print()
    print_tree(tree)
    print("="*60 + "\n")
    return 0


async def check_command(manager: SessionManager, args):
    """Handle check command."""
    tree = await manager.persistence_adapter.load(args.session_id)
    if tree is None:
        logger.error(f"Session not found: {args.session_id}")
        return 1

    tree_config = get_config().tree
    validate_tree_integrity(tree, tree_config.max_depth, tree_config.max_nodes)
    print(f"Session {args.session_id}: tree is consistent ({len(tree.nodes)} topics)")
    return 0


async def delete_command(manager: SessionManager, args):
    """Handle delete command."""
    if await manager.persistence_adapter.delete(args.session_id):
        print(f"Deleted {args.session_id}")
        return 0
    logger.error(f"Session not found: {args.session_id}")
    return 1


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Inspect persisted grading sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List saved sessions
  %(prog)s list

  # Show a session's topic tree
  %(prog)s show session_1a2b3c4d

  # Dump a session as JSON
  %(prog)s show session_1a2b3c4d --json

  # Verify a stored tree is consistent
  %(prog)s check session_1a2b3c4d
        """
    )
    parser.add_argument(
        "--backend",
        choices=[backend.value for backend in StorageBackend if backend != StorageBackend.MEMORY],
        help="Override the configured storage backend"
    )
    parser.add_argument(
        "--path",
        type=Path,
        help="Override the configured storage path"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")
    subparsers.add_parser("list", help="List saved sessions")

    show_parser = subparsers.add_parser("show", help="Show a saved session")
    show_parser.add_argument("session_id")
    show_parser.add_argument("--json", action="store_true", help="Print the raw tree as JSON")

    check_parser = subparsers.add_parser("check", help="Check a saved tree's integrity")
    check_parser.add_argument("session_id")

    delete_parser = subparsers.add_parser("delete", help="Delete a saved session")
    delete_parser.add_argument("session_id")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return 1

    updates = {}
    if args.backend:
        updates["storage_backend"] = StorageBackend(args.backend)
    if args.path:
        updates["storage_path"] = args.path
    session_config = get_config().session.model_copy(update=updates)

    if session_config.storage_backend == StorageBackend.MEMORY:
        logger.error("The memory backend keeps nothing between runs; pass --backend file or sqlite")
        return 1

    manager = SessionManager(create_persistence_adapter(session_config))
    commands = {
        "list": list_command,
        "show": show_command,
        "check": check_command,
        "delete": delete_command,
    }
    try:
        return await commands[args.command](manager, args)
    except GradingError as e:
        logger.error(f"{e.__class__.__name__}: {e}")
        return 1
    finally:
        manager.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
