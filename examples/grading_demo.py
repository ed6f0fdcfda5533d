"""
Example usage of the conversation grading system.

This script grades a short scripted conversation, prints how each answer
was placed in the topic tree, and then saves the session with the
configured persistence backend.
"""

import asyncio
import logging

from grading_config import get_config
from grading_entities import QAPair
from grading_sessions import ConversationGradingSystemWithSessions
from grading_storage import create_persistence_adapter
from scoring import ContextAwareScoringStrategy, WeightedScoringStrategy


CONVERSATION = [
    QAPair(
        question="How do you store application data?",
        answer="We keep structured data in relational databases with careful schema design.",
    ),
    QAPair(
        question="How do you make database queries fast?",
        answer="Database indexes let the query planner avoid full table scans on large tables.",
    ),
    QAPair(
        question="Which index types have you used?",
        answer="Mostly btree indexes, plus hash indexes where equality lookups dominate.",
    ),
    QAPair(
        question="How do you deploy services?",
        answer="Containers are built in CI and rolled out through a Kubernetes deployment pipeline.",
    ),
]


def setup_logging():
    """Set up logging based on configuration."""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.app.log_level.value),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    return logging.getLogger(__name__)


async def grade_conversation(grader: ConversationGradingSystemWithSessions, logger: logging.Logger):
    """Grade each pair and report where it landed."""
    for qa_pair in CONVERSATION:
        node_id = await grader.add_qa_pair(qa_pair)
        node = grader.get_topic_tree().nodes[node_id]
        logger.info(f"Q: {qa_pair.question}")
        logger.info(f"   topic={node.topic!r} depth={node.depth} score={node.score}")


def print_tree(grader: ConversationGradingSystemWithSessions):
    """Print the topic tree with indentation by depth."""
    tree = grader.get_topic_tree()

    def walk(node_id: str):
        node = tree.nodes[node_id]
        print(f"{'  ' * (node.depth - 1)}- {node.topic} (score: {node.score}, answers: {len(node.metadata.qa_pairs)})")
        for child_id in node.children:
            walk(child_id)

    for root_id in tree.root_nodes:
        walk(root_id)


async def main():
    """Main example function."""
    logger = setup_logging()
    config = get_config()

    grader = ConversationGradingSystemWithSessions(
        "demo",
        persistence_adapter=create_persistence_adapter(config.session),
        auto_save=False,
    )

    try:
        # Score with the weighted mix first, then lean on conversation context
        grader.set_scoring_strategy(WeightedScoringStrategy())
        await grade_conversation(grader, logger)

        grader.set_scoring_strategy(ContextAwareScoringStrategy())
        await grader.add_qa_pair(QAPair(
            question="Why did you choose btree indexes?",
            answer="As mentioned, btree indexes support range queries on our large tables.",
        ))

        print("\nTopic tree:")
        print_tree(grader)

        branch = grader.get_deepest_unvisited_branch()
        if branch:
            logger.info(f"Next topic to explore: {branch.topic}")
            await grader.mark_topic_as_visited(branch.id)

        stats = grader.get_stats()
        logger.info(f"Nodes: {stats.total_nodes}, average score: {stats.average_score}")

        await grader.save_session()
        logger.info(f"Saved sessions: {await grader.list_saved_sessions()}")
    finally:
        grader.dispose()


if __name__ == "__main__":
    asyncio.run(main())
