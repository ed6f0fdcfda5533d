"""
Test utilities for the grading engine and its pydantic_graph nodes.

This module provides helper functions for building Q&A pairs, topic nodes and
agent mocks, plus patterns for testing pydantic_graph nodes, which need a run
context carrying state and deps.
"""

from contextlib import contextmanager
from typing import Any, List, Optional
from unittest.mock import AsyncMock, Mock, patch

from grading_entities import QAPair, TopicNode


AI_QA = QAPair(
    question="What is AI?",
    answer="Artificial intelligence is the simulation of human intelligence by machines.",
)

# "artificial" is repeated so it becomes the primary label and ML_QA lands as a related root of AI_QA
ML_QA = QAPair(
    question="What is machine learning in AI?",
    answer=(
        "Machine learning lets artificial systems learn from data; "
        "artificial agents improve with artificial experience."
    ),
)


def make_qa(question: str = "What is AI?", answer: Optional[str] = None, **kwargs) -> QAPair:
    """Create a Q&A pair with a sensible default answer."""
    if answer is None:
        answer = AI_QA.answer
    return QAPair(question=question, answer=answer, **kwargs)


def make_node(node_id: str, topic: Optional[str] = None, parent: Optional[str] = None, **kwargs) -> TopicNode:
    """Create a detached topic node for TopicTreeManager.add_node."""
    return TopicNode(id=node_id, topic=topic or f"topic {node_id}", parent_topic=parent, **kwargs)


def create_agent_result_mock(output: Any, messages: Optional[list] = None) -> Mock:
    """Stand-in for a pydantic-ai run result.

    Args:
        output: What the agent "answered", e.g. a ScoreOutput or a question
        messages: Messages returned by ``all_messages()``
    """
    mock_result = Mock()
    mock_result.output = output
    mock_result.all_messages = Mock(return_value=messages or [])
    return mock_result


def create_async_agent_mock(result: Mock) -> Mock:
    """Agent whose ``run`` coroutine always resolves to ``result``."""
    mock_agent = Mock()
    mock_agent.run = AsyncMock(return_value=result)
    return mock_agent


def create_failing_agent_mock(error: Exception) -> Mock:
    mock_agent = Mock()
    mock_agent.run = AsyncMock(side_effect=error)
    return mock_agent


def create_graph_context(state: Any, deps: Any) -> Mock:
    """Create a minimal GraphRunContext stand-in for calling node.run directly."""
    ctx = Mock()
    ctx.state = state
    ctx.deps = deps
    return ctx


def create_answer_provider(answers: List[str]) -> AsyncMock:
    """Answer provider that replays ``answers`` in order, repeating the last one."""
    remaining = list(answers)

    async def provide(question: str) -> str:
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return AsyncMock(side_effect=provide)


@contextmanager
def mock_logfire():
    """Patch ``logfire.span`` and ``logfire.info``; yields (mock_span, mock_info)."""
    mock_span = Mock()
    mock_span.__enter__ = Mock(return_value=mock_span)
    mock_span.__exit__ = Mock(return_value=None)
    mock_span.set_attribute = Mock()

    with patch('logfire.span', return_value=mock_span):
        with patch('logfire.info') as mock_info:
            yield mock_span, mock_info
