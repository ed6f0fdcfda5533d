"""
Tests for the agent-backed scoring strategy and topic analyzer.
"""

import pytest
from unittest.mock import Mock

from grading_agents import (
    AgentScoringStrategy,
    AgentTopicAnalyzer,
    ScoreOutput,
    TopicExtractionOutput,
)
from grading_entities import RelationshipType, ScoringContext, TopicNode
from grading_errors import ClassificationError
from grading_system import ConversationGradingSystem
from scoring import ScoringEngine
from topic_analyzer import DEFAULT_TOPIC

from test_utils.pydantic_graph_helpers import (
    AI_QA,
    create_agent_result_mock,
    create_async_agent_mock,
    create_failing_agent_mock,
    mock_logfire,
)


def make_context(history=()):
    return ScoringContext(
        current_topic=TopicNode(id="node_1", topic="artificial intelligence", depth=2),
        conversation_history=tuple(history),
        topic_depth=2,
    )


class TestAgentScoringStrategy:
    """Test AgentScoringStrategy."""

    @pytest.mark.asyncio
    async def test_returns_agent_score(self):
        """Test the structured score from the agent is returned."""
        result = create_agent_result_mock(ScoreOutput(score=72, rationale="Accurate but brief."))
        agent = create_async_agent_mock(result)
        strategy = AgentScoringStrategy(agent=agent)

        with mock_logfire() as (mock_span, mock_info):
            score = await strategy.calculate_score(AI_QA, make_context([AI_QA]))

        assert score == 72
        agent.run.assert_awaited_once()
        mock_span.set_attribute.assert_called_with('score', 72)
        mock_info.assert_called_once()

    def test_prompt_contains_topic_and_answer(self):
        prompt = AgentScoringStrategy.build_prompt(AI_QA, make_context([AI_QA]))

        assert "artificial intelligence" in prompt
        assert AI_QA.answer in prompt
        assert "<topic_depth>2</topic_depth>" in prompt

    @pytest.mark.asyncio
    async def test_agent_failure_degrades_to_default(self):
        """Test the engine replaces agent failures with the default score."""
        strategy = AgentScoringStrategy(agent=create_failing_agent_mock(RuntimeError("rate limited")))
        engine = ScoringEngine(strategy, default_score=50)

        score = await engine.calculate_score(AI_QA, make_context([AI_QA]))

        assert score == 50.0
        assert engine.failure_count == 1

    def test_score_output_bounds(self):
        with pytest.raises(ValueError):
            ScoreOutput(score=120, rationale="too high")


class TestAgentTopicAnalyzer:
    """Test AgentTopicAnalyzer."""

    @pytest.mark.asyncio
    async def test_topics_are_normalised(self):
        result = create_agent_result_mock(
            TopicExtractionOutput(topics=["Neural  Networks", "neural networks", "Backprop", "Optimisers", "Extra"])
        )
        analyzer = AgentTopicAnalyzer(agent=create_async_agent_mock(result))

        topics = await analyzer.extract_topics(AI_QA)

        assert topics == ["neural networks", "backprop", "optimisers"]

    @pytest.mark.asyncio
    async def test_empty_topics_fall_back(self):
        result = create_agent_result_mock(TopicExtractionOutput(topics=["  "]))
        analyzer = AgentTopicAnalyzer(agent=create_async_agent_mock(result))

        assert await analyzer.extract_topics(AI_QA) == [DEFAULT_TOPIC]

    @pytest.mark.asyncio
    async def test_agent_failure_is_classification_error(self):
        analyzer = AgentTopicAnalyzer(agent=create_failing_agent_mock(ConnectionError("offline")))

        with pytest.raises(ClassificationError) as exc_info:
            await analyzer.extract_topics(AI_QA)

        assert isinstance(exc_info.value.original_error, ConnectionError)

    def test_relationship_uses_heuristic_classifier(self):
        classifier = Mock()
        analyzer = AgentTopicAnalyzer(agent=Mock(), classifier=classifier)

        analyzer.determine_relationship("topic", [])

        classifier.determine_relationship.assert_called_once_with("topic", [])

    @pytest.mark.asyncio
    async def test_drives_grading_system(self):
        """Test agent topics and scores flow into the tree."""
        topic_result = create_agent_result_mock(TopicExtractionOutput(topics=["ai basics"]))
        score_result = create_agent_result_mock(ScoreOutput(score=88, rationale="Good."))
        system = ConversationGradingSystem(
            "agents",
            topic_analyzer=AgentTopicAnalyzer(agent=create_async_agent_mock(topic_result)),
            scoring_strategy=AgentScoringStrategy(agent=create_async_agent_mock(score_result)),
        )

        node_id = await system.add_qa_pair(AI_QA)

        node = system.get_node(node_id)
        assert node.topic == "ai basics"
        assert node.score == 88
        assert system.get_stats().total_nodes == 1

    @pytest.mark.asyncio
    async def test_same_topic_twice_attaches(self):
        topic_result = create_agent_result_mock(TopicExtractionOutput(topics=["ai basics"]))
        system = ConversationGradingSystem(
            "agents-attach",
            topic_analyzer=AgentTopicAnalyzer(agent=create_async_agent_mock(topic_result)),
        )

        first = await system.add_qa_pair(AI_QA)
        second = await system.add_qa_pair(AI_QA)

        assert first == second
        assert len(system.get_node(first).metadata.qa_pairs) == 2
        assert system.topic_analyzer.determine_relationship("ai basics", system.get_all_nodes()).type \
            == RelationshipType.CHILD_OF
