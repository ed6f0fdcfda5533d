"""
Language-model backed collaborators for the grading engine.

``AgentScoringStrategy`` asks a pydantic-ai agent for a structured score and
``AgentTopicAnalyzer`` asks one for topic labels. Both only ever see the Q&A
pair and the read-only scoring context, never the tree itself.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import logfire
from pydantic import BaseModel, Field
from pydantic_ai import Agent, format_as_xml

from grading_config import get_config
from grading_entities import QAPair, ScoringContext, TopicNode, TopicRelationship
from grading_errors import ClassificationError, safe_error_message
from grading_validation import MAX_TOPIC_LENGTH
from scoring import ScoringStrategy
from topic_analyzer import DEFAULT_TOPIC, MAX_TOPICS, BaseTopicAnalyzer, TopicAnalyzer


logger = logging.getLogger(__name__)


class ScoreOutput(BaseModel, use_attribute_docstrings=True):
    score: float = Field(ge=0.0, le=100.0)
    """Quality of the answer from 0 (no substance) to 100 (expert level)."""
    rationale: str
    """One or two sentences justifying the score."""


class TopicExtractionOutput(BaseModel, use_attribute_docstrings=True):
    topics: List[str] = Field(default_factory=list)
    """Up to three short lowercase topic labels, most specific first."""


SCORING_PROMPT = (
    "You grade interview answers. Given the question, the answer, the topic "
    "it belongs to and how deep that topic sits in the conversation, return "
    "a score from 0 to 100 with a short rationale."
)

TOPIC_PROMPT = (
    "Given an interview question and its answer, name the one to three "
    "topics the exchange is about. Use short lowercase noun phrases."
)


def create_scoring_agent(model: Optional[str] = None) -> Agent:
    return Agent(
        model or get_config().scoring.model,
        output_type=ScoreOutput,
        system_prompt=SCORING_PROMPT,
        retries=2,
        defer_model_check=True,
    )


def create_topic_agent(model: Optional[str] = None) -> Agent:
    return Agent(
        model or get_config().scoring.model,
        output_type=TopicExtractionOutput,
        system_prompt=TOPIC_PROMPT,
        retries=2,
        defer_model_check=True,
    )


class AgentScoringStrategy(ScoringStrategy):
    """Scores answers with a language model.

    Failures propagate to the ScoringEngine, which substitutes the default
    score.
    """

    def __init__(self, agent: Optional[Agent] = None, model: Optional[str] = None):
        self.agent = agent or create_scoring_agent(model)

    @staticmethod
    def build_prompt(qa_pair: QAPair, context: ScoringContext) -> str:
        recent = context.conversation_history[:-1][-5:]
        return format_as_xml({
            'topic': context.current_topic.topic,
            'topic_depth': context.topic_depth,
            'question': qa_pair.question,
            'answer': qa_pair.answer,
            'previous_turns': [{'question': qa.question, 'answer': qa.answer} for qa in recent],
        })

    async def calculate_score(self, qa_pair: QAPair, context: ScoringContext) -> float:
        with logfire.span('agent_scoring.calculate_score') as span:
            result = await self.agent.run(self.build_prompt(qa_pair, context))
            span.set_attribute('score', result.output.score)
            logfire.info('Answer scored by agent',
                         topic=context.current_topic.topic,
                         score=result.output.score,
                         rationale=result.output.rationale)
            return result.output.score


class AgentTopicAnalyzer(BaseTopicAnalyzer):
    """Extracts topics with a language model; relationships stay heuristic."""

    def __init__(
        self,
        agent: Optional[Agent] = None,
        model: Optional[str] = None,
        classifier: Optional[TopicAnalyzer] = None,
    ):
        self.agent = agent or create_topic_agent(model)
        self.classifier = classifier or TopicAnalyzer()

    @staticmethod
    def normalize_topics(topics: Sequence[str]) -> List[str]:
        cleaned: List[str] = []
        for topic in topics:
            label = " ".join(str(topic).lower().split())[:MAX_TOPIC_LENGTH]
            if label and label not in cleaned:
                cleaned.append(label)
        return cleaned[:MAX_TOPICS] or [DEFAULT_TOPIC]

    async def extract_topics(self, qa_pair: QAPair) -> List[str]:
        with logfire.span('agent_topic_analyzer.extract_topics') as span:
            try:
                result = await self.agent.run(
                    format_as_xml({'question': qa_pair.question, 'answer': qa_pair.answer})
                )
            except Exception as e:
                logger.error(safe_error_message(e, "Topic extraction agent failed"))
                raise ClassificationError("Topic extraction failed", e) from e

            topics = self.normalize_topics(result.output.topics)
            span.set_attribute('topics', topics)
            return topics

    def determine_relationship(
        self, new_topic: str, existing_nodes: Sequence[TopicNode]
    ) -> TopicRelationship:
        return self.classifier.determine_relationship(new_topic, existing_nodes)
