"""
Scoring strategies and the scoring engine.

A scoring strategy is a pure async function of a Q&A pair and a read-only
ScoringContext. Strategies never see the live tree, so calling one twice with
the same inputs gives the same score no matter what happened to the tree in
between.

The ScoringEngine runs the configured strategy with a timeout (and optionally
through a circuit breaker) and substitutes the default score on any failure,
so a broken scorer never blocks tree growth.
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections import Counter, deque
from typing import Any, Deque, Dict, List, Optional

import logfire

from grading_circuit_breaker import CircuitOpenError, ScoringCircuitBreaker
from grading_config import get_config
from grading_entities import QAPair, ScoringContext
from grading_errors import (
    ErrorRecord,
    GradingErrorType,
    ScoringError,
    ValidationError,
    safe_error_message,
)
from grading_validation import validate_qa_pair, validate_score, validate_scoring_context


logger = logging.getLogger(__name__)


def _round_score(value: float) -> float:
    """Clamp to [0, 100] and round half up."""
    return float(math.floor(max(0.0, min(100.0, value)) + 0.5))


class ScoringStrategy(ABC):
    """A pluggable, side-effect free scoring function."""

    @abstractmethod
    async def calculate_score(self, qa_pair: QAPair, context: ScoringContext) -> float:
        """Return a score in [0, 100] for ``qa_pair`` given ``context``."""


class BaseScoringStrategy(ScoringStrategy):
    """Longer answers score higher, with a small bonus for deeper topics."""

    async def calculate_score(self, qa_pair: QAPair, context: ScoringContext) -> float:
        depth_factor = max(1, context.topic_depth)
        base_score = min(100.0, len(qa_pair.answer) / 10)
        return _round_score(base_score * (1 + (depth_factor - 1) * 0.1))


class QualityScoringStrategy(ScoringStrategy):
    """Rewards reasoning, examples and nuance; penalises terse answers."""

    async def calculate_score(self, qa_pair: QAPair, context: ScoringContext) -> float:
        answer = qa_pair.answer.lower()
        score = 50.0

        if any(word in answer for word in ('because', 'therefore', 'since')):
            score += 15
        if 'example' in answer or 'for instance' in answer:
            score += 10
        if len(answer) > 100:
            score += 10
        if any(word in answer for word in ('however', 'although', 'but')):
            score += 5

        if len(answer) < 20:
            score -= 20
        if answer in ('yes', 'no', 'maybe'):
            score -= 30

        return max(0.0, min(100.0, score))


TECHNICAL_TERMS = ('algorithm', 'implementation', 'architecture', 'pattern', 'framework')


class ComplexityScoringStrategy(ScoringStrategy):
    """Rewards deeper topics and technical vocabulary."""

    async def calculate_score(self, qa_pair: QAPair, context: ScoringContext) -> float:
        answer = qa_pair.answer.lower()
        base_score = min(70.0, len(qa_pair.answer) / 15)
        complexity_bonus = min(3.0, context.topic_depth * 0.5) * 10
        technical_bonus = sum(5 for term in TECHNICAL_TERMS if term in answer)
        return _round_score(base_score + complexity_bonus + technical_bonus)


REFERENCE_PHRASES = ('as mentioned', 'previously', 'earlier', 'building on', 'following up')

_CONTEXT_STOP_WORDS = frozenset({
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
    'of', 'with', 'by', 'is', 'are', 'was', 'were',
})


class ContextAwareScoringStrategy(ScoringStrategy):
    """Rewards answers that build on earlier turns of the conversation.

    The last entry of the conversation history is the pair being scored and
    is excluded from the comparison.
    """

    async def calculate_score(self, qa_pair: QAPair, context: ScoringContext) -> float:
        score = 60.0
        previous_answers = [qa.answer.lower() for qa in context.conversation_history[:-1]]
        current_answer = qa_pair.answer.lower()

        if any(phrase in current_answer for phrase in REFERENCE_PHRASES):
            score += 15

        if previous_answers:
            common = self.find_common_words(previous_answers, current_answer)
            score += min(20, len(common) * 2)

        score += min(20.0, len(qa_pair.answer) / 20)
        return _round_score(score)

    @staticmethod
    def find_common_words(previous_answers: List[str], current_answer: str) -> List[str]:
        def significant(text: str) -> List[str]:
            return [word for word in text.split() if len(word) > 3 and word not in _CONTEXT_STOP_WORDS]

        previous_words = set(significant(" ".join(previous_answers)))
        return [word for word in significant(current_answer) if word in previous_words]


DEFAULT_WEIGHTS = {
    "length": 0.3,
    "quality": 0.4,
    "depth": 0.2,
    "context": 0.1,
}


class WeightedScoringStrategy(ScoringStrategy):
    """Weighted blend of length, quality, depth and context components."""

    def __init__(self, weights: Optional[Dict[str, float]] = None):
        self._weights = dict(DEFAULT_WEIGHTS)
        self._quality = QualityScoringStrategy()
        self._context = ContextAwareScoringStrategy()
        if weights:
            self.set_weights(**weights)

    @property
    def weights(self) -> Dict[str, float]:
        return dict(self._weights)

    def set_weights(self, **weights: float) -> None:
        """Override some or all component weights."""
        unknown = set(weights) - set(DEFAULT_WEIGHTS)
        if unknown:
            raise ValidationError(f"Unknown weight components: {sorted(unknown)}", "weights", weights)
        for name, value in weights.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ValidationError(f"Weight {name} must be a non-negative number", "weights", value)
        self._weights.update(weights)

    async def calculate_score(self, qa_pair: QAPair, context: ScoringContext) -> float:
        components = {
            "length": min(100.0, len(qa_pair.answer) / 10),
            "quality": await self._quality.calculate_score(qa_pair, context),
            "depth": min(100.0, context.topic_depth * 20.0),
            "context": await self._context.calculate_score(qa_pair, context),
        }
        return _round_score(sum(components[name] * self._weights[name] for name in components))


class ScoringEngine:
    """Runs a scoring strategy with timeout, circuit breaking and a default fallback."""

    def __init__(
        self,
        strategy: Optional[ScoringStrategy] = None,
        default_score: Optional[float] = None,
        timeout: Optional[float] = None,
        circuit_breaker: Optional[ScoringCircuitBreaker] = None,
        max_error_history: int = 100,
    ):
        scoring_config = get_config().scoring
        self._strategy: ScoringStrategy = BaseScoringStrategy()
        if strategy is not None:
            self.set_strategy(strategy)
        self.default_score = scoring_config.default_score if default_score is None else default_score
        validate_score(self.default_score)
        self.timeout = scoring_config.timeout_seconds if timeout is None else timeout
        self.circuit_breaker = circuit_breaker
        self._errors: Deque[ErrorRecord] = deque(maxlen=max_error_history)
        self._failure_count = 0

    def set_strategy(self, strategy: ScoringStrategy) -> None:
        """Swap the active strategy.

        Raises:
            ValidationError: If ``strategy`` has no callable ``calculate_score``
        """
        if strategy is None or not callable(getattr(strategy, "calculate_score", None)):
            raise ValidationError(
                "Strategy must implement calculate_score", "strategy", strategy
            )
        self._strategy = strategy

    def get_current_strategy(self) -> ScoringStrategy:
        return self._strategy

    @property
    def failure_count(self) -> int:
        """Number of calls that fell back to the default score."""
        return self._failure_count

    async def _invoke(self, qa_pair: QAPair, context: ScoringContext) -> Any:
        if self.circuit_breaker is not None:
            return await self.circuit_breaker.call(self._strategy.calculate_score, qa_pair, context)
        return await self._strategy.calculate_score(qa_pair, context)

    async def calculate_score(self, qa_pair: QAPair, context: ScoringContext) -> float:
        """
        Score a Q&A pair, degrading to the default score on failure.

        Args:
            qa_pair: The pair to score
            context: Snapshot of the topic, history and depth

        Returns:
            The strategy's score, or the default score if the strategy raised,
            timed out, was short-circuited or returned an invalid value

        Raises:
            ValidationError: If the inputs themselves are malformed
        """
        validate_qa_pair(qa_pair)
        validate_scoring_context(context)

        strategy_name = type(self._strategy).__name__
        with logfire.span("scoring_engine.calculate_score", strategy=strategy_name) as span:
            try:
                score = await asyncio.wait_for(self._invoke(qa_pair, context), timeout=self.timeout)
                if score is None:
                    raise ScoringError("Strategy returned no score")
                try:
                    validate_score(score)
                except ValidationError as e:
                    raise ScoringError(f"Strategy returned an invalid score: {e}", e) from e
                span.set_attribute("score", float(score))
                return float(score)

            except asyncio.TimeoutError:
                self._record_failure(
                    GradingErrorType.TIMEOUT_ERROR,
                    f"Scoring timed out after {self.timeout}s",
                    strategy_name,
                )
            except CircuitOpenError as e:
                self._record_failure(GradingErrorType.CIRCUIT_OPEN, str(e), strategy_name)
            except Exception as e:
                self._record_failure(
                    GradingErrorType.SCORING_ERROR,
                    safe_error_message(e, "Scoring strategy failed"),
                    strategy_name,
                )

            span.set_attribute("score", self.default_score)
            span.set_attribute("fallback", True)
            return float(self.default_score)

    def _record_failure(self, error_type: GradingErrorType, message: str, strategy_name: str) -> None:
        self._failure_count += 1
        record = ErrorRecord(
            error_type=error_type,
            message=message,
            context={"strategy": strategy_name},
            fallback_used="default_score",
        )
        self._errors.append(record)
        logger.warning(f"{message}; using default score {self.default_score}")
        logfire.warning("Scoring degraded to default score", **record.to_log_dict())

    def get_recent_errors(self, limit: Optional[int] = None) -> List[ErrorRecord]:
        errors = list(self._errors)
        return errors[-limit:] if limit else errors

    def get_error_summary(self) -> Dict[str, Any]:
        """Counts of recorded degradations by type."""
        by_type = Counter(record.error_type.value for record in self._errors)
        return {
            "total_failures": self._failure_count,
            "recorded": len(self._errors),
            "by_type": dict(by_type),
            "last_error": self._errors[-1].to_log_dict() if self._errors else None,
        }

    def clear_errors(self) -> None:
        self._errors.clear()
        self._failure_count = 0
