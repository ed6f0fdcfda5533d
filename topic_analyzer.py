"""
Topic analysis for conversation grading.

This module extracts candidate topic labels from Q&A pairs and classifies how
a new topic relates to the topics already present in a conversation tree.
The heuristics are stateless; their word tables are fixed at import time.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections import Counter
from typing import FrozenSet, List, Optional, Sequence, Tuple

import logfire

from grading_entities import QAPair, RelationshipType, TopicNode, TopicRelationship


DEFAULT_TOPIC = "general discussion"

CHILD_SIMILARITY_THRESHOLD = 0.6
SIBLING_SIMILARITY_THRESHOLD = 0.4
RELATED_SIMILARITY_THRESHOLD = 0.25

CONTINUATION_CONFIDENCE = 0.8
RELATED_ROOT_CONFIDENCE = 0.8
RELATED_TERMS_BOOST = 0.3
PARTIAL_MATCH_WEIGHT = 0.2

CONTINUATION_KEYWORDS: Tuple[str, ...] = (
    'also', 'additionally', 'furthermore', 'moreover', 'besides',
    'what about', 'how about', 'tell me more', 'can you explain',
    'what else', 'anything else', 'more details', 'elaborate',
    'follow up', 'building on', 'expanding on', 'related to',
)

STOP_WORDS: FrozenSet[str] = frozenset({
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
    'of', 'with', 'by', 'is', 'are', 'was', 'were', 'be', 'been', 'being',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could',
    'should', 'may', 'might', 'can', 'this', 'that', 'these', 'those',
})

STOP_PHRASES: FrozenSet[str] = frozenset({
    'what', 'understand', 'what don', 'don', 'know', 'think',
    'like', 'want', 'need', 'get', 'make', 'take', 'come', 'see',
    'don understand', 'what don understand',
})

# Curated clusters of domain terms that count as related
RELATED_TERM_GROUPS: Tuple[Tuple[str, ...], ...] = (
    ('machine', 'learning', 'ml'),
    ('neural', 'network', 'deep'),
    ('artificial', 'intelligence', 'ai'),
    ('supervised', 'unsupervised', 'reinforcement'),
    ('algorithm', 'model', 'training'),
    ('web', 'frontend', 'backend', 'development', 'website'),
    ('programming', 'coding', 'software', 'program'),
    ('computer', 'science', 'technology'),
    ('mobile', 'app', 'application'),
    ('data', 'database', 'storage'),
    ('algorithm', 'algorithms', 'procedure'),
    ('language', 'languages', 'code'),
)

MAX_TOPICS = 3

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


class BaseTopicAnalyzer(ABC):
    """Interface for topic extraction and relationship classification."""

    @abstractmethod
    async def extract_topics(self, qa_pair: QAPair) -> List[str]:
        """Return one to three candidate topic labels, best first."""

    @abstractmethod
    def determine_relationship(
        self, new_topic: str, existing_nodes: Sequence[TopicNode]
    ) -> TopicRelationship:
        """Classify how ``new_topic`` relates to ``existing_nodes``."""


class TopicAnalyzer(BaseTopicAnalyzer):
    """Keyword and n-gram based topic analyzer."""

    async def extract_topics(self, qa_pair: QAPair) -> List[str]:
        """
        Extract primary topics from a Q&A pair.

        Args:
            qa_pair: The Q&A pair to analyze

        Returns:
            Up to three topic labels ranked by frequency, or the generic
            label when nothing meaningful survives filtering
        """
        with logfire.span("topic_analyzer.extract_topics") as span:
            combined = f"{qa_pair.question} {qa_pair.answer}".lower()
            words = self.clean_text(combined)
            topics = self.filter_topics(self.extract_key_phrases(words))
            if not topics:
                topics = [DEFAULT_TOPIC]

            span.set_attribute("topics", topics)
            return topics

    def determine_relationship(
        self, new_topic: str, existing_nodes: Sequence[TopicNode]
    ) -> TopicRelationship:
        """
        Determine how a new topic relates to the existing nodes.

        Args:
            new_topic: The new topic label
            existing_nodes: Every node currently in the tree

        Returns:
            The relationship with its confidence
        """
        if not existing_nodes:
            return TopicRelationship(type=RelationshipType.NEW_ROOT, confidence=1.0)

        continuation = self.check_for_continuation(new_topic, existing_nodes)
        if continuation is not None:
            return continuation

        # max() keeps the first node on ties, so earlier nodes win
        best_node, best_similarity = max(
            ((node, self.calculate_topic_similarity(new_topic, node.topic)) for node in existing_nodes),
            key=lambda pair: pair[1],
        )

        if best_similarity >= CHILD_SIMILARITY_THRESHOLD:
            relationship = TopicRelationship(
                type=RelationshipType.CHILD_OF,
                parent_node_id=best_node.id,
                confidence=best_similarity,
            )
        elif best_similarity >= SIBLING_SIMILARITY_THRESHOLD:
            if best_node.parent_topic is not None:
                relationship = TopicRelationship(
                    type=RelationshipType.SIBLING_OF,
                    parent_node_id=best_node.parent_topic,
                    related_node_id=best_node.id,
                    confidence=best_similarity,
                )
            else:
                relationship = TopicRelationship(
                    type=RelationshipType.CHILD_OF,
                    parent_node_id=best_node.id,
                    confidence=best_similarity,
                )
        elif best_similarity >= RELATED_SIMILARITY_THRESHOLD:
            contextual_parent = self.find_contextual_parent(new_topic, existing_nodes, best_node)
            if contextual_parent is not None:
                relationship = TopicRelationship(
                    type=RelationshipType.CHILD_OF,
                    parent_node_id=contextual_parent.id,
                    related_node_id=best_node.id,
                    confidence=best_similarity,
                )
            else:
                relationship = TopicRelationship(
                    type=RelationshipType.NEW_ROOT,
                    related_node_id=best_node.id,
                    confidence=RELATED_ROOT_CONFIDENCE,
                )
        else:
            relationship = TopicRelationship(
                type=RelationshipType.NEW_ROOT,
                confidence=1.0 - best_similarity,
            )

        logfire.info(
            "Topic relationship determined",
            topic=new_topic,
            relationship=relationship.type.value,
            best_match=best_node.id,
            similarity=best_similarity,
        )
        return relationship

    @staticmethod
    def clean_text(text: str) -> List[str]:
        """Strip punctuation and stop words, returning the remaining words."""
        text = _WHITESPACE.sub(" ", _PUNCTUATION.sub(" ", text))
        return [word for word in text.split(" ") if len(word) > 2 and word not in STOP_WORDS]

    @staticmethod
    def extract_key_phrases(words: List[str]) -> List[str]:
        """Collect 1-, 2- and 3-word phrases long enough to be meaningful."""
        phrases = [word for word in words if len(word) > 3]
        phrases.extend(
            phrase for phrase in (" ".join(words[i:i + 2]) for i in range(len(words) - 1))
            if len(phrase) > 6
        )
        phrases.extend(
            phrase for phrase in (" ".join(words[i:i + 3]) for i in range(len(words) - 2))
            if len(phrase) > 10
        )
        return phrases

    @staticmethod
    def filter_topics(phrases: List[str]) -> List[str]:
        """Rank phrases by frequency, dropping stop phrases; keep the top three."""
        # Counter preserves first-seen order, and most_common is stable on ties
        counts = Counter(
            phrase for phrase in phrases
            if len(phrase) > 3 and phrase.lower() not in STOP_PHRASES
        )
        return [phrase for phrase, _ in counts.most_common(MAX_TOPICS)]

    @staticmethod
    def check_for_continuation(
        new_topic: str, existing_nodes: Sequence[TopicNode]
    ) -> Optional[TopicRelationship]:
        """Treat explicit follow-up phrasing as a continuation of the latest topic."""
        lower_topic = new_topic.lower()
        if not existing_nodes or not any(keyword in lower_topic for keyword in CONTINUATION_KEYWORDS):
            return None

        most_recent = existing_nodes[0]
        for node in existing_nodes[1:]:
            if node.updated_at > most_recent.updated_at:
                most_recent = node

        return TopicRelationship(
            type=RelationshipType.CONTINUATION,
            parent_node_id=most_recent.id,
            confidence=CONTINUATION_CONFIDENCE,
        )

    def find_contextual_parent(
        self,
        new_topic: str,
        existing_nodes: Sequence[TopicNode],
        best_match: TopicNode,
    ) -> Optional[TopicNode]:
        """
        Look for a broader home for a loosely related topic.

        Walks up from the best match and returns the nearest ancestor that is
        itself related to the new topic.
        """
        by_id = {node.id: node for node in existing_nodes}
        seen = {best_match.id}
        parent_id = best_match.parent_topic
        while parent_id is not None and parent_id not in seen:
            parent = by_id.get(parent_id)
            if parent is None:
                return None
            if self.calculate_topic_similarity(new_topic, parent.topic) >= RELATED_SIMILARITY_THRESHOLD:
                return parent
            seen.add(parent_id)
            parent_id = parent.parent_topic
        return None

    def calculate_topic_similarity(self, topic1: str, topic2: str) -> float:
        """Jaccard word overlap boosted by related terms and partial matches, in [0, 1]."""
        words1 = {word for word in topic1.lower().split(" ") if len(word) > 2}
        words2 = {word for word in topic2.lower().split(" ") if len(word) > 2}

        if not words1 and not words2:
            return 1.0
        if not words1 or not words2:
            return 0.0

        similarity = len(words1 & words2) / len(words1 | words2)
        similarity = min(1.0, similarity + self.check_related_terms(topic1, topic2))
        similarity = min(1.0, similarity + self.check_partial_matches(topic1, topic2))
        return max(0.0, similarity)

    @staticmethod
    def check_related_terms(topic1: str, topic2: str) -> float:
        words1 = topic1.lower().split(" ")
        words2 = topic2.lower().split(" ")

        for group in RELATED_TERM_GROUPS:
            in_first = any(term in word for term in group for word in words1)
            in_second = any(term in word for term in group for word in words2)
            if in_first and in_second:
                return RELATED_TERMS_BOOST
        return 0.0

    @staticmethod
    def check_partial_matches(topic1: str, topic2: str) -> float:
        """Reward substring and shared-prefix matches between longer words."""
        words1 = [word for word in topic1.lower().split(" ") if len(word) >= 4]
        words2 = [word for word in topic2.lower().split(" ") if len(word) >= 4]

        matches = 0.0
        comparisons = 0
        for word1 in words1:
            for word2 in words2:
                comparisons += 1
                if word1 in word2 or word2 in word1:
                    matches += 1
                elif len(word1) > 4 and len(word2) > 4 and word1[:4] == word2[:4]:
                    matches += 0.5

        if comparisons == 0:
            return 0.0
        return (matches / comparisons) * PARTIAL_MATCH_WEIGHT
