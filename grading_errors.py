"""
Error taxonomy for the conversation grading engine.

Callers distinguish their own mistakes (``ValidationError`` and its
subclasses) from invariant violations (``TreeIntegrityError``), analyzer
failures (``ClassificationError``) and storage failures
(``PersistenceError``). ``ScoringError`` never leaves the scoring engine:
it is recorded and replaced with the default score.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class GradingError(Exception):
    """Base class for all grading engine errors."""


class ValidationError(GradingError):
    """Malformed input supplied by the caller."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value


class NodeNotFoundError(ValidationError):
    """A node id does not exist in the tree."""

    def __init__(self, node_id: str):
        super().__init__(f"Node with ID {node_id} not found", "nodeId", node_id)
        self.node_id = node_id


class SessionNotFoundError(ValidationError):
    """A session id is not registered."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} does not exist", "sessionId", session_id)
        self.session_id = session_id


class SessionExistsError(ValidationError):
    """A session id is already registered."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} already exists", "sessionId", session_id)
        self.session_id = session_id


class ActiveSessionError(ValidationError):
    """The operation is not allowed on the currently active session."""

    def __init__(self, session_id: str):
        super().__init__(
            f"Cannot delete the current active session {session_id}", "sessionId", session_id
        )
        self.session_id = session_id


class TreeIntegrityError(GradingError):
    """A tree invariant was violated by a mutation attempt."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id


class ClassificationError(GradingError):
    """The topic analyzer failed to extract or classify a topic."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class ScoringError(GradingError):
    """A scoring strategy failed or returned an unusable score."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class PersistenceError(GradingError):
    """Saving or loading a session failed."""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id


class GradingErrorType(str, Enum):
    """Categories of recorded errors."""

    VALIDATION_ERROR = "validation_error"
    TREE_INTEGRITY_ERROR = "tree_integrity_error"
    CLASSIFICATION_ERROR = "classification_error"
    SCORING_ERROR = "scoring_error"
    TIMEOUT_ERROR = "timeout_error"
    CIRCUIT_OPEN = "circuit_open"
    PERSISTENCE_ERROR = "persistence_error"
    UNKNOWN_ERROR = "unknown_error"


class ErrorRecord(BaseModel):
    """Structured error information for degraded operations."""

    error_type: GradingErrorType
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    is_recoverable: bool = Field(default=True)
    fallback_used: Optional[str] = None

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            'error_type': self.error_type.value,
            'message': self.message,
            'context': self.context,
            'timestamp': self.timestamp.isoformat(),
            'is_recoverable': self.is_recoverable,
            'fallback_used': self.fallback_used
        }


_SENSITIVE_PATTERNS = (
    (re.compile(r"\b\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?\b"), "[TIMESTAMP]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN]"),
    (re.compile(r"\b\d{4}-\d{4}-\d{4}-\d{4}\b"), "[CARD]"),
)


def safe_error_message(error: BaseException, context: Optional[str] = None) -> str:
    """Render an error for logs with personal data masked."""
    message = str(error) or error.__class__.__name__
    if context:
        message = f"{context}: {message}"
    for pattern, replacement in _SENSITIVE_PATTERNS:
        message = pattern.sub(replacement, message)
    return message
