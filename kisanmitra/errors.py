"""Error taxonomy shared by the stores, the engine and the tool layer."""

import warnings

import structlog

logger = structlog.get_logger()


class KnowledgeError(Exception):
    """Base class for every error raised across a component boundary."""

    code = "knowledge_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(KnowledgeError):
    """Missing or malformed argument. Never retried."""

    code = "validation_error"


class NotFoundError(KnowledgeError):
    """No data for the requested entity or window."""

    code = "not_found"


class ProviderError(KnowledgeError):
    """Embedding provider or storage backend unavailable."""

    code = "provider_error"


class DeadlineExceededError(KnowledgeError):
    """A scan-style operation ran past its caller-supplied deadline."""

    code = "deadline_exceeded"


class ConsistencyWarning(UserWarning):
    """Asymmetric edge or stale aggregate detected. Never fatal."""


def report_inconsistency(message: str, **context) -> None:
    """Log a consistency problem and emit it as a ConsistencyWarning."""
    logger.warning(message, **context)
    warnings.warn(message, ConsistencyWarning, stacklevel=2)
