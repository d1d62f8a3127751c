"""Typed error family for the agent runtime.

Errors raised inside tool handlers never leave the tool router; they are
turned into ``ToolResult`` data. Errors from the model engine or the
embedding index are structural and end the current session.
"""

from __future__ import annotations


class EdgeAgentError(Exception):
    """Base class for runtime errors."""

    retryable: bool = False


class ModelLoadError(EdgeAgentError):
    """A model artifact could not be loaded for a role."""

    retryable = True

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class EmbeddingError(EdgeAgentError):
    """The embedding engine rejected or failed on an input."""


class DimensionMismatchError(EdgeAgentError, ValueError):
    """A vector's length differs from the index dimension."""

    def __init__(self, expected: int | None, actual: int) -> None:
        super().__init__(f"expected vector of dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class DuplicateToolError(EdgeAgentError, ValueError):
    """A tool name was registered twice."""


class UnknownToolError(EdgeAgentError, KeyError):
    """A tool invocation named an unregistered tool."""


class ToolValidationError(EdgeAgentError):
    """Tool arguments did not match the registered schema."""


class ToolExecutionError(EdgeAgentError):
    """A tool handler failed or timed out."""

    def __init__(self, message: str, *, kind: str = "execution") -> None:
        super().__init__(message)
        self.kind = kind


class GenerationAborted(EdgeAgentError):
    """The generation stream failed mid-way."""

    retryable = True

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class GenerationTimeout(EdgeAgentError):
    """Generation exceeded its wall-clock budget."""

    retryable = True


class ToolLoopLimitExceeded(EdgeAgentError):
    """The model requested more tool rounds than allowed."""


class CancellationRequested(EdgeAgentError):
    """The caller asked the session to stop."""
