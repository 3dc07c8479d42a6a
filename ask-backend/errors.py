"""
Error taxonomy for the Ask backend.

Every error carries the offending query text where there is one, because
the people reading these errors are operators debugging proposer prompts.

    ProposalParseError  proposer output has no usable JSON / no query field
    ValidationError     safety guard rejected the sanitized query
    ExecutionError      the store rejected the sanitized query
    CollaboratorError   proposer or summarizer transport failure
    BothFailedError     tabular and pattern branches both failed

A sparse result is not an error; it is recorded on the FallbackEvent.
"""

from typing import Optional


class AskError(Exception):
    """Base class. `query` is the offending query text, when safe to reveal."""

    def __init__(self, message: str, query: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.query = query

    def to_detail(self) -> str:
        if self.query:
            return f"{self.message} (query: {self.query})"
        return self.message


class ProposalParseError(AskError):
    pass


class ValidationError(AskError):
    pass


class ExecutionError(AskError):
    pass


class CollaboratorError(AskError):
    pass


class BothFailedError(AskError):
    """Raised when the tabular and pattern branches both errored."""

    def __init__(self, tabular_error: Exception, pattern_error: Exception):
        self.tabular_error = tabular_error
        self.pattern_error = pattern_error
        super().__init__(
            f"Both queries failed. Tabular: {_describe(tabular_error)}. "
            f"Pattern: {_describe(pattern_error)}"
        )


def _describe(error: Exception) -> str:
    if isinstance(error, AskError):
        return error.to_detail()
    return str(error) or error.__class__.__name__
