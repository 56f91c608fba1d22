"""Exceptions raised by sqla_querysets.

Every error carries a human-readable ``message`` plus optional ``details``
(model, field path, statement, ...) that are rendered into ``str(exc)``.
"""

from __future__ import annotations

from typing import Any


class QuerySetError(Exception):
    """Base exception for all sqla_querysets errors.

    Attributes:
        message: Error message.
        details: Additional context as key-value pairs.
    """

    def __init__(self, message: str = "", **details: Any) -> None:
        self.message = message
        self.details: dict[str, Any] = details
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if not self.details:
            return self.message

        details_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
        if self.message:
            return f"{self.message} ({details_str})"
        return details_str

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r}, details={self.details!r})"


class InvalidPredicate(QuerySetError, ValueError):
    """Raised when a predicate is built with an operand its operator cannot accept.

    Example:
        >>> raise InvalidPredicate("IS_IN requires a sequence operand", field_path="id", operand=3)
    """


class FieldPathError(QuerySetError, LookupError):
    """Base for errors resolving a ``__``-separated path against model metadata."""


class UnknownRelation(FieldPathError):
    """Raised when a ``select_related`` path segment is not a foreign key of its model."""


class UnresolvedFieldPath(FieldPathError):
    """Raised when a filter, ordering or projection path does not end in a column."""


class DriverError(QuerySetError):
    """Raised when the underlying driver fails to execute a statement.

    The original exception is always available as ``__cause__``.
    """


class ConstraintViolation(DriverError):
    """Raised when the database rejects a statement because of an integrity constraint."""


class UnboundQuerySet(QuerySetError, RuntimeError):
    """Raised when a materializer is called on a QuerySet with no driver."""
