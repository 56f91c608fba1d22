from __future__ import annotations

from functools import lru_cache
from typing import Any, Final, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm


T = TypeVar("T", bound=orm.DeclarativeBase)

LOOKUP_SEP: Final[str] = "__"
LIKE_ESCAPE: Final[str] = "!"


@lru_cache
def _get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Return the first primary-key column element for *model* (cached)."""
    return next(iter(model.__table__.primary_key))


@lru_cache
def _get_table_name(model: type[T]) -> str:
    """Return the table name for *model*, preferring ``__tablename__`` (cached)."""
    result = getattr(
        model,
        "__tablename__",
        model.__table__.description,
    )
    if not result:
        raise ValueError(f"Cannot determine tablename for {model}")

    return result


def get_table_name(model: type[T]) -> str:
    """Get the table name for a SQLAlchemy model.

    Raises:
        ValueError: If the table name cannot be determined.
    """
    return _get_table_name(model)


def get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Get the primary key column for a SQLAlchemy model."""
    return _get_primary_key(model)


def normalize_path(path: str) -> str:
    """Normalize a relation path to the ``__`` separator.

    Dotted paths (``"publisher.location"``) are accepted for compatibility
    with attribute-style spelling.

    Raises:
        ValueError: If the path is empty or has an empty segment.
    """
    normalized = path.replace(".", LOOKUP_SEP)
    if not normalized or any(not part for part in normalized.split(LOOKUP_SEP)):
        raise ValueError(f"Invalid path {path!r}")

    return normalized


def split_path(path: str) -> tuple[str, ...]:
    return tuple(normalize_path(path).split(LOOKUP_SEP))


def escape_like(value: str) -> str:
    """Escape LIKE wildcards in *value* using ``LIKE_ESCAPE``."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )
