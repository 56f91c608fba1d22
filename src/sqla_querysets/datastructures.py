from __future__ import annotations

import enum
import sys
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from .exceptions import UnknownRelation, UnresolvedFieldPath
from .tools import LOOKUP_SEP, normalize_path


if TYPE_CHECKING:
    from .node import Relation


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Used for the model registry held by ``Node`` and for the children of a
    ``JoinPlan``, so both can take part in ``lru_cache`` keys and frozen
    dataclasses.

    Example:
        >>> fd = frozendict({"author": 1})
        >>> fd.set("publisher", 2)
        <frozendict {'author': 1, 'publisher': 2}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def set(self, key: K, value: V) -> Self:
        """Return a copy with *key* bound to *value*."""
        return type(self)({**self._dict, key: value})

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


class FetchKind(enum.Enum):
    NONE = "none"
    RECURSIVE = "recursive"
    EXPLICIT = "explicit"


@dataclass(frozen=True, slots=True)
class RelatedFetchSpec:
    """Which foreign-key related objects a QuerySet hydrates eagerly.

    ``NONE`` joins nothing for hydration, ``RECURSIVE`` follows every foreign
    key transitively and ``EXPLICIT`` follows only the given paths.
    """

    kind: FetchKind = FetchKind.NONE
    paths: frozenset[str] = frozenset()

    @classmethod
    def none(cls) -> RelatedFetchSpec:
        return cls()

    @classmethod
    def recursive(cls) -> RelatedFetchSpec:
        return cls(kind=FetchKind.RECURSIVE)

    @classmethod
    def explicit(cls, paths: Iterable[str]) -> RelatedFetchSpec:
        normalized: set[str] = set()
        for path in paths:
            try:
                normalized.add(normalize_path(path))
            except ValueError:
                raise UnknownRelation("Malformed relation path", path=path) from None

        if not normalized:
            return cls()

        return cls(kind=FetchKind.EXPLICIT, paths=frozenset(normalized))


@dataclass(frozen=True, slots=True)
class JoinPlan:
    """Tree of joins rooted at the queried model.

    Children are keyed by foreign-key field name. ``fetch`` is ``True`` for
    nodes whose related object is hydrated and ``False`` for joins that only
    serve filtering, ordering or value projection.
    """

    model: type[Any]
    relation: Relation | None = None
    fetch: bool = True
    children: frozendict[str, JoinPlan] = field(default_factory=frozendict)

    def merge(self, other: JoinPlan) -> JoinPlan:
        """Merge two plans for the same model, sharing common prefixes."""
        if other.model is not self.model:
            raise ValueError(
                f"Cannot merge join plan for {other.model.__name__} "
                f"into plan for {self.model.__name__}"
            )

        children = self.children
        for key, child in other.children.items():
            existing = children.get(key)
            children = children.set(key, existing.merge(child) if existing else child)

        return replace(self, fetch=self.fetch or other.fetch, children=children)

    def walk(self, path: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], JoinPlan]]:
        """Yield ``(path, node)`` pairs in pre-order, starting with the root at ``()``."""
        yield path, self
        for key, child in self.children.items():
            yield from child.walk((*path, key))

    def get(self, path: tuple[str, ...]) -> JoinPlan | None:
        current: JoinPlan | None = self
        for key in path:
            if current is None:
                return None
            current = current.children.get(key)

        return current

    @property
    def joins(self) -> int:
        """Number of join edges in the plan."""
        return sum(1 for path, _ in self.walk() if path)

    def paths(self) -> list[str]:
        return [LOOKUP_SEP.join(path) for path, _ in self.walk() if path]


def _normalize_field(field_path: str) -> str:
    try:
        return normalize_path(field_path)
    except ValueError:
        raise UnresolvedFieldPath("Malformed field path", field_path=field_path) from None

class Direction(enum.Enum):
    ASC = "ASC"
    DESC = "DESC"


@dataclass(frozen=True, slots=True)
class OrderBy:
    field_path: str
    direction: Direction = Direction.ASC

    @classmethod
    def parse(cls, value: str | tuple[str, str | Direction] | OrderBy) -> OrderBy:
        """Accept ``"-title"``, ``("title", "desc")`` or an ``OrderBy``.

        Raises:
            UnresolvedFieldPath: On a malformed field path.
            ValueError: On an unknown direction.
        """
        if isinstance(value, OrderBy):
            return value

        if isinstance(value, str):
            descending = value.startswith("-")
            return cls(
                _normalize_field(value.lstrip("-")),
                Direction.DESC if descending else Direction.ASC,
            )

        field_path, direction = value
        if not isinstance(direction, Direction):
            direction = Direction(direction.upper())

        return cls(_normalize_field(field_path), direction)


@dataclass(frozen=True, slots=True)
class Limit:
    """Pagination window.

    ``count=None`` means no explicit limit (only ``offset`` applies);
    ``count=0`` selects zero rows.
    """

    offset: int = 0
    count: int | None = None

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError(f"Negative offset {self.offset}")
        if self.count is not None and self.count < 0:
            raise ValueError(f"Negative count {self.count}")

    def narrow(self, offset: int, count: int | None) -> Limit:
        """Apply a window relative to this one, as slicing a sliced QuerySet does."""
        start = self.offset + offset
        if self.count is None:
            return Limit(start, count)

        available = max(self.count - offset, 0)
        return Limit(start, available if count is None else min(count, available))
