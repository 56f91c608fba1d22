"""Lazy, immutable querysets.

A QuerySet describes a query against one model: a predicate tree, ordering,
a pagination window and a related-fetch spec. Every chaining method returns a
new QuerySet; nothing runs until a materializer (``count``, ``remove``,
``fetch``, ``values``, iteration, ...) is called, and every materializer
executes exactly one statement.

``size()`` and ``at()`` do not cache rows: each call is its own round trip
(a COUNT and a single-row SELECT respectively). Ordering always ends with the
primary key, so ``at(i)`` agrees with full materialization.

Example:
    >>> qs = QuerySet(Book, Driver(engine))
    >>> qs = qs.filter(eq("publisher__location__name", "Oslo"))
    >>> qs = qs.exclude(Q(title__startswith="Draft"))
    >>> books = qs.select_related("publisher__location").order_by("-title").limit(0, 10).fetch()
"""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator, Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Any, Generic, TypeVar, overload


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from sqlalchemy import orm

from .datastructures import JoinPlan, Limit, OrderBy, RelatedFetchSpec
from .driver import AsyncDriver, Driver, Row
from .exceptions import UnboundQuerySet
from .node import ModelMeta, Node
from .predicate import Predicate, Q, and_, not_
from .resolver import resolve_field, resolve_related
from .settings import settings
from .translator import Projection, SQLTranslator, Statement


T = TypeVar("T", bound=orm.DeclarativeBase)
D = TypeVar("D", Driver, AsyncDriver)

Processor = Callable[[Any], Any] | None


@lru_cache(maxsize=8)
def _default_translator(dialect_name: str) -> SQLTranslator:
    return SQLTranslator.for_dialect(dialect_name)


def _process(row: Sequence[Any], processors: Sequence[Processor]) -> tuple[Any, ...]:
    return tuple(
        value if processor is None or value is None else processor(value)
        for value, processor in zip(row, processors)
    )


@dataclass(frozen=True, slots=True)
class _Layout:
    """How to turn one result row into a hydrated object graph."""

    projections: tuple[Projection, ...]
    processors: tuple[Processor, ...]

    def hydrate(self, row: Row) -> Any:
        """Build the root instance and wire each fetched related instance into its parent.

        Projections come in plan pre-order, so a parent is always built before
        its children. A related row whose primary key is NULL (unmatched outer
        join) hydrates as ``None``.
        """
        values = _process(row, self.processors)
        instances: dict[tuple[str, ...], Any] = {}
        for projection in self.projections:
            meta = projection.meta
            chunk = values[projection.start : projection.stop]
            path = projection.path
            if not path:
                instances[path] = meta.build(_named(meta, chunk))
                continue

            parent = instances.get(path[:-1])
            if parent is None:
                instances[path] = None
                continue

            pk_index = meta.fields.index(meta.primary_key)
            related = meta.build(_named(meta, chunk)) if chunk[pk_index] is not None else None
            ModelMeta.attach(parent, path[-1], related)
            instances[path] = related

        return instances[()]


def _named(meta: ModelMeta, chunk: Sequence[Any]) -> dict[str, Any]:
    return {f.name: value for f, value in zip(meta.fields, chunk)}


@dataclass(frozen=True)
class BaseQuerySet(Generic[T, D]):
    """State and chaining shared by ``QuerySet`` and ``AsyncQuerySet``.

    Attributes:
        model: Root model.
        driver: Driver materializers execute through; ``None`` until bound.
        node: Metadata registry; defaults to the ``Node`` singleton.
        where: Accumulated predicate, or ``None`` for no filtering.
        ordering: ORDER BY items, before the primary-key tie-breaker.
        window: Pagination window, or ``None``.
        related: Related-fetch spec used for hydration.
    """

    model: type[T]
    driver: D | None = None
    node: Node | None = field(default=None, repr=False)
    where: Predicate | None = None
    ordering: tuple[OrderBy, ...] = ()
    window: Limit | None = None
    related: RelatedFetchSpec = field(default_factory=RelatedFetchSpec)

    # chaining

    def _clone(self, **changes: Any) -> Self:
        return replace(self, **changes)

    @staticmethod
    def _predicate(predicates: Sequence[Predicate], lookups: Mapping[str, Any]) -> Predicate | None:
        parts = list(predicates)
        if lookups:
            parts.append(Q(**lookups))

        return and_(*parts) if parts else None

    def all(self) -> Self:
        return self._clone()

    def using(self, driver: D) -> Self:
        """Return a copy bound to *driver*."""
        return self._clone(driver=driver)

    def filter(self, *predicates: Predicate, **lookups: Any) -> Self:
        """AND the given predicates (and ``Q``-style lookups) into the current filter."""
        predicate = self._predicate(predicates, lookups)
        if predicate is None:
            return self._clone()

        return self._clone(where=predicate if self.where is None else and_(self.where, predicate))

    def exclude(self, *predicates: Predicate, **lookups: Any) -> Self:
        """AND the negation of the given predicates into the current filter."""
        predicate = self._predicate(predicates, lookups)
        if predicate is None:
            return self._clone()

        negated = not_(predicate)
        return self._clone(where=negated if self.where is None else and_(self.where, negated))

    def limit(self, offset: int = 0, count: int | None = None) -> Self:
        """Set the pagination window, replacing any previous one.

        ``count=None`` applies only the offset; ``count=0`` selects no rows.
        """
        return self._clone(window=Limit(offset, count))

    def order_by(self, *fields: str | tuple[str, str] | OrderBy) -> Self:
        """Replace the ordering. ``"-title"`` and ``("title", "desc")`` sort descending."""
        return self._clone(ordering=tuple(OrderBy.parse(f) for f in fields))

    def select_related(self, *paths: str | Iterable[str] | None) -> Self:
        """Set which related objects are joined and hydrated eagerly.

        ``select_related()`` follows every foreign key (cycle guarded),
        ``select_related("publisher__location", "author")`` only those paths and
        ``select_related(None)`` nothing. Each call replaces the previous spec.
        """
        if not paths:
            return self._clone(related=RelatedFetchSpec.recursive())

        if paths == (None,):
            return self._clone(related=RelatedFetchSpec.none())

        flat: list[str] = []
        for path in paths:
            if path is None:
                raise TypeError("select_related(None) cannot be combined with paths")
            flat.extend([path] if isinstance(path, str) else path)

        return self._clone(related=RelatedFetchSpec.explicit(flat))

    @overload
    def __getitem__(self, key: slice) -> Self: ...

    @overload
    def __getitem__(self, key: int) -> Any: ...

    def __getitem__(self, key: slice | int) -> Any:
        if isinstance(key, slice):
            return self._clone(window=self._slice(key))

        return self.at(key)

    def _slice(self, key: slice) -> Limit:
        if key.step not in (None, 1):
            raise ValueError("QuerySet slicing does not support a step")

        start = key.start or 0
        if start < 0 or (key.stop is not None and key.stop < 0):
            raise ValueError("Negative indexing is not supported")

        count = None if key.stop is None else max(key.stop - start, 0)
        return (self.window or Limit()).narrow(start, count)

    def at(self, index: int) -> Any:
        raise NotImplementedError

    # rendering

    @property
    def _node(self) -> Node:
        return self.node if self.node is not None else Node()

    @property
    def translator(self) -> SQLTranslator:
        if self.driver is not None:
            return self.driver.translator

        return _default_translator(settings.default_dialect)

    def join_plan(self) -> JoinPlan:
        """Join plan for eager fetching.

        Raises:
            UnknownRelation: If a ``select_related`` path does not resolve.
        """
        return resolve_related(self.model, self.related, self._node)

    def _select(self, window: Limit | None) -> tuple[Statement, _Layout]:
        translator = self.translator
        statement, projections = translator.select(
            self.model,
            node=self._node,
            plan=self.join_plan(),
            where=self.where,
            order_by=self.ordering,
            limit=window,
        )
        processors = tuple(
            translator.result_processor(f.type) for p in projections for f in p.meta.fields
        )
        return statement, _Layout(projections, processors)

    def sql(self) -> Statement:
        """Render the SELECT this queryset would run, without executing it."""
        return self._select(self.window)[0]

    def _count_statement(self) -> Statement:
        return self.translator.count(
            self.model,
            node=self._node,
            where=self.where,
            order_by=self.ordering,
            limit=self.window,
        )

    def _delete_statement(self) -> Statement:
        return self.translator.delete(
            self.model,
            node=self._node,
            where=self.where,
            order_by=self.ordering,
            limit=self.window,
        )

    def _at_window(self, index: int) -> Limit:
        if not isinstance(index, int):
            raise TypeError(
                f"QuerySet indices must be integers or slices, not {type(index).__name__}"
            )
        if index < 0:
            raise IndexError("Negative indexing is not supported")

        return (self.window or Limit()).narrow(index, 1)

    def _value_fields(self, fields: Sequence[str]) -> tuple[str, ...]:
        if fields:
            return tuple(fields)

        return tuple(f.name for f in self._node[self.model].fields)

    def _values(
        self, fields: Sequence[str], window: Limit | None
    ) -> tuple[Statement, tuple[Processor, ...]]:
        translator = self.translator
        statement = translator.values(
            self.model,
            fields,
            node=self._node,
            where=self.where,
            order_by=self.ordering,
            limit=window,
        )
        processors = tuple(
            translator.result_processor(resolve_field(self.model, f, self._node).field.type)
            for f in fields
        )
        return statement, processors

    def _exists_statement(self) -> Statement:
        pk = self._node[self.model].primary_key_field
        return self._values((pk,), (self.window or Limit()).narrow(0, 1))[0]

    def _require_driver(self) -> D:
        if self.driver is None:
            raise UnboundQuerySet(
                "QuerySet is not bound to a driver; pass one or call using()",
                model=self.model.__name__,
            )

        return self.driver


class QuerySet(BaseQuerySet[T, Driver]):
    """Blocking QuerySet bound to a ``Driver``."""

    def count(self) -> int:
        """Number of rows matching the filter and window (``SELECT COUNT(*)``)."""
        rows = self._require_driver().execute(self._count_statement())
        return int(rows[0][0])

    def size(self) -> int:
        return self.count()

    def remove(self) -> int:
        """Delete matching rows and return how many were deleted.

        Raises:
            ConstraintViolation: If a foreign key still references a row.
        """
        return self._require_driver().execute_rowcount(self._delete_statement())

    def fetch(self) -> list[T]:
        statement, layout = self._select(self.window)
        rows = self._require_driver().execute(statement)
        return [layout.hydrate(row) for row in rows]

    def __iter__(self) -> Iterator[T]:
        statement, layout = self._select(self.window)
        for row in self._require_driver().execute(statement):
            yield layout.hydrate(row)

    def at(self, index: int) -> T:
        """The object at *index* in this queryset's ordering.

        Raises:
            IndexError: If *index* is negative or past the last row.
        """
        statement, layout = self._select(self._at_window(index))
        rows = self._require_driver().execute(statement)
        if not rows:
            raise IndexError(f"QuerySet index {index} out of range")

        return layout.hydrate(rows[0])

    def first(self) -> T | None:
        statement, layout = self._select((self.window or Limit()).narrow(0, 1))
        rows = self._require_driver().execute(statement)
        return layout.hydrate(rows[0]) if rows else None

    def exists(self) -> bool:
        return bool(self._require_driver().execute(self._exists_statement()))

    def values(self, *fields: str) -> list[dict[str, Any]]:
        """Rows as ``{field_path: value}`` mappings, keys in the order given."""
        names = self._value_fields(fields)
        statement, processors = self._values(names, self.window)
        rows = self._require_driver().execute(statement)
        return [dict(zip(names, _process(row, processors))) for row in rows]

    def values_list(self, *fields: str, flat: bool = False) -> list[Any]:
        """Rows as tuples in the order given; ``flat=True`` unwraps a single field."""
        if flat and len(fields) != 1:
            raise TypeError("'flat' is only valid with exactly one field")

        names = self._value_fields(fields)
        statement, processors = self._values(names, self.window)
        rows = [_process(row, processors) for row in self._require_driver().execute(statement)]
        return [row[0] for row in rows] if flat else rows


class AsyncQuerySet(BaseQuerySet[T, AsyncDriver]):
    """asyncio QuerySet bound to an ``AsyncDriver``; materializers are coroutines."""

    async def count(self) -> int:
        rows = await self._require_driver().execute(self._count_statement())
        return int(rows[0][0])

    async def size(self) -> int:
        return await self.count()

    async def remove(self) -> int:
        return await self._require_driver().execute_rowcount(self._delete_statement())

    async def fetch(self) -> list[T]:
        statement, layout = self._select(self.window)
        rows = await self._require_driver().execute(statement)
        return [layout.hydrate(row) for row in rows]

    async def __aiter__(self) -> AsyncIterator[T]:
        statement, layout = self._select(self.window)
        for row in await self._require_driver().execute(statement):
            yield layout.hydrate(row)

    async def at(self, index: int) -> T:
        statement, layout = self._select(self._at_window(index))
        rows = await self._require_driver().execute(statement)
        if not rows:
            raise IndexError(f"QuerySet index {index} out of range")

        return layout.hydrate(rows[0])

    async def first(self) -> T | None:
        statement, layout = self._select((self.window or Limit()).narrow(0, 1))
        rows = await self._require_driver().execute(statement)
        return layout.hydrate(rows[0]) if rows else None

    async def exists(self) -> bool:
        return bool(await self._require_driver().execute(self._exists_statement()))

    async def values(self, *fields: str) -> list[dict[str, Any]]:
        names = self._value_fields(fields)
        statement, processors = self._values(names, self.window)
        rows = await self._require_driver().execute(statement)
        return [dict(zip(names, _process(row, processors))) for row in rows]

    async def values_list(self, *fields: str, flat: bool = False) -> list[Any]:
        if flat and len(fields) != 1:
            raise TypeError("'flat' is only valid with exactly one field")

        names = self._value_fields(fields)
        statement, processors = self._values(names, self.window)
        result = await self._require_driver().execute(statement)
        rows = [_process(row, processors) for row in result]
        return [row[0] for row in rows] if flat else rows
