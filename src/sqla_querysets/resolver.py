from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from sqlalchemy import orm

from .datastructures import FetchKind, JoinPlan, RelatedFetchSpec, frozendict
from .exceptions import UnknownRelation, UnresolvedFieldPath
from .node import Field, Node, Relation
from .settings import settings
from .tools import LOOKUP_SEP, split_path


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FieldRef:
    """A resolved field path: the foreign keys to follow, then the column."""

    relations: tuple[str, ...]
    field: Field

    @property
    def column(self) -> str:
        return self.field.column


@lru_cache(maxsize=1028)
def _resolve_relation_path(
    model: type[orm.DeclarativeBase],
    path: tuple[str, ...],
    node: Node,
) -> tuple[Relation, ...]:
    """Resolve ``("publisher", "location")`` into the chain of ``Relation`` hops.

    Each segment must be a foreign key declared on the model reached so far.
    """
    result: list[Relation] = []
    meta = node[model]
    for segment in path:
        relation = meta.foreign_keys.get(segment)
        if relation is None:
            raise UnknownRelation(
                f"No foreign key '{segment}' on {meta.model.__name__}",
                path=LOOKUP_SEP.join(path),
                model=model.__name__,
            )
        result.append(relation)
        meta = node[relation.model]

    return tuple(result)


def _branch(relations: Sequence[Relation], *, fetch: bool) -> JoinPlan:
    head, *rest = relations
    children: frozendict[str, JoinPlan] = (
        frozendict({rest[0].name: _branch(rest, fetch=fetch)}) if rest else frozendict()
    )
    return JoinPlan(model=head.model, relation=head, fetch=fetch, children=children)


def _chain_plan(
    model: type[orm.DeclarativeBase],
    relations: Sequence[Relation],
    *,
    fetch: bool,
) -> JoinPlan:
    if not relations:
        return JoinPlan(model)

    branch = _branch(relations, fetch=fetch)
    return JoinPlan(model, children=frozendict({relations[0].name: branch}))


def _walk_all(
    model: type[orm.DeclarativeBase],
    node: Node,
    visited: frozenset[type[orm.DeclarativeBase]],
    depth: int,
) -> frozendict[str, JoinPlan]:
    """Depth-first expansion of every foreign key reachable from *model*.

    A model already on the current path is not re-entered, so cycles
    (``A -> B -> A``, self references) terminate.
    """
    if depth <= 0:
        return frozendict()

    children: dict[str, JoinPlan] = {}
    for name, relation in node[model].foreign_keys.items():
        if relation.model in visited:
            logger.debug(
                "Not re-entering %s through %s.%s",
                relation.model.__name__,
                model.__name__,
                name,
            )
            continue
        children[name] = JoinPlan(
            model=relation.model,
            relation=relation,
            fetch=True,
            children=_walk_all(relation.model, node, visited | {relation.model}, depth - 1),
        )

    return frozendict(children)


@lru_cache(maxsize=256)
def _recursive_plan(model: type[orm.DeclarativeBase], node: Node, depth: int) -> JoinPlan:
    return JoinPlan(model, children=_walk_all(model, node, frozenset({model}), depth))


@lru_cache(maxsize=1028)
def _explicit_plan(
    model: type[orm.DeclarativeBase],
    paths: frozenset[str],
    node: Node,
) -> JoinPlan:
    plan = JoinPlan(model)
    for path in sorted(paths):
        relations = _resolve_relation_path(model, split_path(path), node)
        plan = plan.merge(_chain_plan(model, relations, fetch=True))

    return plan


def resolve_related(
    model: type[orm.DeclarativeBase],
    spec: RelatedFetchSpec,
    node: Node,
    *,
    max_depth: int | None = None,
) -> JoinPlan:
    """Expand a related-fetch spec into a join plan.

    Args:
        model: Root model of the query.
        spec: ``NONE``, ``RECURSIVE`` or ``EXPLICIT`` fetch spec.
        node: Metadata registry.
        max_depth: Depth bound for ``RECURSIVE``; defaults to
            ``settings.max_related_depth``.

    Raises:
        UnknownRelation: If an explicit path names something that is not a
            foreign key of the model reached so far.
    """
    match spec.kind:
        case FetchKind.NONE:
            return JoinPlan(model)
        case FetchKind.RECURSIVE:
            return _recursive_plan(model, node, max_depth or settings.max_related_depth)
        case FetchKind.EXPLICIT:
            return _explicit_plan(model, spec.paths, node)

    raise ValueError(f"Unknown fetch kind {spec.kind!r}")


@lru_cache(maxsize=2048)
def resolve_field(model: type[orm.DeclarativeBase], field_path: str, node: Node) -> FieldRef:
    """Resolve ``"publisher__location__name"`` to the joins it needs and its column.

    The last segment may be a field, ``pk`` or a single-column foreign key
    (which compares the local foreign-key column without joining).

    Raises:
        UnresolvedFieldPath: If any segment cannot be resolved.
    """
    try:
        *relation_names, last = split_path(field_path)
    except ValueError:
        raise UnresolvedFieldPath("Malformed field path", field_path=field_path) from None

    try:
        relations = _resolve_relation_path(model, tuple(relation_names), node)
    except UnknownRelation as exc:
        raise UnresolvedFieldPath(exc.message, field_path=field_path) from exc

    meta = node[relations[-1].model] if relations else node[model]
    field = meta.field(last)
    if field is None and (relation := meta.foreign_keys.get(last)) and len(relation.columns) == 1:
        field = next((f for f in meta.fields if f.column == relation.columns[0]), None)

    if field is None:
        raise UnresolvedFieldPath(
            f"Cannot resolve '{last}' on {meta.model.__name__}",
            field_path=field_path,
            model=model.__name__,
        )

    return FieldRef(tuple(relation_names), field)


def plan_for_fields(
    model: type[orm.DeclarativeBase],
    field_paths: Iterable[str],
    node: Node,
) -> JoinPlan:
    """Join plan covering every relation crossed by *field_paths*, without hydration."""
    plan = JoinPlan(model)
    for field_path in field_paths:
        ref = resolve_field(model, field_path, node)
        if ref.relations:
            relations = _resolve_relation_path(model, ref.relations, node)
            plan = plan.merge(_chain_plan(model, relations, fetch=False))

    return plan


def queryset_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .tools import _get_primary_key, _get_table_name

    return {
        fn.__name__: fn.cache_info()
        for fn in (
            _resolve_relation_path,
            _recursive_plan,
            _explicit_plan,
            resolve_field,
            _get_primary_key,
            _get_table_name,
        )
    }


def queryset_cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .tools import _get_primary_key, _get_table_name

    for fn in (
        _resolve_relation_path,
        _recursive_plan,
        _explicit_plan,
        resolve_field,
        _get_primary_key,
        _get_table_name,
    ):
        fn.cache_clear()
