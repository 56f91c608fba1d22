"""Lazy, immutable querysets over SQLAlchemy models.

sqla_querysets composes predicate trees, ordering, pagination and
``select_related`` join plans into parameterized SQL, executes it through a
``Driver`` and hydrates model instances (related objects included) from the
rows. Initialize a ``Node`` singleton at startup with your declarative base,
then build querysets with ``QuerySet(Model, Driver(engine))``.
"""

from ._version import __version__, __version_tuple__
from .datastructures import Direction, JoinPlan, Limit, OrderBy, RelatedFetchSpec, frozendict
from .driver import AsyncDriver, Driver
from .exceptions import (
    ConstraintViolation,
    DriverError,
    FieldPathError,
    InvalidPredicate,
    QuerySetError,
    UnboundQuerySet,
    UnknownRelation,
    UnresolvedFieldPath,
)
from .node import ModelMeta, Node, get_node, init_node
from .predicate import (
    Operator,
    Predicate,
    Q,
    and_,
    between,
    contains,
    endswith,
    eq,
    gt,
    gte,
    is_in,
    is_null,
    leaf,
    lt,
    lte,
    ne,
    not_,
    not_in,
    or_,
    startswith,
)
from .queryset import AsyncQuerySet, QuerySet
from .resolver import queryset_cache_clear, queryset_cache_info, resolve_field, resolve_related
from .settings import QuerySetSettings, settings
from .translator import SQLTranslator, Statement


__all__ = (
    "AsyncDriver",
    "AsyncQuerySet",
    "ConstraintViolation",
    "Direction",
    "Driver",
    "DriverError",
    "FieldPathError",
    "InvalidPredicate",
    "JoinPlan",
    "Limit",
    "ModelMeta",
    "Node",
    "Operator",
    "OrderBy",
    "Predicate",
    "Q",
    "QuerySet",
    "QuerySetError",
    "QuerySetSettings",
    "RelatedFetchSpec",
    "SQLTranslator",
    "Statement",
    "UnboundQuerySet",
    "UnknownRelation",
    "UnresolvedFieldPath",
    "__version__",
    "__version_tuple__",
    "and_",
    "between",
    "contains",
    "endswith",
    "eq",
    "frozendict",
    "get_node",
    "gt",
    "gte",
    "init_node",
    "is_in",
    "is_null",
    "leaf",
    "lt",
    "lte",
    "ne",
    "not_",
    "not_in",
    "or_",
    "queryset_cache_clear",
    "queryset_cache_info",
    "resolve_field",
    "resolve_related",
    "settings",
    "startswith",
)
