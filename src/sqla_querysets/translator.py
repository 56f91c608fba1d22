from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.dialects import registry

from .datastructures import Direction, JoinPlan, Limit, OrderBy
from .node import ModelMeta, Node
from .predicate import And, Leaf, Not, Operator, Or, Predicate
from .resolver import plan_for_fields, resolve_field
from .tools import LIKE_ESCAPE, LOOKUP_SEP, escape_like


_PLACEHOLDERS: Final[Mapping[str, str]] = {
    "qmark": "?",
    "format": "%s",
    "pyformat": "%s",
    "numeric": ":{index}",
    "numeric_dollar": "${index}",
    "named": ":p{index}",
}

_COMPARISONS: Final[Mapping[Operator, str]] = {
    Operator.EQUALS: "=",
    Operator.NOT_EQUALS: "<>",
    Operator.GREATER_THAN: ">",
    Operator.GREATER_EQUAL: ">=",
    Operator.LESS_THAN: "<",
    Operator.LESS_EQUAL: "<=",
}

# MySQL has no OFFSET without LIMIT; this is its documented "all rows" value
_MYSQL_MAX_LIMIT: Final[int] = 18446744073709551615


@dataclass(frozen=True, slots=True)
class Statement:
    """SQL text plus its out-of-band parameters, in the driver's placeholder style."""

    text: str
    params: tuple[Any, ...] | Mapping[str, Any] = ()

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True, slots=True)
class Projection:
    """Where one hydrated model's columns sit in a result row."""

    path: tuple[str, ...]
    meta: ModelMeta
    start: int

    @property
    def stop(self) -> int:
        return self.start + len(self.meta.fields)


class _Render:
    """Per-statement state: bound parameters and table aliases."""

    __slots__ = ("aliases", "model", "node", "params", "translator")

    def __init__(
        self,
        translator: SQLTranslator,
        model: type[orm.DeclarativeBase],
        node: Node,
    ) -> None:
        self.translator = translator
        self.model = model
        self.node = node
        self.params: list[Any] = []
        self.aliases: dict[tuple[str, ...], str] = {}

    def bind(self, value: Any, type_: sa.types.TypeEngine[Any] | None = None) -> str:
        if type_ is not None:
            value = self.translator.process_bind(type_, value)
        self.params.append(value)
        return self.translator.placeholder.format(index=len(self.params))

    def statement(self, text: str) -> Statement:
        if self.translator.paramstyle == "named":
            return Statement(text, {f"p{i}": v for i, v in enumerate(self.params, start=1)})

        return Statement(text, tuple(self.params))

    def alias(self, path: tuple[str, ...]) -> str:
        return self.aliases[path]

    def column(self, path: tuple[str, ...], column: str) -> str:
        return f"{self.alias(path)}.{self.translator.quote(column)}"

    def from_clause(self, plan: JoinPlan) -> str:
        """``FROM`` target plus one ``LEFT OUTER JOIN`` per plan edge, pre-order."""
        quote = self.translator.quote
        root_table = self.node[self.model].table_name
        parts = [quote(root_table)]
        for path, child in plan.walk():
            if not path:
                self.aliases[path] = quote(root_table)
                continue

            relation = child.relation
            assert relation is not None
            alias = self.translator.alias_name(root_table, path, len(self.aliases))
            self.aliases[path] = quote(alias)
            parent = self.aliases[path[:-1]]
            condition = " AND ".join(
                f"{quote(alias)}.{quote(remote)} = {parent}.{quote(local)}"
                for local, remote in zip(relation.columns, relation.remote_columns)
            )
            table = quote(self.node[child.model].table_name)
            parts.append(f"LEFT OUTER JOIN {table} AS {quote(alias)} ON {condition}")

        return " ".join(parts)

    def predicate(self, predicate: Predicate, *, nested: bool = False) -> str:
        if isinstance(predicate, Leaf):
            return self.leaf(predicate)

        if isinstance(predicate, Not):
            return f"NOT ({self.predicate(predicate.child)})"

        if isinstance(predicate, (And, Or)):
            sep = " AND " if isinstance(predicate, And) else " OR "
            text = sep.join(self.predicate(child, nested=True) for child in predicate.children)
            return f"({text})" if nested else text

        raise TypeError(f"Cannot render {type(predicate).__name__}")

    def leaf(self, leaf: Leaf) -> str:
        ref = resolve_field(self.model, leaf.field_path, self.node)
        col = self.column(ref.relations, ref.column)
        operator, operand = leaf.operator, leaf.operand
        type_ = ref.field.type

        if operand is None and operator is Operator.EQUALS:
            return f"{col} IS NULL"
        if operand is None and operator is Operator.NOT_EQUALS:
            return f"{col} IS NOT NULL"
        if operator in _COMPARISONS:
            return f"{col} {_COMPARISONS[operator]} {self.bind(operand, type_)}"

        match operator:
            case Operator.STARTS_WITH:
                return self._like(col, f"{escape_like(operand)}%")
            case Operator.ENDS_WITH:
                return self._like(col, f"%{escape_like(operand)}")
            case Operator.CONTAINS:
                return self._like(col, f"%{escape_like(operand)}%")
            case Operator.IS_IN | Operator.NOT_IN if not operand:
                # empty IN () is invalid SQL on most backends
                return "1 = 0" if operator is Operator.IS_IN else "1 = 1"
            case Operator.IS_IN | Operator.NOT_IN:
                keyword = "IN" if operator is Operator.IS_IN else "NOT IN"
                return f"{col} {keyword} ({', '.join(self.bind(v, type_) for v in operand)})"
            case Operator.IS_NULL:
                return f"{col} IS NULL" if operand else f"{col} IS NOT NULL"
            case Operator.RANGE:
                low, high = operand
                return f"{col} BETWEEN {self.bind(low, type_)} AND {self.bind(high, type_)}"

        raise TypeError(f"Unsupported operator {operator!r}")

    def _like(self, col: str, pattern: str) -> str:
        return f"{col} LIKE {self.bind(pattern)} ESCAPE '{LIKE_ESCAPE}'"

    def where(self, predicate: Predicate | None) -> str:
        return f" WHERE {self.predicate(predicate)}" if predicate is not None else ""

    def order_by(self, order_by: Sequence[OrderBy]) -> str:
        meta = self.node[self.model]
        items: list[str] = []
        has_pk = False
        for item in order_by:
            ref = resolve_field(self.model, item.field_path, self.node)
            has_pk = has_pk or (not ref.relations and ref.field.name == meta.primary_key_field)
            items.append(f"{self.column(ref.relations, ref.column)} {item.direction.value}")

        # primary key keeps pagination and at() stable
        if not has_pk:
            items.append(f"{self.column((), meta.primary_key.column)} {Direction.ASC.value}")

        return f" ORDER BY {', '.join(items)}"

    def limit(self, limit: Limit | None) -> str:
        if limit is None:
            return ""

        if limit.count is not None:
            text = f" LIMIT {self.bind(limit.count)}"
            if limit.offset:
                text += f" OFFSET {self.bind(limit.offset)}"
            return text

        if not limit.offset:
            return ""

        match self.translator.dialect.name:
            case "sqlite":
                return f" LIMIT -1 OFFSET {self.bind(limit.offset)}"
            case "mysql" | "mariadb":
                return f" LIMIT {_MYSQL_MAX_LIMIT} OFFSET {self.bind(limit.offset)}"

        return f" OFFSET {self.bind(limit.offset)}"


class SQLTranslator:
    """Render querysets to parameterized SQL for one dialect.

    The placeholder style is negotiated once, from ``dialect.paramstyle``, and
    identifiers are quoted with the dialect's identifier preparer. Values are
    never interpolated into the statement text.
    """

    __slots__ = (
        "_bind_processors",
        "_result_processors",
        "dialect",
        "paramstyle",
        "placeholder",
        "preparer",
    )

    def __init__(self, dialect: sa.Dialect) -> None:
        paramstyle = dialect.paramstyle
        if paramstyle not in _PLACEHOLDERS:
            raise ValueError(f"Unsupported paramstyle {paramstyle!r} for dialect {dialect.name}")

        self.dialect = dialect
        self.paramstyle = paramstyle
        self.placeholder = _PLACEHOLDERS[paramstyle]
        self.preparer = dialect.identifier_preparer
        self._bind_processors: dict[sa.types.TypeEngine[Any], Callable[[Any], Any] | None] = {}
        self._result_processors: dict[sa.types.TypeEngine[Any], Callable[[Any], Any] | None] = {}

    @classmethod
    def for_dialect(cls, name: str) -> SQLTranslator:
        """Build a translator for a dialect name such as ``"sqlite"`` or ``"postgresql"``."""
        return cls(registry.load(name)())

    def quote(self, identifier: str) -> str:
        return self.preparer.quote(identifier)

    def process_bind(self, type_: sa.types.TypeEngine[Any], value: Any) -> Any:
        """Convert a Python value to its DBAPI form, as SQLAlchemy would for *type_*."""
        if value is None:
            return None

        if type_ not in self._bind_processors:
            self._bind_processors[type_] = type_.dialect_impl(self.dialect).bind_processor(
                self.dialect
            )

        processor = self._bind_processors[type_]
        return processor(value) if processor is not None else value

    def result_processor(self, type_: sa.types.TypeEngine[Any]) -> Callable[[Any], Any] | None:
        """DBAPI-to-Python converter for *type_*, or ``None`` when values pass through."""
        if type_ not in self._result_processors:
            self._result_processors[type_] = type_.dialect_impl(self.dialect).result_processor(
                self.dialect, None
            )

        return self._result_processors[type_]

    def alias_name(self, root_table: str, path: tuple[str, ...], index: int) -> str:
        alias = LOOKUP_SEP.join((root_table, *path))
        max_length = self.dialect.max_identifier_length or len(alias)
        return alias if len(alias) <= max_length else f"t{index}"

    def _plan(
        self,
        model: type[orm.DeclarativeBase],
        node: Node,
        plan: JoinPlan | None,
        where: Predicate | None,
        order_by: Sequence[OrderBy] = (),
        fields: Iterable[str] = (),
    ) -> JoinPlan:
        """Merge the eager plan with the joins that filters, ordering and projections cross."""
        paths = [*fields, *(item.field_path for item in order_by)]
        if where is not None:
            paths.extend(leaf.field_path for leaf in where.leaves())

        needed = plan_for_fields(model, paths, node)
        return plan.merge(needed) if plan is not None else needed

    def select(
        self,
        model: type[orm.DeclarativeBase],
        *,
        node: Node,
        plan: JoinPlan | None = None,
        where: Predicate | None = None,
        order_by: Sequence[OrderBy] = (),
        limit: Limit | None = None,
    ) -> tuple[Statement, tuple[Projection, ...]]:
        """Render a SELECT projecting every column of each hydrated model.

        Returns:
            The statement and the projections describing which row slice
            belongs to which model, in plan pre-order.
        """
        plan = self._plan(model, node, plan, where, order_by)
        render = _Render(self, model, node)
        from_clause = render.from_clause(plan)

        columns: list[str] = []
        projections: list[Projection] = []
        for path, child in plan.walk():
            if not child.fetch:
                continue
            meta = node[child.model]
            projections.append(Projection(path, meta, len(columns)))
            columns.extend(render.column(path, f.column) for f in meta.fields)

        text = (
            f"SELECT {', '.join(columns)} FROM {from_clause}"
            f"{render.where(where)}{render.order_by(order_by)}{render.limit(limit)}"
        )
        return render.statement(text), tuple(projections)

    def values(
        self,
        model: type[orm.DeclarativeBase],
        fields: Sequence[str],
        *,
        node: Node,
        where: Predicate | None = None,
        order_by: Sequence[OrderBy] = (),
        limit: Limit | None = None,
    ) -> Statement:
        """Render a SELECT projecting *fields* (field paths) in the given order."""
        plan = self._plan(model, node, None, where, order_by, fields)
        render = _Render(self, model, node)
        from_clause = render.from_clause(plan)

        columns = []
        for field_path in fields:
            ref = resolve_field(model, field_path, node)
            columns.append(render.column(ref.relations, ref.column))

        text = (
            f"SELECT {', '.join(columns)} FROM {from_clause}"
            f"{render.where(where)}{render.order_by(order_by)}{render.limit(limit)}"
        )
        return render.statement(text)

    def count(
        self,
        model: type[orm.DeclarativeBase],
        *,
        node: Node,
        where: Predicate | None = None,
        order_by: Sequence[OrderBy] = (),
        limit: Limit | None = None,
    ) -> Statement:
        """Render ``SELECT COUNT(*)``; a limited queryset is counted through a subquery."""
        if limit is None:
            plan = self._plan(model, node, None, where)
            render = _Render(self, model, node)
            text = f"SELECT COUNT(*) FROM {render.from_clause(plan)}{render.where(where)}"
            return render.statement(text)

        plan = self._plan(model, node, None, where, order_by)
        render = _Render(self, model, node)
        from_clause = render.from_clause(plan)
        pk = render.column((), node[model].primary_key.column)
        text = (
            f"SELECT COUNT(*) FROM (SELECT {pk} FROM {from_clause}"
            f"{render.where(where)}{render.order_by(order_by)}{render.limit(limit)}) AS counted"
        )
        return render.statement(text)

    def delete(
        self,
        model: type[orm.DeclarativeBase],
        *,
        node: Node,
        where: Predicate | None = None,
        order_by: Sequence[OrderBy] = (),
        limit: Limit | None = None,
    ) -> Statement:
        """Render a DELETE that fetches nothing.

        Filters crossing relations, or a limit, select the doomed primary keys
        in a subquery; otherwise the WHERE clause applies directly. MySQL and
        MariaDB reject the target table, or a LIMIT, inside an IN subquery, so
        there the subquery is wrapped in a derived table.
        """
        plan = self._plan(model, node, None, where)
        render = _Render(self, model, node)
        meta = node[model]
        table = self.quote(meta.table_name)

        if not plan.children and limit is None:
            render.from_clause(plan)
            return render.statement(f"DELETE FROM {table}{render.where(where)}")

        plan = self._plan(model, node, None, where, order_by if limit is not None else ())
        from_clause = render.from_clause(plan)
        pk = render.column((), meta.primary_key.column)
        inner = f"SELECT {pk} FROM {from_clause}{render.where(where)}"
        if limit is not None:
            inner += f"{render.order_by(order_by)}{render.limit(limit)}"

        if self.dialect.name in ("mysql", "mariadb"):
            column = self.quote(meta.primary_key.column)
            inner = f"SELECT doomed.{column} FROM ({inner}) AS doomed"

        return render.statement(f"DELETE FROM {table} WHERE {pk} IN ({inner})")
