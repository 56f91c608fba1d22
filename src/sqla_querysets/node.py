from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, ClassVar, final

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.interfaces import MANYTOONE

from .datastructures import frozendict
from .tools import get_primary_key, get_table_name


@dataclass(frozen=True, slots=True)
class Field:
    """A mapped column: attribute name, column name and SQL type."""

    name: str
    column: str
    type: sa.types.TypeEngine[Any]
    nullable: bool = True


@dataclass(frozen=True, slots=True)
class Relation:
    """A foreign key declared on a model, pointing at ``model``.

    ``columns`` are the local foreign-key column names, ``remote_columns`` the
    matching columns of the related table (usually its primary key).
    """

    name: str
    model: type[orm.DeclarativeBase]
    columns: tuple[str, ...]
    remote_columns: tuple[str, ...]
    nullable: bool = True


@dataclass(frozen=True, slots=True)
class ModelMeta:
    """Metadata the query engine needs about one model."""

    model: type[orm.DeclarativeBase]
    table_name: str
    primary_key_field: str
    fields: tuple[Field, ...]
    foreign_keys: frozendict[str, Relation]

    @classmethod
    def from_model(cls, model: type[orm.DeclarativeBase]) -> ModelMeta:
        """Introspect a declarative model.

        Column attributes mapped to the model's own table become fields.
        Many-to-one relationships without a secondary table become foreign
        keys; collections and one-to-one relationships owned by the other side
        are not foreign keys of this model.
        """
        mapper = sa.inspect(model)
        table = mapper.local_table

        fields: list[Field] = []
        for prop in mapper.column_attrs:
            column = prop.columns[0]
            if not isinstance(column, sa.Column) or column.table is not table:
                continue
            fields.append(Field(prop.key, column.name, column.type, bool(column.nullable)))

        pk_column = get_primary_key(model)
        primary_key_field = next(
            (f.name for f in fields if f.column == pk_column.name),
            None,
        )
        if primary_key_field is None:
            raise ValueError(f"Cannot determine primary key attribute for {model.__name__}")

        foreign_keys: dict[str, Relation] = {}
        for rel in mapper.relationships:
            if rel.direction is not MANYTOONE or rel.secondary is not None:
                continue
            pairs = [
                (local, remote)
                for local, remote in rel.local_remote_pairs or ()
                if isinstance(local, sa.Column) and local.table is table
            ]
            if not pairs:
                continue
            foreign_keys[rel.key] = Relation(
                name=rel.key,
                model=rel.mapper.class_,
                columns=tuple(local.name for local, _ in pairs),
                remote_columns=tuple(remote.name for _, remote in pairs),
                nullable=any(local.nullable for local, _ in pairs),
            )

        return cls(
            model=model,
            table_name=get_table_name(model),
            primary_key_field=primary_key_field,
            fields=tuple(fields),
            foreign_keys=frozendict(foreign_keys),
        )

    def field(self, name: str) -> Field | None:
        if name == "pk":
            name = self.primary_key_field
        return next((f for f in self.fields if f.name == name), None)

    @property
    def primary_key(self) -> Field:
        field = self.field(self.primary_key_field)
        assert field is not None
        return field

    def build(self, values: Mapping[str, Any]) -> Any:
        """Create a detached instance holding *values* as loaded state, bypassing ``__init__``.

        The instance carries its identity key, so adding it to a ``Session``
        after editing flushes an UPDATE of the existing row. Columns missing
        from *values* are marked expired.
        """
        instance = sa.inspect(self.model).class_manager.new_instance()
        for name, value in values.items():
            set_committed_value(instance, name, value)
        orm.make_transient_to_detached(instance)

        return instance

    @staticmethod
    def attach(instance: Any, relation: str, related: Any) -> None:
        """Wire *related* into the foreign-key slot *relation* of *instance*."""
        set_committed_value(instance, relation, related)


@final
class Node:
    """Singleton registry of model metadata.

    Holds one ``ModelMeta`` per mapped model so field paths and foreign-key
    chains can be resolved without re-inspecting mappers on every query.
    """

    __instance: ClassVar[Node | None] = None
    _node: Mapping[type[orm.DeclarativeBase], ModelMeta]

    def __new__(
        cls,
        node: Mapping[type[orm.DeclarativeBase], ModelMeta] | None = None,
    ) -> Node:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if node is not None:
                instance.set_node(node)

            cls.__instance = instance

        if not getattr(cls.__instance, "_node", None):
            raise RuntimeError("Node is not initialized or empty")

        return cls.__instance

    def get(self, model: type[orm.DeclarativeBase]) -> ModelMeta | None:
        """Get metadata for a model, returning ``None`` if it is not registered."""
        return self.node.get(model)

    def __getitem__(self, model: type[orm.DeclarativeBase]) -> ModelMeta:
        """Look up metadata for *model*, raising ``KeyError`` if not registered."""
        try:
            return self.node[model]
        except KeyError:
            raise KeyError(f"Model {model.__name__} is not registered in Node") from None

    def __contains__(self, model: object) -> bool:
        return model in self.node

    @property
    def node(self) -> Mapping[type[orm.DeclarativeBase], ModelMeta]:
        """The underlying model-to-metadata mapping (read-only)."""
        return self._node

    def set_node(self, node: Mapping[type[orm.DeclarativeBase], ModelMeta]) -> None:
        self._node = node

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._node = {}
        cls.__instance = None


def get_node(
    base: type[orm.DeclarativeBase] | Iterable[type[orm.DeclarativeBase]],
) -> Mapping[type[orm.DeclarativeBase], ModelMeta]:
    """Collect metadata for every model mapped under a declarative base.

    Args:
        base: Declarative base class, or an explicit iterable of model classes.

    Returns:
        Frozen mapping from model class to its ``ModelMeta``.

    Raises:
        AssertionError: If *base* is a class but not a direct subclass of
            ``orm.DeclarativeBase``.
    """
    if isinstance(base, type):
        assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
            "base must be a subclass of orm.DeclarativeBase"
        )
        models: Iterable[type[orm.DeclarativeBase]] = (
            mapper.class_ for mapper in base.registry.mappers
        )
    else:
        models = base

    return frozendict({model: ModelMeta.from_model(model) for model in models})


def init_node(node: Mapping[type[orm.DeclarativeBase], ModelMeta]) -> None:
    """Initialize the global Node singleton with model metadata.

    Call once during application startup.

    Example:
        >>> from myapp.models import Base
        >>> init_node(get_node(Base))
    """
    Node(node)
