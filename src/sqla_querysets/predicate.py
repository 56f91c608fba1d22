"""Predicate trees for QuerySet filters.

A predicate is either a ``Leaf`` comparing a field path to an operand, or an
``And`` / ``Or`` / ``Not`` combination of other predicates. Nodes are frozen:
combining them always builds new nodes.

Typical usage:

- Build leaves: ``eq("username", "bar")`` or ``Q(age__gte=18)``
- Combine: ``eq("a", 1) & (eq("b", 2) | eq("c", 3))``
- Negate: ``~eq("is_active", True)``
- Traverse foreign keys: ``eq("publisher__location__name", "Oslo")``
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Final

from .exceptions import InvalidPredicate
from .tools import LOOKUP_SEP, normalize_path


class Operator(enum.Enum):
    """Comparison operators. Values are the lookup names accepted by ``Q``."""

    EQUALS = "exact"
    NOT_EQUALS = "ne"
    GREATER_THAN = "gt"
    GREATER_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_EQUAL = "lte"
    STARTS_WITH = "startswith"
    ENDS_WITH = "endswith"
    CONTAINS = "contains"
    IS_IN = "in"
    NOT_IN = "notin"
    IS_NULL = "isnull"
    RANGE = "range"


_SEQUENCE_OPERATORS: Final = frozenset({Operator.IS_IN, Operator.NOT_IN})
_TEXT_OPERATORS: Final = frozenset({Operator.STARTS_WITH, Operator.ENDS_WITH, Operator.CONTAINS})
_ORDERING_OPERATORS: Final = frozenset({
    Operator.GREATER_THAN,
    Operator.GREATER_EQUAL,
    Operator.LESS_THAN,
    Operator.LESS_EQUAL,
})
_LOOKUPS: Final[Mapping[str, Operator]] = {op.value: op for op in Operator}


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset, dict))


def _check_operand(field_path: str, operator: Operator, operand: Any) -> Any:
    """Validate *operand* for *operator*, returning its normalized form."""

    def fail(reason: str) -> InvalidPredicate:
        return InvalidPredicate(
            reason, field_path=field_path, operator=operator.name, operand=operand
        )

    if isinstance(operand, Predicate):
        raise fail("Operand cannot be a predicate")

    if operator in _SEQUENCE_OPERATORS:
        if isinstance(operand, (str, bytes, Mapping)) or not isinstance(operand, Iterable):
            raise fail(f"{operator.name} requires a sequence operand")
        return tuple(operand)

    if operator is Operator.RANGE:
        if isinstance(operand, (str, bytes, Mapping)) or not isinstance(operand, Iterable):
            raise fail("RANGE requires a (low, high) pair")
        bounds = tuple(operand)
        if len(bounds) != 2 or None in bounds:
            raise fail("RANGE requires exactly two non-null bounds")
        return bounds

    if operator is Operator.IS_NULL:
        if not isinstance(operand, bool):
            raise fail("IS_NULL requires a boolean operand")
        return operand

    if operator in _TEXT_OPERATORS:
        if not isinstance(operand, str):
            raise fail(f"{operator.name} requires a string operand")
        return operand

    if operator in _ORDERING_OPERATORS and operand is None:
        raise fail(f"{operator.name} cannot compare against NULL")

    if _is_collection(operand):
        raise fail(f"{operator.name} requires a scalar operand")

    return operand


class Predicate:
    """Base class of predicate nodes; supports ``&``, ``|`` and ``~``."""

    __slots__ = ()

    def __and__(self, other: Predicate) -> Predicate:
        return and_(self, other)

    def __or__(self, other: Predicate) -> Predicate:
        return or_(self, other)

    def __invert__(self) -> Predicate:
        return not_(self)

    def leaves(self) -> Iterator[Leaf]:
        """Yield every leaf of the tree, left to right."""
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class Leaf(Predicate):
    field_path: str
    operator: Operator
    operand: Any = None

    def __post_init__(self) -> None:
        if not isinstance(self.operator, Operator):
            raise InvalidPredicate("Unknown operator", operator=self.operator)
        if not isinstance(self.field_path, str):
            raise InvalidPredicate("Field path must be a string", field_path=self.field_path)
        try:
            path = normalize_path(self.field_path)
        except ValueError:
            raise InvalidPredicate("Malformed field path", field_path=self.field_path) from None

        object.__setattr__(self, "field_path", path)
        object.__setattr__(self, "operand", _check_operand(path, self.operator, self.operand))

    def leaves(self) -> Iterator[Leaf]:
        yield self


@dataclass(frozen=True, slots=True)
class And(Predicate):
    children: tuple[Predicate, ...]

    def __post_init__(self) -> None:
        _check_children(self, self.children)

    def leaves(self) -> Iterator[Leaf]:
        for child in self.children:
            yield from child.leaves()


@dataclass(frozen=True, slots=True)
class Or(Predicate):
    children: tuple[Predicate, ...]

    def __post_init__(self) -> None:
        _check_children(self, self.children)

    def leaves(self) -> Iterator[Leaf]:
        for child in self.children:
            yield from child.leaves()


@dataclass(frozen=True, slots=True)
class Not(Predicate):
    child: Predicate

    def __post_init__(self) -> None:
        _check_predicate(self.child)

    def leaves(self) -> Iterator[Leaf]:
        yield from self.child.leaves()


def _check_predicate(value: Any) -> Predicate:
    if not isinstance(value, Predicate):
        raise InvalidPredicate(f"Cannot combine predicate with {type(value).__name__}")
    return value


def _check_children(node: And | Or, children: tuple[Predicate, ...]) -> None:
    if len(children) < 2:
        raise InvalidPredicate(f"{type(node).__name__} needs at least two children")
    for child in children:
        _check_predicate(child)


def _combine(kind: type[And] | type[Or], predicates: tuple[Predicate, ...]) -> Predicate:
    if not predicates:
        raise InvalidPredicate(f"{kind.__name__} needs at least one predicate")

    children: list[Predicate] = []
    for predicate in predicates:
        _check_predicate(predicate)
        # AND-of-ANDs and OR-of-ORs flatten into one n-ary node
        if type(predicate) is kind:
            children.extend(predicate.children)
        else:
            children.append(predicate)

    if len(children) == 1:
        return children[0]

    return kind(tuple(children))


def leaf(field_path: str, operator: Operator, operand: Any = None) -> Predicate:
    """Create a comparison leaf.

    Raises:
        InvalidPredicate: If *operand* is incompatible with *operator*.
    """
    return Leaf(field_path, operator, operand)


def and_(*predicates: Predicate) -> Predicate:
    """Logical AND of *predicates*; a single predicate is returned unchanged."""
    return _combine(And, predicates)


def or_(*predicates: Predicate) -> Predicate:
    """Logical OR of *predicates*; a single predicate is returned unchanged."""
    return _combine(Or, predicates)


def not_(predicate: Predicate) -> Predicate:
    """Logical NOT. Negating a ``Not`` returns its child."""
    _check_predicate(predicate)
    if isinstance(predicate, Not):
        return predicate.child

    return Not(predicate)


def eq(field_path: str, value: Any) -> Predicate:
    return Leaf(field_path, Operator.EQUALS, value)


def ne(field_path: str, value: Any) -> Predicate:
    return Leaf(field_path, Operator.NOT_EQUALS, value)


def gt(field_path: str, value: Any) -> Predicate:
    return Leaf(field_path, Operator.GREATER_THAN, value)


def gte(field_path: str, value: Any) -> Predicate:
    return Leaf(field_path, Operator.GREATER_EQUAL, value)


def lt(field_path: str, value: Any) -> Predicate:
    return Leaf(field_path, Operator.LESS_THAN, value)


def lte(field_path: str, value: Any) -> Predicate:
    return Leaf(field_path, Operator.LESS_EQUAL, value)


def startswith(field_path: str, value: str) -> Predicate:
    return Leaf(field_path, Operator.STARTS_WITH, value)


def endswith(field_path: str, value: str) -> Predicate:
    return Leaf(field_path, Operator.ENDS_WITH, value)


def contains(field_path: str, value: str) -> Predicate:
    return Leaf(field_path, Operator.CONTAINS, value)


def is_in(field_path: str, values: Iterable[Any]) -> Predicate:
    return Leaf(field_path, Operator.IS_IN, values)


def not_in(field_path: str, values: Iterable[Any]) -> Predicate:
    return Leaf(field_path, Operator.NOT_IN, values)


def is_null(field_path: str, value: bool = True) -> Predicate:
    return Leaf(field_path, Operator.IS_NULL, value)


def between(field_path: str, low: Any, high: Any) -> Predicate:
    return Leaf(field_path, Operator.RANGE, (low, high))


def parse_lookup(key: str) -> tuple[str, Operator]:
    """Split ``"field__path__lookup"`` into the field path and its operator.

    A key without a known lookup suffix is an equality test on the whole key.
    """
    field_path, sep, suffix = key.rpartition(LOOKUP_SEP)
    if sep and suffix in _LOOKUPS:
        return field_path, _LOOKUPS[suffix]

    return key, Operator.EQUALS


def Q(**lookups: Any) -> Predicate:  # noqa: N802
    """Build the AND of Django-style keyword lookups.

    Example:
        >>> Q(username="bar", age__gte=18)
        And(children=(Leaf(field_path='username', ...), Leaf(field_path='age', ...)))
    """
    if not lookups:
        raise InvalidPredicate("Q() needs at least one lookup")

    return and_(*(Leaf(*parse_lookup(key), value) for key, value in lookups.items()))
