from __future__ import annotations

import datetime

import pytest
from sqlalchemy.engine.default import DefaultDialect

from sqla_querysets.datastructures import Limit, OrderBy, RelatedFetchSpec
from sqla_querysets.exceptions import UnresolvedFieldPath
from sqla_querysets.node import Node
from sqla_querysets.predicate import (
    Q,
    and_,
    between,
    contains,
    eq,
    gt,
    is_in,
    is_null,
    ne,
    not_,
    not_in,
    startswith,
)
from sqla_querysets.queryset import QuerySet
from sqla_querysets.resolver import resolve_related
from sqla_querysets.translator import SQLTranslator

from ..models import Book, Category, Employee, User


USER_COLUMNS = "users.id, users.username, users.password"
BOOK_COLUMNS = (
    "books.id, books.title, books.pages, books.published, books.author_id, books.publisher_id"
)


@pytest.fixture
def sqlite() -> SQLTranslator:
    return SQLTranslator.for_dialect("sqlite")


class TestWhere:
    def test_filter_exclude(self) -> None:
        qs = QuerySet(User).filter(eq("username", "bar")).exclude(eq("password", "foo"))
        statement = qs.sql()

        assert statement.text == (
            f"SELECT {USER_COLUMNS} FROM users"
            " WHERE users.username = ? AND NOT (users.password = ?)"
            " ORDER BY users.id ASC"
        )
        assert statement.params == ("bar", "foo")

    def test_chained_filters_match_and(self) -> None:
        p1, p2 = eq("username", "bar"), ne("password", "foo")
        qs = QuerySet(User)

        assert qs.filter(p1).filter(p2).sql() == qs.filter(and_(p1, p2)).sql()

    def test_double_negation(self) -> None:
        p = eq("username", "bar") | gt("id", 2)
        qs = QuerySet(User)

        assert qs.filter(not_(not_(p))).sql() == qs.filter(p).sql()
        assert qs.exclude(~p).sql() == qs.filter(p).sql()

    def test_nested_groups_parenthesized(self) -> None:
        p = (eq("id", 1) & eq("username", "bar")) | eq("password", "foo")
        text = QuerySet(User).filter(p).sql().text

        assert (
            "WHERE (users.id = ? AND users.username = ?) OR users.password = ?" in text
        )

    def test_or_inside_and(self) -> None:
        p = eq("id", 1) & (eq("username", "a") | eq("username", "b"))
        text = QuerySet(User).filter(p).sql().text

        assert "WHERE users.id = ? AND (users.username = ? OR users.username = ?)" in text

    def test_kwargs_lookups(self) -> None:
        statement = QuerySet(User).filter(username="bar", id__gte=2).sql()

        assert "WHERE users.username = ? AND users.id >= ?" in statement.text
        assert statement.params == ("bar", 2)

    def test_none_equality_is_null(self) -> None:
        statement = QuerySet(Book).filter(eq("published", None)).sql()

        assert "WHERE books.published IS NULL" in statement.text
        assert statement.params == ()

    def test_none_inequality_is_not_null(self) -> None:
        text = QuerySet(Book).filter(ne("publisher", None)).sql().text
        assert "WHERE books.publisher_id IS NOT NULL" in text

    def test_isnull(self) -> None:
        assert "books.published IS NOT NULL" in QuerySet(Book).filter(
            is_null("published", False)
        ).sql().text

    def test_like_escapes_wildcards(self) -> None:
        statement = QuerySet(Book).filter(contains("title", "100%")).sql()

        assert "WHERE books.title LIKE ? ESCAPE '!'" in statement.text
        assert statement.params == ("%100!%%",)

    def test_startswith(self) -> None:
        assert QuerySet(Book).filter(startswith("title", "a_b")).sql().params == ("a!_b%",)

    def test_in(self) -> None:
        statement = QuerySet(Book).filter(is_in("id", [1, 2])).sql()

        assert "WHERE books.id IN (?, ?)" in statement.text
        assert statement.params == (1, 2)

    def test_empty_in_matches_nothing(self) -> None:
        assert "WHERE 1 = 0" in QuerySet(Book).filter(is_in("id", [])).sql().text

    def test_empty_not_in_matches_everything(self) -> None:
        assert "WHERE 1 = 1" in QuerySet(Book).filter(not_in("id", [])).sql().text

    def test_between(self) -> None:
        statement = QuerySet(Book).filter(between("pages", 10, 20)).sql()

        assert "WHERE books.pages BETWEEN ? AND ?" in statement.text
        assert statement.params == (10, 20)

    def test_bind_processor_applied(self) -> None:
        when = datetime.datetime(2020, 1, 1, 12, 0)
        statement = QuerySet(Book).filter(gt("published", when)).sql()

        assert statement.params == ("2020-01-01 12:00:00.000000",)

    def test_values_never_in_text(self) -> None:
        text = QuerySet(User).filter(Q(username="robert'); DROP TABLE users;--")).sql().text
        assert "DROP" not in text

    def test_unresolved_path(self) -> None:
        with pytest.raises(UnresolvedFieldPath):
            QuerySet(Book).filter(eq("publisher__nope", 1)).sql()


class TestJoins:
    def test_select_related_two_joins(self) -> None:
        text = QuerySet(Book).select_related("publisher__location").sql().text

        assert text.count("LEFT OUTER JOIN") == 2
        assert (
            "FROM books LEFT OUTER JOIN publishers AS books__publisher"
            " ON books__publisher.id = books.publisher_id"
            " LEFT OUTER JOIN locations AS books__publisher__location"
            " ON books__publisher__location.id = books__publisher.location_id"
        ) in text
        assert text.startswith(
            f"SELECT {BOOK_COLUMNS}, books__publisher.id, books__publisher.name,"
            " books__publisher.location_id, books__publisher__location.id,"
            " books__publisher__location.name, books__publisher__location.country FROM"
        )

    def test_filter_join_not_projected(self) -> None:
        statement = QuerySet(Book).filter(eq("publisher__location__name", "Oslo")).sql()

        assert statement.text.startswith(f"SELECT {BOOK_COLUMNS} FROM books LEFT OUTER JOIN")
        assert statement.text.count("LEFT OUTER JOIN") == 2
        assert "WHERE books__publisher__location.name = ?" in statement.text

    def test_filter_reuses_fetch_join(self) -> None:
        text = (
            QuerySet(Book)
            .select_related("publisher")
            .filter(eq("publisher__name", "Nordic Press"))
            .sql()
            .text
        )
        assert text.count("LEFT OUTER JOIN") == 1

    def test_recursive_cycle_joins_once(self) -> None:
        text = QuerySet(Employee).select_related().sql().text

        assert text.count("LEFT OUTER JOIN") == 1
        assert "departments AS employees__department" in text

    def test_self_reference(self) -> None:
        text = QuerySet(Category).select_related("parent__parent").sql().text

        assert "categories AS categories__parent__parent" in text
        assert (
            "ON categories__parent__parent.id = categories__parent.parent_id" in text
        )

    def test_alias_falls_back_when_too_long(self) -> None:
        translator = SQLTranslator(DefaultDialect(max_identifier_length=12))
        plan = resolve_related(Book, RelatedFetchSpec.explicit(["publisher__location"]), Node())
        statement, _ = translator.select(Book, node=Node(), plan=plan)

        assert "publishers AS t1" in statement.text
        assert "locations AS t2" in statement.text


class TestOrderAndLimit:
    def test_default_pk_order(self) -> None:
        assert QuerySet(Book).sql().text.endswith(" ORDER BY books.id ASC")

    def test_pk_tiebreaker(self) -> None:
        text = QuerySet(Book).order_by("-title").sql().text
        assert text.endswith(" ORDER BY books.title DESC, books.id ASC")

    def test_explicit_pk_not_duplicated(self) -> None:
        assert QuerySet(Book).order_by("-pk").sql().text.endswith(" ORDER BY books.id DESC")

    def test_order_by_relation(self) -> None:
        text = QuerySet(Book).order_by(("publisher__name", "desc")).sql().text

        assert "LEFT OUTER JOIN publishers AS books__publisher" in text
        assert text.endswith(" ORDER BY books__publisher.name DESC, books.id ASC")

    def test_order_by_malformed_path(self) -> None:
        with pytest.raises(UnresolvedFieldPath, match="Malformed field path"):
            QuerySet(Book).order_by("-publisher____name")

    def test_order_by_replaces(self) -> None:
        qs = QuerySet(Book).order_by("title").order_by("pages")
        assert qs.ordering == (OrderBy("pages"),)

    def test_limit_and_offset(self) -> None:
        statement = QuerySet(Book).limit(10, 5).sql()

        assert statement.text.endswith(" ORDER BY books.id ASC LIMIT ? OFFSET ?")
        assert statement.params == (5, 10)

    def test_zero_count(self) -> None:
        statement = QuerySet(Book).limit(3, 0).sql()

        assert statement.text.endswith(" LIMIT ? OFFSET ?")
        assert statement.params == (0, 3)

    def test_offset_only_sqlite(self) -> None:
        statement = QuerySet(Book).limit(10).sql()

        assert statement.text.endswith(" LIMIT -1 OFFSET ?")
        assert statement.params == (10,)

    def test_offset_only_postgresql(self) -> None:
        translator = SQLTranslator.for_dialect("postgresql")
        statement, _ = translator.select(Book, node=Node(), limit=Limit(10))

        assert statement.text.endswith(" OFFSET %s")

    def test_no_window(self) -> None:
        assert "LIMIT" not in QuerySet(Book).limit(0).sql().text

    def test_slice(self) -> None:
        qs = QuerySet(Book)[2:5]

        assert qs.window == Limit(2, 3)
        assert qs[1:].window == Limit(3, 2)

    def test_slice_step_rejected(self) -> None:
        with pytest.raises(ValueError, match="step"):
            QuerySet(Book)[::2]


class TestCountAndDelete:
    def test_count(self, sqlite: SQLTranslator) -> None:
        statement = sqlite.count(Book, node=Node(), where=gt("pages", 100))

        assert statement.text == "SELECT COUNT(*) FROM books WHERE books.pages > ?"
        assert statement.params == (100,)

    def test_count_limited_uses_subquery(self, sqlite: SQLTranslator) -> None:
        statement = sqlite.count(Book, node=Node(), limit=Limit(0, 2))

        assert statement.text == (
            "SELECT COUNT(*) FROM (SELECT books.id FROM books ORDER BY books.id ASC"
            " LIMIT ?) AS counted"
        )

    def test_delete(self, sqlite: SQLTranslator) -> None:
        statement = sqlite.delete(Book, node=Node(), where=gt("pages", 100))

        assert statement.text == "DELETE FROM books WHERE books.pages > ?"
        assert statement.params == (100,)

    def test_delete_all(self, sqlite: SQLTranslator) -> None:
        assert sqlite.delete(User, node=Node()).text == "DELETE FROM users"

    def test_delete_across_relation(self, sqlite: SQLTranslator) -> None:
        statement = sqlite.delete(Book, node=Node(), where=eq("publisher__name", "Nordic Press"))

        assert statement.text == (
            "DELETE FROM books WHERE books.id IN (SELECT books.id FROM books"
            " LEFT OUTER JOIN publishers AS books__publisher"
            " ON books__publisher.id = books.publisher_id"
            " WHERE books__publisher.name = ?)"
        )

    def test_delete_limited(self, sqlite: SQLTranslator) -> None:
        statement = sqlite.delete(Book, node=Node(), limit=Limit(0, 2))

        assert statement.text == (
            "DELETE FROM books WHERE books.id IN (SELECT books.id FROM books"
            " ORDER BY books.id ASC LIMIT ?)"
        )

    def test_delete_limited_mysql_uses_derived_table(self) -> None:
        translator = SQLTranslator.for_dialect("mysql")
        statement = translator.delete(Book, node=Node(), where=gt("pages", 100), limit=Limit(0, 2))

        assert statement.text == (
            "DELETE FROM books WHERE books.id IN (SELECT doomed.id FROM"
            " (SELECT books.id FROM books WHERE books.pages > %s"
            " ORDER BY books.id ASC LIMIT %s) AS doomed)"
        )
        assert statement.params == (100, 2)


class TestValues:
    def test_projection_order(self, sqlite: SQLTranslator) -> None:
        statement = sqlite.values(Book, ["title", "publisher__location__name"], node=Node())

        assert statement.text.startswith(
            "SELECT books.title, books__publisher__location.name FROM books LEFT OUTER JOIN"
        )


class TestParamstyle:
    def test_qmark(self, sqlite: SQLTranslator) -> None:
        assert sqlite.paramstyle == "qmark"

    def test_pyformat(self) -> None:
        translator = SQLTranslator.for_dialect("postgresql")
        statement, _ = translator.select(User, node=Node(), where=eq("username", "bar"))

        assert "WHERE users.username = %s" in statement.text
        assert statement.params == ("bar",)

    def test_named(self) -> None:
        translator = SQLTranslator(DefaultDialect())
        statement, _ = translator.select(
            User, node=Node(), where=eq("username", "bar") | eq("username", "baz")
        )

        assert "WHERE users.username = :p1 OR users.username = :p2" in statement.text
        assert statement.params == {"p1": "bar", "p2": "baz"}

    def test_numeric_dollar(self) -> None:
        translator = SQLTranslator(DefaultDialect(paramstyle="numeric_dollar"))
        statement, _ = translator.select(User, node=Node(), where=eq("id", 1), limit=Limit(0, 5))

        assert "WHERE users.id = $1" in statement.text
        assert statement.text.endswith(" LIMIT $2")

    def test_identifier_quoting(self, sqlite: SQLTranslator) -> None:
        assert sqlite.quote("order") == '"order"'
        assert sqlite.quote("books") == "books"
