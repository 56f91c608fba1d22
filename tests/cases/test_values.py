from __future__ import annotations

import datetime

import pytest

from sqla_querysets import Driver, QuerySet, UnresolvedFieldPath

from ..models import Book, User


class TestValues:
    def test_field_order_follows_arguments(self, driver: Driver) -> None:
        rows = QuerySet(User, driver).values("password", "username")

        assert list(rows[0]) == ["password", "username"]
        assert rows[0] == {"password": "foo", "username": "bar"}

    def test_all_root_fields_by_default(self, driver: Driver) -> None:
        rows = QuerySet(User, driver).filter(id=3).values()
        assert rows == [{"id": 3, "username": "qux", "password": "foo"}]

    def test_relation_paths(self, driver: Driver) -> None:
        rows = QuerySet(Book, driver).values("title", "publisher__location__name")

        assert rows[0] == {"title": "Analytical Notes", "publisher__location__name": "Oslo"}
        assert rows[2] == {"title": "Draft: Circles", "publisher__location__name": None}

    def test_processed_values(self, driver: Driver) -> None:
        rows = QuerySet(Book, driver).filter(id=4).values("published", "author__born")

        assert rows == [
            {
                "published": datetime.datetime(2021, 6, 1, 9, 30),
                "author__born": datetime.date(1990, 1, 1),
            }
        ]

    def test_values_and_values_list_agree(self, driver: Driver) -> None:
        qs = QuerySet(Book, driver).order_by("-pages")
        mappings = qs.values("title", "pages")
        tuples = qs.values_list("title", "pages")

        assert len(mappings) == len(tuples) == 5
        for mapping, row in zip(mappings, tuples):
            assert mapping["title"] == row[0]
            assert mapping["pages"] == row[1]

    def test_unresolved(self, driver: Driver) -> None:
        with pytest.raises(UnresolvedFieldPath):
            QuerySet(Book, driver).values("isbn")


class TestValuesList:
    def test_tuples(self, driver: Driver) -> None:
        rows = QuerySet(User, driver).values_list("username", "id")
        assert rows == [("bar", 1), ("bar", 2), ("qux", 3)]

    def test_flat(self, driver: Driver) -> None:
        assert QuerySet(Book, driver).order_by("title").values_list("id", flat=True) == [
            5,
            1,
            2,
            4,
            3,
        ]

    def test_flat_requires_one_field(self, driver: Driver) -> None:
        with pytest.raises(TypeError, match="exactly one field"):
            QuerySet(Book, driver).values_list("id", "title", flat=True)

    def test_windowed(self, driver: Driver) -> None:
        assert QuerySet(Book, driver)[1:3].values_list("id", flat=True) == [2, 3]

    def test_foreign_key_name(self, driver: Driver) -> None:
        assert QuerySet(Book, driver).values_list("publisher", flat=True) == [1, 2, None, 1, 3]
