from __future__ import annotations

import datetime
from collections.abc import AsyncIterator, Iterator
from typing import Any, Final

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from sqla_querysets import AsyncDriver, Driver, queryset_cache_clear
from sqla_querysets.node import Node, get_node, init_node

from .models import (
    Author,
    Base,
    Book,
    Category,
    Department,
    Employee,
    Event,
    Location,
    Publisher,
    User,
)


SEED: Final[list[tuple[type[Base], list[dict[str, Any]]]]] = [
    (
        User,
        [
            {"id": 1, "username": "bar", "password": "foo"},
            {"id": 2, "username": "bar", "password": "baz"},
            {"id": 3, "username": "qux", "password": "foo"},
        ],
    ),
    (
        Location,
        [
            {"id": 1, "name": "Oslo", "country": "NO"},
            {"id": 2, "name": "Lyon", "country": "FR"},
        ],
    ),
    (
        Publisher,
        [
            {"id": 1, "name": "Nordic Press", "location_id": 1},
            {"id": 2, "name": "Rhone Books", "location_id": 2},
            {"id": 3, "name": "Nowhere House", "location_id": None},
        ],
    ),
    (
        Author,
        [
            {"id": 1, "name": "Ada", "born": datetime.date(1815, 12, 10)},
            {"id": 2, "name": "Bram", "born": None},
            {"id": 3, "name": "Cleo", "born": datetime.date(1990, 1, 1)},
        ],
    ),
    (
        Book,
        [
            {
                "id": 1,
                "title": "Analytical Notes",
                "pages": 120,
                "published": datetime.datetime(2020, 1, 1, 12, 0),
                "author_id": 1,
                "publisher_id": 1,
            },
            {
                "id": 2,
                "title": "Bridges",
                "pages": 300,
                "published": None,
                "author_id": 2,
                "publisher_id": 2,
            },
            {
                "id": 3,
                "title": "Draft: Circles",
                "pages": 80,
                "published": None,
                "author_id": 1,
                "publisher_id": None,
            },
            {
                "id": 4,
                "title": "Deep Water",
                "pages": 450,
                "published": datetime.datetime(2021, 6, 1, 9, 30),
                "author_id": 3,
                "publisher_id": 1,
            },
            {
                "id": 5,
                "title": "100% Pure",
                "pages": 50,
                "published": None,
                "author_id": 2,
                "publisher_id": 3,
            },
        ],
    ),
    (Department, [{"id": 1, "name": "R&D", "head_id": None}]),
    (
        Employee,
        [
            {"id": 1, "name": "Eve", "department_id": 1},
            {"id": 2, "name": "Finn", "department_id": 1},
            {"id": 3, "name": "Gus", "department_id": None},
        ],
    ),
    (
        Category,
        [
            {"id": 1, "name": "root", "parent_id": None},
            {"id": 2, "name": "child", "parent_id": 1},
            {"id": 3, "name": "grandchild", "parent_id": 2},
        ],
    ),
]

EVENT_ROWS: Final[list[dict[str, Any]]] = [{"id": i, "seq": 251 - i} for i in range(1, 251)]

# Department 1 gets its head once employees exist
SET_HEAD: Final = sa.update(Department).where(Department.id == 1).values(head_id=1)


def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_node() -> None:
    """Initialize the Node singleton with model metadata.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    try:
        Node()
    except RuntimeError:
        Node.reset()
        init_node(get_node(Base))


# blocking engine (pysqlite)


@pytest.fixture(scope="session")
def engine(tmp_path_factory: pytest.TempPathFactory) -> Iterator[sa.Engine]:
    tmp = tmp_path_factory.mktemp("db")
    engine = sa.create_engine(f"sqlite:///{tmp}/test.db", echo=False)
    sa.event.listen(engine, "connect", _enable_foreign_keys)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def connection(engine: sa.Engine) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        trans = conn.begin()
        yield conn
        trans.rollback()


@pytest.fixture
def seed_data(connection: sa.Connection) -> sa.Connection:
    for model, rows in SEED:
        connection.execute(sa.insert(model), rows)
    connection.execute(SET_HEAD)

    return connection


@pytest.fixture
def events(connection: sa.Connection) -> sa.Connection:
    connection.execute(sa.insert(Event), EVENT_ROWS)

    return connection


@pytest.fixture
def driver(seed_data: sa.Connection) -> Driver:
    return Driver(seed_data)


# asyncio engine (aiosqlite)


@pytest.fixture(scope="session")
def async_engine(tmp_path_factory: pytest.TempPathFactory) -> AsyncEngine:
    tmp = tmp_path_factory.mktemp("adb")
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp}/test.db", echo=False)
    sa.event.listen(engine.sync_engine, "connect", _enable_foreign_keys)
    return engine


@pytest.fixture(scope="session")
async def _create_tables(async_engine: AsyncEngine) -> AsyncIterator[None]:
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await async_engine.dispose()


@pytest.fixture
async def async_connection(
    async_engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with async_engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def async_seed_data(async_connection: AsyncConnection) -> AsyncConnection:
    for model, rows in SEED:
        await async_connection.execute(sa.insert(model), rows)
    await async_connection.execute(SET_HEAD)

    return async_connection


@pytest.fixture
async def async_driver(async_seed_data: AsyncConnection) -> AsyncDriver:
    return AsyncDriver(async_seed_data)


@pytest.fixture
def reset_node_singleton() -> Iterator[None]:
    saved = Node._Node__instance  # type: ignore[attr-defined]
    yield
    Node._Node__instance = saved  # type: ignore[attr-defined]


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    queryset_cache_clear()
