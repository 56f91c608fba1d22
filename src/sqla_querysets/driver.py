"""Execution adapters over SQLAlchemy connectables.

A driver runs the raw SQL rendered by ``SQLTranslator`` through
``exec_driver_sql`` and turns SQLAlchemy failures into ``DriverError`` /
``ConstraintViolation``. Bound to an engine, it acquires a connection and a
transaction per call; bound to a connection, it runs inside the caller's
transaction and never commits.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .exceptions import ConstraintViolation, DriverError
from .settings import settings
from .translator import SQLTranslator, Statement


logger = logging.getLogger(__name__)

Row = tuple[Any, ...]


def _driver_error(exc: sa.exc.SQLAlchemyError, statement: Statement) -> DriverError:
    orig = getattr(exc, "orig", None) or exc
    if isinstance(exc, sa.exc.IntegrityError):
        return ConstraintViolation(str(orig), statement=statement.text)

    return DriverError(str(orig), statement=statement.text)


class _BaseDriver:
    __slots__ = ("_translator", "bind")

    def __init__(self, bind: Any) -> None:
        self.bind = bind
        self._translator: SQLTranslator | None = None

    @property
    def dialect(self) -> sa.Dialect:
        return self.bind.dialect

    @property
    def translator(self) -> SQLTranslator:
        """Translator for this driver's dialect, negotiated on first use."""
        if self._translator is None:
            self._translator = SQLTranslator(self.dialect)

        return self._translator

    def _log(self, statement: Statement) -> None:
        if settings.log_parameters:
            logger.debug("Executing %s with %r", statement.text, statement.params)
        else:
            logger.debug("Executing %s", statement.text)

    def _fail(self, exc: sa.exc.SQLAlchemyError, statement: Statement) -> DriverError:
        logger.warning("Statement failed: %s", exc.__class__.__name__)
        return _driver_error(exc, statement)


class Driver(_BaseDriver):
    """Blocking driver over an ``Engine`` or an open ``Connection``."""

    bind: sa.Engine | sa.Connection

    def __init__(self, bind: sa.Engine | sa.Connection) -> None:
        super().__init__(bind)

    @contextmanager
    def _connection(self) -> Iterator[sa.Connection]:
        if isinstance(self.bind, sa.Connection):
            yield self.bind
            return

        with self.bind.begin() as conn:
            yield conn

    def execute(self, statement: Statement) -> list[Row]:
        """Execute *statement* and return every row.

        Raises:
            ConstraintViolation: On integrity errors.
            DriverError: On any other execution failure.
        """
        self._log(statement)
        try:
            with self._connection() as conn:
                result = conn.exec_driver_sql(statement.text, statement.params or None)
                return [tuple(row) for row in result]
        except sa.exc.SQLAlchemyError as exc:
            raise self._fail(exc, statement) from exc

    def execute_rowcount(self, statement: Statement) -> int:
        """Execute a data-modifying *statement* and return the affected row count."""
        self._log(statement)
        try:
            with self._connection() as conn:
                return conn.exec_driver_sql(statement.text, statement.params or None).rowcount
        except sa.exc.SQLAlchemyError as exc:
            raise self._fail(exc, statement) from exc


class AsyncDriver(_BaseDriver):
    """asyncio driver over an ``AsyncEngine`` or an open ``AsyncConnection``."""

    bind: AsyncEngine | AsyncConnection

    def __init__(self, bind: AsyncEngine | AsyncConnection) -> None:
        super().__init__(bind)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        if isinstance(self.bind, AsyncConnection):
            yield self.bind
            return

        async with self.bind.begin() as conn:
            yield conn

    async def execute(self, statement: Statement) -> list[Row]:
        self._log(statement)
        try:
            async with self._connection() as conn:
                result = await conn.exec_driver_sql(statement.text, statement.params or None)
                return [tuple(row) for row in result]
        except sa.exc.SQLAlchemyError as exc:
            raise self._fail(exc, statement) from exc

    async def execute_rowcount(self, statement: Statement) -> int:
        self._log(statement)
        try:
            async with self._connection() as conn:
                result = await conn.exec_driver_sql(statement.text, statement.params or None)
                return result.rowcount
        except sa.exc.SQLAlchemyError as exc:
            raise self._fail(exc, statement) from exc
