from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any

import pytest
from psycopg import sql

from cdc_logical_apply.models import WriteOperation
from cdc_logical_apply.target import PostgresTargetStore


class _StubCursor:
    def __init__(
        self,
        *,
        rows: list[tuple[Any, ...] | None] | None = None,
        execute_error: Exception | None = None,
    ) -> None:
        self._rows = rows or []
        self._execute_error = execute_error
        self.execute_calls: list[tuple[Any, tuple[Any, ...] | None]] = []

    async def __aenter__(self) -> _StubCursor:
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        return None

    async def execute(self, query: Any, params: tuple[Any, ...] | None = None) -> None:
        self.execute_calls.append((query, params))
        if self._execute_error is not None:
            raise self._execute_error

    async def fetchone(self) -> tuple[Any, ...] | None:
        if not self._rows:
            return None
        return self._rows.pop(0)


class _StubConnection:
    def __init__(self, cursor: _StubCursor) -> None:
        self._cursor = cursor
        self.events: list[str] = []
        self.closed = False

    def cursor(self) -> _StubCursor:
        return self._cursor

    @asynccontextmanager
    async def pipeline(self):
        self.events.append("pipeline_enter")
        try:
            yield
        finally:
            self.events.append("pipeline_exit")

    @asynccontextmanager
    async def transaction(self):
        self.events.append("transaction_begin")
        try:
            yield
        except BaseException:
            self.events.append("transaction_rollback")
            raise
        self.events.append("transaction_commit")

    async def close(self) -> None:
        self.closed = True


def _store(cursor: _StubCursor) -> tuple[PostgresTargetStore, _StubConnection]:
    connection = _StubConnection(cursor)
    return PostgresTargetStore(connection=connection, origin_name="cdc_origin"), connection


def test_setup_origin_creates_missing_origin_and_binds_session() -> None:
    async def scenario() -> None:
        cursor = _StubCursor(rows=[None])
        store, _ = _store(cursor)

        assert await store.setup_origin()

        assert [query for query, _ in cursor.execute_calls] == [
            "SELECT roident FROM pg_replication_origin WHERE roname = %s",
            "SELECT pg_replication_origin_create(%s)",
            "SELECT pg_replication_origin_session_setup(%s)",
        ]
        assert {params for _, params in cursor.execute_calls} == {("cdc_origin",)}

    asyncio.run(scenario())


def test_setup_origin_reuses_existing_origin() -> None:
    async def scenario() -> None:
        cursor = _StubCursor(rows=[(3,)])
        store, _ = _store(cursor)

        assert not await store.setup_origin()
        assert len(cursor.execute_calls) == 2

    asyncio.run(scenario())


@pytest.mark.parametrize(
    ("row", "expected"),
    [
        (("0/64",), 100),
        (("0/0",), None),
        ((None,), None),
        (None, None),
    ],
)
def test_origin_progress(row: tuple[Any, ...] | None, expected: int | None) -> None:
    async def scenario() -> None:
        cursor = _StubCursor(rows=[row])
        store, _ = _store(cursor)

        assert await store.origin_progress() == expected
        assert cursor.execute_calls == [
            ("SELECT pg_replication_origin_progress(%s, true)::text", ("cdc_origin",))
        ]

    asyncio.run(scenario())


def test_execute_group_runs_every_operation_in_one_transaction() -> None:
    async def scenario() -> None:
        cursor = _StubCursor()
        store, connection = _store(cursor)
        insert = WriteOperation(statement=sql.SQL("INSERT INTO t VALUES (%s)"), params=(1,))
        truncate = WriteOperation(statement=sql.SQL("TRUNCATE TABLE t"))

        await store.execute_group([insert, truncate])

        assert cursor.execute_calls == [(insert.statement, (1,)), (truncate.statement, ())]
        assert connection.events == [
            "pipeline_enter",
            "transaction_begin",
            "transaction_commit",
            "pipeline_exit",
        ]

    asyncio.run(scenario())


def test_execute_group_rolls_back_and_propagates_errors() -> None:
    async def scenario() -> None:
        cursor = _StubCursor(execute_error=RuntimeError("relation does not exist"))
        store, connection = _store(cursor)

        with pytest.raises(RuntimeError, match="does not exist"):
            await store.execute_group([WriteOperation(statement=sql.SQL("SELECT 1"))])

        assert "transaction_rollback" in connection.events
        assert "transaction_commit" not in connection.events

    asyncio.run(scenario())


def test_close_closes_connection() -> None:
    async def scenario() -> None:
        store, connection = _store(_StubCursor())

        await store.close()

        assert connection.closed

    asyncio.run(scenario())
