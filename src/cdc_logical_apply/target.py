from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import psycopg

from cdc_logical_apply.models import WriteOperation
from cdc_logical_apply.protocol import lsn_str_to_int

LOGGER = logging.getLogger(__name__)


class TargetStore(Protocol):
    async def execute_group(self, operations: Sequence[WriteOperation]) -> None:
        ...


class PostgresTargetStore:
    """Applies grouped writes to the target database under a replication origin.

    The origin session is bound to this connection, so every group that ends with
    ``pg_replication_origin_xact_setup`` advances the origin's durable progress
    atomically with the rows it wrote.
    """

    def __init__(self, *, connection: psycopg.AsyncConnection[Any], origin_name: str) -> None:
        self._connection = connection
        self._origin_name = origin_name

    @classmethod
    async def connect(cls, *, conninfo: str, origin_name: str) -> PostgresTargetStore:
        connection = await psycopg.AsyncConnection.connect(conninfo=conninfo, autocommit=True)
        return cls(connection=connection, origin_name=origin_name)

    @property
    def origin_name(self) -> str:
        return self._origin_name

    async def setup_origin(self) -> bool:
        """Create the replication origin if missing and bind it to this session.

        Returns True when the origin was created in this call.
        """
        created = False
        async with self._connection.cursor() as cursor:
            await cursor.execute(
                "SELECT roident FROM pg_replication_origin WHERE roname = %s",
                (self._origin_name,),
            )
            if await cursor.fetchone() is None:
                await cursor.execute("SELECT pg_replication_origin_create(%s)", (self._origin_name,))
                created = True

            await cursor.execute("SELECT pg_replication_origin_session_setup(%s)", (self._origin_name,))

        LOGGER.info(
            "replication_origin_ready",
            extra={"origin_name": self._origin_name, "origin_created": created},
        )
        return created

    async def origin_progress(self) -> int | None:
        async with self._connection.cursor() as cursor:
            await cursor.execute(
                "SELECT pg_replication_origin_progress(%s, true)::text",
                (self._origin_name,),
            )
            row = await cursor.fetchone()

        if not row or row[0] is None:
            return None
        lsn = lsn_str_to_int(row[0])
        return lsn or None

    async def execute_group(self, operations: Sequence[WriteOperation]) -> None:
        async with self._connection.pipeline(), self._connection.transaction():
            async with self._connection.cursor() as cursor:
                for operation in operations:
                    await cursor.execute(operation.statement, operation.params)

    async def close(self) -> None:
        await self._connection.close()
