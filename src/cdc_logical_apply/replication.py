from __future__ import annotations

import asyncio
import logging
from time import monotonic
from typing import Any

import psycopg
from psycopg import pq
from psycopg.generators import copy_from, copy_to
from pydantic import BaseModel, ConfigDict

from cdc_logical_apply.models import WalMessage
from cdc_logical_apply.protocol import (
    PositionTracker,
    ReplicationProtocolError,
    build_standby_status,
    lsn_int_to_str,
    lsn_str_to_int,
    parse_keepalive,
    parse_xlogdata,
)
from cdc_logical_apply.queue import InflightWalQueue
from cdc_logical_apply.settings import Settings
from cdc_logical_apply.slot import ensure_replication_slot

LOGGER = logging.getLogger(__name__)


class SystemIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    system_id: str
    timeline: int
    xlog_pos: int
    dbname: str | None = None


def build_start_replication_statement(
    *,
    slot_name: str,
    start_lsn: int,
    plugin_options_sql: str,
) -> str:
    return (
        f"START_REPLICATION SLOT {slot_name} "
        f"LOGICAL {lsn_int_to_str(start_lsn)} "
        f"({plugin_options_sql})"
    )


def build_create_slot_statement(*, slot_name: str, output_plugin: str, temporary: bool) -> str:
    temporary_sql = " TEMPORARY" if temporary else ""
    return f"CREATE_REPLICATION_SLOT {slot_name}{temporary_sql} LOGICAL {output_plugin}"


async def identify_system(cursor: Any) -> SystemIdentity:
    await cursor.execute("IDENTIFY_SYSTEM")
    row = await cursor.fetchone()
    if row is None:
        raise ReplicationProtocolError("IDENTIFY_SYSTEM returned no rows")

    system_id, timeline, xlog_pos, dbname = row
    return SystemIdentity(
        system_id=str(system_id),
        timeline=int(timeline),
        xlog_pos=lsn_str_to_int(str(xlog_pos)),
        dbname=dbname,
    )


async def create_replication_slot(
    cursor: Any,
    *,
    slot_name: str,
    output_plugin: str,
    temporary: bool,
) -> tuple[Any, ...] | None:
    statement = build_create_slot_statement(
        slot_name=slot_name,
        output_plugin=output_plugin,
        temporary=temporary,
    )
    await cursor.execute(statement)
    return await cursor.fetchone()


class _ReplicationStream:
    """Minimal COPY_BOTH wrapper for logical replication frames."""

    def __init__(self, *, connection: psycopg.AsyncConnection[Any]) -> None:
        self._connection = connection
        self._pgconn = connection.pgconn

    async def read(self) -> memoryview | None:
        frame_or_result = await self._connection.wait(copy_from(self._pgconn))
        if isinstance(frame_or_result, memoryview):
            return frame_or_result
        return None

    async def write(self, payload: bytes) -> None:
        await self._connection.wait(copy_to(self._pgconn, payload, flush=True))


async def consume_replication_stream(
    *,
    settings: Settings,
    queue: InflightWalQueue,
    applied: PositionTracker,
    start_lsn: int | None = None,
) -> None:
    if not settings.temporary_slot:
        created = await ensure_replication_slot(
            conninfo=settings.source_conninfo,
            slot_name=settings.replication_slot,
            output_plugin=settings.output_plugin,
        )
        LOGGER.info("replication_slot_ready", extra={"slot_created": created})

    connection = await psycopg.AsyncConnection.connect(
        conninfo=settings.source_conninfo,
        autocommit=True,
        replication="database",
    )

    try:
        async with connection.cursor() as cursor:
            identity = await identify_system(cursor)
            LOGGER.info(
                "system_identified",
                extra={
                    "system_id": identity.system_id,
                    "timeline": identity.timeline,
                    "xlog_pos": lsn_int_to_str(identity.xlog_pos),
                    "dbname": identity.dbname,
                },
            )

            if settings.temporary_slot:
                await create_replication_slot(
                    cursor,
                    slot_name=settings.replication_slot,
                    output_plugin=settings.output_plugin,
                    temporary=True,
                )
                LOGGER.info("temporary_replication_slot_created", extra={"slot": settings.replication_slot})

            position = start_lsn if start_lsn else identity.xlog_pos
            statement = build_start_replication_statement(
                slot_name=settings.replication_slot,
                start_lsn=position,
                plugin_options_sql=settings.plugin_options_sql,
            )
            await cursor.execute(statement)
            pgresult = cursor.pgresult
            if pgresult is None or pgresult.status != pq.ExecStatus.COPY_BOTH:
                raise RuntimeError(
                    "START_REPLICATION did not enter COPY_BOTH mode "
                    f"(status={pgresult.status if pgresult else 'none'})"
                )
            LOGGER.info(
                "replication_started",
                extra={"slot": settings.replication_slot, "start_lsn": lsn_int_to_str(position)},
            )

            replication_stream = _ReplicationStream(connection=connection)
            await _replication_loop(
                copy=replication_stream,
                queue=queue,
                tracker=PositionTracker(initial_lsn=position),
                applied=applied,
                standby_status_interval_s=settings.standby_status_interval_s,
            )
    finally:
        await connection.close()


async def _replication_loop(
    *,
    copy: Any,
    queue: InflightWalQueue,
    tracker: PositionTracker,
    applied: PositionTracker,
    standby_status_interval_s: float,
) -> None:
    next_status_deadline = monotonic() + standby_status_interval_s
    read_task: asyncio.Task[Any] = asyncio.create_task(copy.read(), name="replication_copy_read")

    try:
        while True:
            if monotonic() >= next_status_deadline:
                await copy.write(
                    build_standby_status(received_lsn=tracker.position, flushed_lsn=applied.position)
                )
                LOGGER.debug(
                    "standby_status_sent",
                    extra={
                        "received": lsn_int_to_str(tracker.position),
                        "flushed": lsn_int_to_str(applied.position),
                    },
                )
                next_status_deadline = monotonic() + standby_status_interval_s

            timeout = max(0.01, next_status_deadline - monotonic())
            done, _ = await asyncio.wait({read_task}, timeout=timeout)
            if not done:
                continue

            raw_frame = read_task.result()
            if raw_frame is None:
                raise ReplicationProtocolError("Replication stream ended")
            read_task = asyncio.create_task(copy.read(), name="replication_copy_read")

            frame = bytes(raw_frame)
            if not frame:
                continue

            tag = frame[:1]
            if tag == b"w":
                wal_start, wal_end, _, payload = parse_xlogdata(frame)
                await queue.put(WalMessage(wal_start=wal_start, wal_end=wal_end, payload=payload))
                tracker.advance(wal_start)
                continue

            if tag == b"k":
                wal_end, _, reply_requested = parse_keepalive(frame)
                tracker.advance(wal_end)
                if reply_requested:
                    next_status_deadline = monotonic()
                continue

            LOGGER.warning("unknown_replication_frame_skipped", extra={"tag": tag.decode("latin-1")})
    finally:
        if not read_task.done():
            read_task.cancel()
        await asyncio.gather(read_task, return_exceptions=True)
