from __future__ import annotations

import asyncio
import logging
import os

from pydantic import ValidationError

from cdc_logical_apply.apply import Applier, ApplyEngine
from cdc_logical_apply.columns import ColumnDecoder
from cdc_logical_apply.decoder import MessageDecoder
from cdc_logical_apply.protocol import PositionTracker, lsn_int_to_str
from cdc_logical_apply.queue import InflightWalQueue
from cdc_logical_apply.relations import RelationCache
from cdc_logical_apply.replication import consume_replication_stream
from cdc_logical_apply.settings import Settings
from cdc_logical_apply.target import PostgresTargetStore

LOGGER = logging.getLogger(__name__)


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def run() -> None:
    configure_logging()
    try:
        settings = Settings()
    except ValidationError:
        LOGGER.exception("settings_invalid")
        raise

    LOGGER.info(
        "service_start",
        extra={
            "replication_slot": settings.replication_slot,
            "publication": settings.publication_name,
            "origin_name": settings.origin_name,
        },
    )

    try:
        target = await PostgresTargetStore.connect(
            conninfo=settings.target_conninfo,
            origin_name=settings.origin_name,
        )
    except Exception:
        LOGGER.exception("target_connect_failed")
        raise

    try:
        await target.setup_origin()
        start_lsn = await target.origin_progress()
        LOGGER.info(
            "resume_position_loaded",
            extra={"start_lsn": lsn_int_to_str(start_lsn) if start_lsn else None},
        )
        await run_pipeline(settings=settings, target=target, start_lsn=start_lsn)
    except asyncio.CancelledError:
        raise
    except Exception:
        LOGGER.exception("pipeline_failed")
        raise
    finally:
        await target.close()
        LOGGER.info("service_stopped")


async def run_pipeline(
    *,
    settings: Settings,
    target: PostgresTargetStore,
    start_lsn: int | None,
) -> None:
    queue = InflightWalQueue(
        max_messages=settings.inflight_max_messages,
        max_bytes=settings.inflight_max_bytes,
    )
    applied = PositionTracker(initial_lsn=start_lsn or 0)
    relations = RelationCache()
    decoder = MessageDecoder(relations=relations, columns=ColumnDecoder())
    engine = ApplyEngine(
        target=target,
        relations=relations,
        flush_threshold_s=settings.flush_threshold_s,
        applied=applied,
    )
    applier = Applier(queue=queue, decoder=decoder, engine=engine)

    reader_task = asyncio.create_task(
        consume_replication_stream(
            settings=settings,
            queue=queue,
            applied=applied,
            start_lsn=start_lsn,
        ),
        name="replication_reader",
    )
    applier_task = asyncio.create_task(applier.run(), name="applier")
    tasks = [reader_task, applier_task]

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            exc = task.exception()
            if exc is not None:
                raise exc

        raise RuntimeError("Pipeline tasks stopped unexpectedly")
    finally:
        await _shutdown(reader_task=reader_task, applier_task=applier_task, applier=applier)


async def _shutdown(
    *,
    reader_task: asyncio.Task[None],
    applier_task: asyncio.Task[None],
    applier: Applier,
) -> None:
    # Stop receiving first, then let the applier finish what it holds and flush.
    reader_task.cancel()
    await asyncio.gather(reader_task, return_exceptions=True)

    applier.request_stop()
    await asyncio.gather(applier_task, return_exceptions=True)
    if applier_task.cancelled() or applier_task.exception() is not None:
        LOGGER.error("applier_failed_skipping_final_flush")
        return

    try:
        await applier.drain()
    except Exception:
        LOGGER.exception("final_flush_failed")
        raise
    LOGGER.info("pipeline_drained")
