from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from time import monotonic

from cdc_logical_apply.decoder import MessageDecoder
from cdc_logical_apply.models import (
    BeginMessage,
    ChangeEvent,
    CommitMessage,
    DeleteMessage,
    InsertMessage,
    LogicalDecodingMessage,
    OriginMessage,
    RelationMessage,
    StreamAbortMessage,
    StreamCommitMessage,
    StreamStartMessage,
    StreamStopMessage,
    TruncateMessage,
    TypeMessage,
    UnknownMessage,
    UpdateMessage,
    WalMessage,
    WriteOperation,
)
from cdc_logical_apply.protocol import PositionTracker
from cdc_logical_apply.queue import InflightWalQueue
from cdc_logical_apply.relations import RelationCache
from cdc_logical_apply.statements import (
    ApplyError,
    build_delete,
    build_insert,
    build_origin_ack,
    build_truncate,
    build_update,
)
from cdc_logical_apply.target import TargetStore

LOGGER = logging.getLogger(__name__)

IDLE = "idle"
IN_TRANSACTION = "in_transaction"

_RowEvent = InsertMessage | UpdateMessage | DeleteMessage | TruncateMessage


class FlushExecutionError(RuntimeError):
    """Raised when the target rejects a grouped write. The batch is not retried."""


class PendingBatch:
    """Write operations of committed transactions waiting for the next flush."""

    def __init__(self) -> None:
        self.operations: list[WriteOperation] = []
        self.commit_lsn: int | None = None
        self.commit_time: datetime | None = None
        self.transactions = 0

    def fold(self, operations: list[WriteOperation], *, commit_lsn: int, commit_time: datetime) -> None:
        self.operations.extend(operations)
        self.commit_lsn = commit_lsn
        self.commit_time = commit_time
        self.transactions += 1

    def __len__(self) -> int:
        return len(self.operations)


class _StreamedTransaction:
    def __init__(self, xid: int) -> None:
        self.xid = xid
        # (subtransaction xid, operation) so an aborted subtransaction can be dropped alone.
        self.operations: list[tuple[int, WriteOperation]] = []

    def abort(self, subxid: int) -> int:
        kept = [(xid, op) for xid, op in self.operations if xid != subxid]
        dropped = len(self.operations) - len(kept)
        self.operations = kept
        return dropped


class ApplyEngine:
    """Batches committed transactions and applies them to the target store.

    Row events of an open transaction are held apart from the pending batch and
    only folded into it on commit, so a flush never contains part of a
    transaction. A commit flushes straight away once ``flush_threshold_s`` has
    passed since the previous flush; otherwise it arms a flush deadline so that
    transactions arriving in quick succession share one grouped write. Each
    flush ends with the replication origin update for the last folded commit,
    and only once the target accepted it does the ``applied`` position advance.
    """

    def __init__(
        self,
        *,
        target: TargetStore,
        relations: RelationCache,
        flush_threshold_s: float = 2.0,
        clock: Callable[[], float] = monotonic,
        applied: PositionTracker | None = None,
    ) -> None:
        if flush_threshold_s <= 0:
            raise ValueError("flush_threshold_s must be > 0")

        self._target = target
        self._relations = relations
        self._flush_threshold_s = flush_threshold_s
        self._clock = clock
        self._applied = applied if applied is not None else PositionTracker()

        self._state = IDLE
        self._transaction: list[WriteOperation] = []
        self._streamed: dict[int, _StreamedTransaction] = {}
        self._stream_xid: int | None = None
        self._batch = PendingBatch()
        self._last_flush_time = clock()
        self._flush_deadline: float | None = None
        self._failed = False

    @property
    def state(self) -> str:
        return self._state

    @property
    def pending_batch(self) -> PendingBatch:
        return self._batch

    @property
    def flush_deadline(self) -> float | None:
        return self._flush_deadline

    @property
    def last_flush_time(self) -> float:
        return self._last_flush_time

    @property
    def applied(self) -> PositionTracker:
        return self._applied

    def now(self) -> float:
        return self._clock()

    async def apply(self, event: ChangeEvent) -> None:
        if isinstance(event, BeginMessage):
            self.begin()
        elif isinstance(event, CommitMessage):
            await self.commit(commit_lsn=event.end_lsn, commit_time=event.commit_time)
        elif isinstance(event, (InsertMessage, UpdateMessage, DeleteMessage, TruncateMessage)):
            self._queue_row_event(event)
        elif isinstance(event, StreamStartMessage):
            self._stream_start(event)
        elif isinstance(event, StreamStopMessage):
            self._stream_xid = None
        elif isinstance(event, StreamCommitMessage):
            await self._stream_commit(event)
        elif isinstance(event, StreamAbortMessage):
            self._stream_abort(event)
        elif isinstance(event, RelationMessage):
            LOGGER.debug(
                "relation_received",
                extra={
                    "relation_id": event.relation.relation_id,
                    "relation": event.relation.qualified_name,
                    "columns": len(event.relation.columns),
                },
            )
        elif isinstance(event, (TypeMessage, OriginMessage)):
            pass
        elif isinstance(event, LogicalDecodingMessage):
            LOGGER.info(
                "logical_decoding_message",
                extra={
                    "prefix": event.prefix,
                    "content_bytes": len(event.content),
                    "transactional": event.transactional,
                    "xid": event.xid,
                },
            )
        elif isinstance(event, UnknownMessage):
            LOGGER.warning("unknown_message_skipped", extra={"tag": event.tag})
        else:
            raise ApplyError(f"Unhandled change event {type(event).__name__}")

    def begin(self) -> None:
        if self._state == IN_TRANSACTION:
            raise ApplyError("Begin received while a transaction is already open")
        self._state = IN_TRANSACTION
        self._transaction = []
        self._flush_deadline = None

    async def commit(self, *, commit_lsn: int, commit_time: datetime) -> None:
        if self._state != IN_TRANSACTION:
            raise ApplyError("Commit received without an open transaction")
        operations = self._transaction
        self._transaction = []
        self._state = IDLE
        await self._fold_commit(operations, commit_lsn=commit_lsn, commit_time=commit_time)

    async def flush(self) -> None:
        self._flush_deadline = None
        batch = self._batch
        if not batch.operations:
            return
        if batch.commit_lsn is None or batch.commit_time is None:
            raise ApplyError("Pending batch has operations but no commit marker")

        operations = [*batch.operations, build_origin_ack(batch.commit_lsn, batch.commit_time)]
        started = self._clock()
        try:
            await self._target.execute_group(operations)
        except Exception as exc:
            self._failed = True
            raise FlushExecutionError(
                f"Failed to apply batch of {len(batch)} operations up to commit LSN {batch.commit_lsn}"
            ) from exc

        self._batch = PendingBatch()
        self._applied.advance(batch.commit_lsn)
        self._last_flush_time = self._clock()
        LOGGER.info(
            "batch_flushed",
            extra={
                "operations": len(batch),
                "transactions": batch.transactions,
                "commit_lsn": batch.commit_lsn,
                "duration_ms": round((self._last_flush_time - started) * 1000, 2),
            },
        )

    async def flush_if_due(self) -> bool:
        deadline = self._flush_deadline
        if deadline is None or self._clock() < deadline:
            return False
        await self.flush()
        return True

    async def close(self) -> None:
        """Flush committed work on shutdown; work of an unfinished transaction is dropped."""
        if self._failed:
            return
        if self._state == IN_TRANSACTION or self._streamed:
            LOGGER.warning(
                "uncommitted_work_discarded",
                extra={
                    "open_transaction_operations": len(self._transaction),
                    "streamed_transactions": len(self._streamed),
                },
            )
        await self.flush()

    async def _fold_commit(
        self,
        operations: list[WriteOperation],
        *,
        commit_lsn: int,
        commit_time: datetime,
    ) -> None:
        if operations:
            self._batch.fold(operations, commit_lsn=commit_lsn, commit_time=commit_time)
        elif self._batch.operations:
            # An empty transaction still moves the acknowledged position forward.
            self._batch.commit_lsn = commit_lsn
            self._batch.commit_time = commit_time
        elif not self._streamed:
            # Nothing pending or open: everything up to this commit is already on the target.
            self._applied.advance(commit_lsn)

        if self._clock() - self._last_flush_time > self._flush_threshold_s:
            await self.flush()
        elif self._batch.operations:
            self._flush_deadline = self._clock() + self._flush_threshold_s

    def _queue_row_event(self, event: _RowEvent) -> None:
        operation = self._build_operation(event)
        if event.xid is not None:
            streamed = self._current_stream()
            if operation is not None:
                streamed.operations.append((event.xid, operation))
            return

        if self._state != IN_TRANSACTION:
            raise ApplyError(f"{event.kind} event received outside a transaction")
        if operation is not None:
            self._transaction.append(operation)

    def _build_operation(self, event: _RowEvent) -> WriteOperation | None:
        if isinstance(event, TruncateMessage):
            relations = [self._relations.get(relation_id) for relation_id in event.relation_ids]
            return build_truncate(relations, event)

        relation = self._relations.get(event.relation_id)
        if isinstance(event, InsertMessage):
            return build_insert(relation, event)
        if isinstance(event, UpdateMessage):
            return build_update(relation, event)
        return build_delete(relation, event)

    def _current_stream(self) -> _StreamedTransaction:
        if self._stream_xid is None:
            raise ApplyError("Streamed change received outside a stream block")
        return self._streamed[self._stream_xid]

    def _stream_start(self, event: StreamStartMessage) -> None:
        if self._stream_xid is not None:
            raise ApplyError(f"Stream start for xid {event.xid} inside an open stream block")
        self._stream_xid = event.xid
        if event.first_segment or event.xid not in self._streamed:
            self._streamed[event.xid] = _StreamedTransaction(event.xid)

    async def _stream_commit(self, event: StreamCommitMessage) -> None:
        streamed = self._streamed.pop(event.xid, None)
        operations = [op for _, op in streamed.operations] if streamed is not None else []
        self._flush_deadline = None
        await self._fold_commit(operations, commit_lsn=event.end_lsn, commit_time=event.commit_time)

    def _stream_abort(self, event: StreamAbortMessage) -> None:
        streamed = self._streamed.get(event.xid)
        if streamed is None:
            return
        if event.subxid == event.xid:
            del self._streamed[event.xid]
            dropped = len(streamed.operations)
        else:
            dropped = streamed.abort(event.subxid)
        LOGGER.info(
            "streamed_transaction_aborted",
            extra={"xid": event.xid, "subxid": event.subxid, "dropped_operations": dropped},
        )


class Applier:
    """Applier task: decodes queued WAL payloads and feeds them to the apply engine.

    Owns the streaming-mode flag, which is raised by a stream start and lowered
    by a stream stop and is passed into every decode call in between.
    """

    def __init__(
        self,
        *,
        queue: InflightWalQueue,
        decoder: MessageDecoder,
        engine: ApplyEngine,
    ) -> None:
        self._queue = queue
        self._decoder = decoder
        self._engine = engine
        self._in_stream = False
        self._stop_requested = asyncio.Event()

    @property
    def in_stream(self) -> bool:
        return self._in_stream

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def run(self) -> None:
        while True:
            message = await self._next_message()
            if message is None:
                if self._stop_requested.is_set():
                    return
                await self._engine.flush_if_due()
                continue

            try:
                await self.process(message.payload)
            finally:
                await self._queue.task_done(message)

    async def process(self, payload: bytes) -> None:
        event = self._decoder.decode(payload, self._in_stream)
        if isinstance(event, StreamStartMessage):
            self._in_stream = True
        elif isinstance(event, StreamStopMessage):
            self._in_stream = False
        await self._engine.apply(event)

    async def drain(self) -> None:
        """Apply whatever is still queued, then flush committed work."""
        while True:
            message = self._queue.get_nowait()
            if message is None:
                break
            try:
                await self.process(message.payload)
            finally:
                await self._queue.task_done(message)
        await self._engine.close()

    async def _next_message(self) -> WalMessage | None:
        timeout: float | None = None
        deadline = self._engine.flush_deadline
        if deadline is not None:
            timeout = deadline - self._engine.now()
            if timeout <= 0:
                return None

        get_task = asyncio.create_task(self._queue.get(), name="applier_queue_get")
        stop_task = asyncio.create_task(self._stop_requested.wait(), name="applier_stop_wait")
        try:
            await asyncio.wait(
                {get_task, stop_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (get_task, stop_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(get_task, stop_task, return_exceptions=True)

        if get_task.cancelled():
            return None
        return get_task.result()
