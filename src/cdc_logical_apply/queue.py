from __future__ import annotations

import asyncio
import logging

from cdc_logical_apply.models import WalMessage

LOGGER = logging.getLogger(__name__)


class InflightWalQueue:
    """Bounded FIFO of WAL payloads, constrained by both message count and total bytes.

    ``put`` blocks while either bound is reached, which stalls the replication
    reader until the applier catches up.
    """

    def __init__(self, *, max_messages: int, max_bytes: int) -> None:
        if max_messages <= 0:
            raise ValueError("max_messages must be > 0")
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")

        self._messages: asyncio.Queue[WalMessage] = asyncio.Queue(maxsize=max_messages)
        self._max_bytes = max_bytes
        self._bytes_inflight = 0
        self._capacity = asyncio.Condition()

    @property
    def bytes_inflight(self) -> int:
        return self._bytes_inflight

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def qsize(self) -> int:
        return self._messages.qsize()

    def empty(self) -> bool:
        return self._messages.empty()

    async def put(self, message: WalMessage) -> None:
        size = message.record_size_bytes
        if size > self._max_bytes:
            raise ValueError(
                f"WAL message size ({size}) exceeds queue byte capacity ({self._max_bytes})"
            )

        if self._messages.full() or not self._fits(size):
            LOGGER.debug(
                "queue_backpressure",
                extra={
                    "wal_start": message.wal_start,
                    "queued_messages": self.qsize(),
                    "bytes_inflight": self._bytes_inflight,
                },
            )

        async with self._capacity:
            await self._capacity.wait_for(lambda: self._fits(size))
            self._bytes_inflight += size

        try:
            await self._messages.put(message)
        except BaseException:
            # Cancelled while waiting for a message slot: give the reservation back.
            async with self._capacity:
                self._release(size)
            raise

    async def get(self) -> WalMessage:
        return await self._messages.get()

    def get_nowait(self) -> WalMessage | None:
        """Next queued message, or ``None`` when nothing is queued."""
        try:
            return self._messages.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def task_done(self, message: WalMessage) -> None:
        self._messages.task_done()
        async with self._capacity:
            self._release(message.record_size_bytes)

    async def join(self) -> None:
        await self._messages.join()

    def _fits(self, size: int) -> bool:
        return self._bytes_inflight + size <= self._max_bytes

    def _release(self, size: int) -> None:
        self._bytes_inflight = max(0, self._bytes_inflight - size)
        self._capacity.notify_all()
