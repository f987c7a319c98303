from __future__ import annotations

import struct
import time
from datetime import datetime, timedelta, timezone

XLOGDATA_HDR = struct.Struct("!cqqq")
KEEPALIVE = struct.Struct("!cqqB")
STANDBY_STATUS = struct.Struct("!cqqqqB")
POSTGRES_EPOCH_OFFSET_US = 946_684_800_000_000
MICROSECONDS_PER_SECOND = 1_000_000
POSTGRES_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)


class ReplicationProtocolError(RuntimeError):
    """Raised when replication protocol payloads are invalid."""


class ProtocolDecodeError(ReplicationProtocolError):
    """Raised when a pgoutput payload is truncated or structurally malformed."""


def now_us() -> int:
    return int(time.time() * MICROSECONDS_PER_SECOND) - POSTGRES_EPOCH_OFFSET_US


def pg_timestamp_to_datetime(value_us: int) -> datetime:
    return POSTGRES_EPOCH + timedelta(microseconds=value_us)


def parse_xlogdata(buf: bytes) -> tuple[int, int, int, bytes]:
    if len(buf) < XLOGDATA_HDR.size:
        raise ReplicationProtocolError("XLogData frame is too short")

    tag, wal_start, wal_end, server_time_us = XLOGDATA_HDR.unpack_from(buf, 0)
    if tag != b"w":
        raise ReplicationProtocolError(f"Expected XLogData tag b'w', got {tag!r}")

    payload = bytes(buf[XLOGDATA_HDR.size:])
    return wal_start, wal_end, server_time_us, payload


def parse_keepalive(buf: bytes) -> tuple[int, int, int]:
    if len(buf) != KEEPALIVE.size:
        raise ReplicationProtocolError("Keepalive frame has invalid size")

    tag, wal_end, server_time_us, reply_requested = KEEPALIVE.unpack(buf)
    if tag != b"k":
        raise ReplicationProtocolError(f"Expected keepalive tag b'k', got {tag!r}")

    return wal_end, server_time_us, reply_requested


def build_standby_status(*, received_lsn: int, flushed_lsn: int) -> bytes:
    """Standby status update: write = received, flush = apply = durably applied on the target.

    The server advances a persistent slot's ``confirmed_flush_lsn`` from the flush
    field, so it must never run ahead of what the target has committed.
    """
    return STANDBY_STATUS.pack(
        b"r",
        received_lsn,
        flushed_lsn,
        flushed_lsn,
        now_us(),
        0,
    )


class PositionTracker:
    """A WAL position that never moves backwards.

    The reader keeps one for the received position. The apply engine advances a
    second one after each durable flush, and the reader only reads it.
    """

    def __init__(self, *, initial_lsn: int = 0) -> None:
        self._position = initial_lsn

    @property
    def position(self) -> int:
        return self._position

    def advance(self, lsn: int) -> bool:
        if lsn > self._position:
            self._position = lsn
            return True
        return False


def lsn_str_to_int(lsn: str) -> int:
    a, b = lsn.split("/")
    return (int(a, 16) << 32) | int(b, 16)


def lsn_int_to_str(lsn: int) -> str:
    return f"{(lsn >> 32):X}/{(lsn & 0xFFFFFFFF):X}"
