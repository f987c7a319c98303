"""pgoutput message decoding.

Turns the payload of one XLogData frame into a single ``ChangeEvent``. Row data
is materialised into Python values through the relation cache and the column
decoder, so relation messages must be decoded (in stream order) before the row
messages that reference them.

Message formats: https://www.postgresql.org/docs/current/protocol-logicalrep-message-formats.html
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from typing import Any

from cdc_logical_apply.columns import BINARY, NULL, TEXT, UNCHANGED, ColumnDecoder
from cdc_logical_apply.models import (
    BeginMessage,
    ChangeEvent,
    ColumnDefinition,
    CommitMessage,
    DeleteMessage,
    InsertMessage,
    LogicalDecodingMessage,
    OriginMessage,
    RelationMessage,
    RelationSchema,
    StreamAbortMessage,
    StreamCommitMessage,
    StreamStartMessage,
    StreamStopMessage,
    TruncateMessage,
    TypeMessage,
    UnknownMessage,
    UpdateMessage,
)
from cdc_logical_apply.protocol import ProtocolDecodeError, pg_timestamp_to_datetime
from cdc_logical_apply.relations import RelationCache

_UINT8 = struct.Struct("!B")
_UINT16 = struct.Struct("!H")
_INT32 = struct.Struct("!i")
_UINT32 = struct.Struct("!I")
_INT64 = struct.Struct("!q")
_UINT64 = struct.Struct("!Q")

_TRUNCATE_CASCADE = 1
_TRUNCATE_RESTART_IDENTITY = 2
_MESSAGE_TRANSACTIONAL = 1


class _Reader:
    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = data
        self._offset = offset

    def _unpack(self, fmt: struct.Struct, what: str) -> Any:
        end = self._offset + fmt.size
        if end > len(self._data):
            raise ProtocolDecodeError(
                f"Message truncated reading {what} at offset {self._offset}"
            )
        (value,) = fmt.unpack_from(self._data, self._offset)
        self._offset = end
        return value

    def uint8(self, what: str) -> int:
        return self._unpack(_UINT8, what)

    def uint16(self, what: str) -> int:
        return self._unpack(_UINT16, what)

    def int32(self, what: str) -> int:
        return self._unpack(_INT32, what)

    def uint32(self, what: str) -> int:
        return self._unpack(_UINT32, what)

    def int64(self, what: str) -> int:
        return self._unpack(_INT64, what)

    def uint64(self, what: str) -> int:
        return self._unpack(_UINT64, what)

    def char(self, what: str) -> str:
        return chr(self.uint8(what))

    def take(self, size: int, what: str) -> bytes:
        end = self._offset + size
        if size < 0 or end > len(self._data):
            raise ProtocolDecodeError(
                f"Message truncated reading {what} ({size} bytes) at offset {self._offset}"
            )
        value = bytes(self._data[self._offset:end])
        self._offset = end
        return value

    def cstring(self, what: str) -> str:
        end = self._data.find(b"\x00", self._offset)
        if end < 0:
            raise ProtocolDecodeError(f"Unterminated string reading {what}")
        try:
            value = bytes(self._data[self._offset:end]).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolDecodeError(f"Invalid UTF-8 in {what}") from exc
        self._offset = end + 1
        return value

    def expect_end(self, tag: str) -> None:
        if self._offset != len(self._data):
            raise ProtocolDecodeError(
                f"Unexpected {len(self._data) - self._offset} trailing bytes in {tag!r} message"
            )


_Parser = Callable[[_Reader, bool], ChangeEvent]


class MessageDecoder:
    """Stateful pgoutput decoder.

    State lives in the relation cache only; the streaming flag is supplied by the
    caller on every call. Decoding the same buffers with the same flags against
    the same relation history always produces equal events.
    """

    def __init__(self, *, relations: RelationCache, columns: ColumnDecoder) -> None:
        self._relations = relations
        self._columns = columns
        self._parsers: dict[str, _Parser] = {
            "B": self._begin,
            "C": self._commit,
            "O": self._origin,
            "R": self._relation,
            "Y": self._type,
            "I": self._insert,
            "U": self._update,
            "D": self._delete,
            "T": self._truncate,
            "M": self._message,
            "S": self._stream_start,
            "E": self._stream_stop,
            "c": self._stream_commit,
            "A": self._stream_abort,
        }

    @property
    def relations(self) -> RelationCache:
        return self._relations

    def decode(self, buffer: bytes, in_stream: bool = False) -> ChangeEvent:
        if not buffer:
            raise ProtocolDecodeError("Empty pgoutput message")

        tag = chr(buffer[0])
        parser = self._parsers.get(tag)
        if parser is None:
            return UnknownMessage(tag=tag)

        reader = _Reader(buffer, offset=1)
        event = parser(reader, in_stream)
        reader.expect_end(tag)
        return event

    def _begin(self, reader: _Reader, in_stream: bool) -> BeginMessage:
        return BeginMessage(
            final_lsn=reader.uint64("begin final LSN"),
            commit_time=pg_timestamp_to_datetime(reader.int64("begin commit timestamp")),
            xid=reader.uint32("begin xid"),
        )

    def _commit(self, reader: _Reader, in_stream: bool) -> CommitMessage:
        return CommitMessage(
            flags=reader.uint8("commit flags"),
            commit_lsn=reader.uint64("commit LSN"),
            end_lsn=reader.uint64("commit end LSN"),
            commit_time=pg_timestamp_to_datetime(reader.int64("commit timestamp")),
        )

    def _origin(self, reader: _Reader, in_stream: bool) -> OriginMessage:
        return OriginMessage(
            commit_lsn=reader.uint64("origin commit LSN"),
            name=reader.cstring("origin name"),
        )

    def _relation(self, reader: _Reader, in_stream: bool) -> RelationMessage:
        xid = _stream_xid(reader, in_stream)
        relation_id = reader.uint32("relation ID")
        namespace = reader.cstring("relation namespace")
        name = reader.cstring("relation name")
        replica_identity = reader.char("relation replica identity")
        column_count = reader.uint16("relation column count")

        columns = []
        for _ in range(column_count):
            flags = reader.uint8("column flags")
            columns.append(
                ColumnDefinition(
                    name=reader.cstring("column name"),
                    type_oid=reader.uint32("column type OID"),
                    type_modifier=reader.int32("column type modifier"),
                    is_key=bool(flags & 1),
                )
            )

        relation = RelationSchema(
            relation_id=relation_id,
            namespace=namespace,
            name=name,
            replica_identity=replica_identity,
            columns=tuple(columns),
        )
        self._relations.put(relation)
        return RelationMessage(xid=xid, relation=relation)

    def _type(self, reader: _Reader, in_stream: bool) -> TypeMessage:
        return TypeMessage(
            xid=_stream_xid(reader, in_stream),
            type_oid=reader.uint32("type OID"),
            namespace=reader.cstring("type namespace"),
            name=reader.cstring("type name"),
        )

    def _insert(self, reader: _Reader, in_stream: bool) -> InsertMessage:
        xid = _stream_xid(reader, in_stream)
        relation = self._relations.get(reader.uint32("insert relation ID"))
        marker = reader.char("insert tuple marker")
        if marker != "N":
            raise ProtocolDecodeError(f"Expected new tuple marker 'N' in insert, got {marker!r}")
        return InsertMessage(
            xid=xid,
            relation_id=relation.relation_id,
            new=self._tuple(reader, relation),
        )

    def _update(self, reader: _Reader, in_stream: bool) -> UpdateMessage:
        xid = _stream_xid(reader, in_stream)
        relation = self._relations.get(reader.uint32("update relation ID"))
        old_kind = None
        old = None

        marker = reader.char("update tuple marker")
        if marker in ("K", "O"):
            old_kind = marker
            old = self._tuple(reader, relation)
            marker = reader.char("update new tuple marker")
        if marker != "N":
            raise ProtocolDecodeError(f"Expected new tuple marker 'N' in update, got {marker!r}")

        return UpdateMessage(
            xid=xid,
            relation_id=relation.relation_id,
            old_kind=old_kind,
            old=old,
            new=self._tuple(reader, relation),
        )

    def _delete(self, reader: _Reader, in_stream: bool) -> DeleteMessage:
        xid = _stream_xid(reader, in_stream)
        relation = self._relations.get(reader.uint32("delete relation ID"))
        marker = reader.char("delete tuple marker")
        if marker not in ("K", "O"):
            raise ProtocolDecodeError(f"Expected key or old tuple marker in delete, got {marker!r}")
        return DeleteMessage(
            xid=xid,
            relation_id=relation.relation_id,
            old_kind=marker,
            old=self._tuple(reader, relation),
        )

    def _truncate(self, reader: _Reader, in_stream: bool) -> TruncateMessage:
        xid = _stream_xid(reader, in_stream)
        relation_count = reader.uint32("truncate relation count")
        options = reader.uint8("truncate options")
        relation_ids = tuple(reader.uint32("truncate relation ID") for _ in range(relation_count))
        return TruncateMessage(
            xid=xid,
            relation_ids=relation_ids,
            cascade=bool(options & _TRUNCATE_CASCADE),
            restart_identity=bool(options & _TRUNCATE_RESTART_IDENTITY),
        )

    def _message(self, reader: _Reader, in_stream: bool) -> LogicalDecodingMessage:
        xid = _stream_xid(reader, in_stream)
        flags = reader.uint8("message flags")
        lsn = reader.uint64("message LSN")
        prefix = reader.cstring("message prefix")
        length = reader.uint32("message content length")
        return LogicalDecodingMessage(
            xid=xid,
            transactional=bool(flags & _MESSAGE_TRANSACTIONAL),
            lsn=lsn,
            prefix=prefix,
            content=reader.take(length, "message content"),
        )

    def _stream_start(self, reader: _Reader, in_stream: bool) -> StreamStartMessage:
        return StreamStartMessage(
            xid=reader.uint32("stream start xid"),
            first_segment=reader.uint8("stream start first segment") == 1,
        )

    def _stream_stop(self, reader: _Reader, in_stream: bool) -> StreamStopMessage:
        return StreamStopMessage()

    def _stream_commit(self, reader: _Reader, in_stream: bool) -> StreamCommitMessage:
        return StreamCommitMessage(
            xid=reader.uint32("stream commit xid"),
            flags=reader.uint8("stream commit flags"),
            commit_lsn=reader.uint64("stream commit LSN"),
            end_lsn=reader.uint64("stream commit end LSN"),
            commit_time=pg_timestamp_to_datetime(reader.int64("stream commit timestamp")),
        )

    def _stream_abort(self, reader: _Reader, in_stream: bool) -> StreamAbortMessage:
        return StreamAbortMessage(
            xid=reader.uint32("stream abort xid"),
            subxid=reader.uint32("stream abort subtransaction xid"),
        )

    def _tuple(self, reader: _Reader, relation: RelationSchema) -> tuple[Any, ...]:
        column_count = reader.uint16("tuple column count")
        if column_count != len(relation.columns):
            raise ProtocolDecodeError(
                f"Tuple for {relation.qualified_name} has {column_count} columns, "
                f"relation has {len(relation.columns)}"
            )

        values = []
        for column in relation.columns:
            kind = reader.char("tuple column kind")
            raw = None
            if kind in (TEXT, BINARY):
                raw = reader.take(reader.uint32("tuple column length"), "tuple column value")
            elif kind not in (NULL, UNCHANGED):
                raise ProtocolDecodeError(
                    f"Unknown tuple column kind {kind!r} for {relation.qualified_name}.{column.name}"
                )
            values.append(self._columns.decode(raw, kind, column.type_oid))
        return tuple(values)


def _stream_xid(reader: _Reader, in_stream: bool) -> int | None:
    # Streamed transactions prefix row, relation, type and message payloads with the xid.
    if not in_stream:
        return None
    return reader.uint32("streamed transaction xid")
