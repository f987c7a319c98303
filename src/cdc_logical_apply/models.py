from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from psycopg import sql
from pydantic import BaseModel, ConfigDict, Field


class _UnchangedToast:
    """Marker for a TOASTed column value the server did not send."""

    _instance: _UnchangedToast | None = None

    def __new__(cls) -> _UnchangedToast:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNCHANGED_TOAST"


UNCHANGED_TOAST = _UnchangedToast()


class WalMessage(BaseModel):
    """Single XLogData payload handed from the replication reader to the applier."""

    model_config = ConfigDict(frozen=True)

    wal_start: int
    wal_end: int
    payload: bytes

    @property
    def record_size_bytes(self) -> int:
        return len(self.payload)


class ColumnDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type_oid: int
    type_modifier: int = -1
    is_key: bool = False


class RelationSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    relation_id: int
    namespace: str
    name: str
    replica_identity: str = "d"
    columns: tuple[ColumnDefinition, ...]

    @property
    def key_columns(self) -> tuple[ColumnDefinition, ...]:
        return tuple(column for column in self.columns if column.is_key)

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class RelationMessage(_Event):
    kind: Literal["relation"] = "relation"
    xid: int | None = None
    relation: RelationSchema


class BeginMessage(_Event):
    kind: Literal["begin"] = "begin"
    final_lsn: int
    commit_time: datetime
    xid: int


class CommitMessage(_Event):
    kind: Literal["commit"] = "commit"
    flags: int = 0
    commit_lsn: int
    end_lsn: int
    commit_time: datetime


class InsertMessage(_Event):
    kind: Literal["insert"] = "insert"
    xid: int | None = None
    relation_id: int
    new: tuple[Any, ...]


class UpdateMessage(_Event):
    kind: Literal["update"] = "update"
    xid: int | None = None
    relation_id: int
    # "K" when only the replica identity key was sent, "O" for the full old row.
    old_kind: Literal["K", "O"] | None = None
    old: tuple[Any, ...] | None = None
    new: tuple[Any, ...]


class DeleteMessage(_Event):
    kind: Literal["delete"] = "delete"
    xid: int | None = None
    relation_id: int
    old_kind: Literal["K", "O"]
    old: tuple[Any, ...]


class TruncateMessage(_Event):
    kind: Literal["truncate"] = "truncate"
    xid: int | None = None
    relation_ids: tuple[int, ...]
    cascade: bool = False
    restart_identity: bool = False


class TypeMessage(_Event):
    kind: Literal["type"] = "type"
    xid: int | None = None
    type_oid: int
    namespace: str
    name: str


class OriginMessage(_Event):
    kind: Literal["origin"] = "origin"
    commit_lsn: int
    name: str


class LogicalDecodingMessage(_Event):
    kind: Literal["message"] = "message"
    xid: int | None = None
    transactional: bool
    lsn: int
    prefix: str
    content: bytes


class StreamStartMessage(_Event):
    kind: Literal["stream_start"] = "stream_start"
    xid: int
    first_segment: bool


class StreamStopMessage(_Event):
    kind: Literal["stream_stop"] = "stream_stop"


class StreamCommitMessage(_Event):
    kind: Literal["stream_commit"] = "stream_commit"
    xid: int
    flags: int = 0
    commit_lsn: int
    end_lsn: int
    commit_time: datetime


class StreamAbortMessage(_Event):
    kind: Literal["stream_abort"] = "stream_abort"
    xid: int
    subxid: int


class UnknownMessage(_Event):
    kind: Literal["unknown"] = "unknown"
    tag: str


ChangeEvent = Annotated[
    Union[
        RelationMessage,
        BeginMessage,
        CommitMessage,
        InsertMessage,
        UpdateMessage,
        DeleteMessage,
        TruncateMessage,
        TypeMessage,
        OriginMessage,
        LogicalDecodingMessage,
        StreamStartMessage,
        StreamStopMessage,
        StreamCommitMessage,
        StreamAbortMessage,
        UnknownMessage,
    ],
    Field(discriminator="kind"),
]


class WriteOperation(BaseModel):
    """One parameterised statement queued for the next grouped write."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    statement: sql.Composable
    params: tuple[Any, ...] = ()
    relation: str | None = None
