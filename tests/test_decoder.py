from __future__ import annotations

from decimal import Decimal

import pytest

import pgoutput_builders as pg
from cdc_logical_apply.columns import ColumnDecoder
from cdc_logical_apply.decoder import MessageDecoder
from cdc_logical_apply.models import (
    UNCHANGED_TOAST,
    BeginMessage,
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
)
from cdc_logical_apply.protocol import ProtocolDecodeError
from cdc_logical_apply.relations import RelationCache, UnknownRelationError

ITEMS_COLUMNS = [
    ("id", pg.INT4_OID, True),
    ("name", pg.TEXT_OID, False),
    ("price", pg.NUMERIC_OID, False),
    ("active", pg.BOOL_OID, False),
    ("attrs", pg.JSONB_OID, False),
    ("shape", pg.CUSTOM_OID, False),
]


def _decoder() -> MessageDecoder:
    return MessageDecoder(relations=RelationCache(), columns=ColumnDecoder())


def _decoder_with_items() -> MessageDecoder:
    decoder = _decoder()
    decoder.decode(pg.relation(16384, "public", "items", ITEMS_COLUMNS))
    return decoder


def test_begin_and_commit() -> None:
    decoder = _decoder()

    begin = decoder.decode(pg.begin(final_lsn=0x1_0000_0010, xid=731))
    commit = decoder.decode(pg.commit(commit_lsn=0x1_0000_0010, end_lsn=0x1_0000_0040))

    assert begin == BeginMessage(final_lsn=0x1_0000_0010, commit_time=pg.COMMIT_TIME, xid=731)
    assert isinstance(commit, CommitMessage)
    assert commit.commit_lsn == 0x1_0000_0010
    assert commit.end_lsn == 0x1_0000_0040
    assert commit.commit_time == pg.COMMIT_TIME


def test_relation_message_is_cached() -> None:
    decoder = _decoder()

    event = decoder.decode(
        pg.relation(16384, "public", "items", ITEMS_COLUMNS[:2], replica_identity="f")
    )

    assert isinstance(event, RelationMessage)
    relation = decoder.relations.get(16384)
    assert event.relation == relation
    assert relation.qualified_name == "public.items"
    assert relation.replica_identity == "f"
    assert [column.name for column in relation.key_columns] == ["id"]
    assert relation.columns[1].type_oid == pg.TEXT_OID


def test_insert_values_are_typed() -> None:
    decoder = _decoder_with_items()

    event = decoder.decode(
        pg.insert(16384, [7, "widget", "12.50", "t", '{"size": "L"}', "(1,2)"])
    )

    assert event == InsertMessage(
        relation_id=16384,
        new=(7, "widget", Decimal("12.50"), True, {"size": "L"}, "(1,2)"),
    )


def test_insert_with_null_and_unchanged_toast() -> None:
    decoder = _decoder_with_items()

    event = decoder.decode(pg.insert(16384, [7, None, None, None, pg.TOAST, None]))

    assert isinstance(event, InsertMessage)
    assert event.new == (7, None, None, None, UNCHANGED_TOAST, None)


def test_insert_for_unknown_relation_is_rejected() -> None:
    with pytest.raises(UnknownRelationError):
        _decoder().decode(pg.insert(99, [1]))


def test_update_with_key_and_without_old_tuple() -> None:
    decoder = _decoder()
    decoder.decode(pg.relation(1, "public", "t", [("id", pg.INT4_OID, True), ("v", pg.TEXT_OID, False)]))

    keyed = decoder.decode(pg.update(1, [2, "new"], old=[1, None], old_kind="K"))
    plain = decoder.decode(pg.update(1, [1, "new"]))

    assert keyed == UpdateMessage(relation_id=1, old_kind="K", old=(1, None), new=(2, "new"))
    assert plain == UpdateMessage(relation_id=1, new=(1, "new"))


def test_delete_with_full_old_row() -> None:
    decoder = _decoder()
    decoder.decode(pg.relation(1, "public", "t", [("id", pg.INT4_OID, False), ("v", pg.TEXT_OID, False)]))

    event = decoder.decode(pg.delete(1, [5, "gone"], old_kind="O"))

    assert event == DeleteMessage(relation_id=1, old_kind="O", old=(5, "gone"))


def test_truncate_options() -> None:
    event = _decoder().decode(pg.truncate([1, 2], options=3))

    assert event == TruncateMessage(relation_ids=(1, 2), cascade=True, restart_identity=True)


def test_type_origin_and_logical_message() -> None:
    decoder = _decoder()

    assert decoder.decode(pg.type_message(pg.CUSTOM_OID, "public", "point2")) == TypeMessage(
        type_oid=pg.CUSTOM_OID, namespace="public", name="point2"
    )
    assert decoder.decode(pg.origin(0x20, "upstream")) == OriginMessage(commit_lsn=0x20, name="upstream")
    assert decoder.decode(pg.logical_message("audit", b"\x00payload", transactional=False, lsn=0x30)) == (
        LogicalDecodingMessage(transactional=False, lsn=0x30, prefix="audit", content=b"\x00payload")
    )


def test_streaming_markers() -> None:
    decoder = _decoder()

    assert decoder.decode(pg.stream_start(900, first_segment=True)) == StreamStartMessage(
        xid=900, first_segment=True
    )
    assert decoder.decode(pg.stream_stop()) == StreamStopMessage()
    assert decoder.decode(pg.stream_commit(900, commit_lsn=0x50, end_lsn=0x58)) == StreamCommitMessage(
        xid=900, commit_lsn=0x50, end_lsn=0x58, commit_time=pg.COMMIT_TIME
    )
    assert decoder.decode(pg.stream_abort(900, 901)) == StreamAbortMessage(xid=900, subxid=901)


def test_streamed_row_messages_carry_xid() -> None:
    decoder = _decoder()
    decoder.decode(
        pg.relation(1, "public", "t", [("id", pg.INT4_OID, True)], xid=900),
        in_stream=True,
    )

    event = decoder.decode(pg.insert(1, [3], xid=901), in_stream=True)

    assert event == InsertMessage(xid=901, relation_id=1, new=(3,))


def test_streamed_payload_decoded_outside_stream_is_rejected() -> None:
    decoder = _decoder()
    decoder.decode(pg.relation(1, "public", "t", [("id", pg.INT4_OID, True)]))

    # The xid prefix is read as the relation ID.
    with pytest.raises(UnknownRelationError):
        decoder.decode(pg.insert(1, [3], xid=901))


def test_unknown_tag_is_reported_not_raised() -> None:
    assert _decoder().decode(b"Zsomething") == UnknownMessage(tag="Z")


def test_empty_buffer_is_rejected() -> None:
    with pytest.raises(ProtocolDecodeError):
        _decoder().decode(b"")


@pytest.mark.parametrize("cut", [1, 5, 12, 20])
def test_truncated_begin_is_rejected(cut: int) -> None:
    payload = pg.begin(final_lsn=1, xid=2)

    with pytest.raises(ProtocolDecodeError):
        _decoder().decode(payload[:cut])


def test_truncated_column_value_is_rejected() -> None:
    decoder = _decoder_with_items()
    payload = pg.insert(16384, [7, "widget", "12.50", "t", "{}", "x"])

    with pytest.raises(ProtocolDecodeError):
        decoder.decode(payload[:-1])


def test_trailing_bytes_are_rejected() -> None:
    with pytest.raises(ProtocolDecodeError):
        _decoder().decode(pg.stream_abort(1, 2) + b"\x00")


def test_column_count_mismatch_is_rejected() -> None:
    decoder = _decoder_with_items()

    with pytest.raises(ProtocolDecodeError):
        decoder.decode(pg.insert(16384, [7, "widget"]))


def test_decoding_is_deterministic() -> None:
    payloads = [
        pg.relation(16384, "public", "items", ITEMS_COLUMNS),
        pg.begin(final_lsn=10, xid=1),
        pg.insert(16384, [1, "a", "1.0", "f", "[]", None]),
        pg.commit(commit_lsn=10, end_lsn=20),
    ]

    first = list(map(_decoder_with_items().decode, payloads))
    second = list(map(_decoder_with_items().decode, payloads))

    assert first == second
