from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from psycopg import postgres, sql
from psycopg.types.json import Json, Jsonb

from cdc_logical_apply.models import (
    UNCHANGED_TOAST,
    ColumnDefinition,
    DeleteMessage,
    InsertMessage,
    RelationSchema,
    TruncateMessage,
    UpdateMessage,
    WriteOperation,
)
from cdc_logical_apply.protocol import lsn_int_to_str

_ORIGIN_XACT_SETUP_SQL = sql.SQL("SELECT pg_replication_origin_xact_setup(%s::pg_lsn, %s)")
_JSON_OID = postgres.types["json"].oid
_JSONB_OID = postgres.types["jsonb"].oid


class ApplyError(RuntimeError):
    """Raised when a change event cannot be turned into a target write."""


def _ident(*names: str) -> sql.Composable:
    # Statements are always sent with parameters, so a "%" inside a quoted name must be doubled.
    return sql.SQL(sql.Identifier(*names).as_string(None).replace("%", "%%"))


def _table(relation: RelationSchema) -> sql.Composable:
    return _ident(relation.namespace or "pg_catalog", relation.name)


def _present(
    relation: RelationSchema,
    values: Sequence[Any],
) -> list[tuple[ColumnDefinition, Any]]:
    # Unchanged TOAST values were not sent; they are left out, never written as NULL.
    return [
        (column, value)
        for column, value in zip(relation.columns, values, strict=True)
        if value is not UNCHANGED_TOAST
    ]


def build_insert(relation: RelationSchema, event: InsertMessage) -> WriteOperation:
    columns = _present(relation, event.new)
    statement = sql.SQL("INSERT INTO {table} ({columns}) OVERRIDING SYSTEM VALUE VALUES ({values})").format(
        table=_table(relation),
        columns=sql.SQL(", ").join(_ident(column.name) for column, _ in columns),
        values=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
    )
    return WriteOperation(
        statement=statement,
        params=_params(columns),
        relation=relation.qualified_name,
    )


def build_update(relation: RelationSchema, event: UpdateMessage) -> WriteOperation | None:
    assignments = _present(relation, event.new)
    if not assignments:
        return None

    where, where_params = _identity_filter(relation, old=event.old, old_kind=event.old_kind, new=event.new)
    statement = sql.SQL("UPDATE {table} SET {assignments} WHERE {where}").format(
        table=_table(relation),
        assignments=sql.SQL(", ").join(
            sql.SQL("{} = {}").format(_ident(column.name), sql.Placeholder())
            for column, _ in assignments
        ),
        where=where,
    )
    return WriteOperation(
        statement=statement,
        params=_params(assignments) + where_params,
        relation=relation.qualified_name,
    )


def build_delete(relation: RelationSchema, event: DeleteMessage) -> WriteOperation:
    where, where_params = _identity_filter(relation, old=event.old, old_kind=event.old_kind, new=None)
    statement = sql.SQL("DELETE FROM {table} WHERE {where}").format(
        table=_table(relation),
        where=where,
    )
    return WriteOperation(statement=statement, params=where_params, relation=relation.qualified_name)


def build_truncate(relations: Sequence[RelationSchema], event: TruncateMessage) -> WriteOperation:
    parts = [
        sql.SQL("TRUNCATE TABLE {tables}").format(
            tables=sql.SQL(", ").join(_table(relation) for relation in relations)
        )
    ]
    if event.restart_identity:
        parts.append(sql.SQL("RESTART IDENTITY"))
    if event.cascade:
        parts.append(sql.SQL("CASCADE"))
    return WriteOperation(
        statement=sql.SQL(" ").join(parts),
        relation=", ".join(relation.qualified_name for relation in relations),
    )


def build_origin_ack(commit_lsn: int, commit_time: datetime) -> WriteOperation:
    return WriteOperation(
        statement=_ORIGIN_XACT_SETUP_SQL,
        params=(lsn_int_to_str(commit_lsn), commit_time),
    )


def _identity_filter(
    relation: RelationSchema,
    *,
    old: Sequence[Any] | None,
    old_kind: str | None,
    new: Sequence[Any] | None,
) -> tuple[sql.Composable, tuple[Any, ...]]:
    """Build the WHERE clause locating the source row on the target.

    Key columns are matched with ``=``. A table without key columns can only be
    matched when the full old row was sent (REPLICA IDENTITY FULL), in which case
    every sent column is compared with ``IS NOT DISTINCT FROM``.
    """
    key_columns = relation.key_columns
    if key_columns:
        source = old if old is not None else new
        if source is None:
            raise ApplyError(f"No identity values for {relation.qualified_name}")

        pairs = [
            (column, value)
            for column, value in zip(relation.columns, source, strict=True)
            if column.is_key
        ]
        if any(value is UNCHANGED_TOAST for _, value in pairs):
            raise ApplyError(f"Identity column of {relation.qualified_name} was not sent")
        operator = sql.SQL("=")
    elif old is not None and old_kind == "O":
        pairs = _present(relation, old)
        operator = sql.SQL("IS NOT DISTINCT FROM")
    else:
        raise ApplyError(
            f"Relation {relation.qualified_name} has no replica identity to locate rows by"
        )

    where = sql.SQL(" AND ").join(
        sql.SQL("{} {} {}").format(_ident(column.name), operator, sql.Placeholder())
        for column, _ in pairs
    )
    return where, _params(pairs)


def _params(pairs: Sequence[tuple[ColumnDefinition, Any]]) -> tuple[Any, ...]:
    return tuple(_adapt(column, value) for column, value in pairs)


def _adapt(column: ColumnDefinition, value: Any) -> Any:
    # psycopg does not dump dicts on its own; JSON columns come back loaded.
    if value is None:
        return None
    if column.type_oid == _JSONB_OID:
        return Jsonb(value)
    if column.type_oid == _JSON_OID:
        return Json(value)
    return value
