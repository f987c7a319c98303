from __future__ import annotations

import logging
from typing import Any

import psycopg
from psycopg import pq
from psycopg.adapt import AdaptersMap, Loader

from cdc_logical_apply.models import UNCHANGED_TOAST
from cdc_logical_apply.protocol import ProtocolDecodeError

LOGGER = logging.getLogger(__name__)

NULL = "n"
UNCHANGED = "u"
TEXT = "t"
BINARY = "b"


class ColumnDecoder:
    """Turns pgoutput column values into Python values.

    Type lookups go through a psycopg ``AdaptersMap``, so registering a loader on
    the map (or on ``psycopg.adapters``) is enough to teach the decoder a new type.
    Values of types without a loader are returned as the raw text.
    """

    def __init__(self, adapters: AdaptersMap | None = None) -> None:
        self._adapters = adapters if adapters is not None else psycopg.adapters
        self._loaders: dict[tuple[int, pq.Format], Loader | None] = {}

    def decode(self, raw: bytes | None, kind: str, type_oid: int) -> Any:
        if kind == NULL:
            return None
        if kind == UNCHANGED:
            return UNCHANGED_TOAST
        if raw is None:
            raise ProtocolDecodeError(f"Column value of kind {kind!r} is missing its data")

        if kind == TEXT:
            loader = self._loader(type_oid, pq.Format.TEXT)
            if loader is None:
                try:
                    return raw.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise ProtocolDecodeError(f"Text value of type {type_oid} is not valid UTF-8") from exc
            return loader.load(raw)

        if kind == BINARY:
            loader = self._loader(type_oid, pq.Format.BINARY)
            if loader is None:
                return bytes(raw)
            return loader.load(raw)

        raise ProtocolDecodeError(f"Unknown column data kind {kind!r}")

    def _loader(self, type_oid: int, fmt: pq.Format) -> Loader | None:
        key = (type_oid, fmt)
        if key in self._loaders:
            return self._loaders[key]

        loader_cls = self._adapters.get_loader(type_oid, fmt)
        loader = loader_cls(type_oid) if loader_cls is not None else None
        if loader is None:
            LOGGER.debug("column_type_without_loader", extra={"type_oid": type_oid})
        self._loaders[key] = loader
        return loader
