from __future__ import annotations

import re
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def _sql_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _bool_to_pgoutput(value: bool) -> str:
    return "true" if value else "false"


def _conninfo(
    *,
    host: str,
    port: int,
    user: str,
    password: str,
    dbname: str,
    connect_timeout_s: int,
) -> str:
    # libpq conninfo avoids accidental DSN parsing differences in different call sites.
    return (
        f"host={host} port={port} user={user} "
        f"password={_sql_quote(password)} dbname={dbname} "
        f"connect_timeout={connect_timeout_s}"
    )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False)

    source_pghost: str = Field(alias="SOURCE_PGHOST")
    source_pgport: int = Field(default=5432, alias="SOURCE_PGPORT")
    source_pguser: str = Field(alias="SOURCE_PGUSER")
    source_pgpassword: str = Field(alias="SOURCE_PGPASSWORD")
    source_pgdatabase: str = Field(alias="SOURCE_PGDATABASE")

    target_pghost: str = Field(alias="TARGET_PGHOST")
    target_pgport: int = Field(default=5432, alias="TARGET_PGPORT")
    target_pguser: str = Field(alias="TARGET_PGUSER")
    target_pgpassword: str = Field(alias="TARGET_PGPASSWORD")
    target_pgdatabase: str = Field(alias="TARGET_PGDATABASE")

    connect_timeout_s: int = Field(default=5, alias="CONNECT_TIMEOUT_S")

    replication_slot: str = Field(default="cdc_logical_apply", alias="REPLICATION_SLOT")
    temporary_slot: bool = Field(default=True, alias="TEMPORARY_SLOT")
    output_plugin: Literal["pgoutput"] = Field(default="pgoutput", alias="OUTPUT_PLUGIN")
    publication_name: str = Field(default="cdc_logical_apply", alias="PUBLICATION_NAME")
    proto_version: int = Field(default=2, alias="PROTO_VERSION")
    streaming: bool = Field(default=True, alias="STREAMING")
    logical_messages: bool = Field(default=True, alias="LOGICAL_MESSAGES")

    origin_name: str = Field(default="cdc_logical_apply", alias="ORIGIN_NAME")
    flush_threshold_s: float = Field(default=2.0, alias="FLUSH_THRESHOLD_S")
    standby_status_interval_s: float = Field(default=10.0, alias="STANDBY_STATUS_INTERVAL_S")

    inflight_max_messages: int = Field(default=1024, alias="INFLIGHT_MAX_MESSAGES")
    inflight_max_bytes: int = Field(default=134217728, alias="INFLIGHT_MAX_BYTES")

    @field_validator("replication_slot")
    @classmethod
    def _validate_slot_name(cls, value: str) -> str:
        if not _IDENTIFIER_PATTERN.fullmatch(value):
            raise ValueError(
                "REPLICATION_SLOT must only contain ASCII letters, numbers, and underscore"
            )
        return value

    @field_validator("publication_name")
    @classmethod
    def _validate_publication_name(cls, value: str) -> str:
        names = [name.strip() for name in value.split(",")]
        if not all(_IDENTIFIER_PATTERN.fullmatch(name) for name in names):
            raise ValueError(
                "PUBLICATION_NAME must be a comma-separated list of ASCII letters, "
                "numbers, and underscore"
            )
        return ",".join(names)

    @field_validator("proto_version")
    @classmethod
    def _validate_proto_version(cls, value: int) -> int:
        if value not in (1, 2):
            raise ValueError("PROTO_VERSION must be 1 or 2")
        return value

    @field_validator("origin_name")
    @classmethod
    def _validate_origin_name(cls, value: str) -> str:
        if not value or len(value) > 512:
            raise ValueError("ORIGIN_NAME must be between 1 and 512 characters")
        return value

    @field_validator("flush_threshold_s", "standby_status_interval_s")
    @classmethod
    def _validate_positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("intervals must be > 0")
        return value

    @field_validator("inflight_max_messages", "inflight_max_bytes")
    @classmethod
    def _validate_inflight_limits(cls, value: int) -> int:
        if value < 1:
            raise ValueError("in-flight queue limits must be >= 1")
        return value

    @model_validator(mode="after")
    def _validate_streaming_protocol(self) -> Settings:
        if self.streaming and self.proto_version < 2:
            raise ValueError("STREAMING requires PROTO_VERSION 2")
        return self

    @property
    def source_conninfo(self) -> str:
        return _conninfo(
            host=self.source_pghost,
            port=self.source_pgport,
            user=self.source_pguser,
            password=self.source_pgpassword,
            dbname=self.source_pgdatabase,
            connect_timeout_s=self.connect_timeout_s,
        )

    @property
    def target_conninfo(self) -> str:
        return _conninfo(
            host=self.target_pghost,
            port=self.target_pgport,
            user=self.target_pguser,
            password=self.target_pgpassword,
            dbname=self.target_pgdatabase,
            connect_timeout_s=self.connect_timeout_s,
        )

    @property
    def plugin_options_sql(self) -> str:
        options = {
            "proto_version": str(self.proto_version),
            "publication_names": self.publication_name,
            "messages": _bool_to_pgoutput(self.logical_messages),
        }
        if self.proto_version >= 2:
            options["streaming"] = _bool_to_pgoutput(self.streaming)
        return ", ".join(f"{k} {_sql_quote(v)}" for k, v in options.items())
