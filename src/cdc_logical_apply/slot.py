from __future__ import annotations

import logging

import psycopg

LOGGER = logging.getLogger(__name__)


async def ensure_replication_slot(*, conninfo: str, slot_name: str, output_plugin: str) -> bool:
    """Create the persistent logical replication slot if missing.

    Returns True when the slot was created in this call, False when it already
    existed. An existing slot bound to another output plugin is an error.
    """

    async with await psycopg.AsyncConnection.connect(conninfo=conninfo, autocommit=True) as connection:
        async with connection.cursor() as cursor:
            await cursor.execute(
                "SELECT plugin FROM pg_replication_slots WHERE slot_name = %s",
                (slot_name,),
            )
            existing = await cursor.fetchone()
            if existing:
                if existing[0] != output_plugin:
                    raise RuntimeError(
                        f"Replication slot {slot_name} uses plugin {existing[0]!r}, "
                        f"expected {output_plugin!r}"
                    )
                return False

            await cursor.execute(
                "SELECT * FROM pg_create_logical_replication_slot(%s, %s)",
                (slot_name, output_plugin),
            )
            _ = await cursor.fetchone()
            LOGGER.info("replication_slot_created", extra={"slot": slot_name, "plugin": output_plugin})
            return True
