"""Index records by base and change time for ordered scans.

Version: 6 -> 7
"""

from __future__ import annotations

from alembic.operations import Operations

from bibstore_core.schema.ddl import create_index_if_missing

from_version = 6
to_version = 7


def upgrade(op: Operations) -> None:
    create_index_if_missing(op, "ix_record_base_record_timestamp", "record", ["base", "record_timestamp"])
