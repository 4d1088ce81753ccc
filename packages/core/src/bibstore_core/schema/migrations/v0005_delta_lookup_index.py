"""Index deltas by key and timestamp for history lookups.

Version: 4 -> 5
"""

from __future__ import annotations

from alembic.operations import Operations

from bibstore_core.schema.ddl import create_index_if_missing

from_version = 4
to_version = 5


def upgrade(op: Operations) -> None:
    create_index_if_missing(op, "ix_delta_base_id_timestamp", "delta", ["base", "id", "timestamp"])
