"""Add author/title candidate term tables.

Version: 1 -> 2
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from bibstore_core.schema.ddl import create_index_if_missing, has_table

from_version = 1
to_version = 2

TABLE_NAMES = ("candidates_by_author", "candidates_by_title")


def upgrade(op: Operations) -> None:
    for table_name in TABLE_NAMES:
        if not has_table(op, table_name):
            op.create_table(
                table_name,
                sa.Column("id", sa.String(length=60), nullable=False),
                sa.Column("base", sa.String(length=20), nullable=False),
                sa.Column("term", sa.String(length=255), nullable=False),
                sa.PrimaryKeyConstraint("id", "base"),
            )
        create_index_if_missing(op, f"ix_{table_name}_base_term", table_name, ["base", "term"])
