"""Initial schema (version 1): meta, record and delta."""

from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from bibstore_core.schema.ddl import has_table

INITIAL_VERSION = 1


def upgrade(op: Operations) -> None:
    meta = op.create_table("meta", sa.Column("version", sa.Integer(), nullable=False))
    op.bulk_insert(meta, [{"version": INITIAL_VERSION}])

    if not has_table(op, "record"):
        op.create_table(
            "record",
            sa.Column("id", sa.String(length=60), nullable=False),
            sa.Column("base", sa.String(length=20), nullable=False),
            sa.Column("content", sa.Text(), nullable=True),
            sa.Column("parent_id", sa.String(length=60), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id", "base"),
        )

    if not has_table(op, "delta"):
        op.create_table(
            "delta",
            sa.Column("delta_id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("id", sa.String(length=60), nullable=False),
            sa.Column("base", sa.String(length=20), nullable=False),
            sa.Column("delta", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.BigInteger(), nullable=False),
        )
