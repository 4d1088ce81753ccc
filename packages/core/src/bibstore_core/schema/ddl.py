"""Existence checks that make schema steps safe to re-apply."""

from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations


def has_table(op: Operations, table: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(table)


def has_column(op: Operations, table: str, column: str) -> bool:
    return any(c["name"] == column for c in sa.inspect(op.get_bind()).get_columns(table))


def has_index(op: Operations, table: str, index: str) -> bool:
    return any(ix["name"] == index for ix in sa.inspect(op.get_bind()).get_indexes(table))


def add_column_if_missing(op: Operations, table: str, column: sa.Column) -> None:
    if not has_column(op, table, column.name):
        op.add_column(table, column)


def create_index_if_missing(op: Operations, index: str, table: str, columns: list[str]) -> None:
    if not has_index(op, table, index):
        op.create_index(index, table, columns)
