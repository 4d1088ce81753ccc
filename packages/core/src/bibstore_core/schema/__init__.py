"""Schema store: the single-row `meta(version)` table and the initial schema."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import Connection

SCHEMA_VERSION = 7

meta_table = sa.table("meta", sa.column("version", sa.Integer))


def get_database_version(connection: Connection) -> int:
    version = connection.execute(sa.select(meta_table.c.version)).scalar()
    if version is None:
        raise LookupError("meta table has no version row")
    return int(version)


def set_database_version(connection: Connection, version: int) -> None:
    connection.execute(sa.update(meta_table).values(version=version))
