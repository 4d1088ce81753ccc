"""Record the change type of each delta.

Version: 2 -> 3
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from bibstore_core.schema.ddl import add_column_if_missing

from_version = 2
to_version = 3


def upgrade(op: Operations) -> None:
    add_column_if_missing(op, "delta", sa.Column("type", sa.String(length=20), nullable=True))
