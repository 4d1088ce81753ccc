"""Add denormalized LOW tags to records and a table of known tags.

Version: 3 -> 4

Backfills `record.low_tags` and `low_tags` from the stored MARC content.
"""

from __future__ import annotations

import sqlalchemy as sa
import structlog
from alembic.operations import Operations
from sqlalchemy import Connection

from bibstore_core.db.scan import ScanProgress, count_records, iter_records
from bibstore_core.marc import MarcParseError, MarcRecord
from bibstore_core.record_utils import low_tags
from bibstore_core.schema.ddl import add_column_if_missing, has_table
from bibstore_core.schema.migrations.support import DataMigrationEnv

logger = structlog.get_logger(__name__)

from_version = 3
to_version = 4

_record = sa.table("record", sa.column("id"), sa.column("base"), sa.column("low_tags"))
_low_tags = sa.table("low_tags", sa.column("id"))


def upgrade(op: Operations) -> None:
    add_column_if_missing(op, "record", sa.Column("low_tags", sa.String(length=255), nullable=True))
    if not has_table(op, "low_tags"):
        op.create_table("low_tags", sa.Column("id", sa.String(length=60), primary_key=True))


def migrate_data(connection: Connection, env: DataMigrationEnv) -> None:
    progress = ScanProgress("backfilling_low_tags", count_records(connection))
    seen: set[str] = set()
    pending: list[dict] = []

    update = (
        sa.update(_record)
        .where(_record.c.id == sa.bindparam("b_id"), _record.c.base == sa.bindparam("b_base"))
        .values(low_tags=sa.bindparam("b_low_tags"))
    )

    for row in iter_records(connection, batch_size=env.batch_size):
        try:
            tags = low_tags(MarcRecord.from_string(row.content or ""))
        except MarcParseError as exc:
            logger.warning("unparseable_record", base=row.base, record_id=row.id, error=str(exc))
            progress.advance(failed=True)
            continue
        seen.update(tags)
        pending.append({"b_id": row.id, "b_base": row.base, "b_low_tags": ",".join(sorted(tags))})
        if len(pending) >= env.batch_size:
            connection.execute(update, pending)
            pending = []
        progress.advance()

    if pending:
        connection.execute(update, pending)

    existing = set(connection.execute(sa.select(_low_tags.c.id)).scalars())
    new_tags = sorted(seen - existing)
    if new_tags:
        connection.execute(sa.insert(_low_tags), [{"id": tag} for tag in new_tags])
    progress.log()
