"""Add the content-derived change time to records.

Version: 5 -> 6

Backfill runs in two phases through a scratch file so a restarted migration
does not have to re-parse every record:

1. stream all records, derive the 005 timestamp and append
   `timestamp<TAB>base<TAB>id` lines to `<name>.partial`; rename to `<name>`
   when the scan is complete;
2. apply the file to `record.record_timestamp`.

The file name carries a hash of the database URL and the first line records
that hash and the record count. A complete file left by an earlier run
against the same database and count skips phase 1; any other file is
rewritten. The file is removed once the step succeeds. This is best effort,
not crash safe.
"""

from __future__ import annotations

from pathlib import Path

import sqlalchemy as sa
import structlog
from alembic.operations import Operations
from sqlalchemy import Connection

from bibstore_core.db.scan import ScanProgress, count_records, iter_records
from bibstore_core.hashing import database_identity
from bibstore_core.marc import MarcParseError, MarcRecord
from bibstore_core.record_utils import record_timestamp
from bibstore_core.schema.ddl import add_column_if_missing
from bibstore_core.schema.migrations.support import DataMigrationEnv

logger = structlog.get_logger(__name__)

from_version = 5
to_version = 6

SCRATCH_FILE_PREFIX = "migration-5-to-6"
HEADER_TAG = "#bibstore-scratch"

_record = sa.table("record", sa.column("id"), sa.column("base"), sa.column("record_timestamp"))


def upgrade(op: Operations) -> None:
    add_column_if_missing(op, "record", sa.Column("record_timestamp", sa.BigInteger(), nullable=True))


def scratch_file_path(connection: Connection, env: DataMigrationEnv) -> Path:
    return env.scratch_dir / f"{SCRATCH_FILE_PREFIX}-{database_identity(connection.engine.url)}.tsv"


def scratch_header(identity: str, total: int) -> str:
    return f"{HEADER_TAG}\t{identity}\t{total}\n"


def read_scratch_header(scratch: Path) -> tuple[str, int] | None:
    with scratch.open("r", encoding="utf-8") as fh:
        parts = fh.readline().rstrip("\n").split("\t")
    if len(parts) != 3 or parts[0] != HEADER_TAG or not parts[2].isdigit():
        return None
    return parts[1], int(parts[2])


def migrate_data(connection: Connection, env: DataMigrationEnv) -> None:
    scratch = scratch_file_path(connection, env)
    identity = database_identity(connection.engine.url)
    total = count_records(connection)

    if scratch.exists() and read_scratch_header(scratch) == (identity, total):
        logger.info("reusing_scratch_file", path=str(scratch))
    else:
        if scratch.exists():
            logger.warning("discarding_scratch_file", path=str(scratch), reason="different database or record count")
        write_scratch_file(connection, env, scratch, identity, total)

    apply_scratch_file(connection, env, scratch, total)
    scratch.unlink(missing_ok=True)


def write_scratch_file(
    connection: Connection, env: DataMigrationEnv, scratch: Path, identity: str, total: int
) -> None:
    partial = scratch.with_name(scratch.name + ".partial")
    partial.parent.mkdir(parents=True, exist_ok=True)
    progress = ScanProgress("saving_to_scratch_file", total)

    with partial.open("w", encoding="utf-8") as fh:
        fh.write(scratch_header(identity, total))
        for row in iter_records(connection, batch_size=env.batch_size):
            try:
                stamp = record_timestamp(MarcRecord.from_string(row.content or ""))
            except MarcParseError as exc:
                logger.warning("unparseable_record", base=row.base, record_id=row.id, error=str(exc))
                stamp = None
            if stamp is None:
                progress.advance(failed=True)
                continue
            fh.write(f"{stamp}\t{row.base}\t{row.id}\n")
            progress.advance()
            if progress.processed % progress.step_size == 0:
                fh.flush()

    partial.replace(scratch)
    progress.log()


def apply_scratch_file(connection: Connection, env: DataMigrationEnv, scratch: Path, total: int) -> None:
    progress = ScanProgress("updating_from_scratch_file", total)
    update = (
        sa.update(_record)
        .where(_record.c.id == sa.bindparam("b_id"), _record.c.base == sa.bindparam("b_base"))
        .values(record_timestamp=sa.bindparam("b_record_timestamp"))
    )

    pending: list[dict] = []
    with scratch.open("r", encoding="utf-8") as fh:
        for line in fh:
            if line.startswith("#"):
                continue
            stamp, base, record_id = line.rstrip("\n").split("\t", 2)
            pending.append({"b_id": record_id, "b_base": base, "b_record_timestamp": int(stamp)})
            progress.advance()
            if len(pending) >= env.batch_size:
                connection.execute(update, pending)
                pending = []
    if pending:
        connection.execute(update, pending)
    logger.info("migration_completed", processed=progress.processed, total=total)
