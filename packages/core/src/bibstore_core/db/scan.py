"""Bounded-memory scans over the record table."""

from __future__ import annotations

import math
from collections.abc import Iterator
from dataclasses import dataclass

import sqlalchemy as sa
import structlog
from sqlalchemy import Connection
from sqlalchemy.engine import Row
from sqlalchemy.orm import Session

from bibstore_core.log import progress_percent

logger = structlog.get_logger(__name__)

record_table = sa.table(
    "record",
    sa.column("id", sa.String),
    sa.column("base", sa.String),
    sa.column("content", sa.Text),
)


def count_records(executor: Connection | Session) -> int:
    return executor.execute(sa.select(sa.func.count()).select_from(record_table)).scalar_one()


def iter_records(executor: Connection | Session, *, batch_size: int = 1000) -> Iterator[Row]:
    """
    Lazily yield `(id, base, content)` for every record, ordered by `(base, id)`.

    Rows are fetched in keyset-paginated batches, so no cursor stays open
    between batches and the caller may write (or commit) through the same
    connection while iterating. The sequence is finite and not restartable.
    """
    last: tuple[str, str] | None = None
    while True:
        stmt = (
            sa.select(record_table.c.id, record_table.c.base, record_table.c.content)
            .order_by(record_table.c.base, record_table.c.id)
            .limit(batch_size)
        )
        if last is not None:
            stmt = stmt.where(sa.tuple_(record_table.c.base, record_table.c.id) > sa.tuple_(*last))
        rows = executor.execute(stmt).all()
        if not rows:
            return
        yield from rows
        last = (rows[-1].base, rows[-1].id)
        if len(rows) < batch_size:
            return


@dataclass
class ScanProgress:
    """Row counter for long-running scans; logs roughly every 0.1%."""

    label: str
    total: int
    processed: int = 0
    failed: int = 0

    @property
    def step_size(self) -> int:
        return max(1, math.ceil(self.total / 1000))

    def advance(self, *, failed: bool = False) -> None:
        self.processed += 1
        if failed:
            self.failed += 1
        if self.processed % self.step_size == 0:
            self.log()

    def log(self) -> None:
        logger.info(
            self.label,
            processed=self.processed,
            total=self.total,
            percent=progress_percent(self.processed, self.total),
            failed=self.failed,
        )
