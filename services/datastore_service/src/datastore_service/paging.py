"""
Materialized, resumable scans.

A paged read copies the ordered `(id, base)` set of matching records into a
dedicated `temp<hex>` table. Later pages join that table back to `record`
by position. Each table has an access time in `temp_tables_meta`; tables
idle longer than the configured lifetime are dropped by `drop_expired()`.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone

import sqlalchemy as sa
import structlog
from sqlalchemy import Row
from sqlalchemy.orm import Session, sessionmaker

from bibstore_core.db.models import Record, TempTableMeta
from datastore_service.queries import RecordFilter

logger = structlog.get_logger(__name__)

TEMP_TABLE_NAME_RE = re.compile(r"^temp[0-9a-f]{32}$")


def new_temp_table_name() -> str:
    return f"temp{uuid.uuid4().hex}"


def validate_temp_table_name(name: str) -> str:
    if not TEMP_TABLE_NAME_RE.match(name or ""):
        raise ValueError(f"Invalid temporary table name: {name!r}")
    return name


def _temp_table(name: str) -> sa.Table:
    return sa.Table(
        validate_temp_table_name(name),
        sa.MetaData(),
        sa.Column("position", sa.Integer, primary_key=True),
        sa.Column("id", sa.String(60), nullable=False),
        sa.Column("base", sa.String(20), nullable=False),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TempTableManager:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._sessions = session_factory

    def create_meta(self) -> None:
        """Drop leftover temp tables and recreate the access-time table."""
        with self._sessions() as session:
            connection = session.connection()
            for name in sa.inspect(connection).get_table_names():
                if TEMP_TABLE_NAME_RE.match(name):
                    _temp_table(name).drop(connection, checkfirst=True)
                    logger.info("dropped_leftover_temp_table", name=name)
            TempTableMeta.__table__.drop(connection, checkfirst=True)
            TempTableMeta.__table__.create(connection)
            session.commit()

    def materialize(self, base: str, record_filter: RecordFilter) -> tuple[str, int]:
        """Copy the ordered id set of matching records into a new temp table."""
        name = new_temp_table_name()
        temp = _temp_table(name)
        position = sa.func.row_number().over(order_by=(Record.record_timestamp.desc(), Record.id))
        ids = sa.select(position.label("position"), Record.id, Record.base).where(
            Record.base == base, *record_filter.clauses()
        )

        with self._sessions() as session:
            # Access time first, so the table is never left without one.
            session.add(TempTableMeta(name=name, access_time=_utcnow()))
            session.flush()
            connection = session.connection()
            temp.create(connection)
            connection.execute(sa.insert(temp).from_select(["position", "id", "base"], ids))
            total = connection.execute(sa.select(sa.func.count()).select_from(temp)).scalar_one()
            session.commit()

        logger.info("materialized_temp_table", name=name, base=base, total=total)
        return name, total

    def count(self, name: str) -> int:
        temp = _temp_table(name)
        with self._sessions() as session:
            return session.execute(sa.select(sa.func.count()).select_from(temp)).scalar_one()

    def fetch_page(self, name: str, limit: int | None, offset: int, metadata_only: bool) -> list[Row]:
        temp = _temp_table(name)
        columns = [
            Record.id,
            Record.base,
            Record.parent_id,
            Record.timestamp,
            Record.record_timestamp,
            Record.low_tags,
        ]
        if not metadata_only:
            columns.append(Record.content)
        stmt = (
            sa.select(*columns)
            .join_from(temp, Record, sa.and_(Record.id == temp.c.id, Record.base == temp.c.base))
            .order_by(temp.c.position)
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._sessions() as session:
            return list(session.execute(stmt).all())

    def exists(self, name: str) -> bool:
        with self._sessions() as session:
            return sa.inspect(session.connection()).has_table(validate_temp_table_name(name))

    def touch(self, name: str) -> None:
        with self._sessions() as session:
            session.merge(TempTableMeta(name=validate_temp_table_name(name), access_time=_utcnow()))
            session.commit()

    def drop(self, name: str) -> None:
        temp = _temp_table(name)
        with self._sessions() as session:
            temp.drop(session.connection(), checkfirst=True)
            session.execute(sa.delete(TempTableMeta).where(TempTableMeta.name == name))
            session.commit()
        logger.info("dropped_temp_table", name=name)

    def drop_expired(self, lifetime_ms: int) -> list[str]:
        """Drop every temp table idle for longer than `lifetime_ms`."""
        cutoff = _utcnow() - timedelta(milliseconds=lifetime_ms)
        with self._sessions() as session:
            names = list(
                session.execute(sa.select(TempTableMeta.name).where(TempTableMeta.access_time < cutoff)).scalars()
            )
        for name in names:
            if TEMP_TABLE_NAME_RE.match(name):
                self.drop(name)
        return names
