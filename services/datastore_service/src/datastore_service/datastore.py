"""
Record store.

Keeps the latest state of each `(base, id)` in `record` and an append-only
history in `delta`. Each delta is a patch from the incoming content back to
the content it replaced, stamped with the change time of the replaced state,
so history is rebuilt by walking patches backwards from the current row.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timezone

import sqlalchemy as sa
import structlog
from sqlalchemy import Engine, Row
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from bibstore_core.db.models import Delta, LowTag, Record
from bibstore_core.db.session import make_engine, make_session_factory
from bibstore_core.marc import MarcParseError, MarcRecord
from bibstore_core.patching import apply_patch, make_patch
from bibstore_core.record_utils import low_tags, parse_parent_id, record_timestamp, to_millis
from bibstore_core.schema.migrations import update_schema as migrate_schema
from bibstore_core.schema.migrations.support import DataMigrationEnv
from bibstore_core.settings import settings
from datastore_service.candidates import Candidate, CandidateService, RebuildStats
from datastore_service.errors import NotFoundError, RecordIsOlderError, RecordValidationError
from datastore_service.paging import TempTableManager, validate_temp_table_name
from datastore_service.queries import (
    HistoryEntry,
    PagedResult,
    RecordsQuery,
    RecordWithMetadata,
    split_low_tags,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DataStoreService:
    def __init__(
        self,
        engine: Engine,
        *,
        candidate_service: CandidateService | None = None,
        temp_tables: TempTableManager | None = None,
        migration_env: DataMigrationEnv | None = None,
    ) -> None:
        self.engine = engine
        self._sessions: sessionmaker[Session] = make_session_factory(engine)
        self.candidates = candidate_service or CandidateService(self._sessions)
        self.temp_tables = temp_tables or TempTableManager(self._sessions)
        self._migration_env = migration_env

    # -- schema and maintenance ------------------------------------------------

    def update_schema(self) -> int:
        return migrate_schema(self.engine, env=self._migration_env)

    def rebuild_candidate_terms(self) -> RebuildStats:
        return self.candidates.rebuild()

    def create_temp_tables_meta(self) -> None:
        self.temp_tables.create_meta()

    def drop_temp_tables(self, lifetime_ms: int | None = None) -> list[str]:
        lifetime = settings.temp_tables_lifetime_ms if lifetime_ms is None else lifetime_ms
        return self.temp_tables.drop_expired(lifetime)

    # -- writes ------------------------------------------------------------------

    def save_record(
        self,
        base: str,
        record_id: str,
        record: MarcRecord | str,
        change_type: str | None = None,
        change_timestamp: int | None = None,
        quiet: bool = False,
    ) -> None:
        """
        Store `record` as the latest state of `(base, record_id)`.

        `change_timestamp` defaults to the content's own modification time.
        Raises RecordIsOlderError, without writing anything, when the stored
        state is newer than the change.
        """
        record = self._parse(record) if isinstance(record, str) else record
        if change_timestamp is None:
            change_timestamp = record_timestamp(record)
        if change_timestamp is None:
            raise RecordValidationError(f"Record {base}/{record_id} has no modification time and none was given")

        content = self._serialize(record)
        tags = low_tags(record)

        if not quiet:
            logger.info("saving_record", base=base, record_id=record_id)

        try:
            self._write_record(base, record_id, record, content, tags, change_type, change_timestamp)
        except IntegrityError:
            # Another writer created the key after our lookup; redo as an update.
            logger.info("record_created_concurrently", base=base, record_id=record_id)
            self._write_record(base, record_id, record, content, tags, change_type, change_timestamp)

        if not quiet:
            logger.info("record_saved", base=base, record_id=record_id)

        try:
            self.candidates.update(base, record_id, record, quiet=quiet)
        except SQLAlchemyError as exc:
            logger.error("candidate_index_sync_failed", base=base, record_id=record_id, error=str(exc))

    def _write_record(
        self,
        base: str,
        record_id: str,
        record: MarcRecord,
        content: str,
        tags: list[str],
        change_type: str | None,
        change_timestamp: int,
    ) -> None:
        with self._sessions() as session:
            current = session.get(Record, (record_id, base))
            if current is None:
                session.add(
                    Record(
                        id=record_id,
                        base=base,
                        content=content,
                        parent_id=parse_parent_id(record),
                        low_tags=",".join(sorted(tags)),
                        timestamp=_utcnow(),
                        record_timestamp=change_timestamp,
                    )
                )
            else:
                stored_timestamp = self._stored_timestamp(current)
                if stored_timestamp > change_timestamp:
                    raise RecordIsOlderError(base, record_id, stored_timestamp, change_timestamp)

                # The patch rewrites the incoming content into what it replaces.
                session.add(
                    Delta(
                        id=record_id,
                        base=base,
                        delta=make_patch(content, current.content or ""),
                        type=change_type,
                        timestamp=stored_timestamp,
                    )
                )
                current.content = content
                current.parent_id = parse_parent_id(record)
                current.low_tags = ",".join(sorted(tags))
                current.timestamp = _utcnow()
                current.record_timestamp = change_timestamp

            self._add_low_tags(session, tags)
            session.commit()

    # -- single-record reads -----------------------------------------------------

    def load_record(
        self, base: str, record_id: str, include_metadata: bool = False
    ) -> MarcRecord | RecordWithMetadata:
        with self._sessions() as session:
            current = session.get(Record, (record_id, base))
            if current is None:
                raise NotFoundError(base, record_id)
            record = self._parse(current.content or "")
            if not include_metadata:
                return record
            return RecordWithMetadata(
                id=current.id,
                base=current.base,
                parent_id=current.parent_id,
                timestamp=current.timestamp,
                record_timestamp=current.record_timestamp,
                low_tags=split_low_tags(current.low_tags),
                record=record,
            )

    def load_record_by_timestamp(self, base: str, record_id: str, timestamp: int) -> MarcRecord:
        """
        Reconstruct the record as it stood at `timestamp`.

        Starting from the current content, patches are applied newest first
        while the state reached is still newer than `timestamp`.
        """
        with self._sessions() as session:
            current = session.get(Record, (record_id, base))
            if current is None:
                raise NotFoundError(base, record_id)

            content = current.content or ""
            state_timestamp = self._stored_timestamp(current)
            deltas = session.execute(
                sa.select(Delta.delta, Delta.timestamp)
                .where(Delta.base == base, Delta.id == record_id)
                .order_by(Delta.timestamp.desc(), Delta.delta_id.desc())
            )
            for row in deltas:
                if state_timestamp <= timestamp:
                    break
                content = apply_patch(row.delta or "[]", content)
                state_timestamp = row.timestamp

        if state_timestamp > timestamp:
            raise NotFoundError(base, record_id, f"No state of {base}/{record_id} at or before {timestamp}")
        return self._parse(content)

    def load_record_history(self, base: str, record_id: str) -> list[HistoryEntry]:
        with self._sessions() as session:
            current = session.get(Record, (record_id, base))
            deltas = session.execute(
                sa.select(Delta.timestamp, Delta.type)
                .where(Delta.base == base, Delta.id == record_id)
                .order_by(Delta.timestamp.desc(), Delta.delta_id.desc())
            ).all()

            history: list[HistoryEntry] = []
            if current is not None:
                history.append(HistoryEntry(timestamp=self._stored_timestamp(current), is_current=True))
        history.extend(HistoryEntry(timestamp=row.timestamp, change_type=row.type) for row in deltas)

        if not history:
            raise NotFoundError(base, record_id)
        return history

    # -- bulk reads ----------------------------------------------------------------

    def load_records(self, base: str, query: RecordsQuery | None = None) -> list | PagedResult:
        """
        Records of `base` newest first.

        Without a limit the matching records are returned as a list. With a
        limit the matching ids are materialized into a temp table and the
        first page is returned; resume with `load_records_resume()`.
        """
        query = query or RecordsQuery()
        if query.limit is None:
            return list(self.iter_records(base, query))

        name, total = self.temp_tables.materialize(base, query.filter)
        rows = self.temp_tables.fetch_page(name, query.limit, query.offset, query.metadata_only)
        return self._finish_page(name, rows, total, query)

    def load_records_resume(self, temp_table: str, query: RecordsQuery | None = None) -> PagedResult:
        query = query or RecordsQuery()
        validate_temp_table_name(temp_table)
        try:
            total = self.temp_tables.count(temp_table)
            rows = self.temp_tables.fetch_page(temp_table, query.limit, query.offset, query.metadata_only)
        except (OperationalError, ProgrammingError):
            if self.temp_tables.exists(temp_table):
                raise
            logger.info("temp_table_missing", name=temp_table)
            return PagedResult(offset=query.offset, total_length=0, results=[])
        return self._finish_page(temp_table, rows, total, query)

    def iter_records(self, base: str, query: RecordsQuery | None = None) -> Iterator:
        """Stream matching records; the generator holds a session until exhausted."""
        query = query or RecordsQuery()
        columns = [
            Record.id,
            Record.base,
            Record.parent_id,
            Record.timestamp,
            Record.record_timestamp,
            Record.low_tags,
        ]
        if not query.metadata_only:
            columns.append(Record.content)
        stmt = (
            sa.select(*columns)
            .where(Record.base == base, *query.filter.clauses())
            .order_by(Record.record_timestamp.desc(), Record.id)
            .execution_options(yield_per=settings.stream_batch_size)
        )
        with self._sessions() as session:
            for row in session.execute(stmt):
                yield self._format_row(row, query)

    def load_low_tags(self) -> list[str]:
        with self._sessions() as session:
            tags = list(session.execute(sa.select(LowTag.id).order_by(LowTag.id)).scalars())
        if not tags:
            raise NotFoundError("low_tags", message="No LOW tags stored")
        return tags

    def get_earliest_record_timestamp(self, base: str) -> int:
        return self._record_timestamp_bound(base, sa.func.min)

    def get_latest_record_timestamp(self, base: str) -> int:
        return self._record_timestamp_bound(base, sa.func.max)

    def load_candidates(self, base: str, record_id: str) -> list[Candidate]:
        return self.candidates.load_candidates(base, record_id)

    # -- helpers -------------------------------------------------------------------

    def _finish_page(self, name: str, rows: list[Row], total: int, query: RecordsQuery) -> PagedResult:
        results = [self._format_row(row, query) for row in rows]
        short_page = query.limit is None or len(rows) < query.limit
        if short_page or query.offset + len(rows) >= total:
            self.temp_tables.drop(name)
            return PagedResult(offset=query.offset, total_length=total, results=results)
        self.temp_tables.touch(name)
        return PagedResult(offset=query.offset, total_length=total, results=results, temp_table=name)

    def _format_row(self, row: Row, query: RecordsQuery) -> MarcRecord | RecordWithMetadata:
        record = None if query.metadata_only else self._parse(row.content or "")
        if not query.with_metadata:
            return record
        return RecordWithMetadata(
            id=row.id,
            base=row.base,
            parent_id=row.parent_id,
            timestamp=row.timestamp,
            record_timestamp=row.record_timestamp,
            low_tags=split_low_tags(row.low_tags),
            record=record,
        )

    def _record_timestamp_bound(self, base: str, aggregate) -> int:
        with self._sessions() as session:
            value = session.execute(sa.select(aggregate(Record.record_timestamp)).where(Record.base == base)).scalar()
        if value is None:
            raise NotFoundError(base)
        return int(value)

    @staticmethod
    def _add_low_tags(session: Session, tags: list[str]) -> None:
        if not tags:
            return
        existing = set(session.execute(sa.select(LowTag.id).where(LowTag.id.in_(tags))).scalars())
        session.add_all(LowTag(id=tag) for tag in tags if tag not in existing)

    @staticmethod
    def _stored_timestamp(current: Record) -> int:
        # Rows written before change times were tracked fall back to the
        # content's own 005 stamp, then to the write time.
        if current.record_timestamp is not None:
            return current.record_timestamp
        derived = record_timestamp(MarcRecord.from_string(current.content or ""))
        if derived is not None:
            return derived
        return to_millis(current.timestamp) if current.timestamp is not None else 0

    @staticmethod
    def _serialize(record: MarcRecord) -> str:
        try:
            content = record.to_string()
        except MarcParseError as exc:
            raise RecordValidationError(str(exc)) from exc
        if DataStoreService._parse(content).to_string() != content:
            raise RecordValidationError("Record does not survive serialization unchanged")
        return content

    @staticmethod
    def _parse(content: str) -> MarcRecord:
        try:
            return MarcRecord.from_string(content)
        except MarcParseError as exc:
            raise RecordValidationError(str(exc)) from exc


def create_datastore_service(database_url: str | None = None) -> DataStoreService:
    return DataStoreService(make_engine(database_url))
