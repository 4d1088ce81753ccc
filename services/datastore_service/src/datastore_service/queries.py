"""Options and result shapes for record reads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import ColumnElement

from bibstore_core.db.models import Record
from bibstore_core.marc import MarcRecord


@dataclass(frozen=True)
class RecordFilter:
    """
    Predicate over stored records.

    - start_time / end_time: inclusive bounds on the change time (epoch ms)
    - low_tags: match records carrying any of the given LOW tags
    """

    start_time: int | None = None
    end_time: int | None = None
    low_tags: tuple[str, ...] = ()

    def clauses(self) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if self.start_time is not None:
            clauses.append(Record.record_timestamp >= self.start_time)
        if self.end_time is not None:
            clauses.append(Record.record_timestamp <= self.end_time)
        if self.low_tags:
            padded = sa.literal(",") + sa.func.coalesce(Record.low_tags, "") + sa.literal(",")
            clauses.append(sa.or_(*(padded.contains(f",{tag},", autoescape=True) for tag in self.low_tags)))
        return clauses


@dataclass(frozen=True)
class RecordsQuery:
    limit: int | None = None
    offset: int = 0
    include_metadata: bool = False
    metadata_only: bool = False
    filter: RecordFilter = field(default_factory=RecordFilter)

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit <= 0:
            raise ValueError(f"limit must be positive, got {self.limit}")
        if self.offset < 0:
            raise ValueError(f"offset must not be negative, got {self.offset}")

    @property
    def with_metadata(self) -> bool:
        return self.include_metadata or self.metadata_only


@dataclass
class RecordWithMetadata:
    id: str
    base: str
    parent_id: str | None
    timestamp: datetime | None
    record_timestamp: int | None
    low_tags: list[str]
    record: MarcRecord | None = None


@dataclass
class PagedResult:
    """One page of a materialized scan; `temp_table` is None once the scan is exhausted."""

    offset: int
    total_length: int
    results: list
    temp_table: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.temp_table is None


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: int
    change_type: str | None = None
    is_current: bool = False


def split_low_tags(value: str | None) -> list[str]:
    return sorted(tag for tag in (value or "").split(",") if tag)
