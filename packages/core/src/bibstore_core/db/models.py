from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bibstore_core.db.base import Base

# Mirrors the schema at SCHEMA_VERSION; tables are created and evolved by
# bibstore_core.schema, never by Base.metadata.create_all().


class Meta(Base):
    __tablename__ = "meta"

    # The table itself has no key; the ORM needs one to map it.
    version: Mapped[int] = mapped_column(Integer, primary_key=True)


class Record(Base):
    __tablename__ = "record"

    id: Mapped[str] = mapped_column(String(60), primary_key=True)
    base: Mapped[str] = mapped_column(String(20), primary_key=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_id: Mapped[str | None] = mapped_column(String(60), nullable=True)
    # Comma-joined, sorted LOW tags.
    low_tags: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Wall-clock time of the last successful save.
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Content-derived change time (epoch ms) of the stored state.
    record_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (Index("ix_record_base_record_timestamp", "base", "record_timestamp"),)


class Delta(Base):
    __tablename__ = "delta"

    delta_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(60), nullable=False)
    base: Mapped[str] = mapped_column(String(20), nullable=False)
    delta: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    # record_timestamp of the state this patch restores.
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_delta_base_id_timestamp", "base", "id", "timestamp"),)


class LowTag(Base):
    __tablename__ = "low_tags"

    id: Mapped[str] = mapped_column(String(60), primary_key=True)


class _CandidateTermColumns:
    id: Mapped[str] = mapped_column(String(60), primary_key=True)
    base: Mapped[str] = mapped_column(String(20), primary_key=True)
    term: Mapped[str] = mapped_column(String(255), nullable=False)


class CandidateByAuthor(_CandidateTermColumns, Base):
    __tablename__ = "candidates_by_author"

    __table_args__ = (Index("ix_candidates_by_author_base_term", "base", "term"),)


class CandidateByTitle(_CandidateTermColumns, Base):
    __tablename__ = "candidates_by_title"

    __table_args__ = (Index("ix_candidates_by_title_base_term", "base", "term"),)


class TempTableMeta(Base):
    __tablename__ = "temp_tables_meta"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    access_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
