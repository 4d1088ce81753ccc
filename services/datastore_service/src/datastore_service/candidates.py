"""
Duplicate candidate index.

Each record gets one normalized grouping term per table (author, title).
Candidates for a record are its neighbours in term sort order: likely
duplicates normalize to identical or nearly identical terms, so they sort
next to each other. This is a range query on an index, not a similarity
search.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from bibstore_core.db.models import CandidateByAuthor, CandidateByTitle
from bibstore_core.db.scan import ScanProgress, count_records, iter_records
from bibstore_core.marc import MarcParseError, MarcRecord
from bibstore_core.record_utils import is_component_record, is_deleted
from bibstore_core.settings import settings

logger = structlog.get_logger(__name__)

CandidateModel = type[CandidateByAuthor] | type[CandidateByTitle]

AUTHOR_TAGS = ("100", "110", "111")
TITLE_TAGS = ("245",)
TERM_SUBFIELD_CODES = ("a", "b")

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class CandidateKey:
    id: str
    base: str
    term: str


@dataclass(frozen=True)
class Candidate:
    first: CandidateKey
    second: CandidateKey


@dataclass
class RebuildStats:
    total: int = 0
    indexed: int = 0
    failed: int = 0


def normalize_for_grouping(text: str, max_length: int | None = None) -> str:
    """
    Fold a heading into a sort key.

    Accents are stripped via NFKD, punctuation and symbols become spaces,
    whitespace is collapsed, the result is lower-cased and truncated.
    """
    max_length = max_length or settings.grouping_term_max_length
    decomposed = unicodedata.normalize("NFKD", unicodedata.normalize("NFC", text))
    chars = []
    for ch in decomposed:
        category = unicodedata.category(ch)
        if category == "Mn":
            continue
        chars.append(" " if category[0] in ("P", "S") else ch)
    folded = _WHITESPACE_RE.sub(" ", "".join(chars)).strip().lower()
    return folded[:max_length].rstrip()


def _grouping_term(record: MarcRecord, tags: tuple[str, ...], max_length: int | None) -> str | None:
    field = record.first(*tags)
    if field is None:
        return None
    term = normalize_for_grouping(" ".join(field.subfield_values(*TERM_SUBFIELD_CODES)), max_length)
    return term if len(term) > 1 else None


def grouping_term_by_author(record: MarcRecord, max_length: int | None = None) -> str | None:
    return _grouping_term(record, AUTHOR_TAGS, max_length)


def grouping_term_by_title(record: MarcRecord, max_length: int | None = None) -> str | None:
    return _grouping_term(record, TITLE_TAGS, max_length)


class CandidateService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        context_size: int | None = None,
        term_max_length: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._sessions = session_factory
        self.context_size = context_size or settings.candidate_context_size
        self.term_max_length = term_max_length or settings.grouping_term_max_length
        self.batch_size = batch_size or settings.stream_batch_size

    def update(self, base: str, record_id: str, record: MarcRecord, quiet: bool = False) -> None:
        if not quiet:
            logger.info("resetting_candidate_terms", base=base, record_id=record_id)
        with self._sessions() as session:
            self._reset_terms(session, base, record_id, record, quiet)
            session.commit()
        if not quiet:
            logger.info("candidate_terms_reset", base=base, record_id=record_id)

    def remove(self, base: str, record_id: str) -> None:
        with self._sessions() as session:
            for model in (CandidateByAuthor, CandidateByTitle):
                session.execute(sa.delete(model).where(model.id == record_id, model.base == base))
            session.commit()

    def rebuild(self) -> RebuildStats:
        """Recompute every term from the record table."""
        stats = RebuildStats()
        with self._sessions() as session:
            for model in (CandidateByAuthor, CandidateByTitle):
                session.execute(sa.delete(model))
            session.commit()

            stats.total = count_records(session)
            progress = ScanProgress("rebuilding_candidates", stats.total)
            # Rows written since the last commit, replayed after a rollback.
            pending: list[tuple[str, str, MarcRecord]] = []
            for row in iter_records(session, batch_size=self.batch_size):
                try:
                    record = MarcRecord.from_string(row.content or "")
                except MarcParseError as exc:
                    logger.error("unparseable_record", base=row.base, record_id=row.id, error=str(exc))
                    stats.failed += 1
                    progress.advance(failed=True)
                    continue
                try:
                    self._reset_terms(session, row.base, row.id, record, quiet=True)
                except SQLAlchemyError as exc:
                    session.rollback()
                    logger.error("candidate_terms_failed", base=row.base, record_id=row.id, error=str(exc))
                    stats.failed += 1
                    progress.advance(failed=True)
                    for base, record_id, earlier in pending:
                        self._reset_terms(session, base, record_id, earlier, quiet=True)
                    continue
                pending.append((row.base, row.id, record))
                stats.indexed += 1
                progress.advance()
                if len(pending) >= self.batch_size:
                    session.commit()
                    pending = []
            session.commit()

        progress.log()
        logger.info("candidates_rebuilt", total=stats.total, indexed=stats.indexed, failed=stats.failed)
        return stats

    def load_candidates(self, base: str, record_id: str, only_preceding: bool = False) -> list[Candidate]:
        with self._sessions() as session:
            by_title = self._load_from_table(session, CandidateByTitle, base, record_id, only_preceding)
            by_author = self._load_from_table(session, CandidateByAuthor, base, record_id, only_preceding)

        unique: dict[tuple[str, str], Candidate] = {}
        for candidate in by_title + by_author:
            unique.setdefault((candidate.second.base, candidate.second.id), candidate)
        return list(unique.values())

    def _reset_terms(self, session: Session, base: str, record_id: str, record: MarcRecord, quiet: bool) -> None:
        indexable = not is_deleted(record) and not is_component_record(record)
        terms: list[tuple[CandidateModel, str | None]] = [
            (CandidateByAuthor, grouping_term_by_author(record, self.term_max_length)),
            (CandidateByTitle, grouping_term_by_title(record, self.term_max_length)),
        ]
        for model, term in terms:
            session.execute(
                sa.delete(model)
                .where(model.id == record_id, model.base == base)
                .execution_options(synchronize_session=False)
            )
            if term is None:
                continue
            if indexable:
                session.add(model(id=record_id, base=base, term=term))
            elif not quiet:
                logger.info(
                    "not_indexed",
                    table=model.__tablename__,
                    base=base,
                    record_id=record_id,
                    reason="deleted or component record",
                )
        session.flush()

    def _load_from_table(
        self,
        session: Session,
        model: CandidateModel,
        base: str,
        record_id: str,
        only_preceding: bool,
    ) -> list[Candidate]:
        own = session.get(model, (record_id, base))
        if own is None:
            return []
        query_term = own.term

        neighbours = list(
            session.execute(
                sa.select(model)
                .where(model.base == base, model.term <= query_term, model.id != record_id)
                .order_by(model.term.desc(), model.id.desc())
                .limit(self.context_size)
            ).scalars()
        )
        if not only_preceding:
            neighbours += session.execute(
                sa.select(model)
                .where(model.base == base, model.term >= query_term, model.id != record_id)
                .order_by(model.term.asc(), model.id.asc())
                .limit(self.context_size)
            ).scalars()

        first = CandidateKey(id=record_id, base=base, term=query_term)
        return [Candidate(first=first, second=CandidateKey(id=n.id, base=n.base, term=n.term)) for n in neighbours]
