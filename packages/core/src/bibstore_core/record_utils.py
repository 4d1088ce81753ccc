from __future__ import annotations

import re
from datetime import datetime, timezone

from bibstore_core.marc import MarcRecord

_PARENT_PREFIX_RE = re.compile(r"^\([^)]*\)")
_COMPONENT_LEADER_CODES = {"a", "b", "d"}


def record_id(record: MarcRecord) -> str | None:
    value = record.control_value("001")
    return value.strip() if value else None


def is_deleted(record: MarcRecord) -> bool:
    if len(record.leader) > 5 and record.leader[5] == "d":
        return True
    if record.get(r"^DEL$"):
        return True
    return any(
        (value or "").strip().upper() == "DELETED"
        for f in record.get(r"^STA$")
        for value in f.subfield_values("a")
    )


def is_component_record(record: MarcRecord) -> bool:
    """Host-linked records (articles, chapters) carry a 773 link or a component leader code."""
    if len(record.leader) > 7 and record.leader[7] in _COMPONENT_LEADER_CODES:
        return True
    return bool(record.get(r"^773$"))


def parse_parent_id(record: MarcRecord) -> str | None:
    for f in record.get(r"^773$"):
        value = f.first_subfield("w")
        if value:
            return _PARENT_PREFIX_RE.sub("", value).strip() or None
    return None


def low_tags(record: MarcRecord) -> list[str]:
    """Unique LOW $a values in first-seen order."""
    tags: list[str] = []
    for f in record.get(r"^LOW$"):
        value = f.first_subfield("a")
        if value and value not in tags:
            tags.append(value)
    return tags


def get_last_modification_date(record: MarcRecord) -> datetime | None:
    """
    Last modification time of the record content.

    Prefers the 005 field (`YYYYMMDDHHMMSS.F`); falls back to the most recent
    CAT entry (`$c` date, `$h` time).
    """
    stamp = record.control_value("005")
    if stamp:
        parsed = _parse_005(stamp.strip())
        if parsed is not None:
            return parsed

    latest: datetime | None = None
    for f in record.get(r"^CAT$"):
        date = (f.first_subfield("c") or "").strip()
        time = (f.first_subfield("h") or "0000").strip().ljust(4, "0")
        try:
            candidate = datetime.strptime(f"{date}{time[:4]}", "%Y%m%d%H%M")
        except ValueError:
            continue
        if latest is None or candidate > latest:
            latest = candidate
    return latest


def _parse_005(stamp: str) -> datetime | None:
    whole, _, fraction = stamp.partition(".")
    try:
        parsed = datetime.strptime(whole, "%Y%m%d%H%M%S")
    except ValueError:
        return None
    if fraction.isdigit():
        parsed = parsed.replace(microsecond=int(fraction[:1]) * 100_000)
    return parsed


def to_millis(moment: datetime) -> int:
    """Epoch milliseconds; naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def record_timestamp(record: MarcRecord) -> int | None:
    moment = get_last_modification_date(record)
    return to_millis(moment) if moment is not None else None
