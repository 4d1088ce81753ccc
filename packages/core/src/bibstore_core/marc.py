"""
MARC record model with a line-oriented text serialization.

The stored form is one field per line:

    LDR    00000cam^a2200000 a 4500
    001    000123
    005    20170101120000.0
    100    1  ‡aKivi, Aleksis.
    245    10 ‡aSeitsemän veljestä :‡bromaani.

Control fields (LDR, 001-009) carry a plain value after the tag column. Data
fields carry two indicator characters, a space, then `‡`-prefixed subfields.
Non-numeric local tags (LOW, CAT, STA, ...) are data fields.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

SUBFIELD_MARKER = "‡"
LEADER_TAG = "LDR"

_TAG_RE = re.compile(r"^[0-9A-Za-z]{3}$")
_LINE_RE = re.compile(r"^(?P<tag>[0-9A-Za-z]{3}) {4}(?P<rest>.*)$")
# Everything str.splitlines() breaks on.
_LINE_BREAK_RE = re.compile("[\n\r\v\f\x1c\x1d\x1e\x85\u2028\u2029]")


class MarcParseError(ValueError):
    pass


@dataclass(frozen=True)
class Subfield:
    code: str
    value: str


@dataclass
class Field:
    tag: str
    ind1: str = " "
    ind2: str = " "
    subfields: list[Subfield] = field(default_factory=list)
    value: str | None = None

    @property
    def is_control(self) -> bool:
        return is_control_tag(self.tag)

    def subfield_values(self, *codes: str) -> list[str]:
        return [sf.value for sf in self.subfields if not codes or sf.code in codes]

    def first_subfield(self, code: str) -> str | None:
        return next((sf.value for sf in self.subfields if sf.code == code), None)

    def to_line(self) -> str:
        """Serialize to one line; raises MarcParseError for content that would not read back."""
        if not _TAG_RE.match(self.tag):
            raise MarcParseError(f"Invalid tag {self.tag!r}")
        if self.is_control:
            _check_text(self.tag, self.value or "")
            return f"{self.tag}    {self.value or ''}"
        if len(self.ind1) != 1 or len(self.ind2) != 1:
            raise MarcParseError(f"Indicators of {self.tag} must be single characters")
        _check_text(self.tag, self.ind1 + self.ind2)
        for sf in self.subfields:
            if len(sf.code) != 1 or sf.code == SUBFIELD_MARKER:
                raise MarcParseError(f"Invalid subfield code {sf.code!r} in {self.tag}")
            _check_text(self.tag, sf.code + sf.value)
            if SUBFIELD_MARKER in sf.value:
                raise MarcParseError(f"Subfield {self.tag} ${sf.code} contains the subfield marker {SUBFIELD_MARKER!r}")
        body = "".join(f"{SUBFIELD_MARKER}{sf.code}{sf.value}" for sf in self.subfields)
        return f"{self.tag}    {self.ind1}{self.ind2} {body}"


def _check_text(tag: str, text: str) -> None:
    if _LINE_BREAK_RE.search(text):
        raise MarcParseError(f"Field {tag} contains a line break")


def is_control_tag(tag: str) -> bool:
    return tag == LEADER_TAG or (tag.isdigit() and int(tag) < 10)


@dataclass
class MarcRecord:
    leader: str = ""
    fields: list[Field] = field(default_factory=list)

    def get(self, pattern: str) -> list[Field]:
        """Fields whose tag matches the regular expression `pattern`."""
        tag_re = re.compile(pattern)
        return [f for f in self.fields if tag_re.search(f.tag)]

    def first(self, *tags: str) -> Field | None:
        return next((f for f in self.fields if f.tag in tags), None)

    def control_value(self, tag: str) -> str | None:
        f = self.first(tag)
        return f.value if f is not None else None

    def append_control_field(self, tag: str, value: str) -> MarcRecord:
        self.fields.append(Field(tag=tag, value=value))
        return self

    def append_field(self, tag: str, ind1: str, ind2: str, subfields: list[tuple[str, str]]) -> MarcRecord:
        self.fields.append(
            Field(tag=tag, ind1=ind1, ind2=ind2, subfields=[Subfield(code, value) for code, value in subfields])
        )
        return self

    def to_string(self) -> str:
        _check_text(LEADER_TAG, self.leader)
        lines = [f"{LEADER_TAG}    {self.leader}"]
        lines.extend(f.to_line() for f in self.fields)
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.to_string()

    @classmethod
    def from_string(cls, text: str) -> MarcRecord:
        record = cls()
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            m = _LINE_RE.match(line)
            if m is None:
                raise MarcParseError(f"Malformed MARC line {lineno}: {line!r}")
            tag, rest = m.group("tag"), m.group("rest")
            if tag == LEADER_TAG:
                record.leader = rest
            elif is_control_tag(tag):
                record.fields.append(Field(tag=tag, value=rest))
            else:
                record.fields.append(_parse_data_field(tag, rest, lineno))
        return record


def _parse_data_field(tag: str, rest: str, lineno: int) -> Field:
    if len(rest) < 3 or rest[2] != " ":
        raise MarcParseError(f"Malformed indicators on line {lineno} ({tag})")
    ind1, ind2 = rest[0], rest[1]
    body = rest[3:]
    subfields: list[Subfield] = []
    for chunk in body.split(SUBFIELD_MARKER)[1:]:
        if not chunk:
            continue
        subfields.append(Subfield(code=chunk[0], value=chunk[1:]))
    return Field(tag=tag, ind1=ind1, ind2=ind2, subfields=subfields)
