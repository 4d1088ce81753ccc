from __future__ import annotations

from hashlib import sha256

from sqlalchemy.engine import URL


def sha256_text(text: str) -> str:
    return sha256(text.encode("utf-8")).hexdigest()


def database_identity(url: URL) -> str:
    """Short stable id of a database URL, computed without the password."""
    return sha256_text(url.render_as_string(hide_password=True))[:16]
