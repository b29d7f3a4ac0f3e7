"""Index name validation."""

from __future__ import annotations

import re

from fedsearch.index.errors import InvalidIndexNameError

MAX_INDEX_NAME_LENGTH = 255

_INDEX_NAME = re.compile(r"[A-Za-z0-9_.$@-]+")


def is_valid(name: str | None) -> bool:
    """Return True if ``name`` can safely be used as an index directory name.

    Valid names are non-empty, at most 255 characters and only use ASCII
    letters, digits and ``_ . $ @ -``. Path separators are never valid.

    Examples:
        >>> is_valid("products-2024")
        True
        >>> is_valid("../secrets")
        False
    """
    if not name or len(name) > MAX_INDEX_NAME_LENGTH:
        return False
    return _INDEX_NAME.fullmatch(name) is not None


def require_valid(name: str | None) -> str:
    """Return ``name`` unchanged or raise InvalidIndexNameError."""
    if not is_valid(name):
        raise InvalidIndexNameError(f"Invalid index name: {name!r}")
    return name  # type: ignore[return-value]
