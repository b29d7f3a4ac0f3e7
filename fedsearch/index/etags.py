"""ETag computation from index modification times."""

from __future__ import annotations

import logging

from fedsearch.index.layout import IndexLayout
from fedsearch.index.names import is_valid
from fedsearch.index.registry import IndexRegistry
from fedsearch.utils.paths import list_subdirectories

logger = logging.getLogger(__name__)


def compute_tag(layout: IndexLayout, registry: IndexRegistry, name: str | None = None) -> str | None:
    """Return a validator that changes whenever a matching index is modified.

    Args:
        layout: Index layout resolved at startup
        registry: Registry used to look up each index master
        name: Index name; ignored in single-index mode

    Returns:
        ``"{name}-{last_modified}"`` for one index, those tags joined with
        ``;`` over every index directory when ``name`` is empty, invalid or missing,
        or None when no index directory exists. None means the freshness is
        unknown.
    """
    if not layout.has_multiple():
        root = layout.directory
        if not root.is_dir():
            return None
        return f"{root.name}-{registry.get_or_create(root).last_modified()}"

    if name and is_valid(name) and name not in {".", ".."}:
        directory = layout.index_directory(name)
        if directory.is_dir():
            return f"{name}-{registry.get_or_create(directory, name=name).last_modified()}"
        logger.debug("No index directory for %r, tagging every index", name)

    directories = list_subdirectories(layout.directory)
    if not directories:
        return None
    return ";".join(
        f"{d.name}-{registry.get_or_create(d, name=d.name).last_modified()}" for d in directories
    )
