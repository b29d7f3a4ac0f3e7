"""Build a search index from a content directory using Tantivy."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import tantivy

from fedsearch.index.layout import IndexLayout
from fedsearch.index.master import IndexMaster
from fedsearch.utils.paths import find_files, relative_posix

logger = logging.getLogger(__name__)

# Fields stored verbatim so they can be faceted and mapped back to files
KEYWORD_FIELDS = ("path", "mediatype", "visibility", "type")


def create_schema(tokenizer: str = "default") -> tantivy.Schema:
    """Create Tantivy schema for content indexing.

    Args:
        tokenizer: Tokenizer used for analyzed fields

    Returns:
        Tantivy schema with the content key, metadata and full-text fields
    """
    schema_builder = tantivy.SchemaBuilder()

    # Content key fields
    for name in KEYWORD_FIELDS:
        schema_builder.add_text_field(name, stored=True, tokenizer_name="raw")

    # Metadata fields
    schema_builder.add_text_field("title", stored=True, tokenizer_name=tokenizer)
    schema_builder.add_date_field("modified", stored=True)

    # Full text, not stored
    schema_builder.add_text_field("fulltext", stored=False, tokenizer_name=tokenizer)

    return schema_builder.build()


def _read_text(file: Path) -> str:
    try:
        return file.read_text(encoding="utf-8", errors="ignore")
    except OSError as exc:
        logger.warning("Skipping unreadable file %s: %s", file, exc)
        return ""


def iter_documents(layout: IndexLayout, source: Path) -> Iterator[tantivy.Document]:
    """Yield one document per file under ``source`` that maps to a content key.

    Files outside the layout roots and files of the indexes themselves are
    skipped.
    """
    for file in find_files(source, recursive=True):
        if relative_posix(file, layout.directory) is not None:
            continue
        key = layout.to_key(file)
        if key is None:
            logger.debug("Skipping %s: outside the configured roots", file)
            continue
        doc = tantivy.Document()
        doc.add_text("path", key.path)
        doc.add_text("mediatype", key.mediatype)
        doc.add_text("visibility", key.visibility)
        doc.add_text("type", file.suffix.lstrip(".").lower() or "none")
        doc.add_text("title", file.stem)
        doc.add_date("modified", datetime.fromtimestamp(file.stat().st_mtime, tz=UTC))
        doc.add_text("fulltext", _read_text(file))
        yield doc


def build_index(
    layout: IndexLayout,
    master: IndexMaster,
    source: Path,
    rebuild: bool = False,
    tokenizer: str = "default",
    heap_size: int = 50_000_000,
) -> int:
    """Index every file under ``source`` into ``master`` in a single commit.

    Args:
        layout: Layout mapping files to content keys
        master: Master owning the target index (created if missing)
        source: Directory to walk
        rebuild: Delete existing documents first (default: False)
        tokenizer: Tokenizer for analyzed fields when the index is created
        heap_size: Writer heap size in bytes

    Returns:
        Number of documents indexed

    Raises:
        FileNotFoundError: If source path does not exist
        ValueError: If source is not a directory
    """
    if not source.exists():
        raise FileNotFoundError(f"Path not found: {source}")

    if not source.is_dir():
        raise ValueError(f"Path is not a directory: {source}")

    master.initialize(create_schema(tokenizer))

    start_time = time.time()
    indexed_count = 0
    with master.writer(heap_size=heap_size) as writer:
        if rebuild:
            writer.delete_all_documents()
        for doc in iter_documents(layout, source):
            writer.add_document(doc)
            indexed_count += 1

    elapsed = time.time() - start_time
    logger.info(
        "Indexed %d document(s) from %s into %s in %.1f seconds",
        indexed_count,
        source,
        master.directory,
        elapsed,
    )
    return indexed_count
