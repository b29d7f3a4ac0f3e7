"""Per-index resource management.

An :class:`IndexMaster` owns exactly one tantivy index directory. Searchers
handed out by tantivy are immutable point-in-time snapshots, so the master
keeps one cached snapshot and wraps it in lightweight handles; many threads
may hold handles on the same snapshot at once. The snapshot is replaced when
the index's commit stamp changes, while handles already out keep the snapshot
they were created with until they are released.

Thread Safety:
    Handle bookkeeping is guarded by a per-master lock. Writers are serialized
    by a separate lock and never block readers.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import tantivy

from fedsearch.index.errors import (
    HandleError,
    IndexClosedError,
    IndexIOError,
    InvalidQueryError,
    NotInitializedError,
    SearchSubsystemError,
)
from fedsearch.index.models import Facet, IndexStats, SortField
from fedsearch.index.terms import escape_regex, term_candidates
from fedsearch.utils.paths import ensure_dir

logger = logging.getLogger(__name__)

META_FILE = "meta.json"

# Fields a suggestion condition applies to when it names none
SUGGESTION_CONDITION_FIELDS = ("type",)

H = TypeVar("H", bound="IndexHandle")


@dataclass(eq=False)
class IndexHandle:
    """Immutable view over one committed state of an index.

    Obtain handles with :meth:`IndexMaster.grab_reader` or
    :meth:`IndexMaster.grab_searcher` and give each one back exactly once.
    """

    master: IndexMaster
    handle_id: int
    generation: int
    stamp: tuple[int, int] | None
    _index: Any = field(repr=False)
    _searcher: Any = field(repr=False)
    released: bool = False

    @property
    def searcher(self) -> Any:
        """The tantivy searcher snapshot behind this handle."""
        if self.released:
            raise HandleError(f"Handle {self.handle_id} on {self.master.directory} used after release")
        return self._searcher

    @property
    def index(self) -> Any:
        if self.released:
            raise HandleError(f"Handle {self.handle_id} on {self.master.directory} used after release")
        return self._index


class ReaderHandle(IndexHandle):
    """Handle used for term statistics, facets and document listing."""


class SearcherHandle(IndexHandle):
    """Handle used for running queries."""


@dataclass(slots=True)
class LocalHit:
    """A hit inside one index, before federation."""

    segment: int
    doc: int
    score: float
    sort_values: tuple[Any, ...] = ()
    position: int = 0
    address: Any = None


@dataclass(slots=True)
class LocalCollection:
    """Top-K hits of one index plus its exact total hit count."""

    hits: list[LocalHit]
    total: int


def coerce_value(value: Any) -> str:
    """Convert a stored tantivy value into a plain string."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def _first_value(values: Any) -> Any:
    if isinstance(values, list):
        return values[0] if values else None
    return values


def _sort_key(value: Any, descending: bool) -> tuple:
    # Missing values always sort last, whatever the direction.
    if value is None:
        return (0,) if descending else (1,)
    return (1, value) if descending else (0, value)


def sort_hits(
    hits: Iterable[LocalHit],
    sort: Sequence[SortField] | None,
    tiebreak: Callable[[LocalHit], tuple],
) -> list[LocalHit]:
    """Order hits by ``sort`` with ``tiebreak`` as the final key.

    ``None`` (or an empty list) keeps the order given by ``tiebreak`` alone.
    Each hit's ``sort_values`` holds one value per sort component.
    """
    ordered = sorted(hits, key=tiebreak)
    if not sort:
        return ordered
    # Stable sorts applied from the least to the most significant component.
    for position in reversed(range(len(sort))):
        descending = sort[position].descending
        ordered.sort(
            key=lambda hit: _sort_key(hit.sort_values[position], descending),
            reverse=descending,
        )
    return ordered


def local_order(hit: LocalHit) -> tuple[int, int]:
    return (hit.segment, hit.doc)


class IndexMaster:
    """Owns one physical index and pools snapshot handles over it."""

    def __init__(self, directory: Path, name: str = ""):
        """Create a master for ``directory`` without opening anything.

        Args:
            directory: Index directory
            name: Index name ("" for the root index in single-index mode)
        """
        self.directory = Path(directory)
        self.name = name
        self._lock = threading.Lock()
        self._writer_lock = threading.Lock()
        self._index: Any = None
        self._snapshot: Any = None
        self._snapshot_stamp: tuple[int, int] | None = None
        self._generation = 0
        self._dirty = False
        self._closed = False
        self._ids = itertools.count(1)
        self._outstanding: dict[int, IndexHandle] = {}
        self._last_modified = 0
        self._refresh_last_modified(self._commit_stamp())

    def __repr__(self) -> str:
        return f"IndexMaster(name={self.name!r}, directory={str(self.directory)!r})"

    # Lifecycle
    # ------------------------------------------------------------------------------------------

    def exists(self) -> bool:
        """Return True if an index has been committed in the directory."""
        return self.directory.is_dir() and tantivy.Index.exists(str(self.directory))

    def initialize(self, schema: tantivy.Schema) -> None:
        """Create the index with ``schema``, or open it if it already exists."""
        with self._writer_lock, self._lock:
            if self._closed:
                raise IndexClosedError(f"Index master for {self.directory} is closed")
            ensure_dir(self.directory)
            self._index = tantivy.Index(schema, path=str(self.directory))
            self._dirty = True
            logger.info("Initialized index at %s", self.directory)

    def close(self) -> None:
        """Stop handing out handles. Handles already out stay usable until released."""
        with self._lock:
            if self._outstanding:
                logger.warning(
                    "Closing %s with %d handle(s) still outstanding",
                    self.directory,
                    len(self._outstanding),
                )
            self._closed = True
            self._index = None
            self._snapshot = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def outstanding(self) -> int:
        """Number of handles grabbed and not yet released."""
        with self._lock:
            return len(self._outstanding)

    # Handles
    # ------------------------------------------------------------------------------------------

    def grab_reader(self) -> ReaderHandle:
        """Return a reader handle that must be released.

        Raises:
            NotInitializedError: If no index exists in the directory
            IndexClosedError: If the master was closed
        """
        return self._grab(ReaderHandle)

    def grab_searcher(self) -> SearcherHandle:
        """Return a searcher handle that must be released.

        Raises:
            NotInitializedError: If no index exists in the directory
            IndexClosedError: If the master was closed
        """
        return self._grab(SearcherHandle)

    def release(self, handle: IndexHandle) -> None:
        """Return ``handle`` to the pool.

        Raises:
            HandleError: If the handle belongs to another master or was already released
        """
        with self._lock:
            if handle.master is not self:
                raise HandleError(f"Handle {handle.handle_id} does not belong to {self.directory}")
            if handle.released or self._outstanding.pop(handle.handle_id, None) is None:
                raise HandleError(f"Handle {handle.handle_id} on {self.directory} already released")
            handle.released = True

    def release_silently(self, handle: IndexHandle | None) -> None:
        """Release ``handle`` logging, rather than raising, any error.

        Provided for convenience when used inside a ``finally`` block.
        """
        if handle is None:
            return
        try:
            self.release(handle)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to release handle on %s: %s", self.directory, exc, exc_info=True)

    @contextmanager
    def reader(self) -> Iterator[ReaderHandle]:
        """Grab a reader for the duration of the block."""
        handle = self.grab_reader()
        try:
            yield handle
        finally:
            self.release_silently(handle)

    @contextmanager
    def searcher(self) -> Iterator[SearcherHandle]:
        """Grab a searcher for the duration of the block."""
        handle = self.grab_searcher()
        try:
            yield handle
        finally:
            self.release_silently(handle)

    def _grab(self, handle_type: type[H]) -> H:
        with self._lock:
            if self._closed:
                raise IndexClosedError(f"Index master for {self.directory} is closed")
            self._open_locked()
            self._refresh_snapshot_locked()
            handle = handle_type(
                master=self,
                handle_id=next(self._ids),
                generation=self._generation,
                stamp=self._snapshot_stamp,
                _index=self._index,
                _searcher=self._snapshot,
            )
            self._outstanding[handle.handle_id] = handle
            return handle

    def _open_locked(self) -> None:
        if self._index is not None:
            return
        if not self.exists():
            raise NotInitializedError(
                f"Cannot search on an index before it has been initialised: {self.directory}"
            )
        try:
            self._index = tantivy.Index.open(str(self.directory))
        except Exception as exc:
            raise IndexIOError(f"Unable to open index {self.directory}", exc) from exc
        self._dirty = True
        logger.info("Opened index %s", self.directory)

    def _refresh_snapshot_locked(self) -> None:
        stamp = self._commit_stamp()
        if self._snapshot is not None and not self._dirty and stamp == self._snapshot_stamp:
            logger.debug("Reusing snapshot %d of %s", self._generation, self.directory)
            return
        try:
            self._index.reload()
            self._snapshot = self._index.searcher()
        except Exception as exc:
            raise IndexIOError(f"Unable to reload index {self.directory}", exc) from exc
        self._snapshot_stamp = stamp
        self._dirty = False
        self._generation += 1
        self._refresh_last_modified(stamp)
        logger.debug("Loaded snapshot %d of %s", self._generation, self.directory)

    # Freshness
    # ------------------------------------------------------------------------------------------

    def _commit_stamp(self) -> tuple[int, int] | None:
        try:
            stat = (self.directory / META_FILE).stat()
        except OSError:
            return None
        return (stat.st_mtime_ns, stat.st_size)

    def _refresh_last_modified(self, stamp: tuple[int, int] | None) -> None:
        if stamp is not None:
            self._last_modified = max(self._last_modified, stamp[0] // 1_000_000)

    def last_modified(self) -> int:
        """Return the latest commit time in milliseconds since the epoch.

        The value never decreases over the lifetime of the master; it is 0 while
        no index exists.
        """
        stamp = self._commit_stamp()
        with self._lock:
            self._refresh_last_modified(stamp)
            return self._last_modified

    def is_current(self, handle: IndexHandle) -> bool:
        """Return True if ``handle`` sees the latest commit on disk."""
        return handle.stamp == self._commit_stamp()

    # Writing
    # ------------------------------------------------------------------------------------------

    @contextmanager
    def writer(self, heap_size: int = 50_000_000) -> Iterator[Any]:
        """Yield a tantivy writer; commit on success, roll back on error.

        Writers are serialized; readers are never blocked and see the new
        commit on their next grab.
        """
        with self._writer_lock:
            with self._lock:
                if self._closed:
                    raise IndexClosedError(f"Index master for {self.directory} is closed")
                self._open_locked()
                index = self._index
            writer = index.writer(heap_size=heap_size, num_threads=1)
            try:
                yield writer
                writer.commit()
                writer.wait_merging_threads()
            except BaseException:
                try:
                    writer.rollback()
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Rollback failed on %s: %s", self.directory, exc, exc_info=True)
                raise
            with self._lock:
                self._dirty = True
                self._last_modified = max(self._last_modified, int(time.time() * 1000))

    def add_documents(self, documents: Iterable[tantivy.Document], heap_size: int = 50_000_000) -> int:
        """Add documents in one commit and return how many were written."""
        count = 0
        with self.writer(heap_size=heap_size) as writer:
            for document in documents:
                writer.add_document(document)
                count += 1
        return count

    def clear(self) -> None:
        """Delete every document of the index."""
        with self.writer() as writer:
            writer.delete_all_documents()
        logger.info("Cleared index %s", self.directory)

    # Queries
    # ------------------------------------------------------------------------------------------

    def parse_query(self, handle: IndexHandle, predicate: str | None, default_fields: list[str]) -> Any:
        """Parse ``predicate`` against the schema of this index.

        An empty predicate matches every document.

        Raises:
            InvalidQueryError: If the predicate cannot be parsed
        """
        if predicate is None or not predicate.strip():
            return tantivy.Query.all_query()
        try:
            return handle.index.parse_query(predicate, default_fields)
        except ValueError as exc:
            raise InvalidQueryError(f"Invalid query syntax for {self.name or self.directory}: {exc}") from exc

    def term_query(self, handle: IndexHandle, field_name: str, text: str) -> Any:
        """Build a query matching ``text`` as a single indexed term of ``field_name``.

        The text is not analyzed: it must be the term exactly as indexed.

        Raises:
            InvalidQueryError: If the field is unknown or cannot hold the term
        """
        try:
            return tantivy.Query.term_query(handle.index.schema, field_name, text)
        except ValueError as exc:
            raise InvalidQueryError(f"Invalid term query on {field_name!r}: {exc}") from exc

    def lookup_query(
        self, handle: IndexHandle, field_name: str, text: str, mode: str, distance: int
    ) -> Any:
        """Build the query finding documents that hold terms close to ``text``."""
        schema = handle.index.schema
        queries = []
        try:
            if mode in ("fuzzy", "similar"):
                queries.append(
                    tantivy.Query.fuzzy_term_query(
                        schema, field_name, text, distance=distance, transposition_cost_one=True
                    )
                )
            if mode in ("prefix", "similar"):
                queries.append(tantivy.Query.regex_query(schema, field_name, escape_regex(text) + ".*"))
        except ValueError as exc:
            raise InvalidQueryError(f"Invalid term lookup on {field_name!r}: {exc}") from exc
        if len(queries) == 1:
            return queries[0]
        return tantivy.Query.boolean_query([(tantivy.Occur.Should, query) for query in queries])

    def suggestion_query(
        self,
        handle: IndexHandle,
        fields: Sequence[str],
        words: Sequence[str],
        condition: str | None,
    ) -> Any:
        """Build a query matching documents with terms starting close to any of ``words``.

        ``condition`` is parsed against the ``type`` field and must hold as well.
        """
        schema = handle.index.schema
        try:
            alternatives = [
                (
                    tantivy.Occur.Should,
                    tantivy.Query.fuzzy_term_query(
                        schema, field_name, word, distance=1, transposition_cost_one=True, prefix=True
                    ),
                )
                for field_name in fields
                for word in words
            ]
        except ValueError as exc:
            raise InvalidQueryError(f"Invalid suggestion fields {list(fields)}: {exc}") from exc
        query = tantivy.Query.boolean_query(alternatives)
        if condition is None or not condition.strip():
            return query
        required = self.parse_query(handle, condition, list(SUGGESTION_CONDITION_FIELDS))
        return tantivy.Query.boolean_query(
            [(tantivy.Occur.Must, query), (tantivy.Occur.Must, required)]
        )

    def collect(
        self,
        handle: SearcherHandle,
        query: Any,
        sort: Sequence[SortField] | None,
        limit: int,
    ) -> LocalCollection:
        """Return the top ``limit`` hits under ``sort`` and the exact hit count.

        Best-first relevance sorts use tantivy's top-K collector. Every
        other order gathers every matching address, sorts them, then cuts.
        """
        searcher = handle.searcher
        first = searcher.search(query, limit=limit, count=True)
        total = first.count if first.count is not None else len(first.hits)
        if total == 0:
            return LocalCollection(hits=[], total=0)

        # The collector keeps the highest scores, so only a descending order can use it
        best_first = bool(sort) and all(spec.is_score and spec.descending for spec in sort)  # type: ignore[union-attr]
        if best_first:
            hits = [
                LocalHit(
                    address.segment_ord,
                    address.doc,
                    float(score),
                    (float(score),) * len(sort),  # type: ignore[arg-type]
                    address=address,
                )
                for score, address in first.hits
            ]
            return LocalCollection(hits=sort_hits(hits, sort, local_order), total=total)

        everything = first if total <= len(first.hits) else searcher.search(query, limit=total, count=False)
        hits = []
        for score, address in everything.hits:
            values: tuple[Any, ...] = ()
            if sort:
                stored = searcher.doc(address).to_dict()
                values = tuple(
                    float(score) if spec.is_score else _first_value(stored.get(spec.field))
                    for spec in sort
                )
            hits.append(LocalHit(address.segment_ord, address.doc, float(score), values, address=address))
        return LocalCollection(hits=sort_hits(hits, sort, local_order)[:limit], total=total)

    def facet_counts(self, handle: IndexHandle, field_name: str, query: Any) -> Counter[str]:
        """Count matching documents per distinct value of ``field_name``.

        Each document counts once per distinct value; the table is never
        truncated.
        """
        searcher = handle.searcher
        counts: Counter[str] = Counter()
        if searcher.num_docs == 0:
            return counts
        result = searcher.search(query, limit=searcher.num_docs, count=False)
        for _, address in result.hits:
            values = searcher.doc(address).to_dict().get(field_name, [])
            for term in {coerce_value(value) for value in values}:
                counts[term] += 1
        return counts

    def term_counts(
        self,
        handle: IndexHandle,
        field_name: str,
        query: Any,
        accept: Callable[[str], bool],
    ) -> Counter[str]:
        """Count the documents holding each indexed term of ``field_name`` that ``accept`` keeps.

        Candidates come from the stored values of the documents ``query``
        matches; each one is then checked against the index itself.
        """
        searcher = handle.searcher
        counts: Counter[str] = Counter()
        if searcher.num_docs == 0:
            return counts
        result = searcher.search(query, limit=searcher.num_docs, count=False)
        candidates: set[str] = set()
        for _, address in result.hits:
            for value in searcher.doc(address).to_dict().get(field_name, []):
                candidates.update(term for term in term_candidates(coerce_value(value)) if accept(term))
        schema = handle.index.schema
        for term in sorted(candidates):
            found = searcher.search(tantivy.Query.term_query(schema, field_name, term), limit=1, count=True)
            if found.count:
                counts[term] = found.count
        return counts

    def get_facet(
        self,
        field_name: str,
        up_to: int,
        predicate: str | None = None,
        default_fields: list[str] | None = None,
    ) -> Facet:
        """Compute the facet of ``field_name`` over documents matching ``predicate``.

        Raises:
            NotInitializedError: If the index does not exist
            InvalidQueryError: If the predicate cannot be parsed
            IndexIOError: If the index cannot be read
        """
        with self.reader() as handle:
            query = self.parse_query(handle, predicate, default_fields or [])
            try:
                counts = self.facet_counts(handle, field_name, query)
            except SearchSubsystemError:
                raise
            except Exception as exc:
                raise IndexIOError(f"Failed to compute facet {field_name} on {self.directory}", exc) from exc
        return Facet.from_counts(field_name, counts, up_to)

    def list_files(self, to_file: Callable[[dict[str, Any]], Path]) -> list[Path]:
        """Map every stored document back to its source file, in index order."""
        with self.reader() as handle:
            searcher = handle.searcher
            if searcher.num_docs == 0:
                return []
            try:
                result = searcher.search(tantivy.Query.all_query(), limit=searcher.num_docs, count=False)
                addresses = sorted((address for _, address in result.hits), key=lambda a: (a.segment_ord, a.doc))
                return [to_file(searcher.doc(address).to_dict()) for address in addresses]
            except Exception as exc:
                raise IndexIOError(f"Failed to list documents of {self.directory}", exc) from exc

    def stats(self) -> IndexStats:
        """Return document and segment counts; a missing index reports exists=False."""
        if not self.exists():
            return IndexStats(name=self.name, directory=self.directory, exists=False)
        with self.reader() as handle:
            searcher = handle.searcher
            return IndexStats(
                name=self.name,
                directory=self.directory,
                exists=True,
                documents=searcher.num_docs,
                segments=searcher.num_segments,
                last_modified=self.last_modified(),
                current=self.is_current(handle),
            )
