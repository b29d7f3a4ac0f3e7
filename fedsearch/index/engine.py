"""Multi-index query engine.

Runs one logical query against several independently pooled indexes and
merges the answers into a single paged result:

1. resolve the target index directories in a deterministic order;
2. get (or create) each directory's master through the registry;
3. grab one searcher per master, all-or-nothing;
4. run the per-index collectors concurrently and merge their top-K windows;
5. materialize the requested page;
6. release every handle, whatever happened.

Totals are exact: each index contributes its full count. The top-K window is
``page * hits_per_page`` and is capped by ``settings.max_result_window``.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from fedsearch.config import Settings
from fedsearch.index.errors import (
    IndexIOError,
    InvalidQueryError,
    NotInitializedError,
    ResultWindowError,
    SearchSubsystemError,
)
from fedsearch.index.layout import IndexLayout
from fedsearch.index.master import (
    IndexHandle,
    IndexMaster,
    LocalCollection,
    LocalHit,
    coerce_value,
    sort_hits,
)
from fedsearch.index.models import (
    DocRef,
    Facet,
    IndexStats,
    SearchHit,
    SearchPaging,
    SearchQuery,
    SearchResults,
    SortField,
    TermLookup,
)
from fedsearch.index.names import require_valid
from fedsearch.index.registry import IndexRegistry
from fedsearch.index.snippets import extract_snippet
from fedsearch.index.terms import LOOKUP_MODES, MAX_DISTANCE, term_matcher

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class IndexTarget:
    """An index taking part in a federated call."""

    name: str
    directory: Path
    position: int


def global_order(hit: LocalHit) -> tuple[int, int, int]:
    """Index order across the federation: target position, then local address."""
    return (hit.position, hit.segment, hit.doc)


def truncate(value: str, max_length: int) -> str:
    """Elide ``value`` past ``max_length`` characters (0 means unlimited)."""
    if max_length and len(value) > max_length:
        return value[:max_length] + "..."
    return value


class MultiIndexQueryEngine:
    """Fans queries and facet computations out over several indexes."""

    def __init__(self, layout: IndexLayout, registry: IndexRegistry, settings: Settings):
        self._layout = layout
        self._registry = registry
        self._settings = settings

    @property
    def layout(self) -> IndexLayout:
        return self._layout

    @property
    def registry(self) -> IndexRegistry:
        return self._registry

    # Targets
    # ------------------------------------------------------------------------------------------

    def resolve_targets(self, target: str | None = None) -> list[IndexTarget]:
        """Resolve ``target`` into an ordered list of index directories.

        ``None`` or ``""`` selects every index currently on disk (sorted by
        name); otherwise ``target`` is a name or a comma-separated list of
        names, kept in the given order without duplicates.

        Raises:
            InvalidIndexNameError: If any name fails validation
        """
        if not self._layout.has_multiple():
            if target:
                logger.warning("Named index %r requested in single index configuration", target)
            return [IndexTarget(name="", directory=self._layout.directory, position=0)]

        if target:
            names = [name.strip() for name in target.split(",") if name.strip()]
            for name in names:
                require_valid(name)
        else:
            names = self._layout.index_names()

        targets: list[IndexTarget] = []
        seen: set[Path] = set()
        for name in names:
            directory = self._layout.index_directory(name)
            if directory in seen:
                continue
            seen.add(directory)
            targets.append(IndexTarget(name=name, directory=directory, position=len(targets)))
        return targets

    def masters_for(self, target: str | None = None) -> list[IndexMaster]:
        """Return the masters of ``target`` in target order."""
        return [
            self._registry.get_or_create(t.directory, name=t.name)
            for t in self.resolve_targets(target)
        ]

    # Search
    # ------------------------------------------------------------------------------------------

    def search(
        self,
        target: str | None,
        query: SearchQuery,
        facets: Sequence[str] | None = None,
        facet_limit: int | None = None,
    ) -> SearchResults:
        """Run ``query`` over every index of ``target`` and merge the results.

        Args:
            target: Index name(s), or "" / None for every index
            query: The query to run
            facets: Optional fields to compute facets for (separate reader pass)
            facet_limit: Values per facet (defaults to settings.facet_limit)

        Returns:
            Merged results; no handle is held once this returns

        Raises:
            IndexValidationError: On invalid names, predicates or result windows
            NotInitializedError: If a target index does not exist
            IndexIOError: If any index fails during the search
        """
        self._check_window(query)
        default_fields = query.default_fields or self._settings.default_fields
        targets, total, hits = self._run(
            target,
            query,
            lambda master, handle: master.parse_query(handle, query.predicate, default_fields),
        )
        facet_list = (
            self.facets(target, facets, query.predicate, up_to=facet_limit, default_fields=default_fields)
            if facets
            else []
        )
        return self._results(targets, total, hits, query, facet_list)

    def term_search(
        self,
        target: str | None,
        field_name: str,
        term: str,
        page: int = 1,
        hits_per_page: int = 100,
        sort: list[SortField] | None = None,
    ) -> SearchResults:
        """Find the documents holding ``term`` exactly as indexed in ``field_name``.

        Raises:
            InvalidQueryError: If the field or term is empty, or the field is unknown
            NotInitializedError: If a target index does not exist
            IndexIOError: If any index fails during the search
        """
        if not field_name or not term:
            raise InvalidQueryError("A term search needs both a field and a term")
        query = SearchQuery(sort=sort, page=page, hits_per_page=hits_per_page)
        self._check_window(query)
        targets, total, hits = self._run(
            target, query, lambda master, handle: master.term_query(handle, field_name, term)
        )
        return self._results(targets, total, hits, query)

    def suggest(
        self,
        target: str | None,
        fields: Sequence[str],
        text: str,
        condition: str | None = None,
        up_to: int = 10,
    ) -> SearchResults:
        """Suggest the best documents for partially typed ``text``.

        Every whitespace-separated word matches terms of ``fields`` that start
        within one edit of it. ``condition`` restricts the documents and is
        parsed against the ``type`` field. Empty text suggests nothing.
        """
        fields = [f for f in fields if f]
        words = [word.lower() for word in text.split()]
        query = SearchQuery(sort=[SortField.score()], hits_per_page=max(up_to, 1))
        self._check_window(query)
        if not fields:
            raise InvalidQueryError("Suggestions need at least one field")
        if not words:
            return self._results(self.resolve_targets(target), 0, [], query)
        targets, total, hits = self._run(
            target,
            query,
            lambda master, handle: master.suggestion_query(handle, fields, words, condition),
        )
        return self._results(targets, total, hits, query)

    def _run(
        self,
        target: str | None,
        query: SearchQuery,
        build: Callable[[IndexMaster, IndexHandle], Any],
    ) -> tuple[list[IndexTarget], int, list[SearchHit]]:
        targets = self.resolve_targets(target)
        if not targets:
            raise NotInitializedError(f"No index found under {self._layout.directory}")

        masters = [self._registry.get_or_create(t.directory, name=t.name) for t in targets]
        handles = self._grab_all(masters, IndexMaster.grab_searcher)
        try:
            built = [build(master, handle) for master, handle in zip(masters, handles)]
            try:
                collections = self._fan_out(
                    lambda i: masters[i].collect(handles[i], built[i], query.sort, query.window),
                    len(masters),
                )
                total, merged = self._merge(targets, collections, query)
                start = (query.page - 1) * query.hits_per_page
                window = merged[start : start + query.hits_per_page]
                hits = [self._materialize(targets, handles, hit, query) for hit in window]
            except SearchSubsystemError:
                raise
            except Exception as exc:
                raise IndexIOError(
                    "Failed performing a query on multiple indexes because of an I/O problem", exc
                ) from exc
        finally:
            self._release_all(masters, handles)
        return targets, total, hits

    def _check_window(self, query: SearchQuery) -> None:
        if query.window > self._settings.max_result_window:
            raise ResultWindowError(
                f"Requested window of {query.window} hits exceeds the maximum of "
                f"{self._settings.max_result_window}"
            )

    @staticmethod
    def _results(
        targets: list[IndexTarget],
        total: int,
        hits: list[SearchHit],
        query: SearchQuery,
        facets: list[Facet] | None = None,
    ) -> SearchResults:
        return SearchResults(
            indexes=[t.name for t in targets],
            total_hits=total,
            paging=SearchPaging.compute(query.page, query.hits_per_page, total),
            sort_fields=[spec.field for spec in query.sort or []],
            hits=hits,
            facets=facets or [],
        )

    def _merge(
        self,
        targets: list[IndexTarget],
        collections: list[LocalCollection],
        query: SearchQuery,
    ) -> tuple[int, list[LocalHit]]:
        total = 0
        pooled: list[LocalHit] = []
        for target, collection in zip(targets, collections):
            logger.debug("Index %r matched %d document(s)", target.name, collection.total)
            total += collection.total
            for hit in collection.hits:
                hit.position = target.position
                pooled.append(hit)
        return total, sort_hits(pooled, query.sort, global_order)[: query.window]

    def _materialize(
        self,
        targets: list[IndexTarget],
        handles: list[IndexHandle],
        hit: LocalHit,
        query: SearchQuery,
    ) -> SearchHit:
        target = targets[hit.position]
        stored = handles[hit.position].searcher.doc(hit.address).to_dict()
        fields = {
            name: [truncate(coerce_value(value), query.max_field_value_length) for value in values]
            for name, values in sorted(stored.items())
        }
        snippet = None
        if query.snippet_fields:
            text = " ".join(
                coerce_value(value)
                for name in query.snippet_fields
                for value in stored.get(name, [])
            )
            snippet = extract_snippet(text, query.predicate) or None
        return SearchHit(
            ref=DocRef(index=target.name, position=target.position, segment=hit.segment, doc=hit.doc),
            score=hit.score,
            fields=fields,
            snippet=snippet,
        )

    # Facets
    # ------------------------------------------------------------------------------------------

    def facets(
        self,
        target: str | None,
        fields: Sequence[str],
        predicate: str | None = None,
        up_to: int | None = None,
        default_fields: list[str] | None = None,
    ) -> list[Facet]:
        """Compute facets for ``fields`` over documents matching ``predicate``.

        With a single index the computation is delegated to its master. With
        several, each index counts its own documents and the counts are summed
        per term string before the top ``up_to`` values are kept.
        """
        fields = [f for f in fields if f]
        targets = self.resolve_targets(target)
        if not fields or not targets:
            return []
        up_to = up_to or self._settings.facet_limit
        default_fields = default_fields or self._settings.default_fields
        masters = [self._registry.get_or_create(t.directory, name=t.name) for t in targets]

        if len(masters) == 1:
            return [masters[0].get_facet(f, up_to, predicate, default_fields) for f in fields]

        handles = self._grab_all(masters, IndexMaster.grab_reader)
        try:
            parsed = [
                master.parse_query(handle, predicate, default_fields)
                for master, handle in zip(masters, handles)
            ]
            try:
                tables = self._fan_out(
                    lambda i: {f: masters[i].facet_counts(handles[i], f, parsed[i]) for f in fields},
                    len(masters),
                )
            except SearchSubsystemError:
                raise
            except Exception as exc:
                raise IndexIOError("Failed computing facets on multiple indexes", exc) from exc
        finally:
            self._release_all(masters, handles)

        facets = []
        for f in fields:
            merged: Counter[str] = Counter()
            for table in tables:
                merged.update(table[f])
            facets.append(Facet.from_counts(f, merged, up_to))
        return facets

    # Terms
    # ------------------------------------------------------------------------------------------

    def lookup_terms(
        self,
        target: str | None,
        field_name: str,
        text: str,
        mode: str = "similar",
        distance: int = 1,
        up_to: int = 20,
    ) -> TermLookup:
        """List indexed terms of ``field_name`` close to ``text``.

        ``fuzzy`` keeps terms within ``distance`` edits of the text, ``prefix``
        keeps terms starting with it and ``similar`` keeps both. Counts are
        numbers of documents, summed over the indexes, and the ``up_to`` most
        frequent terms are kept.

        Raises:
            InvalidQueryError: On an empty field or text, an unknown mode, a
                distance outside 0-2, or a field the indexes do not have
        """
        if not field_name or not text:
            raise InvalidQueryError("A term lookup needs both a field and a text")
        if mode not in LOOKUP_MODES:
            raise InvalidQueryError(f"Unknown term lookup mode {mode!r}, expected one of {LOOKUP_MODES}")
        if not 0 <= distance <= MAX_DISTANCE:
            raise InvalidQueryError(f"Edit distance must be between 0 and {MAX_DISTANCE}")
        targets = self.resolve_targets(target)
        if not targets:
            return TermLookup(field=field_name, text=text, mode=mode)

        accept = term_matcher(text, mode, distance)
        masters = [self._registry.get_or_create(t.directory, name=t.name) for t in targets]
        handles = self._grab_all(masters, IndexMaster.grab_reader)
        try:
            queries = [
                master.lookup_query(handle, field_name, text, mode, distance)
                for master, handle in zip(masters, handles)
            ]
            try:
                tables = self._fan_out(
                    lambda i: masters[i].term_counts(handles[i], field_name, queries[i], accept),
                    len(masters),
                )
            except SearchSubsystemError:
                raise
            except Exception as exc:
                raise IndexIOError("Failed looking up terms on multiple indexes", exc) from exc
        finally:
            self._release_all(masters, handles)

        merged: Counter[str] = Counter()
        for table in tables:
            merged.update(table)
        ranked = Facet.from_counts(field_name, merged, up_to)
        return TermLookup(field=field_name, text=text, mode=mode, terms=ranked.values)

    # Administration
    # ------------------------------------------------------------------------------------------

    def stats(self, target: str | None = None) -> list[IndexStats]:
        """Return statistics for every index of ``target``.

        A failing index is reported with ``exists=False`` and its error instead
        of aborting the listing.
        """
        results = []
        for master in self.masters_for(target):
            try:
                results.append(master.stats())
            except SearchSubsystemError as exc:
                logger.warning("Failed to load statistics for %s: %s", master.directory, exc)
                results.append(
                    IndexStats(name=master.name, directory=master.directory, exists=False, error=str(exc))
                )
        return results

    def list_files(self, target: str | None = None) -> list[Path]:
        """List the source files of every document of ``target``, index by index."""
        files: list[Path] = []
        for master in self.masters_for(target):
            files.extend(master.list_files(self._layout.to_file))
        return files

    # Helpers
    # ------------------------------------------------------------------------------------------

    @staticmethod
    def _grab_all(
        masters: list[IndexMaster],
        grab: Callable[[IndexMaster], IndexHandle],
    ) -> list[Any]:
        handles: list[IndexHandle] = []
        try:
            for master in masters:
                handles.append(grab(master))
        except BaseException:
            MultiIndexQueryEngine._release_all(masters, handles)
            raise
        return handles

    @staticmethod
    def _release_all(masters: list[IndexMaster], handles: list[IndexHandle]) -> None:
        for master, handle in zip(masters, handles):
            master.release_silently(handle)

    def _fan_out(self, task: Callable[[int], T], count: int) -> list[T]:
        """Run ``task(i)`` for every index, concurrently, and return results in index order.

        Every task is allowed to finish before the first failure (in completion
        order) is raised, so no handle is released while still in use.
        """
        if count == 1:
            return [task(0)]
        results: list[Any] = [None] * count
        first_error: BaseException | None = None
        workers = min(count, self._settings.max_workers)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(task, i): i for i in range(count)}
            for future in as_completed(futures):
                try:
                    results[futures[future]] = future.result()
                except Exception as exc:
                    if first_error is None:
                        first_error = exc
                    else:
                        logger.debug("Additional sub-query failure: %s", exc)
        if first_error is not None:
            raise first_error
        return results
