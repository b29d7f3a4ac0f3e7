"""Tests for the multi-index query engine."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from factories import make_doc
from fedsearch.bootstrap import ApplicationContainer, bootstrap_application
from fedsearch.config import Settings
from fedsearch.index.errors import (
    IndexIOError,
    InvalidIndexNameError,
    InvalidQueryError,
    NotInitializedError,
    ResultWindowError,
)
from fedsearch.index.master import IndexMaster
from fedsearch.index.models import DocRef, SearchQuery, SortField


def paths(results) -> list[str]:
    return [hit.fields["path"][0] for hit in results.hits]


class TestSearch:
    """Tests for federated search, merge and paging."""

    def test_totals_are_summed(self, federation: ApplicationContainer):
        results = federation.engine.search("", SearchQuery())

        assert results.indexes == ["A", "B"]
        assert results.total_hits == 5
        assert len(results.hits) == 5
        assert federation.registry.outstanding() == 0

    def test_index_order_without_sort(self, federation: ApplicationContainer):
        results = federation.engine.search("", SearchQuery())

        assert paths(results) == ["a/1", "a/2", "a/3", "b/1", "b/2"]
        assert results.hits[0].ref == DocRef(index="A", position=0, segment=0, doc=0)
        assert results.hits[3].ref == DocRef(index="B", position=1, segment=0, doc=0)

    def test_target_order_is_respected(self, federation: ApplicationContainer):
        results = federation.engine.search("B,A,B", SearchQuery())

        assert results.indexes == ["B", "A"]
        assert paths(results) == ["b/1", "b/2", "a/1", "a/2", "a/3"]

    def test_single_target(self, federation: ApplicationContainer):
        results = federation.engine.search("B", SearchQuery())

        assert results.total_hits == 2
        assert paths(results) == ["b/1", "b/2"]

    def test_field_sort_interleaves_indexes(self, federation: ApplicationContainer):
        query = SearchQuery(sort=[SortField(field="title")])

        results = federation.engine.search("", query)

        assert [hit.fields["title"][0] for hit in results.hits] == [
            "alpha",
            "bravo",
            "charlie",
            "delta",
            "echo",
        ]
        assert results.sort_fields == ["title"]

    def test_descending_field_sort(self, federation: ApplicationContainer):
        query = SearchQuery(sort=[SortField(field="title", descending=True)], hits_per_page=2)

        results = federation.engine.search("", query)

        assert [hit.fields["title"][0] for hit in results.hits] == ["echo", "delta"]
        assert results.total_hits == 5

    def test_relevance_sort(self, federation: ApplicationContainer):
        query = SearchQuery(predicate="apple", sort=[SortField.score()])

        results = federation.engine.search("", query)

        assert results.total_hits == 3
        assert sorted(paths(results)) == ["a/1", "a/2", "b/1"]
        scores = [hit.score for hit in results.hits]
        assert scores == sorted(scores, reverse=True)
        assert all(score > 0 for score in scores)

    def test_ascending_relevance_pages_from_the_weakest(self, make_federation):
        container = make_federation(
            {
                "A": [make_doc("a/strong", "strong", "apple apple apple apple")]
                + [make_doc(f"a/weak{i}", f"weak{i}", "apple plum plum plum plum plum") for i in range(5)],
            }
        )
        ascending = [SortField(field="_score")]
        everything = paths(container.engine.search("", SearchQuery(predicate="apple", sort=ascending)))

        first = container.engine.search("", SearchQuery(predicate="apple", sort=ascending, hits_per_page=1))
        pages = []
        for page in range(1, 7):
            query = SearchQuery(predicate="apple", sort=ascending, page=page, hits_per_page=1)
            pages.extend(paths(container.engine.search("", query)))

        assert everything[0] == "a/weak0"
        assert everything[-1] == "a/strong"
        assert paths(first) == ["a/weak0"]
        assert pages == everything

    def test_repeated_query_is_deterministic(self, federation: ApplicationContainer):
        query = SearchQuery(predicate="apple OR banana", sort=[SortField.score()])

        first = federation.engine.search("", query)
        second = federation.engine.search("", query)

        assert [hit.ref for hit in first.hits] == [hit.ref for hit in second.hits]

    def test_pages_split_merged_order(self, federation: ApplicationContainer):
        everything = paths(federation.engine.search("", SearchQuery(sort=[SortField(field="title")])))

        pages = []
        for page in (1, 2, 3):
            query = SearchQuery(sort=[SortField(field="title")], page=page, hits_per_page=2)
            pages.extend(paths(federation.engine.search("", query)))

        assert pages == everything

    def test_paging_metadata(self, federation: ApplicationContainer):
        results = federation.engine.search("", SearchQuery(page=3, hits_per_page=2))

        assert results.paging.first_hit == 5
        assert results.paging.last_hit == 5
        assert results.paging.last_page == 3
        assert len(results.hits) == 1

    def test_page_past_the_end(self, federation: ApplicationContainer):
        results = federation.engine.search("", SearchQuery(page=4, hits_per_page=2))

        assert results.total_hits == 5
        assert results.hits == []

    def test_no_match(self, federation: ApplicationContainer):
        results = federation.engine.search("", SearchQuery(predicate="durian"))

        assert results.is_empty()
        assert results.hits == []

    def test_truncates_field_values(self, federation: ApplicationContainer):
        results = federation.engine.search("A", SearchQuery(max_field_value_length=3, hits_per_page=1))

        assert results.hits[0].fields["title"] == ["alp..."]
        assert results.hits[0].fields["type"] == ["xml"]

    def test_dates_are_iso_formatted(self, federation: ApplicationContainer):
        results = federation.engine.search("A", SearchQuery(hits_per_page=1))

        assert results.hits[0].fields["modified"][0].startswith("2024-01-01")

    def test_snippets(self, federation: ApplicationContainer):
        query = SearchQuery(predicate="title:bravo", snippet_fields=["title"])

        results = federation.engine.search("", query)

        assert results.total_hits == 1
        assert results.hits[0].snippet == "bravo"

    def test_search_with_facets(self, federation: ApplicationContainer):
        results = federation.engine.search("", SearchQuery(predicate="apple"), facets=["type"])

        assert results.facets[0].counts() == {"xml": 3}
        assert federation.registry.outstanding() == 0


class TestFailures:
    """Tests for validation and failure handling."""

    def test_invalid_name_rejected_before_grab(self, federation: ApplicationContainer):
        with pytest.raises(InvalidIndexNameError):
            federation.engine.search("A,../etc", SearchQuery())
        assert len(federation.registry) == 0

    def test_window_cap(self, federation: ApplicationContainer):
        with pytest.raises(ResultWindowError):
            federation.engine.search("", SearchQuery(page=1001, hits_per_page=10))
        assert len(federation.registry) == 0

    def test_invalid_predicate_releases_handles(self, federation: ApplicationContainer):
        with pytest.raises(InvalidQueryError):
            federation.engine.search("", SearchQuery(predicate="nosuchfield:apple"))
        assert federation.registry.outstanding() == 0

    def test_missing_index_releases_acquired(self, federation: ApplicationContainer):
        with pytest.raises(NotInitializedError):
            federation.engine.search("A,missing", SearchQuery())
        assert federation.registry.outstanding() == 0

    def test_sub_search_failure_is_wrapped(
        self, federation: ApplicationContainer, monkeypatch: pytest.MonkeyPatch
    ):
        original = IndexMaster.collect

        def flaky(self, handle, query, sort, limit):
            if self.name == "B":
                raise OSError("disk gone")
            return original(self, handle, query, sort, limit)

        monkeypatch.setattr(IndexMaster, "collect", flaky)

        with pytest.raises(IndexIOError) as exc_info:
            federation.engine.search("", SearchQuery())

        assert isinstance(exc_info.value.cause, OSError)
        assert isinstance(exc_info.value.__cause__, OSError)
        assert federation.registry.outstanding() == 0

    def test_uninitialized_single_index(self, settings: Settings):
        container = bootstrap_application(settings)

        with pytest.raises(NotInitializedError):
            container.engine.search("", SearchQuery())
        assert container.registry.outstanding() == 0


class TestFacets:
    """Tests for cross-index facets."""

    @pytest.fixture
    def typed(self, make_federation) -> ApplicationContainer:
        a_docs = [make_doc(f"a/{i}", f"a{i}", "apple") for i in range(4)]
        a_docs.append(make_doc("a/ref", "ref", "cherry", type_="psml"))
        b_docs = [make_doc(f"b/{i}", f"b{i}", "apple" if i % 2 else "banana") for i in range(6)]
        return make_federation({"A": a_docs, "B": b_docs})

    def test_counts_are_summed(self, typed: ApplicationContainer):
        facets = typed.engine.facets("", ["type"])

        assert facets[0].counts() == {"xml": 10, "psml": 1}
        assert [value.term for value in facets[0].values] == ["xml", "psml"]
        assert typed.registry.outstanding() == 0

    def test_single_index_delegates(self, typed: ApplicationContainer):
        facets = typed.engine.facets("A", ["type"])

        assert facets[0].counts() == {"xml": 4, "psml": 1}

    def test_predicate_filters_counts(self, typed: ApplicationContainer):
        facets = typed.engine.facets("", ["type"], predicate="apple")

        assert facets[0].counts() == {"xml": 7}

    def test_up_to_cuts_after_merge(self, typed: ApplicationContainer):
        facets = typed.engine.facets("", ["type", "visibility"], up_to=1)

        assert facets[0].counts() == {"xml": 10}
        assert facets[1].counts() == {"private": 11}

    def test_no_fields(self, typed: ApplicationContainer):
        assert typed.engine.facets("", []) == []

    def test_failure_releases_readers(self, typed: ApplicationContainer, monkeypatch: pytest.MonkeyPatch):
        def broken(self, handle, field_name, query):
            raise OSError("unreadable")

        monkeypatch.setattr(IndexMaster, "facet_counts", broken)

        with pytest.raises(IndexIOError):
            typed.engine.facets("", ["type"])
        assert typed.registry.outstanding() == 0


class TestAdministration:
    """Tests for stats and listings."""

    def test_stats(self, federation: ApplicationContainer):
        stats = federation.engine.stats()

        assert [(s.name, s.documents) for s in stats] == [("A", 3), ("B", 2)]
        assert all(s.exists for s in stats)

    def test_list_files(self, federation: ApplicationContainer, repository: Path):
        files = federation.engine.list_files("B")

        assert files == [repository / "b" / "1", repository / "b" / "2"]


class TestConcurrency:
    """Tests for concurrent callers."""

    @pytest.fixture
    def three(self, make_federation) -> ApplicationContainer:
        return make_federation(
            {
                "A": [make_doc(f"a/{i}", f"a{i}", "apple") for i in range(3)],
                "B": [make_doc(f"b/{i}", f"b{i}", "apple") for i in range(2)],
                "C": [make_doc("c/0", "c0", "apple")],
            }
        )

    def test_parallel_queries(self, three: ApplicationContainer):
        query = SearchQuery(predicate="apple", sort=[SortField.score()], hits_per_page=3)
        expected = [hit.ref for hit in three.engine.search("", query).hits]

        def run(_: int):
            return three.engine.search("", query)

        with ThreadPoolExecutor(max_workers=10) as executor:
            results = list(executor.map(run, range(50)))

        assert all(r.total_hits == 6 for r in results)
        assert all([hit.ref for hit in r.hits] == expected for r in results)
        assert three.registry.outstanding() == 0

    def test_queries_during_writes(self, three: ApplicationContainer):
        master = three.registry.get_or_create(three.layout.index_directory("C"), name="C")
        done = threading.Event()

        def write():
            for i in range(3):
                master.add_documents([make_doc(f"c/new{i}", f"new{i}", "apple")])
            done.set()

        writer = threading.Thread(target=write)
        writer.start()
        totals = []
        while not done.is_set():
            totals.append(three.engine.search("", SearchQuery(predicate="apple")).total_hits)
        writer.join()

        assert all(6 <= total <= 9 for total in totals)
        assert three.engine.search("", SearchQuery(predicate="apple")).total_hits == 9
        assert three.registry.outstanding() == 0

    def test_parallel_queries_with_failing_sub_searches(
        self, three: ApplicationContainer, monkeypatch: pytest.MonkeyPatch
    ):
        query = SearchQuery(predicate="apple", sort=[SortField.score()], hits_per_page=3)
        expected = [hit.ref for hit in three.engine.search("", query).hits]
        original = IndexMaster.collect
        lock = threading.Lock()
        calls = {"n": 0}

        def every_seventh_fails(self, handle, query, sort, limit):
            with lock:
                calls["n"] += 1
                fail = calls["n"] % 7 == 0
            if fail:
                raise OSError("read failed")
            return original(self, handle, query, sort, limit)

        monkeypatch.setattr(IndexMaster, "collect", every_seventh_fails)

        def run(_: int):
            try:
                return three.engine.search("", query)
            except IndexIOError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=10) as executor:
            outcomes = list(executor.map(run, range(50)))

        failures = [o for o in outcomes if isinstance(o, IndexIOError)]
        successes = [o for o in outcomes if not isinstance(o, IndexIOError)]
        assert failures
        assert successes
        assert all(isinstance(f.cause, OSError) for f in failures)
        assert all(r.total_hits == 6 for r in successes)
        assert all([hit.ref for hit in r.hits] == expected for r in successes)
        assert three.registry.outstanding() == 0

    def test_slow_index_does_not_change_merge_order(
        self, federation: ApplicationContainer, monkeypatch: pytest.MonkeyPatch
    ):
        by_title = SearchQuery(sort=[SortField(field="title")])
        unsorted = SearchQuery()
        expected_titles = paths(federation.engine.search("", by_title))
        expected_index_order = paths(federation.engine.search("", unsorted))
        original = IndexMaster.collect

        def slow_a(self, handle, query, sort, limit):
            if self.name == "A":
                time.sleep(0.2)
            return original(self, handle, query, sort, limit)

        monkeypatch.setattr(IndexMaster, "collect", slow_a)

        assert paths(federation.engine.search("", by_title)) == expected_titles
        assert paths(federation.engine.search("", unsorted)) == expected_index_order
        assert expected_index_order == ["a/1", "a/2", "a/3", "b/1", "b/2"]
        assert federation.registry.outstanding() == 0
