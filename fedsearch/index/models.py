"""Request and response models for the index subsystem."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

SCORE_FIELD = "_score"


class SortField(BaseModel):
    """One component of a sort specification."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Stored field name, or '_score' for relevance")
    descending: bool = Field(False, description="Sort from highest to lowest")

    @classmethod
    def score(cls) -> SortField:
        """Relevance order (highest score first)."""
        return cls(field=SCORE_FIELD, descending=True)

    @property
    def is_score(self) -> bool:
        return self.field == SCORE_FIELD


class SearchQuery(BaseModel):
    """One logical query, independent of the indexes it runs against."""

    predicate: str | None = Field(
        None, description="Query in tantivy syntax; empty or None matches every document"
    )
    default_fields: list[str] | None = Field(
        None, description="Fields searched by unqualified terms (defaults from settings)"
    )
    sort: list[SortField] | None = Field(
        None, description="Ordered sort specification; None keeps index order"
    )
    page: int = Field(1, ge=1, description="1-based page number")
    hits_per_page: int = Field(10, ge=1, description="Number of hits per page")
    max_field_value_length: int = Field(
        0, ge=0, description="Truncate stored values past this length; 0 means unlimited"
    )
    snippet_fields: list[str] = Field(
        default_factory=list, description="Stored fields to extract a query snippet from"
    )

    @property
    def window(self) -> int:
        """Number of top hits each index must contribute for this page."""
        return self.page * self.hits_per_page


class DocRef(BaseModel):
    """Opaque origin of a hit: which index it came from and its local address."""

    model_config = ConfigDict(frozen=True)

    index: str = Field(..., description="Index name ('' for the root index)")
    position: int = Field(..., description="Position of the index in the target list")
    segment: int = Field(..., description="Tantivy segment ordinal")
    doc: int = Field(..., description="Document id within the segment")


class SearchHit(BaseModel):
    """Single document of a merged result page."""

    ref: DocRef
    score: float = Field(..., description="Relevance score (0.0 when not computed)")
    fields: dict[str, list[str]] = Field(default_factory=dict)
    snippet: str | None = Field(None, description="Query snippet from snippet_fields")


class SearchPaging(BaseModel):
    """Paging metadata of a result page."""

    page: int
    hits_per_page: int
    first_hit: int = Field(..., description="1-based rank of the first hit on the page")
    last_hit: int = Field(..., description="1-based rank of the last hit on the page")
    last_page: int

    @classmethod
    def compute(cls, page: int, hits_per_page: int, total: int) -> SearchPaging:
        first = hits_per_page * (page - 1) + 1
        last = min(total, first + hits_per_page - 1)
        return cls(
            page=page,
            hits_per_page=hits_per_page,
            first_hit=first,
            last_hit=last,
            last_page=max(1, (total - 1) // hits_per_page + 1),
        )


class FacetValue(BaseModel):
    """A facet term and the number of matching documents carrying it."""

    term: str
    count: int


class Facet(BaseModel):
    """Aggregated per-value document counts for one field."""

    field: str
    values: list[FacetValue] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {value.term: value.count for value in self.values}

    @classmethod
    def from_counts(cls, field: str, counts: Mapping[str, int], up_to: int) -> Facet:
        """Build a facet keeping the ``up_to`` most frequent terms.

        Ties on count are ordered by term so the result is deterministic.
        """
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        if up_to > 0:
            ranked = ranked[:up_to]
        return cls(field=field, values=[FacetValue(term=term, count=count) for term, count in ranked])


class TermLookup(BaseModel):
    """Indexed terms close to a looked-up text, with the documents holding each."""

    field: str
    text: str
    mode: str = Field(..., description="fuzzy, prefix or similar")
    terms: list[FacetValue] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {value.term: value.count for value in self.terms}


class SearchResults(BaseModel):
    """Merged, paged result of a query over one or more indexes."""

    indexes: list[str]
    total_hits: int
    paging: SearchPaging
    sort_fields: list[str] = Field(default_factory=list)
    hits: list[SearchHit] = Field(default_factory=list)
    facets: list[Facet] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return self.total_hits == 0


class IndexStats(BaseModel):
    """Statistics of one physical index."""

    name: str
    directory: Path
    exists: bool
    documents: int = 0
    segments: int = 0
    last_modified: int = 0
    current: bool = False
    error: str | None = None
