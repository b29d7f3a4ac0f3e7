"""Federated search over independently maintained indexes."""

from fedsearch.index.build import build_index, create_schema
from fedsearch.index.engine import MultiIndexQueryEngine
from fedsearch.index.etags import compute_tag
from fedsearch.index.layout import IndexLayout, detect_layout
from fedsearch.index.master import IndexMaster
from fedsearch.index.models import SearchQuery, SearchResults, SortField, TermLookup
from fedsearch.index.registry import IndexRegistry

__all__ = [
    "IndexLayout",
    "IndexMaster",
    "IndexRegistry",
    "MultiIndexQueryEngine",
    "SearchQuery",
    "SearchResults",
    "SortField",
    "TermLookup",
    "build_index",
    "compute_tag",
    "create_schema",
    "detect_layout",
]
