"""fedsearch - federated full-text search over independently maintained indexes.

Pools per-index searcher handles and merges one logical query across many
tantivy indexes into a single paged, exactly counted result.
"""

__version__ = "0.1.0"
__author__ = "fedsearch Contributors"

from fedsearch.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
