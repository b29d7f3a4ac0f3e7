"""Query snippet extraction for search hits."""

from __future__ import annotations

import re


def extract_snippet(
    text: str,
    query: str | None,
    max_length: int = 200,
    context_chars: int = 80,
) -> str:
    """Extract a snippet from text showing the query term in context.

    Args:
        text: Full field text
        query: Search predicate (may contain operators like AND, OR, quotes)
        max_length: Maximum snippet length in characters (default: 200)
        context_chars: Characters to show before/after match (default: 80)

    Returns:
        Snippet with search term in context, or start of text if no match

    Examples:
        >>> extract_snippet("This is a long document about contracts.", "contract")
        'This is a long document about contracts.'
        >>> extract_snippet("Short text", "missing")
        'Short text'
    """
    if not text:
        return ""

    text = " ".join(text.split())

    # Remove field specifiers, operators and special characters
    query_cleaned = re.sub(r"\w+:", "", query or "")
    query_cleaned = re.sub(r"[+\-!(){}[\]^\"~*?:\\|&]", " ", query_cleaned)
    query_cleaned = re.sub(r"\b(AND|OR|NOT)\b", " ", query_cleaned, flags=re.IGNORECASE)
    terms = [term for term in query_cleaned.split() if len(term) >= 2]

    best_pos = None
    best_term = ""
    for term in terms:
        match = re.search(re.escape(term), text, re.IGNORECASE)
        if match and (best_pos is None or match.start() < best_pos):
            best_pos = match.start()
            best_term = term

    if best_pos is None:
        if len(text) <= max_length:
            return text
        return text[:max_length] + "..."

    start = max(0, best_pos - context_chars)
    end = min(len(text), best_pos + len(best_term) + context_chars)
    if end - start > max_length:
        end = start + max_length

    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet.strip()
