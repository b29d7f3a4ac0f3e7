"""Helpers for term-level lookups.

Tantivy does not expose its term dictionary, so lookups work in two steps: a
fuzzy or regex query finds the documents holding candidate terms, then the
stored values of those documents are split into candidates and filtered
again here. Only stored fields can contribute terms.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator

LOOKUP_MODES = ("fuzzy", "prefix", "similar")

MAX_DISTANCE = 2

_WORD = re.compile(r"\w+")
_REGEX_SPECIAL = set(r"\.+*?()|[]{}^$#&-~")


def escape_regex(text: str) -> str:
    """Escape ``text`` for tantivy's regex syntax."""
    return "".join(f"\\{char}" if char in _REGEX_SPECIAL else char for char in text)


def edit_distance(left: str, right: str) -> int:
    """Return the Levenshtein distance where an adjacent transposition costs one."""
    if left == right:
        return 0
    if not left or not right:
        return max(len(left), len(right))
    previous: list[int] | None = None
    current = list(range(len(right) + 1))
    for i, lchar in enumerate(left, 1):
        before, previous, current = previous, current, [i] + [0] * len(right)
        for j, rchar in enumerate(right, 1):
            cost = 0 if lchar == rchar else 1
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
            if (
                before is not None
                and i > 1
                and j > 1
                and lchar == right[j - 2]
                and left[i - 2] == rchar
            ):
                current[j] = min(current[j], before[j - 2] + 1)
    return current[-1]


def term_matcher(text: str, mode: str, distance: int) -> Callable[[str], bool]:
    """Return the predicate a candidate term must satisfy for ``mode``."""
    if mode == "prefix":
        return lambda term: term.startswith(text)

    def close(term: str) -> bool:
        return abs(len(term) - len(text)) <= distance and edit_distance(term, text) <= distance

    if mode == "fuzzy":
        return close
    return lambda term: term.startswith(text) or close(term)


def term_candidates(value: str) -> Iterator[str]:
    """Yield the terms ``value`` may have been indexed as.

    That is the value itself for untokenized fields and its lowercased words
    for analyzed ones.
    """
    yield value
    yield from _WORD.findall(value.lower())
