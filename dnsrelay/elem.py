"""Matcher for integer elements such as query types, classes and rcodes."""

from __future__ import annotations

from collections.abc import Iterable


class IntMatcher:
    """Reports whether an integer is one of a fixed set."""

    def __init__(self, elems: Iterable[int] | None) -> None:
        self._elems = frozenset(elems or ())

    def match(self, v: int) -> bool:
        return v in self._elems