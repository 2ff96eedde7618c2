"""Domain name matchers: full, sub-domain, keyword, regular expression and mixed.

All matchers are fqdn-insensitive and case-insensitive: "Example.com." and
"example.com" give the same outcome.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")

MATCHER_FULL = "full"
MATCHER_DOMAIN = "domain"
MATCHER_REGEXP = "regexp"
MATCHER_KEYWORD = "keyword"


class Matcher(ABC, Generic[T]):
    """Something that can match a domain name and yield an attached value."""

    @abstractmethod
    def match(self, s: str) -> tuple[T | None, bool]:
        """Return ``(value, True)`` if ``s`` matches, else ``(None, False)``."""

    @abstractmethod
    def __len__(self) -> int:
        """Return the number of patterns held."""


class WriteableMatcher(Matcher[T]):
    """A matcher that accepts new patterns."""

    @abstractmethod
    def add(self, pattern: str, v: T) -> None:
        """Add ``pattern`` with the attached value ``v``."""


def trim_dot(s: str) -> str:
    """Remove one trailing '.' from ``s``."""
    return s[:-1] if s.endswith(".") else s


def normalize_domain(s: str) -> str:
    """Remove the trailing '.' and lower-case the domain."""
    return trim_dot(s).lower()


class ReverseDomainScanner:
    """Scans the labels of a domain from the last one to the first."""

    def __init__(self, s: str) -> None:
        self._s = trim_dot(s)
        self._p = len(self._s)
        self._t = len(self._s)

    def scan(self) -> bool:
        """Advance to the previous label. Return False when none is left."""
        if self._p <= 0:
            return False
        self._t = self._p
        self._p = self._s.rfind(".", 0, self._p)
        return True

    def next_label_offset(self) -> int:
        """Return the offset of the current label in the domain."""
        return self._p + 1

    def next_label(self) -> str:
        """Return the current label."""
        return self._s[self._p + 1 : self._t]


def _reversed_labels(s: str) -> Iterator[str]:
    scanner = ReverseDomainScanner(s)
    while scanner.scan():
        yield scanner.next_label()


class _LabelNode:
    __slots__ = ("children", "value", "has_value")

    def __init__(self) -> None:
        self.children: dict[str, _LabelNode] = {}
        self.value = None
        self.has_value = False

    def store(self, v) -> None:
        self.value = v
        self.has_value = True

    def count(self) -> int:
        return sum(child.count() + child.has_value for child in self.children.values())


class SubDomainMatcher(WriteableMatcher[T]):
    """Matches a domain and all of its sub-domains.

    The value of the longest matching suffix wins.
    """

    def __init__(self) -> None:
        self._root = _LabelNode()

    def match(self, s: str) -> tuple[T | None, bool]:
        node = self._root
        result: tuple[T | None, bool] = (None, False)
        for label in _reversed_labels(normalize_domain(s)):
            child = node.children.get(label)
            if child is None:
                break
            if child.has_value:
                result = (child.value, True)
            node = child
        return result

    def add(self, s: str, v: T) -> None:
        node = self._root
        for label in _reversed_labels(normalize_domain(s)):
            node = node.children.setdefault(label, _LabelNode())
        node.store(v)

    def __len__(self) -> int:
        return self._root.count()


class FullMatcher(WriteableMatcher[T]):
    """Matches a domain exactly."""

    def __init__(self) -> None:
        self._m: dict[str, T] = {}

    def add(self, s: str, v: T) -> None:
        self._m[normalize_domain(s)] = v

    def match(self, s: str) -> tuple[T | None, bool]:
        s = normalize_domain(s)
        if s in self._m:
            return self._m[s], True
        return None, False

    def __len__(self) -> int:
        return len(self._m)


class KeywordMatcher(WriteableMatcher[T]):
    """Matches domains that contain a keyword."""

    def __init__(self) -> None:
        self._kws: dict[str, T] = {}

    def add(self, keyword: str, v: T) -> None:
        self._kws[normalize_domain(keyword)] = v

    def match(self, s: str) -> tuple[T | None, bool]:
        s = normalize_domain(s)
        for keyword, v in self._kws.items():
            if keyword in s:
                return v, True
        return None, False

    def __len__(self) -> int:
        return len(self._kws)


@dataclass
class _RegexEntry(Generic[T]):
    pattern: re.Pattern[str]
    value: T


class RegexMatcher(WriteableMatcher[T]):
    """Matches domains with regular expressions.

    Expressions are applied to the lower-case, non-fqdn form of the domain.
    """

    def __init__(self) -> None:
        self._regs: dict[str, _RegexEntry[T]] = {}

    def add(self, expr: str, v: T) -> None:
        entry = self._regs.get(expr)
        if entry is not None:
            entry.value = v
            return
        try:
            pattern = re.compile(expr)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {expr!r}: {exc}") from exc
        self._regs[expr] = _RegexEntry(pattern, v)

    def match(self, s: str) -> tuple[T | None, bool]:
        s = normalize_domain(s)
        for entry in self._regs.values():
            if entry.pattern.search(s):
                return entry.value, True
        return None, False

    def __len__(self) -> int:
        return len(self._regs)


class MixMatcher(WriteableMatcher[T]):
    """Combines the full, domain, regexp and keyword matchers.

    Patterns are written as "type:pattern"; without a type the default
    matcher is used.
    """

    def __init__(self) -> None:
        self._default_matcher = MATCHER_FULL
        self._full: FullMatcher[T] = FullMatcher()
        self._domain: SubDomainMatcher[T] = SubDomainMatcher()
        self._regex: RegexMatcher[T] = RegexMatcher()
        self._keyword: KeywordMatcher[T] = KeywordMatcher()

    @property
    def _matchers(self) -> tuple[Matcher[T], ...]:
        return (self._full, self._domain, self._regex, self._keyword)

    def set_default_matcher(self, s: str) -> None:
        self._default_matcher = s

    def get_sub_matcher(self, typ: str) -> WriteableMatcher[T] | None:
        return {
            MATCHER_FULL: self._full,
            MATCHER_DOMAIN: self._domain,
            MATCHER_REGEXP: self._regex,
            MATCHER_KEYWORD: self._keyword,
        }.get(typ)

    def add(self, s: str, v: T) -> None:
        typ, sep, pattern = s.partition(":")
        if not sep:
            typ, pattern = "", s
        if not typ:
            typ = self._default_matcher or MATCHER_FULL
        sub = self.get_sub_matcher(typ)
        if sub is None:
            raise ValueError(f"unsupported match type [{typ}]")
        sub.add(pattern, v)

    def match(self, s: str) -> tuple[T | None, bool]:
        for matcher in self._matchers:
            v, ok = matcher.match(s)
            if ok:
                return v, True
        return None, False

    def __len__(self) -> int:
        return sum(len(matcher) for matcher in self._matchers)