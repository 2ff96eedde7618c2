"""Helpers that load domain patterns into matchers from text and v2ray data."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Generic, TypeVar

from dnsrelay.domain import (
    MATCHER_DOMAIN,
    MATCHER_FULL,
    MATCHER_KEYWORD,
    MATCHER_REGEXP,
    Matcher,
    MixMatcher,
    WriteableMatcher,
)

T = TypeVar("T")

ParseStringFunc = Callable[[str], "tuple[str, T]"]


def _pattern_only(s: str) -> tuple[str, None]:
    fields = s.split()
    if len(fields) == 1:
        return fields[0], None
    raise ValueError("string does not only contain pattern")


def _remove_comment(s: str, symbol: str) -> str:
    return s.split(symbol, 1)[0]


def load(m: WriteableMatcher[T], s: str, parse_string: ParseStringFunc | None = None) -> None:
    """Parse ``s`` into a pattern and a value and add them to ``m``."""
    parser = parse_string or _pattern_only
    pattern, v = parser(s)
    m.add(pattern, v)


def batch_load(
    m: WriteableMatcher[T], items: Iterable[str], parse_string: ParseStringFunc | None = None
) -> None:
    """Load every string of ``items`` into ``m``."""
    for s in items:
        try:
            load(m, s, parse_string)
        except ValueError as exc:
            raise ValueError(f"failed to load data {s}: {exc}") from exc


class MatcherGroup(Matcher[T]):
    """A list of matchers; the first one that matches wins."""

    def __init__(self) -> None:
        self._group: list[Matcher[T]] = []
        self._closers: list[Callable[[], None]] = []

    def match(self, s: str) -> tuple[T | None, bool]:
        for sub in self._group:
            v, ok = sub.match(s)
            if ok:
                return v, True
        return None, False

    def __len__(self) -> int:
        return sum(len(sub) for sub in self._group)

    def append(self, matcher: Matcher[T]) -> None:
        self._group.append(matcher)

    def append_closer(self, closer: Callable[[], None]) -> None:
        self._closers.append(closer)

    def close(self) -> None:
        """Run every registered closer."""
        for closer in self._closers:
            closer()

    def __enter__(self) -> MatcherGroup[T]:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DynamicMatcher(Matcher[T]):
    """A matcher whose content is replaced on each ``update``."""

    def __init__(self, parser: Callable[[bytes], Matcher[T]]) -> None:
        self._parser = parser
        self._lock = threading.Lock()
        self._matcher: Matcher[T] | None = None

    def _current(self) -> Matcher[T] | None:
        with self._lock:
            return self._matcher

    def match(self, s: str) -> tuple[T | None, bool]:
        m = self._current()
        if m is None:
            return None, False
        return m.match(s)

    def __len__(self) -> int:
        m = self._current()
        return 0 if m is None else len(m)

    def update(self, data: bytes) -> None:
        """Parse ``data`` and swap it in. On error the old content stays."""
        m = self._parser(data)
        with self._lock:
            self._matcher = m


def load_from_text_reader(
    m: WriteableMatcher[T], reader: Iterable[str], parse_string: ParseStringFunc | None = None
) -> None:
    """Load one pattern per line; '#' starts a comment, blank lines are skipped."""
    for line_no, line in enumerate(reader, start=1):
        s = _remove_comment(line.rstrip("\r\n"), "#").strip()
        if not s:
            continue
        try:
            load(m, s, parse_string)
        except ValueError as exc:
            raise ValueError(f"line {line_no}: {exc}") from exc


@dataclass(frozen=True)
class V2Filter:
    """Selects a v2ray site tag, optionally restricted to some attributes."""

    tag: str
    attrs: tuple[str, ...] = ()


def parse_v2_suffix(s: str) -> list[V2Filter]:
    """Parse "tag[@attr@attr...],tag[@attr...]..." into filters."""
    filters = []
    for t in s.split(","):
        t = t.strip()
        if not t:
            continue
        tag, *attrs = t.split("@")
        filters.append(V2Filter(tag=tag, attrs=tuple(attrs)))
    return filters


class DomainType(IntEnum):
    """The kind of a v2ray domain rule."""

    PLAIN = 0
    REGEX = 1
    DOMAIN = 2
    FULL = 3


_SUB_MATCHER_OF = {
    DomainType.PLAIN: MATCHER_KEYWORD,
    DomainType.REGEX: MATCHER_REGEXP,
    DomainType.DOMAIN: MATCHER_DOMAIN,
    DomainType.FULL: MATCHER_FULL,
}


@dataclass(frozen=True)
class V2Domain:
    """One v2ray domain rule with its attribute keys."""

    type: DomainType | int
    value: str
    attributes: tuple[str, ...] = field(default_factory=tuple)


def build_domain_matcher(
    domains: Iterable[V2Domain],
    attrs: Sequence[str] = (),
    m: MixMatcher[None] | None = None,
) -> MixMatcher[None]:
    """Add ``domains`` to ``m`` (or a new MixMatcher) and return it.

    If ``attrs`` is not empty, only domains carrying one of them are loaded.
    """
    wanted = set(attrs)
    if m is None:
        m = MixMatcher()
    for d in domains:
        if wanted and not wanted.intersection(d.attributes):
            continue
        try:
            typ = DomainType(d.type)
        except ValueError:
            raise ValueError(f"invalid v2ray Domain_Type {d.type}") from None
        sub_type = _SUB_MATCHER_OF[typ]
        sub = m.get_sub_matcher(sub_type)
        if sub is None:
            raise ValueError(f"invalid MixMatcher, missing submatcher {sub_type}")
        try:
            sub.add(d.value, None)
        except ValueError as exc:
            raise ValueError(f"failed to load value {d.value}, {exc}") from exc
    return m


def new_v2ray_domain_dat(
    sites: Mapping[str, Sequence[V2Domain]], filters: Iterable[V2Filter]
) -> MixMatcher[None]:
    """Build a matcher holding only the domains selected by ``filters``.

    ``sites`` maps a country code (case-insensitive) to its domain rules.
    """
    data = {code.lower(): domains for code, domains in sites.items()}
    m: MixMatcher[None] = MixMatcher()
    for f in filters:
        if f.tag not in data:
            raise ValueError(f"tag {f.tag} does not exist")
        try:
            build_domain_matcher(data[f.tag], f.attrs, m)
        except ValueError as exc:
            raise ValueError(f"failed to load tag {f.tag}, {exc}") from exc
    return m


def new_domain_mix_matcher() -> MixMatcher[None]:
    """Return a MixMatcher whose default pattern type is "domain"."""
    m: MixMatcher[None] = MixMatcher()
    m.set_default_matcher(MATCHER_DOMAIN)
    return m


def parse_text_domain_file(data: bytes) -> MixMatcher[None]:
    """Parse a text domain list into a domain MixMatcher."""
    m = new_domain_mix_matcher()
    load_from_text_reader(m, data.decode("utf-8").splitlines())
    return m