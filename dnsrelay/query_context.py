"""The query context that is passed through the query handling chain."""

from __future__ import annotations

import copy
import ipaddress
import itertools
import threading
import time
from dataclasses import dataclass
from typing import Union

import dns.message
import dns.rdataclass
import dns.rdatatype

Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

MAX_MARK = 2**64 - 1
_CONTEXT_ID_MASK = 0xFFFFFFFF


@dataclass(frozen=True)
class RequestMeta:
    """Metadata about a request.

    ``client_addr`` is the client IP address, or None when unknown.
    ``from_udp`` tells whether the request came from a UDP socket.
    """

    client_addr: Address | None = None
    from_udp: bool = False


_ZERO_META = RequestMeta()

_context_ids = itertools.count(1)
_context_ids_lock = threading.Lock()


def _next_context_id() -> int:
    with _context_ids_lock:
        return next(_context_ids) & _CONTEXT_ID_MASK


class MarkOverflowError(RuntimeError):
    """No more marks can be allocated."""

    def __init__(self) -> None:
        super().__init__("too many allocated marks")


class QueryContext:
    """A query passing through the handlers, with its response and marks.

    ``q`` is the query, ``original_query`` a copy of the query as it arrived,
    ``r`` the response (None until one is set). Not safe for concurrent use.
    """

    def __init__(self, q: dns.message.Message, meta: RequestMeta | None = None) -> None:
        if q is None:
            raise ValueError("query msg is None")
        self.q = q
        self.original_query = copy.deepcopy(q)
        self.req_meta = meta if meta is not None else _ZERO_META
        self.id = _next_context_id()
        self.start_time = time.time()
        self.r: dns.message.Message | None = None
        self._marks: set[int] = set()

    def __str__(self) -> str:
        if self.q.question:
            question = self.q.question[0]
            summary = " ".join(
                (
                    question.name.to_text(),
                    dns.rdataclass.to_text(question.rdclass),
                    dns.rdatatype.to_text(question.rdtype),
                )
            )
        else:
            summary = "empty question"
        client = self.req_meta.client_addr
        client_text = str(client) if client is not None else "unknown client"
        return f"{summary} {self.q.id} {self.id} {client_text}"

    def copy(self) -> QueryContext:
        """Return a deep copy; the original query and metadata are shared."""
        new = QueryContext.__new__(QueryContext)
        new.q = copy.deepcopy(self.q)
        new.original_query = self.original_query
        new.req_meta = self.req_meta
        new.id = self.id
        new.start_time = self.start_time
        new.r = copy.deepcopy(self.r) if self.r is not None else None
        new._marks = set(self._marks)
        return new

    def add_mark(self, m: int) -> None:
        self._marks.add(m)

    def has_mark(self, m: int) -> bool:
        return m in self._marks


class _MarkAllocator:
    def __init__(self, limit: int = MAX_MARK) -> None:
        self._limit = limit
        self._last = 0
        self._lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            if self._last >= self._limit:
                raise MarkOverflowError()
            self._last += 1
            return self._last


_mark_allocator = _MarkAllocator()


def allocate_mark() -> int:
    """Return a new mark, unique in this process."""
    return _mark_allocator.allocate()