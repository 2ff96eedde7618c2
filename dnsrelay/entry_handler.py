"""DNS handlers: the entry handler that runs an executable chain, and a dummy."""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any

import dns.flags
import dns.message
import dns.rcode

from dnsrelay.query_context import QueryContext, RequestMeta

DEFAULT_QUERY_TIMEOUT = 5.0


class DNSHandler(ABC):
    """Handles an incoming DNS request and returns a response.

    Implementations must not keep ``req`` after returning. An exception
    raised by ``serve_dns`` tells the caller to drop the downstream
    connection.
    """

    @abstractmethod
    async def serve_dns(self, req: dns.message.Message, meta: RequestMeta) -> dns.message.Message:
        """Return the response to ``req``."""


class Executable(ABC):
    """A step of the query handling chain."""

    @abstractmethod
    async def exec(self, qctx: QueryContext) -> None:
        """Process ``qctx``, usually by setting its response."""


def make_reply(req: dns.message.Message) -> dns.message.Message:
    """Return an empty reply to ``req`` carrying its id, opcode and question."""
    resp = dns.message.Message(id=req.id)
    resp.flags = dns.flags.QR | (req.flags & (dns.flags.RD | dns.flags.CD))
    resp.set_opcode(req.opcode())
    resp.question.extend(req.question[:1])
    return resp


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class EntryHandler(DNSHandler):
    """Runs an entry executable for every query.

    If the entry raises, or leaves no response, a SERVFAIL response is
    returned. Each query is limited to ``query_timeout`` seconds.
    """

    def __init__(
        self,
        entry: Any,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
        recursion_available: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        if entry is None:
            raise ValueError("nil entry")
        self._entry = entry
        self._query_timeout = query_timeout if query_timeout > 0 else DEFAULT_QUERY_TIMEOUT
        self._recursion_available = recursion_available
        self._logger = logger or logging.getLogger(__name__)

    async def serve_dns(self, req: dns.message.Message, meta: RequestMeta | None) -> dns.message.Message:
        qctx = QueryContext(req, meta)
        err: Exception | None = None
        try:
            async with asyncio.timeout(self._query_timeout):
                await _maybe_await(self._entry.exec(qctx))
        except Exception as exc:  # any failure of the chain becomes SERVFAIL
            err = exc
            self._logger.warning("entry returned an err: query=%s: %r", qctx, exc)
        else:
            self._logger.debug("entry returned: query=%s", qctx)

        resp = qctx.r
        if err is None and resp is None:
            self._logger.error("entry returned an nil response: query=%s", qctx)

        if resp is None or err is not None:
            resp = make_reply(req)
            resp.set_rcode(dns.rcode.SERVFAIL)

        if self._recursion_available:
            resp.flags |= dns.flags.RA
        return resp


class DummyServerHandler(DNSHandler):
    """A handler for tests: raises ``want_err``, echoes ``want_msg`` or replies empty."""

    def __init__(
        self,
        want_msg: dns.message.Message | None = None,
        want_err: Exception | None = None,
    ) -> None:
        self.want_msg = want_msg
        self.want_err = want_err

    async def serve_dns(self, req: dns.message.Message, meta: RequestMeta | None) -> dns.message.Message:
        if self.want_err is not None:
            raise self.want_err
        if self.want_msg is not None:
            resp = copy.deepcopy(self.want_msg)
            resp.id = req.id
            return resp
        return make_reply(req)