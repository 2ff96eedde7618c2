"""A DNS message transport over stream connections.

Connections may be used once per query, reused one query at a time, or
pipelined as RFC 7766 6.2.1.1 suggests, in which case responses may arrive
out of order and are routed back to their queries by message id.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import dns.message

DEFAULT_IDLE_TIMEOUT = 10.0
DEFAULT_DIAL_TIMEOUT = 5.0
DEFAULT_NO_CONN_REUSE_QUERY_TIMEOUT = 5.0
DEFAULT_MAX_CONNS = 2
DEFAULT_MAX_QUERY_PER_CONN = 65535

WRITE_TIMEOUT = 1.0
CONN_TOO_OLD_THRESHOLD = 0.5
_MAX_RETRY = 3
_MAX_MSG_SIZE = 0xFFFF

DialFunc = Callable[[], Awaitable[tuple[Any, Any]]]
WriteFunc = Callable[[Any, dns.message.Message], Awaitable[int]]
ReadFunc = Callable[[Any], Awaitable[dns.message.Message]]


class TransportClosedError(ConnectionError):
    """The transport has been closed."""

    def __init__(self) -> None:
        super().__init__("transport has been closed")


class _EndOfLifeError(ConnectionError):
    def __init__(self) -> None:
        super().__init__("end of life")


async def read_msg_from_tcp(reader: asyncio.StreamReader) -> dns.message.Message:
    """Read one length-prefixed DNS message from ``reader``."""
    header = await reader.readexactly(2)
    body = await reader.readexactly(int.from_bytes(header, "big"))
    return dns.message.from_wire(body)


async def write_msg_to_tcp(writer: asyncio.StreamWriter, msg: dns.message.Message) -> int:
    """Write ``msg`` with its 2-byte length prefix. Return the bytes written."""
    wire = msg.to_wire()
    if len(wire) > _MAX_MSG_SIZE:
        raise ValueError(f"msg length {len(wire)} is too big")
    data = len(wire).to_bytes(2, "big") + wire
    writer.write(data)
    await writer.drain()
    return len(data)


class _WaitGroup:
    def __init__(self) -> None:
        self._count = 0
        self._zero = asyncio.Event()
        self._zero.set()

    def add(self) -> None:
        self._count += 1
        self._zero.clear()

    def done(self) -> None:
        self._count -= 1
        if self._count <= 0:
            self._count = 0
            self._zero.set()

    async def wait(self) -> None:
        await self._zero.wait()


@dataclass
class _PipelineStatus:
    served: int = 0
    wg: _WaitGroup = field(default_factory=_WaitGroup)


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class _DNSConn:
    """One connection: dialled and read in the background, queried by id."""

    def __init__(self, transport: Transport) -> None:
        self._t = transport
        self._queue: dict[int, asyncio.Future[dns.message.Message]] = {}
        self._dial_done = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._reader: Any = None
        self._writer: Any = None
        self._close_err: BaseException | None = None
        self.closed = False
        self.last_read: float | None = None
        self._task = asyncio.create_task(self._dial_and_read())

    def queue_len(self) -> int:
        return len(self._queue)

    async def exchange_pipeline(self, q: dns.message.Message, qid: int) -> dns.message.Message:
        q_send = copy.copy(q)
        q_send.id = qid
        r = await self.exchange(q_send)
        r.id = q.id
        return r

    async def _wait_ready(self) -> None:
        if self.closed:
            raise self._close_err  # type: ignore[misc]
        if self._dial_done.is_set():
            return
        waiters = [
            asyncio.ensure_future(self._dial_done.wait()),
            asyncio.ensure_future(self._closed_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()
        if self.closed:
            raise self._close_err  # type: ignore[misc]

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        await self._wait_ready()
        qid = q.id
        fut: asyncio.Future[dns.message.Message] = asyncio.get_running_loop().create_future()
        self._queue[qid] = fut
        try:
            try:
                async with self._write_lock:
                    async with asyncio.timeout(WRITE_TIMEOUT):
                        await self._t._write(self._writer, q)
            except Exception as exc:
                # A write error is usually fatal for the connection.
                self.close_with_err(exc)
                raise
            return await fut
        finally:
            if self._queue.get(qid) is fut:
                del self._queue[qid]
            if not fut.done():
                fut.cancel()
            elif not fut.cancelled():
                fut.exception()

    async def _dial_and_read(self) -> None:
        try:
            async with asyncio.timeout(self._t._dial_timeout):
                reader, writer = await self._t._dial()
        except Exception as exc:
            self.close_with_err(exc)
            return
        if self.closed:
            writer.close()
            return
        self._reader, self._writer = reader, writer
        self._dial_done.set()
        await self._read_loop()

    async def _read_loop(self) -> None:
        while True:
            try:
                r = await asyncio.wait_for(self._t._read(self._reader), self._t._idle_timeout)
            except Exception as exc:
                self.close_with_err(exc)
                return
            self.last_read = time.monotonic()
            fut = self._queue.get(r.id)
            if fut is not None and not fut.done():
                fut.set_result(r)

    def close_with_err(self, err: BaseException | None) -> None:
        if self.closed:
            return
        self.closed = True
        self._close_err = err if err is not None else TransportClosedError()
        self._closed_event.set()
        for fut in self._queue.values():
            if not fut.done():
                fut.set_exception(self._close_err)
        if self._writer is not None:
            self._writer.close()
        if self._task is not _current_task():
            self._task.cancel()


class Transport:
    """Exchanges DNS messages over connections opened by ``dial``.

    ``dial()`` returns a ``(reader, writer)`` pair whose writer has
    ``close()``; ``write(writer, msg)`` and ``read(reader)`` move one message.
    A negative ``idle_timeout`` disables connection reuse; zero values take
    the defaults. Must be used from a single event loop.
    """

    def __init__(
        self,
        dial: DialFunc,
        write: WriteFunc,
        read: ReadFunc,
        dial_timeout: float = 0,
        idle_timeout: float = 0,
        enable_pipeline: bool = False,
        max_conns: int = 0,
        max_query_per_conn: int = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        if dial is None or write is None or read is None:
            raise ValueError("opts missing required func(s)")
        self._dial = dial
        self._write = write
        self._read = read
        self._dial_timeout = dial_timeout or DEFAULT_DIAL_TIMEOUT
        self._idle_timeout = idle_timeout or DEFAULT_IDLE_TIMEOUT
        self._enable_pipeline = enable_pipeline
        self._max_conns = max_conns or DEFAULT_MAX_CONNS
        self._max_query_per_conn = max_query_per_conn or DEFAULT_MAX_QUERY_PER_CONN
        self._logger = logger or logging.getLogger(__name__)

        self._closed = False
        self._pipeline_conns: dict[_DNSConn, _PipelineStatus] = {}
        self._idled_reusable_conns: dict[_DNSConn, None] = {}
        self._reusable_conns: set[_DNSConn] = set()
        self._background: set[asyncio.Task[None]] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        """Send ``q`` and return its response. ``q`` is not modified."""
        if self._closed:
            raise TransportClosedError()
        if self._idle_timeout <= 0:
            return await self._exchange_without_conn_reuse(q)
        if self._enable_pipeline:
            return await self._exchange_with_pipeline_conn(q)
        return await self._exchange_with_reusable_conn(q)

    def close(self) -> None:
        """Close the transport; queries in flight fail at once."""
        self._closed = True
        for conn in list(self._pipeline_conns):
            conn.close_with_err(TransportClosedError())
        self._pipeline_conns.clear()
        for conn in list(self._reusable_conns):
            conn.close_with_err(TransportClosedError())
        self._reusable_conns.clear()
        self._idled_reusable_conns.clear()

    async def _exchange_without_conn_reuse(self, q: dns.message.Message) -> dns.message.Message:
        async with asyncio.timeout(self._dial_timeout):
            reader, writer = await self._dial()
        try:
            async with asyncio.timeout(DEFAULT_NO_CONN_REUSE_QUERY_TIMEOUT):
                await self._write(writer, q)
                return await self._read(reader)
        finally:
            writer.close()

    async def _exchange_with_pipeline_conn(self, q: dns.message.Message) -> dns.message.Message:
        attempt = 0
        while True:
            attempt += 1
            conn, qid, is_new, wg = self._get_pipeline_conn()
            try:
                return await conn.exchange_pipeline(q, qid)
            except Exception as exc:
                if not is_new and attempt <= _MAX_RETRY:
                    self._logger.debug("retrying pipeline connection, attempt %d: %r", attempt + 1, exc)
                    continue
                raise
            finally:
                wg.done()

    async def _exchange_with_reusable_conn(self, q: dns.message.Message) -> dns.message.Message:
        attempt = 0
        while True:
            attempt += 1
            conn, reused = self._get_reusable_conn()
            try:
                r = await conn.exchange(q)
            except BaseException as exc:
                self._release_reusable_conn(conn, exc)
                if isinstance(exc, Exception) and reused and attempt <= _MAX_RETRY:
                    self._logger.debug("retrying reusable connection, attempt %d: %r", attempt + 1, exc)
                    continue
                raise
            self._release_reusable_conn(conn, None)
            return r

    def _get_reusable_conn(self) -> tuple[_DNSConn, bool]:
        if self._closed:
            raise TransportClosedError()
        while self._idled_reusable_conns:
            conn = next(iter(self._idled_reusable_conns))
            del self._idled_reusable_conns[conn]
            if conn.closed or self._conn_too_old(conn):
                self._reusable_conns.discard(conn)
                continue
            return conn, True
        conn = _DNSConn(self)
        self._reusable_conns.add(conn)
        return conn, False

    def _release_reusable_conn(self, conn: _DNSConn, err: BaseException | None) -> None:
        if err is not None:
            self._reusable_conns.discard(conn)
        if not self._closed and err is None:
            self._idled_reusable_conns[conn] = None
        else:
            conn.close_with_err(err)

    def _get_pipeline_conn(self) -> tuple[_DNSConn, int, bool, _WaitGroup]:
        if self._closed:
            raise TransportClosedError()

        conn: _DNSConn | None = None
        status: _PipelineStatus | None = None
        for c, s in list(self._pipeline_conns.items()):
            if c.closed or self._conn_too_old(c):
                del self._pipeline_conns[c]
                continue
            conn, status = c, s
            break

        is_new = False
        if conn is None or (conn.queue_len() > 0 and len(self._pipeline_conns) < self._max_conns):
            conn = _DNSConn(self)
            status = _PipelineStatus()
            self._pipeline_conns[conn] = status
            is_new = True

        assert status is not None
        status.served += 1
        status.wg.add()
        qid = status.served & 0xFFFF
        if status.served >= self._max_query_per_conn:
            # Close only after every query on this connection has finished.
            del self._pipeline_conns[conn]
            task = asyncio.create_task(self._close_when_idle(conn, status.wg))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return conn, qid, is_new, status.wg

    @staticmethod
    async def _close_when_idle(conn: _DNSConn, wg: _WaitGroup) -> None:
        await wg.wait()
        conn.close_with_err(_EndOfLifeError())

    def _conn_too_old(self, conn: _DNSConn) -> bool:
        last_read = conn.last_read
        if last_read is None:
            return False
        too_old_timeout = self._idle_timeout - CONN_TOO_OLD_THRESHOLD
        if too_old_timeout > 0:
            return time.monotonic() > last_read + too_old_timeout
        return False