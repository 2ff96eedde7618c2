"""A DNS server over UDP, TCP and TLS built on asyncio.

Each ``serve_*`` coroutine takes ownership of the given socket, blocks
until the server is closed or fails, closes the socket and always raises.
If the server was closed, the exception is ``ServerClosedError``.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import inspect
import ipaddress
import logging
import socket
import ssl
from collections.abc import Callable, Coroutine
from typing import Any

import dns.exception
import dns.flags
import dns.message

from dnsrelay.query_context import Address, RequestMeta

DEFAULT_TCP_IDLE_TIMEOUT = 10.0
TCP_FIRST_READ_TIMEOUT = 0.5
MIN_MSG_SIZE = 512
_UDP_READ_SIZE = 64 * 1024


class ServerClosedError(RuntimeError):
    """The server has been closed."""

    def __init__(self) -> None:
        super().__init__("server closed")


def get_udp_size(msg: dns.message.Message) -> int:
    """Return the UDP payload size the client accepts, at least 512."""
    size = msg.payload if msg.edns >= 0 else 0
    return max(size, MIN_MSG_SIZE)


def _pack_udp(r: dns.message.Message, size: int) -> bytes:
    try:
        return r.to_wire(max_size=size)
    except dns.exception.TooBig:
        truncated = copy.deepcopy(r)
        for section in (truncated.answer, truncated.authority, truncated.additional):
            section.clear()
        truncated.flags |= dns.flags.TC
        return truncated.to_wire(max_size=size)


def _client_addr(peer: Any) -> Address | None:
    if not isinstance(peer, tuple) or not peer or not isinstance(peer[0], str):
        return None
    host = peer[0].split("%", 1)[0]
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


async def _read_tcp_msg(reader: asyncio.StreamReader) -> dns.message.Message:
    header = await reader.readexactly(2)
    body = await reader.readexactly(int.from_bytes(header, "big"))
    return dns.message.from_wire(body)


async def _call_handler(handler: Any, q: dns.message.Message, meta: RequestMeta) -> Any:
    result = handler.serve_dns(q, meta)
    if inspect.isawaitable(result):
        result = await result
    return result


class Server:
    """A DNS server that serves a DNS handler over UDP, TCP and TLS.

    ``tls_context`` and ``cert``/``key`` are used by ``serve_tls``; if a
    certificate file is given it is loaded into ``tls_context`` (or into a
    new server context). Must be used from a single event loop.
    """

    def __init__(
        self,
        dns_handler: Any = None,
        tls_context: ssl.SSLContext | None = None,
        cert: str = "",
        key: str = "",
        idle_timeout: float = DEFAULT_TCP_IDLE_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        self._dns_handler = dns_handler
        self._tls_context = tls_context
        self._cert = cert
        self._key = key
        self._idle_timeout = idle_timeout if idle_timeout > 0 else DEFAULT_TCP_IDLE_TIMEOUT
        self._logger = logger or logging.getLogger(__name__)
        self._closed = False
        self._closers: set[Callable[[], Any]] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    def _track(self, closer: Callable[[], Any]) -> bool:
        if self._closed:
            return False
        self._closers.add(closer)
        return True

    def _untrack(self, closer: Callable[[], Any]) -> None:
        self._closers.discard(closer)

    def close(self) -> None:
        """Close the server and everything it is serving."""
        if self._closed:
            return
        self._closed = True
        for closer in list(self._closers):
            closer()

    def _require_handler(self) -> Any:
        if self._dns_handler is None:
            raise ValueError("missing dns handler")
        return self._dns_handler

    async def _run_until_closed(self, coro: Coroutine[Any, Any, Any]) -> None:
        if self._closed:
            coro.close()
            raise ServerClosedError()
        inner = asyncio.ensure_future(coro)
        closer = inner.cancel
        self._track(closer)
        try:
            await inner
        except asyncio.CancelledError:
            current = asyncio.current_task()
            externally_cancelled = current is not None and current.cancelling() > 0
            if inner.cancelled() and self._closed and not externally_cancelled:
                raise ServerClosedError() from None
            raise
        finally:
            self._untrack(closer)

    # UDP

    async def serve_udp(self, sock: socket.socket) -> None:
        """Serve DNS over the bound UDP socket ``sock``."""
        try:
            handler = self._require_handler()
            sock.setblocking(False)
            await self._run_until_closed(self._udp_loop(sock, handler))
        finally:
            sock.close()

    async def _udp_loop(self, sock: socket.socket, handler: Any) -> None:
        loop = asyncio.get_running_loop()
        tasks: set[asyncio.Task[None]] = set()
        try:
            while True:
                try:
                    data, remote = await loop.sock_recvfrom(sock, _UDP_READ_SIZE)
                except OSError as exc:
                    if self._closed:
                        raise ServerClosedError() from None
                    raise OSError(f"unexpected read err: {exc}") from exc
                try:
                    q = dns.message.from_wire(data)
                except Exception as exc:  # malformed datagram from the network
                    self._logger.warning("invalid msg from %s: %r: %s", remote, data, exc)
                    continue
                task = asyncio.create_task(self._handle_udp(sock, handler, q, remote))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        finally:
            for task in tasks:
                task.cancel()

    async def _handle_udp(
        self, sock: socket.socket, handler: Any, q: dns.message.Message, remote: Any
    ) -> None:
        meta = RequestMeta(client_addr=_client_addr(remote))
        try:
            r = await _call_handler(handler, q, meta)
        except Exception as exc:
            self._logger.warning("handler err: %r", exc)
            return
        if r is None:
            return
        try:
            wire = _pack_udp(r, get_udp_size(q))
        except (dns.exception.DNSException, ValueError) as exc:
            self._logger.error("failed to pack handler's response %s: %s", r, exc)
            return
        try:
            await asyncio.get_running_loop().sock_sendto(sock, wire, remote)
        except OSError as exc:
            self._logger.warning("failed to write response to %s: %s", remote, exc)

    # TCP and TLS

    async def serve_tcp(self, sock: socket.socket) -> None:
        """Serve DNS over the listening TCP socket ``sock``."""
        await self._serve_stream(sock, None)

    async def serve_tls(self, sock: socket.socket) -> None:
        """Serve DNS over TLS on the listening TCP socket ``sock``."""
        try:
            ctx = self._tls_context
            if self._cert or self._key:
                if ctx is None:
                    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
                ctx.load_cert_chain(self._cert, self._key or None)
            if ctx is None:
                raise ValueError("missing certificate for tls listener")
        except BaseException:
            sock.close()
            raise
        await self._serve_stream(sock, ctx)

    async def _serve_stream(self, sock: socket.socket, ssl_context: ssl.SSLContext | None) -> None:
        try:
            handler = self._require_handler()

            async def run() -> None:
                kwargs: dict[str, Any] = {}
                if ssl_context is not None:
                    kwargs = {"ssl": ssl_context, "ssl_handshake_timeout": self._idle_timeout}
                srv = await asyncio.start_server(
                    functools.partial(self._serve_conn, handler), sock=sock, **kwargs
                )
                async with srv:
                    await srv.serve_forever()

            await self._run_until_closed(run())
        finally:
            sock.close()

    async def _serve_conn(
        self, handler: Any, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        closer = writer.close
        if not self._track(closer):
            writer.close()
            return

        meta = RequestMeta(client_addr=_client_addr(writer.get_extra_info("peername")))
        idle_timeout = self._idle_timeout
        timeout = min(TCP_FIRST_READ_TIMEOUT, idle_timeout)
        write_lock = asyncio.Lock()
        tasks: set[asyncio.Task[None]] = set()
        try:
            while True:
                try:
                    q = await asyncio.wait_for(_read_tcp_msg(reader), timeout)
                except (
                    asyncio.IncompleteReadError,
                    OSError,
                    dns.exception.DNSException,
                    ValueError,
                ):
                    return
                timeout = idle_timeout
                task = asyncio.create_task(self._handle_tcp(handler, q, meta, writer, write_lock))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        finally:
            self._untrack(closer)
            for task in tasks:
                task.cancel()
            writer.close()

    async def _handle_tcp(
        self,
        handler: Any,
        q: dns.message.Message,
        meta: RequestMeta,
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
    ) -> None:
        try:
            r = await _call_handler(handler, q, meta)
        except Exception as exc:
            self._logger.warning("handler err: %r", exc)
            writer.close()
            return
        try:
            wire = r.to_wire()
        except (dns.exception.DNSException, ValueError) as exc:
            self._logger.error("failed to pack handler's response %s: %s", r, exc)
            return
        try:
            async with write_lock:
                writer.write(len(wire).to_bytes(2, "big") + wire)
                await writer.drain()
        except OSError as exc:
            self._logger.warning(
                "failed to write response to %s: %s", writer.get_extra_info("peername"), exc
            )