"""DNS upstreams over UDP (with TCP fallback), TCP, TLS and HTTPS.

``new_upstream`` builds an upstream from an address such as
"8.8.8.8", "tcp://1.1.1.1:53", "tls://dns.example.com" or
"https://dns.example.com/dns-query".
"""

from __future__ import annotations

import asyncio
import base64
import ipaddress
import logging
import socket
import ssl
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import dns.asyncresolver
import dns.exception
import dns.flags
import dns.message
import httpx

from dnsrelay.transport import Transport, read_msg_from_tcp, write_msg_to_tcp

TLS_HANDSHAKE_TIMEOUT = 5.0
DEFAULT_DOH_TIMEOUT = 5.0
DEFAULT_DOH_IDLE_TIMEOUT = 30.0
DEFAULT_DOH_MAX_CONNS = 2
UDP_IDLE_TIMEOUT = 60.0
MAX_MSG_SIZE = 65535
DOH_MEDIA_TYPE = "application/dns-message"

_SO_MARK = getattr(socket, "SO_MARK", 36)
_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)


class Upstream(ABC):
    """A DNS upstream."""

    @abstractmethod
    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        """Send ``q`` and return the response. ``q`` is not kept or modified."""

    @abstractmethod
    async def close(self) -> None:
        """Release the upstream's connections."""

    async def __aenter__(self) -> Upstream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


@dataclass
class UpstreamOptions:
    """Options of an upstream.

    ``dial_addr`` replaces the address actually dialled. ``socks5`` is a
    SOCKS5 proxy for TCP and TLS upstreams. ``so_mark`` and
    ``bind_to_device`` set socket options on Linux. ``idle_timeout`` limits
    idle connections; negative disables reuse for TCP and TLS; zero takes the
    default (10 s for TCP/TLS, 30 s for HTTPS). ``enable_pipeline`` enables
    RFC 7766 query pipelining for TCP and TLS. ``max_conns`` limits
    connections (default 2). ``bootstrap`` is a plain DNS server (an IP, with
    optional port) used to resolve the upstream's host name for UDP, TCP and
    TLS. ``tls_context`` and ``tls_server_name`` configure the TLS client.
    """

    dial_addr: str = ""
    socks5: str = ""
    so_mark: int = 0
    bind_to_device: str = ""
    idle_timeout: float = 0.0
    enable_pipeline: bool = False
    max_conns: int = 0
    bootstrap: str = ""
    tls_context: ssl.SSLContext | None = None
    tls_server_name: str = ""
    logger: logging.Logger | None = field(default=None, repr=False)


def _split_host_port(s: str) -> tuple[str, str]:
    if s.startswith("["):
        end = s.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {s!r}")
        host, rest = s[1:end], s[end + 1 :]
        if not rest:
            raise ValueError(f"missing port in address {s!r}")
        if rest[0] != ":":
            raise ValueError(f"unexpected character after ']' in address {s!r}")
        port = rest[1:]
    else:
        i = s.rfind(":")
        if i < 0:
            raise ValueError(f"missing port in address {s!r}")
        host, port = s[:i], s[i + 1 :]
        if ":" in host:
            raise ValueError(f"too many colons in address {s!r}")
        if "[" in host or "]" in host:
            raise ValueError(f"unexpected bracket in address {s!r}")
    if "[" in port or "]" in port:
        raise ValueError(f"unexpected bracket in address {s!r}")
    return host, port


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def get_dial_addr_with_port(host: str, dial_addr: str, default_port: int) -> str:
    """Return ``dial_addr`` (or ``host``), adding ``default_port`` if it has none."""
    addr = dial_addr or host
    try:
        _split_host_port(addr)
    except ValueError:
        return _join_host_port(addr.strip("[]"), str(default_port))
    return addr


def try_remove_port(s: str) -> str:
    """Return the host part of ``s``, or ``s`` itself if it has no port."""
    try:
        host, _ = _split_host_port(s)
    except ValueError:
        return s
    return host


def _parse_port(port: str) -> int:
    if not (port.isascii() and port.isdigit()) or int(port) > 65535:
        raise ValueError(f"invalid port {port!r}")
    return int(port)


def _apply_socket_opts(sock: socket.socket, so_mark: int, bind_to_device: str) -> None:
    if not sys.platform.startswith("linux"):
        return
    if so_mark > 0:
        try:
            sock.setsockopt(socket.SOL_SOCKET, _SO_MARK, so_mark)
        except OSError as exc:
            raise OSError(exc.errno, f"failed to set SO_MARK: {exc.strerror}") from exc
    if bind_to_device:
        try:
            sock.setsockopt(socket.SOL_SOCKET, _SO_BINDTODEVICE, bind_to_device.encode())
        except OSError as exc:
            raise OSError(exc.errno, f"failed to set SO_BINDTODEVICE: {exc.strerror}") from exc


async def _resolve(host: str, bootstrap: str) -> list[str]:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        pass
    else:
        return [host]

    if bootstrap:
        b_host, b_port = _split_host_port(get_dial_addr_with_port(bootstrap, "", 53))
        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = [b_host]
        resolver.port = _parse_port(b_port)
        addrs: list[str] = []
        for rdtype in ("A", "AAAA"):
            try:
                answer = await resolver.resolve(host, rdtype)
            except dns.exception.DNSException:
                continue
            addrs.extend(rd.address for rd in answer)
        if not addrs:
            raise OSError(f"cannot resolve {host} via bootstrap {bootstrap}")
        return addrs

    infos = await asyncio.get_running_loop().getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return list(dict.fromkeys(info[4][0] for info in infos))


async def _open_socket(
    addr: str, sock_type: int, so_mark: int, bind_to_device: str, bootstrap: str
) -> socket.socket:
    host, port_text = _split_host_port(addr)
    port = _parse_port(port_text)
    loop = asyncio.get_running_loop()
    last_err: OSError | None = None
    for ip in await _resolve(host, bootstrap):
        family = socket.AF_INET6 if ":" in ip else socket.AF_INET
        sock = socket.socket(family, sock_type)
        try:
            sock.setblocking(False)
            _apply_socket_opts(sock, so_mark, bind_to_device)
            await loop.sock_connect(sock, (ip, port))
        except OSError as exc:
            sock.close()
            last_err = exc
            continue
        except BaseException:
            sock.close()
            raise
        return sock
    raise last_err or OSError(f"no address to dial for {addr}")


async def _recv_exactly(sock: socket.socket, n: int) -> bytes:
    loop = asyncio.get_running_loop()
    buf = b""
    while len(buf) < n:
        chunk = await loop.sock_recv(sock, n - len(buf))
        if not chunk:
            raise ConnectionError("unexpected EOF from socks5 server")
        buf += chunk
    return buf


def _socks5_target(addr: str) -> bytes:
    host, port_text = _split_host_port(addr)
    port = _parse_port(port_text).to_bytes(2, "big")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        name = host.encode("idna")
        if len(name) > 255:
            raise ValueError(f"host name too long: {host}") from None
        return b"\x03" + bytes([len(name)]) + name + port
    atyp = b"\x01" if ip.version == 4 else b"\x04"
    return atyp + ip.packed + port


async def _socks5_connect(sock: socket.socket, addr: str) -> None:
    loop = asyncio.get_running_loop()
    await loop.sock_sendall(sock, b"\x05\x01\x00")
    greeting = await _recv_exactly(sock, 2)
    if greeting[0] != 5:
        raise ConnectionError(f"unexpected socks version {greeting[0]}")
    if greeting[1] != 0:
        raise ConnectionError("socks5 server requires an unsupported authentication method")
    await loop.sock_sendall(sock, b"\x05\x01\x00" + _socks5_target(addr))
    ver, rep, _, atyp = await _recv_exactly(sock, 4)
    if ver != 5:
        raise ConnectionError(f"unexpected socks version {ver}")
    if rep != 0:
        raise ConnectionError(f"socks5 connect to {addr} failed with code {rep}")
    if atyp == 1:
        await _recv_exactly(sock, 4 + 2)
    elif atyp == 4:
        await _recv_exactly(sock, 16 + 2)
    elif atyp == 3:
        length = (await _recv_exactly(sock, 1))[0]
        await _recv_exactly(sock, length + 2)
    else:
        raise ConnectionError(f"unknown socks5 address type {atyp}")


async def _connect_tcp(
    addr: str, socks5: str, so_mark: int, bind_to_device: str, bootstrap: str
) -> socket.socket:
    if not socks5:
        return await _open_socket(addr, socket.SOCK_STREAM, so_mark, bind_to_device, bootstrap)
    sock = await _open_socket(socks5, socket.SOCK_STREAM, so_mark, bind_to_device, bootstrap)
    try:
        await _socks5_connect(sock, addr)
    except BaseException:
        sock.close()
        raise
    return sock


async def dial_tcp(
    addr: str, socks5: str = "", so_mark: int = 0, bind_to_device: str = ""
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open a TCP stream to ``addr``, through the SOCKS5 proxy ``socks5`` if set."""
    sock = await _connect_tcp(addr, socks5, so_mark, bind_to_device, "")
    return await asyncio.open_connection(sock=sock)


class _UDPConn(asyncio.DatagramProtocol):
    """A connected UDP socket read as a queue of datagrams."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | BaseException] = asyncio.Queue()
        self._transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Any) -> None:
        self._queue.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        self._queue.put_nowait(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self._queue.put_nowait(exc or ConnectionError("udp socket closed"))

    async def recv(self) -> bytes:
        item = await self._queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    def send(self, data: bytes) -> None:
        if self._transport is None or self._transport.is_closing():
            raise ConnectionError("udp socket closed")
        self._transport.sendto(data)

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()


async def _write_udp(conn: _UDPConn, msg: dns.message.Message) -> int:
    wire = msg.to_wire()
    conn.send(wire)
    return len(wire)


async def _read_udp(conn: _UDPConn) -> dns.message.Message:
    return dns.message.from_wire(await conn.recv())


class _TransportUpstream(Upstream):
    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        return await self._transport.exchange(q)

    async def close(self) -> None:
        self._transport.close()


class UdpWithFallback(Upstream):
    """Queries over UDP and retries over TCP when the response is truncated."""

    def __init__(self, u: Transport, t: Transport) -> None:
        self.u = u
        self.t = t

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        m = await self.u.exchange(q)
        if m.flags & dns.flags.TC:
            return await self.t.exchange(q)
        return m

    async def close(self) -> None:
        self.u.close()
        self.t.close()


class DoHUpstream(Upstream):
    """A DNS-over-HTTPS (RFC 8484) upstream using GET requests."""

    def __init__(self, endpoint: str, client: httpx.AsyncClient) -> None:
        self.endpoint = endpoint
        self.client = client
        self._tasks: set[asyncio.Task[dns.message.Message]] = set()

    async def exchange(self, q: dns.message.Message) -> dns.message.Message:
        wire = bytearray(q.to_wire())
        # RFC 8484 4.1: use id 0 for HTTP cache friendliness.
        wire[0:2] = b"\x00\x00"
        sep = "&dns=" if "?" in self.endpoint else "?dns="
        encoded = base64.urlsafe_b64encode(bytes(wire)).rstrip(b"=").decode("ascii")
        url = self.endpoint + sep + encoded

        # The request runs to completion on its own so that a cancelled
        # caller does not tear down a reusable connection.
        task = asyncio.ensure_future(self._exchange(url))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        r = await asyncio.shield(task)
        r.id = q.id
        return r

    def _task_done(self, task: asyncio.Task[dns.message.Message]) -> None:
        self._tasks.discard(task)
        if not task.cancelled():
            task.exception()

    async def _exchange(self, url: str) -> dns.message.Message:
        try:
            resp = await self.client.get(
                url, headers={"Accept": DOH_MEDIA_TYPE}, timeout=DEFAULT_DOH_TIMEOUT
            )
        except httpx.HTTPError as exc:
            raise ConnectionError(f"http request failed: {exc}") from exc

        if resp.status_code != 200:
            body = resp.content[:1024]
            if body:
                raise ConnectionError(
                    f"bad http status codes {resp.status_code} with body [{body.decode(errors='replace')}]"
                )
            raise ConnectionError(f"bad http status codes {resp.status_code}")

        body = resp.content[:MAX_MSG_SIZE]
        try:
            return dns.message.from_wire(body)
        except (dns.exception.DNSException, ValueError) as exc:
            raise ValueError(f"failed to unpack http body: {exc}") from exc

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.client.aclose()


def _new_doh_upstream(addr: str, host: str, opt: UpstreamOptions) -> DoHUpstream:
    if opt.socks5:
        raise ValueError("socks5 is not supported for https upstreams")
    idle = opt.idle_timeout if opt.idle_timeout > 0 else DEFAULT_DOH_IDLE_TIMEOUT
    max_conns = opt.max_conns if opt.max_conns > 0 else DEFAULT_DOH_MAX_CONNS

    event_hooks: dict[str, list[Any]] = {}
    if opt.dial_addr:
        dial_host, dial_port = _split_host_port(get_dial_addr_with_port(host, opt.dial_addr, 443))
        port = _parse_port(dial_port)

        async def redirect(request: httpx.Request) -> None:
            # Keep Host header and SNI, but connect to the dial address.
            request.extensions["sni_hostname"] = request.url.host
            request.url = request.url.copy_with(host=dial_host, port=port)

        event_hooks["request"] = [redirect]

    client = httpx.AsyncClient(
        verify=opt.tls_context if opt.tls_context is not None else True,
        limits=httpx.Limits(
            max_connections=max_conns,
            max_keepalive_connections=max_conns,
            keepalive_expiry=idle,
        ),
        timeout=DEFAULT_DOH_TIMEOUT,
        event_hooks=event_hooks,
    )
    return DoHUpstream(addr, client)


def new_upstream(addr: str, opt: UpstreamOptions | None = None) -> Upstream:
    """Build an upstream for ``addr``. An address without a scheme is UDP."""
    if opt is None:
        opt = UpstreamOptions()
    if "://" not in addr:
        addr = "udp://" + addr
    try:
        parts = urlsplit(addr)
    except ValueError as exc:
        raise ValueError(f"invalid server address, {exc}") from exc
    scheme = parts.scheme
    host = parts.netloc.rpartition("@")[2]
    logger = opt.logger

    if scheme in ("", "udp"):
        dial_addr = get_dial_addr_with_port(host, opt.dial_addr, 53)

        async def dial_udp() -> tuple[_UDPConn, _UDPConn]:
            sock = await _open_socket(
                dial_addr, socket.SOCK_DGRAM, opt.so_mark, opt.bind_to_device, opt.bootstrap
            )
            try:
                _, conn = await asyncio.get_running_loop().create_datagram_endpoint(
                    _UDPConn, sock=sock
                )
            except BaseException:
                sock.close()
                raise
            return conn, conn

        async def dial_tcp_plain() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
            sock = await _connect_tcp(dial_addr, "", opt.so_mark, opt.bind_to_device, opt.bootstrap)
            return await asyncio.open_connection(sock=sock)

        ut = Transport(
            dial_udp,
            _write_udp,
            _read_udp,
            idle_timeout=UDP_IDLE_TIMEOUT,
            enable_pipeline=True,
            max_conns=opt.max_conns,
            logger=logger,
        )
        tt = Transport(dial_tcp_plain, write_msg_to_tcp, read_msg_from_tcp, logger=logger)
        return UdpWithFallback(ut, tt)

    if scheme == "tcp":
        dial_addr = get_dial_addr_with_port(host, opt.dial_addr, 53)

        async def dial_tcp_stream() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
            sock = await _connect_tcp(
                dial_addr, opt.socks5, opt.so_mark, opt.bind_to_device, opt.bootstrap
            )
            return await asyncio.open_connection(sock=sock)

        return _TransportUpstream(
            Transport(
                dial_tcp_stream,
                write_msg_to_tcp,
                read_msg_from_tcp,
                idle_timeout=opt.idle_timeout,
                enable_pipeline=opt.enable_pipeline,
                max_conns=opt.max_conns,
                logger=logger,
            )
        )

    if scheme == "tls":
        tls_context = opt.tls_context or ssl.create_default_context()
        server_name = opt.tls_server_name or try_remove_port(host).strip("[]")
        dial_addr = get_dial_addr_with_port(host, opt.dial_addr, 853)

        async def dial_tls() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
            sock = await _connect_tcp(
                dial_addr, opt.socks5, opt.so_mark, opt.bind_to_device, opt.bootstrap
            )
            try:
                return await asyncio.open_connection(
                    sock=sock,
                    ssl=tls_context,
                    server_hostname=server_name,
                    ssl_handshake_timeout=TLS_HANDSHAKE_TIMEOUT,
                )
            except BaseException:
                sock.close()
                raise

        return _TransportUpstream(
            Transport(
                dial_tls,
                write_msg_to_tcp,
                read_msg_from_tcp,
                idle_timeout=opt.idle_timeout,
                enable_pipeline=opt.enable_pipeline,
                max_conns=opt.max_conns,
                logger=logger,
            )
        )

    if scheme == "https":
        return _new_doh_upstream(addr, host, opt)

    raise ValueError(f"unsupported protocol [{scheme}]")