"""A DNS-over-HTTPS (RFC 8484) request handler, independent of any web server."""

from __future__ import annotations

import base64
import binascii
import inspect
import ipaddress
import logging
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlsplit

import dns.exception
import dns.message

from dnsrelay.query_context import Address, RequestMeta

MEDIA_TYPE = "application/dns-message"
MAX_MSG_SIZE = 65535


class BadRequestError(ValueError):
    """The HTTP request does not carry a valid DNS query."""


@dataclass
class HTTPRequest:
    """An HTTP request. Header names are case-insensitive."""

    method: str
    url: str
    remote_addr: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    def query_param(self, name: str) -> str:
        values = parse_qs(urlsplit(self.url).query, keep_blank_values=True).get(name)
        return values[0] if values else ""


@dataclass
class HTTPResponse:
    """An HTTP response."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def _parse_addr(s: str) -> Address:
    try:
        return ipaddress.ip_address(s)
    except ValueError as exc:
        raise ValueError(f"invalid address {s!r}") from exc


def _parse_addr_port(s: str) -> Address:
    if s.startswith("["):
        host, sep, rest = s[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ValueError(f"invalid address and port {s!r}")
        port = rest[1:]
        addr = _parse_addr(host)
        if addr.version != 6:
            raise ValueError(f"invalid address and port {s!r}")
    else:
        host, sep, port = s.rpartition(":")
        if not sep or ":" in host:
            raise ValueError(f"invalid address and port {s!r}")
        addr = _parse_addr(host)
    if not (port.isascii() and port.isdigit()) or int(port) > 65535:
        raise ValueError(f"invalid port in {s!r}")
    return addr


def _read_client_addr_from_xff(s: str) -> Address:
    i = s.find(",")
    if i > 0:
        return _parse_addr(s[:i])
    return _parse_addr(s)


def _decode_raw_url_base64(s: str) -> bytes:
    if "=" in s:
        raise binascii.Error("padding is not allowed")
    padded = s + "=" * (-len(s) % 4)
    std = padded.replace("-", "+").replace("_", "/")
    return base64.b64decode(std, validate=True)


def _minimal_ttl(msg: dns.message.Message) -> int:
    ttls = [rrset.ttl for section in (msg.answer, msg.authority, msg.additional) for rrset in section]
    return min(ttls, default=0)


def read_msg_from_request(request: HTTPRequest) -> dns.message.Message:
    """Extract the DNS query from a GET or POST request."""
    method = request.method.upper()
    if method == "GET":
        if request.header("Accept") != MEDIA_TYPE:
            raise BadRequestError("missing or invalid media type header")
        s = request.query_param("dns")
        if not s:
            raise BadRequestError("no dns parameter")
        msg_size = len(s) * 6 // 8
        if msg_size > MAX_MSG_SIZE:
            raise BadRequestError(f"msg length {msg_size} is too big")
        try:
            b = _decode_raw_url_base64(s)
        except (binascii.Error, ValueError) as exc:
            raise BadRequestError(f"failed to decode base64 query: {exc}") from exc
    elif method == "POST":
        if request.header("Content-Type") != MEDIA_TYPE:
            raise BadRequestError("missing or invalid media type header")
        b = bytes(request.body[:MAX_MSG_SIZE])
    else:
        raise BadRequestError(f"unsupported method: {request.method}")

    try:
        return dns.message.from_wire(b)
    except (dns.exception.DNSException, ValueError) as exc:
        raise BadRequestError(f"failed to unpack msg [{b.hex()}], {exc}") from exc


class DoHHandler:
    """Turns DoH requests into DNS queries for a DNS handler.

    The DNS handler's ``serve_dns(req, meta)`` may be a plain or a coroutine
    function. Errors it raises propagate so the connection can be dropped.
    """

    def __init__(
        self,
        dns_handler: Any,
        path: str = "",
        src_ip_header: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        if dns_handler is None:
            raise ValueError("nil dns handler")
        self._dns_handler = dns_handler
        self._path = path
        self._src_ip_header = src_ip_header
        self._logger = logger or logging.getLogger(__name__)

    def _warn(self, request: HTTPRequest, msg: str, err: object) -> None:
        self._logger.warning(
            "%s: from=%s method=%s url=%s: %s",
            msg,
            request.remote_addr,
            request.method,
            request.url,
            err,
        )

    async def handle(self, request: HTTPRequest) -> HTTPResponse:
        try:
            client_addr = _parse_addr_port(request.remote_addr)
        except ValueError as exc:
            self._logger.error("failed to parse request remote addr %s: %s", request.remote_addr, exc)
            return HTTPResponse(int(HTTPStatus.INTERNAL_SERVER_ERROR))

        if self._src_ip_header:
            xff = request.header(self._src_ip_header)
            if xff:
                try:
                    client_addr = _read_client_addr_from_xff(xff)
                except ValueError as exc:
                    self._warn(
                        request,
                        "failed to get client ip from header",
                        f"failed to parse header {self._src_ip_header}: {xff}, {exc}",
                    )
                    return HTTPResponse(int(HTTPStatus.BAD_REQUEST))

        if self._path and request.path != self._path:
            self._warn(request, "invalid request", f"invalid request path {request.path}")
            return HTTPResponse(int(HTTPStatus.NOT_FOUND))

        try:
            q = read_msg_from_request(request)
        except BadRequestError as exc:
            self._warn(request, "invalid request", exc)
            return HTTPResponse(int(HTTPStatus.BAD_REQUEST))

        r = self._dns_handler.serve_dns(q, RequestMeta(client_addr=client_addr))
        if inspect.isawaitable(r):
            r = await r

        try:
            wire = r.to_wire()
        except (dns.exception.DNSException, ValueError) as exc:
            self._warn(request, "failed to pack handler's response", exc)
            return HTTPResponse(int(HTTPStatus.INTERNAL_SERVER_ERROR))

        headers = {
            "Content-Type": MEDIA_TYPE,
            "Cache-Control": f"max-age={_minimal_ttl(r)}",
        }
        return HTTPResponse(int(HTTPStatus.OK), headers, wire)