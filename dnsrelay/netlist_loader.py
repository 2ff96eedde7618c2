"""Helpers that load IP prefixes into net lists from text and v2ray data."""

from __future__ import annotations

import ipaddress
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass

from dnsrelay.netlist import Address, NetList, NetMatcher


class NetMatcherGroup(NetMatcher):
    """A list of IP matchers; an address matches if any of them matches."""

    def __init__(self) -> None:
        self._group: list[NetMatcher] = []
        self._closers: list[Callable[[], None]] = []

    def append(self, matcher: NetMatcher) -> None:
        self._group.append(matcher)

    def append_closer(self, closer: Callable[[], None]) -> None:
        self._closers.append(closer)

    def match(self, addr: Address | str) -> bool:
        return any(m.match(addr) for m in self._group)

    def __len__(self) -> int:
        return sum(len(m) for m in self._group)

    def close(self) -> None:
        """Run every registered closer."""
        for closer in self._closers:
            closer()

    def __enter__(self) -> NetMatcherGroup:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DynamicNetMatcher(NetMatcher):
    """An IP matcher whose list is replaced on each ``update``."""

    def __init__(self, parser: Callable[[bytes], NetList]) -> None:
        self._parser = parser
        self._lock = threading.Lock()
        self._list: NetList | None = None

    def _current(self) -> NetList | None:
        with self._lock:
            return self._list

    def update(self, data: bytes) -> None:
        """Parse ``data`` and swap it in. On error the old list stays."""
        new_list = self._parser(data)
        with self._lock:
            self._list = new_list

    def match(self, addr: Address | str) -> bool:
        current = self._current()
        return False if current is None else current.match(addr)

    def __len__(self) -> int:
        current = self._current()
        return 0 if current is None else len(current)


def load_from_text(net_list: NetList, s: str) -> None:
    """Append one address or CIDR prefix. Leaves the list unsorted."""
    if "/" in s:
        _, _, bits = s.partition("/")
        if not (bits.isascii() and bits.isdigit()):
            raise ValueError(f"invalid prefix {s!r}")
        try:
            network = ipaddress.ip_network(s, strict=False)
        except ValueError as exc:
            raise ValueError(f"invalid prefix {s!r}: {exc}") from exc
        net_list.append(network)
        return
    try:
        addr = ipaddress.ip_address(s)
    except ValueError as exc:
        raise ValueError(f"invalid address {s!r}: {exc}") from exc
    net_list.append(ipaddress.ip_network((addr, addr.max_prefixlen)))


def load(net_list: NetList, ip: str) -> None:
    """Append one address or prefix after trimming white space."""
    load_from_text(net_list, ip.strip())


def load_from_reader(net_list: NetList, reader: Iterable[str]) -> None:
    """Append one address or prefix per line.

    '#' starts a comment and anything after the first space is ignored.
    """
    for line_no, line in enumerate(reader, start=1):
        s = line.strip()
        s = s.split("#", 1)[0]
        s = s.split(" ", 1)[0]
        if not s:
            continue
        try:
            load_from_text(net_list, s)
        except ValueError as exc:
            raise ValueError(f"invalid data at line #{line_no}: {exc}") from exc


@dataclass(frozen=True)
class V2CIDR:
    """A v2ray CIDR entry: raw address bytes and a prefix length."""

    ip: bytes
    prefix: int


def load_from_v2_cidr(net_list: NetList, cidrs: Iterable[V2CIDR]) -> None:
    """Append v2ray CIDR entries. Leaves the list unsorted."""
    for i, entry in enumerate(cidrs):
        if len(entry.ip) not in (4, 16):
            raise ValueError(f"invalid ip data at index #{i}: {entry.ip!r}")
        addr = ipaddress.ip_address(bytes(entry.ip))
        if not 0 <= entry.prefix <= addr.max_prefixlen:
            raise ValueError(f"invalid cidr data at index #{i}: {entry}")
        net_list.append(ipaddress.ip_network((addr, entry.prefix), strict=False))


def new_v2ray_ip_dat(entries: Mapping[str, Sequence[V2CIDR]], args: str) -> NetList:
    """Build a sorted list from the entries whose tags are in "tag1,tag2,...".

    ``entries`` maps a country code (case-insensitive) to its CIDRs.
    """
    data = {code.lower(): cidrs for code, cidrs in entries.items()}
    net_list = NetList()
    for tag in args.split(","):
        if tag not in data:
            raise ValueError(f"tag {tag} does not exist")
        try:
            load_from_v2_cidr(net_list, data[tag])
        except ValueError as exc:
            raise ValueError(f"failed to parse v2 cidr data, {exc}") from exc
    net_list.sort()
    return net_list