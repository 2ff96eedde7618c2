"""A sorted list of IP prefixes searched with binary search."""

from __future__ import annotations

import bisect
import ipaddress
from abc import ABC, abstractmethod
from typing import NamedTuple, Union

Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_V4_MAPPED = 0xFFFF << 32


class NotSortedError(RuntimeError):
    """The list was modified and not sorted before a lookup."""

    def __init__(self) -> None:
        super().__init__("list is not sorted")


class InvalidAddrError(ValueError):
    """The address to look up is not a valid IP address."""

    def __init__(self, addr: object = None) -> None:
        super().__init__(f"addr is invalid: {addr!r}")


class NetMatcher(ABC):
    """Something that can tell whether an IP address belongs to it."""

    @abstractmethod
    def match(self, addr: Address | str) -> bool:
        """Return True if ``addr`` matches."""

    @abstractmethod
    def __len__(self) -> int:
        """Return the number of prefixes held."""


class _Prefix(NamedTuple):
    addr: int  # IPv6 (IPv4 mapped) network address
    bits: int

    def contains(self, addr: int) -> bool:
        return (addr ^ self.addr) >> (128 - self.bits) == 0


def _to6(addr: Address) -> int:
    if addr.version == 4:
        return _V4_MAPPED | int(addr)
    return int(addr)


def _to_prefix(n: Network | str) -> _Prefix:
    if not isinstance(n, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        n = ipaddress.ip_network(n, strict=False)
    bits = n.prefixlen + (96 if n.version == 4 else 0)
    return _Prefix(_to6(n.network_address), bits)


def _parse_addr(addr: object) -> int:
    if isinstance(addr, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return _to6(addr)
    if isinstance(addr, str):
        try:
            return _to6(ipaddress.ip_address(addr))
        except ValueError:
            raise InvalidAddrError(addr) from None
    raise InvalidAddrError(addr)


class NetList(NetMatcher):
    """A list of IP prefixes, suited to large static CIDR sets.

    IPv4 prefixes are stored as IPv4-mapped IPv6 prefixes. ``sort`` must be
    called after the list is modified and before lookups.
    """

    def __init__(self) -> None:
        self._entries: list[_Prefix] = []
        self._starts: list[int] = []
        self._sorted = False

    def append(self, *args: Network | str) -> None:
        """Append prefixes. Host bits are masked off. Unsorts the list."""
        prefixes = [_to_prefix(n) for n in args]
        self._entries.extend(prefixes)
        self._sorted = False

    def sort(self) -> None:
        """Sort the list and merge prefixes covered by others."""
        if self._sorted:
            return
        out: list[_Prefix] = []
        for n in sorted(self._entries):
            if not out:
                out.append(n)
                continue
            last = out[-1]
            if n.addr == last.addr:
                if n.bits < last.bits:
                    out[-1] = n
            elif not last.contains(n.addr):
                out.append(n)
        self._entries = out
        self._starts = [p.addr for p in out]
        self._sorted = True

    def __len__(self) -> int:
        return len(self._entries)

    def match(self, addr: Address | str) -> bool:
        return self.contains(addr)

    def contains(self, addr: Address | str) -> bool:
        """Report whether the list includes ``addr``."""
        if not self._sorted:
            raise NotSortedError()
        a = _parse_addr(addr)
        i = bisect.bisect_right(self._starts, a)
        if i == 0:
            return False
        return self._entries[i - 1].contains(a)