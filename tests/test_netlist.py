import ipaddress

import pytest

from dnsrelay.netlist import InvalidAddrError, NetList, NotSortedError


def merged_list():
    nl = NetList()
    nl.append(
        "192.168.0.0/32",
        "192.168.0.0/24",
        "192.168.0.0/16",
        "192.168.1.1/24",
        "192.168.9.24/24",
        "192.168.3.0/24",
        "192.169.0.0/16",
    )
    nl.sort()
    return nl


def mixed_list():
    nl = NetList()
    nl.append("1.0.0.0/24", "2.0.0.0/23", "3.0.0.0", "2000:0000::/32", "2000:2000::1")
    nl.sort()
    return nl


def test_sort_merges_covered_prefixes():
    assert len(merged_list()) == 2


@pytest.mark.parametrize(
    "addr, want",
    [
        ("192.167.255.255", False),
        ("192.168.0.0", True),
        ("192.168.1.1", True),
        ("192.168.9.255", True),
        ("192.168.255.255", True),
        ("192.169.1.1", True),
        ("192.170.1.1", False),
        ("1.1.1.1", False),
    ],
)
def test_merged_contains(addr, want):
    assert merged_list().match(addr) is want


@pytest.mark.parametrize(
    "addr, want",
    [
        ("1.0.0.0", True),
        ("1.0.0.1", True),
        ("1.0.1.0", False),
        ("2.0.0.0", True),
        ("2.0.1.255", True),
        ("2.0.2.0", False),
        ("3.0.0.0", True),
        ("2000:0000::", True),
        ("2000:0000::1", True),
        ("2000:0000:1::", True),
        ("2000:0001::", False),
        ("2000:2000::1", True),
    ],
)
def test_mixed_contains(addr, want):
    assert mixed_list().contains(addr) is want


def test_accepts_address_and_network_objects():
    nl = NetList()
    nl.append(ipaddress.ip_network("2000:0000::/32"))
    nl.sort()
    assert nl.contains(ipaddress.ip_address("2000:0000::1")) is True
    assert nl.contains(ipaddress.ip_address("2000:0001::")) is False


def test_ipv4_mapped_address_matches_ipv4_prefix():
    nl = mixed_list()
    assert nl.contains("::ffff:1.0.0.1") is True


def test_lookup_before_sort_raises():
    nl = NetList()
    nl.append("1.0.0.0/24")
    with pytest.raises(NotSortedError):
        nl.contains("1.0.0.1")


def test_append_after_sort_requires_resort():
    nl = mixed_list()
    nl.append("192.169.0.0/16")
    with pytest.raises(NotSortedError):
        nl.match("192.169.1.1")
    nl.sort()
    assert nl.match("192.169.1.1") is True


@pytest.mark.parametrize("addr", ["not-an-ip", None, ""])
def test_invalid_addr_raises(addr):
    nl = mixed_list()
    with pytest.raises(InvalidAddrError):
        nl.contains(addr)


def test_invalid_prefix_raises_and_keeps_list():
    nl = mixed_list()
    before = len(nl)
    with pytest.raises(ValueError):
        nl.append("1.0.0.0/24", "1.0.0.0/40")
    nl.sort()
    assert len(nl) == before


def test_empty_list_matches_nothing():
    nl = NetList()
    nl.sort()
    assert len(nl) == 0
    assert nl.contains("1.1.1.1") is False


def test_sort_is_idempotent():
    nl = merged_list()
    nl.sort()
    assert len(nl) == 2
    assert nl.contains("192.169.1.1") is True