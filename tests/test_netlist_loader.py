import io

import pytest

from dnsrelay.netlist import NetList
from dnsrelay.netlist_loader import (
    DynamicNetMatcher,
    NetMatcherGroup,
    V2CIDR,
    load,
    load_from_reader,
    load_from_text,
    load_from_v2_cidr,
    new_v2ray_ip_dat,
)

MERGE_RAW = """
192.168.0.0/32 # merged
192.168.0.0/24 # merged
192.168.0.0/16
192.168.1.1/24 # merged
192.168.9.24/24 # merged
192.168.3.0/24 # merged
192.169.0.0/16
"""

CONTAINS_RAW = """
# comment line
1.0.0.0/24 additional strings should be ignored 
2.0.0.0/23 # comment
3.0.0.0

2000:0000::/32
2000:2000::1
"""


@pytest.fixture
def merged_list():
    nl = NetList()
    load_from_reader(nl, io.StringIO(MERGE_RAW))
    nl.sort()
    return nl


@pytest.fixture
def contains_list():
    nl = NetList()
    load_from_reader(nl, io.StringIO(CONTAINS_RAW))
    nl.sort()
    return nl


def test_sort_and_merge_length(merged_list):
    assert len(merged_list) == 2


@pytest.mark.parametrize(
    "ip, want",
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
def test_sort_and_merge_match(merged_list, ip, want):
    assert merged_list.match(ip) is want


@pytest.mark.parametrize(
    "ip, want",
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
def test_new_and_contains(contains_list, ip, want):
    assert contains_list.match(ip) is want


def test_load_from_reader_reports_line():
    with pytest.raises(ValueError, match="line #2"):
        load_from_reader(NetList(), io.StringIO("1.1.1.1\nnot-an-ip\n"))


def test_load_from_text_rejects_bad_input():
    with pytest.raises(ValueError):
        load_from_text(NetList(), "1.2.3.4/33")
    with pytest.raises(ValueError):
        load_from_text(NetList(), "1.2.3.4/255.255.0.0")
    with pytest.raises(ValueError):
        load_from_text(NetList(), "1.2.3")


def test_load_trims_space():
    nl = NetList()
    load(nl, "  10.0.0.1  ")
    nl.sort()
    assert nl.match("10.0.0.1") is True
    assert nl.match("10.0.0.2") is False


def test_load_from_v2_cidr():
    nl = NetList()
    load_from_v2_cidr(nl, [V2CIDR(bytes([10, 0, 0, 0]), 8), V2CIDR(bytes(15) + b"\x01", 128)])
    nl.sort()
    assert nl.match("10.20.30.40") is True
    assert nl.match("::1") is True
    assert nl.match("11.0.0.0") is False


def test_load_from_v2_cidr_errors():
    with pytest.raises(ValueError, match="invalid ip data at index #0"):
        load_from_v2_cidr(NetList(), [V2CIDR(b"\x01\x02", 8)])
    with pytest.raises(ValueError, match="invalid cidr data at index #0"):
        load_from_v2_cidr(NetList(), [V2CIDR(bytes([1, 2, 3, 4]), 40)])


def test_new_v2ray_ip_dat():
    entries = {"CN": [V2CIDR(bytes([1, 0, 0, 0]), 24)], "US": [V2CIDR(bytes([8, 8, 8, 0]), 24)]}
    nl = new_v2ray_ip_dat(entries, "cn")
    assert nl.match("1.0.0.5") is True
    assert nl.match("8.8.8.8") is False
    both = new_v2ray_ip_dat(entries, "cn,us")
    assert len(both) == 2
    with pytest.raises(ValueError, match="tag jp does not exist"):
        new_v2ray_ip_dat(entries, "jp")


def _parse(data: bytes) -> NetList:
    nl = NetList()
    load_from_reader(nl, io.StringIO(data.decode()))
    nl.sort()
    return nl


def test_dynamic_net_matcher():
    d = DynamicNetMatcher(_parse)
    assert d.match("1.1.1.1") is False
    d.update(b"1.1.1.0/24\n")
    assert d.match("1.1.1.1") is True
    assert len(d) == 1
    with pytest.raises(ValueError):
        d.update(b"garbage\n")
    assert d.match("1.1.1.1") is True


def test_net_matcher_group(merged_list, contains_list):
    closed = []
    with NetMatcherGroup() as g:
        g.append(merged_list)
        g.append(contains_list)
        g.append_closer(lambda: closed.append(1))
        assert g.match("192.168.5.5") is True
        assert g.match("3.0.0.0") is True
        assert g.match("9.9.9.9") is False
        assert len(g) == len(merged_list) + len(contains_list)
    assert closed == [1]