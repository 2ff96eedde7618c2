# dnsrelay

Asyncio building blocks for a DNS forwarder, on top of `dnspython` and `httpx`.

| Module | What it holds |
| --- | --- |
| `dnsrelay.domain` | `FullMatcher`, `SubDomainMatcher`, `KeywordMatcher`, `RegexMatcher`, `MixMatcher`, `ReverseDomainScanner`, `normalize_domain`, `trim_dot` |
| `dnsrelay.domain_loader` | loading domain rules from text or from decoded v2ray site data; `MatcherGroup`, `DynamicMatcher` |
| `dnsrelay.elem` | `IntMatcher` for query types, classes and rcodes |
| `dnsrelay.netlist` | `NetList`, a sorted list of IPv4/IPv6 prefixes searched by binary search |
| `dnsrelay.netlist_loader` | loading prefixes from text or from decoded v2ray IP data; `NetMatcherGroup`, `DynamicNetMatcher` |
| `dnsrelay.query_context` | `QueryContext`, `RequestMeta`, `allocate_mark` |
| `dnsrelay.msg_matcher` | matchers on client IP, ECS, query name/type/class, response IPs, CNAME targets and rcode |
| `dnsrelay.entry_handler` | `EntryHandler`, which runs an `Executable` per query, `DummyServerHandler`, `make_reply` |
| `dnsrelay.server` | `Server` for DNS over UDP, TCP and TLS |
| `dnsrelay.http_handler` | `DoHHandler`, which turns DNS-over-HTTPS requests into DNS queries |
| `dnsrelay.transport` | `Transport` with one-shot, reused or pipelined connections |
| `dnsrelay.upstream` | `new_upstream()` for `udp://`, `tcp://`, `tls://` and `https://` upstreams |

## Install

```
pip install .
```

## Matching domains

All domain matchers ignore case and one trailing dot. `match` returns a
`(value, matched)` pair.

```python
from dnsrelay.domain import MixMatcher

m = MixMatcher()
m.add("domain:example.com", "proxy")   # example.com and every sub-domain
m.add("keyword:ads", "block")          # any domain containing "ads"
m.add("full:exact.test", "direct")     # exactly this domain
m.add("regexp:^cdn[0-9]+\\.", "cdn")   # applied to the lower-case, dot-less name

m.match("www.EXAMPLE.com.")   # ("proxy", True)
m.match("nothing.here")       # (None, False)
```

A pattern without a `type:` prefix goes to the default matcher, `full` unless
changed with `set_default_matcher`. Sub-matchers are tried in the order full,
domain, regexp, keyword. An unknown type or an invalid regular expression
raises `ValueError`.

Text lists hold one pattern per line, `#` starts a comment:

```python
from dnsrelay.domain_loader import parse_text_domain_file

m = parse_text_domain_file(b"example.com\n# comment\nfull:exact.test\n")
m.match("a.example.com")      # (None, True) - bare patterns are "domain" here
```

`parse_v2_suffix("cn@ads,geolocation")` parses a tag/attribute filter list into
`V2Filter` objects, and `new_v2ray_domain_dat(sites, filters)` builds a
`MixMatcher` from a mapping of country code to `V2Domain` rules.

## Matching IPs

```python
from dnsrelay.netlist import NetList
from dnsrelay.netlist_loader import load_from_text

nl = NetList()
load_from_text(nl, "192.168.0.0/16")
load_from_text(nl, "2001:db8::1")
nl.sort()                      # required after changes, before matching
nl.contains("192.168.3.4")     # True
```

`sort()` merges prefixes that are covered by others. Looking up an unsorted
list raises `NotSortedError`; an invalid address raises `InvalidAddrError`.
`load_from_reader(nl, lines)` loads one entry per line, ignoring `#` comments
and anything after the first space.

## Query context and message matchers

```python
import ipaddress
import dns.message
from dnsrelay.query_context import QueryContext, RequestMeta, allocate_mark
from dnsrelay.msg_matcher import ClientIPMatcher

q = dns.message.make_query("example.com.", "A")
qctx = QueryContext(q, RequestMeta(client_addr=ipaddress.ip_address("192.168.1.2")))

ClientIPMatcher(nl).match(qctx)   # True with the list above

mark = allocate_mark()
qctx.add_mark(mark)
qctx.has_mark(mark)               # True
```

`qctx.q` is the query, `qctx.original_query` a copy taken at creation, and
`qctx.r` the response (None until set). `qctx.copy()` deep-copies the query,
response and marks.

## Serving

`EntryHandler` runs an entry for each query. The entry sets `qctx.r`; if it
raises, times out (5 s by default) or sets no response, a SERVFAIL reply is
returned.

```python
import asyncio
import socket
from dnsrelay.entry_handler import EntryHandler, Executable, make_reply
from dnsrelay.server import Server, ServerClosedError

class Answer(Executable):
    async def exec(self, qctx):
        qctx.r = make_reply(qctx.q)

async def main():
    server = Server(dns_handler=EntryHandler(Answer()))
    udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    udp.bind(("127.0.0.1", 5353))
    tcp = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    tcp.bind(("127.0.0.1", 5353))
    tcp.listen()
    try:
        await asyncio.gather(server.serve_udp(udp), server.serve_tcp(tcp))
    except ServerClosedError:
        pass

asyncio.run(main())
```

Each `serve_*` coroutine takes ownership of its socket and ends by raising;
after `server.close()` it raises `ServerClosedError`. `serve_tls` needs a
`tls_context` or `cert`/`key` files passed to `Server`. UDP responses larger
than the client's EDNS payload size (at least 512 bytes) are truncated with the
TC flag set.

### DNS over HTTPS

`DoHHandler(dns_handler, path="/dns-query", src_ip_header="X-Forwarded-For")`
has an async `handle(HTTPRequest)` that returns an `HTTPResponse`. It accepts
RFC 8484 GET (`?dns=` base64url, `Accept: application/dns-message`) and POST
(`Content-Type: application/dns-message`) requests, answers 404 for another
path and 400 for a malformed request, and sets `Cache-Control: max-age=` to
the smallest TTL in the response.

## Upstreams

```python
import dns.message
from dnsrelay.upstream import UpstreamOptions, new_upstream

async def query():
    async with new_upstream("tls://1.1.1.1", UpstreamOptions(enable_pipeline=True)) as u:
        q = dns.message.make_query("example.com.", "A")
        return await u.exchange(q)
```

An address without a scheme is UDP; a UDP response with the TC flag is retried
over TCP. Default ports are 53, 853 and 443. `UpstreamOptions` has
`dial_addr`, `socks5` (TCP and TLS only), `so_mark` and `bind_to_device`
(Linux only), `idle_timeout` (negative disables connection reuse for TCP and
TLS), `enable_pipeline`, `max_conns`, `bootstrap` (a plain DNS server used to
resolve the upstream host name for UDP, TCP and TLS), `tls_context`,
`tls_server_name` and `logger`.

`dnsrelay.transport.Transport` can also be used directly with your own
`dial`, `write` and `read` coroutines; `read_msg_from_tcp` and
`write_msg_to_tcp` handle length-prefixed messages.

## What this package does not do

- There is no command-line program and no configuration file format; the
  pieces are wired together in Python.
- There is no HTTP server: `DoHHandler` works on `HTTPRequest` objects and has
  to be connected to a web framework or server of your choice.
- Binary v2ray `.dat` files are not decoded; the v2ray loaders take
  already-decoded mappings of `V2Domain` and `V2CIDR` entries.
- HTTPS upstreams use HTTP/1.1 through `httpx`; HTTP/3, SOCKS5 and the
  bootstrap resolver are not available for them.

## Tests

```
pip install .[test]
pytest
```