import asyncio
import ipaddress

import dns.flags
import dns.message
import dns.rcode
import pytest

from dnsrelay.entry_handler import DummyServerHandler, EntryHandler, Executable, make_reply
from dnsrelay.query_context import RequestMeta


def _query(name="example.com.", rdtype="A"):
    q = dns.message.make_query(name, rdtype)
    q.id = 1234
    return q


class _Responder(Executable):
    def __init__(self, raise_after=None):
        self.seen = None
        self.raise_after = raise_after

    async def exec(self, qctx):
        self.seen = qctx
        qctx.r = make_reply(qctx.q)
        if self.raise_after is not None:
            raise self.raise_after


class _Failing(Executable):
    async def exec(self, qctx):
        raise RuntimeError("boom")


class _Silent(Executable):
    async def exec(self, qctx):
        return None


class _Slow(Executable):
    async def exec(self, qctx):
        await asyncio.sleep(1)
        qctx.r = make_reply(qctx.q)


class _SyncResponder:
    def exec(self, qctx):
        qctx.r = make_reply(qctx.q)


def test_entry_handler_requires_entry():
    with pytest.raises(ValueError):
        EntryHandler(None)


@pytest.mark.asyncio
async def test_entry_response_is_returned():
    entry = _Responder()
    h = EntryHandler(entry)
    q = _query()
    meta = RequestMeta(client_addr=ipaddress.ip_address("127.0.0.1"))
    r = await h.serve_dns(q, meta)
    assert r.id == q.id
    assert r.rcode() == dns.rcode.NOERROR
    assert r.flags & dns.flags.QR
    assert entry.seen.q is q
    assert entry.seen.req_meta.client_addr == ipaddress.ip_address("127.0.0.1")


@pytest.mark.asyncio
async def test_entry_error_gives_servfail():
    q = _query()
    r = await EntryHandler(_Failing()).serve_dns(q, None)
    assert r.rcode() == dns.rcode.SERVFAIL
    assert r.id == q.id
    assert r.question == q.question


@pytest.mark.asyncio
async def test_entry_error_overrides_response():
    r = await EntryHandler(_Responder(raise_after=RuntimeError("late"))).serve_dns(_query(), None)
    assert r.rcode() == dns.rcode.SERVFAIL


@pytest.mark.asyncio
async def test_entry_without_response_gives_servfail():
    r = await EntryHandler(_Silent()).serve_dns(_query(), None)
    assert r.rcode() == dns.rcode.SERVFAIL


@pytest.mark.asyncio
async def test_entry_timeout_gives_servfail():
    h = EntryHandler(_Slow(), query_timeout=0.05)
    r = await h.serve_dns(_query(), None)
    assert r.rcode() == dns.rcode.SERVFAIL


@pytest.mark.asyncio
async def test_recursion_available_flag():
    q = _query()
    with_ra = await EntryHandler(_Responder(), recursion_available=True).serve_dns(q, None)
    without_ra = await EntryHandler(_Responder()).serve_dns(_query(), None)
    assert (with_ra.flags & dns.flags.RA) == dns.flags.RA
    assert (without_ra.flags & dns.flags.RA) == 0
    assert with_ra.rcode() == dns.rcode.NOERROR
    assert with_ra.id == q.id


@pytest.mark.asyncio
async def test_sync_entry_is_supported():
    q = _query()
    r = await EntryHandler(_SyncResponder()).serve_dns(q, None)
    assert r.rcode() == dns.rcode.NOERROR
    assert r.id == q.id


def test_make_reply_keeps_rd_and_question():
    q = _query()
    r = make_reply(q)
    assert r.flags & dns.flags.QR
    assert r.flags & dns.flags.RD
    assert r.question == q.question
    assert q.is_response(r)


@pytest.mark.asyncio
async def test_dummy_handler_raises_wanted_error():
    err = ConnectionResetError("reset")
    with pytest.raises(ConnectionResetError):
        await DummyServerHandler(want_err=err).serve_dns(_query(), None)


@pytest.mark.asyncio
async def test_dummy_handler_copies_wanted_msg_with_request_id():
    want = make_reply(_query("other.example.com."))
    want.id = 7
    q = _query()
    r = await DummyServerHandler(want_msg=want).serve_dns(q, None)
    assert r.id == q.id
    assert r.question == want.question
    assert want.id == 7


@pytest.mark.asyncio
async def test_dummy_handler_default_reply():
    q = _query()
    r = await DummyServerHandler().serve_dns(q, None)
    assert q.is_response(r)
    assert r.rcode() == dns.rcode.NOERROR