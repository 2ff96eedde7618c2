import asyncio
import contextlib
import random

import dns.message
import dns.rdatatype
import pytest

from dnsrelay.transport import (
    Transport,
    TransportClosedError,
    read_msg_from_tcp,
    write_msg_to_tcp,
)


def _query(name):
    return dns.message.make_query(name, dns.rdatatype.A)


@contextlib.asynccontextmanager
async def echo_server():
    """A TCP server echoing DNS frames back after a small random delay."""
    writers = set()
    dials = []

    async def reply(writer, lock, frame):
        await asyncio.sleep(random.random() * 0.02)
        try:
            async with lock:
                writer.write(frame)
                await writer.drain()
        except (ConnectionError, RuntimeError):
            pass

    async def handle(reader, writer):
        writers.add(writer)
        lock = asyncio.Lock()
        tasks = set()
        try:
            while True:
                header = await reader.readexactly(2)
                body = await reader.readexactly(int.from_bytes(header, "big"))
                task = asyncio.create_task(reply(writer, lock, header + body))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()
            writers.discard(writer)

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]

    async def dial():
        dials.append(1)
        return await asyncio.open_connection(host, port)

    try:
        yield dial, dials
    finally:
        server.close()
        for w in list(writers):
            w.close()


MODES = {
    "no_reuse": {"idle_timeout": -1},
    "reuse": {"idle_timeout": 0.2},
    "pipeline": {"idle_timeout": 0.1, "enable_pipeline": True, "max_conns": 16},
}


async def dial_err():
    raise ConnectionRefusedError("dial err")


async def write_err(writer, msg):
    raise ConnectionError("write err")


async def read_err(reader):
    raise ConnectionError("read err")


async def read_slow(reader):
    await asyncio.sleep(1)
    raise ConnectionError("read err")


async def read_forever(reader):
    await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_read_msg_from_tcp_parses_frame():
    q = _query("example.com.")
    wire = q.to_wire()
    reader = asyncio.StreamReader()
    reader.feed_data(len(wire).to_bytes(2, "big") + wire)
    reader.feed_eof()
    msg = await read_msg_from_tcp(reader)
    assert msg.id == q.id
    assert msg.question == q.question


@pytest.mark.asyncio
async def test_read_msg_from_tcp_truncated_frame():
    reader = asyncio.StreamReader()
    reader.feed_data(b"\x00\x0aabc")
    reader.feed_eof()
    with pytest.raises(asyncio.IncompleteReadError):
        await read_msg_from_tcp(reader)


@pytest.mark.asyncio
async def test_write_msg_to_tcp_round_trip():
    q = _query("example.com.")
    async with echo_server() as (dial, _):
        reader, writer = await dial()
        try:
            n = await write_msg_to_tcp(writer, q)
            r = await asyncio.wait_for(read_msg_from_tcp(reader), 2)
        finally:
            writer.close()
    assert n == len(q.to_wire()) + 2
    assert r.id == q.id
    assert r.question == q.question


def test_missing_funcs_rejected():
    with pytest.raises(ValueError):
        Transport(None, write_msg_to_tcp, read_msg_from_tcp)


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", list(MODES))
async def test_exchange_concurrent(mode):
    async with echo_server() as (dial, _):
        t = Transport(dial, write_msg_to_tcp, read_msg_from_tcp, max_query_per_conn=2, **MODES[mode])

        async def one(i):
            await asyncio.sleep(random.random() * 0.1)
            q = _query(f"{i}.")
            async with asyncio.timeout(2):
                r = await t.exchange(q)
            return q, r

        try:
            results = await asyncio.gather(*(one(i) for i in range(32)))
        finally:
            t.close()
    assert len(results) == 32
    for q, r in results:
        assert r.id == q.id
        assert r.question[0].name == q.question[0].name


ERROR_CASES = {
    "dial_err": ("dial", dial_err, ConnectionRefusedError, "dial err"),
    "write_err": ("write", write_err, ConnectionError, "write err"),
    "read_err": ("read", read_err, ConnectionError, "read err"),
    "read_timeout": ("read", read_slow, TimeoutError, None),
}


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", list(MODES))
@pytest.mark.parametrize("case", list(ERROR_CASES))
async def test_exchange_errors(mode, case):
    slot, bad, expected, message = ERROR_CASES[case]
    async with echo_server() as (dial, _):
        funcs = {"dial": dial, "write": write_msg_to_tcp, "read": read_msg_from_tcp}
        funcs[slot] = bad
        t = Transport(
            funcs["dial"], funcs["write"], funcs["read"], max_query_per_conn=2, **MODES[mode]
        )
        try:
            with pytest.raises(expected, match=message):
                async with asyncio.timeout(0.1):
                    await t.exchange(_query("."))
        finally:
            t.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", list(MODES))
async def test_exchange_after_close(mode):
    async with echo_server() as (dial, _):
        t = Transport(dial, write_msg_to_tcp, read_msg_from_tcp, **MODES[mode])
        t.close()
        assert t.closed is True
        with pytest.raises(TransportClosedError):
            await t.exchange(_query("."))


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["reuse", "pipeline"])
async def test_close_fails_inflight_query(mode):
    async with echo_server() as (dial, _):
        t = Transport(dial, write_msg_to_tcp, read_forever, **MODES[mode])
        task = asyncio.create_task(t.exchange(_query(".")))
        await asyncio.sleep(0.05)
        assert task.done() is False
        t.close()
        (outcome,) = await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), 1)
    assert isinstance(outcome, TransportClosedError)
    assert t.closed is True


@pytest.mark.asyncio
async def test_reusable_conn_is_reused_then_expires():
    async with echo_server() as (dial, dials):
        t = Transport(dial, write_msg_to_tcp, read_msg_from_tcp, idle_timeout=0.2)
        try:
            r1 = await asyncio.wait_for(t.exchange(_query("a.")), 2)
            r2 = await asyncio.wait_for(t.exchange(_query("b.")), 2)
            assert len(dials) == 1
            # Let the idle connection time out; a new one must be dialled.
            await asyncio.sleep(0.4)
            r3 = await asyncio.wait_for(t.exchange(_query("c.")), 2)
        finally:
            t.close()
    assert [str(r.question[0].name) for r in (r1, r2, r3)] == ["a.", "b.", "c."]
    assert len(dials) == 2


@pytest.mark.asyncio
async def test_pipeline_conn_end_of_life():
    async with echo_server() as (dial, dials):
        t = Transport(
            dial,
            write_msg_to_tcp,
            read_msg_from_tcp,
            idle_timeout=1,
            enable_pipeline=True,
            max_query_per_conn=2,
        )
        try:
            names = [f"{i}." for i in range(4)]
            responses = [await asyncio.wait_for(t.exchange(_query(n)), 2) for n in names]
        finally:
            t.close()
    assert [str(r.question[0].name) for r in responses] == names
    assert len(dials) == 2


@pytest.mark.asyncio
async def test_pipeline_restores_query_id():
    q = _query("example.com.")
    q.id = 4321
    async with echo_server() as (dial, _):
        t = Transport(
            dial, write_msg_to_tcp, read_msg_from_tcp, idle_timeout=1, enable_pipeline=True
        )
        try:
            r = await asyncio.wait_for(t.exchange(q), 2)
        finally:
            t.close()
    assert r.id == 4321
    assert q.id == 4321