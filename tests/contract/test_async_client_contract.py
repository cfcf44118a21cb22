"""
Contract Tests for the asyncio Client

Same wire contract as the blocking client, driven through a real
asyncio.StreamReader fed with scripted server bytes.
"""

import asyncio

import pytest

from basex_wire.aio import AsyncClient, AsyncResponseStream
from basex_wire.config import ClientConfig
from basex_wire.errors import AuthenticationError, CommandError, IoError, ProtocolError, UsageError
from basex_wire.query import STATE_BOUND, STATE_CLOSED, STATE_FAILED

from conftest import HANDSHAKE

pytestmark = pytest.mark.contract

CREATED = b"test\x00\x00"
OK = b"\x00\x00"


class RecordingWriter:
    """Stand-in for asyncio.StreamWriter that records written bytes"""

    def __init__(self):
        self.written = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("writer closed")
        self.written += data

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


class ResettingReader:
    """Reader that serves its data once, then fails like a reset socket"""

    def __init__(self, data: bytes):
        self._data = data

    async def read(self, n: int = -1) -> bytes:
        if self._data:
            data, self._data = self._data, b""
            return data
        raise ConnectionResetError("connection reset by peer")


async def make_client(*responses: bytes, handshake: bytes = HANDSHAKE, eof: bool = False):
    reader = asyncio.StreamReader()
    reader.feed_data(handshake + b"".join(responses))
    if eof:
        reader.feed_eof()
    writer = RecordingWriter()
    client = await AsyncClient.from_streams(reader, writer, "admin", "admin")
    writer.written.clear()
    return client, writer


@pytest.mark.asyncio
async def test_handshake_digest():
    reader = asyncio.StreamReader()
    reader.feed_data(HANDSHAKE)
    writer = RecordingWriter()

    await AsyncClient.from_streams(reader, writer, "admin", "admin")

    assert bytes(writer.written) == b"admin\x00af13b20af0e0b0e3517a406c42622d3d\x00"


@pytest.mark.asyncio
async def test_rejected_handshake_closes_writer():
    reader = asyncio.StreamReader()
    reader.feed_data(b"BaseX:19501915960728\x00\x01")
    writer = RecordingWriter()

    with pytest.raises(AuthenticationError):
        await AsyncClient.from_streams(reader, writer, "admin", "wrong")
    assert writer.closed


@pytest.mark.asyncio
async def test_execute():
    client, writer = await make_client(b"result\x00Query executed.\x00\x00")

    payload, info = await client.execute("xquery 1 + 2")

    assert bytes(writer.written) == b"xquery 1 + 2\x00"
    assert (payload, info) == ("result", "Query executed.")


@pytest.mark.asyncio
async def test_failed_command():
    client, _ = await make_client(b"\x00Database 'nope' was not found.\x00\x01")

    with pytest.raises(CommandError) as excinfo:
        await client.execute("open nope")

    assert excinfo.value.info == "Database 'nope' was not found."
    assert not client.busy


@pytest.mark.asyncio
async def test_execute_stream_async_iteration():
    client, _ = await make_client(b"\xff\x00abc\x00info\x00\x00")

    response = await client.execute_stream("retrieve blob")
    chunks = [chunk async for chunk in response]

    assert b"".join(chunks) == b"\x00abc"
    assert response.info == "info"
    assert not client.busy


@pytest.mark.asyncio
async def test_create():
    client, writer = await make_client(b"Database 'lambada' created in 2.1 ms.\x00\x00")

    info = await client.create("lambada", "<Root><A/><B/><C/></Root>")

    assert bytes(writer.written) == b"\x08lambada\x00<Root><A/><B/><C/></Root>\x00"
    assert info.startswith("Database 'lambada' created")


@pytest.mark.asyncio
async def test_query_session_round_trip():
    client, writer = await make_client(CREATED, OK, OK, b"3\x00\x00", OK)

    async with await client.query("count(/Root/*)") as query:
        await query.bind("foo", "aaa")
        await query.context("aaa")
        result = await query.execute()
        assert await result.text() == "3"
        assert query.state == STATE_BOUND

    assert bytes(writer.written) == (
        b"\x00count(/Root/*)\x00"
        b"\x03test\x00foo\x00aaa\x00xs:string\x00"
        b"\x0etest\x00aaa\x00document-node()\x00"
        b"\x05test\x00"
        b"\x02test\x00"
    )
    assert query.state == STATE_CLOSED
    assert not client.busy


@pytest.mark.asyncio
async def test_single_session_rule():
    client, writer = await make_client(CREATED)
    await client.query("1")
    writer.written.clear()

    with pytest.raises(UsageError):
        await client.query("2")
    with pytest.raises(UsageError):
        await client.execute("list")

    assert writer.written == b""


@pytest.mark.asyncio
async def test_failed_execute_only_allows_close():
    client, writer = await make_client(
        CREATED,
        b"\x00\x01Stopped at ., 1/1:\n[FOER0000] Halted on error().\x00",
        OK,
    )
    query = await client.query("error()")

    with pytest.raises(ProtocolError):
        await query.execute()
    assert query.state == STATE_FAILED

    with pytest.raises(UsageError):
        await query.bind("x", 1)

    writer.written.clear()
    await query.close()
    await query.close()
    assert bytes(writer.written) == b"\x02test\x00"


@pytest.mark.asyncio
async def test_end_of_stream_breaks_connection():
    client, _ = await make_client(b"partial", eof=True)

    with pytest.raises(ProtocolError, match="Unexpected end of stream"):
        await client.execute("list")
    with pytest.raises(IoError):
        await client.execute("list")


@pytest.mark.asyncio
async def test_close_sends_exit():
    client, writer = await make_client()

    async with client:
        pass
    await client.close()

    assert bytes(writer.written) == b"exit\x00"
    assert writer.closed


@pytest.mark.asyncio
async def test_aclose_drains_unread_payload():
    client, _ = await make_client(b"unread payload\x00first\x00\x00", b"\x00second\x00\x00")

    async with await client.execute_stream("retrieve doc") as response:
        assert await response.read(2) == b"un"

    assert response.info == "first"
    assert not client.busy
    assert await client.execute("info") == ("", "second")


@pytest.mark.asyncio
async def test_session_close_drains_open_result():
    client, writer = await make_client(CREATED, b"unread\x00\x00", OK)
    query = await client.query("1")
    await query.execute()
    writer.written.clear()

    await query.close()

    assert bytes(writer.written) == b"\x02test\x00"
    assert query.state == STATE_CLOSED
    assert not client.busy


@pytest.mark.asyncio
async def test_failed_resource_command():
    client, _ = await make_client(b"Resource 'a.xml' not found.\x00\x01")

    with pytest.raises(CommandError) as excinfo:
        await client.replace("a.xml", "<a/>")

    assert excinfo.value.info == "Resource 'a.xml' not found."
    assert not client.busy


@pytest.mark.asyncio
async def test_transport_failure_is_fatal():
    writer = RecordingWriter()
    client = await AsyncClient.from_streams(ResettingReader(HANDSHAKE), writer, "admin", "admin")

    with pytest.raises(IoError, match="Read failed"):
        await client.execute("list")
    assert client.codec.broken
    with pytest.raises(IoError):
        await client.execute("list")


@pytest.mark.asyncio
async def test_read_timeout_breaks_connection():
    reader = asyncio.StreamReader()
    reader.feed_data(HANDSHAKE)
    writer = RecordingWriter()
    client = await AsyncClient.from_streams(reader, writer, "admin", "admin", timeout=0.01)

    with pytest.raises(IoError, match="timed out"):
        await client.execute("list")
    assert client.codec.broken
    with pytest.raises(IoError):
        await client.execute("list")


@pytest.mark.asyncio
async def test_failing_upload_source_breaks_connection():
    class FlakySource:
        def __init__(self):
            self.reads = 0

        def read(self, size):
            self.reads += 1
            if self.reads > 1:
                raise ValueError("source went away")
            return b"<doc>"

    client, writer = await make_client()

    with pytest.raises(ValueError, match="source went away"):
        await client.store("doc.xml", FlakySource())
    assert client.codec.broken

    writer.written.clear()
    with pytest.raises(IoError):
        await client.execute("list")
    assert writer.written == b""


@pytest.mark.asyncio
async def test_from_config(monkeypatch):
    calls = {}

    async def fake_connect(**kwargs):
        calls.update(kwargs)
        return "client"

    monkeypatch.setattr(AsyncClient, "connect", fake_connect)
    config = ClientConfig(host="db.example.org", port=1985, user="reader",
                          password="s3cret", timeout=2.5, chunk_size=8192)

    assert await AsyncClient.from_config(config) == "client"
    assert calls == {
        "host": "db.example.org",
        "port": 1985,
        "user": "reader",
        "password": "s3cret",
        "timeout": 2.5,
        "chunk_size": 8192,
    }


def test_response_stream_base_is_abstract():
    with pytest.raises(TypeError):
        AsyncResponseStream(None, lambda stream: None)
