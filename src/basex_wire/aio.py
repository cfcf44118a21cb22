"""
Asyncio BaseX Client

The same protocol engine as basex_wire.client, driven by an
asyncio.StreamReader/StreamWriter pair. Framing, ownership rules, and
errors are identical: one owner at a time (an open query session or an
unread command response), UsageError before any byte is written otherwise.

Example:
    client = await AsyncClient.connect("localhost", 1984, "admin", "admin")
    async with await client.query("count(/Root/*)") as query:
        result = await query.execute()
        print(await result.text())
    await client.close()
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, List, Optional, Tuple, Union

import structlog

from .analysis import QueryInfo
from .arguments import to_query_argument
from .auth import HashFactory, authenticate_async
from .codec import Payload
from .config import ClientConfig
from .errors import (
    BaseXError,
    CommandError,
    IoError,
    ProtocolError,
    UsageError,
)
from .protocol import (
    CMD_ADD,
    CMD_CREATE,
    CMD_REPLACE,
    CMD_STORE,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_PORT,
    NUL,
    OPCODE_NAMES,
    QUERY_BIND,
    QUERY_CLOSE,
    QUERY_CONTEXT,
    QUERY_CREATE,
    QUERY_EXECUTE,
    QUERY_INFO,
    QUERY_OPTIONS,
    QUERY_UPDATING,
    escape,
    unescape_chunk,
)
from .query import STATE_BOUND, STATE_CLOSED, STATE_CREATED, STATE_EXECUTING, STATE_FAILED
from .response import read_info_response_async, read_query_response_async, read_status_async
from .serializer import SerializerOptions

logger = structlog.get_logger()


class AsyncFrameCodec:
    """Wire token reader/writer over an asyncio stream pair"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 chunk_size: int = DEFAULT_CHUNK_SIZE, timeout: Optional[float] = None):
        self.reader = reader
        self.writer = writer
        self.chunk_size = chunk_size
        self.timeout = timeout
        self._buffer = bytearray()
        self.broken = False

    async def write_raw(self, data: bytes) -> None:
        try:
            self.writer.write(bytes(data))
            await self.writer.drain()
        except OSError as e:
            logger.error("Transport write failed", error=str(e), bytes=len(data))
            self.broken = True
            raise IoError(f"Write failed: {e}") from e

    async def write_byte(self, value: int) -> None:
        await self.write_raw(bytes([value]))

    async def write_string(self, text: str) -> None:
        await self.write_raw(escape(text.encode("utf-8")) + b"\x00")

    async def write_payload(self, payload: Payload) -> None:
        if isinstance(payload, str):
            await self.write_string(payload)
            return
        if isinstance(payload, (bytes, bytearray, memoryview)):
            await self.write_raw(escape(bytes(payload)) + b"\x00")
            return

        try:
            while True:
                chunk = payload.read(self.chunk_size)
                if not chunk:
                    break
                if isinstance(chunk, str):
                    chunk = chunk.encode("utf-8")
                await self.write_raw(escape(chunk))
        except BaseException as e:
            if not self.broken:
                logger.error("Payload source failed mid-stream", error=repr(e))
            self.broken = True
            raise
        await self.write_byte(NUL)

    async def _fill(self) -> None:
        try:
            data = await asyncio.wait_for(self.reader.read(self.chunk_size), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Transport read timed out", timeout=self.timeout)
            self.broken = True
            raise IoError(f"Read timed out after {self.timeout}s") from e
        except OSError as e:
            logger.error("Transport read failed", error=str(e))
            self.broken = True
            raise IoError(f"Read failed: {e}") from e
        if not data:
            self.broken = True
            raise ProtocolError("Unexpected end of stream")
        self._buffer += data

    async def read_byte(self) -> int:
        if not self._buffer:
            await self._fill()
        value = self._buffer[0]
        del self._buffer[0]
        return value

    async def iter_payload(self, marker: int = NUL) -> AsyncIterator[bytes]:
        while True:
            chunk, consumed, done = unescape_chunk(self._buffer, marker)
            del self._buffer[:consumed]
            if chunk:
                yield chunk
            if done:
                return
            await self._fill()

    async def read_until(self, marker: int = NUL) -> bytes:
        return b"".join([chunk async for chunk in self.iter_payload(marker)])

    async def read_string(self) -> str:
        raw = await self.read_until(NUL)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Malformed UTF-8 string: {e}") from e

    async def close(self) -> None:
        self._buffer.clear()
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug("Transport close reported an error", error=str(e))


class AsyncResponseStream(ABC):
    """Lazy payload reader; ``aclose()`` drains and releases the connection"""

    def __init__(self, codec: AsyncFrameCodec,
                 on_release: Callable[["AsyncResponseStream"], None]):
        self._codec = codec
        self._on_release = on_release
        self._chunks = codec.iter_payload()
        self._pending = b""
        self.drained = False
        self.closed = False
        self.error: Optional[Exception] = None

    async def _start(self) -> None:
        self._pending = await self._next_chunk()

    @abstractmethod
    async def _finish(self) -> None:
        """Consume the trailer after the payload terminator"""

    async def _next_chunk(self) -> bytes:
        if self.drained:
            return b""
        async for chunk in self._chunks:
            return chunk
        await self._complete()
        return b""

    async def _complete(self) -> None:
        self.drained = True
        try:
            await self._finish()
        except (CommandError, ProtocolError) as e:
            self.error = e
            raise
        finally:
            self.closed = True
            self._on_release(self)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self._pending:
            chunk, self._pending = self._pending, b""
            yield chunk
        while not self.drained:
            chunk = await self._next_chunk()
            if chunk:
                yield chunk

    async def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            return b"".join([chunk async for chunk in self])

        parts: List[bytes] = []
        remaining = size
        while remaining > 0:
            if not self._pending:
                self._pending = await self._next_chunk()
                if not self._pending:
                    break
            part, self._pending = self._pending[:remaining], self._pending[remaining:]
            parts.append(part)
            remaining -= len(part)
        return b"".join(parts)

    async def text(self, encoding: str = "utf-8") -> str:
        return (await self.read()).decode(encoding)

    async def aclose(self) -> None:
        if self.closed:
            return
        self._pending = b""
        if self._codec.broken:
            self.closed = True
            self._on_release(self)
            return
        while not self.drained:
            await self._next_chunk()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


class AsyncCommandResponse(AsyncResponseStream):

    def __init__(self, codec: AsyncFrameCodec, on_release, command: str = ""):
        super().__init__(codec, on_release)
        self.command = command
        self.info: Optional[str] = None

    async def _finish(self) -> None:
        info = await self._codec.read_string()
        ok = await read_status_async(self._codec)
        self.info = info
        if not ok:
            logger.warning("Command failed", command=self.command, info=info)
            raise CommandError(info)


class AsyncQueryResult(AsyncResponseStream):

    def __init__(self, codec: AsyncFrameCodec, on_release, query_id: str = ""):
        super().__init__(codec, on_release)
        self.query_id = query_id

    async def _finish(self) -> None:
        if await read_status_async(self._codec):
            return
        error = await self._codec.read_string()
        logger.warning("Query execution failed", query_id=self.query_id, info=error)
        raise ProtocolError(error)


class AsyncQuerySession:
    """Asyncio counterpart of QuerySession, with the same state machine"""

    def __init__(self, client: "AsyncClient", query_id: str, text: str = "",
                 with_info: bool = False):
        self._client = client
        self._codec = client.codec
        self.id: Optional[str] = query_id
        self.text = text
        self.with_info = with_info
        self.state = STATE_CREATED
        self._result: Optional[AsyncQueryResult] = None

    @property
    def closed(self) -> bool:
        return self.state == STATE_CLOSED

    def _ensure_ready(self) -> None:
        if self.state == STATE_CLOSED:
            raise UsageError("Query session is closed")
        if self._result is not None:
            raise UsageError("Previous query result is still open; read or close it first")
        if self.state == STATE_FAILED:
            raise UsageError("Query execution failed; the session can only be closed")
        self._client._ensure_usable()

    async def _send(self, opcode: int, *arguments: Payload) -> None:
        logger.debug("Query request", opcode=OPCODE_NAMES[opcode], query_id=self.id)
        await self._codec.write_byte(opcode)
        await self._codec.write_string(self.id)
        for argument in arguments:
            await self._codec.write_payload(argument)

    async def _exchange(self, opcode: int, *arguments: Payload) -> str:
        self._ensure_ready()
        await self._send(opcode, *arguments)
        return await read_query_response_async(self._codec)

    async def bind(self, name: str, value: Any = None,
                   type: Optional[str] = None) -> "AsyncQuerySession":
        text, type_name = to_query_argument(value, type)
        await self._exchange(QUERY_BIND, name, text, type_name)
        self.state = STATE_BOUND
        return self

    async def context(self, value: Payload, type: str = "document-node()") -> "AsyncQuerySession":
        await self._exchange(QUERY_CONTEXT, value, type)
        self.state = STATE_BOUND
        return self

    async def execute(self) -> AsyncQueryResult:
        self._ensure_ready()
        await self._send(QUERY_EXECUTE)

        result = AsyncQueryResult(self._codec, self._release_result, self.id)
        self._result = result
        self.state = STATE_EXECUTING
        await result._start()
        return result

    def _release_result(self, result: AsyncResponseStream) -> None:
        if self._result is not result:
            return
        self._result = None
        if self.state == STATE_EXECUTING:
            self.state = STATE_FAILED if result.error is not None else STATE_BOUND

    async def info(self) -> QueryInfo:
        return QueryInfo.parse(await self._exchange(QUERY_INFO))

    async def options(self) -> SerializerOptions:
        return SerializerOptions.parse(await self._exchange(QUERY_OPTIONS))

    async def updating(self) -> bool:
        value = await self._exchange(QUERY_UPDATING)
        if value not in ("true", "false"):
            raise ProtocolError(f"Expected boolean string, got {value!r}")
        return value == "true"

    async def close(self) -> None:
        """Drain any open result, close the server-side query; idempotent"""
        if self.state == STATE_CLOSED:
            return

        if self._result is not None:
            try:
                await self._result.aclose()
            except ProtocolError as e:
                logger.debug("Execution error discarded on close", query_id=self.id, info=e.info)

        try:
            if self._codec.broken or self._client.closed:
                return
            await self._send(QUERY_CLOSE)
            await read_query_response_async(self._codec)
        finally:
            self.state = STATE_CLOSED
            self.id = None
            self._client._release(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


AsyncOwner = Union[AsyncQuerySession, AsyncResponseStream]


class AsyncClient:
    """Asyncio BaseX session; one connection, one owner at a time"""

    def __init__(self, codec: AsyncFrameCodec, username: str = ""):
        self.codec = codec
        self.username = username
        self.closed = False
        self._owner: Optional[AsyncOwner] = None
        self._query_info = False

    @classmethod
    async def connect(cls, host: str = "localhost", port: int = DEFAULT_PORT,
                      user: str = "admin", password: str = "admin",
                      timeout: Optional[float] = None,
                      chunk_size: int = DEFAULT_CHUNK_SIZE,
                      hash_factory: HashFactory = hashlib.md5) -> "AsyncClient":
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.error("Connection failed", host=host, port=port, error=str(e))
            raise IoError(f"Cannot connect to {host}:{port}: {e}") from e

        client = await cls.from_streams(reader, writer, user, password, chunk_size,
                                        hash_factory, timeout)
        logger.info("Connected to BaseX", host=host, port=port, user=user)
        return client

    @classmethod
    async def from_streams(cls, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                           user: str, password: str,
                           chunk_size: int = DEFAULT_CHUNK_SIZE,
                           hash_factory: HashFactory = hashlib.md5,
                           timeout: Optional[float] = None) -> "AsyncClient":
        """Authenticate over an already open stream pair; ``timeout`` bounds each read"""
        codec = AsyncFrameCodec(reader, writer, chunk_size, timeout)
        try:
            await authenticate_async(codec, user, password, hash_factory)
        except BaseXError:
            await codec.close()
            raise
        return cls(codec, user)

    @classmethod
    async def from_config(cls, config: ClientConfig) -> "AsyncClient":
        return await cls.connect(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password.get_secret_value(),
            timeout=config.timeout,
            chunk_size=config.chunk_size,
        )

    def _ensure_usable(self) -> None:
        if self.closed:
            raise IoError("Client is closed")
        if self.codec.broken:
            raise IoError("Connection is unusable after an earlier I/O or framing failure")

    def _ensure_idle(self) -> None:
        self._ensure_usable()
        if self._owner is not None:
            raise UsageError(
                f"Connection is held by an open {type(self._owner).__name__}; close it first"
            )

    def _acquire(self, owner: AsyncOwner) -> None:
        self._ensure_idle()
        self._owner = owner

    def _release(self, owner: AsyncOwner) -> None:
        if self._owner is owner:
            self._owner = None

    @property
    def busy(self) -> bool:
        return self._owner is not None

    async def execute_stream(self, command: str,
                             input: Optional[Payload] = None) -> AsyncCommandResponse:
        self._ensure_idle()
        logger.debug("Executing command", command=command)
        await self.codec.write_string(command)
        if input is not None:
            await self.codec.write_payload(input)

        response = AsyncCommandResponse(self.codec, self._release, command)
        self._acquire(response)
        await response._start()
        return response

    async def execute(self, command: str, input: Optional[Payload] = None) -> Tuple[str, str]:
        """Execute a textual command; returns (payload, info)"""
        async with await self.execute_stream(command, input) as response:
            payload = await response.read()
        return payload.decode("utf-8"), response.info

    async def _resource_command(self, opcode: int, name: str, payload: Optional[Payload]) -> str:
        self._ensure_idle()
        logger.debug("Sending resource command", opcode=OPCODE_NAMES[opcode], name=name)
        await self.codec.write_byte(opcode)
        await self.codec.write_string(name)
        await self.codec.write_payload(b"" if payload is None else payload)
        return await read_info_response_async(self.codec)

    async def create(self, name: str, input: Optional[Payload] = None) -> str:
        return await self._resource_command(CMD_CREATE, name, input)

    async def add(self, path: str, input: Payload) -> str:
        return await self._resource_command(CMD_ADD, path, input)

    async def replace(self, path: str, input: Payload) -> str:
        return await self._resource_command(CMD_REPLACE, path, input)

    async def store(self, path: str, input: Payload) -> str:
        return await self._resource_command(CMD_STORE, path, input)

    async def query(self, text: Payload, info: bool = False) -> AsyncQuerySession:
        self._ensure_idle()
        if info != self._query_info:
            await self.execute(f"SET QUERYINFO {'true' if info else 'false'}")
            self._query_info = info

        await self.codec.write_byte(QUERY_CREATE)
        await self.codec.write_payload(text)
        query_id = await read_query_response_async(self.codec)

        session = AsyncQuerySession(self, query_id, text if isinstance(text, str) else "", info)
        self._acquire(session)
        logger.debug("Query created", query_id=query_id)
        return session

    async def close(self) -> None:
        if self.closed:
            return
        if self._owner is None and not self.codec.broken:
            try:
                await self.codec.write_string("exit")
            except IoError as e:
                logger.debug("Exit command not delivered", error=str(e))
        self.closed = True
        self._owner = None
        await self.codec.close()
        logger.info("Connection closed", user=self.username)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
