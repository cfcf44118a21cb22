"""
Response Streams and Exchange Trailers

A response payload has no length prefix: it runs until an unescaped NUL,
followed by a trailer whose shape depends on the exchange:

    command:        payload\\0 info\\0 status
    query execute:  result\\0 status [error\\0]

ResponseStream exposes the payload lazily. The connection stays checked out
until the payload has been read to its terminator and the trailer consumed;
close() drains whatever is left, so releasing a stream never leaves the
connection desynchronized.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional, Union

import structlog

from .codec import FrameCodec
from .errors import CommandError, ProtocolError
from .protocol import STATUS_ERROR, STATUS_OK

if TYPE_CHECKING:
    from .aio import AsyncFrameCodec

logger = structlog.get_logger()


def _status_ok(codec: Union[FrameCodec, "AsyncFrameCodec"], status: int) -> bool:
    if status == STATUS_OK:
        return True
    if status == STATUS_ERROR:
        return False
    codec.broken = True
    raise ProtocolError(f"Invalid status byte 0x{status:02x}")


def read_status(codec: FrameCodec) -> bool:
    """
    Read the status byte closing an exchange.

    Returns:
        True for success, False for a server-reported failure

    Raises:
        ProtocolError: Any byte other than 0x00/0x01. The stream position is
            unknown afterwards, so the codec is marked broken.
    """
    return _status_ok(codec, codec.read_byte())


def read_info_response(codec: FrameCodec) -> str:
    """Read ``info\\0 status``; failure raises CommandError(info)"""
    info = codec.read_string()
    if not read_status(codec):
        raise CommandError(info)
    return info


def read_query_response(codec: FrameCodec) -> str:
    """Read ``value\\0 status [error\\0]``; failure raises ProtocolError(error)"""
    value = codec.read_string()
    if read_status(codec):
        return value
    raise ProtocolError(codec.read_string())


# asyncio counterparts, shared by basex_wire.aio

async def read_status_async(codec: "AsyncFrameCodec") -> bool:
    return _status_ok(codec, await codec.read_byte())


async def read_info_response_async(codec: "AsyncFrameCodec") -> str:
    info = await codec.read_string()
    if not await read_status_async(codec):
        raise CommandError(info)
    return info


async def read_query_response_async(codec: "AsyncFrameCodec") -> str:
    value = await codec.read_string()
    if await read_status_async(codec):
        return value
    raise ProtocolError(await codec.read_string())


class ResponseStream(ABC):
    """
    Lazy, forward-only payload reader.

    Iterate for chunks, or call read()/text(). Use as a context manager, or
    call close(), to drain and release the connection.
    """

    def __init__(self, codec: FrameCodec, on_release: Callable[["ResponseStream"], None]):
        self._codec = codec
        self._on_release = on_release
        self._chunks: Iterator[bytes] = codec.iter_payload()
        self._pending = b""
        self.drained = False
        self.closed = False
        self.error: Optional[Exception] = None

    def _start(self) -> None:
        # Pull the first chunk so an empty failed payload raises right away
        self._pending = self._next_chunk()

    @abstractmethod
    def _finish(self) -> None:
        """Consume the trailer after the payload terminator"""

    def _next_chunk(self) -> bytes:
        if self.drained:
            return b""
        for chunk in self._chunks:
            return chunk
        self._complete()
        return b""

    def _complete(self) -> None:
        self.drained = True
        try:
            self._finish()
        except (CommandError, ProtocolError) as e:
            self.error = e
            raise
        finally:
            self.closed = True
            self._on_release(self)

    def __iter__(self) -> Iterator[bytes]:
        if self._pending:
            chunk, self._pending = self._pending, b""
            yield chunk
        while not self.drained:
            chunk = self._next_chunk()
            if chunk:
                yield chunk

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes of the payload (all of it when negative)"""
        if size is None or size < 0:
            return b"".join(self)

        parts: List[bytes] = []
        remaining = size
        while remaining > 0:
            if not self._pending:
                self._pending = self._next_chunk()
                if not self._pending:
                    break
            part, self._pending = self._pending[:remaining], self._pending[remaining:]
            parts.append(part)
            remaining -= len(part)
        return b"".join(parts)

    def text(self, encoding: str = "utf-8") -> str:
        return self.read().decode(encoding)

    def close(self) -> None:
        """Drain the remaining payload and trailer; idempotent"""
        if self.closed:
            return
        self._pending = b""
        if self._codec.broken:
            self.closed = True
            self._on_release(self)
            return
        drained_bytes = 0
        while not self.drained:
            drained_bytes += len(self._next_chunk())
        if drained_bytes:
            logger.debug("Response drained on release", bytes=drained_bytes)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class CommandResponse(ResponseStream):
    """Payload of a textual command; ``info`` is set once drained"""

    def __init__(self, codec: FrameCodec, on_release: Callable[[ResponseStream], None],
                 command: str = ""):
        super().__init__(codec, on_release)
        self.command = command
        self.info: Optional[str] = None

    def _finish(self) -> None:
        info = self._codec.read_string()
        ok = read_status(self._codec)
        self.info = info
        if not ok:
            logger.warning("Command failed", command=self.command, info=info)
            raise CommandError(info)
        logger.debug("Command completed", command=self.command)


class QueryResult(ResponseStream):
    """Result payload of one query execution"""

    def __init__(self, codec: FrameCodec, on_release: Callable[[ResponseStream], None],
                 query_id: str = ""):
        super().__init__(codec, on_release)
        self.query_id = query_id

    def _finish(self) -> None:
        if read_status(self._codec):
            logger.debug("Query result drained", query_id=self.query_id)
            return
        error = self._codec.read_string()
        logger.warning("Query execution failed", query_id=self.query_id, info=error)
        raise ProtocolError(error)
