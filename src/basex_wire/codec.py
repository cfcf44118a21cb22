"""
Frame Codec

Encodes and decodes the primitive wire tokens of the BaseX server protocol
over a blocking Transport:
- NUL-terminated strings
- escaped, NUL-terminated binary payloads
- single status/opcode bytes

The codec has no protocol semantics: it never interprets status bytes.
It keeps a read-ahead buffer so bytes received after a terminator are
available to the next read instead of being lost.
"""

from typing import IO, Iterator, Union

import structlog

from .errors import IoError, ProtocolError
from .protocol import DEFAULT_CHUNK_SIZE, NUL, escape, unescape_chunk
from .transport import Transport

logger = structlog.get_logger()

Payload = Union[str, bytes, bytearray, IO[bytes]]


class FrameCodec:
    """Wire token reader/writer bound to one transport"""

    def __init__(self, transport: Transport, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.transport = transport
        self.chunk_size = chunk_size
        self._buffer = bytearray()
        # Set once the stream position can no longer be trusted
        self.broken = False

    # Writing

    def write_raw(self, data: bytes) -> None:
        """Write ``data`` verbatim"""
        try:
            self.transport.write(bytes(data))
        except OSError as e:
            logger.error("Transport write failed", error=str(e), bytes=len(data))
            self.broken = True
            raise IoError(f"Write failed: {e}") from e

    def write_byte(self, value: int) -> None:
        self.write_raw(bytes([value]))

    def write_string(self, text: str) -> None:
        """Write UTF-8 ``text`` followed by the NUL terminator"""
        self.write_raw(escape(text.encode("utf-8")) + b"\x00")

    def write_payload(self, payload: Payload) -> None:
        """
        Write a binary-safe argument: escaped bytes followed by NUL.

        Args:
            payload: str (sent as UTF-8), bytes, or a binary file-like object
                     which is streamed in chunk_size pieces
        """
        if isinstance(payload, str):
            self.write_string(payload)
            return
        if isinstance(payload, (bytes, bytearray, memoryview)):
            self.write_raw(escape(bytes(payload)) + b"\x00")
            return

        # A source failing mid-stream leaves an unterminated argument on the wire
        try:
            while True:
                chunk = payload.read(self.chunk_size)
                if not chunk:
                    break
                if isinstance(chunk, str):
                    chunk = chunk.encode("utf-8")
                self.write_raw(escape(chunk))
        except BaseException as e:
            if not self.broken:
                logger.error("Payload source failed mid-stream", error=repr(e))
            self.broken = True
            raise
        self.write_byte(NUL)

    # Reading

    def _fill(self) -> None:
        try:
            data = self.transport.read(self.chunk_size)
        except OSError as e:
            logger.error("Transport read failed", error=str(e))
            self.broken = True
            raise IoError(f"Read failed: {e}") from e
        if not data:
            self.broken = True
            raise ProtocolError("Unexpected end of stream")
        self._buffer += data

    def read_byte(self) -> int:
        if not self._buffer:
            self._fill()
        value = self._buffer[0]
        del self._buffer[0]
        return value

    def iter_payload(self, marker: int = NUL) -> Iterator[bytes]:
        """
        Lazily yield the unescaped chunks of one payload.

        The terminating ``marker`` is consumed but not yielded. Stopping the
        iteration early leaves the stream positioned mid-payload.
        """
        while True:
            chunk, consumed, done = unescape_chunk(self._buffer, marker)
            del self._buffer[:consumed]
            if chunk:
                yield chunk
            if done:
                return
            self._fill()

    def read_until(self, marker: int = NUL) -> bytes:
        """Read and unescape bytes up to (excluding) the ``marker`` byte"""
        return b"".join(self.iter_payload(marker))

    def read_string(self) -> str:
        raw = self.read_until(NUL)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Malformed UTF-8 string: {e}") from e

    def close(self) -> None:
        self._buffer.clear()
        try:
            self.transport.close()
        except OSError as e:
            raise IoError(f"Close failed: {e}") from e
