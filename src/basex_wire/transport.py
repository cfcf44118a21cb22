"""
Byte-Stream Transport

The protocol engine only needs something that can read and write raw bytes
and be closed. SocketTransport is the TCP implementation used by
Client.connect(); tests substitute in-memory transports.
"""

import socket
from typing import Optional, Protocol

import structlog

logger = structlog.get_logger()


class Transport(Protocol):
    """Blocking byte stream consumed by FrameCodec"""

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes, or b'' at end of stream"""

    def write(self, data: bytes) -> None:
        """Write all of ``data``"""

    def close(self) -> None:
        """Release the underlying resource"""


class SocketTransport:
    """
    TCP transport over a connected socket.

    Reads go through the socket's buffered reader so that a single read()
    returns whatever is already available instead of blocking for ``size``.
    """

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self._reader = sock.makefile("rb")
        self.closed = False

    @classmethod
    def open(cls, host: str, port: int, timeout: Optional[float] = None) -> "SocketTransport":
        """Connect to ``host:port``; OSError propagates to the caller"""
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        logger.debug("Socket connected", host=host, port=port, timeout=timeout)
        return cls(sock)

    def read(self, size: int) -> bytes:
        return self._reader.read1(size)

    def write(self, data: bytes) -> None:
        self.sock.sendall(data)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._reader.close()
        finally:
            self.sock.close()
