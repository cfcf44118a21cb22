"""
Pytest configuration for basex-wire tests

Unit and contract tests run against in-memory transports that replay
scripted server bytes and record everything the client writes. E2E tests
talk to a real BaseX server and are skipped when none is reachable.
"""

import socket
from typing import Callable, Tuple

import pytest
import structlog

from basex_wire.client import Client
from basex_wire.config import ClientConfig

logger = structlog.get_logger()

# Realm challenge used by the BaseX documentation; admin/admin answers it with
# af13b20af0e0b0e3517a406c42622d3d
CHALLENGE = b"BaseX:19501915960728\x00"
HANDSHAKE = CHALLENGE + b"\x00"


class ScriptedTransport:
    """
    In-memory transport: reads replay ``incoming``, writes are recorded.

    ``read_size`` caps each read so tests can force payloads and escape
    pairs to straddle chunk boundaries.
    """

    def __init__(self, incoming: bytes = b"", read_size: int = 0):
        self.incoming = bytearray(incoming)
        self.written = bytearray()
        self.read_size = read_size
        self.closed = False

    def feed(self, data: bytes) -> None:
        self.incoming += data

    def read(self, size: int) -> bytes:
        if self.read_size:
            size = min(size, self.read_size)
        data = bytes(self.incoming[:size])
        del self.incoming[:size]
        return data

    def write(self, data: bytes) -> None:
        if self.closed:
            raise OSError("transport closed")
        self.written += data

    def close(self) -> None:
        self.closed = True


class FailingTransport(ScriptedTransport):
    """Raises OSError on reads (and optionally writes) once the script runs out"""

    def __init__(self, incoming: bytes = b"", fail_writes: bool = False):
        super().__init__(incoming)
        self.fail_writes = fail_writes

    def read(self, size: int) -> bytes:
        if not self.incoming:
            raise ConnectionResetError("connection reset by peer")
        return super().read(size)

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise BrokenPipeError("broken pipe")
        super().write(data)


@pytest.fixture
def connect() -> Callable[..., Tuple[Client, ScriptedTransport]]:
    """
    Factory returning an authenticated (client, transport) pair.

    The handshake is replayed first; ``responses`` are queued after it. The
    handshake bytes are cleared from ``transport.written`` so assertions
    only see the requests issued by the test.
    """

    def _connect(*responses: bytes, read_size: int = 0, chunk_size: int = 4096):
        transport = ScriptedTransport(HANDSHAKE + b"".join(responses), read_size=read_size)
        client = Client.from_transport(transport, "admin", "admin", chunk_size=chunk_size)
        transport.written.clear()
        return client, transport

    return _connect


def is_basex_available(host: str, port: int) -> bool:
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except OSError:
        return False


@pytest.fixture(scope="session")
def basex_config() -> ClientConfig:
    """Connection settings for E2E tests, from BASEX_* environment variables"""
    config = ClientConfig.from_env()
    if not is_basex_available(config.host, config.port):
        pytest.skip(f"BaseX server not reachable at {config.host}:{config.port}")
    logger.info("Using BaseX server", host=config.host, port=config.port)
    return config


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "contract: Wire-level contract tests against scripted transports"
    )
    config.addinivalue_line(
        "markers", "e2e: E2E tests with a real BaseX server"
    )
    config.addinivalue_line(
        "markers", "requires_basex: Tests requiring a BaseX server connection"
    )
