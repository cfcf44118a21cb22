"""
BaseX Server Protocol Constants and Escaping

Implements the framing conventions of the BaseX server protocol:
https://docs.basex.org/wiki/Server_Protocol

Conventions:
- Strings and payloads are terminated by a single 0x00 byte
- Inside payloads, 0x00 and 0xFF are prefixed by an 0xFF escape byte
- Every exchange ends with a status byte: 0x00 success, 0x01 failure

These helpers are pure functions shared by the blocking and asyncio codecs.
"""

import re
from functools import lru_cache
from typing import Pattern, Tuple

DEFAULT_PORT = 1984
DEFAULT_CHUNK_SIZE = 4096

NUL = 0x00
ESCAPE = 0xFF

# Status bytes
STATUS_OK = 0x00
STATUS_ERROR = 0x01

# Database command opcodes (Client -> Server, before first argument)
CMD_CREATE = 0x08
CMD_ADD = 0x09
CMD_REPLACE = 0x0C
CMD_STORE = 0x0D

# Query command opcodes
QUERY_CREATE = 0x00
QUERY_CLOSE = 0x02
QUERY_BIND = 0x03
QUERY_EXECUTE = 0x05
QUERY_INFO = 0x06
QUERY_OPTIONS = 0x07
QUERY_CONTEXT = 0x0E
QUERY_UPDATING = 0x1E

OPCODE_NAMES = {
    CMD_CREATE: "create",
    CMD_ADD: "add",
    CMD_REPLACE: "replace",
    CMD_STORE: "store",
    QUERY_CREATE: "query",
    QUERY_CLOSE: "close",
    QUERY_BIND: "bind",
    QUERY_EXECUTE: "execute",
    QUERY_INFO: "info",
    QUERY_OPTIONS: "options",
    QUERY_CONTEXT: "context",
    QUERY_UPDATING: "updating",
}

_ESCAPABLE = re.compile(b"([\x00\xff])")


def escape(data: bytes) -> bytes:
    """
    Prefix every 0x00 and 0xFF byte with 0xFF.

    Example:
        >>> escape(bytes([1, 0, 9, 0xFF, 6]))
        b'\\x01\\xff\\x00\\t\\xff\\xff\\x06'
    """
    return _ESCAPABLE.sub(b"\xff\\1", data)


@lru_cache(maxsize=None)
def _special_bytes(marker: int) -> Pattern[bytes]:
    return re.compile(b"[" + re.escape(bytes([marker])) + b"\xff]")


def unescape_chunk(data: bytes, marker: int = NUL) -> Tuple[bytes, int, bool]:
    """
    Unescape ``data`` up to the first unescaped ``marker`` byte.

    A trailing lone escape byte is left unconsumed: its partner has not
    arrived yet.

    Args:
        data: Raw bytes as read from the wire
        marker: Terminator byte (NUL for every BaseX payload)

    Returns:
        Tuple of (unescaped bytes, number of input bytes consumed,
        whether the terminator was found and consumed)
    """
    pattern = _special_bytes(marker)
    output = bytearray()
    position = 0
    length = len(data)

    while True:
        match = pattern.search(data, position)
        if match is None:
            output += data[position:]
            return bytes(output), length, False

        index = match.start()
        output += data[position:index]

        if data[index] == ESCAPE and marker != ESCAPE:
            if index + 1 == length:
                return bytes(output), index, False
            output.append(data[index + 1])
            position = index + 2
            continue

        return bytes(output), index + 1, True
