"""
BaseX Wire Protocol Client

A client for the BaseX XML database server protocol: framing, challenge
authentication, the command channel, and server-side query sessions.
Blocking API in basex_wire.client, asyncio API in basex_wire.aio.
"""

__version__ = "0.1.0"
__author__ = "BaseX Wire Team"

from .client import Client
from .config import ClientConfig
from .errors import (
    AuthenticationError,
    BaseXError,
    CommandError,
    IoError,
    ProtocolError,
    UsageError,
)
from .query import QuerySession
from .response import CommandResponse, QueryResult

__all__ = [
    "__version__",
    "__author__",
    "Client",
    "ClientConfig",
    "QuerySession",
    "CommandResponse",
    "QueryResult",
    "BaseXError",
    "IoError",
    "AuthenticationError",
    "CommandError",
    "ProtocolError",
    "UsageError",
]
