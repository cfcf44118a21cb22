"""
BaseX Client

Owns one authenticated connection for its whole life and dispatches the
command channel and query sessions over it. The protocol is half-duplex
with no request correlation, so the connection has at most one owner at a
time: an open QuerySession or an unread CommandResponse. Issuing anything
else meanwhile raises UsageError before a single byte is written.

Wire summary:
    command:           command\\0 [input\\0]   -> payload\\0 info\\0 status
    create/add/...:    opcode name\\0 input\\0  -> info\\0 status
    query:             0x00 query\\0           -> id\\0 status [error\\0]

The client is not thread-safe; open one Client per thread or task.
"""

import hashlib
from typing import Optional, Tuple, Union

import structlog

from .auth import HashFactory, authenticate
from .codec import FrameCodec, Payload
from .config import ClientConfig
from .errors import BaseXError, IoError, ProtocolError, UsageError
from .protocol import (
    CMD_ADD,
    CMD_CREATE,
    CMD_REPLACE,
    CMD_STORE,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_PORT,
    OPCODE_NAMES,
    QUERY_CREATE,
)
from .query import QuerySession
from .response import CommandResponse, ResponseStream, read_info_response, read_query_response
from .transport import SocketTransport, Transport

logger = structlog.get_logger()

Owner = Union[QuerySession, ResponseStream]


class Client:
    """
    Authenticated BaseX session.

    Example:
        with Client.connect("localhost", 1984, "admin", "admin") as client:
            print(client.create("lambada", "<Root><A/><B/><C/></Root>"))
            with client.query("count(/Root/*)") as query:
                print(query.execute().text())
    """

    def __init__(self, codec: FrameCodec, username: str = ""):
        """Wrap an already authenticated codec; see connect() for the usual entry point"""
        self.codec = codec
        self.username = username
        self.closed = False
        self._owner: Optional[Owner] = None
        self._query_info = False

    @classmethod
    def connect(cls, host: str = "localhost", port: int = DEFAULT_PORT,
                user: str = "admin", password: str = "admin",
                timeout: Optional[float] = None,
                chunk_size: int = DEFAULT_CHUNK_SIZE,
                hash_factory: HashFactory = hashlib.md5) -> "Client":
        """
        Open a TCP connection and authenticate.

        Raises:
            AuthenticationError: Credentials rejected; the socket is closed
            IoError: Connection or handshake I/O failed
        """
        try:
            transport = SocketTransport.open(host, port, timeout)
        except OSError as e:
            logger.error("Connection failed", host=host, port=port, error=str(e))
            raise IoError(f"Cannot connect to {host}:{port}: {e}") from e

        client = cls.from_transport(transport, user, password, chunk_size, hash_factory)
        logger.info("Connected to BaseX", host=host, port=port, user=user)
        return client

    @classmethod
    def from_transport(cls, transport: Transport, user: str, password: str,
                       chunk_size: int = DEFAULT_CHUNK_SIZE,
                       hash_factory: HashFactory = hashlib.md5) -> "Client":
        """Authenticate over an already open transport"""
        codec = FrameCodec(transport, chunk_size)
        try:
            authenticate(codec, user, password, hash_factory)
        except BaseXError:
            codec.close()
            raise
        return cls(codec, user)

    @classmethod
    def from_config(cls, config: ClientConfig) -> "Client":
        return cls.connect(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password.get_secret_value(),
            timeout=config.timeout,
            chunk_size=config.chunk_size,
        )

    # Ownership of the connection

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

    def _acquire(self, owner: Owner) -> None:
        self._ensure_idle()
        self._owner = owner

    def _release(self, owner: Owner) -> None:
        if self._owner is owner:
            self._owner = None

    @property
    def busy(self) -> bool:
        """True while a query session or unread response holds the connection"""
        return self._owner is not None

    # Command channel

    def execute_stream(self, command: str, input: Optional[Payload] = None) -> CommandResponse:
        """
        Send a textual command and return its payload as a lazy stream.

        ``input``, when given, follows the command as a second escaped
        segment.

        The stream's ``info`` attribute is set once it has been drained.
        Suitable for large or binary results such as ``RETRIEVE``.
        """
        self._ensure_idle()
        logger.debug("Executing command", command=command)
        self.codec.write_string(command)
        if input is not None:
            self.codec.write_payload(input)

        response = CommandResponse(self.codec, self._release, command)
        self._acquire(response)
        response._start()
        return response

    def execute(self, command: str, input: Optional[Payload] = None) -> Tuple[str, str]:
        """
        Execute a textual command.

        Returns:
            Tuple of (payload, info)

        Raises:
            CommandError: Server rejected the command; carries its info text
        """
        with self.execute_stream(command, input) as response:
            payload = response.read()
        return payload.decode("utf-8"), response.info

    def _resource_command(self, opcode: int, name: str, payload: Optional[Payload]) -> str:
        self._ensure_idle()
        logger.debug("Sending resource command", opcode=OPCODE_NAMES[opcode], name=name)
        self.codec.write_byte(opcode)
        self.codec.write_string(name)
        self.codec.write_payload(b"" if payload is None else payload)
        return read_info_response(self.codec)

    def create(self, name: str, input: Optional[Payload] = None) -> str:
        """
        Create database ``name``, optionally with an initial XML resource.

        Returns:
            Server info, e.g. "Database 'lambada' created in 2.1 ms."
        """
        info = self._resource_command(CMD_CREATE, name, input)
        logger.info("Database created", name=name)
        return info

    def add(self, path: str, input: Payload) -> str:
        """Add a resource to the opened database at ``path``"""
        return self._resource_command(CMD_ADD, path, input)

    def replace(self, path: str, input: Payload) -> str:
        """Replace (or add) the resource at ``path``"""
        return self._resource_command(CMD_REPLACE, path, input)

    def store(self, path: str, input: Payload) -> str:
        """Store raw binary data at ``path``"""
        return self._resource_command(CMD_STORE, path, input)

    # Query sessions

    def query(self, text: Payload, info: bool = False) -> QuerySession:
        """
        Create a server-side query and hand it the connection.

        Args:
            text: XQuery source (text, bytes or binary file)
            info: Collect query info, readable via QuerySession.info()

        Raises:
            UsageError: Another session or response holds the connection
            ProtocolError: Server rejected the query (e.g. syntax error)
        """
        self._ensure_idle()
        if info != self._query_info:
            self.execute(f"SET QUERYINFO {'true' if info else 'false'}")
            self._query_info = info

        self.codec.write_byte(QUERY_CREATE)
        self.codec.write_payload(text)
        try:
            query_id = read_query_response(self.codec)
        except ProtocolError as e:
            if not self.codec.broken:
                logger.warning("Query rejected", info=e.info)
            raise

        session = QuerySession(self, query_id, text if isinstance(text, str) else "", info)
        self._acquire(session)
        logger.debug("Query created", query_id=query_id)
        return session

    # Lifecycle

    def close(self) -> None:
        """
        Say goodbye to the server and close the transport.

        The "exit" command is only sent while the connection is idle and
        healthy; open sessions are released server-side when the socket closes.
        """
        if self.closed:
            return
        if self._owner is not None:
            logger.debug("Closing client with open owner", owner=type(self._owner).__name__)
        elif not self.codec.broken:
            try:
                self.codec.write_string("exit")
            except IoError as e:
                logger.debug("Exit command not delivered", error=str(e))
        self.closed = True
        self._owner = None
        self.codec.close()
        logger.info("Connection closed", user=self.username)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else ("busy" if self.busy else "idle")
        return f"<Client user={self.username!r} {state}>"
