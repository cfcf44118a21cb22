"""
Query Session State Machine

A query session is a server-side query resource addressed by the id the
server returns on creation. While open it owns the client's connection:
no command or second query may be issued until close().

States:
    created  -> bind()/context() -> bound
    created/bound -> execute() -> executing (result stream open)
    executing -> result drained or closed -> bound
    executing -> execution error -> failed (only close() allowed)
    any -> close() -> closed (terminal; the id is never reused)

Every request is ``opcode id\\0 [argument\\0 ...]``, answered by
``value\\0 status`` or, on failure, ``\\0 0x01 error\\0``.
"""

from typing import TYPE_CHECKING, Any, Optional

import structlog

from .analysis import QueryInfo
from .arguments import to_query_argument
from .codec import Payload
from .errors import ProtocolError, UsageError
from .protocol import (
    OPCODE_NAMES,
    QUERY_BIND,
    QUERY_CLOSE,
    QUERY_CONTEXT,
    QUERY_EXECUTE,
    QUERY_INFO,
    QUERY_OPTIONS,
    QUERY_UPDATING,
)
from .response import QueryResult, ResponseStream, read_query_response
from .serializer import SerializerOptions

if TYPE_CHECKING:
    from .client import Client

logger = structlog.get_logger()

STATE_CREATED = "created"
STATE_BOUND = "bound"
STATE_EXECUTING = "executing"
STATE_FAILED = "failed"
STATE_CLOSED = "closed"


class QuerySession:
    """
    Open server-side query. Obtain one from Client.query().

    Example:
        with client.query("declare variable $n external; $n * 2") as query:
            query.bind("n", 21)
            with query.execute() as result:
                print(result.text())
    """

    def __init__(self, client: "Client", query_id: str, text: str = "", with_info: bool = False):
        self._client = client
        self._codec = client.codec
        self.id: Optional[str] = query_id
        self.text = text
        self.with_info = with_info
        self.state = STATE_CREATED
        self._result: Optional[QueryResult] = None

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

    def _send(self, opcode: int, *arguments: Payload) -> None:
        logger.debug("Query request", opcode=OPCODE_NAMES[opcode], query_id=self.id)
        self._codec.write_byte(opcode)
        self._codec.write_string(self.id)
        for argument in arguments:
            self._codec.write_payload(argument)

    def _exchange(self, opcode: int, *arguments: Payload) -> str:
        self._ensure_ready()
        self._send(opcode, *arguments)
        try:
            return read_query_response(self._codec)
        except ProtocolError as e:
            if not self._codec.broken:
                logger.warning("Query request rejected", opcode=OPCODE_NAMES[opcode],
                               query_id=self.id, info=e.info)
            raise

    def bind(self, name: str, value: Any = None, type: Optional[str] = None) -> "QuerySession":
        """
        Bind an external variable. A leading '$' in ``name`` is optional.

        Args:
            name: Variable name as declared in the query
            value: Python value, converted by arguments.to_query_argument();
                   None binds the empty sequence
            type: XML Schema type overriding the inferred one

        Returns:
            self, so bindings can be chained

        Raises:
            ProtocolError: Server rejected the binding. The session stays
                usable; callers may bind again or close.
        """
        text, type_name = to_query_argument(value, type)
        self._exchange(QUERY_BIND, name, text, type_name)
        self.state = STATE_BOUND
        return self

    def context(self, value: Payload, type: str = "document-node()") -> "QuerySession":
        """Bind the context value; ``value`` may be text, bytes or a binary file"""
        self._exchange(QUERY_CONTEXT, value, type)
        self.state = STATE_BOUND
        return self

    def execute(self) -> QueryResult:
        """
        Execute the query and return its lazily-read result.

        The result must be read to the end or closed before any other call
        on this session. Executing again afterwards is allowed.

        Raises:
            ProtocolError: Server reported an execution error. The session
                enters the failed state and can only be closed.
        """
        self._ensure_ready()
        self._send(QUERY_EXECUTE)

        result = QueryResult(self._codec, self._release_result, self.id)
        self._result = result
        self.state = STATE_EXECUTING
        result._start()
        return result

    def _release_result(self, result: ResponseStream) -> None:
        if self._result is not result:
            return
        self._result = None
        if self.state == STATE_EXECUTING:
            self.state = STATE_FAILED if result.error is not None else STATE_BOUND

    def info(self) -> QueryInfo:
        """Compilation and timing info of the last execution"""
        return QueryInfo.parse(self._exchange(QUERY_INFO))

    def options(self) -> SerializerOptions:
        """Serialization parameters in effect for this query"""
        return SerializerOptions.parse(self._exchange(QUERY_OPTIONS))

    def updating(self) -> bool:
        """Whether the query contains updating expressions"""
        value = self._exchange(QUERY_UPDATING)
        if value not in ("true", "false"):
            raise ProtocolError(f"Expected boolean string, got {value!r}")
        return value == "true"

    def close(self) -> None:
        """
        Release the server-side query and return the connection to the client.

        An open result is drained first. The id is invalidated whatever the
        server answers. Closing an already closed session does nothing.
        """
        if self.state == STATE_CLOSED:
            return

        if self._result is not None:
            try:
                self._result.close()
            except ProtocolError as e:
                logger.debug("Execution error discarded on close", query_id=self.id, info=e.info)

        query_id = self.id
        try:
            if self._codec.broken or self._client.closed:
                return
            self._send(QUERY_CLOSE)
            read_query_response(self._codec)
        finally:
            self.state = STATE_CLOSED
            self.id = None
            self._client._release(self)
            logger.debug("Query closed", query_id=query_id)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"<QuerySession id={self.id!r} state={self.state}>"
