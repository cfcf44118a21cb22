"""
BaseX Client Error Taxonomy

Every failure surfaced by the client is a BaseXError. Server diagnostics are
carried verbatim in ``info`` so callers can show the original message.

Fatal errors (IoError, AuthenticationError) mean the connection must be
abandoned. CommandError and ProtocolError leave the stream correctly framed.
UsageError is raised before any byte is written.
"""

import re
from typing import Optional

# "Stopped at ., 1/1:\n[XPST0008] Undeclared variable: $x."
_DIAGNOSTIC_PATTERN = re.compile(
    r"^Stopped at (?P<file>.*?), (?P<line>\d+)/(?P<position>\d+):\s*"
    r"\[(?P<code>[^\]]+)\]\s?(?P<message>.*)$",
    re.DOTALL,
)


class BaseXError(Exception):
    """Base class for all client errors"""


class IoError(BaseXError):
    """Transport read/write failure. Always fatal to the connection."""


class AuthenticationError(BaseXError):
    """Handshake rejected by the server"""

    def __init__(self, message: str = "Access denied."):
        super().__init__(message)


class CommandError(BaseXError):
    """A command channel request was rejected by the server"""

    def __init__(self, info: str):
        super().__init__(info)
        self.info = info


class ProtocolError(BaseXError):
    """
    A query session operation was rejected, or the stream was malformed.

    Query diagnostics of the form ``Stopped at <file>, <line>/<col>:
    [<code>] <message>`` are split into fields. Any other text leaves the
    fields set to None and ``message`` equal to the raw info.
    """

    def __init__(self, info: str):
        super().__init__(info)
        self.info = info
        self.code: Optional[str] = None
        self.file: Optional[str] = None
        self.line: Optional[int] = None
        self.position: Optional[int] = None
        self.message = info

        match = _DIAGNOSTIC_PATTERN.match(info)
        if match:
            self.code = match.group("code")
            self.file = match.group("file")
            self.line = int(match.group("line"))
            self.position = int(match.group("position"))
            self.message = match.group("message")


class UsageError(BaseXError, RuntimeError):
    """Operation issued in an order the protocol does not allow"""
