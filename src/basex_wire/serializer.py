"""
Serialization Parameters

Serialization parameters control how the server renders XQuery items and
XML nodes sent back to the client (indentation, encoding, method, ...):
https://docs.basex.org/wiki/Serialization

The server reports and accepts them as a comma-separated "key=value" list.
"""

from typing import TYPE_CHECKING, Dict, Iterator, Optional, Union

import structlog

if TYPE_CHECKING:
    from .client import Client

logger = structlog.get_logger()

_TRUE = ("yes", "true", "on", "1")
_FALSE = ("no", "false", "off", "0")


class SerializerOptions:
    """Ordered mapping of serialization parameters"""

    def __init__(self, options: Optional[Dict[str, str]] = None):
        self._options: Dict[str, str] = dict(options or {})

    @classmethod
    def parse(cls, text: str) -> "SerializerOptions":
        """
        Parse "key=value,key=value" as reported by the server.

        Example:
            >>> str(SerializerOptions.parse("indent=no,encoding=UTF-8"))
            'encoding=UTF-8,indent=no'
        """
        options: Dict[str, str] = {}
        for item in text.split(","):
            if not item:
                continue
            key, _, value = item.partition("=")
            options[key.strip()] = value.strip()
        return cls(options)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._options.get(key, default)

    def get_bool(self, key: str) -> Optional[bool]:
        """
        Read a yes/no parameter.

        Raises:
            ValueError: The stored value is not a boolean word
        """
        value = self._options.get(key)
        if value is None:
            return None
        if value.lower() in _TRUE:
            return True
        if value.lower() in _FALSE:
            return False
        raise ValueError(f"expected yes/no, got: {value}")

    def set(self, key: str, value: Union[str, bool, int]) -> None:
        if isinstance(value, bool):
            value = "yes" if value else "no"
        self._options[key] = str(value)

    def save(self, client: "Client") -> str:
        """Apply the options to ``client``'s session; returns the server info"""
        _, info = client.execute(f"SET SERIALIZER {self}")
        logger.debug("Serializer options saved", options=str(self))
        return info

    def __contains__(self, key: str) -> bool:
        return key in self._options

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._options))

    def __len__(self) -> int:
        return len(self._options)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SerializerOptions):
            return NotImplemented
        return self._options == other._options

    def __str__(self) -> str:
        return ",".join(f"{key}={self._options[key]}" for key in sorted(self._options))

    def __repr__(self) -> str:
        return f"SerializerOptions({str(self)!r})"
