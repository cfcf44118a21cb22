"""
Query Argument Conversion

External variables travel as UTF-8 text plus an optional XML Schema type
name. The server casts the text to that type; an empty type leaves the
value untyped (xs:untypedAtomic), and an empty value with an empty type
binds the empty sequence.
"""

import datetime
import ipaddress
from decimal import Decimal
from typing import Any, Optional, Tuple

XS_STRING = "xs:string"
XS_BOOLEAN = "xs:boolean"
XS_INTEGER = "xs:integer"
XS_DOUBLE = "xs:double"
XS_DECIMAL = "xs:decimal"
XS_DATE = "xs:date"
XS_DATETIME = "xs:dateTime"
XS_TIME = "xs:time"
XS_DURATION = "xs:dayTimeDuration"


def _duration_text(value: datetime.timedelta) -> str:
    # Whole microseconds; xs:dayTimeDuration has no exponent notation
    total = (value.days * 86400 + value.seconds) * 1_000_000 + value.microseconds
    sign = "-" if total < 0 else ""
    days, remainder = divmod(abs(total), 86400 * 1_000_000)
    hours, remainder = divmod(remainder, 3600 * 1_000_000)
    minutes, remainder = divmod(remainder, 60 * 1_000_000)
    seconds, microseconds = divmod(remainder, 1_000_000)

    text = f"{sign}P"
    if days:
        text += f"{days}D"
    text += f"T{hours}H{minutes}M{seconds}"
    if microseconds:
        text += f".{microseconds:06d}".rstrip("0")
    return text + "S"


def to_query_argument(value: Any, type_name: Optional[str] = None) -> Tuple[str, str]:
    """
    Convert a Python value to its (text, type) wire form.

    Args:
        value: Value to bind. None binds the empty sequence.
        type_name: Explicit XML Schema type, overrides the inferred one

    Returns:
        Tuple of (value text, type name); the type may be empty

    Examples:
        >>> to_query_argument(True)
        ('true', 'xs:boolean')
        >>> to_query_argument(5)
        ('5', 'xs:integer')
        >>> to_query_argument("5", "xs:int")
        ('5', 'xs:int')
    """
    if value is None:
        return "", type_name or ""

    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        text, inferred = ("true" if value else "false"), XS_BOOLEAN
    elif isinstance(value, int):
        text, inferred = str(value), XS_INTEGER
    elif isinstance(value, float):
        text, inferred = repr(value).replace("inf", "INF").replace("nan", "NaN"), XS_DOUBLE
    elif isinstance(value, Decimal):
        text, inferred = format(value, "f"), XS_DECIMAL
    elif isinstance(value, datetime.datetime):
        text, inferred = value.isoformat(), XS_DATETIME
    elif isinstance(value, datetime.date):
        text, inferred = value.isoformat(), XS_DATE
    elif isinstance(value, datetime.time):
        text, inferred = value.isoformat(), XS_TIME
    elif isinstance(value, datetime.timedelta):
        text, inferred = _duration_text(value), XS_DURATION
    elif isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        text, inferred = str(value), XS_STRING
    elif isinstance(value, (bytes, bytearray)):
        text, inferred = bytes(value).decode("utf-8"), XS_STRING
    else:
        text, inferred = str(value), XS_STRING

    return text, type_name if type_name is not None else inferred
