"""
BaseX Challenge-Response Authentication

Handshake (executed once, before any other operation):

    S->C: challenge\\0
    C->S: username\\0 digest_hex\\0
    S->C: status (0x00 ok, otherwise access denied)

Digest computation depends on the challenge shape:
- "realm:nonce" (BaseX 8.0 and later):
      md5(md5("user:realm:password").hex + nonce).hex
- plain nonce (legacy servers):
      md5(md5(password).hex + nonce).hex

The hash function is pluggable but must match the server byte for byte.
"""

import hashlib
from typing import TYPE_CHECKING, Callable

import structlog

from .codec import FrameCodec
from .errors import AuthenticationError
from .protocol import STATUS_OK

if TYPE_CHECKING:
    from .aio import AsyncFrameCodec

logger = structlog.get_logger()

HashFactory = Callable[..., "hashlib._Hash"]


def _hex(hash_factory: HashFactory, text: str) -> str:
    return hash_factory(text.encode("utf-8")).hexdigest()


def compute_digest(username: str, password: str, challenge: str,
                   hash_factory: HashFactory = hashlib.md5) -> str:
    """
    Compute the lowercase hex digest answering ``challenge``.

    Args:
        username: Account name (part of the digest for realm challenges)
        password: Account secret, never sent on the wire
        challenge: Server nonce, either "realm:nonce" or a bare nonce
        hash_factory: hashlib-style constructor

    Returns:
        Digest as lowercase hexadecimal text

    Example:
        >>> compute_digest("admin", "admin", "BaseX:19501915960728")
        'af13b20af0e0b0e3517a406c42622d3d'
    """
    if ":" in challenge:
        realm, nonce = challenge.split(":", 1)
        secret_hash = _hex(hash_factory, f"{username}:{realm}:{password}")
    else:
        nonce = challenge
        secret_hash = _hex(hash_factory, password)

    return _hex(hash_factory, secret_hash + nonce)


def _answer(username: str, password: str, challenge: str, hash_factory: HashFactory) -> bytes:
    logger.debug("Authentication challenge received", username=username,
                 realm_challenge=":" in challenge)
    digest = compute_digest(username, password, challenge, hash_factory)
    return username.encode("utf-8") + b"\x00" + digest.encode("ascii") + b"\x00"


def _check_status(username: str, status: int) -> None:
    if status != STATUS_OK:
        logger.warning("Authentication rejected", username=username, status=status)
        raise AuthenticationError()
    logger.info("Authenticated", username=username)


def authenticate(codec: FrameCodec, username: str, password: str,
                 hash_factory: HashFactory = hashlib.md5) -> None:
    """
    Run the handshake on a freshly opened connection.

    Raises:
        AuthenticationError: Server rejected the credentials. The connection
            must be discarded.
        IoError: Transport failure during the handshake
    """
    challenge = codec.read_string()
    codec.write_raw(_answer(username, password, challenge, hash_factory))
    _check_status(username, codec.read_byte())


async def authenticate_async(codec: "AsyncFrameCodec", username: str, password: str,
                             hash_factory: HashFactory = hashlib.md5) -> None:
    """asyncio variant of authenticate(); same wire exchange and errors"""
    challenge = await codec.read_string()
    await codec.write_raw(_answer(username, password, challenge, hash_factory))
    _check_status(username, await codec.read_byte())
