"""
mapilink.handshake
Login handshake: parse the server challenge and build the response line.
"""
from __future__ import annotations

from typing import Optional

from .crypto import hash_password, select_hash
from .errors import ProtocolError, UnsupportedProtocolError
from .protocol import (
    BYTE_ORDERS,
    MEROVINGIAN,
    PROTOCOL_VERSION,
    RESPONSE_BYTE_ORDER,
    Challenge,
    split_hashes,
)


def challenge_response(
    challenge_line: str,
    username: str,
    password: str,
    language: str,
    database: Optional[str] = None,
    hash_override: Optional[str] = None,
) -> str:
    """
    Build ``BIG:user:{ALG}digest:language:database:`` for a challenge line
    ``salt:servertype:version:hashes:byteorder``.

    A proxy identifying itself as ``merovingian`` always gets the masked
    credentials ``merovingian``/``merovingian``.
    """
    ch = Challenge.decode(challenge_line)
    if ch.version != PROTOCOL_VERSION:
        raise UnsupportedProtocolError(f"Unsupported protocol version: {ch.version}")

    offered = split_hashes(hash_override) if hash_override is not None else ch.hashes

    if ch.server_type == MEROVINGIAN:
        username = MEROVINGIAN
        password = MEROVINGIAN

    pwhash = hash_password(select_hash(offered), password, ch.salt)

    # Only validated; block payloads are always little-endian in version 8.
    if ch.byte_order not in BYTE_ORDERS:
        raise ProtocolError(f"Invalid byte-order: {ch.byte_order}")

    return f"{RESPONSE_BYTE_ORDER}:{username}:{pwhash}:{language}:{database or ''}:"
