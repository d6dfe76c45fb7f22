"""
mapilink.protocol
Block-mode wire constants, block header packing, line markers and the
parsers for the challenge line and redirect URIs.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Tuple
from urllib.parse import urlsplit

from .errors import ProtocolError, UnsupportedRedirectError

# Largest payload of one block; the length must fit in 15 bits.
BLOCK_SIZE = 8 * 1024 - 2
HEADER_SIZE = 2

PROTOCOL_VERSION = 8
BYTE_ORDERS = ("BIG", "LIT")
RESPONSE_BYTE_ORDER = "BIG"
MEROVINGIAN = "merovingian"
DEFAULT_LANGUAGE = "sql"
REDIRECT_PREFIX = "mapi:"

NEWLINE = ord("\n")


class LineType(enum.IntEnum):
    """Leading marker byte of a line."""
    UNKNOWN = 0
    PROMPT = ord(".")
    MORE = ord(",")
    HEADER = ord("%")
    RESULT = ord("[")
    SOHEADER = ord("&")
    ERROR = ord("!")
    INFO = ord("#")
    REDIRECT = ord("^")


_MARKERS = {int(t): t for t in LineType if t is not LineType.UNKNOWN}


def classify_line(line: str) -> LineType:
    if not line:
        return LineType.UNKNOWN
    return _MARKERS.get(ord(line[0]), LineType.UNKNOWN)


def encode_header(size: int, final: bool) -> bytes:
    """Pack a block length and final flag: ``size << 1 | final``, little-endian."""
    if size < 0 or size > BLOCK_SIZE:
        raise ValueError(f"block size out of range: {size}")
    return bytes([(size << 1) & 0xFF | int(bool(final)), size >> 7])


def decode_header(header: bytes) -> Tuple[int, bool]:
    if len(header) != HEADER_SIZE:
        raise ProtocolError(f"block header must be {HEADER_SIZE} bytes, got {len(header)}")
    size = header[0] >> 1 | header[1] << 7
    return size, bool(header[0] & 0x1)


@dataclass
class Challenge:
    salt: str
    server_type: str
    version: int
    hashes: List[str] = field(default_factory=list)
    byte_order: str = ""

    @staticmethod
    def decode(line: str) -> "Challenge":
        tokens = line.split(":")
        if len(tokens) < 5:
            raise ProtocolError(
                f"Server challenge string unusable! Challenge contains too few tokens: {line}"
            )
        try:
            version = int(tokens[2].strip())
        except ValueError:
            raise ProtocolError(f"Protocol version unparseable: {tokens[2]}") from None
        return Challenge(
            salt=tokens[0],
            server_type=tokens[1],
            version=version,
            hashes=split_hashes(tokens[3]),
            byte_order=tokens[4],
        )


def split_hashes(value: str) -> List[str]:
    return [h.strip() for h in value.split(",") if h.strip()]


def parse_redirect(uri: str, default_port: int) -> Tuple[str, int]:
    """Return (host, port) from ``mapi:monetdb://host[:port]/database?...``."""
    if not uri.startswith(REDIRECT_PREFIX):
        raise UnsupportedRedirectError(f"unsupported redirect: {uri}", [uri])
    try:
        parts = urlsplit(uri[len(REDIRECT_PREFIX):])
        host = parts.hostname
        port = parts.port
    except ValueError as e:
        raise ProtocolError(f"invalid redirect {uri}: {e}") from e
    if not host:
        raise ProtocolError(f"redirect without host: {uri}")
    return host, default_port if port is None else port
