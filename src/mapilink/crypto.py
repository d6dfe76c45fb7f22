"""
mapilink.crypto
Password digests offered during the login challenge.

The server lists the digests it accepts; we pick the strongest one we know
in the order SHA1, MD5, plain.
"""
from __future__ import annotations

from typing import Iterable

from cryptography.hazmat.primitives import hashes

from .errors import UnsupportedHashError

PLAIN = "plain"

DIGESTS = {
    "SHA1": hashes.SHA1,
    "MD5": hashes.MD5,
}

PREFERENCE = ("SHA1", "MD5", PLAIN)


def select_hash(offered: Iterable[str]) -> str:
    offered = list(offered)
    for name in PREFERENCE:
        if name in offered:
            return name
    raise UnsupportedHashError(f"no supported password hashes in {','.join(offered)}")


def digest_hex(algorithm: str, *parts: bytes) -> str:
    h = hashes.Hash(DIGESTS[algorithm]())
    for part in parts:
        h.update(part)
    return h.finalize().hex()


def hash_password(algorithm: str, password: str, salt: str) -> str:
    """Return ``{ALG}hexdigest`` of password + salt, or the plain form."""
    if algorithm == PLAIN:
        return "{plain}" + password + salt
    if algorithm not in DIGESTS:
        raise UnsupportedHashError(f"unsupported password hash {algorithm}")
    return "{" + algorithm + "}" + digest_hex(
        algorithm, password.encode("utf-8"), salt.encode("utf-8")
    )
