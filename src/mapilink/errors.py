"""
mapilink.errors
Exceptions raised while talking MAPI block mode.
"""
from __future__ import annotations

from typing import List, Optional


class MapiError(Exception):
    """Base class for every error raised by mapilink."""


class ProtocolError(MapiError, ValueError):
    """The peer sent something that cannot be parsed."""


class TransportError(MapiError, OSError):
    """The stream ended early or a block arrived incomplete."""


class UnsupportedProtocolError(MapiError):
    pass


class UnsupportedHashError(MapiError):
    pass


class LoginError(MapiError):
    """The server answered the login with one or more error lines."""


class ConfigurationError(MapiError):
    pass


class RedirectError(MapiError):
    """The server redirected the connection and it was not followed."""

    def __init__(self, message: str, redirects: Optional[List[str]] = None):
        super().__init__(message)
        self.redirects = list(redirects or [])


class TooManyRedirectsError(RedirectError):
    pass


class UnsupportedRedirectError(RedirectError):
    pass
