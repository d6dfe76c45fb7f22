"""
mapilink.connection
A MAPI connection in block mode: opens the TCP socket, runs the login
handshake and follows redirects issued by the server.

Typical use::

    with MapiConnection(SessionConfig(database="demo")) as conn:
        warnings = conn.connect("localhost", 50000, "monetdb", "monetdb")
        conn.writer.write_line("sselect 1;")
        print(conn.reader.readline())

After a successful ``connect`` the framed streams are available as
``input_stream``/``output_stream`` and the line layer as
``reader``/``writer``.
"""
from __future__ import annotations

import enum
import socket
import threading
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from .channel import LineReader, LineWriter
from .errors import LoginError, MapiError, RedirectError, TooManyRedirectsError, TransportError
from .handshake import challenge_response
from .protocol import DEFAULT_LANGUAGE, LineType, parse_redirect
from .transport import BlockReader, BlockWriter
from .wiretap import WireTap

logger = structlog.get_logger()

DEFAULT_MAX_REDIRECTS = 10


@dataclass
class SessionConfig:
    database: Optional[str] = None
    language: str = DEFAULT_LANGUAGE
    # comma separated, e.g. "MD5,plain"; None means whatever the server offers
    hash: Optional[str] = None
    follow_redirects: bool = True
    max_redirects: int = DEFAULT_MAX_REDIRECTS


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting challenge"
    AWAITING_LOGIN_RESULT = "awaiting login result"
    LOGGED_IN = "logged in"
    REDIRECTING = "redirecting"
    FAILED = "failed"


@dataclass
class LoginResult:
    warnings: List[str] = field(default_factory=list)
    redirects: List[str] = field(default_factory=list)


class MapiConnection:
    def __init__(self, config: Optional[SessionConfig] = None):
        self.config = config or SessionConfig()
        self.state = ConnectionState.DISCONNECTED
        self.host: Optional[str] = None
        self.port: Optional[int] = None

        self.sock: Optional[socket.socket] = None
        self.input_stream: Optional[BlockReader] = None
        self.output_stream: Optional[BlockWriter] = None
        self.reader: Optional[LineReader] = None
        self.writer: Optional[LineWriter] = None
        self.tap: Optional[WireTap] = None

        self._lock = threading.RLock()

    def __enter__(self) -> "MapiConnection":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __del__(self):
        # Last resort only; use close() or a with block to release the socket.
        try:
            self.close()
        except Exception:
            pass

    def enable_wiretap(self, path: str) -> None:
        """Log all traffic to ``path``. Best enabled before ``connect``."""
        tap = WireTap.open(path)
        with self._lock:
            old, self.tap = self.tap, tap
            for stream in (self.input_stream, self.output_stream):
                if stream is not None:
                    stream.tap = tap
        if old is not None:
            old.close()

    def connect(self, host: str, port: int, username: str, password: str) -> Optional[str]:
        """
        Log in as ``username`` on host:port, following redirects when the
        configuration allows it.

        Returns the informational messages sent by the server (preceded by
        one line per redirect taken), or None if there were none. On
        failure the connection is closed before the error is raised.
        """
        with self._lock:
            if self.state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
                raise MapiError(f"cannot connect, connection is {self.state.value}")
            self.state = ConnectionState.CONNECTING

        try:
            return self._connect(host, port, username, password)
        except BaseException:
            with self._lock:
                self._teardown()
                self.state = ConnectionState.FAILED
            raise

    def _connect(self, host: str, port: int, username: str, password: str) -> Optional[str]:
        hops_left = self.config.max_redirects
        notes: List[str] = []

        while True:
            if hops_left <= 0:
                raise TooManyRedirectsError(
                    "Maximum number of redirects reached "
                    f"({self.config.max_redirects}), aborting connection attempt"
                )
            hops_left -= 1

            result = self._login(host, port, username, password)
            if not result.redirects:
                break

            self.state = ConnectionState.REDIRECTING
            with self._lock:
                self._teardown()

            if not self.config.follow_redirects:
                logger.warning("Redirect not followed", host=host, port=port, redirects=result.redirects)
                raise RedirectError(
                    "The server sent a redirect for this connection:"
                    + "".join(f" [{r}]" for r in result.redirects),
                    result.redirects,
                )

            # Only the first target is tried.
            target = result.redirects[0]
            new_host, new_port = parse_redirect(target, port)
            logger.info("Following redirect", host=host, port=port, target=target, hops_left=hops_left)
            notes.append(f"Redirect by {host}:{port} to {target}")
            host, port = new_host, new_port

        self.state = ConnectionState.LOGGED_IN
        logger.info("Logged in", host=host, port=port, warnings=len(result.warnings))
        text = "\n".join(notes + result.warnings).strip()
        return text or None

    def _login(self, host: str, port: int, username: str, password: str) -> LoginResult:
        self.state = ConnectionState.CONNECTING
        self.host, self.port = host, port
        logger.info("Connecting", host=host, port=port)

        sock = socket.create_connection((host, port))
        with self._lock:
            self.sock = sock
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            self.input_stream = BlockReader(sock.makefile("rb"), self.tap)
            self.output_stream = BlockWriter(sock.makefile("wb"), self.tap)
            self.reader = LineReader(self.input_stream)
            self.writer = LineWriter(self.output_stream)

        self.state = ConnectionState.AWAITING_CHALLENGE
        challenge = self.reader.readline()
        self.reader.wait_for_prompt()
        self.writer.write_line(
            challenge_response(
                challenge,
                username,
                password,
                self.config.language,
                self.config.database,
                self.config.hash,
            )
        )

        self.state = ConnectionState.AWAITING_LOGIN_RESULT
        errors: List[str] = []
        result = LoginResult()
        while True:
            try:
                line = self.reader.readline()
            except TransportError as e:
                raise TransportError(f"Connection to server lost! ({e})") from e
            line_type = self.reader.line_type
            if line_type == LineType.PROMPT:
                break
            if line_type == LineType.ERROR:
                errors.append(line[1:])
            elif line_type == LineType.INFO:
                result.warnings.append(line[1:])
            elif line_type == LineType.REDIRECT:
                result.redirects.append(line[1:])

        if errors:
            logger.warning("Login refused", host=host, port=port, errors=errors)
            raise LoginError("\n".join(errors).strip())
        return result

    def _teardown(self) -> None:
        # Wake up any thread blocked reading; closing the buffered stream
        # would otherwise wait for the lock that reader holds.
        if self.sock is not None:
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug("Ignoring error during shutdown", error=str(e))
        for resource in (self.reader, self.writer, self.input_stream, self.output_stream, self.sock):
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as e:
                logger.debug("Ignoring error during close", resource=type(resource).__name__, error=str(e))
        self.reader = self.writer = None
        self.input_stream = self.output_stream = None
        self.sock = None

    def close(self) -> None:
        """Release the socket, streams and wire tap. Safe to call any number of times."""
        with self._lock:
            self._teardown()
            if self.tap is not None:
                try:
                    self.tap.close()
                except Exception as e:
                    logger.debug("Ignoring error during close", resource="WireTap", error=str(e))
                self.tap = None
            self.state = ConnectionState.DISCONNECTED
