"""
mapilink.server
Stub MAPI server: sends a fixed challenge, records the login response and
answers with canned lines. Handles one connection at a time; meant for
tests and for poking at the client by hand.
"""
from __future__ import annotations

import argparse
import socket
import threading
from typing import List, Optional, Sequence

import structlog

from .errors import MapiError
from .transport import BlockReader, BlockWriter

logger = structlog.get_logger()

DEFAULT_CHALLENGE = "s4lt:mserver:8:SHA1,MD5,plain:LIT"


class StubServer:
    def __init__(
        self,
        challenge: str = DEFAULT_CHALLENGE,
        replies: Sequence[str] = (),
        host: str = "127.0.0.1",
        port: int = 0,
    ):
        self.challenge = challenge
        self.replies = list(replies)
        self.sock = socket.create_server((host, port))
        self.sock.settimeout(0.1)
        self.host, self.port = self.sock.getsockname()[:2]
        self.responses: List[str] = []
        self.connections = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "StubServer":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

    def start(self) -> "StubServer":
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        self.sock.close()

    def serve_forever(self) -> None:
        while not self._stop.is_set():
            try:
                conn, addr = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            self.connections += 1
            logger.info("Accepted connection", peer=addr)
            with conn:
                try:
                    self.handle(conn)
                except (OSError, MapiError) as e:
                    logger.info("Connection ended", peer=addr, reason=str(e))

    def handle(self, conn: socket.socket) -> None:
        reader = BlockReader(conn.makefile("rb"))
        writer = BlockWriter(conn.makefile("wb"))

        writer.write(self.challenge.encode("utf-8") + b"\n")
        writer.flush()

        message = reader.read().decode("utf-8")
        self.responses.append(message.split("\n", 1)[0])

        if self.replies:
            writer.write(("\n".join(self.replies) + "\n").encode("utf-8"))
        writer.flush()

        # Echo later messages back as info lines until the client hangs up.
        while not self._stop.is_set():
            lines = reader.read().decode("utf-8").split("\n")
            for line in lines:
                if line and line != ".":
                    writer.write(f"#{line}\n".encode("utf-8"))
            writer.flush()


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=50000)
    ap.add_argument("--challenge", default=DEFAULT_CHALLENGE)
    ap.add_argument("--reply", action="append", default=[], help="line sent after the login, e.g. '#welcome'")
    args = ap.parse_args()

    srv = StubServer(args.challenge, args.reply, args.host, args.port)
    print(f"[server] listening on {srv.host}:{srv.port}")
    try:
        srv.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        srv.sock.close()


if __name__ == "__main__":
    main()
