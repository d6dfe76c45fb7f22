"""
mapilink.wiretap
Records every block event and raw byte run to a text file.

Each line carries a two-letter tag, a millisecond epoch timestamp and the
data as text:

    TX  bytes transmitted by the client
    TD  transmit-side framing event (block written)
    RX  bytes received from the server
    RD  receive-side framing event (block read, prompt inserted)
"""
from __future__ import annotations

import time
from typing import TextIO

from .errors import ConfigurationError


class WireTap:
    def __init__(self, out: TextIO):
        self.out = out

    @classmethod
    def open(cls, path: str) -> "WireTap":
        try:
            out = open(path, "a", encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"cannot open wire tap log {path}: {e}") from e
        return cls(out)

    def _write(self, tag: str, text: str) -> None:
        self.out.write(f"{tag} {int(time.time() * 1000)}: {text}\n")

    def raw_sent(self, data: bytes) -> None:
        self._write("TX", data.decode("utf-8", errors="replace"))

    def sent_event(self, message: str) -> None:
        self._write("TD", message)

    def raw_received(self, data: bytes) -> None:
        self._write("RX", data.decode("utf-8", errors="replace"))
        self.out.flush()

    def received_event(self, message: str) -> None:
        self._write("RD", message)
        self.out.flush()

    def flush(self) -> None:
        self.out.flush()

    def close(self) -> None:
        self.out.close()
