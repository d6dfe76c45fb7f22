"""
mapilink.channel
Line reader/writer on top of the block streams. Every line read is
classified by its leading marker byte.
"""
from __future__ import annotations

from typing import List

from .errors import MapiError
from .protocol import LineType, classify_line
from .transport import BlockReader, BlockWriter


class LineReader:
    def __init__(self, stream: BlockReader):
        self.stream = stream
        self.line_type = LineType.UNKNOWN

    def readline(self) -> str:
        raw = self.stream.readline()
        line = raw.decode("utf-8", errors="replace")
        if line.endswith("\n"):
            line = line[:-1]
        self.line_type = classify_line(line)
        return line

    def wait_for_prompt(self) -> None:
        """Skip lines up to the next prompt, raising on any error line seen."""
        errors: List[str] = []
        while True:
            line = self.readline()
            if self.line_type == LineType.PROMPT:
                break
            if self.line_type == LineType.ERROR:
                errors.append(line[1:])
        if errors:
            raise MapiError("\n".join(errors).strip())

    def close(self) -> None:
        self.stream.close()


class LineWriter:
    def __init__(self, stream: BlockWriter):
        self.stream = stream

    def write(self, text: str) -> None:
        self.stream.write(text.encode("utf-8"))

    def write_line(self, line: str) -> None:
        """Send one line as a complete message."""
        self.write(line + "\n")
        self.flush()

    def flush(self) -> None:
        self.stream.flush()

    def close(self) -> None:
        self.stream.close()
