"""
mapilink.transport
Block-mode framing over a byte stream (usually ``socket.makefile``).

Every block starts with a two byte header carrying the payload length and
a flag marking the last block of a message. The reader turns the end of a
message into a prompt line so that line-oriented consumers see where the
server stopped talking.
"""
from __future__ import annotations

import io
from typing import BinaryIO, Optional, Union

from .errors import ProtocolError, TransportError
from .protocol import BLOCK_SIZE, HEADER_SIZE, NEWLINE, LineType, decode_header, encode_header
from .wiretap import WireTap

Buffer = Union[bytes, bytearray, memoryview]


class BlockWriter:
    """
    Cuts written bytes into blocks of at most BLOCK_SIZE.

    Full blocks go out as soon as another byte would not fit; ``flush()``
    sends whatever is buffered (possibly nothing) as the final block.
    """
    def __init__(self, stream: BinaryIO, tap: Optional[WireTap] = None):
        self.stream = stream
        self.tap = tap
        self.block = bytearray()

    def write(self, data: Union[int, Buffer], offset: int = 0, length: Optional[int] = None) -> int:
        if isinstance(data, int):
            data = bytes([data])
        view = memoryview(data)
        if length is None:
            length = len(view) - offset
        if offset < 0 or length < 0 or offset + length > len(view):
            raise ValueError(f"offset {offset} / length {length} out of range for {len(view)} bytes")
        view = view[offset:offset + length]

        while len(view) > 0:
            room = BLOCK_SIZE - len(self.block)
            if len(view) > room:
                self.block += view[:room]
                view = view[room:]
                self.write_block(final=False)
            else:
                self.block += view
                break
        return length

    def write_block(self, final: bool) -> None:
        payload = bytes(self.block)
        self.stream.write(encode_header(len(payload), final))
        self.stream.write(payload)
        self.block = bytearray()

        if self.tap is not None:
            kind = "write final block" if final else "write block"
            self.tap.sent_event(f"{kind}: {len(payload)} bytes")
            self.tap.raw_sent(payload)

    def flush(self) -> None:
        self.write_block(final=True)
        self.stream.flush()
        if self.tap is not None:
            self.tap.flush()

    def close(self) -> None:
        self.stream.close()


class BlockReader:
    """
    Presents the blocks of the underlying stream as one sequential byte
    stream. Rewinding is not supported.
    """
    def __init__(self, stream: BinaryIO, tap: Optional[WireTap] = None):
        self.stream = stream
        self.tap = tap
        # a final block may grow by "\n.\n"
        self.block = bytearray()
        self.pos = 0
        self.final = True

    def _read_exactly(self, n: int) -> bytes:
        buf = bytearray()
        while len(buf) < n:
            chunk = self.stream.read(n - len(buf))
            if not chunk:
                break
            buf += chunk
        return bytes(buf)

    def available(self) -> int:
        return len(self.block) - self.pos

    def read_block(self) -> None:
        header = self._read_exactly(HEADER_SIZE)
        if not header:
            raise TransportError("End of stream reached")
        if len(header) < HEADER_SIZE:
            raise TransportError("Illegal start of block")
        size, final = decode_header(header)
        if size > BLOCK_SIZE:
            raise ProtocolError(f"block size {size} exceeds {BLOCK_SIZE}")

        if self.tap is not None:
            kind = "read final block" if final else "read new block"
            self.tap.received_event(f"{kind}: {size} bytes")

        payload = self._read_exactly(size)
        if len(payload) != size:
            if self.tap is not None:
                self.tap.received_event("the following incomplete block was received:")
                self.tap.raw_received(payload)
            raise TransportError("Incomplete block read from stream")
        if self.tap is not None:
            self.tap.raw_received(payload)

        block = bytearray(payload)
        if final:
            if not block or block[-1] != NEWLINE:
                block.append(NEWLINE)
            block.append(LineType.PROMPT)
            block.append(NEWLINE)
            if self.tap is not None:
                self.tap.received_event("inserting prompt")

        self.block = block
        self.pos = 0
        self.final = final

    def read(self, size: int = -1) -> bytes:
        """
        Read up to ``size`` bytes, or the rest of the current message when
        ``size`` is negative.

        A drained non-final block is always followed by another one, so
        the read carries on into it. Once the final block is drained the
        server waits for us; the read returns what it has rather than
        blocking, unless nothing was read yet.
        """
        if size == 0:
            return b""
        out = bytearray()
        while size < 0 or len(out) < size:
            if self.available() == 0:
                if out and self.final:
                    break
                self.read_block()
            n = self.available() if size < 0 else min(size - len(out), self.available())
            out += self.block[self.pos:self.pos + n]
            self.pos += n
        return bytes(out)

    def read_byte(self) -> int:
        if self.available() == 0:
            self.read_block()
        b = self.block[self.pos]
        self.pos += 1
        if self.tap is not None:
            self.tap.raw_received(bytes([b]))
        return b

    def readinto(self, buffer: Union[bytearray, memoryview]) -> int:
        data = self.read(len(buffer))
        buffer[:len(data)] = data
        return len(data)

    def readline(self) -> bytes:
        out = bytearray()
        while True:
            if self.available() == 0:
                self.read_block()
            end = self.block.find(b"\n", self.pos)
            if end == -1:
                out += self.block[self.pos:]
                self.pos = len(self.block)
            else:
                out += self.block[self.pos:end + 1]
                self.pos = end + 1
                return bytes(out)

    def skip(self, n: int) -> int:
        remaining = n
        while remaining > 0:
            if self.available() == 0:
                self.read_block()
            step = min(remaining, self.available())
            self.pos += step
            remaining -= step
        return n

    def seekable(self) -> bool:
        return False

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        raise io.UnsupportedOperation("block streams cannot seek")

    def tell(self) -> int:
        raise io.UnsupportedOperation("block streams cannot tell")

    def mark(self, limit: int = 0) -> None:
        raise io.UnsupportedOperation("mark is not supported")

    def reset(self) -> None:
        raise io.UnsupportedOperation("reset is not supported")

    def close(self) -> None:
        self.stream.close()
