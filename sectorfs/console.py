"""Line-buffered text console with fixed-width hex and decimal printers."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional, TextIO

DEFAULT_BUFFER_SIZE = 256

_U8 = 0xFF
_U16 = 0xFFFF
_U32 = 0xFFFF_FFFF
_U64 = 0xFFFF_FFFF_FFFF_FFFF


def format_hex(value: int) -> str:
    """Format as 16 upper-case hex digits, truncated to 64 bits."""
    return f"{value & _U64:016X}"


def format_hex8(value: int) -> str:
    """Format as 2 upper-case hex digits, truncated to 8 bits."""
    return f"{value & _U8:02X}"


def format_hex16(value: int) -> str:
    """Format as 4 upper-case hex digits, truncated to 16 bits."""
    return f"{value & _U16:04X}"


def format_dec(value: int) -> str:
    """Format as unsigned decimal, truncated to 32 bits."""
    return str(value & _U32)


class Console:
    """Writes text to a stream in whole lines.

    Each thread collects characters in its own buffer; a buffer is handed to
    the stream when a newline arrives, when it is full, and at the end of
    every :meth:`write`, so output of concurrent writers never interleaves
    within a line.
    """

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        input_stream: Optional[TextIO] = None,
    ):
        if buffer_size < 2:
            raise ValueError("console buffer needs room for at least one character")
        self.stream = stream if stream is not None else sys.stdout
        self.buffer_size = buffer_size
        self.input_stream = input_stream
        self._lock = threading.Lock()
        self._local = threading.local()

    def _buffer(self) -> List[str]:
        buffer = getattr(self._local, "buffer", None)
        if buffer is None:
            buffer = self._local.buffer = []
        return buffer

    def _emit(self, buffer: List[str]) -> None:
        if not buffer:
            return
        text = "".join(buffer)
        buffer.clear()
        with self._lock:
            self.stream.write(text)

    def write(self, text: str) -> None:
        """Queue *text*, emitting at newlines, when full and at the end."""
        buffer = self._buffer()
        for ch in text:
            if len(buffer) >= self.buffer_size - 1:
                self._emit(buffer)
            buffer.append(ch)
            if ch == "\n":
                self._emit(buffer)
        self._emit(buffer)

    def putchar(self, c: str) -> None:
        """Write a single character and flush."""
        if len(c) != 1:
            raise ValueError("putchar takes exactly one character")
        self.write(c)
        self.flush()

    def flush(self) -> None:
        """Emit this thread's pending text and flush the stream."""
        self._emit(self._buffer())
        flush = getattr(self.stream, "flush", None)
        if flush is not None:
            with self._lock:
                flush()

    def getchar(self) -> str:
        """Read one character; "\\0" without an input stream, "" at its end."""
        if self.input_stream is None:
            return "\0"
        return self.input_stream.read(1)

    def print_hex(self, value: int) -> None:
        """Write *value* as 16 hex digits."""
        self.write(format_hex(value))

    def print_hex8(self, value: int) -> None:
        """Write *value* as 2 hex digits."""
        self.write(format_hex8(value))

    def print_hex16(self, value: int) -> None:
        """Write *value* as 4 hex digits."""
        self.write(format_hex16(value))

    def print_dec(self, value: int) -> None:
        """Write *value* as unsigned decimal."""
        self.write(format_dec(value))