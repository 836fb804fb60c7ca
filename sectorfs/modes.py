"""File mode bits, wait flags and terminal window-size ioctl structures."""

from __future__ import annotations

import struct
from dataclasses import dataclass

S_IFMT = 0o170000
S_IFSOCK = 0o140000
S_IFLNK = 0o120000
S_IFREG = 0o100000
S_IFBLK = 0o060000
S_IFDIR = 0o040000
S_IFCHR = 0o020000
S_IFIFO = 0o010000

S_IRUSR = 0o400
S_IWUSR = 0o200
S_IXUSR = 0o100
S_IRGRP = 0o040
S_IWGRP = 0o020
S_IXGRP = 0o010
S_IROTH = 0o004
S_IWOTH = 0o002
S_IXOTH = 0o001

WNOHANG = 0x01
WUNTRACED = 0x02
WCONTINUED = 0x08

TIOCGWINSZ = 0x5413
TIOCSWINSZ = 0x5414
FIONREAD = 0x541B

_WINSIZE = struct.Struct("<4H")


def _file_type(mode: int) -> int:
    return mode & S_IFMT


def is_reg(mode: int) -> bool:
    """Return True if *mode* describes a regular file."""
    return _file_type(mode) == S_IFREG


def is_dir(mode: int) -> bool:
    """Return True if *mode* describes a directory."""
    return _file_type(mode) == S_IFDIR


def is_chr(mode: int) -> bool:
    """Return True if *mode* describes a character device."""
    return _file_type(mode) == S_IFCHR


def is_fifo(mode: int) -> bool:
    """Return True if *mode* describes a FIFO."""
    return _file_type(mode) == S_IFIFO


@dataclass(frozen=True)
class WinSize:
    """Terminal dimensions as exchanged by the window-size ioctls."""

    rows: int = 0
    cols: int = 0
    xpixel: int = 0
    ypixel: int = 0

    def to_bytes(self) -> bytes:
        """Encode as four little-endian unsigned 16-bit fields."""
        try:
            return _WINSIZE.pack(self.rows, self.cols, self.xpixel, self.ypixel)
        except struct.error as exc:
            raise ValueError(f"window size field out of range: {self}") from exc

    @classmethod
    def from_bytes(cls, data: bytes) -> "WinSize":
        """Decode the wire form produced by :meth:`to_bytes`."""
        if len(data) != _WINSIZE.size:
            raise ValueError(
                f"window size needs {_WINSIZE.size} bytes, got {len(data)}"
            )
        return cls(*_WINSIZE.unpack(data))