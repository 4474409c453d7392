"""Newline framing for the relay protocol.

Reads never raise for transport problems: :meth:`LineReader.read_line`
returns a :class:`ReadResult` describing a line, a clean end of stream or a
fault, and the caller's loop switches on it.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass
from typing import BinaryIO

from .constants import ENCODING, LINE_TERMINATOR, MAX_LINE_BYTES


class ReadStatus(enum.Enum):
    LINE = "line"
    CLOSED = "closed"
    FAULT = "fault"


@dataclass(frozen=True)
class ReadResult:
    status: ReadStatus
    text: str = ""
    error: str | None = None

    @property
    def is_line(self) -> bool:
        return self.status is ReadStatus.LINE


CLOSED = ReadResult(ReadStatus.CLOSED)


def encode_line(text: str) -> bytes:
    if "\n" in text:
        raise ValueError("frame text must not contain a newline")
    return text.encode(ENCODING) + LINE_TERMINATOR


def encode_lines(lines: Iterable[str]) -> bytes:
    return b"".join(encode_line(line) for line in lines)


def decode_line(raw: bytes) -> str:
    if raw.endswith(LINE_TERMINATOR):
        raw = raw[: -len(LINE_TERMINATOR)]
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode(ENCODING, errors="replace")


class LineReader:
    """Reads newline-terminated frames from a binary stream.

    An unterminated line at end of stream is discarded. A line longer than
    ``max_line_bytes`` (0 disables the limit) is reported as a fault.
    """

    def __init__(self, stream: BinaryIO, *, max_line_bytes: int = MAX_LINE_BYTES) -> None:
        self._stream = stream
        self.max_line_bytes = int(max_line_bytes)

    def read_line(self) -> ReadResult:
        limit = self.max_line_bytes + 1 if self.max_line_bytes > 0 else -1
        try:
            raw = self._stream.readline(limit)
        except (OSError, ValueError) as e:
            # ValueError: the file object was closed underneath us.
            return ReadResult(ReadStatus.FAULT, error=str(e) or type(e).__name__)

        if not raw:
            return CLOSED

        if not raw.endswith(LINE_TERMINATOR):
            if self.max_line_bytes > 0 and len(raw) > self.max_line_bytes:
                return ReadResult(
                    ReadStatus.FAULT,
                    error=f"line exceeds {self.max_line_bytes} bytes",
                )
            return CLOSED

        return ReadResult(ReadStatus.LINE, text=decode_line(raw))

    def close(self) -> None:
        try:
            self._stream.close()
        except OSError:
            pass
