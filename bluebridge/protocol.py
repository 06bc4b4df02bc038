"""Byte-level echo protocol shared by the serial and RFCOMM sessions."""

from __future__ import annotations

import enum
import re

GREETING = b"Hello from bluebridge\n"
REJECTION = b"Rejected: not authorized\n"
BUFFER_SIZE = 1024

_ADDRESS_RE = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){5}$")


class SessionEnd(enum.Enum):
    """Why a single read/echo session stopped."""

    END_OF_STREAM = "end_of_stream"
    READ_ERROR = "read_error"
    WRITE_ERROR = "write_error"
    OPEN_FAILED = "open_failed"
    GREETING_FAILED = "greeting_failed"


def is_end_of_stream(chunk: bytes) -> bool:
    """A zero-length read marks the end of the stream."""

    return not chunk


def normalize_address(text: str) -> str:
    """Return *text* in the uppercase colon-separated form used for comparisons."""

    return text.strip().upper()


def addresses_match(left: str, right: str) -> bool:
    return normalize_address(left) == normalize_address(right)


def looks_like_address(text: str) -> bool:
    """True if *text* is six colon-separated hex octets (e.g. ``AA:BB:CC:DD:EE:FF``)."""

    return bool(_ADDRESS_RE.match(normalize_address(text)))
