"""
Opaque paging cursors.

A cursor encodes the sort key of the last entity returned. The empty string
starts a scan and is also returned when the scan reaches the end.
"""

import base64
import binascii
import json
from typing import Optional, Sequence, Tuple

from .errors import InvalidArgument


def encode_cursor(key: Sequence[str]) -> str:
    raw = json.dumps(list(key), separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str, width: int) -> Optional[Tuple[str, ...]]:
    """
    Decode a cursor into its sort key.

    Args:
        cursor: Token returned by a previous page, or "" to start.
        width: Number of components in the sort key.

    Returns:
        Tuple of key components, or None for the empty cursor.
    """
    if not cursor:
        return None
    try:
        key = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidArgument(f"malformed cursor: {cursor!r}") from e
    if not isinstance(key, list) or len(key) != width or not all(isinstance(k, str) for k in key):
        raise InvalidArgument(f"malformed cursor: {cursor!r}")
    return tuple(key)


def next_cursor(page: list, n: int, key_of) -> Tuple[str, list]:
    """
    Split an n+1 row read into (next cursor, page of n).

    The cursor stays empty when the read did not overflow, so the last page
    always comes back with the terminal cursor.
    """
    if len(page) > n:
        page = page[:n]
        return encode_cursor(key_of(page[-1])), page
    return "", page
