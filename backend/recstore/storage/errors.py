"""
Storage Errors
==============

Shared error taxonomy. Every adapter translates its driver exceptions into
these before they reach the caller.
"""

from typing import Iterable, Optional, Tuple


class RecstoreError(Exception):
    """Base class for all storage and scoring errors."""


class InvalidArgument(RecstoreError, ValueError):
    """Malformed input, raised before any network round trip."""


class NotFound(RecstoreError):
    """Point lookup on an absent entity."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{entity_id}: {kind} not found")


class UnsupportedBackend(RecstoreError):
    """Connection descriptor with an unrecognized scheme."""

    def __init__(self, descriptor: str):
        self.descriptor = descriptor
        super().__init__(f"Unknown database: {descriptor}")


class BackendUnavailable(RecstoreError):
    """Connectivity failure. Not retried inside the core."""


class DeadlineExceeded(BackendUnavailable):
    """Network operation did not finish before its deadline."""


class Conflict(RecstoreError):
    """Duplicate-key insert without overwrite permission."""

    def __init__(self, keys: Iterable[Tuple[str, ...]], message: Optional[str] = None):
        self.keys = list(keys)
        if message is None:
            shown = ", ".join("/".join(k) for k in self.keys[:5])
            more = f" (+{len(self.keys) - 5} more)" if len(self.keys) > 5 else ""
            message = f"duplicate keys: {shown}{more}"
        super().__init__(message)


class StreamClosed(RecstoreError):
    """Stream exhausted without error."""
