"""
Stream
======

Bounded producer/consumer channel for streaming users, items and feedback.

A producer thread follows paging cursors and puts batches on a bounded
queue. Failures go to a separate error slot that the consumer sees before
the stream counts as exhausted. Closing the stream sets a cancel flag. The
producer checks it before every backend request and while it waits on a
full queue.
"""

import logging
import queue
import threading
import weakref
from typing import Callable, Generic, List, Optional, Tuple, TypeVar

from .errors import DeadlineExceeded, StreamClosed

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Sentinel put on the data queue when the producer stops
_CLOSED = object()

DEFAULT_QUEUE_SIZE = 2
POLL_INTERVAL = 0.1


# ── Producer ──────────────────────────────────────────────────
# Runs without a reference to the Stream, so an abandoned stream can be
# collected and its finalizer can cancel the producer.

def _put(q: "queue.Queue", cancelled: threading.Event, item, name: str) -> bool:
    while True:
        try:
            q.put(item, timeout=POLL_INTERVAL)
            return True
        except queue.Full:
            if cancelled.is_set():
                logger.debug(f"Stream {name} abandoned by consumer")
                return False


def _produce(fetch_page, q: "queue.Queue", cancelled: threading.Event, errors: list, name: str):
    cursor = ""
    try:
        while not cancelled.is_set():
            cursor, batch = fetch_page(cursor)
            if batch and not _put(q, cancelled, batch, name):
                return
            if not cursor:
                break
    except Exception as e:
        logger.error(f"Stream {name} failed: {e}")
        errors.append(e)
    finally:
        _put(q, cancelled, _CLOSED, name)


class Stream(Generic[T]):
    """
    Lazy, finite sequence of batches produced on a background thread.

    Usage:
        with database.get_user_stream(100) as stream:
            for users in stream:
                ...
    """

    def __init__(
        self,
        fetch_page: Callable[[str], Tuple[str, List[T]]],
        maxsize: int = DEFAULT_QUEUE_SIZE,
        name: str = "stream"
    ):
        """
        Start the producer.

        Args:
            fetch_page: Called with a cursor, returns (next cursor, batch).
                        An empty next cursor ends the stream.
            maxsize: Maximum number of batches buffered ahead of the consumer
            name: Thread name, shown in logs
        """
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._errors: List[BaseException] = []
        self._cancelled = threading.Event()
        self._exhausted = False
        self._thread = threading.Thread(
            target=_produce,
            args=(fetch_page, self._queue, self._cancelled, self._errors, name),
            name=name,
            daemon=True
        )
        weakref.finalize(self, self._cancelled.set)
        self._thread.start()

    # ── Consumer ──────────────────────────────────────────────

    @property
    def error(self) -> Optional[BaseException]:
        return self._errors[0] if self._errors else None

    def get(self, timeout: Optional[float] = None) -> List[T]:
        """
        Return the next batch.

        Raises:
            StreamClosed: the stream ended without error
            DeadlineExceeded: no batch arrived within timeout
            Exception: whatever the producer failed with
        """
        if self._cancelled.is_set():
            raise StreamClosed("stream cancelled")
        if not self._exhausted:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                raise DeadlineExceeded(f"no batch within {timeout}s") from None
            if item is not _CLOSED:
                return item
            self._exhausted = True
        if self._errors:
            raise self._errors[0]
        raise StreamClosed("stream closed")

    def close(self):
        """Cancel the producer. Buffered batches are discarded."""
        self._cancelled.set()
        try:
            while True:
                self._queue.get_nowait()
        except queue.Empty:
            pass

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the producer thread. Returns True if it has stopped."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def __iter__(self):
        return self

    def __next__(self) -> List[T]:
        try:
            return self.get()
        except StreamClosed:
            raise StopIteration

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
