"""Tests for the background batch stream."""

import gc
import threading

import pytest

from recstore.storage import DeadlineExceeded, StreamClosed
from recstore.storage.errors import BackendUnavailable
from recstore.storage.stream import Stream


def pages_of(batches):
    """fetch_page over fixed batches, the cursor is the next index."""
    def fetch(cursor):
        index = int(cursor or 0)
        next_index = index + 1
        return (str(next_index) if next_index < len(batches) else ""), batches[index]
    return fetch


def test_stream_yields_batches_in_order():
    with Stream(pages_of([[1, 2], [3, 4], [5]])) as stream:
        assert list(stream) == [[1, 2], [3, 4], [5]]


def test_get_after_exhaustion_raises_stream_closed():
    stream = Stream(pages_of([[1]]))
    assert stream.get(timeout=5) == [1]
    with pytest.raises(StreamClosed):
        stream.get(timeout=5)
    with pytest.raises(StreamClosed):
        stream.get(timeout=5)


def test_empty_batches_are_skipped():
    with Stream(pages_of([[]])) as stream:
        assert list(stream) == []


def test_producer_error_reaches_consumer():
    def fetch(cursor):
        if not cursor:
            return "next", [1]
        raise BackendUnavailable("boom")

    stream = Stream(fetch)
    assert stream.get(timeout=5) == [1]
    with pytest.raises(BackendUnavailable, match="boom"):
        stream.get(timeout=5)
    assert isinstance(stream.error, BackendUnavailable)


def test_producer_error_surfaces_through_iteration():
    def fetch(cursor):
        raise BackendUnavailable("down")

    with pytest.raises(BackendUnavailable):
        list(Stream(fetch))


def test_get_times_out_when_producer_is_slow():
    release = threading.Event()

    def fetch(cursor):
        release.wait(5)
        return "", [1]

    stream = Stream(fetch)
    try:
        with pytest.raises(DeadlineExceeded):
            stream.get(timeout=0.05)
    finally:
        release.set()
        stream.close()


def test_close_stops_the_producer():
    calls = []

    def endless(cursor):
        calls.append(cursor)
        return str(len(calls)), [len(calls)]

    stream = Stream(endless, maxsize=1)
    assert stream.get(timeout=5) == [1]
    stream.close()

    assert stream.join(timeout=5)
    stopped_at = len(calls)
    assert stopped_at <= 4
    with pytest.raises(StreamClosed):
        stream.get(timeout=1)


def test_abandoned_stream_stops_the_producer():
    def endless(cursor):
        return "next", [1]

    stream = Stream(endless, maxsize=1)
    assert stream.get(timeout=5) == [1]
    thread = stream._thread

    del stream
    gc.collect()
    thread.join(5)
    assert not thread.is_alive()
