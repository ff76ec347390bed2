"""Tests for neighbor cache reads."""

from unittest import mock

import pytest
import redis

from recstore.recommender import NeighborCache
from recstore.storage import BackendUnavailable, DeadlineExceeded, InvalidArgument


def scores(result):
    return [(s.id, s.score) for s in result]


def test_neighbors_come_back_best_first(cache, redis_client):
    redis_client.zadd("item_neighbors/100", {"1": 1, "2": 2, "3": 3})
    assert scores(cache.get_neighbors("100", 3)) == [("3", 3), ("2", 2), ("1", 1)]


def test_n_truncates_and_none_returns_all(cache, redis_client):
    redis_client.zadd("item_neighbors/100", {"1": 1, "2": 2, "3": 3})
    assert scores(cache.get_neighbors("100", 2)) == [("3", 3), ("2", 2)]
    assert len(cache.get_neighbors("100", None)) == 3


@pytest.mark.parametrize("n", [0, -5])
def test_non_positive_n_is_empty(cache, redis_client, n):
    redis_client.zadd("item_neighbors/100", {"1": 1})
    assert cache.get_neighbors("100", n) == []


def test_missing_key_is_empty(cache):
    assert cache.get_neighbors("cold", 10) == []
    assert cache.get_recommend("cold", 10) == []


def test_namespaces_are_separate(cache, redis_client):
    redis_client.zadd("user_neighbors/u1", {"u2": 0.5})
    redis_client.zadd("offline_recommend/u1", {"i9": 7})
    assert scores(cache.get_user_neighbors("u1", 10)) == [("u2", 0.5)]
    assert scores(cache.get_recommend("u1", 10)) == [("i9", 7)]
    assert cache.get_neighbors("u1", 10) == []


def test_custom_namespace(redis_client):
    cache = NeighborCache(redis_client, item_neighbors="similar")
    redis_client.zadd("similar/1", {"2": 1})
    assert scores(cache.get_neighbors("1", 10)) == [("2", 1)]


def test_empty_subject_id_is_invalid(cache):
    with pytest.raises(InvalidArgument):
        cache.get_neighbors("", 10)


def test_redis_errors_are_translated():
    client = mock.Mock()
    client.zrevrange.side_effect = redis.ConnectionError("refused")
    with pytest.raises(BackendUnavailable):
        NeighborCache(client).get_neighbors("1", 10)

    client.zrevrange.side_effect = redis.TimeoutError("slow")
    with pytest.raises(DeadlineExceeded):
        NeighborCache(client).get_neighbors("1", 10)
