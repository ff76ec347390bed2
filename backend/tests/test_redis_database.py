"""Redis adapter specifics: key layout, cluster mode and error translation."""

from datetime import datetime, timezone
from unittest import mock

import fakeredis
import pytest
import redis

from recstore.storage import (
    BackendUnavailable,
    DeadlineExceeded,
    Feedback,
    Item,
    ItemPatch,
    NotFound,
    User,
    UserPatch,
)
from recstore.storage.redis_database import RedisDatabase, feedback_member, parse_member

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def client():
    return fakeredis.FakeRedis(decode_responses=True)


def test_member_round_trip():
    member = feedback_member(("like", "u1", "i1"))
    assert parse_member(member) == ("like", "u1", "i1")


def test_member_order_matches_key_order():
    keys = [("a", "b", "c"), ("a b", "c", "d"), ("a", "bc", "a")]
    assert sorted(keys) == sorted(keys, key=feedback_member)


def test_feedback_key_layout(client):
    database = RedisDatabase(client)
    database.batch_insert_feedback([Feedback(feedback_type="like", user_id="u1", item_id="i1", timestamp=T0)])

    member = feedback_member(("like", "u1", "i1"))
    assert client.exists(f"feedback/{member}")
    assert client.sismember("user_feedback/u1", member)
    assert client.sismember("item_feedback/i1", member)
    assert client.zrangebylex("users", "-", "+") == ["u1"]


def test_purge_keeps_neighbor_cache(client):
    client.zadd("item_neighbors/i1", {"i2": 1})
    database = RedisDatabase(client)
    database.batch_insert_feedback([Feedback(feedback_type="like", user_id="u1", item_id="i1", timestamp=T0)])

    database.purge()

    assert client.keys("*") == ["item_neighbors/i1"]


def test_cluster_mode_works_without_transactions(client):
    database = RedisDatabase(client, cluster=True)
    database.batch_insert_users([User(user_id=f"u{i}") for i in range(3)])
    cursor, users = database.get_users("", 2)
    assert [u.user_id for u in users] == ["u0", "u1"]
    assert cursor


@pytest.mark.parametrize("error, expected", [
    (redis.ConnectionError("refused"), BackendUnavailable),
    (redis.TimeoutError("slow"), DeadlineExceeded),
    (redis.ResponseError("CROSSSLOT"), BackendUnavailable),
])
def test_driver_errors_are_translated(error, expected):
    broken = mock.Mock()
    broken.get.side_effect = error
    with pytest.raises(expected):
        RedisDatabase(broken).get_user("u1")


def test_modify_item_does_not_resurrect_a_deleted_item(client):
    database = RedisDatabase(client)
    database.batch_insert_items([Item(item_id="i1", timestamp=T0)])
    read = database.get_item

    def read_then_delete(item_id):
        item = read(item_id)
        database.delete_item(item_id)
        return item

    with mock.patch.object(database, "get_item", side_effect=read_then_delete):
        with pytest.raises(NotFound):
            database.modify_item("i1", ItemPatch(comment="updated"))

    assert not client.exists("item/i1")
    assert client.zscore("items", "i1") is None


def test_modify_user_does_not_resurrect_a_deleted_user(client):
    database = RedisDatabase(client)
    database.batch_insert_users([User(user_id="u1")])
    read = database.get_user

    def read_then_delete(user_id):
        user = read(user_id)
        database.delete_user(user_id)
        return user

    with mock.patch.object(database, "get_user", side_effect=read_then_delete):
        with pytest.raises(NotFound):
            database.modify_user("u1", UserPatch(comment="updated"))

    assert not client.exists("user/u1")
