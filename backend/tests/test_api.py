"""Tests for the HTTP routes."""

from unittest import mock

import pytest
from fastapi.testclient import TestClient

from recstore.main import create_app
from recstore.storage import BackendUnavailable, DeadlineExceeded


@pytest.fixture
def client(sqlite_database, cache):
    return TestClient(create_app(database=sqlite_database, cache=cache))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_startup_failure_closes_opened_database():
    database = mock.Mock()
    with mock.patch("recstore.main.open_database", return_value=database), \
            mock.patch("recstore.main.open_cache", side_effect=BackendUnavailable("cache down")):
        with pytest.raises(BackendUnavailable):
            with TestClient(create_app()):
                pass

    database.close.assert_called_once()


# =============================================================================
# Users and items
# =============================================================================


def test_user_crud(client):
    assert client.post("/api/user", json={"user_id": "u1", "labels": ["a"]}).json() == {"row_affected": 1}
    assert client.get("/api/user/u1").json()["labels"] == ["a"]

    assert client.patch("/api/user/u1", json={"comment": "hi"}).status_code == 200
    assert client.get("/api/user/u1").json()["comment"] == "hi"

    assert client.delete("/api/user/u1").json() == {"row_affected": 1}
    response = client.get("/api/user/u1")
    assert response.status_code == 404
    assert response.json() == {"detail": "u1: user not found"}


def test_patch_missing_item_is_404(client):
    assert client.patch("/api/item/ghost", json={"is_hidden": True}).status_code == 404


def test_users_paging(client):
    for i in range(5):
        client.post("/api/user", json={"user_id": f"u{i}"})

    first = client.get("/api/users", params={"n": 3}).json()
    second = client.get("/api/users", params={"n": 3, "cursor": first["cursor"]}).json()

    assert [u["user_id"] for u in first["users"]] == ["u0", "u1", "u2"]
    assert [u["user_id"] for u in second["users"]] == ["u3", "u4"]
    assert second["cursor"] == ""


def test_bad_page_size_is_400(client):
    assert client.get("/api/users", params={"n": 0}).status_code == 400
    assert client.get("/api/items", params={"cursor": "garbage!"}).status_code == 400


def test_items_hide_hidden(client):
    client.post("/api/item", json={"item_id": "i1"})
    client.post("/api/item", json={"item_id": "i2", "is_hidden": True})

    visible = client.get("/api/items").json()["items"]
    everything = client.get("/api/items", params={"include_hidden": True}).json()["items"]

    assert [i["item_id"] for i in visible] == ["i1"]
    assert [i["item_id"] for i in everything] == ["i1", "i2"]


# =============================================================================
# Feedback
# =============================================================================


def test_feedback_insert_and_lookup(client):
    body = [
        {"feedback_type": "like", "user_id": "u1", "item_id": "i1", "timestamp": "2024-01-01T00:00:00Z"},
        {"feedback_type": "read", "user_id": "u1", "item_id": "i2", "timestamp": "2024-01-02T00:00:00Z"},
    ]
    assert client.post("/api/feedback", json=body).json() == {"row_affected": 2}

    likes = client.get("/api/user/u1/feedback/like").json()
    assert [f["item_id"] for f in likes] == ["i1"]


def test_feedback_conflict_is_409(client):
    body = [{"feedback_type": "like", "user_id": "u1", "item_id": "i1", "timestamp": "2024-01-01T00:00:00Z"}]
    client.post("/api/feedback", json=body)
    response = client.post("/api/feedback", params={"overwrite": False}, json=body)
    assert response.status_code == 409


def test_feedback_row_affected_counts_written_events(client):
    body = [
        {"feedback_type": "like", "user_id": "u1", "item_id": "i1", "timestamp": "2024-01-01T00:00:00Z"},
        {"feedback_type": "like", "user_id": "u1", "item_id": "i1", "timestamp": "2024-01-02T00:00:00Z"},
        {"feedback_type": "read", "user_id": "u1", "item_id": "i2", "timestamp": "2024-01-02T00:00:00Z"},
    ]
    assert client.post("/api/feedback", json=body).json() == {"row_affected": 2}


def test_backend_failures_are_503(sqlite_database, cache):
    database = mock.Mock(wraps=sqlite_database)
    app = create_app(database=database, cache=cache)
    client = TestClient(app)

    database.get_user.side_effect = BackendUnavailable("mysql: gone away")
    assert client.get("/api/user/u1").status_code == 503

    database.get_user.side_effect = DeadlineExceeded("slow")
    response = client.get("/api/user/u1")
    assert response.status_code == 503
    assert response.json() == {"detail": "slow"}


# =============================================================================
# Recommendations
# =============================================================================


def test_session_recommend(client, neighbor_graph):
    body = [{"feedback_type": "read", "user_id": "u1", "item_id": str(i)} for i in (1, 2, 3, 4)]
    response = client.post("/api/session/recommend", params={"n": 3}, json=body)

    assert response.status_code == 200
    assert [(s["id"], s["score"]) for s in response.json()] == [("9", 4), ("8", 3), ("7", 2)]


def test_item_neighbors(client, redis_client):
    redis_client.zadd("item_neighbors/100", {"1": 1, "2": 2, "3": 3})
    response = client.get("/api/item/100/neighbors", params={"n": 3})
    assert [s["id"] for s in response.json()] == ["3", "2", "1"]


def test_offline_recommend_returns_ids(client, redis_client):
    redis_client.zadd("offline_recommend/u1", {"a": 1, "b": 5})
    assert client.get("/api/recommend/u1", params={"n": 10}).json() == ["b", "a"]
    assert client.get("/api/recommend/cold").json() == []
