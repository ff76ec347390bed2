from pathlib import Path

import fakeredis
import pytest

from recstore.recommender import NeighborCache
from recstore.storage import open_database
from recstore.storage.redis_database import RedisDatabase


# =============================================================================
# Backends
# =============================================================================


def _sqlite(tmp_path: Path):
    return open_database(f"sqlite://{tmp_path / 'recstore.db'}", table_prefix="test_")


def _redis(tmp_path: Path):
    return RedisDatabase(fakeredis.FakeRedis(decode_responses=True))


def _mongo(tmp_path: Path):
    mongomock = pytest.importorskip("mongomock")
    from recstore.storage.mongo_database import MongoDatabase

    return MongoDatabase(mongomock.MongoClient(), "recstore", table_prefix="test_")


BACKENDS = {"sqlite": _sqlite, "redis": _redis, "mongo": _mongo}


@pytest.fixture(params=sorted(BACKENDS))
def database(request, tmp_path: Path):
    """Initialized adapter, once per backend family."""
    db = BACKENDS[request.param](tmp_path)
    db.init()
    yield db
    db.close()


@pytest.fixture
def sqlite_database(tmp_path: Path):
    db = _sqlite(tmp_path)
    db.init()
    yield db
    db.close()


# =============================================================================
# Cache
# =============================================================================


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def cache(redis_client) -> NeighborCache:
    return NeighborCache(redis_client)


@pytest.fixture
def neighbor_graph(redis_client):
    """Item neighbor sets 1..4 used by the session scoring examples."""
    redis_client.zadd("item_neighbors/1", {"2": 100000, "9": 1})
    redis_client.zadd("item_neighbors/2", {"3": 100000, "8": 1, "9": 1})
    redis_client.zadd("item_neighbors/3", {"4": 100000, "7": 1, "8": 1, "9": 1})
    redis_client.zadd("item_neighbors/4", {"1": 100000, "6": 1, "7": 1, "8": 1, "9": 1})
    return redis_client
