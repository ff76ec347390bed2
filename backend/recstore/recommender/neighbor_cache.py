"""
Neighbor Cache
==============

Read side of the precomputed neighbor and recommendation lists in Redis.

Redis keys:
- item_neighbors/{item_id}      (Sorted Set)  similar items, scored
- user_neighbors/{user_id}      (Sorted Set)  similar users, scored
- offline_recommend/{user_id}   (Sorted Set)  offline recommendations, scored

Offline jobs write these sets. This module only reads them.
"""

import logging
from typing import List, Optional

import redis

from ..storage.base import require_id
from ..storage.errors import BackendUnavailable, DeadlineExceeded
from ..storage.models import Score

logger = logging.getLogger(__name__)


class NeighborCache:
    """
    Sorted-set lookups by namespace and subject id.

    Usage:
        cache = NeighborCache(redis.Redis(decode_responses=True))
        cache.get_neighbors("42", 10)
    """

    def __init__(
        self,
        client,
        item_neighbors: str = "item_neighbors",
        user_neighbors: str = "user_neighbors",
        offline_recommend: str = "offline_recommend"
    ):
        """
        Args:
            client: redis.Redis or RedisCluster with decode_responses=True
            item_neighbors: Namespace of item neighbor sets
            user_neighbors: Namespace of user neighbor sets
            offline_recommend: Namespace of offline recommendation sets
        """
        self.client = client
        self.item_neighbors = item_neighbors
        self.user_neighbors = user_neighbors
        self.offline_recommend = offline_recommend

    def _top(self, namespace: str, subject_id: str, n: Optional[int]) -> List[Score]:
        """
        Highest-scored members of namespace/subject_id, best first.

        Args:
            namespace: Key prefix
            subject_id: Item or user id
            n: Number of members, None for all

        Returns:
            List of Score. Empty when the key is missing or n <= 0.
        """
        require_id(subject_id, "id")
        if n is not None and n <= 0:
            return []
        end = -1 if n is None else n - 1
        key = f"{namespace}/{subject_id}"
        try:
            members = self.client.zrevrange(key, 0, end, withscores=True)
        except redis.TimeoutError as e:
            raise DeadlineExceeded(f"redis: {e}") from e
        except redis.RedisError as e:
            logger.error(f"Error reading {key}: {e}")
            raise BackendUnavailable(f"redis: {e}") from e
        return [Score(id=member, score=score) for member, score in members]

    def get_neighbors(self, item_id: str, n: Optional[int] = None) -> List[Score]:
        return self._top(self.item_neighbors, item_id, n)

    def get_user_neighbors(self, user_id: str, n: Optional[int] = None) -> List[Score]:
        return self._top(self.user_neighbors, user_id, n)

    def get_recommend(self, user_id: str, n: Optional[int] = None) -> List[Score]:
        return self._top(self.offline_recommend, user_id, n)

    def close(self):
        self.client.close()
        logger.info("Closed neighbor cache client")
