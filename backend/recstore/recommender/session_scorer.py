"""
Session Scorer
==============

Ranks candidates for a live session from cached item neighbors.

Logic:
1. Every item in the session is "seen" and never recommended back
2. Fetch the neighbor list of each distinct session item (in parallel)
3. Per event, add each unseen neighbor's score to its accumulator
4. Sort by score descending, ties by candidate id ascending, keep top n

An item similar to several session items outranks one similar to only one.
"""

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

from ..storage.models import Feedback, Score
from .neighbor_cache import NeighborCache

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


class SessionScorer:
    """
    Aggregates neighbor scores over a session.

    Usage:
        scorer = SessionScorer(cache)
        scorer.score(session, 10)
    """

    def __init__(
        self,
        cache: NeighborCache,
        neighbor_count: Optional[int] = None,
        max_workers: int = DEFAULT_MAX_WORKERS
    ):
        """
        Args:
            cache: Neighbor cache to read from
            neighbor_count: Neighbors fetched per session item, None for all
            max_workers: Parallel neighbor fetches
        """
        self.cache = cache
        self.neighbor_count = neighbor_count
        self.max_workers = max_workers

    def _fetch_neighbors(self, item_ids: List[str]) -> Dict[str, List[Score]]:
        if len(item_ids) == 1 or self.max_workers <= 1:
            return {i: self.cache.get_neighbors(i, self.neighbor_count) for i in item_ids}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(item_ids))) as executor:
            lists = executor.map(lambda i: self.cache.get_neighbors(i, self.neighbor_count), item_ids)
            return dict(zip(item_ids, lists))

    def score(self, session: Sequence[Feedback], n: int) -> List[Score]:
        """
        Rank candidates for a session.

        Args:
            session: Recent feedback, oldest first
            n: Maximum number of candidates

        Returns:
            Up to n Score, best first. Session items never appear.
        """
        if not session or n <= 0:
            return []

        item_ids = [f.item_id for f in session]
        seen = set(item_ids)
        neighbors = self._fetch_neighbors(list(dict.fromkeys(item_ids)))

        totals: Dict[str, float] = defaultdict(float)
        for item_id in item_ids:
            for neighbor in neighbors[item_id]:
                if neighbor.id not in seen:
                    totals[neighbor.id] += neighbor.score

        ranked = sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))
        logger.debug(f"Session of {len(item_ids)} events produced {len(ranked)} candidates")
        return [Score(id=candidate, score=total) for candidate, total in ranked[:n]]
