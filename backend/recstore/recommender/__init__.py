"""
Recommender package.

- NeighborCache: reads precomputed neighbor and recommendation sets
- SessionScorer: ranks candidates for a live session
"""

from .neighbor_cache import NeighborCache
from .session_scorer import SessionScorer

__all__ = ["NeighborCache", "SessionScorer"]
