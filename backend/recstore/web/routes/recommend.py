"""
Recommendation API routes
=========================

Offline recommendations, item neighbors and session scoring, all served
from the neighbor cache.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from ...recommender import NeighborCache, SessionScorer
from ...storage import Feedback, Score
from ..dependencies import get_cache, get_scorer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["recommendations"])


@router.get(
    "/recommend/{user_id}",
    response_model=List[str],
    summary="Get offline recommendations",
    description="Item IDs from the user's offline recommendation set, best first"
)
def get_recommend(
    user_id: str,
    n: int = Query(10, description="Number of recommendations"),
    cache: NeighborCache = Depends(get_cache)
):
    return [score.id for score in cache.get_recommend(user_id, n)]


@router.post(
    "/session/recommend",
    response_model=List[Score],
    summary="Recommend for a session",
    description="""
    Rank candidates for a session of recent feedback (oldest first).

    Items in the session never come back.
    """
)
def session_recommend(
    session: List[Feedback],
    n: int = Query(10, description="Number of recommendations"),
    scorer: SessionScorer = Depends(get_scorer)
):
    return scorer.score(session, n)


@router.get(
    "/item/{item_id}/neighbors",
    response_model=List[Score],
    summary="Get item neighbors"
)
def get_item_neighbors(
    item_id: str,
    n: int = Query(10, description="Number of neighbors"),
    cache: NeighborCache = Depends(get_cache)
):
    return cache.get_neighbors(item_id, n)
