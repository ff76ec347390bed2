"""
Request dependencies.

The app factory stores the opened backends on app.state. Routes reach them
through these functions with Depends, so tests can override them.
"""

from fastapi import Request

from ..recommender import NeighborCache, SessionScorer
from ..storage import Database


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_cache(request: Request) -> NeighborCache:
    return request.app.state.cache


def get_scorer(request: Request) -> SessionScorer:
    return request.app.state.scorer
