"""
Storage package.

open_database() turns a descriptor into one of:
- SQLDatabase: SQLite, MySQL, PostgreSQL
- MongoDatabase: MongoDB
- RedisDatabase: Redis single node or cluster
"""

from .base import Database
from .errors import (
    BackendUnavailable,
    Conflict,
    DeadlineExceeded,
    InvalidArgument,
    NotFound,
    RecstoreError,
    StreamClosed,
    UnsupportedBackend,
)
from .models import Feedback, FeedbackKey, Item, ItemPatch, Score, User, UserPatch
from .router import mask_descriptor, open_cache, open_database
from .stream import Stream

__all__ = [
    "Database",
    "Stream",
    "open_database",
    "open_cache",
    "mask_descriptor",
    "User",
    "UserPatch",
    "Item",
    "ItemPatch",
    "Feedback",
    "FeedbackKey",
    "Score",
    "RecstoreError",
    "InvalidArgument",
    "NotFound",
    "UnsupportedBackend",
    "BackendUnavailable",
    "DeadlineExceeded",
    "Conflict",
    "StreamClosed",
]
