"""
Abstract database interface.

Every backend family implements the same surface:

    init / close / optimize / purge          lifecycle
    batch_insert_* / get_* / delete_*        CRUD on users, items, feedback
    modify_user / modify_item                partial updates via patches
    get_users / get_items / get_feedback     cursor paging
    get_*_stream                             bounded background streams

Adapters own their connections. They translate driver errors into
recstore.storage.errors before anything reaches the caller.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import Conflict, InvalidArgument
from .models import Feedback, FeedbackKey, Item, ItemPatch, User, UserPatch
from .stream import Stream

logger = logging.getLogger(__name__)


def require_id(value: str, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidArgument(f"{what} must be a non-empty string")
    return value


def require_positive(n: int, what: str = "n") -> int:
    if n <= 0:
        raise InvalidArgument(f"{what} must be positive, got {n}")
    return n


def prepare_feedback(feedback: Sequence[Feedback], overwrite: bool) -> List[Feedback]:
    """
    Validate a feedback batch and collapse repeated keys.

    With overwrite the last event for a key wins. Without it a key repeated
    inside the batch is a conflict.
    """
    by_key: Dict[FeedbackKey, Feedback] = {}
    repeated = []
    for f in feedback:
        require_id(f.feedback_type, "feedback_type")
        require_id(f.user_id, "user_id")
        require_id(f.item_id, "item_id")
        if f.key in by_key and not overwrite:
            repeated.append(f.key)
        by_key[f.key] = f
    if repeated:
        raise Conflict(repeated)
    return list(by_key.values())


class Database(ABC):
    """
    Storage adapter for one backend family.

    Subclasses implement the abstract operations. Streams are built here on
    top of the paging operations.
    """

    # ── Lifecycle ─────────────────────────────────────────────

    @abstractmethod
    def init(self):
        """Create tables/collections and indexes. Idempotent."""
        ...

    @abstractmethod
    def close(self):
        """Release connections owned by this adapter."""
        ...

    @abstractmethod
    def optimize(self):
        """Backend compaction or reindex. No-op where the concept is absent."""
        ...

    @abstractmethod
    def purge(self):
        """Delete all users, items and feedback. Irreversible."""
        ...

    # ── Items ─────────────────────────────────────────────────

    @abstractmethod
    def batch_insert_items(self, items: Sequence[Item]):
        ...

    @abstractmethod
    def batch_get_items(self, item_ids: Sequence[str]) -> List[Item]:
        ...

    @abstractmethod
    def delete_item(self, item_id: str):
        ...

    @abstractmethod
    def get_item(self, item_id: str) -> Item:
        ...

    @abstractmethod
    def modify_item(self, item_id: str, patch: ItemPatch):
        ...

    @abstractmethod
    def get_items(
        self,
        cursor: str,
        n: int,
        time_limit: Optional[datetime] = None,
        include_hidden: bool = False
    ) -> Tuple[str, List[Item]]:
        ...

    @abstractmethod
    def get_item_feedback(self, item_id: str, feedback_types: Sequence[str] = ()) -> List[Feedback]:
        ...

    # ── Users ─────────────────────────────────────────────────

    @abstractmethod
    def batch_insert_users(self, users: Sequence[User]):
        ...

    @abstractmethod
    def delete_user(self, user_id: str):
        ...

    @abstractmethod
    def get_user(self, user_id: str) -> User:
        ...

    @abstractmethod
    def modify_user(self, user_id: str, patch: UserPatch):
        ...

    @abstractmethod
    def get_users(self, cursor: str, n: int) -> Tuple[str, List[User]]:
        ...

    @abstractmethod
    def get_user_feedback(
        self,
        user_id: str,
        with_future: bool = False,
        feedback_types: Sequence[str] = ()
    ) -> List[Feedback]:
        ...

    # ── Feedback ──────────────────────────────────────────────

    @abstractmethod
    def get_user_item_feedback(
        self,
        user_id: str,
        item_id: str,
        feedback_types: Sequence[str] = ()
    ) -> List[Feedback]:
        ...

    @abstractmethod
    def delete_user_item_feedback(
        self,
        user_id: str,
        item_id: str,
        feedback_types: Sequence[str] = ()
    ) -> int:
        """Delete feedback between a user and an item. Returns rows deleted."""
        ...

    @abstractmethod
    def batch_insert_feedback(
        self,
        feedback: Sequence[Feedback],
        insert_user: bool = True,
        insert_item: bool = True,
        overwrite: bool = True
    ) -> int:
        """
        Insert a feedback batch atomically.

        Args:
            feedback: Events to insert
            insert_user: Create missing users, otherwise drop their events
            insert_item: Create missing items, otherwise drop their events
            overwrite: Replace existing keys, otherwise raise Conflict

        Returns:
            Number of events written, after collapsing repeated keys and
            dropping events of unknown users or items
        """
        ...

    @abstractmethod
    def get_feedback(
        self,
        cursor: str,
        n: int,
        time_limit: Optional[datetime] = None,
        feedback_types: Sequence[str] = ()
    ) -> Tuple[str, List[Feedback]]:
        ...

    # ── Streams ───────────────────────────────────────────────

    def get_user_stream(self, batch_size: int) -> Stream[User]:
        require_positive(batch_size, "batch_size")
        return Stream(
            lambda cursor: self.get_users(cursor, batch_size),
            name="user-stream"
        )

    def get_item_stream(
        self,
        batch_size: int,
        time_limit: Optional[datetime] = None,
        include_hidden: bool = False
    ) -> Stream[Item]:
        require_positive(batch_size, "batch_size")
        return Stream(
            lambda cursor: self.get_items(cursor, batch_size, time_limit, include_hidden),
            name="item-stream"
        )

    def get_feedback_stream(
        self,
        batch_size: int,
        time_limit: Optional[datetime] = None,
        feedback_types: Sequence[str] = ()
    ) -> Stream[Feedback]:
        require_positive(batch_size, "batch_size")
        feedback_types = tuple(feedback_types)
        return Stream(
            lambda cursor: self.get_feedback(cursor, batch_size, time_limit, feedback_types),
            name="feedback-stream"
        )

    # ── Context manager ───────────────────────────────────────

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        return f"<{self.__class__.__name__}>"
