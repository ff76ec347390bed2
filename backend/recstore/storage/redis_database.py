"""
Redis Database
==============

Key-value adapter on redis-py, for a single node or a cluster.

Redis keys:
- user/{user_id}             (String, JSON)   user document
- item/{item_id}             (String, JSON)   item document
- feedback/{member}          (String, JSON)   feedback document
- users, items, feedback     (Sorted Set)     score 0 indexes, paged with ZRANGEBYLEX
- user_feedback/{user_id}    (Set)            feedback members of a user
- item_feedback/{item_id}    (Set)            feedback members of an item

A feedback member is "type\\0user\\0item". Lexicographic order of members
then matches tuple order of feedback keys.

A single node applies each batch inside MULTI/EXEC. A cluster cannot run
transactions across slots, so there the adapter serializes batches and
reads on a local lock.
That lock only covers readers of the same adapter, and a driver error in
the middle of a cluster batch can leave the users and items it created
written while the feedback is not.
"""

import contextlib
import functools
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

import redis

from .base import Database, prepare_feedback, require_id, require_positive
from .cursor import decode_cursor, next_cursor
from .errors import (
    BackendUnavailable,
    Conflict,
    DeadlineExceeded,
    NotFound,
    RecstoreError,
)
from .models import (
    Feedback,
    FeedbackKey,
    Item,
    ItemPatch,
    User,
    UserPatch,
    normalize_timestamp,
    sort_feedback,
    utc_now,
)

logger = logging.getLogger(__name__)

USERS = "users"
ITEMS = "items"
FEEDBACK = "feedback"
SEPARATOR = "\x00"

# Key patterns deleted by purge. Neighbor caches live under other prefixes.
PURGE_PATTERNS = ["user/*", "item/*", "feedback/*", "user_feedback/*", "item_feedback/*"]


def _guarded(func):
    """Hold the adapter lock and translate redis errors."""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            with self._lock:
                return func(self, *args, **kwargs)
        except RecstoreError:
            raise
        except redis.TimeoutError as e:
            raise DeadlineExceeded(f"redis: {e}") from e
        except redis.ConnectionError as e:
            logger.error(f"Redis connection error in {func.__name__}: {e}")
            raise BackendUnavailable(f"redis: {e}") from e
        except redis.RedisError as e:
            logger.error(f"Redis error in {func.__name__}: {e}")
            raise BackendUnavailable(f"redis: {e}") from e
    return wrapper


def user_key(user_id: str) -> str:
    return f"user/{user_id}"


def item_key(item_id: str) -> str:
    return f"item/{item_id}"


def feedback_member(key: Sequence[str]) -> str:
    return SEPARATOR.join(key)


def parse_member(member: str) -> FeedbackKey:
    return FeedbackKey(*member.split(SEPARATOR, 2))


def feedback_key(member: str) -> str:
    return f"feedback/{member}"


class RedisDatabase(Database):
    """
    Key-value backend.

    Usage:
        database = RedisDatabase(redis.Redis(decode_responses=True))
        database.init()
    """

    def __init__(self, client, cluster: bool = False):
        """
        Args:
            client: redis.Redis or redis.cluster.RedisCluster, with decode_responses=True
            cluster: True when client is a cluster client
        """
        self.client = client
        self.cluster = cluster
        self._lock = threading.RLock() if cluster else contextlib.nullcontext()

    # ── Helpers ───────────────────────────────────────────────

    def _pipeline(self):
        return self.client.pipeline(transaction=not self.cluster)

    def _get_many(self, keys: List[str]) -> List[Optional[str]]:
        # One GET per key so cluster slots never mix in a single command
        if not keys:
            return []
        pipe = self.client.pipeline(transaction=False)
        for key in keys:
            pipe.get(key)
        return pipe.execute()

    def _exists_many(self, keys: List[str]) -> List[bool]:
        if not keys:
            return []
        pipe = self.client.pipeline(transaction=False)
        for key in keys:
            pipe.exists(key)
        return [bool(r) for r in pipe.execute()]

    def _scan_page(
        self,
        index: str,
        last: Optional[str],
        n: int,
        load: Callable[[List[str]], list],
        accept: Callable[[object], bool] = lambda _: True
    ) -> list:
        """Collect up to n+1 accepted entities after member `last` in a lex index."""
        found = []
        lower = f"({last}" if last is not None else "-"
        while len(found) <= n:
            members = self.client.zrangebylex(index, lower, "+", start=0, num=n + 1)
            if not members:
                break
            for entity in load(members):
                if entity is not None and accept(entity):
                    found.append(entity)
            lower = f"({members[-1]}"
        return found

    def _load_users(self, user_ids: List[str]) -> List[Optional[User]]:
        raw = self._get_many([user_key(u) for u in user_ids])
        return [User.model_validate_json(r) if r else None for r in raw]

    def _load_items(self, item_ids: List[str]) -> List[Optional[Item]]:
        raw = self._get_many([item_key(i) for i in item_ids])
        return [Item.model_validate_json(r) if r else None for r in raw]

    def _load_feedback(self, members: List[str]) -> List[Optional[Feedback]]:
        raw = self._get_many([feedback_key(m) for m in members])
        return [Feedback.model_validate_json(r) if r else None for r in raw]

    def _read_feedback(
        self,
        index_key: str,
        predicate: Callable[[FeedbackKey], bool],
        feedback_types: Sequence[str],
        until: Optional[datetime] = None
    ) -> List[Feedback]:
        members = sorted(m for m in self.client.smembers(index_key) if predicate(parse_member(m)))
        if feedback_types:
            members = [m for m in members if parse_member(m).feedback_type in feedback_types]
        feedback = [f for f in self._load_feedback(members) if f is not None]
        if until is not None:
            feedback = [f for f in feedback if f.timestamp <= until]
        return sort_feedback(feedback)

    # ── Lifecycle ─────────────────────────────────────────────

    def init(self):
        logger.debug("init is a no-op on redis")

    def close(self):
        self.client.close()
        logger.info("Closed redis client")

    def optimize(self):
        logger.debug("optimize is a no-op on redis")

    @_guarded
    def purge(self):
        keys = [USERS, ITEMS, FEEDBACK]
        for pattern in PURGE_PATTERNS:
            keys.extend(self.client.scan_iter(match=pattern, count=1000))
        pipe = self.client.pipeline(transaction=False)
        for key in keys:
            pipe.delete(key)
        pipe.execute()
        logger.info(f"Purged {len(keys)} redis keys")

    # ── Items ─────────────────────────────────────────────────

    @_guarded
    def batch_insert_items(self, items: Sequence[Item]):
        for item in items:
            require_id(item.item_id, "item_id")
        if not items:
            return
        pipe = self._pipeline()
        for item in items:
            pipe.set(item_key(item.item_id), item.model_dump_json())
            pipe.zadd(ITEMS, {item.item_id: 0})
        pipe.execute()
        logger.debug(f"Inserted {len(items)} items")

    @_guarded
    def batch_get_items(self, item_ids: Sequence[str]) -> List[Item]:
        for item_id in item_ids:
            require_id(item_id, "item_id")
        ids = list(dict.fromkeys(item_ids))
        return [item for item in self._load_items(ids) if item is not None]

    @_guarded
    def delete_item(self, item_id: str):
        require_id(item_id, "item_id")
        pipe = self._pipeline()
        pipe.delete(item_key(item_id))
        pipe.zrem(ITEMS, item_id)
        pipe.execute()

    @_guarded
    def get_item(self, item_id: str) -> Item:
        require_id(item_id, "item_id")
        raw = self.client.get(item_key(item_id))
        if raw is None:
            raise NotFound("item", item_id)
        return Item.model_validate_json(raw)

    @_guarded
    def modify_item(self, item_id: str, patch: ItemPatch):
        item = self.get_item(item_id)
        changes = patch.model_dump(exclude_none=True)
        if changes:
            item = item.model_copy(update=changes)
            # XX: a delete since the read must not bring the document back
            if not self.client.set(item_key(item_id), item.model_dump_json(), xx=True):
                raise NotFound("item", item_id)

    @_guarded
    def get_items(
        self,
        cursor: str,
        n: int,
        time_limit: Optional[datetime] = None,
        include_hidden: bool = False
    ) -> Tuple[str, List[Item]]:
        require_positive(n)
        last = decode_cursor(cursor, 1)
        since = normalize_timestamp(time_limit) if time_limit is not None else None

        def accept(item: Item) -> bool:
            if item.is_hidden and not include_hidden:
                return False
            return since is None or item.timestamp >= since

        found = self._scan_page(ITEMS, last[0] if last else None, n, self._load_items, accept)
        return next_cursor(found, n, lambda item: [item.item_id])

    @_guarded
    def get_item_feedback(self, item_id: str, feedback_types: Sequence[str] = ()) -> List[Feedback]:
        require_id(item_id, "item_id")
        return self._read_feedback(
            f"item_feedback/{item_id}", lambda key: key.item_id == item_id,
            feedback_types, until=utc_now()
        )

    # ── Users ─────────────────────────────────────────────────

    @_guarded
    def batch_insert_users(self, users: Sequence[User]):
        for user in users:
            require_id(user.user_id, "user_id")
        if not users:
            return
        pipe = self._pipeline()
        for user in users:
            pipe.set(user_key(user.user_id), user.model_dump_json())
            pipe.zadd(USERS, {user.user_id: 0})
        pipe.execute()
        logger.debug(f"Inserted {len(users)} users")

    @_guarded
    def delete_user(self, user_id: str):
        require_id(user_id, "user_id")
        pipe = self._pipeline()
        pipe.delete(user_key(user_id))
        pipe.zrem(USERS, user_id)
        pipe.execute()

    @_guarded
    def get_user(self, user_id: str) -> User:
        require_id(user_id, "user_id")
        raw = self.client.get(user_key(user_id))
        if raw is None:
            raise NotFound("user", user_id)
        return User.model_validate_json(raw)

    @_guarded
    def modify_user(self, user_id: str, patch: UserPatch):
        user = self.get_user(user_id)
        changes = patch.model_dump(exclude_none=True)
        if changes:
            user = user.model_copy(update=changes)
            if not self.client.set(user_key(user_id), user.model_dump_json(), xx=True):
                raise NotFound("user", user_id)

    @_guarded
    def get_users(self, cursor: str, n: int) -> Tuple[str, List[User]]:
        require_positive(n)
        last = decode_cursor(cursor, 1)
        found = self._scan_page(USERS, last[0] if last else None, n, self._load_users)
        return next_cursor(found, n, lambda user: [user.user_id])

    @_guarded
    def get_user_feedback(
        self,
        user_id: str,
        with_future: bool = False,
        feedback_types: Sequence[str] = ()
    ) -> List[Feedback]:
        require_id(user_id, "user_id")
        return self._read_feedback(
            f"user_feedback/{user_id}", lambda key: key.user_id == user_id,
            feedback_types, until=None if with_future else utc_now()
        )

    # ── Feedback ──────────────────────────────────────────────

    @_guarded
    def get_user_item_feedback(
        self,
        user_id: str,
        item_id: str,
        feedback_types: Sequence[str] = ()
    ) -> List[Feedback]:
        require_id(user_id, "user_id")
        require_id(item_id, "item_id")
        return self._read_feedback(
            f"user_feedback/{user_id}", lambda key: key.item_id == item_id, feedback_types
        )

    @_guarded
    def delete_user_item_feedback(
        self,
        user_id: str,
        item_id: str,
        feedback_types: Sequence[str] = ()
    ) -> int:
        require_id(user_id, "user_id")
        require_id(item_id, "item_id")
        members = [
            m for m in self.client.smembers(f"user_feedback/{user_id}")
            if parse_member(m).item_id == item_id
            and (not feedback_types or parse_member(m).feedback_type in feedback_types)
        ]
        if not members:
            return 0
        pipe = self._pipeline()
        for member in members:
            pipe.delete(feedback_key(member))
            pipe.zrem(FEEDBACK, member)
            pipe.srem(f"user_feedback/{user_id}", member)
            pipe.srem(f"item_feedback/{item_id}", member)
        pipe.execute()
        logger.debug(f"Deleted {len(members)} feedback between user {user_id} and item {item_id}")
        return len(members)

    @_guarded
    def batch_insert_feedback(
        self,
        feedback: Sequence[Feedback],
        insert_user: bool = True,
        insert_item: bool = True,
        overwrite: bool = True
    ) -> int:
        feedback = prepare_feedback(feedback, overwrite)
        if not feedback:
            return 0
        if not insert_user:
            user_ids = sorted({f.user_id for f in feedback})
            known = {u for u, ok in zip(user_ids, self._exists_many([user_key(u) for u in user_ids])) if ok}
            feedback = [f for f in feedback if f.user_id in known]
        if not insert_item:
            item_ids = sorted({f.item_id for f in feedback})
            known = {i for i, ok in zip(item_ids, self._exists_many([item_key(i) for i in item_ids])) if ok}
            feedback = [f for f in feedback if f.item_id in known]
        if not feedback:
            return 0

        members = [feedback_member(f.key) for f in feedback]
        if not overwrite:
            exists = self._exists_many([feedback_key(m) for m in members])
            conflicts = [f.key for f, found in zip(feedback, exists) if found]
            if conflicts:
                raise Conflict(conflicts)

        pipe = self._pipeline()
        if insert_user:
            for user_id in sorted({f.user_id for f in feedback}):
                pipe.set(user_key(user_id), User(user_id=user_id).model_dump_json(), nx=True)
                pipe.zadd(USERS, {user_id: 0})
        if insert_item:
            for item_id in sorted({f.item_id for f in feedback}):
                pipe.set(item_key(item_id), Item(item_id=item_id).model_dump_json(), nx=True)
                pipe.zadd(ITEMS, {item_id: 0})
        for f, member in zip(feedback, members):
            pipe.set(feedback_key(member), f.model_dump_json())
            pipe.zadd(FEEDBACK, {member: 0})
            pipe.sadd(f"user_feedback/{f.user_id}", member)
            pipe.sadd(f"item_feedback/{f.item_id}", member)
        pipe.execute()
        logger.debug(f"Inserted {len(feedback)} feedback (overwrite={overwrite})")
        return len(feedback)

    @_guarded
    def get_feedback(
        self,
        cursor: str,
        n: int,
        time_limit: Optional[datetime] = None,
        feedback_types: Sequence[str] = ()
    ) -> Tuple[str, List[Feedback]]:
        require_positive(n)
        last = decode_cursor(cursor, 3)
        now = utc_now()
        since = normalize_timestamp(time_limit) if time_limit is not None else None

        def accept(f: Feedback) -> bool:
            if feedback_types and f.feedback_type not in feedback_types:
                return False
            if f.timestamp > now:
                return False
            return since is None or f.timestamp >= since

        found = self._scan_page(
            FEEDBACK, feedback_member(last) if last else None, n, self._load_feedback, accept
        )
        return next_cursor(found, n, lambda f: list(f.key))

    def __repr__(self):
        mode = "cluster" if self.cluster else "single"
        return f"<RedisDatabase {mode}>"
