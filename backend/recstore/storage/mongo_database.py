"""
MongoDB Database
================

Document adapter on pymongo.

Collections (names carry the table prefix):
- users:    {_id: user_id, labels, subscribe, comment}
- items:    {_id: item_id, is_hidden, categories, timestamp, labels, comment}
- feedback: {feedback_type, user_id, item_id, timestamp, comment}
            unique index on (feedback_type, user_id, item_id)

Standalone servers have no multi-document transactions. Batch writes and
the reads that could observe them run under an adapter-level lock, so a
reader going through the same adapter never sees half a batch.
Other processes and other adapters on the same database can. A driver error
in the middle of a feedback batch leaves the users and items it created
already written while the feedback itself is not.
"""

import functools
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import BulkWriteError, ConnectionFailure, DuplicateKeyError, PyMongoError

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
    sort_feedback,
    to_naive_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

DUPLICATE_KEY = 11000

FEEDBACK_SORT = [("timestamp", DESCENDING), ("feedback_type", ASCENDING),
                 ("user_id", ASCENDING), ("item_id", ASCENDING)]
KEY_SORT = [("feedback_type", ASCENDING), ("user_id", ASCENDING), ("item_id", ASCENDING)]


def _guarded(func):
    """Serialize on the adapter lock and translate pymongo errors."""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            with self._lock:
                return func(self, *args, **kwargs)
        except RecstoreError:
            raise
        except DuplicateKeyError as e:
            raise Conflict([], f"duplicate key: {e}") from e
        except BulkWriteError as e:
            errors = e.details.get("writeErrors", [])
            if any(err.get("code") == DUPLICATE_KEY for err in errors):
                raise Conflict([], f"duplicate key: {errors[0].get('errmsg')}") from e
            logger.error(f"mongo bulk write error in {func.__name__}: {e}")
            raise BackendUnavailable(f"mongodb: {e}") from e
        except PyMongoError as e:
            if getattr(e, "timeout", False):
                raise DeadlineExceeded(f"mongodb: {e}") from e
            if isinstance(e, ConnectionFailure):
                logger.error(f"mongo connection failure in {func.__name__}: {e}")
            else:
                logger.error(f"mongo error in {func.__name__}: {e}")
            raise BackendUnavailable(f"mongodb: {e}") from e
    return wrapper


def _without_id(doc: Dict) -> Dict:
    # upserts take _id from the filter
    return {k: v for k, v in doc.items() if k != "_id"}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MongoDatabase(Database):
    """
    Document backend.

    Usage:
        client = MongoClient("mongodb://localhost:27017/recstore")
        database = MongoDatabase(client, "recstore")
        database.init()
    """

    def __init__(self, client: MongoClient, db_name: str, table_prefix: str = ""):
        self.client = client
        self.db_name = db_name
        self.table_prefix = table_prefix
        db = client[db_name]
        self.users = db[f"{table_prefix}users"]
        self.items = db[f"{table_prefix}items"]
        self.feedback = db[f"{table_prefix}feedback"]
        self._lock = threading.RLock()

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _user_doc(user: User) -> Dict:
        return {
            "_id": user.user_id,
            "labels": user.labels,
            "subscribe": user.subscribe,
            "comment": user.comment,
        }

    @staticmethod
    def _item_doc(item: Item) -> Dict:
        return {
            "_id": item.item_id,
            "is_hidden": item.is_hidden,
            "categories": item.categories,
            "timestamp": to_naive_utc(item.timestamp),
            "labels": item.labels,
            "comment": item.comment,
        }

    @staticmethod
    def _feedback_doc(feedback: Feedback) -> Dict:
        return {
            "feedback_type": feedback.feedback_type,
            "user_id": feedback.user_id,
            "item_id": feedback.item_id,
            "timestamp": to_naive_utc(feedback.timestamp),
            "comment": feedback.comment,
        }

    @staticmethod
    def _to_user(doc) -> User:
        return User(
            user_id=doc["_id"],
            labels=doc.get("labels") or [],
            subscribe=doc.get("subscribe") or [],
            comment=doc.get("comment", "")
        )

    @staticmethod
    def _to_item(doc) -> Item:
        return Item(
            item_id=doc["_id"],
            is_hidden=doc.get("is_hidden", False),
            categories=doc.get("categories") or [],
            timestamp=_as_utc(doc["timestamp"]),
            labels=doc.get("labels") or [],
            comment=doc.get("comment", "")
        )

    @staticmethod
    def _to_feedback(doc) -> Feedback:
        return Feedback(
            feedback_type=doc["feedback_type"],
            user_id=doc["user_id"],
            item_id=doc["item_id"],
            timestamp=_as_utc(doc["timestamp"]),
            comment=doc.get("comment", "")
        )

    @staticmethod
    def _key_filter(key: Sequence[str]) -> Dict:
        return {"feedback_type": key[0], "user_id": key[1], "item_id": key[2]}

    def _find_feedback(self, query: Dict, feedback_types: Sequence[str]) -> List[Feedback]:
        if feedback_types:
            query["feedback_type"] = {"$in": list(feedback_types)}
        docs = self.feedback.find(query).sort(FEEDBACK_SORT)
        return sort_feedback([self._to_feedback(d) for d in docs])

    # ── Lifecycle ─────────────────────────────────────────────

    @_guarded
    def init(self):
        self.items.create_index([("timestamp", ASCENDING)])
        self.feedback.create_index(KEY_SORT, unique=True)
        self.feedback.create_index([("user_id", ASCENDING)])
        self.feedback.create_index([("item_id", ASCENDING)])
        self.feedback.create_index([("timestamp", ASCENDING)])
        logger.info(f"Initialized mongodb collections in {self.db_name} (prefix={self.table_prefix!r})")

    def close(self):
        self.client.close()
        logger.info("Closed mongodb client")

    def optimize(self):
        logger.debug("optimize is a no-op on mongodb")

    @_guarded
    def purge(self):
        for collection in (self.feedback, self.items, self.users):
            collection.delete_many({})
        logger.info(f"Purged mongodb collections in {self.db_name} (prefix={self.table_prefix!r})")

    # ── Items ─────────────────────────────────────────────────

    @_guarded
    def batch_insert_items(self, items: Sequence[Item]):
        for item in items:
            require_id(item.item_id, "item_id")
        if not items:
            return
        docs = {item.item_id: self._item_doc(item) for item in items}
        for item_id, doc in docs.items():
            self.items.replace_one({"_id": item_id}, doc, upsert=True)
        logger.debug(f"Inserted {len(docs)} items")

    @_guarded
    def batch_get_items(self, item_ids: Sequence[str]) -> List[Item]:
        for item_id in item_ids:
            require_id(item_id, "item_id")
        ids = list(dict.fromkeys(item_ids))
        found = {d["_id"]: self._to_item(d) for d in self.items.find({"_id": {"$in": ids}})}
        return [found[i] for i in ids if i in found]

    @_guarded
    def delete_item(self, item_id: str):
        require_id(item_id, "item_id")
        self.items.delete_one({"_id": item_id})

    @_guarded
    def get_item(self, item_id: str) -> Item:
        require_id(item_id, "item_id")
        doc = self.items.find_one({"_id": item_id})
        if doc is None:
            raise NotFound("item", item_id)
        return self._to_item(doc)

    @_guarded
    def modify_item(self, item_id: str, patch: ItemPatch):
        require_id(item_id, "item_id")
        values = {}
        if patch.is_hidden is not None:
            values["is_hidden"] = patch.is_hidden
        if patch.categories is not None:
            values["categories"] = patch.categories
        if patch.timestamp is not None:
            values["timestamp"] = to_naive_utc(patch.timestamp)
        if patch.labels is not None:
            values["labels"] = patch.labels
        if patch.comment is not None:
            values["comment"] = patch.comment
        if self.items.count_documents({"_id": item_id}, limit=1) == 0:
            raise NotFound("item", item_id)
        if values:
            self.items.update_one({"_id": item_id}, {"$set": values})

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
        query: Dict = {}
        if last is not None:
            query["_id"] = {"$gt": last[0]}
        if time_limit is not None:
            query["timestamp"] = {"$gte": to_naive_utc(time_limit)}
        if not include_hidden:
            query["is_hidden"] = {"$ne": True}
        docs = self.items.find(query).sort("_id", ASCENDING).limit(n + 1)
        return next_cursor([self._to_item(d) for d in docs], n, lambda item: [item.item_id])

    @_guarded
    def get_item_feedback(self, item_id: str, feedback_types: Sequence[str] = ()) -> List[Feedback]:
        require_id(item_id, "item_id")
        query = {"item_id": item_id, "timestamp": {"$lte": to_naive_utc(utc_now())}}
        return self._find_feedback(query, feedback_types)

    # ── Users ─────────────────────────────────────────────────

    @_guarded
    def batch_insert_users(self, users: Sequence[User]):
        for user in users:
            require_id(user.user_id, "user_id")
        if not users:
            return
        docs = {user.user_id: self._user_doc(user) for user in users}
        for user_id, doc in docs.items():
            self.users.replace_one({"_id": user_id}, doc, upsert=True)
        logger.debug(f"Inserted {len(docs)} users")

    @_guarded
    def delete_user(self, user_id: str):
        require_id(user_id, "user_id")
        self.users.delete_one({"_id": user_id})

    @_guarded
    def get_user(self, user_id: str) -> User:
        require_id(user_id, "user_id")
        doc = self.users.find_one({"_id": user_id})
        if doc is None:
            raise NotFound("user", user_id)
        return self._to_user(doc)

    @_guarded
    def modify_user(self, user_id: str, patch: UserPatch):
        require_id(user_id, "user_id")
        values = {}
        if patch.labels is not None:
            values["labels"] = patch.labels
        if patch.subscribe is not None:
            values["subscribe"] = patch.subscribe
        if patch.comment is not None:
            values["comment"] = patch.comment
        if self.users.count_documents({"_id": user_id}, limit=1) == 0:
            raise NotFound("user", user_id)
        if values:
            self.users.update_one({"_id": user_id}, {"$set": values})

    @_guarded
    def get_users(self, cursor: str, n: int) -> Tuple[str, List[User]]:
        require_positive(n)
        last = decode_cursor(cursor, 1)
        query = {"_id": {"$gt": last[0]}} if last is not None else {}
        docs = self.users.find(query).sort("_id", ASCENDING).limit(n + 1)
        return next_cursor([self._to_user(d) for d in docs], n, lambda user: [user.user_id])

    @_guarded
    def get_user_feedback(
        self,
        user_id: str,
        with_future: bool = False,
        feedback_types: Sequence[str] = ()
    ) -> List[Feedback]:
        require_id(user_id, "user_id")
        query: Dict = {"user_id": user_id}
        if not with_future:
            query["timestamp"] = {"$lte": to_naive_utc(utc_now())}
        return self._find_feedback(query, feedback_types)

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
        return self._find_feedback({"user_id": user_id, "item_id": item_id}, feedback_types)

    @_guarded
    def delete_user_item_feedback(
        self,
        user_id: str,
        item_id: str,
        feedback_types: Sequence[str] = ()
    ) -> int:
        require_id(user_id, "user_id")
        require_id(item_id, "item_id")
        query: Dict = {"user_id": user_id, "item_id": item_id}
        if feedback_types:
            query["feedback_type"] = {"$in": list(feedback_types)}
        return self.feedback.delete_many(query).deleted_count

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
        user_ids = sorted({f.user_id for f in feedback})
        item_ids = sorted({f.item_id for f in feedback})
        if not insert_user:
            known = {d["_id"] for d in self.users.find({"_id": {"$in": user_ids}}, {"_id": 1})}
            feedback = [f for f in feedback if f.user_id in known]
        if not insert_item:
            known = {d["_id"] for d in self.items.find({"_id": {"$in": item_ids}}, {"_id": 1})}
            feedback = [f for f in feedback if f.item_id in known]
        if not feedback:
            return 0

        # Check conflicts before the first write so a rejected batch leaves no trace
        if not overwrite:
            existing = list(self.feedback.find(
                {"$or": [self._key_filter(f.key) for f in feedback]},
                {"feedback_type": 1, "user_id": 1, "item_id": 1}
            ))
            if existing:
                raise Conflict([
                    FeedbackKey(d["feedback_type"], d["user_id"], d["item_id"]) for d in existing
                ])

        if insert_user:
            for u in sorted({f.user_id for f in feedback}):
                doc = _without_id(self._user_doc(User(user_id=u)))
                self.users.update_one({"_id": u}, {"$setOnInsert": doc}, upsert=True)
        if insert_item:
            for i in sorted({f.item_id for f in feedback}):
                doc = _without_id(self._item_doc(Item(item_id=i)))
                self.items.update_one({"_id": i}, {"$setOnInsert": doc}, upsert=True)
        if overwrite:
            for f in feedback:
                self.feedback.replace_one(self._key_filter(f.key), self._feedback_doc(f), upsert=True)
        else:
            self.feedback.insert_many([self._feedback_doc(f) for f in feedback], ordered=True)
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
        conditions: List[Dict] = [{"timestamp": {"$lte": to_naive_utc(utc_now())}}]
        if last is not None:
            t, u, i = last
            conditions.append({"$or": [
                {"feedback_type": {"$gt": t}},
                {"feedback_type": t, "user_id": {"$gt": u}},
                {"feedback_type": t, "user_id": u, "item_id": {"$gt": i}},
            ]})
        if time_limit is not None:
            conditions.append({"timestamp": {"$gte": to_naive_utc(time_limit)}})
        if feedback_types:
            conditions.append({"feedback_type": {"$in": list(feedback_types)}})
        docs = self.feedback.find({"$and": conditions}).sort(KEY_SORT).limit(n + 1)
        return next_cursor([self._to_feedback(d) for d in docs], n, lambda f: list(f.key))

    def __repr__(self):
        return f"<MongoDatabase {self.db_name} prefix={self.table_prefix!r}>"
