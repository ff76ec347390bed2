"""
SQL Database
============

Relational adapter on SQLAlchemy Core. One implementation serves SQLite,
MySQL/MariaDB and PostgreSQL. Dialect differences are limited to upsert
syntax and maintenance commands.

Schema (names carry the table prefix):

    users(user_id PK, labels JSON, subscribe JSON, comment TEXT)
    items(item_id PK, is_hidden BOOL, categories JSON, time_stamp DATETIME,
          labels JSON, comment TEXT)
    feedback(feedback_type, user_id, item_id PK, time_stamp DATETIME, comment TEXT)

The engine is built and tuned by the router (isolation level, strict mode,
SQLite pragmas, timeouts). This module only receives it.
"""

import functools
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    delete,
    not_,
    select,
    tuple_,
    update,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Connection, Engine

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

# Max bound parameters per IN (...) chunk
IN_CHUNK_SIZE = 500

# PostgreSQL query_canceled, raised when statement_timeout fires
PG_QUERY_CANCELED = "57014"

_Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


def _translate_errors(func):
    """Translate SQLAlchemy errors into the shared taxonomy."""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except RecstoreError:
            raise
        except sa_exc.IntegrityError as e:
            raise Conflict([], f"integrity error: {e.orig}") from e
        except sa_exc.TimeoutError as e:
            raise DeadlineExceeded(f"connection pool timeout: {e}") from e
        except sa_exc.OperationalError as e:
            if getattr(e.orig, "pgcode", None) == PG_QUERY_CANCELED:
                raise DeadlineExceeded(f"statement timeout: {e.orig}") from e
            logger.error(f"{self.dialect} error in {func.__name__}: {e.orig}")
            raise BackendUnavailable(f"{self.dialect}: {e.orig}") from e
        except sa_exc.SQLAlchemyError as e:
            logger.error(f"{self.dialect} error in {func.__name__}: {e}")
            raise BackendUnavailable(f"{self.dialect}: {e}") from e
    return wrapper


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class SQLDatabase(Database):
    """
    Relational backend.

    Usage:
        engine = create_engine("sqlite:///recstore.db")
        database = SQLDatabase(engine, table_prefix="gorse_")
        database.init()
    """

    def __init__(self, engine: Engine, table_prefix: str = ""):
        self.engine = engine
        self.dialect = engine.dialect.name
        self.table_prefix = table_prefix
        self.metadata = MetaData()

        self.users = Table(
            f"{table_prefix}users", self.metadata,
            Column("user_id", String(256), primary_key=True),
            Column("labels", JSON, nullable=False),
            Column("subscribe", JSON, nullable=False),
            Column("comment", Text, nullable=False),
        )
        self.items = Table(
            f"{table_prefix}items", self.metadata,
            Column("item_id", String(256), primary_key=True),
            Column("is_hidden", Boolean, nullable=False, default=False),
            Column("categories", JSON, nullable=False),
            Column("time_stamp", _Timestamp, nullable=False, index=True),
            Column("labels", JSON, nullable=False),
            Column("comment", Text, nullable=False),
        )
        self.feedback = Table(
            f"{table_prefix}feedback", self.metadata,
            Column("feedback_type", String(128), primary_key=True),
            Column("user_id", String(256), primary_key=True, index=True),
            Column("item_id", String(256), primary_key=True, index=True),
            Column("time_stamp", _Timestamp, nullable=False, index=True),
            Column("comment", Text, nullable=False),
        )

    # ── Helpers ───────────────────────────────────────────────

    def _insert(self, table: Table, key_cols: Sequence[str], update_cols: Sequence[str]):
        """
        Dialect-specific upsert statement for executemany.

        Empty update_cols means insert-or-ignore.
        """
        if self.dialect == "mysql":
            stmt = mysql.insert(table)
            if update_cols:
                return stmt.on_duplicate_key_update({c: stmt.inserted[c] for c in update_cols})
            # key = key is a no-op update, unlike INSERT IGNORE which hides other errors
            return stmt.on_duplicate_key_update({key_cols[0]: table.c[key_cols[0]]})
        if self.dialect == "postgresql":
            stmt = postgresql.insert(table)
        else:
            stmt = sqlite.insert(table)
        if update_cols:
            return stmt.on_conflict_do_update(
                index_elements=list(key_cols),
                set_={c: stmt.excluded[c] for c in update_cols}
            )
        return stmt.on_conflict_do_nothing(index_elements=list(key_cols))

    @staticmethod
    def _existing(conn: Connection, column, values: Iterable[str]) -> set:
        values = list(set(values))
        found = set()
        for i in range(0, len(values), IN_CHUNK_SIZE):
            chunk = values[i:i + IN_CHUNK_SIZE]
            found.update(conn.execute(select(column).where(column.in_(chunk))).scalars())
        return found

    @staticmethod
    def _to_user(row) -> User:
        return User(
            user_id=row["user_id"],
            labels=row["labels"] or [],
            subscribe=row["subscribe"] or [],
            comment=row["comment"] or ""
        )

    @staticmethod
    def _to_item(row) -> Item:
        return Item(
            item_id=row["item_id"],
            is_hidden=bool(row["is_hidden"]),
            categories=row["categories"] or [],
            timestamp=_as_utc(row["time_stamp"]),
            labels=row["labels"] or [],
            comment=row["comment"] or ""
        )

    @staticmethod
    def _to_feedback(row) -> Feedback:
        return Feedback(
            feedback_type=row["feedback_type"],
            user_id=row["user_id"],
            item_id=row["item_id"],
            timestamp=_as_utc(row["time_stamp"]),
            comment=row["comment"] or ""
        )

    @staticmethod
    def _user_row(user: User) -> Dict:
        return {
            "user_id": user.user_id,
            "labels": user.labels,
            "subscribe": user.subscribe,
            "comment": user.comment,
        }

    @staticmethod
    def _item_row(item: Item) -> Dict:
        return {
            "item_id": item.item_id,
            "is_hidden": item.is_hidden,
            "categories": item.categories,
            "time_stamp": to_naive_utc(item.timestamp),
            "labels": item.labels,
            "comment": item.comment,
        }

    def _feedback_query(self, *conditions, feedback_types: Sequence[str] = ()):
        fb = self.feedback
        query = select(fb).where(*conditions)
        if feedback_types:
            query = query.where(fb.c.feedback_type.in_(list(feedback_types)))
        return query.order_by(
            fb.c.time_stamp.desc(), fb.c.feedback_type, fb.c.user_id, fb.c.item_id
        )

    def _read_feedback(self, query) -> List[Feedback]:
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return sort_feedback([self._to_feedback(r) for r in rows])

    # ── Lifecycle ─────────────────────────────────────────────

    @_translate_errors
    def init(self):
        self.metadata.create_all(self.engine)
        logger.info(f"Initialized {self.dialect} tables (prefix={self.table_prefix!r})")

    def close(self):
        self.engine.dispose()
        logger.info(f"Closed {self.dialect} engine")

    @_translate_errors
    def optimize(self):
        tables = [self.users.name, self.items.name, self.feedback.name]
        if self.dialect == "sqlite":
            statements = ["VACUUM"]
        elif self.dialect == "mysql":
            statements = [f"OPTIMIZE TABLE {', '.join(tables)}"]
        elif self.dialect == "postgresql":
            statements = [f"VACUUM ANALYZE {t}" for t in tables]
        else:
            logger.debug(f"optimize is a no-op on {self.dialect}")
            return
        # VACUUM cannot run inside a transaction block
        with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            for statement in statements:
                conn.exec_driver_sql(statement)
        logger.info(f"Optimized {self.dialect} tables: {tables}")

    @_translate_errors
    def purge(self):
        with self.engine.begin() as conn:
            for table in (self.feedback, self.items, self.users):
                conn.execute(delete(table))
        logger.info(f"Purged {self.dialect} tables (prefix={self.table_prefix!r})")

    # ── Items ─────────────────────────────────────────────────

    @_translate_errors
    def batch_insert_items(self, items: Sequence[Item]):
        for item in items:
            require_id(item.item_id, "item_id")
        if not items:
            return
        rows = list({item.item_id: self._item_row(item) for item in items}.values())
        stmt = self._insert(
            self.items, ["item_id"],
            ["is_hidden", "categories", "time_stamp", "labels", "comment"]
        )
        with self.engine.begin() as conn:
            conn.execute(stmt, rows)
        logger.debug(f"Inserted {len(rows)} items")

    @_translate_errors
    def batch_get_items(self, item_ids: Sequence[str]) -> List[Item]:
        for item_id in item_ids:
            require_id(item_id, "item_id")
        ids = list(dict.fromkeys(item_ids))
        items = []
        with self.engine.connect() as conn:
            for i in range(0, len(ids), IN_CHUNK_SIZE):
                chunk = ids[i:i + IN_CHUNK_SIZE]
                rows = conn.execute(
                    select(self.items).where(self.items.c.item_id.in_(chunk))
                ).mappings().all()
                items.extend(self._to_item(r) for r in rows)
        order = {item_id: i for i, item_id in enumerate(ids)}
        return sorted(items, key=lambda item: order[item.item_id])

    @_translate_errors
    def delete_item(self, item_id: str):
        require_id(item_id, "item_id")
        with self.engine.begin() as conn:
            conn.execute(delete(self.items).where(self.items.c.item_id == item_id))

    @_translate_errors
    def get_item(self, item_id: str) -> Item:
        require_id(item_id, "item_id")
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.items).where(self.items.c.item_id == item_id)
            ).mappings().first()
        if row is None:
            raise NotFound("item", item_id)
        return self._to_item(row)

    @_translate_errors
    def modify_item(self, item_id: str, patch: ItemPatch):
        require_id(item_id, "item_id")
        values = {}
        if patch.is_hidden is not None:
            values["is_hidden"] = patch.is_hidden
        if patch.categories is not None:
            values["categories"] = patch.categories
        if patch.timestamp is not None:
            values["time_stamp"] = to_naive_utc(patch.timestamp)
        if patch.labels is not None:
            values["labels"] = patch.labels
        if patch.comment is not None:
            values["comment"] = patch.comment
        with self.engine.begin() as conn:
            if not self._existing(conn, self.items.c.item_id, [item_id]):
                raise NotFound("item", item_id)
            if values:
                conn.execute(update(self.items).where(self.items.c.item_id == item_id).values(**values))

    @_translate_errors
    def get_items(
        self,
        cursor: str,
        n: int,
        time_limit: Optional[datetime] = None,
        include_hidden: bool = False
    ) -> Tuple[str, List[Item]]:
        require_positive(n)
        last = decode_cursor(cursor, 1)
        query = select(self.items)
        if last is not None:
            query = query.where(self.items.c.item_id > last[0])
        if time_limit is not None:
            query = query.where(self.items.c.time_stamp >= to_naive_utc(time_limit))
        if not include_hidden:
            query = query.where(not_(self.items.c.is_hidden))
        query = query.order_by(self.items.c.item_id).limit(n + 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return next_cursor([self._to_item(r) for r in rows], n, lambda item: [item.item_id])

    @_translate_errors
    def get_item_feedback(self, item_id: str, feedback_types: Sequence[str] = ()) -> List[Feedback]:
        require_id(item_id, "item_id")
        fb = self.feedback
        return self._read_feedback(self._feedback_query(
            fb.c.item_id == item_id,
            fb.c.time_stamp <= to_naive_utc(utc_now()),
            feedback_types=feedback_types
        ))

    # ── Users ─────────────────────────────────────────────────

    @_translate_errors
    def batch_insert_users(self, users: Sequence[User]):
        for user in users:
            require_id(user.user_id, "user_id")
        if not users:
            return
        rows = list({user.user_id: self._user_row(user) for user in users}.values())
        stmt = self._insert(self.users, ["user_id"], ["labels", "subscribe", "comment"])
        with self.engine.begin() as conn:
            conn.execute(stmt, rows)
        logger.debug(f"Inserted {len(rows)} users")

    @_translate_errors
    def delete_user(self, user_id: str):
        require_id(user_id, "user_id")
        with self.engine.begin() as conn:
            conn.execute(delete(self.users).where(self.users.c.user_id == user_id))

    @_translate_errors
    def get_user(self, user_id: str) -> User:
        require_id(user_id, "user_id")
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.users).where(self.users.c.user_id == user_id)
            ).mappings().first()
        if row is None:
            raise NotFound("user", user_id)
        return self._to_user(row)

    @_translate_errors
    def modify_user(self, user_id: str, patch: UserPatch):
        require_id(user_id, "user_id")
        values = {}
        if patch.labels is not None:
            values["labels"] = patch.labels
        if patch.subscribe is not None:
            values["subscribe"] = patch.subscribe
        if patch.comment is not None:
            values["comment"] = patch.comment
        with self.engine.begin() as conn:
            if not self._existing(conn, self.users.c.user_id, [user_id]):
                raise NotFound("user", user_id)
            if values:
                conn.execute(update(self.users).where(self.users.c.user_id == user_id).values(**values))

    @_translate_errors
    def get_users(self, cursor: str, n: int) -> Tuple[str, List[User]]:
        require_positive(n)
        last = decode_cursor(cursor, 1)
        query = select(self.users)
        if last is not None:
            query = query.where(self.users.c.user_id > last[0])
        query = query.order_by(self.users.c.user_id).limit(n + 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return next_cursor([self._to_user(r) for r in rows], n, lambda user: [user.user_id])

    @_translate_errors
    def get_user_feedback(
        self,
        user_id: str,
        with_future: bool = False,
        feedback_types: Sequence[str] = ()
    ) -> List[Feedback]:
        require_id(user_id, "user_id")
        fb = self.feedback
        conditions = [fb.c.user_id == user_id]
        if not with_future:
            conditions.append(fb.c.time_stamp <= to_naive_utc(utc_now()))
        return self._read_feedback(self._feedback_query(*conditions, feedback_types=feedback_types))

    # ── Feedback ──────────────────────────────────────────────

    @_translate_errors
    def get_user_item_feedback(
        self,
        user_id: str,
        item_id: str,
        feedback_types: Sequence[str] = ()
    ) -> List[Feedback]:
        require_id(user_id, "user_id")
        require_id(item_id, "item_id")
        fb = self.feedback
        return self._read_feedback(self._feedback_query(
            fb.c.user_id == user_id,
            fb.c.item_id == item_id,
            feedback_types=feedback_types
        ))

    @_translate_errors
    def delete_user_item_feedback(
        self,
        user_id: str,
        item_id: str,
        feedback_types: Sequence[str] = ()
    ) -> int:
        require_id(user_id, "user_id")
        require_id(item_id, "item_id")
        fb = self.feedback
        stmt = delete(fb).where(fb.c.user_id == user_id, fb.c.item_id == item_id)
        if feedback_types:
            stmt = stmt.where(fb.c.feedback_type.in_(list(feedback_types)))
        with self.engine.begin() as conn:
            deleted = conn.execute(stmt).rowcount
        logger.debug(f"Deleted {deleted} feedback between user {user_id} and item {item_id}")
        return deleted

    @_translate_errors
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
        fb = self.feedback
        with self.engine.begin() as conn:
            user_ids = {f.user_id for f in feedback}
            item_ids = {f.item_id for f in feedback}
            if insert_user:
                conn.execute(
                    self._insert(self.users, ["user_id"], []),
                    [self._user_row(User(user_id=u)) for u in sorted(user_ids)]
                )
            else:
                known = self._existing(conn, self.users.c.user_id, user_ids)
                feedback = [f for f in feedback if f.user_id in known]
            if insert_item:
                conn.execute(
                    self._insert(self.items, ["item_id"], []),
                    [self._item_row(Item(item_id=i)) for i in sorted(item_ids)]
                )
            else:
                known = self._existing(conn, self.items.c.item_id, item_ids)
                feedback = [f for f in feedback if f.item_id in known]
            if not feedback:
                return 0

            if not overwrite:
                keys = [f.key for f in feedback]
                existing = []
                for i in range(0, len(keys), IN_CHUNK_SIZE):
                    chunk = keys[i:i + IN_CHUNK_SIZE]
                    existing.extend(conn.execute(
                        select(fb.c.feedback_type, fb.c.user_id, fb.c.item_id).where(
                            tuple_(fb.c.feedback_type, fb.c.user_id, fb.c.item_id).in_(chunk)
                        )
                    ).all())
                if existing:
                    raise Conflict([FeedbackKey(*row) for row in existing])

            rows = [{
                "feedback_type": f.feedback_type,
                "user_id": f.user_id,
                "item_id": f.item_id,
                "time_stamp": to_naive_utc(f.timestamp),
                "comment": f.comment,
            } for f in feedback]
            if overwrite:
                stmt = self._insert(
                    fb, ["feedback_type", "user_id", "item_id"], ["time_stamp", "comment"]
                )
            else:
                stmt = fb.insert()
            conn.execute(stmt, rows)
        logger.debug(f"Inserted {len(rows)} feedback (overwrite={overwrite})")
        return len(rows)

    @_translate_errors
    def get_feedback(
        self,
        cursor: str,
        n: int,
        time_limit: Optional[datetime] = None,
        feedback_types: Sequence[str] = ()
    ) -> Tuple[str, List[Feedback]]:
        require_positive(n)
        last = decode_cursor(cursor, 3)
        fb = self.feedback
        key = tuple_(fb.c.feedback_type, fb.c.user_id, fb.c.item_id)
        query = select(fb).where(fb.c.time_stamp <= to_naive_utc(utc_now()))
        if last is not None:
            query = query.where(key > tuple_(*last))
        if time_limit is not None:
            query = query.where(fb.c.time_stamp >= to_naive_utc(time_limit))
        if feedback_types:
            query = query.where(fb.c.feedback_type.in_(list(feedback_types)))
        query = query.order_by(fb.c.feedback_type, fb.c.user_id, fb.c.item_id).limit(n + 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return next_cursor([self._to_feedback(r) for r in rows], n, lambda f: list(f.key))

    def __repr__(self):
        return f"<SQLDatabase {self.dialect} prefix={self.table_prefix!r}>"
