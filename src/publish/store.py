"""
Storage for deferred Instagram containers.

One record per scheduled Instagram post/carousel/story, collection (or table)
``scheduled_instagram_posts``:

  id                    TEXT PK
  accountId             TEXT  Instagram business account id
  accountName           TEXT
  creationId            TEXT  container id returned by /media
  caption               TEXT
  mediaUrls             LIST  public image URLs, carousel order
  mediaType             TEXT  IMAGE | CAROUSEL | STORIES
  scheduledPublishTime  DATETIME (UTC)
  status                TEXT  SCHEDULED | PUBLISHING | PUBLISHED | FAILED | CANCELLED
  createdAt / publishedAt / mediaId / error

Backends:
  MongoScheduleStore   — production document store (pymongo)
  SqliteScheduleStore  — local file for development and tests (sqlite-utils)
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import sqlite_utils
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from src.publish.models import ScheduledInstagramPost, ScheduleStatus

logger = logging.getLogger(__name__)

COLLECTION = "scheduled_instagram_posts"

_FINAL_STATUSES = {ScheduleStatus.PUBLISHED, ScheduleStatus.FAILED, ScheduleStatus.CANCELLED}


class PersistenceError(Exception):
    """Raised when the schedule store cannot be read or written."""


def _utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class ScheduleStore(ABC):
    """Common interface for scheduled Instagram record backends."""

    @abstractmethod
    def add(self, post: ScheduledInstagramPost) -> ScheduledInstagramPost:
        """Persist a record and return it."""

    @abstractmethod
    def get(self, post_id: str) -> Optional[ScheduledInstagramPost]:
        """Return a record by id, or None if not found."""

    @abstractmethod
    def claim(self, post_id: str) -> bool:
        """Move a SCHEDULED record to PUBLISHING. False if it was not SCHEDULED."""

    @abstractmethod
    def update_status(
        self,
        post_id: str,
        status: ScheduleStatus,
        *,
        error: Optional[str] = None,
        media_id: Optional[str] = None,
        creation_id: Optional[str] = None,
    ) -> None:
        """Update the status (and optionally the outcome fields)."""

    @abstractmethod
    def list_due(self, now: Optional[dt.datetime] = None) -> list[ScheduledInstagramPost]:
        """SCHEDULED records whose instant is *now* or earlier, oldest first."""

    @abstractmethod
    def list_all(
        self,
        status: Optional[ScheduleStatus] = None,
        limit: int = 50,
    ) -> list[ScheduledInstagramPost]:
        """Records (optionally filtered by status), latest instant first."""

    @abstractmethod
    def list_between(
        self,
        start: dt.datetime,
        end: dt.datetime,
        account_ids: Optional[list[str]] = None,
    ) -> list[ScheduledInstagramPost]:
        """SCHEDULED records with an instant in [start, end]."""

    @abstractmethod
    def stats(self) -> dict[str, int]:
        """Count per status."""

    def cancel(self, post_id: str) -> bool:
        """Cancel a SCHEDULED record. Returns True if it was cancelled."""
        post = self.get(post_id)
        if post is None or post.status != ScheduleStatus.SCHEDULED:
            return False
        self.update_status(post_id, ScheduleStatus.CANCELLED, error="Cancelled by user")
        logger.info("Cancelled scheduled Instagram post %s", post_id)
        return True

    @staticmethod
    def _status_update(
        status: ScheduleStatus,
        error: Optional[str],
        media_id: Optional[str],
        creation_id: Optional[str],
    ) -> dict:
        update: dict = {"status": status.value}
        if status == ScheduleStatus.PUBLISHED:
            update["publishedAt"] = _now()
        if error is not None:
            update["error"] = error
        if media_id is not None:
            update["mediaId"] = media_id
        if creation_id is not None:
            update["creationId"] = creation_id
        return update

    def close(self) -> None:
        pass

    def __enter__(self) -> "ScheduleStore":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# MongoDB
# ---------------------------------------------------------------------------


class MongoScheduleStore(ScheduleStore):
    """
    ``scheduled_instagram_posts`` collection in MongoDB.

    Usage::

        with MongoScheduleStore("mongodb://localhost:27017", "pagepost") as store:
            store.add(record)
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        db_name: Optional[str] = None,
        *,
        client: Optional[MongoClient] = None,
    ) -> None:
        from config.settings import settings

        self._owns_client = client is None
        self._client = client or MongoClient(uri or settings.mongodb_uri, tz_aware=True)
        self._collection = self._client[db_name or settings.mongodb_db][COLLECTION]

    @staticmethod
    def _from_doc(doc: Optional[dict]) -> Optional[ScheduledInstagramPost]:
        if doc is None:
            return None
        doc = {k: v for k, v in doc.items() if k != "_id"}
        return ScheduledInstagramPost.model_validate(doc)

    def add(self, post: ScheduledInstagramPost) -> ScheduledInstagramPost:
        doc = post.to_document()
        doc["_id"] = post.id
        try:
            self._collection.insert_one(doc)
        except PyMongoError as exc:
            raise PersistenceError(f"Could not save scheduled post {post.id}: {exc}") from exc
        logger.info(
            "Scheduled Instagram %s %s (container %s) for %s",
            post.media_type.value,
            post.id,
            post.creation_id,
            post.scheduled_publish_time.isoformat(),
        )
        return post

    def get(self, post_id: str) -> Optional[ScheduledInstagramPost]:
        try:
            return self._from_doc(self._collection.find_one({"_id": post_id}))
        except PyMongoError as exc:
            raise PersistenceError(str(exc)) from exc

    def claim(self, post_id: str) -> bool:
        try:
            doc = self._collection.find_one_and_update(
                {"_id": post_id, "status": ScheduleStatus.SCHEDULED.value},
                {"$set": {"status": ScheduleStatus.PUBLISHING.value}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise PersistenceError(str(exc)) from exc
        return doc is not None

    def update_status(
        self,
        post_id: str,
        status: ScheduleStatus,
        *,
        error: Optional[str] = None,
        media_id: Optional[str] = None,
        creation_id: Optional[str] = None,
    ) -> None:
        update = self._status_update(status, error, media_id, creation_id)
        try:
            self._collection.update_one({"_id": post_id}, {"$set": update})
        except PyMongoError as exc:
            raise PersistenceError(str(exc)) from exc

    def _find(self, query: dict, sort: tuple[str, int], limit: int = 0) -> list[ScheduledInstagramPost]:
        try:
            cursor = self._collection.find(query).sort(*sort)
            if limit:
                cursor = cursor.limit(limit)
            return [self._from_doc(doc) for doc in cursor]  # type: ignore[misc]
        except PyMongoError as exc:
            raise PersistenceError(str(exc)) from exc

    def list_due(self, now: Optional[dt.datetime] = None) -> list[ScheduledInstagramPost]:
        query = {
            "status": ScheduleStatus.SCHEDULED.value,
            "scheduledPublishTime": {"$lte": _utc(now or _now())},
        }
        return self._find(query, ("scheduledPublishTime", ASCENDING))

    def list_all(
        self,
        status: Optional[ScheduleStatus] = None,
        limit: int = 50,
    ) -> list[ScheduledInstagramPost]:
        query = {"status": status.value} if status else {}
        return self._find(query, ("scheduledPublishTime", DESCENDING), limit)

    def list_between(
        self,
        start: dt.datetime,
        end: dt.datetime,
        account_ids: Optional[list[str]] = None,
    ) -> list[ScheduledInstagramPost]:
        query: dict = {
            "status": ScheduleStatus.SCHEDULED.value,
            "scheduledPublishTime": {"$gte": _utc(start), "$lte": _utc(end)},
        }
        if account_ids is not None:
            query["accountId"] = {"$in": account_ids}
        return self._find(query, ("scheduledPublishTime", ASCENDING))

    def stats(self) -> dict[str, int]:
        try:
            rows = self._collection.aggregate(
                [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
            )
            return {row["_id"]: row["count"] for row in rows}
        except PyMongoError as exc:
            raise PersistenceError(str(exc)) from exc

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------


class SqliteScheduleStore(ScheduleStore):
    """
    The same records in a local SQLite file.

    Usage::

        store = SqliteScheduleStore(Path("output/schedule.db"))
        store.add(record)
        due = store.list_due()
    """

    TABLE = COLLECTION

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        # one store may be handed to worker threads by the web server
        self._db = sqlite_utils.Database(sqlite3.connect(str(db_path), check_same_thread=False))
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        if self.TABLE not in self._db.table_names():
            self._db[self.TABLE].create(
                {
                    "id": str,
                    "accountId": str,
                    "accountName": str,
                    "creationId": str,
                    "caption": str,
                    "mediaUrls": str,
                    "mediaType": str,
                    "scheduledPublishTime": str,
                    "status": str,
                    "createdAt": str,
                    "publishedAt": str,
                    "mediaId": str,
                    "error": str,
                },
                pk="id",
            )
            self._db[self.TABLE].create_index(["status"])
            self._db[self.TABLE].create_index(["scheduledPublishTime"])
            self._db[self.TABLE].create_index(["accountId"])

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def add(self, post: ScheduledInstagramPost) -> ScheduledInstagramPost:
        try:
            self._db[self.TABLE].insert(self._to_row(post.to_document()), replace=True)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not save scheduled post {post.id}: {exc}") from exc
        logger.info(
            "Scheduled Instagram %s %s (container %s) for %s",
            post.media_type.value,
            post.id,
            post.creation_id,
            post.scheduled_publish_time.isoformat(),
        )
        return post

    def get(self, post_id: str) -> Optional[ScheduledInstagramPost]:
        try:
            row = self._db[self.TABLE].get(post_id)
        except sqlite_utils.db.NotFoundError:
            return None
        return self._from_row(row)

    def claim(self, post_id: str) -> bool:
        with self._db.conn:
            cursor = self._db.execute(
                f"UPDATE {self.TABLE} SET status = ? WHERE id = ? AND status = ?",
                [ScheduleStatus.PUBLISHING.value, post_id, ScheduleStatus.SCHEDULED.value],
            )
        return cursor.rowcount == 1

    def update_status(
        self,
        post_id: str,
        status: ScheduleStatus,
        *,
        error: Optional[str] = None,
        media_id: Optional[str] = None,
        creation_id: Optional[str] = None,
    ) -> None:
        update = self._to_row(self._status_update(status, error, media_id, creation_id))
        try:
            self._db[self.TABLE].update(post_id, update)
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _rows(self, where: Optional[str], args: list, order_by: str, limit: Optional[int] = None):
        rows = self._db[self.TABLE].rows_where(where, args, order_by=order_by, limit=limit)
        return [self._from_row(r) for r in rows]

    def list_due(self, now: Optional[dt.datetime] = None) -> list[ScheduledInstagramPost]:
        return self._rows(
            "status = ? AND scheduledPublishTime <= ?",
            [ScheduleStatus.SCHEDULED.value, _utc(now or _now()).isoformat()],
            "scheduledPublishTime ASC",
        )

    def list_all(
        self,
        status: Optional[ScheduleStatus] = None,
        limit: int = 50,
    ) -> list[ScheduledInstagramPost]:
        if status is None:
            return self._rows(None, [], "scheduledPublishTime DESC", limit)
        return self._rows("status = ?", [status.value], "scheduledPublishTime DESC", limit)

    def list_between(
        self,
        start: dt.datetime,
        end: dt.datetime,
        account_ids: Optional[list[str]] = None,
    ) -> list[ScheduledInstagramPost]:
        posts = self._rows(
            "status = ? AND scheduledPublishTime >= ? AND scheduledPublishTime <= ?",
            [ScheduleStatus.SCHEDULED.value, _utc(start).isoformat(), _utc(end).isoformat()],
            "scheduledPublishTime ASC",
        )
        if account_ids is not None:
            posts = [p for p in posts if p.account_id in account_ids]
        return posts

    def stats(self) -> dict[str, int]:
        result: dict[str, int] = {}
        for row in self._db.execute(
            f"SELECT status, COUNT(*) FROM {self.TABLE} GROUP BY status"
        ).fetchall():
            result[row[0]] = row[1]
        return result

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_row(doc: dict) -> dict:
        row = {}
        for key, value in doc.items():
            if isinstance(value, dt.datetime):
                value = _utc(value).isoformat()
            elif isinstance(value, list):
                value = json.dumps(value)
            row[key] = value
        return row

    @staticmethod
    def _from_row(row: dict) -> ScheduledInstagramPost:
        doc = dict(row)
        doc["mediaUrls"] = json.loads(doc.get("mediaUrls") or "[]")
        for key in ("scheduledPublishTime", "createdAt", "publishedAt"):
            if doc.get(key):
                doc[key] = dt.datetime.fromisoformat(doc[key])
        return ScheduledInstagramPost.model_validate(doc)

    # ------------------------------------------------------------------
    # Context manager / cleanup
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._db.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


@contextmanager
def open_schedule_store(cfg: Optional[object] = None) -> Iterator[ScheduleStore]:
    """
    Open the configured backend for the duration of one request.

    The store is closed on exit whatever happens inside the block.
    """
    from config.settings import settings

    cfg = cfg or settings
    backend = getattr(cfg, "schedule_backend", "mongo").lower()
    if backend == "sqlite":
        store: ScheduleStore = SqliteScheduleStore(Path(cfg.schedule_db_path))  # type: ignore[attr-defined]
    elif backend == "mongo":
        store = MongoScheduleStore(cfg.mongodb_uri, cfg.mongodb_db)  # type: ignore[attr-defined]
    else:
        raise PersistenceError(f"Unknown schedule backend: {backend!r}")
    try:
        yield store
    finally:
        store.close()
