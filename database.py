"""
Document Store

MongoDB-backed storage for orders, transactions, payouts and reservations.

Every record uses a string `_id` (meaningful ids like ORD2410181230A7B2).
Multi-document invariants are written inside `store.transaction()`; claims
that must be exclusive are stored as documents keyed by the claimed id so
that the unique `_id` index rejects a second claim.
"""

import logging
import secrets
import string
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Union, Optional, Dict, Any, List

from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, OperationFailure

import config
from errors import ConflictError

logger = logging.getLogger(__name__)

COLLECTIONS = [
    "menuitem",
    "carts",
    "orders",
    "transactions",
    "payout_requests",
    "payout_claims",
    "reservations",
    "table_assignments",
    "reservation_slots",
    "checkout_intents",
]


def generate_id(prefix: str, now: Optional[datetime] = None) -> str:
    """Meaningful id: prefix + yymmddHHMM + 4 random characters."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(4))
    return f"{prefix}{now.strftime('%y%m%d%H%M')}{suffix}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def _to_payload(data: Union[BaseModel, dict]) -> dict:
    payload = _to_dict(data)
    if "id" in payload:
        payload["_id"] = payload.pop("id")
    return payload


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


class MongoStore:
    """Store backed by a MongoDB deployment (replica set required for transactions)."""

    def __init__(self, client: MongoClient, database_name: str):
        self._client = client
        self.db = client[database_name]

    @classmethod
    def from_url(cls, database_url: str, database_name: str) -> "MongoStore":
        return cls(MongoClient(database_url, tz_aware=True), database_name)

    def ensure_indexes(self):
        self.db["orders"].create_index([("restaurant_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["orders"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["transactions"].create_index([("restaurant_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["transactions"].create_index("order_id")
        self.db["payout_requests"].create_index([("restaurant_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["payout_claims"].create_index("restaurant_id")
        self.db["reservations"].create_index([("restaurant_id", ASCENDING), ("date", ASCENDING)])
        self.db["checkout_intents"].create_index("created_at")

    def list_collections(self) -> List[str]:
        return self.db.list_collection_names()

    @contextmanager
    def transaction(self):
        """Multi-document transaction; commits on exit, aborts on exception."""
        try:
            with self._client.start_session() as session:
                with session.start_transaction():
                    yield session
        except OperationFailure as exc:
            if exc.has_error_label("TransientTransactionError"):
                raise ConflictError("Concurrent update detected, please retry") from exc
            raise

    # CRUD helpers

    def insert(self, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
        payload = _to_payload(data)
        now = utcnow()
        if payload.get("created_at") is None:
            payload["created_at"] = now
        payload["updated_at"] = now
        result = self.db[collection_name].insert_one(payload, session=session)
        return str(result.inserted_id)

    def upsert(self, collection_name: str, _id: str, data: Union[BaseModel, dict], session=None):
        payload = _to_payload(data)
        payload.pop("_id", None)
        payload["updated_at"] = utcnow()
        self.db[collection_name].replace_one({"_id": _id}, payload, upsert=True, session=session)

    def get(self, collection_name: str, _id: str, session=None) -> Optional[dict]:
        doc = self.db[collection_name].find_one({"_id": _id}, session=session)
        return serialize_doc(doc) if doc else None

    def find(self, collection_name: str, filter_dict: Optional[dict] = None, sort: Optional[list] = None,
             limit: Optional[int] = None, session=None) -> List[dict]:
        cursor = self.db[collection_name].find(filter_dict or {}, session=session)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(int(limit))
        return [serialize_doc(doc) for doc in cursor]

    def update(self, collection_name: str, _id: str, update_data: Dict[str, Any],
               expect: Optional[Dict[str, Any]] = None, session=None) -> bool:
        """Compare-and-set: only applies when the document still matches `expect`."""
        update = {"$set": _to_dict(update_data)}
        update["$set"]["updated_at"] = utcnow()
        query = {"_id": _id, **(expect or {})}
        result = self.db[collection_name].update_one(query, update, session=session)
        return result.matched_count > 0

    def delete(self, collection_name: str, _id: str, session=None) -> bool:
        result = self.db[collection_name].delete_one({"_id": _id}, session=session)
        return result.deleted_count > 0


def connect_store() -> MongoStore:
    if not (config.DATABASE_URL and config.DATABASE_NAME):
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    store = MongoStore.from_url(config.DATABASE_URL, config.DATABASE_NAME)
    store.ensure_indexes()
    logger.info("connected to MongoDB database %s", config.DATABASE_NAME)
    return store
