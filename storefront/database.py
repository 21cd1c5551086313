"""
Document store handle.

One Database is built at startup, shared by every request and closed on
shutdown. Collections are named after the lowercase schema class
(Product -> "product").
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Union

import structlog
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection

from storefront.config import Settings

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    def __init__(self, client: MongoClient, name: str):
        self.client = client
        self.name = name
        self._db = client[name]

    @classmethod
    def connect(cls, settings: Settings) -> "Database":
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is not set")
        client = MongoClient(settings.database_url, tz_aware=True)
        logger.info("database_connected", database=settings.database_name)
        return cls(client, settings.database_name)

    def __getitem__(self, collection: str) -> Collection:
        return self._db[collection]

    def list_collection_names(self) -> List[str]:
        return self._db.list_collection_names()

    def ensure_indexes(self) -> None:
        self["product"].create_index([("slug", ASCENDING)], unique=True)
        self["coupon"].create_index([("code", ASCENDING)], unique=True)
        self["coupon"].create_index([("code", ASCENDING), ("status", ASCENDING)])
        self["order"].create_index([("status", ASCENDING)])
        self["order"].create_index([("stripe_session_id", ASCENDING)])
        self["order"].create_index([("payment_intent_id", ASCENDING)])
        self["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    def create_document(self, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
        doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        now = utcnow()
        if doc.get("created_at") is None:
            doc["created_at"] = now
        doc["updated_at"] = now
        inserted_id = self[collection].insert_one(doc).inserted_id
        return str(inserted_id)

    def close(self) -> None:
        self.client.close()
        logger.info("database_closed", database=self.name)
