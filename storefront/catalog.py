"""
Product catalog reads and inventory reservation.

Stock is only ever changed through conditional $inc updates evaluated by the
store, so two checkouts racing for the last unit cannot both win.
"""
from typing import Dict, Iterable, Optional

import structlog
from bson import ObjectId

from storefront.database import Database, utcnow
from storefront.schemas import Product

logger = structlog.get_logger(__name__)


def _to_product(doc: dict) -> Product:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    return Product.model_validate(data)


class ProductCatalog:
    collection = "product"

    def __init__(self, db: Database):
        self.db = db

    def get_by_slug(self, slug: str) -> Optional[Product]:
        doc = self.db[self.collection].find_one({"slug": slug.lower()})
        return _to_product(doc) if doc else None

    def find_by_slugs(self, slugs: Iterable[str]) -> Dict[str, Product]:
        """Load every product in one query, keyed by slug."""
        wanted = sorted({s.lower() for s in slugs})
        cursor = self.db[self.collection].find({"slug": {"$in": wanted}})
        return {doc["slug"]: _to_product(doc) for doc in cursor}

    def reserve(self, product_id: str, quantity: int) -> bool:
        """Take `quantity` units if at least that many remain. Returns False otherwise."""
        result = self.db[self.collection].update_one(
            {"_id": ObjectId(product_id), "count_in_stock": {"$gte": quantity}},
            {"$inc": {"count_in_stock": -quantity}, "$set": {"updated_at": utcnow()}},
        )
        return result.modified_count == 1

    def release(self, product_id: str, quantity: int) -> None:
        self.db[self.collection].update_one(
            {"_id": ObjectId(product_id)},
            {"$inc": {"count_in_stock": quantity}, "$set": {"updated_at": utcnow()}},
        )
        logger.info("stock_released", product_id=product_id, quantity=quantity)
