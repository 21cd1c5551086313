"""
Order aggregate: status state machine and persistence.

    awaiting_payment -> paid | cancelled
    paid             -> fulfilled | cancelled

fulfilled and cancelled are terminal. Every transition is written with a
filter on the expected current status, so a transition that lost a race is
detected instead of overwriting the winner.
"""
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from storefront.database import Database, utcnow
from storefront.errors import InvalidStatusTransition, OrderNotFound
from storefront.schemas import Order, OrderStatus

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.AWAITING_PAYMENT: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.FULFILLED, OrderStatus.CANCELLED}),
    OrderStatus.FULFILLED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def is_terminal(status: str) -> bool:
    return not TRANSITIONS[OrderStatus(status)]


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidStatusTransition(OrderStatus(current).value, OrderStatus(target).value)


def _object_id(order_id: str) -> ObjectId:
    try:
        return ObjectId(order_id)
    except (InvalidId, TypeError):
        raise OrderNotFound(order_id)


class OrderRepository:
    collection = "order"

    def __init__(self, db: Database):
        self.db = db

    def insert(self, order: Order) -> Order:
        order_id = self.db.create_document(self.collection, order.to_document())
        return self.get(order_id)

    def get(self, order_id: str) -> Order:
        doc = self.db[self.collection].find_one({"_id": _object_id(order_id)})
        if not doc:
            raise OrderNotFound(order_id)
        return Order.from_document(doc)

    def find_by(self, field: str, value: Any) -> Optional[Order]:
        doc = self.db[self.collection].find_one({field: value})
        return Order.from_document(doc) if doc else None

    def list_orders(self, status: Optional[str] = None, user_id: Optional[str] = None,
                    limit: int = 100) -> List[Order]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if user_id:
            query["user_id"] = user_id
        cursor = self.db[self.collection].find(query).sort("created_at", -1).limit(limit)
        return [Order.from_document(doc) for doc in cursor]

    def update_fields(self, order_id: str, **fields: Any) -> Order:
        fields["updated_at"] = utcnow()
        doc = self.db[self.collection].find_one_and_update(
            {"_id": _object_id(order_id)},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise OrderNotFound(order_id)
        return Order.from_document(doc)

    def _swap_status(self, order_id: str, source: str, target: str,
                     fields: Dict[str, Any]) -> Optional[Order]:
        update = dict(fields, status=target, updated_at=utcnow())
        doc = self.db[self.collection].find_one_and_update(
            {"_id": _object_id(order_id), "status": source},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        return Order.from_document(doc) if doc else None

    def advance(self, order_id: str, target: OrderStatus, **fields: Any) -> Tuple[Order, bool]:
        """
        Move an order to `target`.

        Returns the order and whether this call changed it. An order already in
        `target` is returned unchanged, which keeps repeated payment
        confirmations harmless.
        """
        order = self.get(order_id)
        if order.status == target:
            return order, False
        ensure_transition(order.status, target)

        if target == OrderStatus.PAID:
            fields.setdefault("paid_at", utcnow())
        updated = self._swap_status(order_id, order.status, target.value, fields)
        if updated is None:
            current = self.get(order_id)
            if current.status == target:
                return current, False
            raise InvalidStatusTransition(OrderStatus(current.status).value, target.value)

        logger.info("order_status_changed", order_id=order_id, source=order.status, target=target.value)
        return updated, True
