"""
Coupon evaluation and usage accounting.

    evaluation = CouponEvaluator(db).evaluate("save10", subtotal=20.0)
    if evaluation.applicable:
        total -= evaluation.discount_amount

An invalid, expired or exhausted coupon is never an error here; it simply
evaluates to a zero discount with a reason the storefront can show.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from storefront.database import Database, utcnow
from storefront.errors import InvalidInput
from storefront.schemas import Coupon, CouponIn, CouponStatus, CouponType

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CouponEvaluation:
    applicable: bool
    discount_amount: float = 0.0
    canonical_code: Optional[str] = None
    reason: Optional[str] = None
    coupon: Optional[Coupon] = None


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _not_applicable(reason: str, coupon: Optional[Coupon] = None) -> CouponEvaluation:
    return CouponEvaluation(
        applicable=False,
        canonical_code=coupon.code if coupon else None,
        reason=reason,
        coupon=coupon,
    )


def evaluate_coupon(coupon: Optional[Coupon], subtotal: float, now: datetime) -> CouponEvaluation:
    """Decide whether `coupon` applies to `subtotal` at `now` and how much it takes off."""
    if coupon is None or coupon.status != CouponStatus.ACTIVE:
        return _not_applicable("Invalid coupon code", coupon)

    now = _as_utc(now)
    if now < _as_utc(coupon.valid_from) or now > _as_utc(coupon.valid_until):
        return _not_applicable("Coupon has expired", coupon)

    if coupon.min_purchase and subtotal < coupon.min_purchase:
        return _not_applicable(f"Minimum purchase of ${coupon.min_purchase:.2f} required", coupon)

    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        return _not_applicable("Coupon usage limit reached", coupon)

    if coupon.type == CouponType.PERCENTAGE:
        discount = subtotal * coupon.value / 100
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
    else:
        discount = min(coupon.value, subtotal)

    return CouponEvaluation(
        applicable=True,
        discount_amount=round(max(discount, 0.0), 2),
        canonical_code=coupon.code,
        coupon=coupon,
    )


def _to_coupon(doc: dict) -> Coupon:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    return Coupon.model_validate(data)


class CouponEvaluator:
    collection = "coupon"

    def __init__(self, db: Database):
        self.db = db

    def find_active(self, code: str) -> Optional[Coupon]:
        doc = self.db[self.collection].find_one(
            {"code": normalize_code(code), "status": CouponStatus.ACTIVE.value}
        )
        return _to_coupon(doc) if doc else None

    def evaluate(self, code: str, subtotal: float, now: Optional[datetime] = None) -> CouponEvaluation:
        if not code or not code.strip():
            return _not_applicable("Invalid coupon code")
        return evaluate_coupon(self.find_active(code), subtotal, now or utcnow())

    def claim(self, coupon: Coupon) -> bool:
        """Count one use of `coupon`, refusing if its usage limit has been reached meanwhile."""
        query = {"_id": ObjectId(coupon.id)}
        if coupon.usage_limit is not None:
            query["used_count"] = {"$lt": coupon.usage_limit}
        result = self.db[self.collection].update_one(
            query, {"$inc": {"used_count": 1}, "$set": {"updated_at": utcnow()}}
        )
        return result.modified_count == 1

    def unclaim(self, code: str) -> None:
        """Return a use claimed by a checkout that then failed to commit."""
        self.db[self.collection].update_one(
            {"code": normalize_code(code), "used_count": {"$gt": 0}},
            {"$inc": {"used_count": -1}, "$set": {"updated_at": utcnow()}},
        )
        logger.info("coupon_unclaimed", code=normalize_code(code))

    # Admin management

    def list_coupons(self, status: Optional[str] = None) -> List[Coupon]:
        query = {"status": status} if status else {}
        cursor = self.db[self.collection].find(query).sort("created_at", -1)
        return [_to_coupon(doc) for doc in cursor]

    def create(self, payload: CouponIn) -> Coupon:
        if payload.type == CouponType.FIXED and payload.max_discount is not None:
            raise InvalidInput("maxDiscount only applies to percentage coupons")
        if payload.type == CouponType.PERCENTAGE and payload.value > 100:
            raise InvalidInput("Percentage coupons cannot exceed 100")

        valid_from = payload.valid_from or utcnow()
        if _as_utc(payload.valid_until) <= _as_utc(valid_from):
            raise InvalidInput("validUntil must be after validFrom")

        code = normalize_code(payload.code)
        if self.db[self.collection].find_one({"code": code}):
            raise InvalidInput("Coupon code already exists")

        coupon = Coupon(
            code=code,
            type=payload.type,
            value=payload.value,
            min_purchase=payload.min_purchase,
            max_discount=payload.max_discount,
            usage_limit=payload.usage_limit,
            used_count=0,
            valid_from=valid_from,
            valid_until=payload.valid_until,
            status=payload.status,
            description=payload.description,
        )
        try:
            coupon_id = self.db.create_document(self.collection, coupon.model_dump(exclude={"id"}))
        except DuplicateKeyError:
            raise InvalidInput("Coupon code already exists")
        logger.info("coupon_created", code=code, type=coupon.type)
        return coupon.model_copy(update={"id": coupon_id})
