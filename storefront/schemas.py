"""
Database Schemas for the storefront checkout service

Each Pydantic document model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Order -> collection "order"

Documents are stored with snake_case keys (model_dump()); the HTTP API reads and writes the camelCase aliases.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        use_enum_values=True,
    )


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


# Core domain models

class Product(ApiModel):
    id: Optional[str] = None
    title: str
    slug: str
    description: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    price: float = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    count_in_stock: int = Field(0, ge=0)
    rating: float = Field(0, ge=0, le=5)
    num_reviews: int = Field(0, ge=0)
    tags: List[str] = Field(default_factory=list)
    is_featured: bool = False

    @field_validator("slug")
    @classmethod
    def lowercase_slug(cls, v: str) -> str:
        return v.lower()


class Coupon(ApiModel):
    id: Optional[str] = None
    code: str
    type: CouponType
    value: float = Field(..., ge=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    used_count: int = Field(0, ge=0)
    valid_from: datetime
    valid_until: datetime
    status: CouponStatus = CouponStatus.ACTIVE.value
    description: Optional[str] = None

    @field_validator("code")
    @classmethod
    def canonical_code(cls, v: str) -> str:
        return v.strip().upper()


class Customer(ApiModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    address: str = Field(..., min_length=1)
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = "United States"


class OrderItem(ApiModel):
    product_id: str
    slug: str
    title: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    image: Optional[str] = None


class Order(ApiModel):
    id: Optional[str] = None
    user_id: Optional[str] = None
    items: List[OrderItem]
    subtotal: float
    shipping: float
    tax: float
    discount_amount: float = 0.0
    total: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.AWAITING_PAYMENT.value
    customer: Customer
    payment_method: str
    coupon_code: Optional[str] = None
    payment_intent_id: Optional[str] = None
    stripe_session_id: Optional[str] = None
    transaction_id: Optional[str] = None
    tracking_number: Optional[str] = None
    cancel_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Order":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"}, mode="python")


# Request bodies

class CartLine(ApiModel):
    slug: str = Field(..., min_length=1)
    quantity: int = 1


class CheckoutRequest(ApiModel):
    items: List[CartLine]
    customer: Customer
    payment_method: str = "card"
    coupon_code: Optional[str] = None
    shipping: Optional[float] = Field(None, ge=0)
    tax: Optional[float] = Field(None, ge=0)


class ConfirmPaymentRequest(ApiModel):
    order_id: str = Field(..., min_length=1)
    payment_intent_id: str = Field(..., min_length=1)


class VerifyPaymentRequest(ApiModel):
    order_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    payment_method: str = Field(..., min_length=1)


class CouponValidateRequest(ApiModel):
    code: str = Field(..., min_length=1)
    subtotal: float = Field(..., gt=0)


class CouponIn(ApiModel):
    code: str = Field(..., min_length=1)
    type: CouponType
    value: float = Field(..., gt=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: datetime
    status: CouponStatus = CouponStatus.ACTIVE.value
    description: Optional[str] = None


class OrderStatusUpdate(ApiModel):
    status: Literal["cancelled", "fulfilled"]
    tracking_number: Optional[str] = None
