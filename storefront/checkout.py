"""
Checkout: turns a cart into a priced, stock-checked order.

Everything that can reject a cart (empty cart, unknown product, short stock)
runs before the first write. The commit then writes the order, claims the
coupon use and reserves stock, in that order, each as one atomic store
operation. If another checkout takes the last unit or the last coupon use
between validation and commit, this request gives back what it took, marks
its own order cancelled and reports the conflict.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import structlog

from storefront.catalog import ProductCatalog
from storefront.config import Settings
from storefront.coupons import CouponEvaluator
from storefront.errors import CouponUnavailable, InsufficientStock, InvalidInput, ProductNotFound
from storefront.notifications import NotificationEvent, Notifier
from storefront.orders import OrderRepository
from storefront.schemas import CheckoutRequest, Coupon, Order, OrderItem, OrderStatus

logger = structlog.get_logger(__name__)

MIN_QUANTITY = 1
MAX_QUANTITY = 99
MOBILE_MONEY_METHODS = ("bkash", "nagad", "rocket")

Defer = Callable[..., Any]


def _run_now(fn: Callable[..., Any], *args: Any) -> None:
    try:
        fn(*args)
    except Exception:
        logger.exception("notification_failed", handler=getattr(fn, "__qualname__", repr(fn)))


def clamp_quantity(quantity: Optional[int]) -> int:
    return max(MIN_QUANTITY, min(MAX_QUANTITY, quantity or MIN_QUANTITY))


def is_cash_on_delivery(payment_method: str) -> bool:
    method = (payment_method or "").lower()
    return method == "cash" or "delivery" in method


def is_mobile_money(payment_method: str) -> bool:
    return (payment_method or "").lower() in MOBILE_MONEY_METHODS


def initial_status(payment_method: str, card_paid_at_checkout: bool = False) -> OrderStatus:
    if is_cash_on_delivery(payment_method) or is_mobile_money(payment_method):
        return OrderStatus.AWAITING_PAYMENT
    if card_paid_at_checkout:
        return OrderStatus.PAID
    return OrderStatus.AWAITING_PAYMENT


@dataclass(frozen=True)
class PricedCart:
    items: List[OrderItem]
    subtotal: float
    shipping: float
    tax: float
    discount_amount: float
    total: float
    coupon: Optional[Coupon] = None

    @property
    def coupon_code(self) -> Optional[str]:
        return self.coupon.code if self.coupon else None


class CheckoutService:
    def __init__(self, catalog: ProductCatalog, coupons: CouponEvaluator, orders: OrderRepository,
                 settings: Settings, notifier: Optional[Notifier] = None):
        self.catalog = catalog
        self.coupons = coupons
        self.orders = orders
        self.settings = settings
        self.notifier = notifier

    def price_cart(self, request: CheckoutRequest) -> PricedCart:
        """Validate the cart against the catalog and compute its totals. Writes nothing."""
        if not request.items:
            raise InvalidInput("No items in cart")
        customer = request.customer
        if not customer or not customer.name or not customer.email or not customer.address:
            raise InvalidInput("Customer information is required")

        quantities: Dict[str, int] = {}
        for line in request.items:
            slug = line.slug.strip().lower()
            quantities[slug] = quantities.get(slug, 0) + clamp_quantity(line.quantity)

        products = self.catalog.find_by_slugs(quantities)
        for slug in quantities:
            if slug not in products:
                raise ProductNotFound(slug)

        items = []
        for slug, quantity in quantities.items():
            product = products[slug]
            quantity = clamp_quantity(quantity)
            if quantity > product.count_in_stock:
                raise InsufficientStock(slug, product.title, product.count_in_stock, quantity)
            items.append(OrderItem(
                product_id=product.id,
                slug=product.slug,
                title=product.title,
                price=product.price,
                quantity=quantity,
                image=product.images[0] if product.images else None,
            ))

        subtotal = round(sum(item.price * item.quantity for item in items), 2)
        shipping = request.shipping if request.shipping is not None else self.settings.shipping_flat_rate
        tax = request.tax if request.tax is not None else round(subtotal * self.settings.tax_rate, 2)

        coupon = None
        discount = 0.0
        if request.coupon_code:
            evaluation = self.coupons.evaluate(request.coupon_code, subtotal)
            if evaluation.applicable:
                coupon = evaluation.coupon
                discount = evaluation.discount_amount
            else:
                logger.info("coupon_not_applied", code=request.coupon_code, reason=evaluation.reason)

        total = round(max(0.0, subtotal + shipping + tax - discount), 2)
        return PricedCart(
            items=items,
            subtotal=subtotal,
            shipping=round(shipping, 2),
            tax=round(tax, 2),
            discount_amount=discount,
            total=total,
            coupon=coupon,
        )

    def create_order(self, request: CheckoutRequest, *, user_id: Optional[str] = None,
                     status: Optional[OrderStatus] = None, notify: bool = True,
                     defer: Optional[Defer] = None) -> Order:
        priced = self.price_cart(request)
        if status is None:
            status = initial_status(request.payment_method, self.settings.card_paid_at_checkout)

        order = self.orders.insert(Order(
            user_id=user_id,
            items=priced.items,
            subtotal=priced.subtotal,
            shipping=priced.shipping,
            tax=priced.tax,
            discount_amount=priced.discount_amount,
            total=priced.total,
            status=status,
            customer=request.customer,
            payment_method=request.payment_method,
            coupon_code=priced.coupon_code,
        ))
        log = logger.bind(order_id=order.id)

        claimed: Optional[str] = None
        if priced.coupon is not None:
            if not self.coupons.claim(priced.coupon):
                self._abandon(order, [], None, "coupon_exhausted")
                raise CouponUnavailable(priced.coupon.code)
            claimed = priced.coupon.code

        reserved: List[OrderItem] = []
        for item in order.items:
            if not self.catalog.reserve(item.product_id, item.quantity):
                self._abandon(order, reserved, claimed, "stock_conflict")
                current = self.catalog.get_by_slug(item.slug)
                available = current.count_in_stock if current else 0
                log.warning("stock_conflict", slug=item.slug, requested=item.quantity, available=available)
                raise InsufficientStock(item.slug, item.title, available, item.quantity)
            reserved.append(item)

        log.info(
            "order_created",
            status=order.status,
            total=order.total,
            coupon=order.coupon_code,
            payment_method=order.payment_method,
        )
        if notify:
            self.dispatch(NotificationEvent.ORDER_CONFIRMED, order, defer)
        return order

    def dispatch(self, event: NotificationEvent, order: Order, defer: Optional[Defer] = None) -> None:
        if self.notifier is None:
            return
        if defer is None:
            _run_now(self.notifier.notify, event, order)
        else:
            defer(_run_now, self.notifier.notify, event, order)

    def release(self, order: Order, reason: str) -> None:
        """Give back the stock and coupon use a committed order holds, and cancel it."""
        self._abandon(order, order.items, order.coupon_code, reason)

    def _abandon(self, order: Order, reserved: List[OrderItem], coupon_code: Optional[str],
                 reason: str) -> None:
        for item in reserved:
            self.catalog.release(item.product_id, item.quantity)
        if coupon_code:
            self.coupons.unclaim(coupon_code)
        self.orders.advance(order.id, OrderStatus.CANCELLED, cancel_reason=reason)
        logger.info("order_abandoned", order_id=order.id, reason=reason)
