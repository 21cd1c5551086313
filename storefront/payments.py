"""
Payment bridge between orders and payment providers.

An order only becomes paid on a confirmation that comes from the provider
itself: a PaymentIntent re-fetched from Stripe, a signed Stripe webhook, or
a mobile-money gateway's verification response. A client saying "it
succeeded" is never enough.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import stripe
import structlog

from storefront.checkout import CheckoutService, Defer
from storefront.config import Settings
from storefront.errors import (
    GatewayUnconfigured,
    InvalidSignature,
    InvalidStatusTransition,
    PaymentNotConfirmed,
    PaymentObjectNotFound,
)
from storefront.gateways import GatewayRegistry
from storefront.notifications import NotificationEvent
from storefront.orders import OrderRepository
from storefront.schemas import CheckoutRequest, Order, OrderStatus

logger = structlog.get_logger(__name__)

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


@dataclass(frozen=True)
class PaymentIntentInfo:
    id: str
    status: str
    amount: int
    client_secret: Optional[str] = None
    order_id: Optional[str] = None


@dataclass(frozen=True)
class WebhookEvent:
    type: str
    object_id: Optional[str]
    order_id: Optional[str] = None


@dataclass(frozen=True)
class IntentResult:
    client_secret: str
    order_id: str
    payment_intent_id: str


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    order: Optional[Order] = None
    requires_manual_verification: bool = False
    message: Optional[str] = None


class CardProvider(Protocol):
    @property
    def configured(self) -> bool: ...

    @property
    def webhook_configured(self) -> bool: ...

    def create_payment_intent(self, amount: int, currency: str, metadata: Dict[str, str],
                              description: str) -> PaymentIntentInfo: ...

    def retrieve_payment_intent(self, payment_intent_id: str) -> Optional[PaymentIntentInfo]: ...

    def construct_event(self, payload: bytes, signature: str) -> WebhookEvent: ...


def _metadata_value(obj: Any, key: str) -> Optional[str]:
    metadata = getattr(obj, "metadata", None)
    if not metadata:
        return None
    return getattr(metadata, key, None)


class StripeProvider:
    """CardProvider backed by the Stripe API."""

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeProvider":
        return cls(settings.stripe_secret_key, settings.stripe_webhook_secret)

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def webhook_configured(self) -> bool:
        return bool(self.secret_key and self.webhook_secret)

    def _info(self, intent: Any) -> PaymentIntentInfo:
        return PaymentIntentInfo(
            id=intent.id,
            status=intent.status,
            amount=intent.amount,
            client_secret=getattr(intent, "client_secret", None),
            order_id=_metadata_value(intent, "orderId"),
        )

    def create_payment_intent(self, amount: int, currency: str, metadata: Dict[str, str],
                              description: str) -> PaymentIntentInfo:
        intent = stripe.PaymentIntent.create(
            api_key=self.secret_key,
            amount=amount,
            currency=currency,
            metadata=metadata,
            description=description,
        )
        return self._info(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Optional[PaymentIntentInfo]:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.secret_key)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise
        return self._info(intent)

    def construct_event(self, payload: bytes, signature: str) -> WebhookEvent:
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise InvalidSignature(f"invalid payload ({e})")
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(str(e))
        obj = event.data.object
        return WebhookEvent(
            type=event.type,
            object_id=getattr(obj, "id", None),
            order_id=_metadata_value(obj, "orderId"),
        )


class PaymentBridge:
    def __init__(self, orders: OrderRepository, checkout: CheckoutService, card: CardProvider,
                 gateways: GatewayRegistry, settings: Settings):
        self.orders = orders
        self.checkout = checkout
        self.card = card
        self.gateways = gateways
        self.settings = settings

    # Card path

    def create_intent(self, request: CheckoutRequest, *, user_id: Optional[str] = None) -> IntentResult:
        if not self.card.configured:
            raise GatewayUnconfigured(
                "Stripe", "Please set STRIPE_SECRET_KEY in environment variables."
            )

        card_request = request.model_copy(update={"payment_method": "card"})
        order = self.checkout.create_order(
            card_request, user_id=user_id, status=OrderStatus.AWAITING_PAYMENT, notify=False
        )
        try:
            intent = self.card.create_payment_intent(
                amount=to_minor_units(order.total),
                currency=self.settings.currency,
                metadata={
                    "orderId": order.id,
                    "customerEmail": order.customer.email,
                    "customerName": order.customer.name,
                },
                description=f"Order #{order.id[-6:]} - {len(order.items)} item(s)",
            )
        except Exception:
            logger.exception("payment_intent_failed", order_id=order.id)
            self.checkout.release(order, "payment_intent_failed")
            raise
        self.orders.update_fields(order.id, payment_intent_id=intent.id)
        logger.info("payment_intent_created", order_id=order.id, payment_intent_id=intent.id,
                    amount=intent.amount)
        return IntentResult(
            client_secret=intent.client_secret or "",
            order_id=order.id,
            payment_intent_id=intent.id,
        )

    def confirm(self, order_id: str, payment_intent_id: str, *, defer: Optional[Defer] = None) -> Order:
        order = self.orders.get(order_id)
        if not self.card.configured:
            raise GatewayUnconfigured("Stripe", "Payments cannot be confirmed.")

        intent = self.card.retrieve_payment_intent(payment_intent_id)
        if intent is None:
            raise PaymentObjectNotFound(payment_intent_id)
        if intent.order_id != order.id:
            logger.warning("payment_order_mismatch", order_id=order.id, intent_order_id=intent.order_id)
            raise PaymentNotConfirmed("Payment does not belong to this order")
        if intent.status != "succeeded":
            raise PaymentNotConfirmed("Payment not completed")
        if intent.amount != to_minor_units(order.total):
            logger.warning("payment_amount_mismatch", order_id=order.id, paid=intent.amount,
                           total=to_minor_units(order.total))
            raise PaymentNotConfirmed("Paid amount does not match the order total")

        updated, changed = self.orders.advance(order.id, OrderStatus.PAID, payment_intent_id=intent.id)
        if changed:
            logger.info("payment_confirmed", order_id=order.id, payment_intent_id=intent.id)
            self.checkout.dispatch(NotificationEvent.ORDER_CONFIRMED, updated, defer)
        return updated

    def handle_webhook(self, payload: bytes, signature: Optional[str], *,
                       defer: Optional[Defer] = None) -> Dict[str, Any]:
        if not self.card.webhook_configured:
            logger.info("webhook_ignored", reason="stripe webhook not configured")
            return {"received": True}
        if not signature:
            raise InvalidSignature("missing Stripe-Signature header")

        event = self.card.construct_event(payload, signature)
        if event.type == CHECKOUT_SESSION_COMPLETED:
            order = self.orders.find_by("stripe_session_id", event.object_id)
        elif event.type == PAYMENT_INTENT_SUCCEEDED:
            order = self.orders.find_by("payment_intent_id", event.object_id)
        else:
            return {"received": True}

        log = logger.bind(event_type=event.type, object_id=event.object_id)
        if order is None:
            log.warning("webhook_order_not_found")
            return {"received": True}
        if event.order_id and event.order_id != order.id:
            log.warning("webhook_order_mismatch", order_id=order.id, event_order_id=event.order_id)
            return {"received": True}
        if order.status != OrderStatus.AWAITING_PAYMENT:
            log.info("webhook_noop", order_id=order.id, status=order.status)
            return {"received": True}

        try:
            updated, changed = self.orders.advance(order.id, OrderStatus.PAID)
        except InvalidStatusTransition as e:
            log.info("webhook_noop", order_id=order.id, status=e.current)
            return {"received": True}
        if changed:
            log.info("payment_confirmed", order_id=order.id)
            self.checkout.dispatch(NotificationEvent.ORDER_CONFIRMED, updated, defer)
        return {"received": True}

    # Manual / mobile-money path

    def verify(self, order_id: str, transaction_id: str, method: str, *,
               defer: Optional[Defer] = None) -> VerificationResult:
        gateway = self.gateways.get(method)
        order = self.orders.get(order_id)

        if not gateway.config.configured:
            logger.info("manual_verification_required", order_id=order.id, method=gateway.config.method)
            return VerificationResult(
                success=False,
                order=order,
                requires_manual_verification=True,
                message="Payment gateway not configured. Please verify manually in admin panel.",
            )

        result = gateway.verify_payment(transaction_id)
        if not result.success:
            raise PaymentNotConfirmed(result.error or "Payment verification failed")
        if result.amount is not None and abs(result.amount - order.total) > 0.01:
            logger.warning("payment_amount_mismatch", order_id=order.id, paid=result.amount, total=order.total)
            raise PaymentNotConfirmed("Paid amount does not match the order total")

        updated, changed = self.orders.advance(
            order.id, OrderStatus.PAID, transaction_id=result.transaction_id or transaction_id
        )
        if changed:
            logger.info("payment_verified", order_id=order.id, method=gateway.config.method)
            self.checkout.dispatch(NotificationEvent.PAYMENT_VERIFIED, updated, defer)
        return VerificationResult(success=True, order=updated, message="Payment verified successfully")
