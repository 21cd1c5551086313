"""Tests for card confirmation, Stripe webhooks and mobile-money verification."""

import httpx
import pytest
import stripe

from storefront.errors import (
    GatewayUnconfigured,
    InvalidInput,
    InvalidSignature,
    OrderNotFound,
    PaymentNotConfirmed,
    PaymentObjectNotFound,
)
from storefront.gateways import GatewayConfig, GatewayRegistry, MobileMoneyGateway
from storefront.notifications import NotificationEvent
from storefront.payments import PaymentBridge, PaymentIntentInfo, to_minor_units
from storefront.schemas import OrderStatus

from .conftest import (
    VALID_SIGNATURE,
    FakeCardProvider,
    make_request,
    seed_coupon,
    stock_of,
    unconfigured_gateways,
    used_count_of,
    webhook_payload,
)

GATEWAY_URL = "https://gateway.example.com"


def gateway_with(handler, method="bkash"):
    config = GatewayConfig(method=method, api_key="key", api_secret="secret", merchant_id="M1",
                           api_url=GATEWAY_URL)
    return MobileMoneyGateway(config, client=httpx.Client(transport=httpx.MockTransport(handler)))


def place_order(bridge, method="cash", **kwargs):
    return bridge.checkout.create_order(
        make_request([{"slug": "widget", "quantity": 2}], paymentMethod=method), notify=False, **kwargs
    )


def test_minor_units():
    assert to_minor_units(31.6) == 3160
    assert to_minor_units(29.99) == 2999
    assert to_minor_units(0) == 0


class TestCreateIntent:
    def test_creates_awaiting_order_and_intent(self, bridge, card, products, db, notifier):
        result = bridge.create_intent(make_request([{"slug": "widget", "quantity": 2}]), user_id="u1")
        order = bridge.orders.get(result.order_id)

        assert result.client_secret == f"{result.payment_intent_id}_secret"
        assert order.status == "awaiting_payment"
        assert order.payment_method == "card"
        assert order.payment_intent_id == result.payment_intent_id
        assert stock_of(db, "widget") == 3

        created = card.created[0]
        assert created["amount"] == 3160
        assert created["currency"] == "usd"
        assert created["metadata"]["orderId"] == order.id
        assert created["metadata"]["customerEmail"] == "jane@example.com"
        assert created["description"] == f"Order #{order.id[-6:]} - 1 item(s)"
        assert notifier.sent == []

    def test_unconfigured_stripe_writes_nothing(self, db, settings, checkout_service, products):
        bridge = PaymentBridge(checkout_service.orders, checkout_service, FakeCardProvider(configured=False),
                               unconfigured_gateways(), settings)
        with pytest.raises(GatewayUnconfigured, match="Stripe"):
            bridge.create_intent(make_request([{"slug": "widget"}]))
        assert db["order"].count_documents({}) == 0
        assert stock_of(db, "widget") == 5

    def test_provider_failure_releases_order(self, db, settings, checkout_service, products):
        class UnreachableCard(FakeCardProvider):
            def create_payment_intent(self, amount, currency, metadata, description):
                raise stripe.APIConnectionError("Network error communicating with Stripe")

        seed_coupon(db, "SAVE10", "percentage", 10)
        bridge = PaymentBridge(checkout_service.orders, checkout_service, UnreachableCard(),
                               unconfigured_gateways(), settings)
        with pytest.raises(stripe.APIConnectionError):
            bridge.create_intent(make_request([{"slug": "widget", "quantity": 2}], couponCode="SAVE10"))

        assert stock_of(db, "widget") == 5
        assert used_count_of(db, "SAVE10") == 0
        order = db["order"].find_one()
        assert order["status"] == "cancelled"
        assert order["cancel_reason"] == "payment_intent_failed"
        assert order["payment_intent_id"] is None


class TestConfirm:
    def test_succeeded_intent_marks_paid(self, bridge, card, products, notifier):
        result = bridge.create_intent(make_request([{"slug": "widget"}]))
        card.set_status(result.payment_intent_id, "succeeded")

        order = bridge.confirm(result.order_id, result.payment_intent_id)
        assert order.status == "paid"
        assert order.paid_at is not None
        assert notifier.sent == [(NotificationEvent.ORDER_CONFIRMED, order.id)]

    def test_second_confirm_is_idempotent(self, bridge, card, products, notifier):
        result = bridge.create_intent(make_request([{"slug": "widget"}]))
        card.set_status(result.payment_intent_id, "succeeded")
        first = bridge.confirm(result.order_id, result.payment_intent_id)
        second = bridge.confirm(result.order_id, result.payment_intent_id)
        assert second.status == "paid"
        assert second.paid_at == first.paid_at
        assert len(notifier.sent) == 1

    def test_incomplete_intent_leaves_order_awaiting(self, bridge, card, products):
        result = bridge.create_intent(make_request([{"slug": "widget"}]))
        card.set_status(result.payment_intent_id, "requires_payment_method")
        with pytest.raises(PaymentNotConfirmed, match="Payment not completed"):
            bridge.confirm(result.order_id, result.payment_intent_id)
        assert bridge.orders.get(result.order_id).status == "awaiting_payment"

    def test_intent_for_another_order(self, bridge, card, products):
        mine = bridge.create_intent(make_request([{"slug": "widget"}]))
        theirs = bridge.create_intent(make_request([{"slug": "gadget"}]))
        card.set_status(theirs.payment_intent_id, "succeeded")
        with pytest.raises(PaymentNotConfirmed):
            bridge.confirm(mine.order_id, theirs.payment_intent_id)
        assert bridge.orders.get(mine.order_id).status == "awaiting_payment"

    def test_unknown_intent(self, bridge, products):
        order = place_order(bridge, "card")
        with pytest.raises(PaymentObjectNotFound):
            bridge.confirm(order.id, "pi_missing")

    def test_unknown_order(self, bridge):
        with pytest.raises(OrderNotFound):
            bridge.confirm("64b7f0c2a1b2c3d4e5f60718", "pi_1")

    def test_unconfigured_stripe(self, checkout_service, settings, products):
        bridge = PaymentBridge(checkout_service.orders, checkout_service, FakeCardProvider(configured=False),
                               unconfigured_gateways(), settings)
        order = place_order(bridge, "card")
        with pytest.raises(GatewayUnconfigured):
            bridge.confirm(order.id, "pi_1")

    def test_intent_without_order_metadata_refused(self, bridge, card, products):
        order = place_order(bridge, "card")
        card.intents["pi_bare"] = PaymentIntentInfo("pi_bare", "succeeded", to_minor_units(order.total))
        with pytest.raises(PaymentNotConfirmed, match="does not belong"):
            bridge.confirm(order.id, "pi_bare")
        assert bridge.orders.get(order.id).status == "awaiting_payment"

    def test_intent_amount_must_match_total(self, bridge, card, products):
        order = place_order(bridge, "card")
        card.intents["pi_short"] = PaymentIntentInfo("pi_short", "succeeded", 100, order_id=order.id)
        with pytest.raises(PaymentNotConfirmed, match="does not match"):
            bridge.confirm(order.id, "pi_short")
        assert bridge.orders.get(order.id).status == "awaiting_payment"


class TestWebhook:
    def test_session_completed_pays_order_once(self, bridge, products, notifier):
        order = place_order(bridge, "card")
        bridge.orders.update_fields(order.id, stripe_session_id="cs_test_1")
        payload = webhook_payload("checkout.session.completed", "cs_test_1")

        assert bridge.handle_webhook(payload, VALID_SIGNATURE) == {"received": True}
        assert bridge.handle_webhook(payload, VALID_SIGNATURE) == {"received": True}

        assert bridge.orders.get(order.id).status == "paid"
        assert notifier.sent == [(NotificationEvent.ORDER_CONFIRMED, order.id)]

    def test_payment_intent_succeeded(self, bridge, card, products):
        result = bridge.create_intent(make_request([{"slug": "widget"}]))
        payload = webhook_payload("payment_intent.succeeded", result.payment_intent_id,
                                  metadata={"orderId": result.order_id})
        bridge.handle_webhook(payload, VALID_SIGNATURE)
        assert bridge.orders.get(result.order_id).status == "paid"

    def test_event_naming_another_order_is_ignored(self, bridge, card, products, notifier):
        result = bridge.create_intent(make_request([{"slug": "widget"}]))
        payload = webhook_payload("payment_intent.succeeded", result.payment_intent_id,
                                  metadata={"orderId": "64b7f0c2a1b2c3d4e5f60718"})
        assert bridge.handle_webhook(payload, VALID_SIGNATURE) == {"received": True}
        assert bridge.orders.get(result.order_id).status == "awaiting_payment"
        assert notifier.sent == []

    def test_cancelled_order_is_not_revived(self, bridge, products, notifier):
        order = place_order(bridge, "card")
        bridge.orders.update_fields(order.id, stripe_session_id="cs_test_2")
        bridge.orders.advance(order.id, OrderStatus.CANCELLED)
        bridge.handle_webhook(webhook_payload("checkout.session.completed", "cs_test_2"), VALID_SIGNATURE)
        assert bridge.orders.get(order.id).status == "cancelled"
        assert notifier.sent == []

    def test_unknown_session_acknowledged(self, bridge):
        payload = webhook_payload("checkout.session.completed", "cs_unknown")
        assert bridge.handle_webhook(payload, VALID_SIGNATURE) == {"received": True}

    def test_other_event_types_ignored(self, bridge, products):
        order = place_order(bridge, "card")
        payload = webhook_payload("charge.refunded", "ch_1")
        assert bridge.handle_webhook(payload, VALID_SIGNATURE) == {"received": True}
        assert bridge.orders.get(order.id).status == "awaiting_payment"

    def test_bad_signature(self, bridge):
        with pytest.raises(InvalidSignature):
            bridge.handle_webhook(webhook_payload("checkout.session.completed", "cs"), "t=1,v1=forged")

    def test_missing_signature(self, bridge):
        with pytest.raises(InvalidSignature):
            bridge.handle_webhook(webhook_payload("checkout.session.completed", "cs"), None)

    def test_unconfigured_webhook_is_acknowledged(self, checkout_service, settings, products):
        bridge = PaymentBridge(checkout_service.orders, checkout_service,
                               FakeCardProvider(webhook_configured=False), unconfigured_gateways(), settings)
        order = place_order(bridge, "card")
        bridge.orders.update_fields(order.id, stripe_session_id="cs_test_3")
        result = bridge.handle_webhook(webhook_payload("checkout.session.completed", "cs_test_3"), None)
        assert result == {"received": True}
        assert bridge.orders.get(order.id).status == "awaiting_payment"


class TestVerify:
    def test_unconfigured_gateway_needs_manual_check(self, bridge, products, notifier):
        order = place_order(bridge, "bkash")
        result = bridge.verify(order.id, "TX1", "bkash")
        assert result.success is False
        assert result.requires_manual_verification is True
        assert "verify manually" in result.message
        assert bridge.orders.get(order.id).status == "awaiting_payment"
        assert notifier.sent == []

    def test_unsupported_method(self, bridge, products):
        order = place_order(bridge, "cash")
        with pytest.raises(InvalidInput):
            bridge.verify(order.id, "TX1", "paypal")

    def test_gateway_success_marks_paid(self, checkout_service, settings, card, products, notifier):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": "success", "transactionId": "TX1", "amount": 31.6})

        bridge = PaymentBridge(checkout_service.orders, checkout_service, card,
                               GatewayRegistry({"bkash": gateway_with(handler)}), settings)
        order = place_order(bridge, "bkash")
        result = bridge.verify(order.id, "TX1", "bKash")

        assert result.success is True
        assert result.order.status == "paid"
        assert result.order.transaction_id == "TX1"
        assert notifier.sent == [(NotificationEvent.PAYMENT_VERIFIED, order.id)]
        assert str(seen[0].url) == f"{GATEWAY_URL}/payments/verify"
        assert seen[0].headers["X-API-Key"] == "key"

    def test_gateway_failure(self, checkout_service, settings, card, products):
        handler = lambda request: httpx.Response(200, json={"status": "failed", "message": "Unknown transaction"})
        bridge = PaymentBridge(checkout_service.orders, checkout_service, card,
                               GatewayRegistry({"bkash": gateway_with(handler)}), settings)
        order = place_order(bridge, "bkash")
        with pytest.raises(PaymentNotConfirmed, match="Unknown transaction"):
            bridge.verify(order.id, "TX1", "bkash")
        assert bridge.orders.get(order.id).status == "awaiting_payment"

    def test_gateway_http_error(self, checkout_service, settings, card, products):
        handler = lambda request: httpx.Response(503)
        bridge = PaymentBridge(checkout_service.orders, checkout_service, card,
                               GatewayRegistry({"nagad": gateway_with(handler, "nagad")}), settings)
        order = place_order(bridge, "nagad")
        with pytest.raises(PaymentNotConfirmed):
            bridge.verify(order.id, "TX1", "nagad")

    def test_amount_mismatch(self, checkout_service, settings, card, products):
        handler = lambda request: httpx.Response(200, json={"status": "completed", "amount": 1.0})
        bridge = PaymentBridge(checkout_service.orders, checkout_service, card,
                               GatewayRegistry({"bkash": gateway_with(handler)}), settings)
        order = place_order(bridge, "bkash")
        with pytest.raises(PaymentNotConfirmed, match="does not match"):
            bridge.verify(order.id, "TX1", "bkash")
        assert bridge.orders.get(order.id).status == "awaiting_payment"
