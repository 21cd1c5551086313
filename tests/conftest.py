"""Pytest fixtures for storefront tests."""

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import jwt
import mongomock
import pytest
from fastapi.testclient import TestClient

from storefront.catalog import ProductCatalog
from storefront.checkout import CheckoutService
from storefront.config import Settings
from storefront.coupons import CouponEvaluator
from storefront.database import Database
from storefront.errors import InvalidSignature
from storefront.gateways import GatewayConfig, GatewayRegistry, MobileMoneyGateway
from storefront.main import create_app
from storefront.orders import OrderRepository
from storefront.payments import PaymentBridge, PaymentIntentInfo, WebhookEvent
from storefront.schemas import CheckoutRequest

JWT_SECRET = "test-secret"
VALID_SIGNATURE = "t=1,v1=valid"

CUSTOMER = {
    "name": "Jane Doe",
    "email": "jane@example.com",
    "phone": "555-123-4567",
    "address": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zipCode": "62701",
    "country": "United States",
}


class FakeCardProvider:
    """In-memory stand-in for Stripe."""

    def __init__(self, configured=True, webhook_configured=True):
        self._configured = configured
        self._webhook_configured = webhook_configured
        self.intents = {}
        self.created = []

    @property
    def configured(self):
        return self._configured

    @property
    def webhook_configured(self):
        return self._webhook_configured

    def create_payment_intent(self, amount, currency, metadata, description):
        intent_id = f"pi_test_{len(self.intents) + 1}"
        intent = PaymentIntentInfo(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            client_secret=f"{intent_id}_secret",
            order_id=metadata.get("orderId"),
        )
        self.intents[intent_id] = intent
        self.created.append({"amount": amount, "currency": currency, "metadata": metadata,
                             "description": description})
        return intent

    def set_status(self, intent_id, status):
        self.intents[intent_id] = replace(self.intents[intent_id], status=status)

    def retrieve_payment_intent(self, payment_intent_id):
        return self.intents.get(payment_intent_id)

    def construct_event(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise InvalidSignature("no signatures found matching the expected signature")
        data = json.loads(payload)
        obj = data["data"]["object"]
        return WebhookEvent(type=data["type"], object_id=obj.get("id"),
                            order_id=obj.get("metadata", {}).get("orderId"))


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, event, order):
        self.sent.append((event, order.id))

    def events(self):
        return [e for e, _ in self.sent]


class FailingNotifier:
    def notify(self, event, order):
        raise RuntimeError("smtp down")


def webhook_payload(event_type, object_id, **extra):
    obj = {"id": object_id, **extra}
    return json.dumps({"type": event_type, "data": {"object": obj}}).encode()


def seed_product(db, slug, price, stock, **extra):
    doc = {
        "title": extra.pop("title", slug.replace("-", " ").title()),
        "slug": slug,
        "price": price,
        "count_in_stock": stock,
        "images": extra.pop("images", [f"https://img.example.com/{slug}.jpg"]),
        "rating": 4.5,
        "num_reviews": 10,
        "tags": [],
    }
    doc.update(extra)
    return str(db["product"].insert_one(doc).inserted_id)


def seed_coupon(db, code, type, value, **extra):
    now = datetime.now(timezone.utc)
    doc = {
        "code": code,
        "type": type,
        "value": value,
        "used_count": 0,
        "valid_from": now - timedelta(days=1),
        "valid_until": now + timedelta(days=30),
        "status": "active",
    }
    doc.update(extra)
    return str(db["coupon"].insert_one(doc).inserted_id)


def stock_of(db, slug):
    return db["product"].find_one({"slug": slug})["count_in_stock"]


def used_count_of(db, code):
    return db["coupon"].find_one({"code": code})["used_count"]


def make_request(items, **kwargs):
    body = {"items": items, "customer": dict(CUSTOMER)}
    body.update(kwargs)
    return CheckoutRequest.model_validate(body)


def make_token(user_id, is_admin=False):
    payload = {
        "sub": str(user_id),
        "is_admin": is_admin,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def unconfigured_gateways():
    return GatewayRegistry({m: MobileMoneyGateway(GatewayConfig(method=m)) for m in ("bkash", "nagad", "rocket")})


@pytest.fixture
def settings():
    return Settings(jwt_secret=JWT_SECRET, database_name="storefront_test")


@pytest.fixture
def db():
    database = Database(mongomock.MongoClient(), "storefront_test")
    database.ensure_indexes()
    yield database
    database.close()


@pytest.fixture
def products(db):
    return {
        "widget": seed_product(db, "widget", 10.0, 5),
        "gadget": seed_product(db, "gadget", 25.5, 3),
        "last-one": seed_product(db, "last-one", 50.0, 1),
    }


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def card():
    return FakeCardProvider()


@pytest.fixture
def checkout_service(db, settings, notifier):
    return CheckoutService(ProductCatalog(db), CouponEvaluator(db), OrderRepository(db), settings, notifier)


@pytest.fixture
def bridge(db, settings, checkout_service, card):
    return PaymentBridge(checkout_service.orders, checkout_service, card, unconfigured_gateways(), settings)


@pytest.fixture
def client(db, settings, card, notifier, products):
    app = create_app(settings, database=db, card_provider=card, gateways=unconfigured_gateways(),
                     notifier=notifier)
    return TestClient(app)


@pytest.fixture
def admin_token(db):
    uid = db["user"].insert_one({"name": "Admin", "email": "admin@example.com", "is_admin": True}).inserted_id
    return make_token(uid, is_admin=True)


@pytest.fixture
def user_token(db):
    uid = db["user"].insert_one({"name": "Jane", "email": "jane@example.com", "is_admin": False}).inserted_id
    return make_token(uid)
