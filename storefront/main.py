import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.auth import get_current_user, get_optional_user, require_admin
from storefront.catalog import ProductCatalog
from storefront.checkout import CheckoutService
from storefront.config import Settings
from storefront.coupons import CouponEvaluator
from storefront.database import Database
from storefront.errors import InsufficientStock, StorefrontError
from storefront.gateways import GatewayRegistry
from storefront.log import configure_logging
from storefront.notifications import NotificationDispatcher, NotificationEvent, Notifier
from storefront.orders import OrderRepository
from storefront.payments import CardProvider, PaymentBridge, StripeProvider
from storefront.schemas import (
    CheckoutRequest,
    ConfirmPaymentRequest,
    CouponIn,
    CouponValidateRequest,
    Order,
    OrderStatus,
    OrderStatusUpdate,
    VerifyPaymentRequest,
)

logger = structlog.get_logger(__name__)


def _wire(app: FastAPI, db: Database) -> None:
    s = app.state
    s.db = db
    s.catalog = ProductCatalog(db)
    s.coupons = CouponEvaluator(db)
    s.orders = OrderRepository(db)
    s.checkout = CheckoutService(s.catalog, s.coupons, s.orders, s.settings, s.notifier)
    s.payments = PaymentBridge(s.orders, s.checkout, s.card_provider, s.gateways, s.settings)


def order_json(order: Order) -> dict:
    return order.model_dump(by_alias=True, mode="json")


def create_app(settings: Optional[Settings] = None, *, database: Optional[Database] = None,
               card_provider: Optional[CardProvider] = None, gateways: Optional[GatewayRegistry] = None,
               notifier: Optional[Notifier] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "db", None) is None:
            owned = Database.connect(settings)
            _wire(app, owned)
        app.state.db.ensure_indexes()
        yield
        if owned is not None:
            owned.close()

    # App setup
    app = FastAPI(title="Storefront Checkout API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.card_provider = card_provider or StripeProvider.from_settings(settings)
    app.state.gateways = gateways or GatewayRegistry.from_env()
    app.state.notifier = notifier or NotificationDispatcher.from_settings(settings)
    app.state.db = None
    if database is not None:
        _wire(app, database)

    # Error mapping
    @app.exception_handler(StorefrontError)
    async def storefront_error(request: Request, exc: StorefrontError):
        body = {"detail": str(exc)}
        if isinstance(exc, InsufficientStock):
            body.update({"slug": exc.slug, "available": exc.available, "requested": exc.requested})
        logger.info("request_rejected", path=request.url.path, error=type(exc).__name__, detail=str(exc))
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())[1:])
            problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return JSONResponse(status_code=400, content={"detail": "; ".join(problems) or "Invalid request"})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("unexpected_error", path=request.url.path, method=request.method)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # Health and helpers
    @app.get("/")
    def root():
        return {"message": "Storefront checkout API running"}

    @app.get("/test")
    def test_database(request: Request):
        db: Optional[Database] = request.app.state.db
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
            "database_name": settings.database_name,
            "connection_status": "Not Connected",
            "collections": [],
        }
        try:
            if db is not None:
                response["collections"] = db.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
                response["connection_status"] = "Connected"
        except Exception as e:
            response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
        return response

    # Checkout
    @app.post("/checkout", status_code=201)
    def checkout(payload: CheckoutRequest, background_tasks: BackgroundTasks, request: Request,
                 user: Optional[dict] = Depends(get_optional_user)):
        service: CheckoutService = request.app.state.checkout
        order = service.create_order(
            payload,
            user_id=str(user["_id"]) if user else None,
            defer=background_tasks.add_task,
        )
        return {"success": True, "orderId": order.id, "status": order.status, "total": order.total}

    # Payments
    @app.post("/payment/create-intent")
    def create_payment_intent(payload: CheckoutRequest, request: Request,
                              user: Optional[dict] = Depends(get_optional_user)):
        bridge: PaymentBridge = request.app.state.payments
        result = bridge.create_intent(payload, user_id=str(user["_id"]) if user else None)
        return {
            "success": True,
            "clientSecret": result.client_secret,
            "orderId": result.order_id,
            "paymentIntentId": result.payment_intent_id,
        }

    @app.post("/payment/confirm")
    def confirm_payment(payload: ConfirmPaymentRequest, background_tasks: BackgroundTasks, request: Request):
        bridge: PaymentBridge = request.app.state.payments
        order = bridge.confirm(payload.order_id, payload.payment_intent_id, defer=background_tasks.add_task)
        return {"success": True, "message": "Payment confirmed successfully", "order": order_json(order)}

    @app.post("/payment/verify")
    def verify_payment(payload: VerifyPaymentRequest, background_tasks: BackgroundTasks, request: Request):
        bridge: PaymentBridge = request.app.state.payments
        result = bridge.verify(
            payload.order_id, payload.transaction_id, payload.payment_method,
            defer=background_tasks.add_task,
        )
        if result.requires_manual_verification:
            return {"success": False, "requiresManualVerification": True, "message": result.message}
        return {"success": True, "message": result.message, "order": order_json(result.order)}

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request, background_tasks: BackgroundTasks):
        bridge: PaymentBridge = request.app.state.payments
        raw = await request.body()
        return bridge.handle_webhook(
            raw, request.headers.get("stripe-signature"), defer=background_tasks.add_task
        )

    # Orders
    @app.get("/orders/my")
    def my_orders(request: Request, user: dict = Depends(get_current_user)):
        orders: OrderRepository = request.app.state.orders
        return {"items": [order_json(o) for o in orders.list_orders(user_id=str(user["_id"]))]}

    @app.get("/orders/{order_id}")
    def get_order(order_id: str, request: Request):
        orders: OrderRepository = request.app.state.orders
        return {"order": order_json(orders.get(order_id))}

    # Coupons
    @app.post("/coupons/validate")
    def validate_coupon(payload: CouponValidateRequest, request: Request):
        evaluator: CouponEvaluator = request.app.state.coupons
        evaluation = evaluator.evaluate(payload.code, payload.subtotal)
        if not evaluation.applicable:
            status = 404 if evaluation.coupon is None else 400
            raise HTTPException(status_code=status, detail=evaluation.reason)
        coupon = evaluation.coupon
        return {
            "success": True,
            "coupon": {
                "code": coupon.code,
                "type": coupon.type,
                "value": coupon.value,
                "discountAmount": evaluation.discount_amount,
                "description": coupon.description,
            },
        }

    # Admin
    @app.get("/admin/orders")
    def admin_list_orders(request: Request, status: Optional[OrderStatus] = None, limit: int = 100,
                          admin: dict = Depends(require_admin)):
        orders: OrderRepository = request.app.state.orders
        items = orders.list_orders(status=status.value if status else None, limit=max(1, min(limit, 500)))
        return {"items": [order_json(o) for o in items]}

    @app.get("/admin/orders/{order_id}")
    def admin_get_order(order_id: str, request: Request, admin: dict = Depends(require_admin)):
        orders: OrderRepository = request.app.state.orders
        return order_json(orders.get(order_id))

    @app.put("/admin/orders/{order_id}")
    def admin_update_order(order_id: str, payload: OrderStatusUpdate, background_tasks: BackgroundTasks,
                           request: Request, admin: dict = Depends(require_admin)):
        orders: OrderRepository = request.app.state.orders
        target = OrderStatus(payload.status)
        if target == OrderStatus.FULFILLED:
            fields = {"tracking_number": payload.tracking_number} if payload.tracking_number else {}
        else:
            fields = {"cancel_reason": "cancelled by admin"}
        order, changed = orders.advance(order_id, target, **fields)
        if changed and target == OrderStatus.FULFILLED:
            request.app.state.checkout.dispatch(NotificationEvent.ORDER_SHIPPED, order, background_tasks.add_task)
        logger.info("admin_order_update", order_id=order_id, status=target.value, admin=str(admin["_id"]))
        return {"ok": True, "order": order_json(order)}

    @app.get("/admin/coupons")
    def admin_list_coupons(request: Request, status: Optional[str] = None, admin: dict = Depends(require_admin)):
        evaluator: CouponEvaluator = request.app.state.coupons
        return {"coupons": [c.model_dump(by_alias=True, mode="json") for c in evaluator.list_coupons(status)]}

    @app.post("/admin/coupons", status_code=201)
    def admin_create_coupon(payload: CouponIn, request: Request, admin: dict = Depends(require_admin)):
        evaluator: CouponEvaluator = request.app.state.coupons
        coupon = evaluator.create(payload)
        return {"success": True, "coupon": coupon.model_dump(by_alias=True, mode="json")}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
