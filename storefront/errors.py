"""Custom exceptions for the storefront checkout service."""
from typing import Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500


class InvalidInput(StorefrontError):
    """Raised when a request is missing or has malformed fields."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ProductNotFound(StorefrontError):
    """Raised when a cart references a slug that is not in the catalog."""

    status_code = 404

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Product not found: {slug}")


class OrderNotFound(StorefrontError):
    status_code = 404

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InsufficientStock(StorefrontError):
    """Raised when a line asks for more units than the product has."""

    status_code = 400

    def __init__(self, slug: str, title: str, available: int, requested: int):
        self.slug = slug
        self.title = title
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {title}: requested {requested}, only {available} available"
        )


class CouponUnavailable(StorefrontError):
    """Raised when a coupon's last use was taken by a concurrent checkout."""

    status_code = 400

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Coupon {code} is no longer available")


class PaymentNotConfirmed(StorefrontError):
    """Raised when the payment provider does not report the payment as complete."""

    status_code = 400

    def __init__(self, message: str = "Payment not completed"):
        self.message = message
        super().__init__(message)


class PaymentObjectNotFound(StorefrontError):
    status_code = 404

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Payment not found: {reference}")


class InvalidStatusTransition(StorefrontError):
    """Raised when an order cannot move from its current status to the requested one."""

    status_code = 409

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from {current} to {target}")


class InvalidSignature(StorefrontError):
    status_code = 400

    def __init__(self, reason: Optional[str] = None):
        msg = "Webhook signature verification failed"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class GatewayUnconfigured(StorefrontError):
    """Raised when a payment provider is needed but has no credentials."""

    status_code = 500

    def __init__(self, provider: str, hint: Optional[str] = None):
        self.provider = provider
        msg = f"{provider} is not configured."
        if hint:
            msg = f"{msg} {hint}"
        super().__init__(msg)
