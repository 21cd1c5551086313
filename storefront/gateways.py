"""
Mobile-money gateway clients (bKash, Nagad, Rocket).

Each gateway is configured from {METHOD}_API_KEY, {METHOD}_API_SECRET,
{METHOD}_MERCHANT_ID and {METHOD}_API_URL. Without credentials a gateway is
simply "not configured" and payments for that method are verified by hand.
"""
import os
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
import structlog

from storefront.checkout import MOBILE_MONEY_METHODS
from storefront.errors import GatewayUnconfigured, InvalidInput

logger = structlog.get_logger(__name__)

SUCCESS_STATUSES = {"success", "completed", "verified"}


@dataclass(frozen=True)
class GatewayConfig:
    method: str
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    merchant_id: Optional[str] = None
    api_url: Optional[str] = None
    environment: str = "sandbox"

    @classmethod
    def from_env(cls, method: str) -> "GatewayConfig":
        prefix = method.upper()
        return cls(
            method=method.lower(),
            api_key=os.getenv(f"{prefix}_API_KEY") or None,
            api_secret=os.getenv(f"{prefix}_API_SECRET") or None,
            merchant_id=os.getenv(f"{prefix}_MERCHANT_ID") or None,
            api_url=os.getenv(f"{prefix}_API_URL") or None,
            environment=os.getenv("PAYMENT_ENVIRONMENT", "sandbox"),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and (self.api_secret or self.merchant_id) and self.api_url)


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    message: Optional[str] = None
    error: Optional[str] = None


class MobileMoneyGateway:
    def __init__(self, config: GatewayConfig, client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.config = config
        self._client = client
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"X-API-Key": self.config.api_key or "", "Accept": "application/json"}
        if self.config.api_secret:
            headers["X-API-Secret"] = self.config.api_secret
        return headers

    def _post(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self.config.api_url.rstrip('/')}{path}"
        if self._client is not None:
            return self._client.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(url, json=payload, headers=self._headers())

    def verify_payment(self, transaction_id: str) -> GatewayResult:
        if not self.config.configured:
            raise GatewayUnconfigured(self.config.method)

        payload = {"transactionId": transaction_id}
        if self.config.merchant_id:
            payload["merchantId"] = self.config.merchant_id
        log = logger.bind(method=self.config.method, transaction_id=transaction_id)

        try:
            resp = self._post("/payments/verify", payload)
        except httpx.HTTPError as e:
            log.warning("gateway_request_failed", error=str(e))
            return GatewayResult(success=False, error=f"Could not reach {self.config.method} gateway")

        if resp.status_code >= 400:
            log.warning("gateway_rejected", status_code=resp.status_code)
            return GatewayResult(success=False, error=f"Gateway returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            return GatewayResult(success=False, error="Gateway returned an unreadable response")

        status = str(data.get("status", "")).lower()
        amount = data.get("amount")
        result = GatewayResult(
            success=status in SUCCESS_STATUSES,
            transaction_id=data.get("transactionId", transaction_id),
            amount=float(amount) if amount is not None else None,
            message=data.get("message"),
            error=None if status in SUCCESS_STATUSES else (data.get("message") or "Payment verification failed"),
        )
        log.info("gateway_verified", success=result.success, status=status)
        return result


class GatewayRegistry:
    def __init__(self, gateways: Dict[str, MobileMoneyGateway]):
        self.gateways = gateways

    @classmethod
    def from_env(cls) -> "GatewayRegistry":
        return cls({m: MobileMoneyGateway(GatewayConfig.from_env(m)) for m in MOBILE_MONEY_METHODS})

    def get(self, method: str) -> MobileMoneyGateway:
        key = (method or "").lower()
        if key not in self.gateways:
            raise InvalidInput(f"Unsupported payment method: {method}")
        return self.gateways[key]
