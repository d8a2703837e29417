"""
Payment Gateway Adapter

Boundary to the online payment provider. Charges are always correlated to
an order id, failures come back as ChargeResult(success=False) instead of
exceptions, and only a signed confirmation (payment callback signature or
webhook) is treated as proof that money was captured.
"""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests
from requests.exceptions import RequestException
from pydantic import BaseModel

import config
from errors import GatewayError
from schemas import CustomerInfo

logger = logging.getLogger(__name__)


class ChargeResult(BaseModel):
    success: bool
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    verified: bool = False  # True only when the provider already confirmed capture
    key: Optional[str] = None  # public key the browser widget needs to complete payment
    error: Optional[str] = None


class GatewayEvent(BaseModel):
    event: str
    status: Optional[str] = None  # "completed", "failed" or None for events we ignore
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    amount: Optional[float] = None
    error: Optional[str] = None


class RestaurantInfo(BaseModel):
    id: str
    name: str = ""


class PaymentGateway(ABC):
    @abstractmethod
    def initiate_charge(self, amount: float, order_id: str, customer_info: CustomerInfo,
                        restaurant_info: RestaurantInfo) -> ChargeResult:
        ...

    @abstractmethod
    def verify_payment(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        ...

    @abstractmethod
    def parse_webhook(self, body: bytes, signature: Optional[str]) -> GatewayEvent:
        """Verify and decode a webhook; raises GatewayError on a bad signature."""


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayGateway(PaymentGateway):
    def __init__(self, key_id: Optional[str] = None, key_secret: Optional[str] = None,
                 webhook_secret: Optional[str] = None, api_url: Optional[str] = None,
                 currency: str = config.CURRENCY, timeout: float = 10):
        self.key_id = key_id or config.RAZORPAY_KEY_ID
        self.key_secret = key_secret or config.RAZORPAY_SECRET
        self.webhook_secret = webhook_secret or config.RAZORPAY_WEBHOOK_SECRET
        self.api_url = (api_url or config.RAZORPAY_API_URL).rstrip("/")
        self.currency = currency
        self.timeout = timeout

    def initiate_charge(self, amount: float, order_id: str, customer_info: CustomerInfo,
                        restaurant_info: RestaurantInfo) -> ChargeResult:
        if not order_id:
            return ChargeResult(success=False, error="Missing order id")
        if amount <= 0:
            return ChargeResult(success=False, error="Charge amount must be positive")
        if not self.key_id or not self.key_secret:
            return ChargeResult(success=False, error="Payment gateway is not configured")

        payload = {
            "amount": int(round(amount * 100)),  # paise
            "currency": self.currency,
            "receipt": order_id,
            "notes": {
                "orderId": order_id,
                "restaurantId": restaurant_info.id,
                "customerName": customer_info.full_name,
                "customerPhone": customer_info.phone,
            },
        }
        try:
            response = requests.post(
                f"{self.api_url}/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
        except RequestException as e:
            logger.warning("Gateway unreachable for order %s: %s", order_id, e)
            return ChargeResult(success=False, error="Payment gateway unreachable")

        if response.status_code != 200:
            logger.warning("Gateway rejected order %s: HTTP %s", order_id, response.status_code)
            return ChargeResult(success=False, error=f"Payment gateway rejected the charge (HTTP {response.status_code})")

        data = response.json()
        return ChargeResult(success=True, gateway_order_id=data.get("id"), key=self.key_id)

    def verify_payment(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret or not signature:
            return False
        expected = _hmac_hex(self.key_secret, f"{gateway_order_id}|{payment_id}".encode())
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, body: bytes, signature: Optional[str]) -> GatewayEvent:
        if not signature or not self.webhook_secret:
            raise GatewayError("Missing webhook signature")
        if not hmac.compare_digest(_hmac_hex(self.webhook_secret, body), signature):
            raise GatewayError("Invalid webhook signature")

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise GatewayError("Malformed webhook body") from exc
        name = event.get("event", "")
        if name not in ("payment.captured", "payment.failed"):
            return GatewayEvent(event=name)

        payment = event.get("payload", {}).get("payment", {}).get("entity", {})
        return GatewayEvent(
            event=name,
            status="completed" if name == "payment.captured" else "failed",
            order_id=(payment.get("notes") or {}).get("orderId"),
            payment_id=payment.get("id"),
            gateway_order_id=payment.get("order_id"),
            amount=(payment.get("amount") or 0) / 100,
            error=payment.get("error_description"),
        )
