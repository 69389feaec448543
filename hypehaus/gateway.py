from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict
import hashlib
import hmac
import json
import uuid

import httpx
from loguru import logger

from .errors import PaymentGatewayError, PaymentVerificationFailed


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def payment_signature(
    secret: str, external_order_id: str, external_payment_id: str
) -> str:
    # the gateway signs "<order_id>|<payment_id>" with the key secret
    return sign(secret, f"{external_order_id}|{external_payment_id}".encode())


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateOrderResult(TypedDict):
    external_order_id: str
    public_key: str


class PaymentAdapter(ABC):
    def __init__(self, key_id: str, key_secret: str,
                 webhook_secret: str) -> None:
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret

    @abstractmethod
    async def create_order(
        self, amount: int, currency: str, idempotency_key: str,
        metadata: Dict[str, Any],
    ) -> CreateOrderResult: ...

    async def aclose(self) -> None:
        return None

    def verify_signature(
        self, external_order_id: str, external_payment_id: str,
        signature: str,
    ) -> bool:
        if not (external_order_id and external_payment_id and signature):
            return False
        expected = payment_signature(
            self._key_secret, external_order_id, external_payment_id
        )
        return hmac.compare_digest(expected, signature)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-gateway-signature")
        expected = sign(self._webhook_secret, payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise PaymentVerificationFailed("invalid webhook signature")
        try:
            return json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise PaymentVerificationFailed("invalid webhook payload")

    # "captured" | "failed" | "cancelled"
    def event_kind(self, event: dict) -> str:
        return event.get("event", "").split(".")[-1]

    def event_order_id(self, event: dict) -> Optional[str]:
        return event.get("order_id")


# ----------------------------
# Mock gateway (in-process)
# ----------------------------
class MockGateway(PaymentAdapter):
    """
    Stands in for the hosted checkout. Honors idempotency keys the way the
    real gateway does, and can sign completions so the whole flow can be
    exercised without a network.
    """

    def __init__(self, key_id: str, key_secret: str,
                 webhook_secret: str) -> None:
        super().__init__(key_id, key_secret, webhook_secret)
        self._orders_by_key: Dict[str, CreateOrderResult] = {}
        self.calls = 0

    async def create_order(
        self, amount: int, currency: str, idempotency_key: str,
        metadata: Dict[str, Any],
    ) -> CreateOrderResult:
        self.calls += 1
        existing = self._orders_by_key.get(idempotency_key)
        if existing is not None:
            return existing
        result: CreateOrderResult = {
            "external_order_id": f"order_mock_{uuid.uuid4().hex[:14]}",
            "public_key": self.key_id,
        }
        self._orders_by_key[idempotency_key] = result
        return result

    def complete(self, external_order_id: str) -> Dict[str, str]:
        """What the hosted checkout hands back to the client on success."""
        payment_id = f"pay_mock_{uuid.uuid4().hex[:14]}"
        return {
            "external_order_id": external_order_id,
            "external_payment_id": payment_id,
            "signature": payment_signature(
                self._key_secret, external_order_id, payment_id
            ),
        }

    def webhook(self, event: dict) -> tuple:
        """Signed webhook body + headers, as the gateway would POST them."""
        payload = json.dumps(event).encode()
        return payload, {"x-gateway-signature": sign(
            self._webhook_secret, payload
        )}


# ----------------------------
# Razorpay-style HTTP gateway
# ----------------------------
class RazorpayGateway(PaymentAdapter):
    def __init__(self, key_id: str, key_secret: str, webhook_secret: str,
                 *, base_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__(key_id, key_secret, webhook_secret)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            auth=(key_id, key_secret),
            transport=transport,
        )

    async def create_order(
        self, amount: int, currency: str, idempotency_key: str,
        metadata: Dict[str, Any],
    ) -> CreateOrderResult:
        # one call only: a blind retry after a timeout could create a second
        # order. The idempotency key lets the caller retry safely.
        try:
            r = await self._client.post(
                "/v1/orders",
                json={
                    "amount": amount,
                    "currency": currency.upper(),
                    "receipt": idempotency_key,
                    "notes": {k: str(v) for k, v in metadata.items()},
                },
                headers={"x-idempotency-key": idempotency_key},
            )
            r.raise_for_status()
            body = r.json()
        except httpx.TimeoutException as e:
            logger.warning("gateway timeout for {}: {}", idempotency_key, e)
            raise PaymentGatewayError("payment gateway timed out, retry")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("gateway error for {}: {}", idempotency_key, e)
            raise PaymentGatewayError("payment gateway unavailable")

        if "id" not in body:
            raise PaymentGatewayError("payment gateway returned no order id")
        return {"external_order_id": body["id"], "public_key": self.key_id}

    async def aclose(self) -> None:
        await self._client.aclose()


def new_adapter(settings) -> PaymentAdapter:
    if settings.gateway_backend == "razorpay":
        return RazorpayGateway(
            settings.gateway_key_id,
            settings.gateway_key_secret,
            settings.gateway_webhook_secret,
            base_url=settings.gateway_base_url,
            timeout=settings.gateway_timeout_seconds,
        )
    return MockGateway(
        settings.gateway_key_id,
        settings.gateway_key_secret,
        settings.gateway_webhook_secret,
    )
