from __future__ import annotations
import base64
import hashlib
import hmac
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional

import httpx
import orjson
import stripe

from .errors import InvalidInput, PaymentFailed, ProviderUnavailable
from .settings import Settings

logger = logging.getLogger(__name__)

EVENT_KINDS = ("succeeded", "failed", "canceled")


# ----------------------------
# Payment Adapter Interface
# ----------------------------
@dataclass
class Intent:
    payment_session_id: str
    provider_payment_id: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    simulated: bool = False


@dataclass
class PaymentEvent:
    kind: str  # succeeded | failed | canceled
    payment_session_id: str
    event_id: Optional[str] = None
    provider_payment_id: str = ""


def new_psid(prefix: str = "ps") -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class PaymentAdapter(ABC):
    name: str = ""

    @abstractmethod
    async def create_intent(
        self, psid: str, amount: int, currency: str, rail: str,
        payer: Mapping[str, str],
    ) -> Intent: ...

    # raises InvalidInput on bad signature / payload
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: Mapping) -> dict: ...

    # None for event types we do not act on
    @abstractmethod
    def parse_event(self, event: dict) -> Optional[PaymentEvent]: ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    Local stand-in for a provider. The hosted page at /mockpay/{psid} emits
    an HMAC-signed event to our own webhook.
    """
    name = "mock"

    def __init__(self, secret: str) -> None:
        self.secret = secret

    async def create_intent(
        self, psid: str, amount: int, currency: str, rail: str,
        payer: Mapping[str, str],
    ) -> Intent:
        return Intent(
            payment_session_id=psid,
            provider_payment_id=f"mockpi_{uuid.uuid4().hex[:16]}",
            redirect_url=f"/mockpay/{psid}",
        )

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, psid: str, kind: str, amount: int,
                    currency: str) -> bytes:
        if kind not in EVENT_KINDS:
            raise InvalidInput("invalid kind")
        return orjson.dumps({
            "type": f"payment.{kind}",
            "payment_session_id": psid,
            "amount": int(amount),
            "currency": currency,
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        })

    def verify_webhook(self, payload: bytes, headers: Mapping) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidInput("Invalid signature")
        try:
            return orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise InvalidInput("Invalid JSON")

    def parse_event(self, event: dict) -> Optional[PaymentEvent]:
        kind = event.get("type", "").split(".")[-1]
        if kind not in EVENT_KINDS:
            return None
        return PaymentEvent(
            kind=kind,
            payment_session_id=event.get("payment_session_id", ""),
            event_id=event.get("idempotency_key"),
        )


# ----------------------------
# Stripe (PaymentIntents over httpx)
# ----------------------------
# rail -> payment_method_types; wallets ride on "card"
STRIPE_METHOD_TYPES = {
    "card": ["card"],
    "apple_pay": ["card"],
    "google_pay": ["card"],
    "grabpay": ["grabpay"],
    "paynow_stripe": ["paynow"],
}

STRIPE_EVENT_KINDS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}


class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, http: httpx.AsyncClient, secret_key: str,
                 webhook_secret: str,
                 api_base: str = "https://api.stripe.com") -> None:
        self.http = http
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")

    async def create_intent(
        self, psid: str, amount: int, currency: str, rail: str,
        payer: Mapping[str, str],
    ) -> Intent:
        if not self.secret_key:
            raise ProviderUnavailable("Stripe is not configured")
        data = {
            "amount": str(int(amount)),
            "currency": currency,
            "metadata[payment_session_id]": psid,
            "metadata[order_number]": payer.get("order_number", ""),
            "payment_method_types[]": STRIPE_METHOD_TYPES.get(
                rail, ["card"]
            ),
        }
        if payer.get("email"):
            data["receipt_email"] = payer["email"]

        try:
            resp = await self.http.post(
                f"{self.api_base}/v1/payment_intents",
                data=data,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Idempotency-Key": psid,
                },
            )
        except httpx.HTTPError as e:
            logger.warning("stripe unreachable: %r", e)
            raise ProviderUnavailable("Payment provider unavailable") from e

        if resp.status_code >= 500:
            logger.warning("stripe %s: %s", resp.status_code, resp.text[:200])
            raise ProviderUnavailable("Payment provider unavailable")
        body = resp.json()
        if resp.status_code >= 400:
            msg = (body.get("error") or {}).get("message") or \
                "Payment was declined"
            logger.warning("stripe rejected intent: %s", msg)
            raise PaymentFailed(msg)

        return Intent(
            payment_session_id=psid,
            provider_payment_id=body["id"],
            client_secret=body.get("client_secret"),
        )

    def verify_webhook(self, payload: bytes, headers: Mapping) -> dict:
        sig = headers.get("stripe-signature")
        if not sig or not self.webhook_secret:
            raise InvalidInput("Invalid signature")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig, self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError:
            raise InvalidInput("Invalid signature")
        try:
            return orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise InvalidInput("Invalid JSON")

    def parse_event(self, event: dict) -> Optional[PaymentEvent]:
        kind = STRIPE_EVENT_KINDS.get(event.get("type", ""))
        if kind is None:
            return None
        obj = (event.get("data") or {}).get("object") or {}
        meta = obj.get("metadata") or {}
        return PaymentEvent(
            kind=kind,
            payment_session_id=meta.get("payment_session_id", ""),
            event_id=event.get("id"),
            provider_payment_id=obj.get("id", ""),
        )


def new_adapter(settings: Settings, http: httpx.AsyncClient) -> PaymentAdapter:
    if settings.payment_provider == "stripe":
        return StripePay(
            http,
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            settings.stripe_api_base,
        )
    return MockPay(settings.mock_secret)
