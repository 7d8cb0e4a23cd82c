"""
Payment sessions: card-rail reservations waiting for a provider outcome.

A session is written when the ledger hold is taken and the payment intent
is created. It is claimed exactly once, either `confirmed` (webhook success)
or `released` (failure, cancel, or the reaper), so replays and races cannot
apply the outcome twice.
"""
from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import orjson
import redis.asyncio as redis

from ...infra.sql import Database
from ..inventory import CartItem

# session states
PENDING = "pending"
CONFIRMED = "confirmed"
RELEASED = "released"
FINAL_STATES = (CONFIRMED, RELEASED)


@dataclass
class PaymentSession:
    psid: str
    order_number: str
    items: List[CartItem]
    amount: int
    currency: str
    rail: str
    customer_name: str
    customer_email: str
    customer_phone: str = ""
    ticket_subtotal: int = 0
    platform_fee: int = 0
    stripe_fee: int = 0
    provider: str = "mock"
    provider_payment_id: str = ""
    simulated: bool = False
    state: str = PENDING
    created_at: float = 0.0
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_mapping(self) -> Dict[str, Any]:
        """Flat str/int/float mapping (redis hash or SQL row)."""
        m = asdict(self)
        m["items"] = orjson.dumps(
            [[i.ticket_type_id, i.quantity] for i in self.items]
        ).decode()
        m["extra"] = orjson.dumps(self.extra).decode()
        m["simulated"] = int(bool(self.simulated))
        return m

    @classmethod
    def from_mapping(cls, m: Dict[str, Any]) -> "PaymentSession":
        # redis hands back strings for everything
        items = m.get("items") or "[]"
        if isinstance(items, (str, bytes)):
            items = orjson.loads(items)
        extra = m.get("extra") or "{}"
        if isinstance(extra, (str, bytes)):
            extra = orjson.loads(extra)
        return cls(
            psid=m["psid"],
            order_number=m["order_number"],
            items=[CartItem(str(t), int(q)) for t, q in items],
            amount=int(m["amount"]),
            currency=m["currency"],
            rail=m["rail"],
            customer_name=m.get("customer_name") or "",
            customer_email=m.get("customer_email") or "",
            customer_phone=m.get("customer_phone") or "",
            ticket_subtotal=int(m.get("ticket_subtotal") or 0),
            platform_fee=int(m.get("platform_fee") or 0),
            stripe_fee=int(m.get("stripe_fee") or 0),
            provider=m.get("provider") or "mock",
            provider_payment_id=m.get("provider_payment_id") or "",
            simulated=str(m.get("simulated")) in ("1", "True", "true"),
            state=m.get("state") or PENDING,
            created_at=float(m.get("created_at") or 0.0),
            extra=dict(extra),
        )

    def summary(self, now: float) -> Dict[str, Any]:
        return {
            "psid": self.psid,
            "order_number": self.order_number,
            "created_at": self.created_at,
            "age_ms": int(max(0.0, now - self.created_at) * 1000),
            "items": [list(i) for i in self.items],
            "amount": self.amount,
            "currency": self.currency,
            "rail": self.rail,
            "email": self.customer_email,
            "simulated": self.simulated,
            "status": self.state.upper(),
        }


from ._postgres import PaymentSessionStore as SqlPaymentSessionStore  # noqa
from ._redis import PaymentSessionStore as RedisPaymentSessionStore  # noqa


def new_store(backend: str, *,
              db: Optional[Database] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 600):
    """'pg' -> SQL tables next to the orders; anything else -> redis."""
    if backend == "pg":
        if db is None:
            raise RuntimeError(
                "PaymentSessionStore(pg) requires db=Database"
            )
        return SqlPaymentSessionStore(db=db, ttl_seconds=ttl_seconds)
    if r is None:
        raise RuntimeError(
            "PaymentSessionStore(redis) requires r=redis.Redis"
        )
    return RedisPaymentSessionStore(r=r, ttl_seconds=ttl_seconds)


__all__ = [
    "PaymentSession",
    "PENDING",
    "CONFIRMED",
    "RELEASED",
    "FINAL_STATES",
    "SqlPaymentSessionStore",
    "RedisPaymentSessionStore",
    "new_store",
]