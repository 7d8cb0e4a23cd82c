from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ...helpers import now_ts
from ...infra.sql import Database
from . import PENDING, PaymentSession


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_PAYMENT_SESSIONS = r"""
-- card-rail reservations waiting for the provider
CREATE TABLE IF NOT EXISTS payment_sessions (
  psid                TEXT PRIMARY KEY,
  order_number        TEXT NOT NULL,
  items               TEXT NOT NULL,
  amount              BIGINT NOT NULL,
  currency            TEXT NOT NULL,
  rail                TEXT NOT NULL,
  customer_name       TEXT NOT NULL,
  customer_email      TEXT NOT NULL,
  customer_phone      TEXT NOT NULL,
  ticket_subtotal     BIGINT NOT NULL,
  platform_fee        BIGINT NOT NULL,
  stripe_fee          BIGINT NOT NULL,
  provider            TEXT NOT NULL,
  provider_payment_id TEXT NOT NULL,
  simulated           BOOLEAN NOT NULL,
  state               TEXT NOT NULL,     -- pending | confirmed | released
  extra               TEXT NOT NULL,
  created_at          DOUBLE PRECISION NOT NULL,
  claimed_at          DOUBLE PRECISION
);
"""

SQL_CREATE_IDEMPOTENCY_KEYS = r"""
-- webhook event ids already processed
CREATE TABLE IF NOT EXISTS idempotency_keys (
  key         TEXT PRIMARY KEY,
  created_at  DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_PS_STATE_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_ps_state_created_at
  ON payment_sessions (state, created_at);
"""

_COLUMNS = (
    "psid", "order_number", "items", "amount", "currency", "rail",
    "customer_name", "customer_email", "customer_phone", "ticket_subtotal",
    "platform_fee", "stripe_fee", "provider", "provider_payment_id",
    "simulated", "state", "extra", "created_at",
)


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_PAYMENT_SESSIONS))
    await exec_(text(SQL_CREATE_IDEMPOTENCY_KEYS))
    await exec_(text(SQL_CREATE_IDX_PS_STATE_CREATED_AT))


class PaymentSessionStore:
    def __init__(self, *, db: Database, ttl_seconds: int) -> None:
        self.db = db
        self.ttl = ttl_seconds

    async def create_schema(self) -> None:
        async with self.db.engine.begin() as conn:
            await create_schema(conn)

    async def save(self, ps: PaymentSession) -> None:
        m = ps.to_mapping()
        m["simulated"] = bool(ps.simulated)
        cols = ", ".join(_COLUMNS)
        binds = ", ".join(f":{c}" for c in _COLUMNS)
        updates = ", ".join(
            f"{c}=EXCLUDED.{c}" for c in _COLUMNS if c != "psid"
        )
        async with self.db.gated():
            async with self.db.engine.begin() as conn:
                await conn.execute(text(f"""
                  INSERT INTO payment_sessions ({cols})
                  VALUES ({binds})
                  ON CONFLICT (psid) DO UPDATE SET {updates}
                """), {c: m[c] for c in _COLUMNS})

    async def get(self, psid: str) -> Optional[PaymentSession]:
        async with self.db.gated():
            async with self.db.engine.connect() as conn:
                row = (await conn.execute(text("""
                  SELECT * FROM payment_sessions WHERE psid=:psid
                """), {"psid": psid})).mappings().first()
        return PaymentSession.from_mapping(dict(row)) if row else None

    async def claim(self, psid: str, state: str, *,
                    expect: str = PENDING) -> bool:
        """expect -> state, exactly once. False if someone got there first."""
        async with self.db.gated():
            async with self.db.engine.begin() as conn:
                row = (await conn.execute(text("""
                  UPDATE payment_sessions
                  SET state=:state, claimed_at=:now
                  WHERE psid=:psid AND state=:expect
                  RETURNING psid
                """), {
                    "psid": psid, "state": state,
                    "expect": expect, "now": now_ts(),
                })).first()
        return row is not None

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        async with self.db.gated():
            async with self.db.engine.begin() as conn:
                row = (await conn.execute(text("""
                  INSERT INTO idempotency_keys(key, created_at)
                  VALUES(:k, :now)
                  ON CONFLICT (key) DO NOTHING
                  RETURNING key
                """), {"k": evt_id, "now": now_ts()})).first()
        return row is not None

    async def list_expired(self, now: float, limit: int = 500) -> List[str]:
        async with self.db.gated():
            async with self.db.engine.connect() as conn:
                rows = (await conn.execute(text("""
                  SELECT psid FROM payment_sessions
                  WHERE state=:pending AND created_at <= :cutoff
                  ORDER BY created_at
                  LIMIT :lim
                """), {
                    "pending": PENDING,
                    "cutoff": now - self.ttl,
                    "lim": int(limit),
                })).all()
        return [r[0] for r in rows]

    async def get_recent(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.db.gated():
            async with self.db.engine.connect() as conn:
                total = (await conn.execute(text(
                    "SELECT COUNT(*) FROM payment_sessions "
                    "WHERE state=:pending"
                ), {"pending": PENDING})).scalar_one()
                rows = (await conn.execute(text("""
                  SELECT * FROM payment_sessions
                  WHERE state=:pending
                  ORDER BY created_at DESC
                  LIMIT :lim
                """), {"pending": PENDING, "lim": int(limit)}))
                rows = rows.mappings().all()
        now = now_ts()
        items = [PaymentSession.from_mapping(dict(r)).summary(now)
                 for r in rows]
        return int(total), items

    async def remove(self, psid: str) -> None:
        async with self.db.gated():
            async with self.db.engine.begin() as conn:
                await conn.execute(
                    text("DELETE FROM payment_sessions WHERE psid=:psid"),
                    {"psid": psid},
                )

    async def clear(self) -> None:
        async with self.db.gated():
            async with self.db.engine.begin() as conn:
                await conn.execute(text("DELETE FROM payment_sessions"))
