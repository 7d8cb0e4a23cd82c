# model/inventory.py
"""
Inventory ledger: authoritative per-ticket-type counters.

- total     : stock configured for the ticket type
- sold      : committed units (paid or awaiting manual verification)
- reserved  : units held while a provider payment is in flight
- available = total - sold - reserved

Every mutation is one conditional UPDATE ... RETURNING per ticket type inside
a single transaction. Multi-item operations are all-or-nothing: if any row
fails its guard the whole transaction rolls back. Within the process,
mutations also hold a per-ticket-type lock so concurrent buyers queue instead
of fighting over the database lock.

Shortage is never an exception here; callers get False / an Availability.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ..helpers import KeyedLocks
from ..infra.sql import Database
from ..infra.timings import timeit

logger = logging.getLogger(__name__)


class CartItem(NamedTuple):
    ticket_type_id: str
    quantity: int


@dataclass
class Availability:
    valid: bool
    errors: List[str] = field(default_factory=list)


class _Shortage(Exception):
    def __init__(self, ticket_type_id: str) -> None:
        super().__init__(ticket_type_id)
        self.ticket_type_id = ticket_type_id


# ------------------------------------------------------------------------------
# DDL (idempotent) + fixtures
# ------------------------------------------------------------------------------
SQL_CREATE_TICKET_STOCK = r"""
CREATE TABLE IF NOT EXISTS ticket_stock (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    price       BIGINT NOT NULL CHECK (price >= 0),
    total       BIGINT NOT NULL CHECK (total >= 0),
    sold        BIGINT NOT NULL DEFAULT 0 CHECK (sold >= 0),
    reserved    BIGINT NOT NULL DEFAULT 0 CHECK (reserved >= 0),
    CHECK (sold + reserved <= total)
);
"""

SQL_SEED_TICKET_TYPE = r"""
INSERT INTO ticket_stock (id, name, price, total, sold, reserved)
VALUES (:id, :name, :price, :total, 0, 0)
ON CONFLICT (id) DO UPDATE SET name = excluded.name, price = excluded.price
"""

# clamp(x - q) at zero, written portably (no GREATEST in sqlite)
_RESERVED_MINUS_Q = "CASE WHEN reserved > :q THEN reserved - :q ELSE 0 END"
_SOLD_MINUS_Q = "CASE WHEN sold > :q THEN sold - :q ELSE 0 END"

SQL_RESERVE = r"""
UPDATE ticket_stock
SET reserved = reserved + :q
WHERE id = :id AND total - sold - reserved >= :q
RETURNING id
"""

SQL_DIRECT_SELL = r"""
UPDATE ticket_stock
SET sold = sold + :q
WHERE id = :id AND total - sold - reserved >= :q
RETURNING id
"""

SQL_CONFIRM = f"""
UPDATE ticket_stock
SET sold = sold + :q,
    reserved = {_RESERVED_MINUS_Q}
WHERE id = :id
  AND sold + :q + ({_RESERVED_MINUS_Q}) <= total
RETURNING id
"""

SQL_RELEASE = f"""
UPDATE ticket_stock
SET reserved = {_RESERVED_MINUS_Q}
WHERE id = :id
RETURNING id
"""

SQL_RESTOCK = f"""
UPDATE ticket_stock
SET sold = {_SOLD_MINUS_Q}
WHERE id = :id
RETURNING id
"""


async def create_schema(
    db_or_conn: AsyncSession | AsyncConnection,
    catalog: Dict[str, Dict[str, Any]],
) -> None:
    """Create the ledger table and seed every configured ticket type."""
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_TICKET_STOCK))
    for tid, spec in catalog.items():
        await exec_(text(SQL_SEED_TICKET_TYPE), {
            "id": tid,
            "name": spec["name"],
            "price": int(spec["price"]),
            "total": int(spec["stock"]),
        })


def merge_items(items: Iterable[CartItem]) -> Dict[str, int]:
    """Sum quantities per ticket type; reject non-positive quantities."""
    merged: Dict[str, int] = {}
    for tid, qty in items:
        qty = int(qty)
        if qty <= 0:
            raise ValueError(f"quantity must be > 0 (got {qty} for {tid})")
        merged[tid] = merged.get(tid, 0) + qty
    return merged


def _row_dict(row) -> Dict[str, Any]:
    total, sold, reserved = int(row["total"]), int(row["sold"]), \
        int(row["reserved"])
    return {
        "id": row["id"],
        "name": row["name"],
        "price": int(row["price"]),
        "total": total,
        "sold": sold,
        "reserved": reserved,
        "available": max(0, total - sold - reserved),
    }


class InventoryLedger:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.locks = KeyedLocks()

    # --------------------------------------------------------------------------
    # Read APIs
    # --------------------------------------------------------------------------
    async def get(self, ticket_type_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.gated():
            async with self.db.sessions() as s:
                row = (await s.execute(text("""
                    SELECT id, name, price, total, sold, reserved
                    FROM ticket_stock WHERE id = :id
                """), {"id": ticket_type_id})).mappings().first()
        return _row_dict(row) if row else None

    async def get_available(self, ticket_type_id: str) -> int:
        row = await self.get(ticket_type_id)
        if row is None:
            return 0
        return row["available"]

    async def list_types(self) -> List[Dict[str, Any]]:
        async with self.db.gated():
            async with self.db.sessions() as s:
                rows = (await s.execute(text("""
                    SELECT id, name, price, total, sold, reserved
                    FROM ticket_stock ORDER BY price, id
                """))).mappings().all()
        return [_row_dict(r) for r in rows]

    async def stats(self) -> Dict[str, int]:
        types = await self.list_types()
        total = sum(t["total"] for t in types)
        sold = sum(t["sold"] for t in types)
        reserved = sum(t["reserved"] for t in types)
        return {
            "total_tickets": total,
            "total_sold": sold,
            "total_reserved": reserved,
            "total_available": total - sold - reserved,
        }

    async def check_cart_availability(
        self, items: Iterable[CartItem]
    ) -> Availability:
        merged = merge_items(items)
        by_id = {t["id"]: t for t in await self.list_types()}
        errors: List[str] = []
        for tid, qty in merged.items():
            row = by_id.get(tid)
            if row is None:
                errors.append(f"Unknown ticket type: {tid}")
                continue
            available = row["available"]
            if qty > available:
                if available == 0:
                    errors.append(f"{row['name']} is sold out")
                else:
                    errors.append(
                        f"Only {available} {row['name']} tickets left"
                    )
        return Availability(valid=not errors, errors=errors)

    # --------------------------------------------------------------------------
    # Mutations
    # --------------------------------------------------------------------------
    async def _apply_all(self, kind: str, sql: str,
                         items: Iterable[CartItem]) -> bool:
        merged = merge_items(items)
        if not merged:
            return True
        async with timeit(f"ledger.{kind}"):
            async with self.locks.hold(*merged):
                try:
                    async with self.db.gated():
                        async with self.db.sessions() as s:
                            async with s.begin():
                                for tid, qty in merged.items():
                                    row = (await s.execute(
                                        text(sql), {"id": tid, "q": qty}
                                    )).first()
                                    if row is None:
                                        raise _Shortage(tid)
                except _Shortage as e:
                    logger.info(
                        "ledger %s refused: %s short (%s)",
                        kind, e.ticket_type_id, merged,
                    )
                    return False
        return True

    async def _apply_each(self, kind: str, sql: str,
                          items: Iterable[CartItem]) -> None:
        merged = merge_items(items)
        if not merged:
            return
        async with timeit(f"ledger.{kind}"):
            async with self.locks.hold(*merged):
                async with self.db.gated():
                    async with self.db.sessions() as s:
                        async with s.begin():
                            for tid, qty in merged.items():
                                await s.execute(
                                    text(sql), {"id": tid, "q": qty}
                                )

    async def reserve(self, items: Iterable[CartItem]) -> bool:
        """Hold stock for an in-flight provider payment. All-or-nothing."""
        return await self._apply_all("reserve", SQL_RESERVE, items)

    async def release(self, items: Iterable[CartItem]) -> None:
        """Drop holds; reserved never goes below zero."""
        await self._apply_each("release", SQL_RELEASE, items)

    async def confirm(self, items: Iterable[CartItem]) -> bool:
        """Move held units to sold. All-or-nothing."""
        return await self._apply_all("confirm", SQL_CONFIRM, items)

    async def direct_sell(self, items: Iterable[CartItem]) -> bool:
        """
        Sell without a hold (manual transfers). Outstanding holds count
        against availability, so sold + reserved never exceeds total.
        """
        return await self._apply_all("direct_sell", SQL_DIRECT_SELL, items)

    async def restock(self, items: Iterable[CartItem]) -> None:
        """Return sold units to stock (rejected or deleted orders)."""
        await self._apply_each("restock", SQL_RESTOCK, items)

    async def set_total(self, ticket_type_id: str, total: int) -> bool:
        """Change configured stock; refuses to drop below sold + reserved."""
        if total < 0:
            raise ValueError("total must be >= 0")
        async with self.locks.hold(ticket_type_id):
            async with self.db.gated():
                async with self.db.sessions() as s:
                    async with s.begin():
                        row = (await s.execute(text("""
                            UPDATE ticket_stock SET total = :t
                            WHERE id = :id AND sold + reserved <= :t
                            RETURNING id
                        """), {"id": ticket_type_id, "t": total})).first()
        return row is not None

    async def reset_all(self) -> None:
        """Zero sold/reserved everywhere. Stock and prices stay."""
        ids = [t["id"] for t in await self.list_types()]
        async with self.locks.hold(*ids):
            async with self.db.gated():
                async with self.db.sessions() as s:
                    async with s.begin():
                        await s.execute(text(
                            "UPDATE ticket_stock SET sold = 0, reserved = 0"
                        ))
        logger.warning("inventory reset: sold/reserved zeroed for %s", ids)
