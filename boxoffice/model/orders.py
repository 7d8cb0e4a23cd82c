# model/orders.py
from __future__ import annotations
import csv
import io
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from ..errors import DuplicateOrder, InvalidInput, NotFound
from ..helpers import KeyedLocks, format_cents, normalize_code, now_ts, to_iso
from ..infra.sql import Database
from ..infra.timings import timeit
from .orm import (
    ORDER_STATUSES,
    PENDING,
    REJECTED,
    TICKET_STATUSES,
    USED,
    VERIFIED,
    IndividualTicket,
    Order,
    OrderLine,
    effective_customer_pays,
    effective_subtotal,
)

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "Order Number",
    "Date",
    "Status",
    "Customer Name",
    "Email",
    "Phone",
    "Tickets",
    "Total Amount",
    "Payment Method",
    "Admin Notes",
]


@dataclass
class TicketUpdate:
    success: bool
    order_number: Optional[str] = None
    ticket_type: Optional[str] = None
    error: Optional[str] = None


# ----------------------------
# Serialization
# ----------------------------
def ticket_to_dict(t: IndividualTicket) -> Dict[str, Any]:
    return {
        "ticket_id": t.ticket_id,
        "ticket_type": t.ticket_type,
        "qr_payload": t.qr_payload,
        "status": t.status,
        "scanned_at": to_iso(t.scanned_at),
        "scanned_by": t.scanned_by,
    }


def order_to_dict(o: Order, *, admin: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": o.id,
        "order_number": o.order_number,
        "created_at": to_iso(o.created_at),
        "status": o.status,
        "payment_method": o.payment_method,
        "payment_rail": o.payment_rail,
        "simulated": bool(o.simulated),
        "customer": {
            "name": o.customer_name,
            "email": o.customer_email,
            "phone": o.customer_phone,
        },
        "items": [
            {
                "ticket_type_id": line.ticket_type_id,
                "name": line.name,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
            }
            for line in o.lines
        ],
        "currency": o.currency,
        "total_amount": o.total_amount,
        "ticket_subtotal": o.ticket_subtotal,
        "platform_fee": o.platform_fee,
        "stripe_fee": o.stripe_fee,
        "customer_pays": o.customer_pays,
        "verified_at": to_iso(o.verified_at),
        "tickets": [ticket_to_dict(t) for t in o.tickets],
        "scan_progress": scan_progress(o),
    }
    if admin:
        out["payment_id"] = o.payment_id
        out["admin_notes"] = o.admin_notes
        out["has_proof"] = o.proof_image is not None
    return out


def ticket_summary(o: Order) -> str:
    return "; ".join(f"{line.name} x{line.quantity}" for line in o.lines)


def scan_progress(o: Order) -> Dict[str, Any]:
    total = len(o.tickets)
    scanned = sum(1 for t in o.tickets if t.status == USED)
    pct = round(scanned * 100 / total) if total else 0
    return {"scanned": scanned, "total": total, "percentage": pct}


# ----------------------------
# Order Store
# ----------------------------
class OrderStore:
    """
    Durable orders keyed by id and by normalized order number.

    Writes touching one order run under that order's lock. The store does not
    enforce the admin override rule; that is the admin workflow's job.
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self.locks = KeyedLocks()

    async def create(self, order: Order) -> Order:
        key = normalize_code(order.order_number)
        if not key:
            raise InvalidInput("order number required")
        order.order_number_key = key
        if order.created_at is None:
            order.created_at = now_ts()

        async with timeit("orders.create"):
            async with self.db.gated():
                async with self.db.sessions() as s:
                    try:
                        async with s.begin():
                            taken = (await s.execute(
                                select(Order.id)
                                .where(Order.order_number_key == key)
                            )).first()
                            if taken is not None:
                                raise DuplicateOrder(
                                    f"Order {order.order_number} already "
                                    f"exists"
                                )
                            s.add(order)
                    except IntegrityError as e:
                        # concurrent insert won the unique index
                        raise DuplicateOrder(
                            f"Order {order.order_number} already exists"
                        ) from e
        return order

    async def get_all(self) -> List[Order]:
        async with self.db.gated():
            async with self.db.sessions() as s:
                rows = (await s.execute(
                    select(Order).order_by(
                        Order.created_at.desc(), Order.id.desc()
                    )
                )).scalars().all()
        return list(rows)

    async def get(self, order_id: str) -> Optional[Order]:
        async with self.db.gated():
            async with self.db.sessions() as s:
                return await s.get(Order, order_id)

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        key = normalize_code(order_number)
        if not key:
            return None
        async with self.db.gated():
            async with self.db.sessions() as s:
                return (await s.execute(
                    select(Order).where(Order.order_number_key == key)
                )).scalars().first()

    async def get_by_ticket_id(
        self, ticket_id: str
    ) -> Optional[Tuple[Order, IndividualTicket]]:
        key = normalize_code(ticket_id)
        if not key:
            return None
        async with self.db.gated():
            async with self.db.sessions() as s:
                order_id = (await s.execute(
                    select(IndividualTicket.order_id)
                    .where(func.upper(IndividualTicket.ticket_id) == key)
                )).scalar()
                if order_id is None:
                    return None
                order = await s.get(Order, order_id)
        if order is None:
            return None
        for t in order.tickets:
            if normalize_code(t.ticket_id) == key:
                return order, t
        return None

    async def get_proof(self, order_id: str) -> Tuple[bytes, str]:
        order = await self.get(order_id)
        if order is None or order.proof_image is None:
            raise NotFound("No proof of payment on file")
        return order.proof_image, order.proof_content_type or "image/png"

    async def update_status(
        self, order_id: str, status: str,
        admin_notes: Optional[str] = None,
    ) -> Order:
        if status not in ORDER_STATUSES:
            raise InvalidInput(f"invalid status: {status}")
        async with timeit("orders.update_status"):
            async with self.locks.hold(order_id):
                async with self.db.gated():
                    async with self.db.sessions() as s:
                        async with s.begin():
                            order = await s.get(Order, order_id)
                            if order is None:
                                raise NotFound("Order not found")
                            order.status = status
                            if status == VERIFIED:
                                order.verified_at = now_ts()
                            if admin_notes is not None:
                                order.admin_notes = admin_notes
        return order

    async def update_ticket_status(
        self, ticket_id: str, status: str,
        scanned_by: Optional[str] = None,
        *, expected: Optional[str] = None,
    ) -> TicketUpdate:
        """
        Set one ticket's status. With `expected`, the write only happens if
        the ticket is still in that state (so two racing scans cannot both
        redeem it).
        """
        if status not in TICKET_STATUSES:
            raise InvalidInput(f"invalid ticket status: {status}")
        found = await self.get_by_ticket_id(ticket_id)
        if found is None:
            return TicketUpdate(False, error="Ticket not found")
        order, _ = found

        async with timeit("orders.update_ticket_status"):
            async with self.locks.hold(order.id):
                async with self.db.gated():
                    async with self.db.sessions() as s:
                        async with s.begin():
                            ticket = await s.get(
                                IndividualTicket, found[1].ticket_id
                            )
                            if ticket is None:
                                return TicketUpdate(
                                    False, error="Ticket not found"
                                )
                            if expected is not None and \
                                    ticket.status != expected:
                                return TicketUpdate(
                                    False,
                                    order_number=order.order_number,
                                    ticket_type=ticket.ticket_type,
                                    error=f"Ticket is {ticket.status}",
                                )
                            ticket.status = status
                            if status == USED:
                                ticket.scanned_at = now_ts()
                                ticket.scanned_by = scanned_by or "bouncer"
        return TicketUpdate(
            True,
            order_number=order.order_number,
            ticket_type=ticket.ticket_type,
        )

    async def add_tickets(
        self, order_id: str, tickets: List[IndividualTicket]
    ) -> Order:
        """Attach tickets to an order that has none yet."""
        async with self.locks.hold(order_id):
            async with self.db.gated():
                async with self.db.sessions() as s:
                    async with s.begin():
                        order = await s.get(Order, order_id)
                        if order is None:
                            raise NotFound("Order not found")
                        if not order.tickets:
                            for i, t in enumerate(tickets):
                                t.order_id = order_id
                                t.position = i
                                order.tickets.append(t)
        return order

    async def delete(self, order_id: str) -> Order:
        async with self.locks.hold(order_id):
            async with self.db.gated():
                async with self.db.sessions() as s:
                    async with s.begin():
                        order = await s.get(Order, order_id)
                        if order is None:
                            raise NotFound("Order not found")
                        await s.delete(order)
        logger.info("order %s deleted", order.order_number)
        return order

    async def delete_all(self) -> int:
        async with self.db.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    # line/ticket rows go with the FK cascade on postgres;
                    # delete them explicitly for sqlite setups without it
                    await s.execute(delete(IndividualTicket))
                    await s.execute(delete(OrderLine))
                    res = await s.execute(delete(Order))
        logger.warning("all orders deleted (%s)", res.rowcount)
        return int(res.rowcount or 0)

    # ----------------------------
    # Aggregates
    # ----------------------------
    async def stats(self) -> Dict[str, int]:
        orders = await self.get_all()
        out = {
            "total": len(orders),
            "pending": 0,
            "verified": 0,
            "rejected": 0,
            "total_revenue": 0,
            "pending_revenue": 0,
        }
        for o in orders:
            if o.status in (PENDING, VERIFIED, REJECTED):
                out[o.status] += 1
            if o.status == VERIFIED:
                out["total_revenue"] += effective_subtotal(o)
            elif o.status == PENDING:
                out["pending_revenue"] += effective_subtotal(o)
        return out

    async def financials(self) -> Dict[str, int]:
        """Money actually collected, over verified orders only."""
        out = {
            "orders": 0,
            "total_collected": 0,
            "paynow_collected": 0,
            "card_collected": 0,
            "event_revenue": 0,
            "platform_fees": 0,
            "processing_fees": 0,
        }
        for o in await self.get_all():
            if o.status != VERIFIED:
                continue
            paid = effective_customer_pays(o)
            out["orders"] += 1
            out["total_collected"] += paid
            if o.payment_method == "paynow":
                out["paynow_collected"] += paid
            else:
                out["card_collected"] += paid
            out["event_revenue"] += effective_subtotal(o)
            out["platform_fees"] += int(o.platform_fee or 0)
            out["processing_fees"] += int(o.stripe_fee or 0)
        return out

    async def export_csv(self) -> str:
        buf = io.StringIO()
        w = csv.writer(buf)
        w.writerow(CSV_HEADERS)
        for o in await self.get_all():
            w.writerow([
                o.order_number,
                to_iso(o.created_at),
                o.status,
                o.customer_name,
                o.customer_email,
                o.customer_phone,
                ticket_summary(o),
                format_cents(int(o.total_amount)),
                o.payment_method,
                o.admin_notes or "",
            ])
        return buf.getvalue()
