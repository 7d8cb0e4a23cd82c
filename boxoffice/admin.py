"""
Admin workflow around the Order Store.

The store applies status changes blindly; this layer adds the rules:
leaving `verified` needs the override token, and status changes keep the
ledger in step (rejecting returns stock, un-rejecting sells it again).
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from .checkout import issue_tickets
from .errors import NotFound, OverrideRequired, SoldOut
from .helpers import KeyedLocks, ct_equal
from .model.inventory import CartItem, InventoryLedger
from .model.orders import OrderStore
from .model.orm import (
    ORDER_STATUSES,
    PENDING,
    REJECTED,
    VERIFIED,
    Order,
)
from .notify import NotificationDispatcher, build_notification
from .settings import Settings

logger = logging.getLogger(__name__)


def order_items(order: Order, catalog: Dict[str, Dict[str, Any]]
                ) -> List[CartItem]:
    """
    Ledger items for an order. Lines recorded without a ticket type id are
    matched to the catalog by display name; unmatched lines are skipped.
    """
    by_name = {spec["name"]: tid for tid, spec in catalog.items()}
    items: List[CartItem] = []
    for line in order.lines:
        tid = line.ticket_type_id or by_name.get(line.name)
        if tid is None:
            logger.warning("order %s: no ticket type for line %r",
                           order.order_number, line.name)
            continue
        items.append(CartItem(tid, int(line.quantity)))
    return items


class AdminService:
    def __init__(
        self,
        settings: Settings,
        ledger: InventoryLedger,
        orders: OrderStore,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.orders = orders
        self.dispatcher = dispatcher
        # per order id; OrderStore's own locks only cover single writes
        self.locks = KeyedLocks()

    def _items(self, order: Order) -> List[CartItem]:
        return order_items(order, self.settings.ticket_types)

    def check_override(self, token: Optional[str]) -> None:
        if not token or not ct_equal(token, self.settings.override_token):
            raise OverrideRequired(
                "Override password required to change a verified order"
            )

    async def change_status(
        self,
        order_id: str,
        status: str,
        *,
        admin_notes: Optional[str] = None,
        override_token: Optional[str] = None,
    ) -> Order:
        # the status read, ledger move and status write form one step
        async with self.locks.hold(order_id):
            return await self._change_status(
                order_id, status, admin_notes, override_token
            )

    async def _change_status(
        self,
        order_id: str,
        status: str,
        admin_notes: Optional[str],
        override_token: Optional[str],
    ) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        old = order.status
        if status not in ORDER_STATUSES:
            # let the store produce the validation error
            return await self.orders.update_status(order_id, status)
        if old == status:
            return await self.orders.update_status(
                order_id, status, admin_notes
            )
        if old == VERIFIED:
            self.check_override(override_token)

        items = self._items(order)
        # keep the ledger in step before the status flips
        if status == REJECTED:
            await self.ledger.restock(items)
        elif old == REJECTED:
            if not await self.ledger.direct_sell(items):
                avail = await self.ledger.check_cart_availability(items)
                raise SoldOut(
                    "Not enough stock left to restore this order",
                    avail.errors,
                )

        try:
            order = await self.orders.update_status(
                order_id, status, admin_notes
            )
        except Exception:
            # undo the ledger move
            if status == REJECTED:
                await self.ledger.direct_sell(items)
            elif old == REJECTED:
                await self.ledger.restock(items)
            raise
        logger.info("order %s: %s -> %s", order.order_number, old, status)

        if status == VERIFIED:
            order = await self._on_verified(order)
        return order

    async def _on_verified(self, order: Order) -> Order:
        if not order.tickets:
            order = await self.orders.add_tickets(
                order.id, issue_tickets(order.order_number, order.lines)
            )
        self.dispatcher.dispatch(
            build_notification(order, self.settings.event_name)
        )
        return order

    async def delete(self, order_id: str) -> Order:
        async with self.locks.hold(order_id):
            order = await self.orders.delete(order_id)
            if order.status != REJECTED:
                await self.ledger.restock(self._items(order))
        return order

    async def delete_all(self) -> int:
        return await self.orders.delete_all()

    async def reset_inventory(self) -> None:
        await self.ledger.reset_all()

    async def set_total(self, ticket_type_id: str, total: int) -> bool:
        if await self.ledger.get(ticket_type_id) is None:
            raise NotFound(f"Unknown ticket type: {ticket_type_id}")
        return await self.ledger.set_total(ticket_type_id, total)

    async def reconcile(self) -> List[Dict[str, Any]]:
        """
        Ledger `sold` next to what the non-rejected orders add up to.
        Audit only; the ledger stays authoritative.
        """
        counted: Dict[str, int] = {}
        for order in await self.orders.get_all():
            if order.status not in (PENDING, VERIFIED):
                continue
            for tid, qty in self._items(order):
                counted[tid] = counted.get(tid, 0) + qty

        report = []
        for t in await self.ledger.list_types():
            from_orders = counted.get(t["id"], 0)
            report.append({
                "id": t["id"],
                "name": t["name"],
                "ledger_sold": t["sold"],
                "ledger_reserved": t["reserved"],
                "orders_sold": from_orders,
                "difference": t["sold"] - from_orders,
                "consistent": t["sold"] == from_orders,
            })
        return report
