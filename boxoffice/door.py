from __future__ import annotations
import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from .helpers import normalize_code, to_iso
from .model.orders import OrderStore
from .model.orm import INVALID, USED, VALID, VERIFIED, find_ticket
from .qr import parse_payload

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    ok: bool
    message: str
    order_number: Optional[str] = None
    ticket_id: Optional[str] = None
    ticket_type: Optional[str] = None
    scanned_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class DoorValidationService:
    """May this ticket come in right now? Business failures never raise."""

    def __init__(self, orders: OrderStore) -> None:
        self.orders = orders

    async def validate(self, order_number: str, ticket_id: str,
                       scanned_by: Optional[str] = None) -> ScanResult:
        order_number = normalize_code(order_number)
        ticket_id = normalize_code(ticket_id)

        order = await self.orders.get_by_order_number(order_number)
        if order is None:
            return ScanResult(False, f"Order {order_number} not found",
                              order_number=order_number)
        if order.status != VERIFIED:
            return ScanResult(
                False,
                f"Order is {order.status}, not verified. "
                f"Entry not allowed.",
                order_number=order.order_number,
            )
        if not order.tickets:
            return ScanResult(
                False,
                "This order has no individual tickets (legacy format). "
                "Check the order manually.",
                order_number=order.order_number,
            )

        ticket = find_ticket(order, ticket_id)
        if ticket is None:
            known = ", ".join(t.ticket_id for t in order.tickets)
            return ScanResult(
                False,
                f"Ticket {ticket_id} not found in order "
                f"{order.order_number}. Tickets: {known}",
                order_number=order.order_number,
            )
        if ticket.status == USED:
            return self._already_used(order.order_number, ticket)
        if ticket.status == INVALID:
            return ScanResult(
                False, "Ticket is invalid",
                order_number=order.order_number,
                ticket_id=ticket.ticket_id,
                ticket_type=ticket.ticket_type,
            )

        res = await self.orders.update_ticket_status(
            ticket.ticket_id, USED, scanned_by, expected=VALID
        )
        if not res.success:
            # lost a race with another scanner
            again = await self.orders.get_by_ticket_id(ticket.ticket_id)
            if again is not None and again[1].status == USED:
                return self._already_used(order.order_number, again[1])
            logger.warning("ticket %s update failed: %s",
                           ticket.ticket_id, res.error)
            return ScanResult(False, "Failed to update ticket status",
                              order_number=order.order_number,
                              ticket_id=ticket.ticket_id)
        return ScanResult(
            True,
            f"Ticket validated! Type: {res.ticket_type}",
            order_number=res.order_number,
            ticket_id=ticket.ticket_id,
            ticket_type=res.ticket_type,
        )

    async def validate_qr(self, raw: str,
                          scanned_by: Optional[str] = None) -> ScanResult:
        payload = parse_payload(raw)
        if payload is None:
            return ScanResult(False, "Invalid QR code format")
        return await self.validate(
            payload.order_number, payload.ticket_id, scanned_by
        )

    @staticmethod
    def _already_used(order_number: str, ticket) -> ScanResult:
        when = to_iso(ticket.scanned_at)
        msg = (f"Ticket already used on {when}" if when
               else "Ticket already used")
        return ScanResult(
            False, msg,
            order_number=order_number,
            ticket_id=ticket.ticket_id,
            ticket_type=ticket.ticket_type,
            scanned_at=when,
        )


# ----------------------------
# Continuous scanner loop
# ----------------------------
class ScanLoop:
    """
    Feeds raw QR strings from a source (camera reader, test stream) through
    the door service, one at a time, and hands each result to `on_result`.

    stop() may be called at any time, from inside `on_result` too; the
    source is always closed.
    """

    def __init__(
        self,
        door: DoorValidationService,
        source: AsyncIterator[str],
        on_result: Callable[[ScanResult], Awaitable[None] | None],
        scanned_by: str = "scanner",
    ) -> None:
        self.door = door
        self.source = source
        self.on_result = on_result
        self.scanned_by = scanned_by
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stopping = False
        self._task = asyncio.create_task(self._run())
        return self._task

    async def _run(self) -> None:
        try:
            async for raw in self.source:
                if self._stopping:
                    break
                try:
                    result = await self.door.validate_qr(raw, self.scanned_by)
                    out = self.on_result(result)
                    if asyncio.iscoroutine(out):
                        await out
                except Exception:
                    # one bad scan must not take the door down
                    logger.exception("scan of %r failed", raw)
                if self._stopping:
                    break
        finally:
            await self._close_source()

    async def _close_source(self) -> None:
        aclose = getattr(self.source, "aclose", None)
        if aclose is not None:
            await aclose()

    async def stop(self) -> None:
        self._stopping = True
        task = self._task
        if task is None:
            await self._close_source()
            return
        if task is asyncio.current_task():
            # called from on_result; the loop exits after this item
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("scan loop ended with an error")
