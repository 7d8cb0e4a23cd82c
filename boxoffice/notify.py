"""
Customer notifications (order confirmations with QR tickets).

Sending is best-effort: the order row is already committed when a
notification is dispatched, and a failed send is logged, never raised.
"""
from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Set

import httpx

from .model.orm import VERIFIED, Order, effective_customer_pays
from .qr import render_ticket_qr

logger = logging.getLogger(__name__)


@dataclass
class TicketQR:
    ticket_id: str
    ticket_type: str
    qr_payload: str
    image: str = ""  # data URL, filled in by the dispatcher


@dataclass
class Notification:
    order_number: str
    customer_name: str
    customer_email: str
    line_items: List[Dict[str, Any]]
    total_paid: int
    payment_method: str
    is_verified: bool
    tickets: List[TicketQR] = field(default_factory=list)
    event_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_notification(order: Order, event_name: str = "") -> Notification:
    # QR images are rendered later, inside the dispatched task
    tickets = [
        TicketQR(
            ticket_id=t.ticket_id,
            ticket_type=t.ticket_type,
            qr_payload=t.qr_payload,
        )
        for t in order.tickets
    ]
    return Notification(
        order_number=order.order_number,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        line_items=[
            {"name": line.name, "quantity": line.quantity,
             "unit_price": line.unit_price}
            for line in order.lines
        ],
        total_paid=effective_customer_pays(order),
        payment_method=order.payment_method,
        is_verified=order.status == VERIFIED,
        tickets=tickets,
        event_name=event_name,
    )


def render_images(n: Notification) -> Notification:
    for t in n.tickets:
        if not t.image:
            t.image = render_ticket_qr(
                n.order_number, t.ticket_id, t.ticket_type, n.customer_name
            )
    return n


# ----------------------------
# Sinks
# ----------------------------
class NotificationSink(ABC):
    @abstractmethod
    async def send(self, n: Notification) -> None: ...


class LogSink(NotificationSink):
    """Default when no relay is configured."""

    async def send(self, n: Notification) -> None:
        logger.info(
            "notify %s <%s>: %s tickets, paid %s (%s, verified=%s)",
            n.order_number, n.customer_email, len(n.tickets),
            n.total_paid, n.payment_method, n.is_verified,
        )


class HttpSink(NotificationSink):
    """POSTs the notification as JSON to a mail relay."""

    def __init__(self, http: httpx.AsyncClient, url: str) -> None:
        self.http = http
        self.url = url

    async def send(self, n: Notification) -> None:
        resp = await self.http.post(self.url, json=n.to_dict())
        resp.raise_for_status()


# ----------------------------
# Fire-and-forget dispatch
# ----------------------------
class NotificationDispatcher:
    def __init__(self, sink: NotificationSink) -> None:
        self.sink = sink
        # keep references; the loop only holds weak refs to tasks
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, n: Notification) -> asyncio.Task:
        task = asyncio.create_task(self._run(n))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, n: Notification) -> None:
        try:
            # PNG encoding is CPU work; keep it off the event loop
            await asyncio.to_thread(render_images, n)
            await self.sink.send(n)
        except Exception:
            logger.exception(
                "notification for %s to %s failed",
                n.order_number, n.customer_email,
            )

    async def drain(self) -> None:
        """Wait for in-flight sends (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
