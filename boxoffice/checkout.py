"""
Checkout orchestration.

PayNow (manual bank transfer): direct_sell at submission, order stays
`pending` until an admin has looked at the uploaded proof.

Provider rails (card, Apple Pay, GrabPay, ...): reserve at intent creation,
then exactly one outcome per payment session:

    pending  --success-->       confirmed   (confirm hold, verified order)
    pending  --fail/cancel-->   released    (release hold)
    pending  --reaper-->        released    (release hold)
    released --late success-->  confirmed   (direct_sell, or refund if gone)

Ledger and order rows are committed before any notification is dispatched.
"""
from __future__ import annotations
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import (
    BoxOfficeError,
    Conflict,
    DuplicateOrder,
    IllegalTransition,
    InvalidInput,
    NotFound,
    PaymentFailed,
    ProviderUnavailable,
    SoldOut,
)
from .fees import (
    MANUAL_RAILS,
    FeeBreakdown,
    fee_breakdown,
    is_known_method,
    order_payment_method,
)
from .helpers import is_valid_email, now_ts
from .infra.timings import timeit
from .model.inventory import CartItem, InventoryLedger, merge_items
from .model.orders import OrderStore
from .model.orm import (
    PENDING,
    VALID,
    VERIFIED,
    IndividualTicket,
    Order,
    OrderLine,
)
from .model.paymentsession import CONFIRMED, RELEASED, PaymentSession
from .notify import NotificationDispatcher, build_notification
from .payments import MockPay, PaymentAdapter, PaymentEvent, new_psid
from .qr import build_payload, new_ticket_id
from .settings import Settings

logger = logging.getLogger(__name__)

_ORDER_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_ORDER_CODE_LEN = 9
_CREATE_ATTEMPTS = 3


@dataclass
class CustomerDetails:
    name: str
    email: str
    phone: str

    def payer(self) -> Dict[str, str]:
        return {"name": self.name, "email": self.email, "phone": self.phone}


@dataclass
class StartedPayment:
    order_number: str
    payment_session_id: str
    amount: int
    currency: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    simulated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_number": self.order_number,
            "payment_session_id": self.payment_session_id,
            "redirect_url": self.redirect_url,
            "client_secret": self.client_secret,
            "amount": self.amount,
            "currency": self.currency,
            "simulated": self.simulated,
        }


# ----------------------------
# Pure helpers
# ----------------------------
def validate_details(name: Optional[str], email: Optional[str],
                     phone: Optional[str]) -> CustomerDetails:
    errors: Dict[str, str] = {}
    name = (name or "").strip()
    email = (email or "").strip()
    phone = (phone or "").strip()
    if not name:
        errors["name"] = "Name is required"
    if not is_valid_email(email):
        errors["email"] = "A valid email address is required"
    if not phone:
        errors["phone"] = "Phone number is required"
    if errors:
        raise InvalidInput("Please check your details", errors)
    return CustomerDetails(name=name, email=email, phone=phone)


def validate_proof(proof: Optional[bytes], content_type: Optional[str],
                   max_bytes: int) -> None:
    if not proof:
        raise InvalidInput(
            "Please upload your proof of payment",
            {"proof": "required"},
        )
    if len(proof) > max_bytes:
        raise InvalidInput(
            f"Proof of payment must be {max_bytes // (1024 * 1024)}MB "
            f"or smaller",
            {"proof": "too large"},
        )
    if not (content_type or "").startswith("image/"):
        raise InvalidInput(
            "Proof of payment must be an image",
            {"proof": "not an image"},
        )


def issue_tickets(order_number: str,
                  lines: Sequence[OrderLine]) -> List[IndividualTicket]:
    """One ticket per unit across all line items."""
    tickets: List[IndividualTicket] = []
    seen = set()
    for line in lines:
        for _ in range(int(line.quantity)):
            tid = new_ticket_id()
            while tid in seen:
                tid = new_ticket_id()
            seen.add(tid)
            tickets.append(IndividualTicket(
                ticket_id=tid,
                position=len(tickets),
                ticket_type=line.name,
                qr_payload=build_payload(order_number, tid),
                status=VALID,
            ))
    return tickets


# ----------------------------
# Orchestrator
# ----------------------------
class CheckoutService:
    def __init__(
        self,
        settings: Settings,
        ledger: InventoryLedger,
        orders: OrderStore,
        sessions,
        provider: PaymentAdapter,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.orders = orders
        self.sessions = sessions
        self.provider = provider
        # used when the real provider is unreachable
        self.fallback = MockPay(settings.mock_secret)
        self.dispatcher = dispatcher

    def new_order_number(self) -> str:
        code = "".join(
            secrets.choice(_ORDER_ALPHABET) for _ in range(_ORDER_CODE_LEN)
        )
        return f"{self.settings.order_prefix}-{code}"

    async def price_cart(
        self, items: Sequence[CartItem]
    ) -> Tuple[List[CartItem], List[OrderLine], int]:
        """Merge the cart and price it from the ledger's ticket types."""
        try:
            merged = merge_items(items)
        except ValueError as e:
            raise InvalidInput(str(e)) from e
        if not merged:
            raise InvalidInput("Your cart is empty")
        by_id = {t["id"]: t for t in await self.ledger.list_types()}
        lines: List[OrderLine] = []
        subtotal = 0
        for pos, (tid, qty) in enumerate(merged.items()):
            tt = by_id.get(tid)
            if tt is None:
                raise NotFound(f"Unknown ticket type: {tid}")
            lines.append(OrderLine(
                position=pos,
                ticket_type_id=tid,
                name=tt["name"],
                quantity=qty,
                unit_price=tt["price"],
            ))
            subtotal += tt["price"] * qty
        cart = [CartItem(tid, qty) for tid, qty in merged.items()]
        return cart, lines, subtotal

    def quote(self, subtotal: int, method: str) -> FeeBreakdown:
        if not is_known_method(method):
            raise InvalidInput(f"Unknown payment method: {method}")
        return fee_breakdown(
            subtotal, method, self.settings.platform_fee_percent
        )

    async def check_cart(self, items: Sequence[CartItem]) -> None:
        avail = await self.ledger.check_cart_availability(items)
        if not avail.valid:
            raise SoldOut(errors=avail.errors)

    async def _sold_out(self, items: Sequence[CartItem]) -> SoldOut:
        avail = await self.ledger.check_cart_availability(items)
        return SoldOut(errors=avail.errors)

    def _new_order(self, order_number: str, details: CustomerDetails,
                   lines: List[OrderLine], fees: FeeBreakdown,
                   status: str) -> Order:
        now = now_ts()
        return Order(
            id=uuid.uuid4().hex,
            order_number=order_number,
            created_at=now,
            status=status,
            payment_method=order_payment_method(fees.method),
            payment_rail=fees.method,
            simulated=False,
            customer_name=details.name,
            customer_email=details.email,
            customer_phone=details.phone,
            currency=self.settings.currency,
            total_amount=fees.total,
            ticket_subtotal=fees.ticket_price,
            platform_fee=fees.platform_fee,
            stripe_fee=fees.stripe_fee,
            customer_pays=fees.total,
            verified_at=now if status == VERIFIED else None,
            lines=lines,
            tickets=[],
        )

    async def _create_order(self, order: Order) -> Order:
        # the unique index is the real guarantee; a fresh number on collision
        for attempt in range(_CREATE_ATTEMPTS):
            try:
                return await self.orders.create(order)
            except DuplicateOrder:
                if attempt == _CREATE_ATTEMPTS - 1:
                    raise
                old = order.order_number
                order.order_number = self.new_order_number()
                for t in order.tickets:
                    t.qr_payload = build_payload(
                        order.order_number, t.ticket_id
                    )
                logger.warning(
                    "order number %s taken, retrying as %s",
                    old, order.order_number,
                )
        raise DuplicateOrder("Could not allocate an order number")

    # ----------------------------
    # PayNow
    # ----------------------------
    async def submit_paynow(
        self,
        items: Sequence[CartItem],
        details: CustomerDetails,
        proof: Optional[bytes],
        proof_content_type: Optional[str],
    ) -> Order:
        validate_proof(proof, proof_content_type,
                       self.settings.max_proof_bytes)
        cart, lines, subtotal = await self.price_cart(items)
        fees = self.quote(subtotal, "paynow")

        async with timeit("checkout.paynow"):
            if not await self.ledger.direct_sell(cart):
                raise await self._sold_out(cart)

            order = self._new_order(
                self.new_order_number(), details, lines, fees, PENDING
            )
            order.proof_image = proof
            order.proof_content_type = proof_content_type
            try:
                order = await self._create_order(order)
            except Exception:
                await self.ledger.restock(cart)
                raise
        logger.info("paynow order %s submitted (%s)",
                    order.order_number, subtotal)
        # no notification until an admin verifies the transfer
        return order

    # ----------------------------
    # Provider rails
    # ----------------------------
    async def start_card_payment(
        self,
        items: Sequence[CartItem],
        details: CustomerDetails,
        rail: str,
    ) -> StartedPayment:
        if rail in MANUAL_RAILS or not is_known_method(rail):
            raise InvalidInput(f"Unsupported payment method: {rail}")
        cart, lines, subtotal = await self.price_cart(items)
        fees = self.quote(subtotal, rail)

        async with timeit("checkout.reserve"):
            if not await self.ledger.reserve(cart):
                raise await self._sold_out(cart)

        psid = new_psid()
        order_number = self.new_order_number()
        payer = dict(details.payer(), order_number=order_number)
        provider = self.provider
        simulated = False
        try:
            try:
                intent = await provider.create_intent(
                    psid, fees.total, self.settings.currency, rail, payer
                )
            except ProviderUnavailable:
                logger.warning(
                    "provider %s unavailable; simulated payment for %s",
                    provider.name, order_number,
                )
                provider = self.fallback
                simulated = True
                intent = await provider.create_intent(
                    psid, fees.total, self.settings.currency, rail, payer
                )

            await self.sessions.save(PaymentSession(
                psid=psid,
                order_number=order_number,
                items=cart,
                amount=fees.total,
                currency=self.settings.currency,
                rail=rail,
                customer_name=details.name,
                customer_email=details.email,
                customer_phone=details.phone,
                ticket_subtotal=fees.ticket_price,
                platform_fee=fees.platform_fee,
                stripe_fee=fees.stripe_fee,
                provider=provider.name,
                provider_payment_id=intent.provider_payment_id,
                simulated=simulated,
                created_at=now_ts(),
                extra={"lines": [
                    [line.ticket_type_id, line.name, line.quantity,
                     line.unit_price]
                    for line in lines
                ]},
            ))
        except Exception:
            await self.ledger.release(cart)
            raise

        return StartedPayment(
            order_number=order_number,
            payment_session_id=psid,
            amount=fees.total,
            currency=self.settings.currency,
            redirect_url=intent.redirect_url,
            client_secret=intent.client_secret,
            simulated=simulated,
        )

    async def handle_webhook(self, adapter: PaymentAdapter, payload: bytes,
                             headers: Mapping) -> Dict[str, Any]:
        event = adapter.verify_webhook(payload, headers)
        evt = adapter.parse_event(event)
        if evt is None:
            return {"ok": True, "ignored": True}
        return await self.handle_payment_event(evt, provider=adapter.name)

    async def handle_payment_event(
        self, evt: PaymentEvent, provider: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Apply a verified provider event. With `provider` given, only
        sessions opened through that provider can be settled by it.
        """
        psid = evt.payment_session_id
        if not psid:
            raise InvalidInput("missing payment_session_id")
        ps = await self.sessions.get(psid)
        if ps is None:
            raise NotFound("payment session not found")
        if provider is not None and ps.provider != provider:
            logger.warning("payment %s: %s event for a %s session refused",
                           psid, provider, ps.provider)
            raise Conflict("Payment session belongs to another provider")
        if not await self.sessions.mark_event_seen(evt.event_id):
            return {"ok": True, "idempotent": True}

        if evt.kind == "succeeded":
            return await self._on_success(ps, evt)

        if await self.sessions.claim(psid, RELEASED):
            await self.ledger.release(ps.items)
            logger.info("payment %s %s; hold released", psid, evt.kind)
            return {"ok": True, "order_status": evt.kind}
        return {"ok": True, "idempotent": True}

    async def _on_success(self, ps: PaymentSession,
                          evt: PaymentEvent) -> Dict[str, Any]:
        if await self.sessions.claim(ps.psid, CONFIRMED):
            async with timeit("ledger.commit_order"):
                ok = await self.ledger.confirm(ps.items)
                if not ok:
                    # hold vanished (e.g. inventory reset); sell outright
                    ok = await self.ledger.direct_sell(ps.items)
        elif await self.sessions.claim(ps.psid, CONFIRMED, expect=RELEASED):
            # late success after the reaper gave the stock back
            async with timeit("ledger.book_immediately"):
                ok = await self.ledger.direct_sell(ps.items)
        else:
            return {"ok": True, "idempotent": True}

        if not ok:
            logger.error(
                "payment %s for %s succeeded but stock is gone; "
                "refund %s %s to %s",
                ps.psid, ps.order_number, ps.amount, ps.currency,
                ps.customer_email,
            )
            return {"ok": True, "order_status": "unfulfilled"}

        order = self._order_from_session(ps, evt)
        try:
            order = await self._create_order(order)
        except Exception:
            await self.ledger.restock(ps.items)
            logger.error(
                "could not record paid order %s (payment %s); "
                "refund needed", ps.order_number, ps.psid,
            )
            raise

        self.dispatcher.dispatch(
            build_notification(order, self.settings.event_name)
        )
        return {
            "ok": True,
            "order_status": order.status,
            "order_number": order.order_number,
        }

    def _order_from_session(self, ps: PaymentSession,
                            evt: PaymentEvent) -> Order:
        lines = [
            OrderLine(position=i, ticket_type_id=tid, name=name,
                      quantity=int(qty), unit_price=int(price))
            for i, (tid, name, qty, price) in enumerate(
                ps.extra.get("lines") or []
            )
        ]
        fees = FeeBreakdown(
            method=ps.rail,
            ticket_price=ps.ticket_subtotal,
            platform_fee=ps.platform_fee,
            platform_fee_label="",
            subtotal=ps.ticket_subtotal + ps.platform_fee,
            stripe_fee=ps.stripe_fee,
            stripe_fee_label="",
            total=ps.amount,
        )
        details = CustomerDetails(
            ps.customer_name, ps.customer_email, ps.customer_phone
        )
        order = self._new_order(ps.order_number, details, lines, fees,
                                VERIFIED)
        payment_id = evt.provider_payment_id or ps.provider_payment_id
        order.payment_id = payment_id
        order.simulated = ps.simulated
        order.admin_notes = f"{ps.provider} payment {payment_id}" + (
            " (simulated)" if ps.simulated else ""
        )
        order.tickets = issue_tickets(order.order_number, lines)
        return order

    async def cancel_payment(self, psid: str) -> bool:
        ps = await self.sessions.get(psid)
        if ps is None:
            raise NotFound("payment session not found")
        if not await self.sessions.claim(psid, RELEASED):
            return False
        await self.ledger.release(ps.items)
        return True

    async def reap_expired(self, now: Optional[float] = None) -> int:
        """Release every payment session older than the reservation TTL."""
        now = now_ts() if now is None else now
        reaped = 0
        for psid in await self.sessions.list_expired(now):
            if not await self.sessions.claim(psid, RELEASED):
                continue
            ps = await self.sessions.get(psid)
            if ps is not None:
                await self.ledger.release(ps.items)
            reaped += 1
        if reaped:
            logger.info("reaper released %s expired payment sessions",
                        reaped)
        return reaped

    async def lookup(self, order_number: str) -> Order:
        order = await self.orders.get_by_order_number(order_number)
        if order is None:
            raise NotFound("Order not found")
        return order


# ----------------------------
# Per-buyer flow
# ----------------------------
class Step(str, Enum):
    CART = "cart"
    DETAILS = "details"
    PAYMENT_SELECT = "payment-select"
    PAYNOW_PROOF = "paynow-proof"
    EXTERNAL_PAYMENT = "external-payment"
    PENDING = "pending"
    VERIFIED = "verified"
    CANCELLED = "cancelled"


TERMINAL_STEPS = (Step.PENDING, Step.VERIFIED, Step.CANCELLED)


@dataclass
class CheckoutFlow:
    """
    cart -> details -> payment-select -> paynow-proof    -> pending
                                      -> external-payment -> verified
    A failed submission or payment returns to payment-select with `error`.
    """
    service: CheckoutService
    step: Step = Step.CART
    items: List[CartItem] = field(default_factory=list)
    subtotal: int = 0
    details: Optional[CustomerDetails] = None
    method: Optional[str] = None
    fees: Optional[FeeBreakdown] = None
    proof: Optional[bytes] = None
    proof_content_type: Optional[str] = None
    payment: Optional[StartedPayment] = None
    order_number: Optional[str] = None
    error: Optional[str] = None

    def _require(self, *steps: Step) -> None:
        if self.step not in steps:
            raise IllegalTransition(
                f"cannot do that during {self.step.value}"
            )

    def _fail(self, e: BoxOfficeError) -> Step:
        self.error = e.message
        self.step = Step.PAYMENT_SELECT
        return self.step

    async def set_cart(self, items: Sequence[CartItem]) -> Step:
        self._require(Step.CART, Step.DETAILS)
        cart, _, subtotal = await self.service.price_cart(items)
        await self.service.check_cart(cart)
        self.items = cart
        self.subtotal = subtotal
        self.error = None
        self.step = Step.DETAILS
        return self.step

    def submit_details(self, name: str, email: str, phone: str) -> Step:
        self._require(Step.DETAILS, Step.PAYMENT_SELECT)
        self.details = validate_details(name, email, phone)
        self.step = Step.PAYMENT_SELECT
        return self.step

    def select_method(self, method: str) -> FeeBreakdown:
        self._require(Step.PAYMENT_SELECT, Step.PAYNOW_PROOF,
                      Step.EXTERNAL_PAYMENT)
        if self.payment is not None:
            raise IllegalTransition("a payment is already in progress")
        self.fees = self.service.quote(self.subtotal, method)
        self.method = method
        self.error = None
        self.step = (Step.PAYNOW_PROOF if method in MANUAL_RAILS
                     else Step.EXTERNAL_PAYMENT)
        return self.fees

    def attach_proof(self, data: bytes, content_type: str) -> None:
        self._require(Step.PAYNOW_PROOF)
        validate_proof(data, content_type,
                       self.service.settings.max_proof_bytes)
        self.proof = data
        self.proof_content_type = content_type

    async def submit(self) -> Step:
        self._require(Step.PAYNOW_PROOF, Step.EXTERNAL_PAYMENT)
        if self.step == Step.PAYNOW_PROOF:
            if self.proof is None:
                raise InvalidInput(
                    "Please upload your proof of payment",
                    {"proof": "required"},
                )
            try:
                order = await self.service.submit_paynow(
                    self.items, self.details, self.proof,
                    self.proof_content_type,
                )
            except (SoldOut, NotFound) as e:
                return self._fail(e)
            self.order_number = order.order_number
            self.step = Step.PENDING
            return self.step

        if self.payment is not None:
            raise IllegalTransition("a payment is already in progress")
        try:
            self.payment = await self.service.start_card_payment(
                self.items, self.details, self.method
            )
        except (SoldOut, PaymentFailed, NotFound) as e:
            return self._fail(e)
        self.order_number = self.payment.order_number
        return self.step

    async def refresh(self) -> Step:
        """Poll the order once the buyer is back from the provider."""
        self._require(Step.EXTERNAL_PAYMENT)
        if self.payment is None:
            return self.step
        order = await self.service.orders.get_by_order_number(
            self.payment.order_number
        )
        if order is not None and order.status == VERIFIED:
            self.step = Step.VERIFIED
            return self.step
        ps = await self.service.sessions.get(
            self.payment.payment_session_id
        )
        if ps is not None and ps.state == RELEASED:
            self.payment = None
            return self._fail(PaymentFailed("Payment did not go through"))
        return self.step

    async def cancel(self) -> Step:
        if self.step in TERMINAL_STEPS:
            raise IllegalTransition(
                f"cannot cancel a {self.step.value} checkout"
            )
        if self.payment is not None:
            await self.service.cancel_payment(
                self.payment.payment_session_id
            )
            self.payment = None
        self.step = Step.CANCELLED
        return self.step
