from __future__ import annotations
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from ..helpers import normalize_code


Base = declarative_base()

# order status
PENDING = "pending"
VERIFIED = "verified"
REJECTED = "rejected"
ORDER_STATUSES = (PENDING, VERIFIED, REJECTED)

# ticket status
VALID = "valid"
USED = "used"
INVALID = "invalid"
TICKET_STATUSES = (VALID, USED, INVALID)

PAYMENT_METHODS = ("paynow", "card")


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False)
    # whitespace-stripped, uppercased order number
    order_number_key = Column(String, nullable=False, unique=True)
    created_at = Column(Float, nullable=False)

    # pending | verified | rejected
    status = Column(String, nullable=False, default=PENDING)
    # paynow | card
    payment_method = Column(String, nullable=False)
    # card | apple_pay | grabpay | ... ; None on legacy rows
    payment_rail = Column(String, nullable=True)
    payment_id = Column(String, nullable=True)
    simulated = Column(Boolean, nullable=False, default=False)

    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False, default="")

    currency = Column(String, nullable=False, default="sgd")
    total_amount = Column(Integer, nullable=False)  # cents
    # fee breakdown; NULL on orders created before fees were recorded
    ticket_subtotal = Column(Integer, nullable=True)
    platform_fee = Column(Integer, nullable=True)
    stripe_fee = Column(Integer, nullable=True)
    customer_pays = Column(Integer, nullable=True)

    proof_image = Column(LargeBinary, nullable=True)
    proof_content_type = Column(String, nullable=True)

    admin_notes = Column(Text, nullable=True)
    verified_at = Column(Float, nullable=True)

    lines = relationship(
        "OrderLine",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderLine.position",
    )
    tickets = relationship(
        "IndividualTicket",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="IndividualTicket.position",
    )

    @property
    def ticket_count(self) -> int:
        return sum(line.quantity for line in self.lines)


class OrderLine(Base):
    __tablename__ = "order_lines"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False, default=0)
    # NULL for lines recorded before ticket types were tracked by id
    ticket_type_id = Column(String, nullable=True)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)  # cents, at purchase

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class IndividualTicket(Base):
    __tablename__ = "individual_tickets"
    ticket_id = Column(String, primary_key=True)
    order_id = Column(
        String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False, default=0)
    ticket_type = Column(String, nullable=False)
    qr_payload = Column(String, nullable=False)

    # valid | used | invalid
    status = Column(String, nullable=False, default=VALID)
    scanned_at = Column(Float, nullable=True)
    scanned_by = Column(String, nullable=True)


# ----------------------------
# Derived values
# ----------------------------
def effective_subtotal(order: Order) -> int:
    """
    Ticket revenue of an order. Older rows carry no fee breakdown, so the
    subtotal is recomputed from the line items.
    """
    if order.ticket_subtotal is not None:
        return int(order.ticket_subtotal)
    return sum(line.unit_price * line.quantity for line in order.lines)


def effective_customer_pays(order: Order) -> int:
    if order.customer_pays is not None:
        return int(order.customer_pays)
    return int(order.total_amount)


def find_ticket(order: Order, key: str) -> Optional[IndividualTicket]:
    for t in order.tickets:
        if normalize_code(t.ticket_id) == normalize_code(key):
            return t
    return None
