from __future__ import annotations
import base64
import io
import uuid
from typing import NamedTuple, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from .helpers import normalize_code

SEPARATOR = "|"


class QRPayload(NamedTuple):
    order_number: str
    ticket_id: str


def new_ticket_id() -> str:
    return f"TKT-{uuid.uuid4().hex[:8].upper()}"


def build_payload(order_number: str, ticket_id: str) -> str:
    return f"{order_number}{SEPARATOR}{ticket_id}"


def parse_payload(raw: Optional[str]) -> Optional[QRPayload]:
    """
    Parse "ORDER|TICKET". Anything that is not exactly two non-empty
    pipe-delimited fields is rejected with None.
    """
    if not raw:
        return None
    parts = raw.strip().split(SEPARATOR)
    if len(parts) != 2:
        return None
    order_number = normalize_code(parts[0])
    ticket_id = normalize_code(parts[1])
    if not order_number or not ticket_id:
        return None
    return QRPayload(order_number, ticket_id)


def render_ticket_qr(
    order_number: str,
    ticket_id: str,
    ticket_type: str = "",
    customer_name: str = "",
) -> str:
    """
    PNG data URL for one ticket. The image only encodes the payload;
    type and holder name are for the caller's caption.
    """
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_M,
        box_size=10,
        border=1,
    )
    qr.add_data(build_payload(order_number, ticket_id))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
