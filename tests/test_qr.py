import base64

from boxoffice.qr import (
    build_payload,
    new_ticket_id,
    parse_payload,
    render_ticket_qr,
)


class TestPayload:
    def test_build(self):
        assert build_payload("MASK-ABC123", "TKT-0000000A") == \
            "MASK-ABC123|TKT-0000000A"

    def test_parse_normalizes(self):
        p = parse_payload("  mask-abc123 | tkt-0000000a ")
        assert p.order_number == "MASK-ABC123"
        assert p.ticket_id == "TKT-0000000A"

    def test_parse_rejects_other_shapes(self):
        assert parse_payload("") is None
        assert parse_payload(None) is None
        assert parse_payload("MASK-ABC123") is None
        assert parse_payload("A|B|C") is None
        assert parse_payload("|TKT-1") is None
        assert parse_payload("MASK-1|") is None
        assert parse_payload("https://example.com/ticket") is None


def test_ticket_ids_look_right():
    ids = {new_ticket_id() for _ in range(200)}
    assert len(ids) == 200
    for tid in ids:
        assert tid.startswith("TKT-")
        assert len(tid) == 12
        assert tid == tid.upper()


def test_render_is_a_png_data_url():
    url = render_ticket_qr("MASK-ABC123", "TKT-0000000A", "Early Bird",
                           "Ada")
    prefix = "data:image/png;base64,"
    assert url.startswith(prefix)
    raw = base64.b64decode(url[len(prefix):])
    assert raw[:8] == b"\x89PNG\r\n\x1a\n"
