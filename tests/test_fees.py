import pytest

from boxoffice.fees import (
    PROCESSING_FEES,
    calculate_platform_fee,
    fee_breakdown,
    order_payment_method,
)


class TestPlatformFee:
    def test_two_percent_of_subtotal(self):
        assert calculate_platform_fee(10000) == 200

    def test_rounds_half_up(self):
        assert calculate_platform_fee(25) == 1
        assert calculate_platform_fee(75) == 2
        assert calculate_platform_fee(24) == 0

    def test_custom_percent(self):
        assert calculate_platform_fee(10000, 3.5) == 350

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            calculate_platform_fee(-1)


class TestFeeBreakdown:
    def test_paynow_has_no_processing_fee(self):
        fb = fee_breakdown(10000, "paynow")
        assert fb.ticket_price == 10000
        assert fb.platform_fee == 200
        assert fb.subtotal == 10200
        assert fb.stripe_fee == 0
        assert fb.total == 10200

    def test_card_passes_fee_through(self):
        fb = fee_breakdown(10000, "card")
        # (10200 + 50) / (1 - 0.034) = 10610.77
        assert fb.total == 10611
        assert fb.stripe_fee == 411
        assert fb.subtotal + fb.stripe_fee == fb.total
        assert fb.stripe_fee_label == "3.4% + $0.50"

    def test_wallets_price_like_card(self):
        card = fee_breakdown(5000, "card")
        assert fee_breakdown(5000, "apple_pay").total == card.total
        assert fee_breakdown(5000, "google_pay").total == card.total

    def test_grabpay_percentage_only(self):
        fb = fee_breakdown(10000, "grabpay")
        # 10200 / 0.967 = 10548.09
        assert fb.total == 10548
        assert fb.stripe_fee == 348

    def test_paynow_via_stripe(self):
        fb = fee_breakdown(10000, "paynow_stripe")
        # 10200 / 0.987 = 10334.35
        assert fb.total == 10334

    def test_labels(self):
        fb = fee_breakdown(2500, "card")
        assert fb.platform_fee_label == "2%"
        assert fb.to_dict()["method"] == "card"

    def test_zero_subtotal_card_still_charges_fixed_fee(self):
        fb = fee_breakdown(0, "card")
        assert fb.platform_fee == 0
        assert fb.total == 52  # 50 / 0.966

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            fee_breakdown(1000, "bitcoin")

    @pytest.mark.parametrize("method", sorted(PROCESSING_FEES))
    def test_organiser_nets_ticket_price_plus_platform_fee(self, method):
        fb = fee_breakdown(12345, method)
        fee = PROCESSING_FEES[method]
        pct = float(fee["percentage"]) / 100
        kept = fb.total - fb.total * pct - fee["fixed"]
        assert abs(kept - fb.subtotal) < 1


def test_order_payment_method():
    assert order_payment_method("paynow") == "paynow"
    assert order_payment_method("grabpay") == "card"
    assert order_payment_method("apple_pay") == "card"
