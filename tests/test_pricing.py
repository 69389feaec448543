from decimal import Decimal

import pytest

from hypehaus.model.pricing import quote, round_half_up


class TestQuote:
    def test_checkout_breakdown(self):
        q = quote(10000, 2, Decimal("0.02"), Decimal("0.18"), "INR")

        assert (q.subtotal, q.fee, q.tax, q.total) == (20000, 400, 72, 20472)
        assert q.currency == "INR"
        assert not q.is_free

    def test_rates_given_as_strings_or_floats(self):
        assert quote(10000, 2, "0.02", "0.18", "INR").total == 20472
        # 0.02 as a float must not pick up binary noise
        assert quote(10000, 2, 0.02, 0.18, "INR").total == 20472

    def test_each_step_rounds_half_up(self):
        # fee 25 * 0.02 = 0.5 -> 1, tax 1 * 0.18 = 0.18 -> 0
        q = quote(25, 1, "0.02", "0.18", "INR")
        assert (q.fee, q.tax, q.total) == (1, 0, 26)

        # fee 125 * 0.02 = 2.5 -> 3, tax 3 * 0.18 = 0.54 -> 1
        q = quote(125, 1, "0.02", "0.18", "INR")
        assert (q.fee, q.tax, q.total) == (3, 1, 129)

    def test_zero_price_is_free(self):
        q = quote(0, 3, "0.02", "0.18", "INR")
        assert q.total == 0
        assert q.is_free

    @pytest.mark.parametrize("price,qty", [(-1, 1), (100, 0)])
    def test_rejects_invalid_input(self, price, qty):
        with pytest.raises(ValueError):
            quote(price, qty, "0.02", "0.18", "INR")


def test_round_half_up():
    assert round_half_up(Decimal("2.5")) == 3
    assert round_half_up(Decimal("2.4999")) == 2
    assert round_half_up(Decimal("0.5")) == 1
    assert round_half_up(Decimal("3.0")) == 3
