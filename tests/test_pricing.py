"""Tests for checkout money arithmetic."""

from decimal import Decimal

from keyshop import pricing


class TestToMoney:
    def test_rounds_half_up(self):
        assert pricing.to_money("19.995") == Decimal("20.00")
        assert pricing.to_money("19.994") == Decimal("19.99")

    def test_accepts_ints(self):
        assert pricing.to_money(5) == Decimal("5.00")


class TestDiscountFor:
    def test_percentage_of_subtotal(self):
        assert pricing.discount_for(Decimal("100.00"), Decimal("10")) == Decimal("10.00")

    def test_rounds_to_cents(self):
        # 15% of 33.33 = 4.9995
        assert pricing.discount_for(Decimal("33.33"), Decimal("15")) == Decimal("5.00")

    def test_zero_percent(self):
        assert pricing.discount_for(Decimal("59.99"), 0) == Decimal("0.00")


class TestComputeTotals:
    def test_no_discount(self):
        totals = pricing.compute_totals(Decimal("99.98"), Decimal("0"), Decimal("0.08"))
        assert totals.subtotal == Decimal("99.98")
        assert totals.discount == Decimal("0.00")
        assert totals.tax == Decimal("8.00")
        assert totals.total == Decimal("107.98")

    def test_tax_is_computed_after_discount(self):
        totals = pricing.compute_totals(Decimal("100.00"), Decimal("10.00"), Decimal("0.08"))
        assert totals.tax == Decimal("7.20")
        assert totals.total == Decimal("97.20")

    def test_full_discount_is_free(self):
        totals = pricing.compute_totals(Decimal("25.00"), Decimal("25.00"), Decimal("0.0825"))
        assert totals.tax == Decimal("0.00")
        assert totals.total == Decimal("0.00")

    def test_total_identity_holds(self):
        totals = pricing.compute_totals(Decimal("123.45"), Decimal("12.35"), Decimal("0.0925"))
        assert totals.total == totals.subtotal - totals.discount + totals.tax

    def test_as_dict_excludes_rate(self):
        totals = pricing.compute_totals(Decimal("10.00"), Decimal("0"), Decimal("0.10"))
        assert totals.as_dict() == {
            "subtotal": Decimal("10.00"),
            "discount": Decimal("0.00"),
            "tax": Decimal("1.00"),
            "total": Decimal("11.00"),
        }
