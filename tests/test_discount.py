from decimal import Decimal

import pytest

from cart_pricing import config
from cart_pricing.logic import calculate_discount, compute_subtotal, format_money, round_half_up
from cart_pricing.models import CartLine


class TestCalculateDiscount:
    def test_percentage_capped_by_max_discount(self):
        assert calculate_discount(10000, "percentage", 50, 2000) == 2000

    def test_percentage_below_cap_is_untouched(self):
        assert calculate_discount(10000, "percentage", 10, 2000) == 1000

    def test_fixed_never_exceeds_base(self):
        assert calculate_discount(500, "fixed", 1000) == 500

    def test_fixed_ignores_max_discount(self):
        assert calculate_discount(10000, "fixed", 3000, 1000) == 3000

    def test_twenty_percent_of_twenty_thousand(self):
        assert calculate_discount(20000, "percentage", 20) == 4000

    def test_full_percentage_equals_base(self):
        assert calculate_discount(999, "percentage", 100) == 999

    def test_fractional_percentage(self):
        assert calculate_discount(1000, "percentage", 12.5) == 125

    def test_zero_base_gives_zero(self):
        assert calculate_discount(0, "fixed", 100) == 0
        assert calculate_discount(0, "percentage", 50) == 0

    def test_zero_value_gives_zero(self):
        assert calculate_discount(1000, "fixed", 0) == 0


class TestRounding:
    @pytest.mark.parametrize("base, percent, expected", [
        (1050, 33, 347),   # 346.5 rounds up
        (101, 33, 33),     # 33.33 rounds down
        (1, 50, 1),        # 0.5 rounds up
        (5, 50, 3),        # 2.5 rounds up, not to even
        (15, 10, 2),       # 1.5 rounds up
        (2999, 33, 990),   # 989.67
    ])
    def test_half_up_to_whole_cents(self, base, percent, expected):
        assert calculate_discount(base, "percentage", percent) == expected

    def test_round_half_up_helper(self):
        assert round_half_up(Decimal("2.5")) == 3
        assert round_half_up(Decimal("2.49")) == 2
        assert round_half_up(Decimal("4")) == 4


@pytest.mark.parametrize("base", [0, 1, 99, 1000, 123457])
@pytest.mark.parametrize("discount_type, value, cap", [
    ("percentage", 0, None),
    ("percentage", 33, None),
    ("percentage", 100, None),
    ("percentage", 75, 50),
    ("fixed", 0, None),
    ("fixed", 250, None),
    ("fixed", 10 ** 9, None),
])
def test_discount_stays_within_base(base, discount_type, value, cap):
    discount = calculate_discount(base, discount_type, value, cap)
    assert 0 <= discount <= base


def test_compute_subtotal():
    lines = [
        CartLine(productId="a", quantity=3, unitPrice=2500),
        CartLine(productId="b", quantity=1, unitPrice=199),
    ]
    assert compute_subtotal(lines) == 7699
    assert compute_subtotal([]) == 0


def test_format_money():
    assert format_money(50000) == "$500.00"
    assert format_money(1999) == "$19.99"


@pytest.mark.parametrize("minor_units, amount, expected", [
    (1, 500, "$500"),
    (1000, 12345, "$12.345"),
    (100, 5, "$0.05"),
])
def test_format_money_follows_minor_units(monkeypatch, minor_units, amount, expected):
    monkeypatch.setattr(config, "CURRENCY_MINOR_UNITS", minor_units)
    assert format_money(amount) == expected
