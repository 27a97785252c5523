from decimal import Decimal

import pytest

from herd.payments.pricing import (
    estimate_gateway_fee,
    fee_split,
    normalize_to_cents,
    per_seat_cents,
)

RATE = Decimal("0.15")


@pytest.mark.parametrize(
    "value,expected",
    [
        (4500, 4500),
        (45, 4500),
        (45.5, 4550),
        ("150.5", 15050),
        (99.99, 9999),
        (0, 0),
        (-10, 0),
        (None, 0),
        ("abc", 0),
    ],
)
def test_normalize_to_cents(value, expected):
    assert normalize_to_cents(value) == expected


def test_per_seat_price_includes_platform_fee():
    assert per_seat_cents(10000, RATE) == 11500
    assert per_seat_cents(4550, RATE) == 5233  # 5232.5 arrondi au-dessus


def test_fee_split_exact_total():
    split = fee_split(11500, RATE)
    assert split.total_cents == 11500
    assert split.platform_fee_cents == 1500
    assert split.host_payout_cents == 10000
    assert split.remainder_cents == 0


def test_fee_split_two_seats():
    split = fee_split(23000, RATE)
    assert (split.platform_fee_cents, split.host_payout_cents) == (3000, 20000)


def test_fee_split_rounds_half_up_on_non_exact_totals():
    split = fee_split(1000, RATE)
    # part hôte 869.565..., commission 130.43...
    assert split.platform_fee_cents == 130
    assert split.host_payout_cents == 870


def test_fee_split_zero_rate_pays_everything_to_host():
    split = fee_split(5000, Decimal("0"))
    assert split.platform_fee_cents == 0
    assert split.host_payout_cents == 5000


def test_fee_split_handles_missing_total():
    split = fee_split(None, RATE)
    assert split.total_cents == 0
    assert split.host_payout_cents == 0


def test_estimate_gateway_fee():
    assert estimate_gateway_fee(11500, Decimal("0.029"), 30) == 364
    assert estimate_gateway_fee(0, Decimal("0.029"), 30) == 30
