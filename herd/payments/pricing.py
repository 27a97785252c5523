"""
Calculs monétaires (centimes entiers, arrondi « half up »).
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Union

Number = Union[int, float, str, Decimal]


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_to_cents(value: Any) -> int:
    """
    Prix de base en centimes.
    - >= 100 et entier: déjà en centimes (ex: 4500)
    - sinon: unités majeures (ex: 45 ou 45.5) -> x100
    """
    try:
        amount = Decimal(str(value if value is not None else 0))
    except ArithmeticError:
        return 0
    if not amount.is_finite() or amount <= 0:
        return 0
    if amount >= 100 and amount == amount.to_integral_value():
        return int(amount)
    return round_half_up(amount * 100)


def per_seat_cents(base_cents: int, fee_rate: Decimal) -> int:
    """Prix par place facturé au client, commission incluse."""
    return round_half_up(Decimal(base_cents) * (Decimal(1) + fee_rate))


@dataclass(frozen=True)
class FeeSplit:
    total_cents: int
    platform_fee_cents: int
    host_payout_cents: int

    @property
    def remainder_cents(self) -> int:
        return self.total_cents - self.platform_fee_cents - self.host_payout_cents


def fee_split(total_cents: int, fee_rate: Decimal) -> FeeSplit:
    """
    Répartition d'un total T (commission incluse) au taux r:
    part hôte = T / (1 + r), commission = round(part hôte * r), versement = round(part hôte).
    """
    total = Decimal(int(total_cents or 0))
    host_portion = total / (Decimal(1) + fee_rate)
    return FeeSplit(
        total_cents=int(total),
        platform_fee_cents=round_half_up(host_portion * fee_rate),
        host_payout_cents=round_half_up(host_portion),
    )


def estimate_gateway_fee(total_cents: int, percent: Decimal, fixed_cents: int) -> int:
    return round_half_up(Decimal(int(total_cents or 0)) * percent + fixed_cents)
