"""
30-day value normalization.

Two normalizations exist and both live here:

* normalize_claim_profit - applied to each historical claim before it is
  averaged into the GP cache (fills of 84+ days count as three months).
* normalize_to_30_day - applied to a value resolved for a match. Values
  tied to a trigger with a known expected supply are already per-fill
  30-day figures and pass through untouched; otherwise an override's
  observed average quantity, or else the record's supply days, decide the
  divisor.
"""

import math
from dataclasses import dataclass

LONG_FILL_DAYS = 84
SUPPLY_THRESHOLD = 34


def estimate_days_supply(days_supply: int | None, quantity: float | None) -> int:
    """Supply days from the record, or estimated from quantity (>60 -> 90, >34 -> 60, else 30)."""
    if days_supply and days_supply > 0:
        return int(days_supply)
    qty = float(quantity or 0)
    if qty > 60:
        return 90
    if qty > SUPPLY_THRESHOLD:
        return 60
    return 30


def normalize_claim_profit(profit: float, days_supply: int | None) -> float:
    days = days_supply or 30
    return profit / 3 if days >= LONG_FILL_DAYS else profit


@dataclass(frozen=True)
class NormalizedValue:
    value: float
    method: str  # pre_normalized | override_quantity | record_days | unchanged


def normalize_to_30_day(
    value: float,
    *,
    expected_days_supply: int | None,
    override_avg_qty: float | None,
    resolved_from_override: bool,
    days_supply: int,
) -> NormalizedValue:
    if expected_days_supply:
        return NormalizedValue(value, "pre_normalized")

    if override_avg_qty and override_avg_qty > SUPPLY_THRESHOLD:
        return NormalizedValue(value / math.ceil(override_avg_qty / 30), "override_quantity")

    if not resolved_from_override and days_supply > SUPPLY_THRESHOLD:
        return NormalizedValue(value * 30 / days_supply, "record_days")

    return NormalizedValue(value, "unchanged")


def annualize(value: float, annual_fills: int | None, default_fills: int = 12) -> float:
    return round(value * (annual_fills or default_fills), 2)
