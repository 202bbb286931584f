"""Tests for 30-day normalization and annualization."""

import pytest

from rxopps.services.normalizer import (
    annualize,
    estimate_days_supply,
    normalize_claim_profit,
    normalize_to_30_day,
)


class TestEstimateDaysSupply:
    def test_recorded_days_win(self):
        assert estimate_days_supply(28, 90) == 28

    @pytest.mark.parametrize("qty, expected", [(90, 90), (61, 90), (60, 60), (35, 60), (34, 30), (None, 30)])
    def test_estimated_from_quantity(self, qty, expected):
        assert estimate_days_supply(None, qty) == expected


class TestClaimProfit:
    def test_ninety_day_fill_counts_as_three_months(self):
        assert normalize_claim_profit(90.0, 90) == 30.0
        assert normalize_claim_profit(90.0, 84) == 30.0

    def test_short_fill_unchanged(self):
        assert normalize_claim_profit(25.0, 30) == 25.0
        assert normalize_claim_profit(25.0, None) == 25.0


class TestNormalizeTo30Day:
    def test_trigger_with_expected_supply_is_pre_normalized(self):
        result = normalize_to_30_day(
            60.0, expected_days_supply=30, override_avg_qty=90, resolved_from_override=True, days_supply=90,
        )
        assert result.value == 60.0
        assert result.method == "pre_normalized"

    def test_override_quantity_divides_by_months(self):
        result = normalize_to_30_day(
            90.0, expected_days_supply=None, override_avg_qty=90, resolved_from_override=True, days_supply=90,
        )
        assert result.value == 30.0
        assert result.method == "override_quantity"

    def test_small_override_quantity_ignored(self):
        result = normalize_to_30_day(
            40.0, expected_days_supply=None, override_avg_qty=30, resolved_from_override=True, days_supply=90,
        )
        assert result.value == 40.0
        assert result.method == "unchanged"

    def test_record_days_scale_non_override_values(self):
        result = normalize_to_30_day(
            90.0, expected_days_supply=None, override_avg_qty=None, resolved_from_override=False, days_supply=90,
        )
        assert result.value == pytest.approx(30.0)
        assert result.method == "record_days"

    def test_thirty_day_fill_unchanged(self):
        result = normalize_to_30_day(
            20.0, expected_days_supply=None, override_avg_qty=None, resolved_from_override=False, days_supply=30,
        )
        assert result.value == 20.0


class TestAnnualize:
    def test_uses_trigger_fills(self):
        assert annualize(20.0, 4) == 80.0

    def test_defaults_to_twelve(self):
        assert annualize(20.0, None) == 240.0
        assert annualize(20.0, 0) == 240.0
