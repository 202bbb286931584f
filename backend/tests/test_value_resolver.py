"""Tests for the value resolution cascade."""

from datetime import date
from decimal import Decimal

from rxopps.models import DispensingRecord, Trigger, TriggerPayerOverride
from rxopps.services.gp_cache import GpCache, PayerContext
from rxopps.services.value_resolver import (
    GP_CACHE,
    PAYER_OVERRIDE,
    TRIGGER_DEFAULT,
    PayerOverrideIndex,
    ValueResolver,
)


def _trigger(default=None, overrides=()) -> Trigger:
    trigger = Trigger(
        trigger_code="T1",
        display_name="T1",
        detection_keywords=["LOSARTAN"],
        recommended_drug="Pitavastatin",
        default_gp_value=Decimal(str(default)) if default is not None else None,
    )
    for ov in overrides:
        trigger.bin_values.append(ov)
    return trigger


def _record(bin_="610097", group="GRP1") -> DispensingRecord:
    return DispensingRecord(
        pharmacy_id=1, patient_id=1, rx_number="RX1", dispensed_date=date(2026, 6, 1),
        drug_name="ATORVASTATIN 40MG", insurance_bin=bin_, insurance_group=group,
    )


def _override(group="GRP1", gp=None, **kwargs) -> TriggerPayerOverride:
    return TriggerPayerOverride(
        insurance_bin="610097",
        insurance_group=group,
        gp_value=Decimal(str(gp)) if gp is not None else None,
        **kwargs,
    )


def _cache(value_total=None, count=1) -> GpCache:
    cache = GpCache()
    if value_total is not None:
        cache.add("PITAVASTATIN 2MG", PayerContext.of("610097", "GRP1"), value_total, count)
    return cache


class TestPayerOverrideIndex:
    def test_exact_group_preferred_over_bin_wide(self):
        exact = _override(group="GRP1", gp=40)
        bin_wide = _override(group=None, gp=25)
        index = PayerOverrideIndex([bin_wide, exact])
        assert index.find("610097", "grp1") is exact
        assert index.find("610097", "OTHER") is bin_wide
        assert index.find("610097", None) is bin_wide
        assert index.find("004336", "GRP1") is None


class TestValueResolver:
    def test_override_first(self):
        trigger = _trigger(default=20, overrides=[_override(gp=45)])
        resolution = ValueResolver(_cache(90.0)).resolve(trigger, _record())
        assert resolution.found
        assert resolution.value == 45.0
        assert resolution.source == PAYER_OVERRIDE

    def test_manual_override_value_wins(self):
        override = _override(gp=45, is_manual_override=True, manual_gp_value=Decimal("60"))
        resolution = ValueResolver(_cache()).resolve(_trigger(overrides=[override]), _record())
        assert resolution.value == 60.0

    def test_excluded_override_suppresses_everything(self):
        trigger = _trigger(default=20, overrides=[_override(gp=45, is_excluded=True)])
        resolution = ValueResolver(_cache(90.0)).resolve(trigger, _record())
        assert resolution.excluded
        assert not resolution.found

    def test_excluded_by_coverage_status(self):
        trigger = _trigger(default=20, overrides=[_override(coverage_status="excluded")])
        assert ValueResolver(_cache()).resolve(trigger, _record()).excluded

    def test_cache_used_when_override_has_no_value(self):
        trigger = _trigger(default=20, overrides=[_override(gp=None)])
        resolution = ValueResolver(_cache(90.0, 3)).resolve(trigger, _record())
        assert resolution.source == GP_CACHE
        assert resolution.value == 30.0
        assert resolution.cache_hit.level == "bin_group"

    def test_default_used_last(self):
        resolution = ValueResolver(_cache()).resolve(_trigger(default=20), _record())
        assert resolution.source == TRIGGER_DEFAULT
        assert resolution.value == 20.0

    def test_nothing_to_price_with(self):
        resolution = ValueResolver(_cache()).resolve(_trigger(), _record())
        assert not resolution.found
        assert resolution.value is None

    def test_non_positive_cache_value_falls_through(self):
        resolution = ValueResolver(_cache(-12.0)).resolve(_trigger(default=15), _record())
        assert resolution.source == TRIGGER_DEFAULT
