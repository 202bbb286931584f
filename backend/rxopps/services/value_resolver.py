"""
Value Resolver

Attaches a financial value to a trigger match by walking, in order:
    1. the trigger's per-payer override (an excluded override suppresses the match)
    2. the cross-tenant GP cache for the recommended drug
    3. the trigger's default value
A match that none of these can price is skipped; no figure is ever made up.
"""

from dataclasses import dataclass

from rxopps.models import DispensingRecord, Trigger, TriggerPayerOverride
from rxopps.services.gp_cache import CacheHit, GpCache, PayerContext

PAYER_OVERRIDE = "payer_override"
GP_CACHE = "gp_cache"
TRIGGER_DEFAULT = "trigger_default"


@dataclass(frozen=True)
class ValueResolution:
    value: float | None
    source: str | None
    override: TriggerPayerOverride | None = None
    excluded: bool = False
    cache_hit: CacheHit | None = None

    @property
    def found(self) -> bool:
        return not self.excluded and self.value is not None and self.value > 0


def _group_key(group: str | None) -> str:
    return (group or "").strip().upper()


class PayerOverrideIndex:
    """Override lookup for one trigger: exact (BIN, Group) first, then a BIN-wide row."""

    def __init__(self, overrides: list[TriggerPayerOverride]):
        self.exact: dict[tuple[str, str], TriggerPayerOverride] = {}
        self.bin_wide: dict[str, TriggerPayerOverride] = {}
        for ov in overrides:
            insurance_bin = (ov.insurance_bin or "").strip()
            if not insurance_bin:
                continue
            if ov.insurance_group:
                self.exact[(insurance_bin, _group_key(ov.insurance_group))] = ov
            else:
                self.bin_wide[insurance_bin] = ov

    def find(self, insurance_bin: str | None, insurance_group: str | None) -> TriggerPayerOverride | None:
        insurance_bin = (insurance_bin or "").strip()
        if not insurance_bin:
            return None
        group = _group_key(insurance_group)
        if group:
            exact = self.exact.get((insurance_bin, group))
            if exact is not None:
                return exact
        return self.bin_wide.get(insurance_bin)


class ValueResolver:
    def __init__(self, gp_cache: GpCache):
        self.gp_cache = gp_cache
        self._indexes: dict[int, PayerOverrideIndex] = {}

    def _index_for(self, trigger: Trigger) -> PayerOverrideIndex:
        index = self._indexes.get(id(trigger))
        if index is None:
            index = PayerOverrideIndex(list(trigger.bin_values or []))
            self._indexes[id(trigger)] = index
        return index

    def find_override(self, trigger: Trigger, record: DispensingRecord) -> TriggerPayerOverride | None:
        return self._index_for(trigger).find(record.insurance_bin, record.insurance_group)

    def resolve(self, trigger: Trigger, record: DispensingRecord) -> ValueResolution:
        override = self.find_override(trigger, record)
        if override is not None:
            if override.excluded:
                return ValueResolution(None, None, override=override, excluded=True)
            override_value = float(override.effective_gp_value or 0)
            if override_value > 0:
                return ValueResolution(override_value, PAYER_OVERRIDE, override=override)

        hit = self.gp_cache.lookup(trigger.recommended_drug, PayerContext.from_record(record))
        if hit is not None and hit.value > 0:
            return ValueResolution(hit.value, GP_CACHE, override=override, cache_hit=hit)

        default_value = float(trigger.default_gp_value or 0)
        if default_value > 0:
            return ValueResolution(default_value, TRIGGER_DEFAULT, override=override)

        return ValueResolution(None, None, override=override)
