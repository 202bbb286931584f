"""
GP Cache Builder

Pre-aggregates historical paid-claim profit across all tenants once per
scan run. Every observation is filed under four keys of decreasing
specificity; lookups walk those levels in order and stop at the first one
that has data.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Iterable

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rxopps.config import settings
from rxopps.models import DispensingRecord
from rxopps.services.normalizer import LONG_FILL_DAYS
from rxopps.services.rule_matcher import normalize_drug_text

logger = logging.getLogger(__name__)

_COMPONENT_SPLIT = re.compile(r"[-/]")
# Abbreviated combination components and the spelled-out stem claims carry instead
STEM_ALIASES = {
    "HCTZ": ("HYDROCHLOR",),
}


def drug_stems(drug_name: str | None) -> list[str]:
    """
    Loose search stems for a recommended drug name.

    Combination drugs ("Losartan-HCTZ") yield one stem per component: the
    first five characters of components of five or more letters, the whole
    component if it has four. Single-ingredient names yield a six character
    stem of their first word.
    """
    if not drug_name:
        return []
    upper = drug_name.upper().strip()
    stems: list[str] = []
    if _COMPONENT_SPLIT.search(upper):
        for component in _COMPONENT_SPLIT.split(upper):
            words = normalize_drug_text(component).split()
            if not words:
                continue
            word = words[0]
            if len(word) >= 5:
                stems.append(word[:5])
            elif len(word) >= 4:
                stems.append(word)
    else:
        words = normalize_drug_text(upper).split()
        if words:
            word = words[0]
            stems.append(word[:6] if len(word) >= 5 else word)

    if not stems:
        words = normalize_drug_text(upper).split()
        if words:
            stems.append(words[0])
    # keep order, drop duplicates
    return list(dict.fromkeys(stems))


def stem_variants(stem: str) -> tuple[str, ...]:
    return (stem, *STEM_ALIASES.get(stem, ()))


def _has_stem(drug: str, stem: str) -> bool:
    return any(variant in drug for variant in stem_variants(stem))


@dataclass(frozen=True)
class PayerContext:
    insurance_bin: str | None = None
    insurance_group: str | None = None
    contract_id: str | None = None
    plan_name: str | None = None

    @classmethod
    def of(cls, insurance_bin=None, insurance_group=None, contract_id=None, plan_name=None) -> "PayerContext":
        def clean(value):
            value = (value or "").strip().upper()
            return value or None
        return cls(clean(insurance_bin), clean(insurance_group), clean(contract_id), clean(plan_name))

    @classmethod
    def from_record(cls, record: DispensingRecord) -> "PayerContext":
        return cls.of(record.insurance_bin, record.insurance_group, record.contract_id, record.plan_name)


@dataclass(frozen=True)
class CacheKey:
    drug: str
    insurance_bin: str | None = None
    insurance_group: str | None = None
    contract_id: str | None = None
    plan_name: str | None = None
    level: str = "drug_only"


def _full_key(drug: str, payer: PayerContext) -> CacheKey | None:
    if not (payer.insurance_bin and payer.contract_id and payer.plan_name):
        return None
    return CacheKey(drug, payer.insurance_bin, payer.insurance_group, payer.contract_id, payer.plan_name, "full")


def _contract_plan_key(drug: str, payer: PayerContext) -> CacheKey | None:
    if not (payer.contract_id and payer.plan_name):
        return None
    return CacheKey(drug, contract_id=payer.contract_id, plan_name=payer.plan_name, level="contract_plan")


def _bin_group_key(drug: str, payer: PayerContext) -> CacheKey | None:
    if not payer.insurance_bin:
        return None
    return CacheKey(drug, payer.insurance_bin, payer.insurance_group, level="bin_group")


def _drug_only_key(drug: str, payer: PayerContext) -> CacheKey | None:
    return CacheKey(drug)


# Most specific first, with the specificity score reported on a hit
LOOKUP_LEVELS: list[tuple[int, Callable[[str, PayerContext], CacheKey | None]]] = [
    (4, _full_key),
    (3, _contract_plan_key),
    (2, _bin_group_key),
    (1, _drug_only_key),
]


@dataclass
class GpAggregate:
    total: float = 0.0
    claim_count: int = 0

    def add(self, total: float, count: int) -> None:
        self.total += total
        self.claim_count += count

    @property
    def average(self) -> float:
        return self.total / self.claim_count if self.claim_count else 0.0


@dataclass(frozen=True)
class CacheHit:
    value: float
    specificity: int
    level: str
    claim_count: int
    drugs: tuple[str, ...]


@dataclass
class GpCache:
    """Read-only after build. One instance per scan run, passed to each pharmacy scan."""

    built_for: date | None = None
    entries: dict[CacheKey, GpAggregate] = field(default_factory=dict)
    drugs: set[str] = field(default_factory=set)
    _candidates: dict[str, tuple[str, ...]] = field(default_factory=dict, repr=False)

    def add(
        self, drug_name: str, payer: PayerContext, total: float, count: int,
    ) -> None:
        drug = normalize_drug_text(drug_name).strip()
        if not drug or count <= 0:
            return
        self.drugs.add(drug)
        self._candidates.clear()
        for _, key_fn in LOOKUP_LEVELS:
            key = key_fn(drug, payer)
            if key is not None:
                self.entries.setdefault(key, GpAggregate()).add(total, count)

    def candidate_drugs(self, recommended_drug: str) -> tuple[str, ...]:
        """Cached drug names containing every stem (or its alias) of the recommended drug."""
        lookup = recommended_drug.upper().strip()
        if lookup not in self._candidates:
            stems = drug_stems(recommended_drug)
            self._candidates[lookup] = tuple(sorted(
                d for d in self.drugs if stems and all(_has_stem(d, s) for s in stems)
            ))
        return self._candidates[lookup]

    def lookup(self, recommended_drug: str | None, payer: PayerContext) -> CacheHit | None:
        if not recommended_drug:
            return None
        candidates = self.candidate_drugs(recommended_drug)
        if not candidates:
            return None

        for specificity, key_fn in LOOKUP_LEVELS:
            pooled = GpAggregate()
            level = None
            for drug in candidates:
                key = key_fn(drug, payer)
                if key is None:
                    break
                level = key.level
                found = self.entries.get(key)
                if found:
                    pooled.add(found.total, found.claim_count)
            if pooled.claim_count:
                return CacheHit(
                    value=round(pooled.average, 2),
                    specificity=specificity,
                    level=level or "drug_only",
                    claim_count=pooled.claim_count,
                    drugs=candidates,
                )
        return None

    def __len__(self) -> int:
        return len(self.entries)


class GpCacheBuilder:
    """Builds a GpCache with one aggregate query over every tenant's claims."""

    def __init__(self, session: AsyncSession, lookback_days: int | None = None):
        self.session = session
        self.lookback_days = lookback_days or settings.gp_cache_lookback_days

    async def build(self, recommended_drugs: Iterable[str], as_of: date | None = None) -> GpCache:
        as_of = as_of or date.today()
        cache = GpCache(built_for=as_of)

        stems = sorted({
            v for drug in recommended_drugs for s in drug_stems(drug) for v in stem_variants(s)
        })
        if not stems:
            logger.info("GP cache: no recommended drugs, cache left empty")
            return cache

        rec = DispensingRecord
        normalized_gp = case(
            (func.coalesce(rec.days_supply, 30) >= LONG_FILL_DAYS, rec.gross_profit / 3),
            else_=rec.gross_profit,
        )
        upper_name = func.upper(rec.drug_name)
        stmt = (
            select(
                rec.drug_name,
                rec.insurance_bin,
                rec.insurance_group,
                rec.contract_id,
                rec.plan_name,
                func.sum(normalized_gp).label("total_gp"),
                func.count().label("claim_count"),
            )
            .where(
                rec.dispensed_date >= as_of - timedelta(days=self.lookback_days),
                rec.gross_profit.is_not(None),
                or_(*[upper_name.like(f"%{s}%") for s in stems]),
            )
            .group_by(rec.drug_name, rec.insurance_bin, rec.insurance_group, rec.contract_id, rec.plan_name)
        )

        result = await self.session.execute(stmt)
        rows = 0
        for row in result:
            rows += 1
            cache.add(
                row.drug_name,
                PayerContext.of(row.insurance_bin, row.insurance_group, row.contract_id, row.plan_name),
                float(row.total_gp or 0),
                int(row.claim_count or 0),
            )

        logger.info(
            "GP cache built: %d aggregate rows, %d keys, %d drugs from %d search stems",
            rows, len(cache), len(cache.drugs), len(stems),
        )
        return cache
