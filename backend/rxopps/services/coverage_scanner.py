"""
Coverage Scanner

Rebuilds each enabled trigger's verified payer overrides from paid claims:
for every (BIN, Group) that has filled the recommended drug at a profit, the
best-margin product is recorded as a covered override with its 30-day value,
NDC, average quantity and most recent claim date. Excluded and manually
entered overrides are left alone.
"""

import logging
import re
import statistics
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rxopps.models import DispensingRecord, Pharmacy, Trigger, TriggerPayerOverride
from rxopps.services.normalizer import SUPPLY_THRESHOLD, estimate_days_supply
from rxopps.services.scan_runs import ScanRunRecorder
from rxopps.telemetry.run_context import bind_batch_id, new_batch_id

logger = logging.getLogger(__name__)

MIN_DAYS_SUPPLY = 28
SUPPLY_FRACTION = 0.8
_TERM_SPLIT = re.compile(r"[\s,.\-()\[\]]+")
_SKIP_WORDS = {
    "MG", "ML", "MCG", "ER", "SR", "XR", "DR", "HCL", "SODIUM", "POTASSIUM",
    "TRY", "ALTERNATES", "IF", "FAILS", "BEFORE", "SAYING", "DOESNT", "WORK",
    "THE", "AND", "FOR", "WITH",
}


def search_terms(recommended_drug: str | None) -> list[str]:
    """'Pitavastatin 2mg (try alternates)' -> ['PITAVASTATIN', '2MG']"""
    words = _TERM_SPLIT.split((recommended_drug or "").upper())
    return [w for w in words if len(w) >= 2 and w not in _SKIP_WORDS and not w.isdigit()]


def qualifies(days_supply: int, expected_days_supply: int | None) -> bool:
    """A claim counts when it is at least a four-week fill or 80% of the expected supply."""
    if days_supply >= MIN_DAYS_SUPPLY:
        return True
    return bool(expected_days_supply) and days_supply >= SUPPLY_FRACTION * expected_days_supply


def per_30_days(profit: float, days_supply: int) -> float:
    if days_supply > SUPPLY_THRESHOLD:
        return profit * 30 / days_supply
    return profit


@dataclass
class PayerCoverage:
    insurance_bin: str
    insurance_group: str | None
    drug_name: str
    ndc: str | None
    values: list[float] = field(default_factory=list)
    quantities: list[float] = field(default_factory=list)
    most_recent_claim: date | None = None

    @property
    def avg_value(self) -> float:
        return sum(self.values) / len(self.values)

    @property
    def avg_qty(self) -> float | None:
        return sum(self.quantities) / len(self.quantities) if self.quantities else None


@dataclass
class TriggerCoverage:
    trigger_code: str
    status: str = "success"
    payers_verified: int = 0
    overrides_removed: int = 0
    default_gp_value: float | None = None
    reason: str | None = None


@dataclass
class CoverageScanResult:
    batch_id: str
    status: str = "running"
    triggers: list[TriggerCoverage] = field(default_factory=list)
    claims_examined: int = 0
    duration_seconds: float = 0.0
    error_message: str | None = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "total_triggers": len(self.triggers),
            "successful": sum(1 for t in self.triggers if t.status == "success"),
            "skipped": sum(1 for t in self.triggers if t.status == "skipped"),
            "errors": sum(1 for t in self.triggers if t.status == "error"),
            "total_verified": sum(t.payers_verified for t in self.triggers),
            "claims_examined": self.claims_examined,
            "duration_seconds": round(self.duration_seconds, 3),
            "error_message": self.error_message,
        }


def best_by_payer(rows, expected_days_supply: int | None) -> dict[tuple, PayerCoverage]:
    """
    Pick, per (BIN, Group), the product with the highest average 30-day
    profit among qualifying claims. Payers whose best average is not
    positive are dropped.
    """
    by_product: dict[tuple, PayerCoverage] = {}
    for row in rows:
        days = estimate_days_supply(row.days_supply, row.quantity)
        if not qualifies(days, expected_days_supply):
            continue
        key = (row.insurance_bin.strip().upper(), (row.insurance_group or "").strip().upper() or None)
        product_key = (*key, row.drug_name, row.ndc)
        cov = by_product.get(product_key)
        if cov is None:
            cov = by_product[product_key] = PayerCoverage(key[0], key[1], row.drug_name, row.ndc)
        cov.values.append(per_30_days(float(row.gross_profit), days))
        if row.quantity is not None:
            cov.quantities.append(float(row.quantity))
        if cov.most_recent_claim is None or row.dispensed_date > cov.most_recent_claim:
            cov.most_recent_claim = row.dispensed_date

    best: dict[tuple, PayerCoverage] = {}
    for cov in by_product.values():
        key = (cov.insurance_bin, cov.insurance_group)
        current = best.get(key)
        if current is None or (cov.avg_value, len(cov.values)) > (current.avg_value, len(current.values)):
            best[key] = cov
    return {key: cov for key, cov in best.items() if cov.avg_value > 0}


class CoverageScanner:
    def __init__(self, session_factory: async_sessionmaker, lookback_days: int = 365):
        self.session_factory = session_factory
        self.lookback_days = lookback_days
        self.recorder = ScanRunRecorder(session_factory, "coverage")

    async def run(self, trigger_code: str | None = None, as_of: date | None = None) -> CoverageScanResult:
        as_of = as_of or date.today()
        result = CoverageScanResult(batch_id=new_batch_id("coverage"))

        with bind_batch_id(result.batch_id):
            t_start = time.time()
            await self.recorder.start(result.batch_id, [trigger_code] if trigger_code else ["all"])
            try:
                async with self.session_factory() as session:
                    query = select(Trigger).where(Trigger.is_enabled.is_(True)).order_by(Trigger.display_name)
                    if trigger_code:
                        query = query.where(Trigger.trigger_code == trigger_code)
                    triggers = list((await session.execute(query)).scalars())
                    logger.info("Found %d triggers to scan", len(triggers))

                    for trigger in triggers:
                        outcome = TriggerCoverage(trigger_code=trigger.trigger_code)
                        try:
                            async with session.begin_nested():
                                await self.scan_trigger(session, trigger, outcome, result, as_of)
                        except Exception as exc:
                            outcome.status, outcome.reason = "error", str(exc)[:300]
                            logger.error("Coverage scan failed for %s: %s", trigger.trigger_code, exc, exc_info=True)
                        result.triggers.append(outcome)

                    await session.commit()
                result.status = "completed"
            except Exception as exc:
                result.status = "failed"
                result.error_message = str(exc)
                logger.error("Coverage scan %s failed: %s", result.batch_id, exc, exc_info=True)
                raise
            finally:
                result.duration_seconds = time.time() - t_start
                summary = result.to_dict()
                await self.recorder.finish(
                    result.batch_id,
                    status=result.status,
                    duration_seconds=result.duration_seconds,
                    records_scanned=result.claims_examined,
                    opportunities_found=summary["total_verified"],
                    stats=summary,
                    error_message=result.error_message,
                )
        return result

    async def scan_trigger(
        self,
        session: AsyncSession,
        trigger: Trigger,
        outcome: TriggerCoverage,
        result: CoverageScanResult,
        as_of: date,
    ) -> None:
        terms = search_terms(trigger.recommended_drug)
        if not terms and not trigger.recommended_ndc:
            outcome.status, outcome.reason = "skipped", "No search terms or NDC"
            return

        rec = DispensingRecord
        drug_match = and_(*(func.upper(rec.drug_name).like(f"%{term}%") for term in terms)) if terms else None
        if trigger.recommended_ndc:
            ndc_match = rec.ndc == trigger.recommended_ndc
            drug_match = ndc_match if drug_match is None else or_(drug_match, ndc_match)

        rows = (await session.execute(
            select(
                rec.insurance_bin, rec.insurance_group, rec.drug_name, rec.ndc,
                rec.quantity, rec.days_supply, rec.gross_profit, rec.dispensed_date,
            )
            .join(Pharmacy, Pharmacy.id == rec.pharmacy_id)
            .where(
                drug_match,
                Pharmacy.is_demo.is_(False),
                rec.insurance_bin.is_not(None),
                rec.insurance_bin != "",
                rec.gross_profit.is_not(None),
                rec.dispensed_date >= as_of - timedelta(days=self.lookback_days),
            )
        )).all()
        result.claims_examined += len(rows)

        coverage = best_by_payer(rows, trigger.expected_days_supply)

        # Excluded and manual rows survive; their payers keep them untouched
        protected = {
            (o.insurance_bin.upper(), (o.insurance_group or "").upper() or None)
            for o in trigger.bin_values
            if o.excluded or o.is_manual_override
        }
        removed = await session.execute(
            delete(TriggerPayerOverride)
            .where(
                TriggerPayerOverride.trigger_id == trigger.id,
                TriggerPayerOverride.is_excluded.is_(False),
                TriggerPayerOverride.coverage_status != "excluded",
                TriggerPayerOverride.is_manual_override.is_(False),
            )
            .execution_options(synchronize_session="fetch")
        )
        outcome.overrides_removed = removed.rowcount or 0
        await session.flush()
        await session.refresh(trigger, ["bin_values"])

        now = datetime.utcnow()
        verified_values = []
        for key, cov in sorted(coverage.items(), key=lambda kv: (kv[0][0], kv[0][1] or "")):
            if key in protected:
                continue
            value = round(cov.avg_value, 2)
            avg_qty = cov.avg_qty
            session.add(TriggerPayerOverride(
                trigger_id=trigger.id,
                insurance_bin=cov.insurance_bin,
                insurance_group=cov.insurance_group,
                gp_value=Decimal(str(value)),
                coverage_status="covered",
                is_excluded=False,
                best_ndc=cov.ndc,
                best_drug_name=cov.drug_name,
                avg_qty=Decimal(str(round(avg_qty, 2))) if avg_qty is not None else None,
                verified_claim_count=len(cov.values),
                most_recent_claim=cov.most_recent_claim,
                verified_at=now,
            ))
            verified_values.append(value)

        if verified_values:
            median = round(statistics.median(verified_values), 2)
            trigger.default_gp_value = Decimal(str(median))
            outcome.default_gp_value = median
        outcome.payers_verified = len(verified_values)
        await session.flush()

        if verified_values:
            logger.info("%s: %d BIN/Groups verified", trigger.trigger_code, len(verified_values))
