"""
Opportunity Scanner (scan orchestrator)

For each active pharmacy: load the recent dispensing records once, match
every enabled trigger against every record in memory, price each match,
normalize it to 30 days, collapse duplicates and reconcile the survivors
into the opportunity ledger. The GP cache is built once per run and shared
read-only by all pharmacy scans of that run.
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rxopps.config import settings
from rxopps.exceptions import TriggerConfigError
from rxopps.models import DispensingRecord, Patient, Pharmacy, Trigger
from rxopps.services.gp_cache import GpCache, GpCacheBuilder
from rxopps.services.normalizer import annualize, estimate_days_supply, normalize_to_30_day
from rxopps.services.reconciler import (
    OpportunityCandidate,
    OpportunityReconciler,
    ReconcileOutcome,
    select_best_candidates,
)
from rxopps.services.rule_matcher import CompiledTrigger, matches, normalize_drug_text
from rxopps.services.scan_runs import ScanRunRecorder
from rxopps.services.value_resolver import PAYER_OVERRIDE, ValueResolver
from rxopps.telemetry.metrics import dispensing_records_scanned
from rxopps.telemetry.run_context import bind_batch_id, new_batch_id

logger = logging.getLogger(__name__)


def clinical_priority(trigger_priority: int | None) -> str:
    priority = trigger_priority if trigger_priority is not None else 100
    if priority <= 2:
        return "high"
    if priority <= 4:
        return "medium"
    return "low"


@dataclass
class PharmacyScanResult:
    pharmacy_id: int
    records_scanned: int = 0
    matches: int = 0
    candidates: int = 0
    excluded: int = 0
    skipped_no_value: int = 0
    below_threshold: int = 0
    record_errors: int = 0
    by_type: Counter = field(default_factory=Counter)
    reconcile: ReconcileOutcome = field(default_factory=ReconcileOutcome)


@dataclass
class ScanSummary:
    batch_id: str
    status: str = "running"
    pharmacies_scanned: int = 0
    triggers_loaded: int = 0
    triggers_skipped: list[str] = field(default_factory=list)
    gp_cache_keys: int = 0
    records_scanned: int = 0
    matches: int = 0
    candidates: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    cleared: int = 0
    skipped_actioned: int = 0
    skipped_no_value: int = 0
    below_threshold: int = 0
    excluded: int = 0
    record_errors: int = 0
    insert_errors: int = 0
    by_type: Counter = field(default_factory=Counter)
    duration_seconds: float = 0.0
    error_message: str | None = None

    def add(self, result: PharmacyScanResult) -> None:
        self.pharmacies_scanned += 1
        self.records_scanned += result.records_scanned
        self.matches += result.matches
        self.candidates += result.candidates
        self.excluded += result.excluded
        self.skipped_no_value += result.skipped_no_value
        self.below_threshold += result.below_threshold
        self.record_errors += result.record_errors
        self.by_type.update(result.by_type)
        outcome = result.reconcile
        self.inserted += outcome.inserted
        self.updated += outcome.updated
        self.unchanged += outcome.unchanged
        self.cleared += outcome.cleared
        self.skipped_actioned += outcome.skipped_actioned
        self.insert_errors += outcome.insert_errors

    @property
    def errored(self) -> int:
        return self.record_errors + self.insert_errors + len(self.triggers_skipped)

    @property
    def skipped(self) -> int:
        return self.skipped_no_value + self.below_threshold + self.excluded + self.skipped_actioned

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "pharmacies_scanned": self.pharmacies_scanned,
            "triggers_loaded": self.triggers_loaded,
            "triggers_skipped": list(self.triggers_skipped),
            "gp_cache_keys": self.gp_cache_keys,
            "records_scanned": self.records_scanned,
            "matched": self.matches,
            "candidates": self.candidates,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "cleared": self.cleared,
            "skipped": self.skipped,
            "skipped_actioned": self.skipped_actioned,
            "skipped_no_value": self.skipped_no_value,
            "below_threshold": self.below_threshold,
            "excluded": self.excluded,
            "errored": self.errored,
            "opportunities_by_type": dict(self.by_type),
            "duration_seconds": round(self.duration_seconds, 3),
            "error_message": self.error_message,
        }


def compile_triggers(triggers: list[Trigger]) -> tuple[list[CompiledTrigger], list[str]]:
    """Compile triggers, dropping (and reporting) the ones with bad configuration."""
    compiled: list[CompiledTrigger] = []
    skipped: list[str] = []
    for trigger in triggers:
        try:
            compiled.append(CompiledTrigger.compile(trigger))
        except TriggerConfigError as exc:
            logger.warning("Skipping trigger for this run: %s", exc)
            skipped.append(exc.trigger_code or f"id={trigger.id}")
    return compiled, skipped


class OpportunityScanner:
    """Runs opportunity scans over one or all active pharmacies."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        min_value: float | None = None,
        lookback_days: int | None = None,
        chunk_size: int | None = None,
        concurrency: int | None = None,
    ):
        self.session_factory = session_factory
        self.min_value = settings.min_opportunity_value if min_value is None else min_value
        self.lookback_days = lookback_days or settings.scan_lookback_days
        self.chunk_size = chunk_size or settings.upsert_chunk_size
        self.concurrency = concurrency or settings.scan_concurrency
        self.recorder = ScanRunRecorder(session_factory, "opportunity")

    # ── Run ──────────────────────────────────────────────────────────────

    async def run(self, pharmacy_ids: list[int] | None = None, as_of: date | None = None) -> ScanSummary:
        as_of = as_of or date.today()
        summary = ScanSummary(batch_id=new_batch_id("scan"))

        with bind_batch_id(summary.batch_id):
            t_start = time.time()
            await self.recorder.start(summary.batch_id, pharmacy_ids or ["all"])
            try:
                async with self.session_factory() as session:
                    triggers = await self._load_triggers(session)
                    pharmacies = await self._load_pharmacy_ids(session, pharmacy_ids)
                    compiled, summary.triggers_skipped = compile_triggers(triggers)
                    summary.triggers_loaded = len(compiled)
                    gp_cache = await GpCacheBuilder(session).build(
                        [c.trigger.recommended_drug for c in compiled], as_of,
                    )
                    summary.gp_cache_keys = len(gp_cache)

                logger.info(
                    "Scanning %d pharmacies with %d triggers (%d skipped)",
                    len(pharmacies), len(compiled), len(summary.triggers_skipped),
                )

                semaphore = asyncio.Semaphore(self.concurrency)

                async def _bounded(pharmacy_id: int) -> PharmacyScanResult:
                    async with semaphore:
                        return await self.scan_pharmacy(pharmacy_id, compiled, gp_cache, summary.batch_id, as_of)

                tasks = [asyncio.create_task(_bounded(p)) for p in pharmacies]
                try:
                    results = await asyncio.gather(*tasks)
                except BaseException:
                    # a failed run must not keep writing for the remaining pharmacies
                    for task in tasks:
                        task.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)
                    raise
                for result in results:
                    summary.add(result)

                summary.status = "completed"
            except Exception as exc:
                summary.status = "failed"
                summary.error_message = str(exc)
                logger.error("Scan %s failed: %s", summary.batch_id, exc, exc_info=True)
                raise
            finally:
                summary.duration_seconds = time.time() - t_start
                await self.recorder.finish(
                    summary.batch_id,
                    status=summary.status,
                    duration_seconds=summary.duration_seconds,
                    records_scanned=summary.records_scanned,
                    opportunities_found=summary.candidates,
                    opportunities_by_type=dict(summary.by_type),
                    stats=summary.to_dict(),
                    error_message=summary.error_message,
                )

        return summary

    async def _load_triggers(self, session: AsyncSession) -> list[Trigger]:
        result = await session.execute(
            select(Trigger).where(Trigger.is_enabled.is_(True)).order_by(Trigger.priority, Trigger.id)
        )
        return list(result.scalars())

    async def _load_pharmacy_ids(self, session: AsyncSession, pharmacy_ids: list[int] | None) -> list[int]:
        query = select(Pharmacy.id).where(Pharmacy.is_active.is_(True)).order_by(Pharmacy.id)
        if pharmacy_ids:
            query = query.where(Pharmacy.id.in_(pharmacy_ids))
        found = list((await session.execute(query)).scalars())
        missing = set(pharmacy_ids or []) - set(found)
        if missing:
            logger.warning("Pharmacies not found or inactive, not scanned: %s", sorted(missing))
        return found

    # ── Per-pharmacy scan ────────────────────────────────────────────────

    async def scan_pharmacy(
        self,
        pharmacy_id: int,
        compiled: list[CompiledTrigger],
        gp_cache: GpCache,
        batch_id: str,
        as_of: date,
    ) -> PharmacyScanResult:
        t_start = time.time()
        async with self.session_factory() as session:
            records = await self._load_records(session, pharmacy_id, as_of)
            result, matched = self.evaluate(pharmacy_id, compiled, records, ValueResolver(gp_cache))
            candidates = select_best_candidates(matched)
            result.candidates = len(candidates)
            for cand in candidates:
                result.by_type[cand.opportunity_type] += 1

            result.reconcile = await OpportunityReconciler(session, self.chunk_size).commit(
                pharmacy_id, candidates, batch_id,
            )
            await session.commit()

        dispensing_records_scanned.inc(result.records_scanned)
        logger.info(
            "Pharmacy %s: %d records, %d matches, %d candidates, %s",
            pharmacy_id, result.records_scanned, result.matches, result.candidates,
            result.reconcile.to_dict(),
            extra={"duration_ms": round((time.time() - t_start) * 1000, 2)},
        )
        return result

    async def _load_records(self, session: AsyncSession, pharmacy_id: int, as_of: date) -> list[DispensingRecord]:
        cutoff = as_of - timedelta(days=self.lookback_days)
        result = await session.execute(
            select(DispensingRecord)
            .join(Patient, Patient.id == DispensingRecord.patient_id)
            .where(
                Patient.pharmacy_id == pharmacy_id,
                DispensingRecord.pharmacy_id == pharmacy_id,
                DispensingRecord.dispensed_date >= cutoff,
                DispensingRecord.dispensed_date <= as_of,
            )
            .order_by(DispensingRecord.patient_id, DispensingRecord.dispensed_date.desc())
        )
        return list(result.scalars())

    def evaluate(
        self,
        pharmacy_id: int,
        compiled: list[CompiledTrigger],
        records: list[DispensingRecord],
        resolver: ValueResolver,
    ) -> tuple[PharmacyScanResult, list[OpportunityCandidate]]:
        """Match, price and normalize every trigger x record pair. Pure computation."""
        result = PharmacyScanResult(pharmacy_id=pharmacy_id, records_scanned=len(records))

        history: dict[int, list[str]] = {}
        for record in records:
            drugs = history.setdefault(record.patient_id, [])
            normalized = normalize_drug_text(record.drug_name)
            if normalized and normalized not in drugs:
                drugs.append(normalized)

        matched: list[OpportunityCandidate] = []
        for record in records:
            recent_drugs = history.get(record.patient_id, [])
            for ct in compiled:
                try:
                    if not matches(ct, record, recent_drugs):
                        continue
                    result.matches += 1
                    candidate = self._price(ct, record, resolver, result)
                    if candidate is not None:
                        matched.append(candidate)
                except Exception as exc:
                    result.record_errors += 1
                    logger.warning(
                        "Trigger %s failed on record %s: %s", ct.code, record.id, exc, exc_info=True,
                    )
        return result, matched

    def _price(
        self,
        ct: CompiledTrigger,
        record: DispensingRecord,
        resolver: ValueResolver,
        result: PharmacyScanResult,
    ) -> OpportunityCandidate | None:
        trigger = ct.trigger
        resolution = resolver.resolve(trigger, record)
        if resolution.excluded:
            result.excluded += 1
            return None
        if not resolution.found:
            result.skipped_no_value += 1
            return None

        override = resolution.override
        override_qty = float(override.avg_qty) if override is not None and override.avg_qty is not None else None
        normalized = normalize_to_30_day(
            resolution.value,
            expected_days_supply=trigger.expected_days_supply,
            override_avg_qty=override_qty,
            resolved_from_override=resolution.source == PAYER_OVERRIDE,
            days_supply=estimate_days_supply(record.days_supply, record.quantity),
        )
        value = round(normalized.value, 2)
        if value < self.min_value:
            result.below_threshold += 1
            return None

        return OpportunityCandidate(
            pharmacy_id=record.pharmacy_id,
            patient_id=record.patient_id,
            dispensing_record_id=record.id,
            trigger_id=trigger.id,
            trigger_priority=trigger.priority if trigger.priority is not None else 100,
            opportunity_type=trigger.trigger_type or "standard",
            current_drug_name=record.drug_name,
            current_ndc=record.ndc,
            recommended_drug_name=trigger.recommended_drug.strip(),
            recommended_ndc=(override.effective_ndc if override is not None else None) or trigger.recommended_ndc,
            avg_dispensed_qty=override_qty,
            value=value,
            annual_value=annualize(value, trigger.annual_fills, settings.default_annual_fills),
            value_source=resolution.source,
            clinical_rationale=trigger.clinical_rationale,
            clinical_priority=clinical_priority(trigger.priority),
            prescriber_name=record.prescriber_name,
            insurance_bin=record.insurance_bin,
            insurance_group=record.insurance_group,
            claim_date=(override.most_recent_claim if override is not None else None) or record.dispensed_date,
        )
