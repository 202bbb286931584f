"""
Deduplicator / Reconciler

Collapses one scan's matches to the best candidate per clinical situation
and reconciles the survivors against the opportunity ledger:

    no existing row            -> insert Not Submitted
    existing Not Submitted     -> raise value / fill NDC in place, never shrink
    existing Denied / Declined -> insert a fresh attempt, old row untouched
    existing actioned row      -> skip

Not Submitted rows for the pharmacy that the scan no longer produces are
cleared before inserts. Nothing outside Not Submitted is ever deleted or
modified here.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rxopps.config import settings
from rxopps.models import Opportunity
from rxopps.models.opportunity import ACTIONED_STATUSES, NOT_SUBMITTED, RETRYABLE_STATUSES
from rxopps.telemetry.metrics import opportunity_writes_total

logger = logging.getLogger(__name__)


@dataclass
class OpportunityCandidate:
    pharmacy_id: int
    patient_id: int
    trigger_id: int | None
    trigger_priority: int
    opportunity_type: str
    current_drug_name: str
    recommended_drug_name: str
    value: float
    annual_value: float
    value_source: str
    dispensing_record_id: int | None = None
    current_ndc: str | None = None
    recommended_ndc: str | None = None
    avg_dispensed_qty: float | None = None
    clinical_rationale: str | None = None
    clinical_priority: str | None = None
    prescriber_name: str | None = None
    insurance_bin: str | None = None
    insurance_group: str | None = None
    claim_date: date | None = None

    @property
    def base_drug(self) -> str:
        tokens = (self.current_drug_name or "").upper().split()
        return tokens[0] if tokens else ""

    @property
    def ledger_key(self) -> tuple[int, str]:
        return self.patient_id, self.recommended_drug_name.strip().upper()


def _better(a: OpportunityCandidate, b: OpportunityCandidate) -> bool:
    """Higher annual value wins; ties go to the higher-precedence trigger."""
    if a.annual_value != b.annual_value:
        return a.annual_value > b.annual_value
    if a.value != b.value:
        return a.value > b.value
    return a.trigger_priority < b.trigger_priority


def _keep_best(candidates, key_fn) -> list[OpportunityCandidate]:
    best: dict = {}
    for cand in candidates:
        key = key_fn(cand)
        current = best.get(key)
        if current is None or _better(cand, current):
            best[key] = cand
    return list(best.values())


def select_best_candidates(matches: list[OpportunityCandidate]) -> list[OpportunityCandidate]:
    """
    Two-stage collapse: best match per (patient, trigger), then the single
    best per (patient, current-drug base name).
    """
    per_trigger = _keep_best(matches, lambda c: (c.patient_id, c.trigger_id))
    return _keep_best(per_trigger, lambda c: (c.patient_id, c.base_drug))


def _precedence(opp: Opportunity) -> tuple:
    if opp.status in ACTIONED_STATUSES:
        rank = 0
    elif opp.status == NOT_SUBMITTED:
        rank = 1
    else:
        rank = 2
    # newest first within a rank
    created = opp.created_at.timestamp() if opp.created_at else 0.0
    return rank, -created, -(opp.id or 0)


@dataclass
class ReconcilePlan:
    inserts: list[OpportunityCandidate] = field(default_factory=list)
    updates: list[tuple[Opportunity, OpportunityCandidate]] = field(default_factory=list)
    keep_ids: set[int] = field(default_factory=set)
    unchanged: int = 0
    skipped_actioned: int = 0


def improves(existing: Opportunity, cand: OpportunityCandidate) -> bool:
    if cand.annual_value > float(existing.annual_margin_gain or 0):
        return True
    if cand.value > float(existing.potential_margin_gain or 0):
        return True
    return bool(cand.recommended_ndc) and cand.recommended_ndc != existing.recommended_ndc


def plan_reconciliation(
    candidates: list[OpportunityCandidate], existing: list[Opportunity],
) -> ReconcilePlan:
    """Decide insert / update / skip for each candidate against the ledger. No I/O."""
    ledger: dict[tuple[int, str], list[Opportunity]] = {}
    for opp in existing:
        key = (opp.patient_id, (opp.recommended_drug_name or "").strip().upper())
        ledger.setdefault(key, []).append(opp)
    for rows in ledger.values():
        rows.sort(key=_precedence)

    # Two survivors can still share a recommended drug (different current drugs)
    merged = _keep_best(candidates, lambda c: c.ledger_key)

    plan = ReconcilePlan()
    for cand in merged:
        rows = ledger.get(cand.ledger_key)
        top = rows[0] if rows else None
        if top is None or top.status in RETRYABLE_STATUSES:
            plan.inserts.append(cand)
        elif top.status == NOT_SUBMITTED:
            plan.keep_ids.add(top.id)
            if improves(top, cand):
                plan.updates.append((top, cand))
            else:
                plan.unchanged += 1
        else:
            plan.skipped_actioned += 1
    return plan


def _money(value: float) -> Decimal:
    return Decimal(str(round(value, 2)))


@dataclass
class ReconcileOutcome:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    cleared: int = 0
    skipped_actioned: int = 0
    insert_errors: int = 0

    def to_dict(self) -> dict:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "cleared": self.cleared,
            "skipped_actioned": self.skipped_actioned,
            "insert_errors": self.insert_errors,
        }


class OpportunityReconciler:
    """Writes one pharmacy's surviving candidates into the opportunity ledger."""

    def __init__(self, session: AsyncSession, chunk_size: int | None = None):
        self.session = session
        self.chunk_size = chunk_size or settings.upsert_chunk_size

    async def load_existing(self, pharmacy_id: int) -> list[Opportunity]:
        result = await self.session.execute(
            select(Opportunity).where(Opportunity.pharmacy_id == pharmacy_id)
        )
        return list(result.scalars())

    async def commit(
        self, pharmacy_id: int, candidates: list[OpportunityCandidate], batch_id: str | None = None,
    ) -> ReconcileOutcome:
        existing = await self.load_existing(pharmacy_id)
        plan = plan_reconciliation(candidates, existing)
        outcome = ReconcileOutcome(unchanged=plan.unchanged, skipped_actioned=plan.skipped_actioned)

        outcome.cleared = await self.clear_stale(pharmacy_id, plan.keep_ids)

        for opp, cand in plan.updates:
            self._apply_update(opp, cand, batch_id)
        if plan.updates:
            await self.session.flush()
        outcome.updated = len(plan.updates)

        for start in range(0, len(plan.inserts), self.chunk_size):
            chunk = plan.inserts[start:start + self.chunk_size]
            inserted, errors = await self._insert_chunk(chunk, batch_id)
            outcome.inserted += inserted
            outcome.insert_errors += errors

        opportunity_writes_total.labels(action="inserted").inc(outcome.inserted)
        opportunity_writes_total.labels(action="updated").inc(outcome.updated)
        opportunity_writes_total.labels(action="cleared").inc(outcome.cleared)
        opportunity_writes_total.labels(action="error").inc(outcome.insert_errors)
        return outcome

    async def clear_stale(self, pharmacy_id: int, keep_ids: set[int]) -> int:
        """Delete this pharmacy's Not Submitted rows that the current scan did not reproduce."""
        stmt = delete(Opportunity).where(
            Opportunity.pharmacy_id == pharmacy_id,
            Opportunity.status == NOT_SUBMITTED,
        )
        if keep_ids:
            stmt = stmt.where(Opportunity.id.not_in(sorted(keep_ids)))
        result = await self.session.execute(stmt.execution_options(synchronize_session="fetch"))
        return result.rowcount or 0

    def _apply_update(self, opp: Opportunity, cand: OpportunityCandidate, batch_id: str | None) -> None:
        opp.potential_margin_gain = max(opp.potential_margin_gain or Decimal("0"), _money(cand.value))
        opp.annual_margin_gain = max(opp.annual_margin_gain or Decimal("0"), _money(cand.annual_value))
        if cand.recommended_ndc:
            opp.recommended_ndc = cand.recommended_ndc
        if cand.avg_dispensed_qty is not None:
            opp.avg_dispensed_qty = _money(cand.avg_dispensed_qty)
        if cand.claim_date is not None:
            opp.claim_date = cand.claim_date
        opp.value_source = cand.value_source
        opp.scan_batch_id = batch_id

    def _build(self, cand: OpportunityCandidate, batch_id: str | None) -> Opportunity:
        return Opportunity(
            opportunity_id=f"OPP-{uuid4().hex[:12].upper()}",
            pharmacy_id=cand.pharmacy_id,
            patient_id=cand.patient_id,
            dispensing_record_id=cand.dispensing_record_id,
            trigger_id=cand.trigger_id,
            opportunity_type=cand.opportunity_type,
            current_drug_name=cand.current_drug_name,
            current_ndc=cand.current_ndc,
            recommended_drug_name=cand.recommended_drug_name,
            recommended_ndc=cand.recommended_ndc,
            avg_dispensed_qty=_money(cand.avg_dispensed_qty) if cand.avg_dispensed_qty is not None else None,
            potential_margin_gain=_money(cand.value),
            annual_margin_gain=_money(cand.annual_value),
            value_source=cand.value_source,
            clinical_rationale=cand.clinical_rationale,
            clinical_priority=cand.clinical_priority,
            prescriber_name=cand.prescriber_name,
            insurance_bin=cand.insurance_bin,
            insurance_group=cand.insurance_group,
            claim_date=cand.claim_date,
            status=NOT_SUBMITTED,
            scan_batch_id=batch_id,
        )

    async def _insert_chunk(self, chunk: list[OpportunityCandidate], batch_id: str | None) -> tuple[int, int]:
        """Insert a chunk inside a savepoint; on a constraint violation retry row by row."""
        try:
            async with self.session.begin_nested():
                self.session.add_all([self._build(c, batch_id) for c in chunk])
                await self.session.flush()
            return len(chunk), 0
        except IntegrityError as exc:
            logger.warning(
                "Chunk of %d opportunities hit a constraint (%s), retrying row by row",
                len(chunk), exc.orig,
            )

        inserted = errors = 0
        for cand in chunk:
            try:
                async with self.session.begin_nested():
                    self.session.add(self._build(cand, batch_id))
                    await self.session.flush()
                inserted += 1
            except IntegrityError as exc:
                errors += 1
                logger.warning(
                    "Skipped opportunity for patient %s / %s: %s",
                    cand.patient_id, cand.recommended_drug_name, exc.orig,
                )
        return inserted, errors
