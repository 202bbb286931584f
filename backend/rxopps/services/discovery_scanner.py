"""
Discovery Scanner (negative-GP miner)

Looks across every non-demo pharmacy for drug/payer combinations that keep
losing money, finds a same-class (or same therapeutic area) alternative that
the same payer reimburses profitably, and files the pair as a proposal in
the approval queue. It never creates or edits a live trigger.
"""

import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rxopps.models import (
    CmsFormularyDrug,
    DispensingRecord,
    FormularyItem,
    PendingOpportunityType,
    Pharmacy,
    Trigger,
)
from rxopps.services.drug_classifier import (
    DrugClassifier,
    broad_area_pattern,
    display_name,
    THERAPEUTIC_AREAS,
)
from rxopps.services.rule_matcher import keywords_match, normalize_drug_text
from rxopps.services.scan_runs import ScanRunRecorder
from rxopps.telemetry.metrics import discovery_candidates_total
from rxopps.telemetry.run_context import bind_batch_id, new_batch_id

logger = logging.getLogger(__name__)

PLACEHOLDER_BINS = ("000000", "000001", "999999", "")
PLACEHOLDER_GROUPS = ("NO GROUP NUMBER", "NO GROUP", "NONE", "N/A", "")
CMS_TIER_LABELS = ["", "Preferred Generic", "Generic", "Preferred Brand", "Non-Preferred Brand", "Specialty", "Specialty High Cost"]
LOSER_LIMIT = 200
ALTERNATIVE_LIMIT = 5
_UNIT_WORDS = {"MG", "ML", "MCG", "TAB", "CAP", "TABS", "CAPS"}
_STRENGTH_SPLIT = re.compile(r"\s+\d|\s+\(|\s+-")


class DiscoveryThresholds(BaseModel):
    min_fills_negative: int = Field(default=3, ge=1)
    max_avg_gp: float = Field(default=-2.00, lt=0)
    min_fills_alternative: int = Field(default=2, ge=1)
    min_avg_gp_alternative: float = Field(default=5.00)
    lookback_days: int = Field(default=180, ge=1)
    min_margin_gain: float = Field(default=10.00, ge=0)
    max_results: int = Field(default=50, ge=1)


def base_token(drug_name: str | None) -> str:
    tokens = (drug_name or "").upper().split()
    return tokens[0] if tokens else ""


def extract_keywords(drug_name: str | None) -> list[str]:
    """'Atorvastatin Calcium 40 MG Tab' -> ['atorvastatin', 'calcium']"""
    if not drug_name:
        return []
    base = _STRENGTH_SPLIT.split(drug_name, maxsplit=1)[0].strip()
    words = [
        w for w in re.split(r"[\s\-]+", base)
        if len(w) >= 3 and not w.isdigit() and w.upper() not in _UNIT_WORDS
    ]
    return [w.lower() for w in words][:5]


@dataclass
class LoserGroup:
    base_drug: str
    insurance_bin: str
    insurance_group: str | None
    fill_count: int = 0
    total_gp: float = 0.0
    min_gp: float | None = None
    max_gp: float | None = None
    patients: set = field(default_factory=set)
    pharmacies: set = field(default_factory=set)
    drug_names: Counter = field(default_factory=Counter)

    @property
    def avg_gp(self) -> float:
        return self.total_gp / self.fill_count if self.fill_count else 0.0

    @property
    def drug_name(self) -> str:
        """Most frequently filled spelling in the group."""
        return self.drug_names.most_common(1)[0][0] if self.drug_names else self.base_drug


@dataclass(frozen=True)
class Alternative:
    drug_name: str
    fill_count: int
    patient_count: int
    avg_gp: float
    max_gp: float


@dataclass
class DiscoveryResult:
    batch_id: str
    status: str = "running"
    losers_found: int = 0
    candidates_generated: int = 0
    submitted_to_queue: int = 0
    skipped_existing: int = 0
    skipped_no_class: int = 0
    skipped_no_alternative: int = 0
    skipped_low_gain: int = 0
    errors: list[dict] = field(default_factory=list)
    submitted: list[dict] = field(default_factory=list)
    unclassified_drugs: list[dict] = field(default_factory=list)
    no_alternative_drugs: list[dict] = field(default_factory=list)
    duration_seconds: float = 0.0
    error_message: str | None = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "losers_found": self.losers_found,
            "candidates_generated": self.candidates_generated,
            "submitted_to_queue": self.submitted_to_queue,
            "skipped_existing": self.skipped_existing,
            "skipped_no_class": self.skipped_no_class,
            "skipped_no_alternative": self.skipped_no_alternative,
            "skipped_low_gain": self.skipped_low_gain,
            "errored": len(self.errors),
            "errors": self.errors[:50],
            "submitted": self.submitted,
            "unclassified_drugs": self.unclassified_drugs[:100],
            "no_alternative_drugs": self.no_alternative_drugs[:100],
            "duration_seconds": round(self.duration_seconds, 3),
            "error_message": self.error_message,
        }


def _group_clause(column, group: str | None):
    return column.is_(None) if group is None else column == group


class DiscoveryScanner:
    def __init__(self, session_factory: async_sessionmaker, thresholds: DiscoveryThresholds | None = None):
        self.session_factory = session_factory
        self.thresholds = thresholds or DiscoveryThresholds()
        self.recorder = ScanRunRecorder(session_factory, "discovery")

    async def run(self, as_of: date | None = None) -> DiscoveryResult:
        as_of = as_of or date.today()
        result = DiscoveryResult(batch_id=new_batch_id("discovery"))

        with bind_batch_id(result.batch_id):
            t_start = time.time()
            await self.recorder.start(result.batch_id, ["all"])
            try:
                async with self.session_factory() as session:
                    await self._scan(session, result, as_of)
                    await session.commit()
                result.status = "completed"
            except Exception as exc:
                result.status = "failed"
                result.error_message = str(exc)
                logger.error("Discovery scan %s failed: %s", result.batch_id, exc, exc_info=True)
                raise
            finally:
                result.duration_seconds = time.time() - t_start
                await self.recorder.finish(
                    result.batch_id,
                    status=result.status,
                    duration_seconds=result.duration_seconds,
                    records_scanned=result.losers_found,
                    opportunities_found=result.submitted_to_queue,
                    opportunities_by_type={"therapeutic_interchange": result.submitted_to_queue},
                    stats=result.to_dict(),
                    error_message=result.error_message,
                )
        return result

    async def _scan(self, session: AsyncSession, result: DiscoveryResult, as_of: date) -> None:
        t = self.thresholds
        losers = await self.find_losers(session, as_of)
        result.losers_found = len(losers)
        logger.info("Found %d negative GP drug/payer combinations", len(losers))

        classifier = DrugClassifier(session)
        enabled_triggers = list((await session.execute(
            select(Trigger).where(Trigger.is_enabled.is_(True))
        )).scalars())

        for loser in losers:
            if result.submitted_to_queue >= t.max_results:
                logger.info("Reached max_results cap of %d", t.max_results)
                break
            try:
                async with session.begin_nested():
                    outcome = await self._process_loser(session, loser, classifier, enabled_triggers, result, as_of)
                discovery_candidates_total.labels(outcome=outcome).inc()
            except Exception as exc:
                discovery_candidates_total.labels(outcome="error").inc()
                result.errors.append({"drug": loser.drug_name, "error": str(exc)[:300]})
                logger.error("Error processing loser drug %s: %s", loser.drug_name, exc, exc_info=True)

    async def _process_loser(
        self,
        session: AsyncSession,
        loser: LoserGroup,
        classifier: DrugClassifier,
        enabled_triggers: list[Trigger],
        result: DiscoveryResult,
        as_of: date,
    ) -> str:
        t = self.thresholds
        summary = {
            "drug": loser.drug_name,
            "bin": loser.insurance_bin,
            "group": loser.insurance_group,
            "avg_gp": round(loser.avg_gp, 2),
            "fills": loser.fill_count,
            "patients": len(loser.patients),
            "total_gp": round(loser.total_gp, 2),
        }

        classified = await classifier.classify(loser.drug_name)
        if classified is None:
            result.skipped_no_class += 1
            result.unclassified_drugs.append(summary)
            return "skipped_no_class"
        drug_class, match_tier = classified

        pattern = await classifier.pattern_for(drug_class)
        if pattern is None:
            result.skipped_no_class += 1
            result.unclassified_drugs.append(summary)
            return "skipped_no_class"

        alternatives = await self.find_alternatives(session, pattern, loser, as_of)
        match_level, broad_area = "same_class", None
        if not alternatives:
            broad = broad_area_pattern(drug_class)
            if broad is not None:
                area_key, area_pattern = broad
                alternatives = await self.find_alternatives(session, area_pattern, loser, as_of)
                if alternatives:
                    match_level, broad_area = "therapeutic_area", THERAPEUTIC_AREAS[area_key]["name"]

        if not alternatives:
            result.skipped_no_alternative += 1
            result.no_alternative_drugs.append({**summary, "therapeutic_class": display_name(drug_class)})
            return "skipped_no_alternative"

        best = alternatives[0]
        per_patient_gain = (best.avg_gp - loser.avg_gp) * 12
        if per_patient_gain < t.min_margin_gain:
            result.skipped_low_gain += 1
            return "skipped_low_gain"

        result.candidates_generated += 1
        if await self.check_existing(session, best.drug_name, loser.drug_name, enabled_triggers):
            result.skipped_existing += 1
            return "skipped_existing"

        coverage = await self.enrich_with_coverage(session, best.drug_name, loser)
        item = self._proposal(
            result.batch_id, loser, best, alternatives, drug_class, match_tier,
            match_level, broad_area, per_patient_gain, coverage,
        )
        session.add(item)
        await session.flush()

        result.submitted_to_queue += 1
        result.submitted.append({
            **summary,
            "pending_type_id": item.pending_type_id,
            "recommended_drug": best.drug_name,
            "alt_avg_gp": round(best.avg_gp, 2),
            "match_level": match_level,
            "per_patient_annual_gain": round(per_patient_gain, 2),
            "coverage_confidence": coverage["coverage_confidence"],
        })
        return "submitted"

    # ── 1. Losers ────────────────────────────────────────────────────────

    async def find_losers(self, session: AsyncSession, as_of: date) -> list[LoserGroup]:
        """Negative-margin (base drug, BIN, Group) groups across all non-demo pharmacies."""
        t = self.thresholds
        rec = DispensingRecord
        stmt = (
            select(
                rec.drug_name,
                rec.insurance_bin,
                rec.insurance_group,
                rec.pharmacy_id,
                rec.patient_id,
                func.count().label("fills"),
                func.sum(rec.gross_profit).label("total_gp"),
                func.min(rec.gross_profit).label("min_gp"),
                func.max(rec.gross_profit).label("max_gp"),
            )
            .join(Pharmacy, Pharmacy.id == rec.pharmacy_id)
            .where(
                Pharmacy.is_demo.is_(False),
                rec.dispensed_date >= as_of - timedelta(days=t.lookback_days),
                rec.gross_profit.is_not(None),
                rec.acquisition_cost > 0,
                rec.insurance_bin.is_not(None),
                rec.insurance_bin.not_in(PLACEHOLDER_BINS),
                or_(
                    rec.insurance_group.is_(None),
                    func.upper(rec.insurance_group).not_in(PLACEHOLDER_GROUPS),
                ),
                (rec.insurance_pay.is_not(None)) | (rec.patient_pay.is_not(None)),
            )
            .group_by(rec.drug_name, rec.insurance_bin, rec.insurance_group, rec.pharmacy_id, rec.patient_id)
        )

        groups: dict[tuple, LoserGroup] = {}
        for row in (await session.execute(stmt)).all():
            key = (base_token(row.drug_name), row.insurance_bin, row.insurance_group)
            group = groups.get(key)
            if group is None:
                group = groups[key] = LoserGroup(*key)
            group.fill_count += row.fills
            group.total_gp += float(row.total_gp or 0)
            low, high = float(row.min_gp), float(row.max_gp)
            group.min_gp = low if group.min_gp is None else min(group.min_gp, low)
            group.max_gp = high if group.max_gp is None else max(group.max_gp, high)
            group.patients.add(row.patient_id)
            group.pharmacies.add(row.pharmacy_id)
            group.drug_names[row.drug_name] += row.fills

        losers = [
            g for g in groups.values()
            if g.fill_count >= t.min_fills_negative and g.avg_gp <= t.max_avg_gp
        ]
        losers.sort(key=lambda g: g.total_gp)
        return losers[:LOSER_LIMIT]

    # ── 2. Alternatives ──────────────────────────────────────────────────

    async def find_alternatives(
        self, session: AsyncSession, pattern: re.Pattern, loser: LoserGroup, as_of: date,
    ) -> list[Alternative]:
        """Profitable same-payer drugs matching the class pattern, best average first."""
        t = self.thresholds
        rec = DispensingRecord
        avg_gp = func.avg(rec.gross_profit)
        stmt = (
            select(
                rec.drug_name,
                func.count().label("fills"),
                func.count(rec.patient_id.distinct()).label("patients"),
                avg_gp.label("avg_gp"),
                func.max(rec.gross_profit).label("max_gp"),
            )
            .join(Pharmacy, Pharmacy.id == rec.pharmacy_id)
            .where(
                Pharmacy.is_demo.is_(False),
                rec.insurance_bin == loser.insurance_bin,
                _group_clause(rec.insurance_group, loser.insurance_group),
                rec.dispensed_date >= as_of - timedelta(days=t.lookback_days),
                rec.gross_profit.is_not(None),
                rec.acquisition_cost > 0,
            )
            .group_by(rec.drug_name)
            .having(and_(func.count() >= t.min_fills_alternative, avg_gp >= t.min_avg_gp_alternative))
        )

        alternatives = [
            Alternative(row.drug_name, row.fills, row.patients, float(row.avg_gp), float(row.max_gp))
            for row in (await session.execute(stmt)).all()
            if pattern.search(row.drug_name or "") and base_token(row.drug_name) != loser.base_drug
        ]
        alternatives.sort(key=lambda a: a.avg_gp, reverse=True)
        return alternatives[:ALTERNATIVE_LIMIT]

    # ── 3. Duplicate proposals ───────────────────────────────────────────

    async def check_existing(
        self, session: AsyncSession, recommended_drug: str, current_drug: str, enabled_triggers: list[Trigger],
    ) -> bool:
        recommended_lower = recommended_drug.strip().lower()
        if any((tr.recommended_drug or "").strip().lower() == recommended_lower for tr in enabled_triggers):
            return True

        queued = (await session.execute(
            select(PendingOpportunityType.id)
            .where(
                func.lower(PendingOpportunityType.recommended_drug_name) == recommended_lower,
                PendingOpportunityType.status.in_(("pending", "approved")),
            )
            .limit(1)
        )).scalar_one_or_none()
        if queued is not None:
            return True

        current_text = normalize_drug_text(current_drug)
        alt_base = base_token(recommended_drug).lower()
        for tr in enabled_triggers:
            keywords = [normalize_drug_text(k) for k in (tr.detection_keywords or []) if k and k.strip()]
            if keywords_match(keywords, current_text, "any") and alt_base in (tr.recommended_drug or "").lower():
                return True
        return False

    # ── 4. Coverage enrichment ───────────────────────────────────────────

    async def _claim_stats(
        self, session: AsyncSession, drug_name: str, insurance_bin: str, group: str | None,
    ) -> dict | None:
        rec = DispensingRecord
        like = f"%{base_token(drug_name)}%"
        row = (await session.execute(
            select(
                func.count().label("claim_count"),
                func.count(rec.patient_id.distinct()).label("patient_count"),
                func.avg(func.coalesce(rec.insurance_pay, 0)).label("avg_insurance_pay"),
                func.avg(func.coalesce(rec.patient_pay, 0)).label("avg_patient_pay"),
                func.avg(rec.acquisition_cost).label("avg_acquisition_cost"),
                func.avg(func.coalesce(rec.patient_pay, 0) + func.coalesce(rec.insurance_pay, 0)).label("avg_total_reimbursement"),
                func.avg(func.coalesce(rec.gross_profit, 0)).label("avg_gp"),
                func.min(func.coalesce(rec.gross_profit, 0)).label("min_gp"),
                func.max(func.coalesce(rec.gross_profit, 0)).label("max_gp"),
                func.max(rec.dispensed_date).label("last_fill_date"),
            ).where(
                func.upper(rec.drug_name).like(like),
                rec.insurance_bin == insurance_bin,
                _group_clause(rec.insurance_group, group),
                rec.acquisition_cost > 0,
            )
        )).one()
        if not row.claim_count:
            return None

        def money(value):
            return round(float(value), 2) if value is not None else None

        return {
            "claim_count": int(row.claim_count),
            "patient_count": int(row.patient_count),
            "avg_insurance_pay": money(row.avg_insurance_pay),
            "avg_patient_pay": money(row.avg_patient_pay),
            "avg_acquisition_cost": money(row.avg_acquisition_cost),
            "avg_total_reimbursement": money(row.avg_total_reimbursement),
            "avg_gp": money(row.avg_gp),
            "min_gp": money(row.min_gp),
            "max_gp": money(row.max_gp),
            "last_fill_date": str(row.last_fill_date) if row.last_fill_date else None,
        }

    async def enrich_with_coverage(self, session: AsyncSession, recommended_drug: str, loser: LoserGroup) -> dict:
        """
        Evidence that the payer covers the alternative, strongest first:
        verified paid claims, CMS Part D formulary, cached commercial formulary.
        """
        enrichment = {
            "paid_claims": None,
            "loser_claims": None,
            "cms_coverage": None,
            "formulary_data": None,
            "estimated_gp": None,
            "coverage_confidence": "none",
        }
        like = f"%{base_token(recommended_drug)}%"

        enrichment["paid_claims"] = await self._claim_stats(
            session, recommended_drug, loser.insurance_bin, loser.insurance_group,
        )
        if enrichment["paid_claims"]:
            enrichment["coverage_confidence"] = "verified_claims"

        enrichment["loser_claims"] = await self._claim_stats(
            session, loser.drug_name, loser.insurance_bin, loser.insurance_group,
        )

        ndcs = list((await session.execute(
            select(DispensingRecord.ndc)
            .where(func.upper(DispensingRecord.drug_name).like(like), DispensingRecord.ndc.is_not(None))
            .distinct()
            .limit(5)
        )).scalars())
        if ndcs:
            cms_rows = list((await session.execute(
                select(CmsFormularyDrug).where(CmsFormularyDrug.ndc.in_(ndcs)).limit(5)
            )).scalars())
            if cms_rows:
                first = cms_rows[0]
                tier = first.tier_level
                enrichment["cms_coverage"] = {
                    "covered": True,
                    "tier": tier,
                    "tier_label": CMS_TIER_LABELS[tier] if tier and 0 < tier < len(CMS_TIER_LABELS) else f"Tier {tier}",
                    "prior_auth": first.prior_authorization,
                    "step_therapy": first.step_therapy,
                    "quantity_limit": first.quantity_limit,
                    "quantity_limit_amount": float(first.quantity_limit_amount) if first.quantity_limit_amount is not None else None,
                    "quantity_limit_days": first.quantity_limit_days,
                    "plan_count": len(cms_rows),
                    "sample_plan": first.plan_name or first.contract_id,
                }
                if enrichment["coverage_confidence"] == "none":
                    enrichment["coverage_confidence"] = "cms_formulary"

        formulary = (await session.execute(
            select(FormularyItem)
            .where(
                FormularyItem.insurance_bin == loser.insurance_bin,
                _group_clause(FormularyItem.insurance_group, loser.insurance_group),
                func.upper(FormularyItem.drug_name).like(like),
            )
            .limit(1)
        )).scalar_one_or_none()
        if formulary is not None:
            enrichment["formulary_data"] = {
                "on_formulary": formulary.on_formulary,
                "tier": formulary.tier,
                "tier_description": formulary.tier_description,
                "preferred": formulary.preferred,
                "prior_auth": formulary.prior_auth_required,
                "step_therapy": formulary.step_therapy_required,
                "estimated_copay": float(formulary.estimated_copay) if formulary.estimated_copay is not None else None,
                "reimbursement_rate": float(formulary.reimbursement_rate) if formulary.reimbursement_rate is not None else None,
                "data_source": formulary.data_source,
            }
            if enrichment["coverage_confidence"] == "none":
                enrichment["coverage_confidence"] = "formulary_cache"

        avg_acq = (await session.execute(
            select(func.avg(DispensingRecord.acquisition_cost)).where(
                func.upper(DispensingRecord.drug_name).like(like),
                DispensingRecord.acquisition_cost > 0,
            )
        )).scalar()
        if avg_acq:
            avg_acq = round(float(avg_acq), 2)
            expected, source = None, None
            if enrichment["paid_claims"]:
                expected, source = enrichment["paid_claims"]["avg_total_reimbursement"], "paid_claims"
            elif enrichment["formulary_data"] and enrichment["formulary_data"]["reimbursement_rate"]:
                expected, source = enrichment["formulary_data"]["reimbursement_rate"], "formulary_rate"
            if expected:
                enrichment["estimated_gp"] = {
                    "avg_acquisition_cost": avg_acq,
                    "expected_reimbursement": expected,
                    "estimated_gp_per_fill": round(expected - avg_acq, 2),
                    "estimated_annual_gp": round((expected - avg_acq) * 12, 2),
                    "source": source,
                }
        return enrichment

    # ── 5. Proposal ──────────────────────────────────────────────────────

    def _proposal(
        self,
        batch_id: str,
        loser: LoserGroup,
        best: Alternative,
        alternatives: list[Alternative],
        drug_class: str,
        match_tier: str,
        match_level: str,
        broad_area: str | None,
        per_patient_gain: float,
        coverage: dict,
    ) -> PendingOpportunityType:
        patient_count = len(loser.patients)
        source_details = {
            "scan_type": "negative_gp_discovery",
            "match_level": match_level,
            "broad_area": broad_area,
            "loser_drug": loser.drug_name,
            "loser_base_drug": loser.base_drug,
            "loser_bin": loser.insurance_bin,
            "loser_group": loser.insurance_group,
            "loser_avg_gp": round(loser.avg_gp, 2),
            "loser_fill_count": loser.fill_count,
            "loser_patient_count": patient_count,
            "loser_total_loss": round(loser.total_gp, 2),
            "loser_worst_gp": loser.min_gp,
            "loser_best_gp": loser.max_gp,
            "loser_claims": coverage["loser_claims"],
            "therapeutic_class": drug_class,
            "therapeutic_class_display": display_name(drug_class),
            "match_tier": match_tier,
            "alternative_avg_gp": round(best.avg_gp, 2),
            "alternative_fill_count": best.fill_count,
            "alternative_patient_count": best.patient_count,
            "per_patient_annual_gain": round(per_patient_gain, 2),
            "all_alternatives": [
                {"drug": a.drug_name, "avg_gp": round(a.avg_gp, 2), "fills": a.fill_count, "patients": a.patient_count}
                for a in alternatives
            ],
            "coverage_confidence": coverage["coverage_confidence"],
            "recommended_paid_claims": coverage["paid_claims"],
            "cms_coverage": coverage["cms_coverage"],
            "formulary_data": coverage["formulary_data"],
            "estimated_gp": coverage["estimated_gp"],
            "rationale": (
                f"{loser.drug_name} averages ${loser.avg_gp:.2f} per fill on "
                f"{loser.insurance_bin}/{loser.insurance_group or 'ALL'}; "
                f"{best.drug_name} ({display_name(drug_class)}) averages ${best.avg_gp:.2f} on the same payer."
            ),
        }
        sample_data = {
            "current_drugs": sorted(loser.drug_names),
            "detection_keywords": extract_keywords(loser.drug_name),
            "bin_group": f"{loser.insurance_bin}/{loser.insurance_group or 'ALL'}",
            "per_patient_annual_gain": round(per_patient_gain, 2),
        }
        return PendingOpportunityType(
            pending_type_id=f"POT-{uuid4().hex[:10].upper()}",
            recommended_drug_name=best.drug_name,
            opportunity_type="therapeutic_interchange",
            source="negative_gp_scan",
            source_details=source_details,
            sample_data=sample_data,
            affected_pharmacies=sorted(loser.pharmacies),
            total_patient_count=patient_count,
            estimated_annual_margin=Decimal(str(round(per_patient_gain * patient_count, 2))),
            coverage_confidence=coverage["coverage_confidence"],
            status="pending",
            scan_batch_id=batch_id,
        )
