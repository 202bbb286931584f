"""
Approval Queue

Administrator decisions on discovery proposals:

    pending -> approved  (links to, or creates, a live Trigger)
    pending -> rejected

Approval is the only route from a proposal to a Trigger.
"""

import logging
import re
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rxopps.exceptions import ApprovalStateError, NotFoundError
from rxopps.models import ApprovalLog, PendingOpportunityType, Trigger, TriggerPayerOverride
from rxopps.services.audit_service import AuditService

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

VALID_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {APPROVED, REJECTED},
    APPROVED: set(),
    REJECTED: set(),
}

_STRENGTH_SPLIT = re.compile(r"\s+\d|\s+\(|\s+-")
MAX_KEYWORDS = 10


def keywords_from_drug_names(drug_names: list[str]) -> list[str]:
    """Base names ("LOSARTAN POTASSIUM 50MG TAB" -> "LOSARTAN POTASSIUM") usable as detection keywords."""
    keywords: list[str] = []
    for name in drug_names:
        base = _STRENGTH_SPLIT.split(name or "", maxsplit=1)[0].strip().upper()
        if len(base) >= 3 and base not in keywords:
            keywords.append(base)
        if len(keywords) >= MAX_KEYWORDS:
            break
    return keywords


class ApprovalQueue:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditService(session)

    async def list_pending(self, limit: int = 50) -> list[PendingOpportunityType]:
        result = await self.session.execute(
            select(PendingOpportunityType)
            .where(PendingOpportunityType.status == PENDING)
            .order_by(PendingOpportunityType.estimated_annual_margin.desc())
            .limit(limit)
        )
        return list(result.scalars())

    async def _get(self, pending_type_id: str) -> PendingOpportunityType:
        item = (await self.session.execute(
            select(PendingOpportunityType).where(PendingOpportunityType.pending_type_id == pending_type_id)
        )).scalar_one_or_none()
        if item is None:
            raise NotFoundError(f"Pending opportunity type {pending_type_id} not found")
        return item

    def _check_transition(self, item: PendingOpportunityType, new_status: str) -> None:
        allowed = VALID_TRANSITIONS.get(item.status, set())
        if new_status not in allowed:
            raise ApprovalStateError(
                f"{item.pending_type_id} is {item.status}; cannot move to {new_status}"
            )

    async def approve(
        self, pending_type_id: str, *, reviewer: str, notes: str | None = None,
    ) -> tuple[PendingOpportunityType, Trigger]:
        item = await self._get(pending_type_id)
        self._check_transition(item, APPROVED)

        trigger = (await self.session.execute(
            select(Trigger)
            .where(
                Trigger.is_enabled.is_(True),
                func.lower(Trigger.recommended_drug) == item.recommended_drug_name.strip().lower(),
            )
            .order_by(Trigger.priority, Trigger.id)
            .limit(1)
        )).scalar_one_or_none()

        if trigger is None:
            trigger = self._trigger_from_proposal(item, reviewer)
            self.session.add(trigger)
            await self.session.flush()
            logger.info("Created trigger %s from proposal %s", trigger.trigger_code, pending_type_id)
        else:
            logger.info("Proposal %s linked to existing trigger %s", pending_type_id, trigger.trigger_code)

        item.status = APPROVED
        item.reviewed_by = reviewer
        item.reviewed_at = datetime.utcnow()
        item.review_notes = notes
        item.created_trigger_id = trigger.id

        self.session.add(ApprovalLog(
            pending_type_id=item.id, action=APPROVED, performed_by=reviewer,
            notes=notes, trigger_id=trigger.id,
        ))
        await self.session.flush()
        await self.audit.log_pending_type_reviewed(pending_type_id, APPROVED, reviewer, trigger.trigger_code)
        return item, trigger

    async def reject(
        self, pending_type_id: str, *, reviewer: str, notes: str | None = None,
    ) -> PendingOpportunityType:
        item = await self._get(pending_type_id)
        self._check_transition(item, REJECTED)

        item.status = REJECTED
        item.reviewed_by = reviewer
        item.reviewed_at = datetime.utcnow()
        item.review_notes = notes

        self.session.add(ApprovalLog(
            pending_type_id=item.id, action=REJECTED, performed_by=reviewer, notes=notes,
        ))
        await self.session.flush()
        await self.audit.log_pending_type_reviewed(pending_type_id, REJECTED, reviewer)
        return item

    def _trigger_from_proposal(self, item: PendingOpportunityType, reviewer: str) -> Trigger:
        sample = item.sample_data or {}
        details = item.source_details or {}

        keywords = keywords_from_drug_names(sample.get("current_drugs") or [])
        if not keywords:
            keywords = [k.upper() for k in (sample.get("detection_keywords") or [])][:MAX_KEYWORDS]

        patients = max(item.total_patient_count or 0, 1)
        default_value = round(float(item.estimated_annual_margin or 0) / patients / 12)

        insurance_bin = (details.get("loser_bin") or "").strip()
        group = (details.get("loser_group") or "").strip()

        trigger = Trigger(
            trigger_code=f"DISC-{item.pending_type_id.split('-')[-1]}",
            display_name=f"{details.get('loser_drug') or 'Current drug'} -> {item.recommended_drug_name}",
            trigger_type="standard",
            is_enabled=True,
            priority=50,
            detection_keywords=keywords,
            keyword_match_mode="any",
            exclude_keywords=[],
            if_has_keywords=[],
            if_not_has_keywords=[],
            pharmacy_inclusions=[],
            contract_prefix_exclusions=[],
            bin_restriction=f"ONLY {insurance_bin}" if insurance_bin else None,
            group_restriction=f"{insurance_bin}:ONLY {group}" if insurance_bin and group else None,
            recommended_drug=item.recommended_drug_name,
            default_gp_value=Decimal(default_value) if default_value > 0 else None,
            annual_fills=12,
            clinical_rationale=details.get("rationale"),
            created_by=reviewer,
        )

        alt_avg = details.get("alternative_avg_gp")
        if insurance_bin and alt_avg and float(alt_avg) > 0:
            trigger.bin_values.append(TriggerPayerOverride(
                insurance_bin=insurance_bin,
                insurance_group=group or None,
                gp_value=Decimal(str(round(float(alt_avg), 2))),
                coverage_status="covered" if item.coverage_confidence == "verified_claims" else "unknown",
                verified_claim_count=int(details.get("alternative_fill_count") or 0),
                verified_at=datetime.utcnow(),
            ))
        return trigger
