"""
Opportunity Workflow

Human-driven status changes on opportunities, with validated transitions
and an audit entry for every change. A "Didn't Work" outcome feeds back
into the trigger's payer overrides as an exclusion for that BIN/Group.
"""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rxopps.exceptions import InvalidTransitionError, NotFoundError
from rxopps.models import Opportunity, TriggerPayerOverride
from rxopps.models.opportunity import (
    APPROVED, COMPLETED, DECLINED, DENIED, DIDNT_WORK, FLAGGED,
    NOT_SUBMITTED, PENDING, SUBMITTED,
)
from rxopps.services.audit_service import AuditService

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[str, set[str]] = {
    NOT_SUBMITTED: {SUBMITTED},
    SUBMITTED: {PENDING},
    PENDING: {APPROVED, DENIED, DECLINED, FLAGGED, DIDNT_WORK},
    APPROVED: {COMPLETED},
    COMPLETED: set(),  # terminal
    DENIED: set(),
    DECLINED: set(),
    FLAGGED: set(),
    DIDNT_WORK: set(),
}


class OpportunityWorkflow:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditService(session)

    async def _get(self, opportunity_id: str) -> Opportunity:
        opp = (await self.session.execute(
            select(Opportunity).where(Opportunity.opportunity_id == opportunity_id)
        )).scalar_one_or_none()
        if opp is None:
            raise NotFoundError(f"Opportunity {opportunity_id} not found")
        return opp

    async def transition(
        self, opportunity_id: str, new_status: str, *, actor: str, note: str | None = None,
    ) -> Opportunity:
        """
        Move an opportunity along its lifecycle.

        Allowed transitions:
            Not Submitted -> Submitted -> Pending
            Pending -> Approved | Denied | Declined | Flagged | Didn't Work
            Approved -> Completed
        """
        opp = await self._get(opportunity_id)
        allowed = VALID_TRANSITIONS.get(opp.status, set())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Invalid transition: {opp.status} -> {new_status}. "
                f"Allowed: {sorted(allowed) if allowed else 'none (terminal)'}"
            )

        old_status = opp.status
        opp.status = new_status
        opp.actioned_by = actor
        opp.actioned_at = datetime.utcnow()
        if note:
            self._append_note(opp, note, actor)

        if new_status == DIDNT_WORK:
            await self._exclude_payer(opp)

        await self.session.flush()
        await self.audit.log_opportunity_status_changed(opp.opportunity_id, old_status, new_status, actor)
        return opp

    async def annotate(self, opportunity_id: str, note: str, *, actor: str) -> Opportunity:
        """Notes may be added in any status."""
        opp = await self._get(opportunity_id)
        self._append_note(opp, note, actor)
        await self.session.flush()
        return opp

    @staticmethod
    def _append_note(opp: Opportunity, note: str, actor: str) -> None:
        stamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M")
        line = f"[{stamp} {actor}] {note.strip()}"
        opp.notes = f"{opp.notes}\n{line}" if opp.notes else line

    async def _exclude_payer(self, opp: Opportunity) -> None:
        if opp.trigger_id is None or not opp.insurance_bin:
            return
        insurance_bin = opp.insurance_bin.strip()
        group = (opp.insurance_group or "").strip() or None

        query = select(TriggerPayerOverride).where(
            TriggerPayerOverride.trigger_id == opp.trigger_id,
            TriggerPayerOverride.insurance_bin == insurance_bin,
        )
        if group is None:
            query = query.where(TriggerPayerOverride.insurance_group.is_(None))
        else:
            query = query.where(TriggerPayerOverride.insurance_group == group)
        override = (await self.session.execute(query)).scalar_one_or_none()

        if override is None:
            override = TriggerPayerOverride(
                trigger_id=opp.trigger_id, insurance_bin=insurance_bin, insurance_group=group,
            )
            self.session.add(override)
        override.is_excluded = True
        override.coverage_status = "excluded"
        override.verified_at = datetime.utcnow()
        logger.info(
            "Trigger %s excluded for BIN %s / Group %s after Didn't Work on %s",
            opp.trigger_id, insurance_bin, group, opp.opportunity_id,
        )
