from decimal import Decimal

import pytest
from sqlalchemy import select

from rxopps.exceptions import InvalidTransitionError, NotFoundError
from rxopps.models import AuditLog, Opportunity, TriggerPayerOverride
from rxopps.models.opportunity import (
    APPROVED, COMPLETED, DENIED, DIDNT_WORK, NOT_SUBMITTED, PENDING, SUBMITTED,
)
from rxopps.services.opportunity_scanner import OpportunityScanner
from rxopps.services.opportunity_workflow import OpportunityWorkflow
from tests.factories import AS_OF, make_patient, make_pharmacy, make_record, make_trigger


async def _opportunity(session, *, insurance_group="GRP1", status=NOT_SUBMITTED) -> Opportunity:
    pharmacy = await make_pharmacy(session)
    patient = await make_patient(session, pharmacy)
    trigger = await make_trigger(session)
    opp = Opportunity(
        opportunity_id="OPP-WF0001",
        pharmacy_id=pharmacy.id,
        patient_id=patient.id,
        trigger_id=trigger.id,
        opportunity_type="standard",
        current_drug_name="LOSARTAN POTASSIUM 50MG",
        recommended_drug_name="Losartan-HCTZ",
        potential_margin_gain=Decimal("20"),
        annual_margin_gain=Decimal("240"),
        insurance_bin="610097",
        insurance_group=insurance_group,
        status=status,
    )
    session.add(opp)
    await session.flush()
    return opp


async def _walk(workflow, opportunity_id, *statuses):
    for status in statuses:
        await workflow.transition(opportunity_id, status, actor="tech")


@pytest.mark.asyncio
class TestTransitions:
    async def test_happy_path_to_completed(self, db_session):
        opp = await _opportunity(db_session)
        workflow = OpportunityWorkflow(db_session)

        await _walk(workflow, opp.opportunity_id, SUBMITTED, PENDING, APPROVED, COMPLETED)

        assert opp.status == COMPLETED
        assert opp.actioned_by == "tech"
        assert opp.actioned_at is not None

    async def test_cannot_skip_steps(self, db_session):
        opp = await _opportunity(db_session)

        with pytest.raises(InvalidTransitionError):
            await OpportunityWorkflow(db_session).transition(opp.opportunity_id, APPROVED, actor="tech")
        assert opp.status == NOT_SUBMITTED

    async def test_terminal_status_has_no_exit(self, db_session):
        opp = await _opportunity(db_session)
        workflow = OpportunityWorkflow(db_session)
        await _walk(workflow, opp.opportunity_id, SUBMITTED, PENDING, DENIED)

        with pytest.raises(InvalidTransitionError, match="terminal"):
            await workflow.transition(opp.opportunity_id, PENDING, actor="tech")

    async def test_unknown_opportunity(self, db_session):
        with pytest.raises(NotFoundError):
            await OpportunityWorkflow(db_session).transition("OPP-NOPE", SUBMITTED, actor="tech")

    async def test_every_change_audited(self, db_session):
        opp = await _opportunity(db_session)
        workflow = OpportunityWorkflow(db_session)

        await _walk(workflow, opp.opportunity_id, SUBMITTED, PENDING)

        entries = list((await db_session.execute(select(AuditLog).order_by(AuditLog.id))).scalars())
        assert [e.details for e in entries] == [
            {"old_status": NOT_SUBMITTED, "new_status": SUBMITTED},
            {"old_status": SUBMITTED, "new_status": PENDING},
        ]
        assert all(e.resource_id == opp.opportunity_id for e in entries)

    async def test_notes_append(self, db_session):
        opp = await _opportunity(db_session)
        workflow = OpportunityWorkflow(db_session)

        await workflow.transition(opp.opportunity_id, SUBMITTED, actor="tech", note="faxed prescriber")
        await workflow.annotate(opp.opportunity_id, "called back", actor="rph")

        lines = opp.notes.splitlines()
        assert len(lines) == 2
        assert lines[0].endswith("tech] faxed prescriber")
        assert lines[1].endswith("rph] called back")


# ── Didn't Work feedback ─────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDidntWork:
    async def test_creates_excluded_override(self, db_session):
        opp = await _opportunity(db_session)
        workflow = OpportunityWorkflow(db_session)

        await _walk(workflow, opp.opportunity_id, SUBMITTED, PENDING, DIDNT_WORK)

        override = (await db_session.execute(select(TriggerPayerOverride))).scalar_one()
        assert override.trigger_id == opp.trigger_id
        assert override.insurance_bin == "610097"
        assert override.insurance_group == "GRP1"
        assert override.excluded

    async def test_marks_existing_override_excluded(self, db_session):
        opp = await _opportunity(db_session, insurance_group=None)
        db_session.add(TriggerPayerOverride(
            trigger_id=opp.trigger_id, insurance_bin="610097", gp_value=Decimal("25"), coverage_status="covered",
        ))
        await db_session.flush()

        await _walk(OpportunityWorkflow(db_session), opp.opportunity_id, SUBMITTED, PENDING, DIDNT_WORK)

        override = (await db_session.execute(select(TriggerPayerOverride))).scalar_one()
        assert override.is_excluded
        assert override.coverage_status == "excluded"
        assert override.gp_value == Decimal("25")

    async def test_suppresses_payer_on_next_scan(self, session_factory):
        async with session_factory() as session:
            pharmacy = await make_pharmacy(session)
            await make_trigger(session)
            for patient_hash in ("a", "b"):
                patient = await make_patient(session, pharmacy, patient_hash)
                await make_record(session, patient, "LOSARTAN POTASSIUM 50MG", insurance_group="GRP1")
            await session.commit()

        scanner = OpportunityScanner(session_factory, min_value=10.0, lookback_days=90)
        await scanner.run(as_of=AS_OF)

        async with session_factory() as session:
            first = (await session.execute(select(Opportunity).order_by(Opportunity.id))).scalars().first()
            await _walk(OpportunityWorkflow(session), first.opportunity_id, SUBMITTED, PENDING, DIDNT_WORK)
            await session.commit()

        summary = await scanner.run(as_of=AS_OF)

        async with session_factory() as session:
            remaining = list((await session.execute(select(Opportunity))).scalars())
        # the other patient's open row on the same payer is cleared; the actioned one stays
        assert summary.excluded == 2
        assert summary.cleared == 1
        assert [(o.opportunity_id, o.status) for o in remaining] == [(first.opportunity_id, DIDNT_WORK)]
