"""Recomputes each patient's inferred chronic conditions from 12 months of fills."""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rxopps.config import settings
from rxopps.models import DispensingRecord, Patient
from rxopps.services.drug_classifier import infer_conditions

logger = logging.getLogger(__name__)


class PatientProfileService:
    def __init__(self, session: AsyncSession, lookback_days: int | None = None):
        self.session = session
        self.lookback_days = lookback_days or settings.profile_lookback_days

    async def update_profiles(self, pharmacy_id: int | None = None, as_of: date | None = None) -> int:
        """Returns the number of patients whose condition list changed."""
        as_of = as_of or date.today()
        query = (
            select(DispensingRecord.patient_id, DispensingRecord.drug_name)
            .distinct()
            .where(DispensingRecord.dispensed_date >= as_of - timedelta(days=self.lookback_days))
        )
        if pharmacy_id is not None:
            query = query.where(DispensingRecord.pharmacy_id == pharmacy_id)

        drugs_by_patient: dict[int, list[str]] = defaultdict(list)
        for patient_id, drug_name in (await self.session.execute(query)).all():
            drugs_by_patient[patient_id].append(drug_name)

        if not drugs_by_patient:
            return 0

        patients = (await self.session.execute(
            select(Patient).where(Patient.id.in_(list(drugs_by_patient)))
        )).scalars()

        changed = 0
        now = datetime.utcnow()
        for patient in patients:
            conditions = infer_conditions(drugs_by_patient[patient.id])
            if conditions != sorted(patient.chronic_conditions or []):
                patient.chronic_conditions = conditions
                changed += 1
            patient.profile_updated_at = now

        await self.session.flush()
        logger.info(
            "Patient profiles: %d patients reviewed, %d updated", len(drugs_by_patient), changed,
        )
        return changed
