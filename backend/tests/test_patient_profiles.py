from datetime import date

import pytest

from rxopps.services.patient_profiles import PatientProfileService
from tests.factories import AS_OF, make_patient, make_pharmacy, make_record


@pytest.mark.asyncio
class TestPatientProfiles:
    async def test_conditions_inferred_from_recent_fills(self, db_session):
        pharmacy = await make_pharmacy(db_session)
        patient = await make_patient(db_session, pharmacy)
        await make_record(db_session, patient, "METFORMIN 500MG TAB")
        await make_record(db_session, patient, "LISINOPRIL 10MG TAB")
        # older than twelve months
        await make_record(db_session, patient, "SERTRALINE 50MG", dispensed_date=date(2025, 1, 15))

        changed = await PatientProfileService(db_session, lookback_days=365).update_profiles(as_of=AS_OF)

        assert changed == 1
        assert patient.chronic_conditions == ["CVD", "Diabetes", "HTN", "Heart Failure"]
        assert patient.profile_updated_at is not None

    async def test_unchanged_profile_not_counted(self, db_session):
        pharmacy = await make_pharmacy(db_session)
        patient = await make_patient(db_session, pharmacy, chronic_conditions=["Hypothyroidism"])
        await make_record(db_session, patient, "LEVOTHYROXINE 50MCG")

        changed = await PatientProfileService(db_session, lookback_days=365).update_profiles(as_of=AS_OF)

        assert changed == 0
        assert patient.profile_updated_at is not None

    async def test_scoped_to_pharmacy(self, db_session):
        first = await make_pharmacy(db_session, "PH001")
        second = await make_pharmacy(db_session, "PH002")
        inside = await make_patient(db_session, first, "a")
        outside = await make_patient(db_session, second, "b")
        await make_record(db_session, inside, "OMEPRAZOLE 20MG")
        await make_record(db_session, outside, "OMEPRAZOLE 20MG")

        changed = await PatientProfileService(db_session, lookback_days=365).update_profiles(first.id, as_of=AS_OF)

        assert changed == 1
        assert inside.chronic_conditions == ["GERD", "Ulcer"]
        assert outside.chronic_conditions == []

    async def test_no_fills(self, db_session):
        assert await PatientProfileService(db_session).update_profiles(as_of=AS_OF) == 0
