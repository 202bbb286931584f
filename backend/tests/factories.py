"""Builders for test rows. Each returns the ORM object after a flush."""

from datetime import date
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from rxopps.models import DispensingRecord, Patient, Pharmacy, Trigger, TriggerPayerOverride

AS_OF = date(2026, 6, 30)


async def make_pharmacy(session: AsyncSession, code: str = "PH001", **kwargs) -> Pharmacy:
    pharmacy = Pharmacy(pharmacy_code=code, pharmacy_name=kwargs.pop("pharmacy_name", f"Pharmacy {code}"), **kwargs)
    session.add(pharmacy)
    await session.flush()
    return pharmacy


async def make_patient(session: AsyncSession, pharmacy: Pharmacy, patient_hash: str = "p-1", **kwargs) -> Patient:
    patient = Patient(pharmacy_id=pharmacy.id, patient_hash=patient_hash, **kwargs)
    session.add(patient)
    await session.flush()
    return patient


_rx_counter = iter(range(100000, 999999))


async def make_record(
    session: AsyncSession,
    patient: Patient,
    drug_name: str,
    *,
    dispensed_date: date = date(2026, 6, 1),
    insurance_bin: str | None = "610097",
    insurance_group: str | None = None,
    days_supply: int | None = 30,
    quantity: float | None = 30,
    gross_profit: float | None = 5.0,
    acquisition_cost: float | None = 10.0,
    insurance_pay: float | None = 12.0,
    patient_pay: float | None = 3.0,
    **kwargs,
) -> DispensingRecord:
    def money(value):
        return Decimal(str(value)) if value is not None else None

    record = DispensingRecord(
        pharmacy_id=patient.pharmacy_id,
        patient_id=patient.id,
        rx_number=kwargs.pop("rx_number", f"RX{next(_rx_counter)}"),
        dispensed_date=dispensed_date,
        drug_name=drug_name,
        insurance_bin=insurance_bin,
        insurance_group=insurance_group,
        days_supply=days_supply,
        quantity=money(quantity),
        gross_profit=money(gross_profit),
        acquisition_cost=money(acquisition_cost),
        insurance_pay=money(insurance_pay),
        patient_pay=money(patient_pay),
        **kwargs,
    )
    session.add(record)
    await session.flush()
    return record


async def make_trigger(
    session: AsyncSession,
    code: str = "T1",
    *,
    keywords: list[str] | None = None,
    recommended: str = "Losartan-HCTZ",
    default_value: float | None = 20.0,
    overrides: list[dict] | None = None,
    **kwargs,
) -> Trigger:
    trigger = Trigger(
        trigger_code=code,
        display_name=kwargs.pop("display_name", f"Trigger {code}"),
        detection_keywords=keywords if keywords is not None else ["LOSARTAN"],
        recommended_drug=recommended,
        default_gp_value=Decimal(str(default_value)) if default_value is not None else None,
        exclude_keywords=kwargs.pop("exclude_keywords", []),
        if_has_keywords=kwargs.pop("if_has_keywords", []),
        if_not_has_keywords=kwargs.pop("if_not_has_keywords", []),
        pharmacy_inclusions=kwargs.pop("pharmacy_inclusions", []),
        contract_prefix_exclusions=kwargs.pop("contract_prefix_exclusions", []),
        **kwargs,
    )
    for values in overrides or []:
        values = dict(values)
        if "gp_value" in values and values["gp_value"] is not None:
            values["gp_value"] = Decimal(str(values["gp_value"]))
        if "avg_qty" in values and values["avg_qty"] is not None:
            values["avg_qty"] = Decimal(str(values["avg_qty"]))
        trigger.bin_values.append(TriggerPayerOverride(**values))
    session.add(trigger)
    await session.flush()
    return trigger
