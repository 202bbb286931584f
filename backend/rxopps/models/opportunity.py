"""
Opportunity ledger.

Status lifecycle:
    Not Submitted -> Submitted -> Pending -> Approved -> Completed
                                         -> Denied | Declined | Flagged | Didn't Work

Anything past Not Submitted is permanent: the datastore rejects its deletion
and rescans never touch it.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    DDL, String, Date, DateTime, Numeric, Text, ForeignKey, Index, event, func,
)
from sqlalchemy.orm import Mapped, mapped_column

from rxopps.database import Base
from rxopps.exceptions import ActionedOpportunityError

NOT_SUBMITTED = "Not Submitted"
SUBMITTED = "Submitted"
PENDING = "Pending"
APPROVED = "Approved"
COMPLETED = "Completed"
DENIED = "Denied"
DECLINED = "Declined"
FLAGGED = "Flagged"
DIDNT_WORK = "Didn't Work"

ALL_STATUSES = (
    NOT_SUBMITTED, SUBMITTED, PENDING, APPROVED, COMPLETED,
    DENIED, DECLINED, FLAGGED, DIDNT_WORK,
)

# A fresh attempt for the same patient + drug is allowed after these
RETRYABLE_STATUSES = (DENIED, DECLINED)

# Sort order for ledger lookups: actioned first, then Not Submitted, then retryable
ACTIONED_STATUSES = (SUBMITTED, PENDING, APPROVED, COMPLETED, FLAGGED, DIDNT_WORK)


class Opportunity(Base):
    __tablename__ = "opportunities"

    id: Mapped[int] = mapped_column(primary_key=True)
    opportunity_id: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    pharmacy_id: Mapped[int] = mapped_column(ForeignKey("pharmacies.id"), index=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), index=True)
    dispensing_record_id: Mapped[int | None] = mapped_column(ForeignKey("dispensing_records.id"), nullable=True)
    trigger_id: Mapped[int | None] = mapped_column(ForeignKey("triggers.id"), nullable=True, index=True)
    opportunity_type: Mapped[str] = mapped_column(String(30))

    current_drug_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    current_ndc: Mapped[str | None] = mapped_column(String(11), nullable=True)
    recommended_drug_name: Mapped[str] = mapped_column(String(200))
    recommended_ndc: Mapped[str | None] = mapped_column(String(11), nullable=True)
    avg_dispensed_qty: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    # 30-day value and its annualized projection
    potential_margin_gain: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    annual_margin_gain: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    value_source: Mapped[str | None] = mapped_column(String(20), nullable=True)  # payer_override | gp_cache | trigger_default

    clinical_rationale: Mapped[str | None] = mapped_column(Text, nullable=True)
    clinical_priority: Mapped[str | None] = mapped_column(String(10), nullable=True)  # high | medium | low
    prescriber_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    insurance_bin: Mapped[str | None] = mapped_column(String(10), nullable=True)
    insurance_group: Mapped[str | None] = mapped_column(String(50), nullable=True)
    claim_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=NOT_SUBMITTED, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    scan_batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    actioned_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    actioned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


# One live opportunity per patient + recommended drug; Denied/Declined rows may repeat
Index(
    "uq_opportunities_patient_drug_live",
    Opportunity.pharmacy_id,
    Opportunity.patient_id,
    func.upper(Opportunity.recommended_drug_name),
    unique=True,
    postgresql_where=Opportunity.status.not_in(RETRYABLE_STATUSES),
    sqlite_where=Opportunity.status.not_in(RETRYABLE_STATUSES),
)


@event.listens_for(Opportunity, "before_delete")
def _refuse_actioned_delete(mapper, connection, target: Opportunity):
    if target.status != NOT_SUBMITTED:
        raise ActionedOpportunityError(
            f"Opportunity {target.opportunity_id} is {target.status!r} and cannot be deleted"
        )


# Datastore-level guard, mirrored in the alembic migration for PostgreSQL
_sqlite_delete_guard = DDL(
    "CREATE TRIGGER IF NOT EXISTS trg_opportunities_protect_actioned "
    "BEFORE DELETE ON opportunities "
    "FOR EACH ROW WHEN OLD.status <> 'Not Submitted' "
    "BEGIN SELECT RAISE(ABORT, 'Cannot delete actioned opportunity'); END"
)
_pg_delete_guard_fn = DDL(
    "CREATE OR REPLACE FUNCTION prevent_actioned_opportunity_delete() RETURNS TRIGGER AS $$ "
    "BEGIN "
    "IF OLD.status <> 'Not Submitted' THEN "
    "RAISE EXCEPTION 'Cannot delete actioned opportunity (status: %%)', OLD.status; "
    "END IF; "
    "RETURN OLD; "
    "END; $$ LANGUAGE plpgsql"
)
_pg_delete_guard = DDL(
    "CREATE TRIGGER trg_opportunities_protect_actioned "
    "BEFORE DELETE ON opportunities "
    "FOR EACH ROW EXECUTE FUNCTION prevent_actioned_opportunity_delete()"
)
event.listen(Opportunity.__table__, "after_create", _sqlite_delete_guard.execute_if(dialect="sqlite"))
event.listen(Opportunity.__table__, "after_create", _pg_delete_guard_fn.execute_if(dialect="postgresql"))
event.listen(Opportunity.__table__, "after_create", _pg_delete_guard.execute_if(dialect="postgresql"))
