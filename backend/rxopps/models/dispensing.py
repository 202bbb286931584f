from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import String, Integer, Date, DateTime, Numeric, ForeignKey, UniqueConstraint, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from rxopps.database import Base


class DispensingRecord(Base):
    """
    One filled prescription as produced by the ingestion adapter.

    Read-only for the engine. Keyed by (pharmacy, rx_number, dispensed_date);
    gross_profit is the source-specific computed margin for the fill.
    """

    __tablename__ = "dispensing_records"
    __table_args__ = (
        UniqueConstraint("pharmacy_id", "rx_number", "dispensed_date", name="uq_dispensing_rx_fill"),
        Index("ix_dispensing_pharmacy_date", "pharmacy_id", "dispensed_date"),
        Index("ix_dispensing_bin_group", "insurance_bin", "insurance_group"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    pharmacy_id: Mapped[int] = mapped_column(ForeignKey("pharmacies.id"))
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), index=True)
    rx_number: Mapped[str] = mapped_column(String(30))
    dispensed_date: Mapped[date] = mapped_column(Date)
    drug_name: Mapped[str] = mapped_column(String(200))
    ndc: Mapped[str | None] = mapped_column(String(11), nullable=True)
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    days_supply: Mapped[int | None] = mapped_column(Integer, nullable=True)
    insurance_bin: Mapped[str | None] = mapped_column(String(10), nullable=True)
    insurance_group: Mapped[str | None] = mapped_column(String(50), nullable=True)
    contract_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    plan_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    prescriber_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    prescriber_npi: Mapped[str | None] = mapped_column(String(10), nullable=True)
    gross_profit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    acquisition_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    insurance_pay: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    patient_pay: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    ingested_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
