from datetime import datetime

from sqlalchemy import String, Boolean, DateTime, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from rxopps.database import Base, JSONType


class Pharmacy(Base):
    """A pharmacy tenant. Every patient, record and opportunity belongs to exactly one."""

    __tablename__ = "pharmacies"

    id: Mapped[int] = mapped_column(primary_key=True)
    pharmacy_code: Mapped[str] = mapped_column(String(30), unique=True, index=True)
    pharmacy_name: Mapped[str] = mapped_column(String(200))
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_demo: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Patient(Base):
    """Pseudonymized patient, scoped to one pharmacy. Never merged across tenants."""

    __tablename__ = "patients"
    __table_args__ = (UniqueConstraint("pharmacy_id", "patient_hash", name="uq_patients_pharmacy_hash"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    pharmacy_id: Mapped[int] = mapped_column(ForeignKey("pharmacies.id"), index=True)
    patient_hash: Mapped[str] = mapped_column(String(64))
    chronic_conditions: Mapped[list] = mapped_column(JSONType, default=list)
    profile_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
