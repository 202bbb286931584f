from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, Integer, Numeric, func
from sqlalchemy.orm import Mapped, mapped_column

from rxopps.database import Base, JSONType


class CmsFormularyDrug(Base):
    """Medicare Part D formulary entry, flattened with its plan."""

    __tablename__ = "cms_formulary_drugs"

    id: Mapped[int] = mapped_column(primary_key=True)
    formulary_id: Mapped[str] = mapped_column(String(20), index=True)
    contract_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    plan_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    ndc: Mapped[str] = mapped_column(String(11), index=True)
    tier_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prior_authorization: Mapped[bool] = mapped_column(Boolean, default=False)
    step_therapy: Mapped[bool] = mapped_column(Boolean, default=False)
    quantity_limit: Mapped[bool] = mapped_column(Boolean, default=False)
    quantity_limit_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    quantity_limit_days: Mapped[int | None] = mapped_column(Integer, nullable=True)


class FormularyItem(Base):
    """Cached commercial formulary data keyed by payer BIN/Group."""

    __tablename__ = "formulary_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    insurance_bin: Mapped[str] = mapped_column(String(10), index=True)
    insurance_group: Mapped[str | None] = mapped_column(String(50), nullable=True)
    drug_name: Mapped[str] = mapped_column(String(200))
    ndc: Mapped[str | None] = mapped_column(String(11), nullable=True)
    tier: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier_description: Mapped[str | None] = mapped_column(String(50), nullable=True)
    preferred: Mapped[bool] = mapped_column(Boolean, default=False)
    on_formulary: Mapped[bool] = mapped_column(Boolean, default=True)
    prior_auth_required: Mapped[bool] = mapped_column(Boolean, default=False)
    step_therapy_required: Mapped[bool] = mapped_column(Boolean, default=False)
    reimbursement_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    estimated_copay: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    data_source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class TherapeuticCategory(Base):
    """Administrator-maintained drug classes consulted when the built-in table has no match."""

    __tablename__ = "therapeutic_categories"

    id: Mapped[int] = mapped_column(primary_key=True)
    category_code: Mapped[str] = mapped_column(String(50), unique=True)
    display_name: Mapped[str] = mapped_column(String(100))
    drug_patterns: Mapped[list] = mapped_column(JSONType, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
