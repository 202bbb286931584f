from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import String, Boolean, Date, DateTime, Integer, Numeric, Text, ForeignKey, Index, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rxopps.database import Base, JSONType


class Trigger(Base):
    __tablename__ = "triggers"

    id: Mapped[int] = mapped_column(primary_key=True)
    trigger_code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(200))
    trigger_type: Mapped[str] = mapped_column(String(20), default="standard")  # standard | conditional | combo
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)  # lower = higher precedence

    detection_keywords: Mapped[list] = mapped_column(JSONType, default=list)
    keyword_match_mode: Mapped[str] = mapped_column(String(10), default="any")  # any | all
    exclude_keywords: Mapped[list] = mapped_column(JSONType, default=list)
    if_has_keywords: Mapped[list] = mapped_column(JSONType, default=list)
    if_not_has_keywords: Mapped[list] = mapped_column(JSONType, default=list)

    # Membership filters. Restrictions are free text: "ALL", "ONLY a,b",
    # "ALL EXCEPT a,b", a bare list, or per-BIN "610097:ONLY X, 004740:ALL".
    pharmacy_inclusions: Mapped[list] = mapped_column(JSONType, default=list)
    bin_restriction: Mapped[str | None] = mapped_column(String(500), nullable=True)
    group_restriction: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    contract_prefix_exclusions: Mapped[list] = mapped_column(JSONType, default=list)

    recommended_drug: Mapped[str] = mapped_column(String(200))
    recommended_ndc: Mapped[str | None] = mapped_column(String(11), nullable=True)
    default_gp_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    expected_days_supply: Mapped[int | None] = mapped_column(Integer, nullable=True)
    annual_fills: Mapped[int] = mapped_column(Integer, default=12)
    clinical_rationale: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    bin_values: Mapped[list["TriggerPayerOverride"]] = relationship(
        back_populates="trigger", cascade="all, delete-orphan", lazy="selectin",
    )


class TriggerPayerOverride(Base):
    """Per (BIN, Group) value and coverage verdict for one trigger."""

    __tablename__ = "trigger_bin_values"

    id: Mapped[int] = mapped_column(primary_key=True)
    trigger_id: Mapped[int] = mapped_column(ForeignKey("triggers.id", ondelete="CASCADE"), index=True)
    insurance_bin: Mapped[str] = mapped_column(String(10))
    insurance_group: Mapped[str | None] = mapped_column(String(50), nullable=True)  # null = any group on the BIN
    gp_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    coverage_status: Mapped[str] = mapped_column(String(20), default="unknown")  # covered | excluded | unknown
    is_excluded: Mapped[bool] = mapped_column(Boolean, default=False)
    best_ndc: Mapped[str | None] = mapped_column(String(11), nullable=True)
    best_drug_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    avg_qty: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    verified_claim_count: Mapped[int] = mapped_column(Integer, default=0)
    most_recent_claim: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Administrator-entered values win over verified ones
    is_manual_override: Mapped[bool] = mapped_column(Boolean, default=False)
    manual_gp_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    manual_ndc: Mapped[str | None] = mapped_column(String(11), nullable=True)
    manual_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    trigger: Mapped[Trigger] = relationship(back_populates="bin_values")

    @property
    def excluded(self) -> bool:
        return bool(self.is_excluded) or self.coverage_status == "excluded"

    @property
    def effective_gp_value(self) -> Decimal | None:
        if self.is_manual_override and self.manual_gp_value is not None:
            return self.manual_gp_value
        return self.gp_value

    @property
    def effective_ndc(self) -> str | None:
        if self.is_manual_override and self.manual_ndc:
            return self.manual_ndc
        return self.best_ndc


Index(
    "uq_trigger_bin_values_payer",
    TriggerPayerOverride.trigger_id,
    TriggerPayerOverride.insurance_bin,
    func.coalesce(TriggerPayerOverride.insurance_group, ""),
    unique=True,
)
