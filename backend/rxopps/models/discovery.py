from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Integer, Numeric, Text, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from rxopps.database import Base, JSONType


class PendingOpportunityType(Base):
    """
    Proposed recommendation awaiting administrator review.

    Written only by the discovery scanner; approval is the only way a
    proposal turns into a live Trigger.
    """

    __tablename__ = "pending_opportunity_types"

    id: Mapped[int] = mapped_column(primary_key=True)
    pending_type_id: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    recommended_drug_name: Mapped[str] = mapped_column(String(200))
    opportunity_type: Mapped[str] = mapped_column(String(30), default="therapeutic_interchange")
    source: Mapped[str] = mapped_column(String(30), default="negative_gp_scan")
    source_details: Mapped[dict] = mapped_column(JSONType, default=dict)
    sample_data: Mapped[dict] = mapped_column(JSONType, default=dict)
    affected_pharmacies: Mapped[list] = mapped_column(JSONType, default=list)
    total_patient_count: Mapped[int] = mapped_column(Integer, default=0)
    estimated_annual_margin: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    coverage_confidence: Mapped[str] = mapped_column(String(20), default="none")
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending | approved | rejected
    reviewed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_trigger_id: Mapped[int | None] = mapped_column(ForeignKey("triggers.id"), nullable=True)
    scan_batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class ApprovalLog(Base):
    __tablename__ = "opportunity_approval_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    pending_type_id: Mapped[int] = mapped_column(ForeignKey("pending_opportunity_types.id"), index=True)
    action: Mapped[str] = mapped_column(String(20))  # approved | rejected
    performed_by: Mapped[str] = mapped_column(String(100))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_id: Mapped[int | None] = mapped_column(ForeignKey("triggers.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
