"""
ScanLog model: one row per scan invocation with counters and terminal status.
"""

from datetime import datetime

from sqlalchemy import String, Integer, DateTime, Float, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from rxopps.database import Base, JSONType


class ScanLog(Base):
    __tablename__ = "scan_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    scan_type: Mapped[str] = mapped_column(String(30))  # opportunity | discovery | coverage | profile
    pharmacy_scope: Mapped[list] = mapped_column(JSONType, default=list)
    status: Mapped[str] = mapped_column(String(20), default="running")  # running, completed, failed
    records_scanned: Mapped[int] = mapped_column(Integer, default=0)
    opportunities_found: Mapped[int] = mapped_column(Integer, default=0)
    opportunities_by_type: Mapped[dict] = mapped_column(JSONType, default=dict)
    stats: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
