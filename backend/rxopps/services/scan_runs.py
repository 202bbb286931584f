"""
Scan run bookkeeping shared by every batch job: the scan_logs row,
Prometheus counters and the closing audit entry.
"""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from rxopps.models import ScanLog
from rxopps.services.audit_service import AuditService
from rxopps.telemetry.metrics import scan_duration_seconds, scan_runs_total

logger = logging.getLogger(__name__)


class ScanRunRecorder:
    """Opens a scan_logs row as running and closes it as completed or failed."""

    def __init__(self, session_factory: async_sessionmaker, scan_type: str):
        self.session_factory = session_factory
        self.scan_type = scan_type

    async def start(self, batch_id: str, pharmacy_scope: list | None = None) -> None:
        async with self.session_factory() as session:
            session.add(ScanLog(
                batch_id=batch_id,
                scan_type=self.scan_type,
                pharmacy_scope=pharmacy_scope or [],
                status="running",
            ))
            await session.commit()
        logger.info("%s scan %s started", self.scan_type, batch_id)

    async def finish(
        self,
        batch_id: str,
        *,
        status: str,
        duration_seconds: float,
        records_scanned: int = 0,
        opportunities_found: int = 0,
        opportunities_by_type: dict | None = None,
        stats: dict | None = None,
        error_message: str | None = None,
    ) -> None:
        scan_runs_total.labels(scan_type=self.scan_type, status=status).inc()
        scan_duration_seconds.labels(scan_type=self.scan_type).observe(duration_seconds)

        async with self.session_factory() as session:
            log = (await session.execute(
                select(ScanLog).where(ScanLog.batch_id == batch_id)
            )).scalar_one_or_none()
            if log is None:
                logger.warning("Scan log %s missing, recreating", batch_id)
                log = ScanLog(batch_id=batch_id, scan_type=self.scan_type)
                session.add(log)
            log.status = status
            log.records_scanned = records_scanned
            log.opportunities_found = opportunities_found
            log.opportunities_by_type = opportunities_by_type or {}
            log.stats = stats
            log.error_message = error_message[:2000] if error_message else None
            log.duration_seconds = round(duration_seconds, 3)
            log.completed_at = datetime.utcnow()

            await AuditService(session).log_scan_finished(batch_id, self.scan_type, status, stats or {})
            await session.commit()

        logger.info(
            "%s scan %s %s in %.1fs",
            self.scan_type, batch_id, status, duration_seconds,
            extra={"duration_ms": round(duration_seconds * 1000, 2)},
        )
