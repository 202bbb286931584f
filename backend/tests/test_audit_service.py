import pytest
from sqlalchemy import select, update

from rxopps.models import AuditLog
from rxopps.services.audit_service import AuditService


@pytest.mark.asyncio
class TestAuditChain:
    async def test_entries_are_chained(self, db_session):
        audit = AuditService(db_session)

        first = await audit.log_event("scan_started", "scanner", "Scan started", "scan", "scan_1")
        second = await audit.log_opportunity_status_changed("OPP-1", "Not Submitted", "Submitted", "tech")

        assert first.previous_hash is None
        assert second.previous_hash == first.current_hash
        assert len(second.current_hash) == 64

    async def test_intact_chain_verifies(self, db_session):
        audit = AuditService(db_session)
        await audit.log_scan_finished("scan_1", "opportunity", "completed", {"inserted": 3})
        await audit.log_pending_type_reviewed("POT-1", "rejected", "admin")

        result = await audit.verify_chain_integrity()

        assert result == {"valid": True, "entries_checked": 2, "first_invalid": None}

    async def test_tampering_detected(self, db_session):
        audit = AuditService(db_session)
        await audit.log_event("a", "system", "first")
        target = await audit.log_event("b", "system", "second")
        await audit.log_event("c", "system", "third")

        await db_session.execute(
            update(AuditLog).where(AuditLog.id == target.id).values(action="rewritten")
            .execution_options(synchronize_session="fetch")
        )

        result = await audit.verify_chain_integrity()

        assert result["valid"] is False
        assert result["first_invalid"] == target.event_id
        assert result["entries_checked"] == 2

    async def test_scan_event_type(self, db_session):
        entry = await AuditService(db_session).log_scan_finished("discovery_1", "discovery", "failed", {})

        stored = (await db_session.execute(select(AuditLog))).scalar_one()
        assert stored.event_type == "discovery_scan_failed"
        assert stored.resource_id == entry.resource_id == "discovery_1"
