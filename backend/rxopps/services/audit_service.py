"""
Audit Service

Hash-chained audit trail for scan runs, opportunity status changes and
discovery queue decisions. Each entry stores the SHA-256 of its content
plus the previous entry's hash, so any edit breaks the chain.
"""

import hashlib
import json
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rxopps.models import AuditLog


class AuditService:
    """Immutable, hash-chained audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _calculate_hash(self, content: dict, previous_hash: str | None) -> str:
        payload = {
            "content": content,
            "previous_hash": previous_hash or "",
        }
        raw = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode()).hexdigest()

    async def _get_latest_hash(self) -> str | None:
        result = await self.session.execute(
            select(AuditLog.current_hash)
            .order_by(AuditLog.id.desc())
            .limit(1)
        )
        return result.scalar()

    async def log_event(
        self,
        event_type: str,
        actor: str,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict | None = None,
    ) -> AuditLog:
        """
        Write an audit entry.

        Args:
            event_type: e.g. "scan_completed", "opportunity_status_changed"
            actor: e.g. "system", "scanner", "reviewer@pharmacy.com"
            action: Human-readable description
            resource_type: "scan", "opportunity", "pending_type", "trigger"
            resource_id: The ID of the affected resource
            details: Full event details as dict
        """
        previous_hash = await self._get_latest_hash()

        entry_details = details or {}
        content_for_hash = {
            "event_type": event_type,
            "actor": actor,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "details": entry_details,
        }
        entry = AuditLog(
            event_id=str(uuid4()),
            event_type=event_type,
            actor=actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=entry_details,
            previous_hash=previous_hash,
            current_hash=self._calculate_hash(content_for_hash, previous_hash),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def log_scan_finished(self, batch_id: str, scan_type: str, status: str, stats: dict) -> AuditLog:
        return await self.log_event(
            event_type=f"{scan_type}_scan_{status}",
            actor="scanner",
            action=f"{scan_type.capitalize()} scan {batch_id} {status}",
            resource_type="scan",
            resource_id=batch_id,
            details=stats,
        )

    async def log_opportunity_status_changed(
        self, opportunity_id: str, old_status: str, new_status: str, actor: str,
    ) -> AuditLog:
        return await self.log_event(
            event_type="opportunity_status_changed",
            actor=actor,
            action=f"Opportunity {opportunity_id} status: {old_status} -> {new_status}",
            resource_type="opportunity",
            resource_id=opportunity_id,
            details={"old_status": old_status, "new_status": new_status},
        )

    async def log_pending_type_reviewed(
        self, pending_type_id: str, decision: str, actor: str, trigger_code: str | None = None,
    ) -> AuditLog:
        return await self.log_event(
            event_type=f"pending_type_{decision}",
            actor=actor,
            action=f"Discovery proposal {pending_type_id} {decision}",
            resource_type="pending_type",
            resource_id=pending_type_id,
            details={"decision": decision, "trigger_code": trigger_code},
        )

    async def verify_chain_integrity(self) -> dict:
        """Walk the full chain and verify each entry's hash."""
        result = await self.session.execute(select(AuditLog).order_by(AuditLog.id.asc()))
        entries = list(result.scalars())

        for i, entry in enumerate(entries):
            expected_prev = entries[i - 1].current_hash if i > 0 else None
            if entry.previous_hash != expected_prev:
                return {
                    "valid": False,
                    "entries_checked": i + 1,
                    "first_invalid": entry.event_id,
                    "reason": "previous_hash mismatch",
                }

            content = {
                "event_type": entry.event_type,
                "actor": entry.actor,
                "action": entry.action,
                "resource_type": entry.resource_type,
                "resource_id": entry.resource_id,
                "details": entry.details,
            }
            if entry.current_hash != self._calculate_hash(content, entry.previous_hash):
                return {
                    "valid": False,
                    "entries_checked": i + 1,
                    "first_invalid": entry.event_id,
                    "reason": "current_hash mismatch (data tampered)",
                }

        return {"valid": True, "entries_checked": len(entries), "first_invalid": None}
