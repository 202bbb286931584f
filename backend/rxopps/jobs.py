"""
Batch job entry points shared by the CLI and the queue worker.

Each function takes a session factory plus plain keyword arguments and
returns the run's summary dict. Failures propagate to the caller.
"""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from rxopps.config import settings
from rxopps.services.coverage_scanner import CoverageScanner
from rxopps.services.discovery_scanner import DiscoveryScanner, DiscoveryThresholds
from rxopps.services.opportunity_scanner import OpportunityScanner
from rxopps.services.patient_profiles import PatientProfileService

logger = logging.getLogger(__name__)


def parse_pharmacy_scope(value) -> list[int] | None:
    """'all' (or nothing) means every active pharmacy; otherwise one or more ids."""
    if value is None or value == "all":
        return None
    if isinstance(value, (list, tuple)):
        return [int(v) for v in value]
    return [int(v) for v in str(value).split(",") if v.strip()]


async def run_opportunity_scan(session_factory: async_sessionmaker, pharmacy=None, **_) -> dict:
    scanner = OpportunityScanner(session_factory)
    summary = await scanner.run(parse_pharmacy_scope(pharmacy))
    return summary.to_dict()


async def run_discovery_scan(session_factory: async_sessionmaker, thresholds: dict | None = None, **_) -> dict:
    scanner = DiscoveryScanner(session_factory, DiscoveryThresholds(**(thresholds or {})))
    result = await scanner.run()
    return result.to_dict()


async def run_coverage_scan(session_factory: async_sessionmaker, trigger: str | None = None, **_) -> dict:
    scanner = CoverageScanner(session_factory, lookback_days=settings.gp_cache_lookback_days)
    result = await scanner.run(trigger_code=trigger)
    return result.to_dict()


async def run_profile_update(session_factory: async_sessionmaker, pharmacy=None, **_) -> dict:
    scope = parse_pharmacy_scope(pharmacy)
    changed = 0
    async with session_factory() as session:
        service = PatientProfileService(session)
        for pharmacy_id in scope or [None]:
            changed += await service.update_profiles(pharmacy_id)
        await session.commit()
    return {"status": "completed", "patients_updated": changed}


JOB_HANDLERS = {
    "opportunity_scan": run_opportunity_scan,
    "discovery_scan": run_discovery_scan,
    "coverage_scan": run_coverage_scan,
    "profile_update": run_profile_update,
}
