"""
Command line entry point.

    rxopps run-scan --pharmacy all
    rxopps run-discovery-scan --max-avg-gp -5
    rxopps run-coverage-scan --trigger STATIN-PITA
    rxopps update-profiles --pharmacy 3
    rxopps approve POT-1A2B3C4D5E --reviewer jdoe
    rxopps reject POT-1A2B3C4D5E --reviewer jdoe --notes "no PA path"
    rxopps enqueue opportunity_scan --pharmacy all

Exit status is 0 when the run completed and 1 when it failed.
"""

import argparse
import asyncio
import json
import logging
import sys

from rxopps.config import settings
from rxopps.database import async_session
from rxopps.exceptions import ApprovalStateError, NotFoundError
from rxopps.jobs import JOB_HANDLERS
from rxopps.services.approval_queue import ApprovalQueue
from rxopps.services.discovery_scanner import DiscoveryThresholds
from rxopps.services.job_queue import JOB_TYPES, enqueue_job
from rxopps.telemetry.logging_config import configure_logging

logger = logging.getLogger("rxopps.cli")

# CLI flag -> DiscoveryThresholds field
THRESHOLD_FLAGS = {
    "min_fills_negative": int,
    "max_avg_gp": float,
    "min_fills_alternative": int,
    "min_avg_gp_alternative": float,
    "lookback_days": int,
    "min_margin_gain": float,
    "max_results": int,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rxopps", description="Pharmacy opportunity discovery jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("run-scan", help="Match dispensing records against triggers")
    scan.add_argument("--pharmacy", default="all", help="pharmacy id, comma-separated ids, or 'all'")

    discovery = sub.add_parser("run-discovery-scan", help="Mine negative-margin drugs for proposals")
    for name, kind in THRESHOLD_FLAGS.items():
        discovery.add_argument(f"--{name.replace('_', '-')}", dest=name, type=kind, default=None)

    coverage = sub.add_parser("run-coverage-scan", help="Rebuild verified payer overrides from paid claims")
    coverage.add_argument("--trigger", default=None, help="limit to one trigger code")

    profiles = sub.add_parser("update-profiles", help="Recompute patient chronic conditions")
    profiles.add_argument("--pharmacy", default="all")

    for action in ("approve", "reject"):
        review = sub.add_parser(action, help=f"{action.capitalize()} a pending opportunity type")
        review.add_argument("pending_type_id")
        review.add_argument("--reviewer", required=True)
        review.add_argument("--notes", default=None)

    enqueue = sub.add_parser("enqueue", help="Queue a job for the worker")
    enqueue.add_argument("job_type", choices=JOB_TYPES)
    enqueue.add_argument("--pharmacy", default=None)
    enqueue.add_argument("--trigger", default=None)

    return parser


def _thresholds(args: argparse.Namespace) -> dict:
    return {name: getattr(args, name) for name in THRESHOLD_FLAGS if getattr(args, name) is not None}


async def _review(args: argparse.Namespace) -> dict:
    async with async_session() as session:
        queue = ApprovalQueue(session)
        if args.command == "approve":
            item, trigger = await queue.approve(args.pending_type_id, reviewer=args.reviewer, notes=args.notes)
            outcome = {"pending_type_id": item.pending_type_id, "status": item.status, "trigger_code": trigger.trigger_code}
        else:
            item = await queue.reject(args.pending_type_id, reviewer=args.reviewer, notes=args.notes)
            outcome = {"pending_type_id": item.pending_type_id, "status": item.status}
        await session.commit()
    return outcome


async def dispatch(args: argparse.Namespace) -> dict:
    if args.command == "run-scan":
        return await JOB_HANDLERS["opportunity_scan"](async_session, pharmacy=args.pharmacy)
    if args.command == "run-discovery-scan":
        # Validate before anything touches the database
        DiscoveryThresholds(**_thresholds(args))
        return await JOB_HANDLERS["discovery_scan"](async_session, thresholds=_thresholds(args))
    if args.command == "run-coverage-scan":
        return await JOB_HANDLERS["coverage_scan"](async_session, trigger=args.trigger)
    if args.command == "update-profiles":
        return await JOB_HANDLERS["profile_update"](async_session, pharmacy=args.pharmacy)
    if args.command in ("approve", "reject"):
        return await _review(args)
    if args.command == "enqueue":
        payload = {k: v for k, v in (("pharmacy", args.pharmacy), ("trigger", args.trigger)) if v is not None}
        return {"job_id": await enqueue_job(args.job_type, payload), "status": "queued"}
    raise ValueError(f"Unknown command {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level, settings.log_format)

    try:
        result = asyncio.run(dispatch(args))
    except (NotFoundError, ApprovalStateError, ValueError) as exc:
        logger.error("%s: %s", args.command, exc)
        return 1
    except Exception as exc:
        logger.error("%s failed: %s", args.command, exc, exc_info=True)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
