"""
Prometheus metrics for scan and discovery runs.

The worker exposes these on its metrics port; the CLI records them too so a
push gateway or textfile collector can pick them up.
"""

from prometheus_client import Counter, Histogram

# ── Scan metrics ─────────────────────────────────────────────────────────────

scan_runs_total = Counter(
    "rxopps_scan_runs_total",
    "Total scan runs",
    ["scan_type", "status"],
)

scan_duration_seconds = Histogram(
    "rxopps_scan_duration_seconds",
    "Scan run duration in seconds",
    ["scan_type"],
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 900.0),
)

dispensing_records_scanned = Counter(
    "rxopps_dispensing_records_scanned",
    "Total dispensing records evaluated against triggers",
)

opportunity_writes_total = Counter(
    "rxopps_opportunity_writes_total",
    "Opportunity ledger writes by action",
    ["action"],  # inserted, updated, cleared, error
)

# ── Discovery metrics ────────────────────────────────────────────────────────

discovery_candidates_total = Counter(
    "rxopps_discovery_candidates_total",
    "Negative-margin candidates by outcome",
    ["outcome"],  # submitted, skipped_existing, skipped_no_class, ...
)
