"""
Backfill of per-bundle-instance data usage from synced usage events.

Usage rows carry no reliable foreign key to the bundle instance they were
charged against, so totals are derived with two ordered strategies:

1. Exact: usage grouped by (trimmed ICCID, lower-cased bundle moniker,
   sequence) matched to instances sharing that triplet.
2. Date range: for instances the exact strategy did not match, all usage on
   the instance's ICCID whose usage_date falls within
   [start_time::date, end_time::date].

All instance totals are reset to NULL first so the pass is idempotent. The
whole pass runs in one transaction.

Usage:
    from services.reporting_sync.backfill import run_backfill
    result = run_backfill(conn)
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .log_config import log_database_operation
from .models import BackfillResult

logger = structlog.get_logger(__name__)

BYTES_PER_MB = 1024 * 1024

TRIM_ICCIDS_SQL = text("""
    UPDATE rpt_bundle_instances SET iccid = TRIM(iccid)
    WHERE iccid IS NOT NULL AND iccid <> TRIM(iccid)
""")

RESET_TOTALS_SQL = text("""
    UPDATE rpt_bundle_instances SET data_used_mb = NULL
    WHERE data_used_mb IS NOT NULL
""")

# Daily usage per (iccid, moniker, sequence); small relative to rpt_usage
USAGE_AGGREGATE_SQL = text("""
    SELECT
        TRIM(iccid) AS iccid,
        LOWER(bundle_moniker) AS bundle_moniker,
        sequence,
        usage_date,
        SUM(charged_consumption) AS charged_bytes
    FROM rpt_usage
    WHERE iccid IS NOT NULL
      AND charged_consumption > 0
    GROUP BY TRIM(iccid), LOWER(bundle_moniker), sequence, usage_date
""")

INSTANCES_SQL = text("""
    SELECT
        id,
        TRIM(iccid) AS iccid,
        LOWER(bundle_moniker) AS bundle_moniker,
        sequence,
        start_time,
        end_time
    FROM rpt_bundle_instances
    WHERE iccid IS NOT NULL
""")

UPDATE_TOTAL_SQL = text("""
    UPDATE rpt_bundle_instances SET data_used_mb = :data_used_mb
    WHERE id = :id
""")


@dataclass(frozen=True)
class UsageAggregate:
    iccid: str
    bundle_moniker: Optional[str]
    sequence: Optional[int]
    usage_date: Optional[date]
    charged_bytes: int


@dataclass(frozen=True)
class InstancePeriod:
    id: object
    iccid: str
    bundle_moniker: Optional[str]
    sequence: Optional[int]
    start_time: Optional[datetime]
    end_time: Optional[datetime]

    @property
    def exact_key(self) -> Optional[Tuple[str, str, int]]:
        if self.bundle_moniker is None or self.sequence is None:
            return None
        return (self.iccid, self.bundle_moniker, self.sequence)


@dataclass
class BackfillPlan:
    """Instance id -> total MB, split by the strategy that matched."""

    exact: Dict[object, int] = field(default_factory=dict)
    date_range: Dict[object, int] = field(default_factory=dict)
    overlapping: List[object] = field(default_factory=list)

    def updates(self) -> List[Dict[str, object]]:
        merged = {**self.date_range, **self.exact}
        return [{"id": instance_id, "data_used_mb": mb} for instance_id, mb in merged.items()]


def bytes_to_mb(total_bytes) -> int:
    """Convert bytes to whole MB, rounding half to even."""
    return round(int(total_bytes) / BYTES_PER_MB)


def aggregate_exact(usage: Iterable[UsageAggregate]) -> Dict[Tuple[str, str, int], int]:
    """Sum charged bytes per (iccid, moniker, sequence); rows lacking either are ignored."""
    totals: Dict[Tuple[str, str, int], int] = defaultdict(int)
    for row in usage:
        if row.bundle_moniker is None or row.sequence is None:
            continue
        totals[(row.iccid, row.bundle_moniker, row.sequence)] += int(row.charged_bytes)
    return dict(totals)


def aggregate_date_range(
    usage: Iterable[UsageAggregate],
    instances: Iterable[InstancePeriod],
    exclude: Iterable[object] = (),
) -> Dict[object, int]:
    """
    Sum charged bytes per instance over its inclusive date range.

    Instances in `exclude`, or without both start and end times, are
    skipped. Only instances with at least one usage row get a total.
    """
    excluded = set(exclude)
    by_iccid: Dict[str, List[Tuple[date, int]]] = defaultdict(list)
    for row in usage:
        if row.usage_date is not None:
            by_iccid[row.iccid].append((row.usage_date, int(row.charged_bytes)))

    totals: Dict[object, int] = {}
    for instance in instances:
        if instance.id in excluded:
            continue
        if instance.start_time is None or instance.end_time is None:
            continue
        start, end = instance.start_time.date(), instance.end_time.date()
        matched = [b for d, b in by_iccid.get(instance.iccid, ()) if start <= d <= end]
        if matched:
            totals[instance.id] = sum(matched)
    return totals


def find_overlapping(instances: Iterable[InstancePeriod], ids: Iterable[object]) -> List[object]:
    """
    Instances among `ids` whose date range overlaps another's on the same ICCID.

    Such instances share usage in the date-range strategy. They are reported,
    not corrected.
    """
    wanted = set(ids)
    by_iccid: Dict[str, List[InstancePeriod]] = defaultdict(list)
    for instance in instances:
        if instance.id in wanted:
            by_iccid[instance.iccid].append(instance)

    overlapping = []
    for periods in by_iccid.values():
        periods.sort(key=lambda p: p.start_time)
        # Period reaching furthest so far; catches overlaps that skip a neighbour
        widest = periods[0]
        for current in periods[1:]:
            if current.start_time.date() <= widest.end_time.date():
                for instance_id in (widest.id, current.id):
                    if instance_id not in overlapping:
                        overlapping.append(instance_id)
            if current.end_time > widest.end_time:
                widest = current
    return overlapping


def plan_backfill(usage: List[UsageAggregate], instances: List[InstancePeriod]) -> BackfillPlan:
    """Compute the per-instance totals; exact matches are never revisited."""
    plan = BackfillPlan()

    exact_totals = aggregate_exact(usage)
    for instance in instances:
        key = instance.exact_key
        if key is not None and key in exact_totals:
            plan.exact[instance.id] = bytes_to_mb(exact_totals[key])

    range_totals = aggregate_date_range(usage, instances, exclude=plan.exact.keys())
    plan.date_range = {instance_id: bytes_to_mb(b) for instance_id, b in range_totals.items()}
    plan.overlapping = find_overlapping(instances, plan.date_range.keys())
    return plan


def run_backfill(conn) -> BackfillResult:
    """
    Recompute data_used_mb on every bundle instance.

    Args:
        conn: SQLAlchemy Connection, not inside a transaction

    Returns:
        BackfillResult; a database failure is recorded in ``error`` and the
        transaction is rolled back
    """
    result = BackfillResult()
    start_time = time.monotonic()

    try:
        with conn.begin():
            result.iccids_trimmed = conn.execute(TRIM_ICCIDS_SQL).rowcount or 0
            if result.iccids_trimmed:
                logger.info("Trimmed instance ICCIDs", count=result.iccids_trimmed)

            result.instances_reset = conn.execute(RESET_TOTALS_SQL).rowcount or 0

            usage = [
                UsageAggregate(
                    iccid=row.iccid,
                    bundle_moniker=row.bundle_moniker,
                    sequence=row.sequence,
                    usage_date=row.usage_date,
                    charged_bytes=int(row.charged_bytes),
                )
                for row in conn.execute(USAGE_AGGREGATE_SQL)
            ]
            instances = [
                InstancePeriod(
                    id=row.id,
                    iccid=row.iccid,
                    bundle_moniker=row.bundle_moniker,
                    sequence=row.sequence,
                    start_time=row.start_time,
                    end_time=row.end_time,
                )
                for row in conn.execute(INSTANCES_SQL)
            ]

            plan = plan_backfill(usage, instances)
            updates = plan.updates()
            if updates:
                conn.execute(UPDATE_TOTAL_SQL, updates)

    except SQLAlchemyError as e:
        result.error = f"{type(e).__name__}: {e}"
        result.duration_ms = (time.monotonic() - start_time) * 1000
        logger.error("Usage backfill failed", error=result.error)
        return result

    result.exact_matched = len(plan.exact)
    result.date_range_matched = len(plan.date_range)
    result.overlapping_instances = len(plan.overlapping)
    result.duration_ms = (time.monotonic() - start_time) * 1000

    if plan.overlapping:
        logger.warning(
            "Overlapping bundle periods share usage",
            instances=len(plan.overlapping),
            instance_ids=[str(i) for i in plan.overlapping[:20]],
        )

    log_database_operation(
        logger,
        "BACKFILL",
        table="rpt_bundle_instances",
        duration_ms=result.duration_ms,
        rows_affected=len(updates),
        exact_matched=result.exact_matched,
        date_range_matched=result.date_range_matched,
    )
    return result
