"""
Per-table sync pipelines: fetch -> resolve tenant -> map -> upsert.

Each pipeline is described by a PipelineSpec. Running one fills in a
SyncResult as it goes, so progress made before a failure is still reported
when the orchestrator records the error.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import structlog
from pydantic import ValidationError

from .iccid_lookup import IccidTenantIndex
from .mapper import SKIP, TABLE_MAPPINGS, map_record, to_datetime
from .models import MappedRecord, SyncResult
from .tenants import Resolved, resolve

logger = structlog.get_logger(__name__)

@dataclass(frozen=True)
class PipelineSpec:
    name: str
    source_table: str
    target_table: str
    watermark_column: str
    order_column: str
    name_field: Optional[str]
    id_field: Optional[str]
    # Fall back to the ICCID index when the tenant fields do not resolve
    uses_iccid_index: bool = False
    # Save the watermark after every committed chunk
    saves_incrementally: bool = False
    # Cap rows fetched per run at the configured maximum
    bounded: bool = False

    @property
    def select_clause(self) -> str:
        return TABLE_MAPPINGS[self.name].select_clause


# Fixed run order: later pipelines rely on tenants and instances written earlier
PIPELINES = (
    PipelineSpec(
        name="endpoints",
        source_table="endpoints",
        target_table="rpt_endpoints",
        watermark_column="updated_at",
        order_column="updated_at",
        name_field=None,
        id_field="tenant_id",
    ),
    PipelineSpec(
        name="bundle_instances",
        source_table="bundle_instances_report",
        target_table="rpt_bundle_instances",
        watermark_column="created_at",
        order_column="created_at",
        name_field="tenant_name",
        id_field="tenant_id",
    ),
    PipelineSpec(
        name="usage",
        source_table="custom_usage_reports",
        target_table="rpt_usage",
        watermark_column="created_at",
        order_column="created_at",
        name_field="tenant_name",
        id_field=None,
        uses_iccid_index=True,
        saves_incrementally=True,
        bounded=True,
    ),
    PipelineSpec(
        name="bundles",
        source_table="active_bundles",
        target_table="rpt_bundles",
        watermark_column="collected_at",
        order_column="collected_at",
        name_field="tenant_name",
        id_field=None,
    ),
)

PIPELINE_NAMES = tuple(spec.name for spec in PIPELINES)


# ---------------------------------------------------------------------------
# Watermarks
# ---------------------------------------------------------------------------

def _parse_cursor(value: str) -> Optional[datetime]:
    try:
        return to_datetime(value)
    except ValidationError:
        return None


def is_newer(candidate: Optional[str], current: Optional[str]) -> bool:
    """
    True if `candidate` should replace `current` as a watermark.

    Timestamps are compared as datetimes; anything unparseable, or a mix of
    naive and aware values, falls back to string comparison.
    """
    if not candidate:
        return False
    if not current:
        return True

    parsed_candidate, parsed_current = _parse_cursor(candidate), _parse_cursor(current)
    if parsed_candidate is not None and parsed_current is not None:
        try:
            return parsed_candidate > parsed_current
        except TypeError:
            pass
    return candidate > current


def safe_watermark(values: Sequence[Optional[str]], processed: int, truncated: bool = False) -> Optional[str]:
    """
    Greatest cursor value that no unprocessed row can share.

    The next run filters on ``watermark_column > value``, so a value is only
    safe once every row carrying it has been processed. `values` are the
    fetched rows' cursor values in ascending order, the first `processed` of
    them done. A value is safe when the next fetched row carries a different
    one. The last fetched value is safe only if the fetch reached the end of
    the source; after a capped fetch the unfetched rows may continue the tie.

    Returns None when no processed value is safe.
    """
    for index in range(min(processed, len(values)) - 1, -1, -1):
        value = values[index]
        if not value:
            continue
        if index + 1 < len(values):
            if values[index + 1] != value:
                return str(value)
        elif not truncated:
            return str(value)
    return None


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@dataclass
class ResolutionStats:
    resolved: Counter = field(default_factory=Counter)
    skipped: int = 0
    unknown_tenant_names: Set[str] = field(default_factory=set)
    unmatched_iccids: Counter = field(default_factory=Counter)

    def to_log(self) -> Dict[str, Any]:
        return {
            "resolved": dict(self.resolved),
            "skipped": self.skipped,
            "unknown_tenant_names": sorted(self.unknown_tenant_names),
            "unmatched_iccids": [
                f"{iccid}({count})" for iccid, count in self.unmatched_iccids.most_common(50)
            ],
            "unmatched_iccid_count": len(self.unmatched_iccids),
        }


def resolve_row_tenant(
    spec: PipelineSpec,
    row: Dict[str, Any],
    stats: ResolutionStats,
    iccid_index: Optional[IccidTenantIndex] = None,
) -> Optional[str]:
    """Run the tenant cascade for one source row, recording how it resolved."""
    tenant_name = row.get(spec.name_field) if spec.name_field else None
    tenant_id = row.get(spec.id_field) if spec.id_field else None

    resolution = resolve(tenant_name, tenant_id)
    if isinstance(resolution, Resolved):
        stats.resolved[resolution.via] += 1
        return resolution.tenant_id

    if spec.uses_iccid_index and iccid_index is not None:
        resolved_id, via = iccid_index.lookup(row.get("iccid"))
        if resolved_id:
            stats.resolved[via] += 1
            return resolved_id

    stats.skipped += 1
    if isinstance(tenant_name, str) and tenant_name.strip():
        stats.unknown_tenant_names.add(tenant_name)
    if spec.uses_iccid_index:
        iccid = row.get("iccid")
        stats.unmatched_iccids[iccid.strip() if isinstance(iccid, str) and iccid.strip() else "NO_ICCID"] += 1
    return None


# ---------------------------------------------------------------------------
# Pipeline run
# ---------------------------------------------------------------------------

def run_pipeline(
    spec: PipelineSpec,
    result: SyncResult,
    client,
    writer,
    watermark: Optional[str],
    page_size: int = 1000,
    max_records: Optional[int] = None,
    max_offset: int = 1_000_000,
    iccid_index: Optional[IccidTenantIndex] = None,
    save_watermark: Optional[Callable[[str], None]] = None,
) -> SyncResult:
    """
    Sync one source table into its reporting table.

    Fills `result` in place. Exceptions propagate to the caller after the
    counts reached so far have been recorded.

    Args:
        spec: Pipeline description
        result: SyncResult to fill
        client: SourceClient
        writer: BulkUpsertWriter
        watermark: Last committed watermark, or None for a full sync
        page_size: Source page size
        max_records: Row cap for bounded pipelines
        max_offset: Pagination safety ceiling
        iccid_index: ICCID -> tenant index for pipelines that use it
        save_watermark: Called with the safe watermark after each chunk
            commits, for pipelines that save incrementally

    Returns:
        The filled SyncResult; ``result.watermark`` is the greatest fetched
        cursor value no unfetched row can share (see safe_watermark), or
        None if there is none
    """
    start_time = time.monotonic()
    try:
        records = client.fetch_all(
            spec.source_table,
            select_columns=spec.select_clause,
            watermark=watermark,
            watermark_column=spec.watermark_column,
            order_column=spec.order_column,
            page_size=page_size,
            max_records=max_records if spec.bounded else None,
            max_offset=max_offset,
        )
        if not records:
            logger.info("No new source records", watermark=watermark)
            return result

        cursor_values = [row.get(spec.watermark_column) for row in records]
        # The fetch stopped at a cap rather than at the end of the source
        truncated = bool(spec.bounded and max_records and len(records) >= max_records) \
            or len(records) > max_offset

        stats = ResolutionStats()
        mapped: List[MappedRecord] = []
        # id(record) -> index of the source row it was mapped from
        positions: Dict[int, int] = {}
        for position, row in enumerate(records):
            tenant_id = resolve_row_tenant(spec, row, stats, iccid_index)
            record = map_record(spec.name, row, tenant_id, watermark=row.get(spec.watermark_column))
            if record is SKIP:
                continue
            positions[id(record)] = position
            mapped.append(record)

        result.records_skipped = len(records) - len(mapped)
        if stats.unknown_tenant_names or stats.unmatched_iccids:
            logger.warning("Records dropped during tenant resolution", **stats.to_log())
        logger.info(
            "Mapped source records",
            fetched=len(records),
            mapped=len(mapped),
            skipped=result.records_skipped,
            resolved=dict(stats.resolved),
        )

        def on_chunk(chunk: List[MappedRecord], written: int) -> None:
            result.records_synced = written
            if not spec.saves_incrementally or save_watermark is None:
                return
            mark = safe_watermark(cursor_values, positions[id(chunk[-1])] + 1, truncated)
            if mark:
                save_watermark(mark)

        if mapped:
            result.records_synced = writer.write(spec.name, mapped, on_chunk=on_chunk)

        result.watermark = safe_watermark(cursor_values, len(records), truncated)

        if truncated:
            logger.info("Fetch cap reached; remaining rows wait for the next run",
                        fetched=len(records), watermark=result.watermark)
            if result.watermark is None:
                logger.warning("Every fetched row shares one cursor value; watermark not advanced",
                               value=cursor_values[-1])

        return result
    finally:
        result.duration_ms = (time.monotonic() - start_time) * 1000
