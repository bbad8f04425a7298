"""
Result and record types shared across the sync pipelines.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"


@dataclass
class MappedRecord:
    """
    Sanitised canonical-schema row ready for upsert.

    `watermark` carries the raw source cursor value of the row it was mapped
    from. It is never persisted.
    """

    source_id: str
    tenant_id: str
    values: Dict[str, Any]
    watermark: Optional[str] = None

    def as_row(self) -> Dict[str, Any]:
        return {"source_id": self.source_id, "tenant_id": self.tenant_id, **self.values}


@dataclass
class SyncResult:
    """Outcome of one table pipeline within a run."""

    table: str
    records_synced: int = 0
    records_skipped: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None
    watermark: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "table": self.table,
            "recordsSynced": self.records_synced,
            "recordsSkipped": self.records_skipped,
            "durationMs": round(self.duration_ms, 2),
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class BackfillResult:
    """Counts from the usage -> bundle instance backfill pass."""

    iccids_trimmed: int = 0
    instances_reset: int = 0
    exact_matched: int = 0
    date_range_matched: int = 0
    overlapping_instances: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "iccidsTrimmed": self.iccids_trimmed,
            "instancesReset": self.instances_reset,
            "exactMatched": self.exact_matched,
            "dateRangeMatched": self.date_range_matched,
            "overlappingInstances": self.overlapping_instances,
            "durationMs": round(self.duration_ms, 2),
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class RefreshResult:
    """Result of the materialised view refresh with per-view outcome."""

    refreshed: List[str] = field(default_factory=list)
    fallback_used: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0.0
    skipped: bool = False

    @property
    def success(self) -> bool:
        """Check if every view was refreshed."""
        return len(self.failed) == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refreshed": self.refreshed,
            "fallbackUsed": self.fallback_used,
            "failed": self.failed,
            "errors": self.errors,
            "durationMs": round(self.duration_ms, 2),
            "skipped": self.skipped,
            "success": self.success,
        }


@dataclass
class RunSummary:
    """
    Summary of one full sync run.

    Persisted as the last run result and printed by the CLI.
    """

    started_at: datetime
    status: str = STATUS_SUCCESS
    results: List[SyncResult] = field(default_factory=list)
    backfill: Optional[BackfillResult] = None
    refresh: Optional[RefreshResult] = None
    duration_ms: float = 0.0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def records_synced(self) -> int:
        return sum(r.records_synced for r in self.results)

    def compute_status(self) -> str:
        """Derive the overall status from setup error and per-table outcomes."""
        if self.error:
            return STATUS_FAILED
        if any(not r.success for r in self.results):
            return STATUS_PARTIAL
        if self.backfill is not None and not self.backfill.success:
            return STATUS_PARTIAL
        return STATUS_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "timestamp": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 2),
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
            "backfill": self.backfill.to_dict() if self.backfill else None,
            "refresh": self.refresh.to_dict() if self.refresh else None,
        }
        if self.error:
            data["error"] = self.error
        return data
