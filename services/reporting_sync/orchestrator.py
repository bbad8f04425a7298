"""
Orchestrator for one reporting sync run.

Coordinates, in fixed order:
1. Setup: database connection, source client, tenant registry seeding
2. Table pipelines: endpoints -> bundle_instances -> usage -> bundles
3. Usage backfill onto bundle instances
4. Materialised view refresh
5. Persisting the run summary

A table pipeline failure is recorded in that table's SyncResult and the run
moves on to the next table. Only a setup failure fails the whole run, and
that too is recorded as the last result rather than raised.
"""

import time
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy.engine import Engine

from .backfill import run_backfill
from .db.connector import bulk_upsert, get_engine
from .db.tables import rpt_tenants
from .iccid_lookup import build_iccid_index
from .log_config import log_table_sync
from .models import BackfillResult, RefreshResult, RunSummary, SyncResult, STATUS_FAILED
from .pipelines import PIPELINES, PipelineSpec, is_newer, run_pipeline
from .refresh import refresh_views
from .source_client import SourceClient
from .state import LAST_RESULT_KEY, LAST_RUN_KEY, StateStore
from .tenants import TENANT_REGISTRY, validate_hierarchy
from .writer import BulkUpsertWriter

logger = structlog.get_logger(__name__)


def describe_error(error: BaseException) -> str:
    """Render an exception as '<Type>: <message>'."""
    return f"{type(error).__name__}: {error}"


def seed_tenants(conn, tenants=TENANT_REGISTRY) -> int:
    """
    Upsert the canonical tenant registry.

    Existing rows only have their parent updated; names and roles edited in
    the reporting store are left alone.

    Raises:
        TenantHierarchyError: Registry is not a valid forest
    """
    tenants = list(tenants)
    validate_hierarchy(tenants)

    stmt = bulk_upsert(
        rpt_tenants,
        ["tenant_id"],
        [tenant.to_row() for tenant in tenants],
        update_cols=["parent_tenant_id"],
        touch_column="updated_at",
    )
    with conn.begin():
        conn.execute(stmt)

    logger.info("Tenant registry seeded", tenants=len(tenants))
    return len(tenants)


class SyncOrchestrator:
    """
    Runs every table pipeline, the backfill and the view refresh.

    Args:
        config: ReportingSyncSettings
        state_store: Watermark and run-result store
        engine: Reporting database engine (built from config when omitted)
        client_factory: Builds the source client from config
    """

    def __init__(
        self,
        config,
        state_store: StateStore,
        engine: Optional[Engine] = None,
        client_factory: Optional[Callable] = None,
    ):
        self.config = config
        self.state = state_store
        self.engine = engine
        self.client_factory = client_factory or SourceClient.from_settings

    def _get_engine(self) -> Engine:
        if self.engine is None:
            if not self.config.database_url:
                raise ValueError("database_url is not configured")
            self.engine = get_engine(self.config.database_url)
        return self.engine

    def commit_watermark(self, pipeline: str, value: Optional[str]) -> bool:
        """Store `value` if it moves the pipeline's watermark forward."""
        current = self.state.get_watermark(pipeline)
        if not is_newer(value, current):
            return False
        self.state.put_watermark(pipeline, value)
        logger.info("Watermark advanced", pipeline=pipeline, previous=current, watermark=value)
        return True

    def _run_table(self, spec: PipelineSpec, client, writer) -> SyncResult:
        result = SyncResult(table=spec.target_table)
        watermark = self.state.get_watermark(spec.name)
        start_time = time.monotonic()

        with structlog.contextvars.bound_contextvars(table=spec.name):
            logger.info("Table sync starting", watermark=watermark)
            try:
                iccid_index = None
                if spec.uses_iccid_index:
                    iccid_index = build_iccid_index(client, page_size=self.config.sync_batch_size)

                run_pipeline(
                    spec,
                    result,
                    client,
                    writer,
                    watermark,
                    page_size=self.config.sync_batch_size,
                    max_records=self.config.usage_max_records,
                    max_offset=self.config.max_offset,
                    iccid_index=iccid_index,
                    save_watermark=lambda wm: self.commit_watermark(spec.name, wm),
                )
            except Exception as e:
                result.error = describe_error(e)

            result.duration_ms = (time.monotonic() - start_time) * 1000

            if result.success and result.records_synced > 0:
                self.commit_watermark(spec.name, result.watermark)

            log_table_sync(logger, result)
        return result

    def _persist(self, summary: RunSummary) -> None:
        self.state.put(LAST_RESULT_KEY, summary.to_dict())

    def run(self) -> RunSummary:
        """
        Execute one full sync run.

        Returns:
            RunSummary with status success, partial, or failed
        """
        summary = RunSummary(started_at=datetime.now(timezone.utc))
        start_time = time.monotonic()
        self.state.put(LAST_RUN_KEY, summary.started_at.isoformat())
        logger.info("Sync run starting", pipelines=[spec.name for spec in PIPELINES])

        with ExitStack() as stack:
            try:
                engine = self._get_engine()
                client = stack.enter_context(self.client_factory(self.config))
                conn = stack.enter_context(engine.connect())
                seed_tenants(conn)
            except Exception as e:
                summary.error = describe_error(e)
                summary.status = STATUS_FAILED
                summary.duration_ms = (time.monotonic() - start_time) * 1000
                logger.error("Sync run setup failed", error=summary.error)
                self._persist(summary)
                return summary

            writer = BulkUpsertWriter(conn, chunk_size=self.config.write_chunk_size)
            for spec in PIPELINES:
                summary.results.append(self._run_table(spec, client, writer))

            try:
                summary.backfill = run_backfill(conn)
            except Exception as e:
                summary.backfill = BackfillResult(error=describe_error(e))
                logger.error("Usage backfill failed", error=summary.backfill.error)

            if self.config.enable_view_refresh:
                summary.refresh = refresh_views(conn)
            else:
                summary.refresh = RefreshResult(skipped=True)

        summary.status = summary.compute_status()
        summary.duration_ms = (time.monotonic() - start_time) * 1000
        self._persist(summary)

        log = logger.info if summary.success else logger.warning
        log(
            "Sync run finished",
            status=summary.status,
            records_synced=summary.records_synced,
            failed_tables=[r.table for r in summary.results if not r.success],
            duration_ms=round(summary.duration_ms, 2),
        )
        return summary
