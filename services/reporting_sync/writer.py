"""
Chunked, idempotent upserts of mapped records into the reporting tables.

Each chunk is one multi-row INSERT ... ON CONFLICT DO UPDATE committed in its
own transaction. A failing chunk aborts the rest of the table; chunks that
already committed stay committed, which is safe because re-running the same
source window converges to the same rows.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog
from sqlalchemy import Table
from sqlalchemy.exc import SQLAlchemyError

from .db.connector import bulk_upsert
from .db.tables import rpt_bundle_instances, rpt_bundles, rpt_endpoints, rpt_usage
from .errors import WriteError
from .log_config import log_database_operation
from .mapper import TABLE_MAPPINGS
from .models import MappedRecord

logger = structlog.get_logger(__name__)

# PostgreSQL wire protocol limit on bind parameters per statement
MAX_BIND_PARAMS = 65535

DEFAULT_CHUNK_SIZE = 500


@dataclass(frozen=True)
class UpsertTarget:
    """Where and how one pipeline's records are written."""

    pipeline: str
    table: Table
    conflict_columns: Tuple[str, ...]
    update_columns: Tuple[str, ...]

    @property
    def columns(self) -> Tuple[str, ...]:
        return ("source_id", "tenant_id") + TABLE_MAPPINGS[self.pipeline].target_columns

    @property
    def index_where(self):
        return self.table.c.source_id.isnot(None)

    def conflict_key(self, record: MappedRecord) -> Tuple[Any, ...]:
        row = record.as_row()
        return tuple(row[col] for col in self.conflict_columns)


_ROLLING_METRICS = tuple(
    f"{kind}_rolling_{window}"
    for kind in ("usage", "charge")
    for window in ("24h", "7d", "28d", "1y")
)

UPSERT_TARGETS: Mapping[str, UpsertTarget] = {
    "endpoints": UpsertTarget(
        pipeline="endpoints",
        table=rpt_endpoints,
        conflict_columns=("source_id", "tenant_id"),
        update_columns=(
            "endpoint_name", "status", "endpoint_status_name", "network_status_name",
            *_ROLLING_METRICS,
            "latest_activity",
        ),
    ),
    "bundle_instances": UpsertTarget(
        pipeline="bundle_instances",
        table=rpt_bundle_instances,
        conflict_columns=("source_id",),
        update_columns=("status_name", "status_moniker", "end_time"),
    ),
    "usage": UpsertTarget(
        pipeline="usage",
        table=rpt_usage,
        conflict_columns=("source_id",),
        update_columns=(
            "tenant_id", "customer_name", "bundle_name", "bundle_moniker", "status_moniker",
            "bundle_instance_id", "sequence", "sequence_max",
        ),
    ),
    "bundles": UpsertTarget(
        pipeline="bundles",
        table=rpt_bundles,
        conflict_columns=("source_id", "tenant_id"),
        update_columns=("bundle_name", "status_name", "effective_to"),
    ),
}


def dedupe_by_conflict_key(target: UpsertTarget, records: Sequence[MappedRecord]) -> List[MappedRecord]:
    """
    Keep one record per conflict key, the last occurrence winning.

    Postgres rejects a statement that touches the same conflict row twice
    ("ON CONFLICT DO UPDATE command cannot affect row a second time").
    Records are ordered by their last appearance, so an ascending source
    order stays ascending.
    """
    latest: Dict[Tuple[Any, ...], MappedRecord] = {}
    for record in records:
        key = target.conflict_key(record)
        latest.pop(key, None)
        latest[key] = record
    return list(latest.values())


def effective_chunk_size(requested: int, column_count: int) -> int:
    """Largest chunk not exceeding `requested` that stays under the bind limit."""
    if column_count < 1:
        raise ValueError("column_count must be positive")
    return max(1, min(requested, MAX_BIND_PARAMS // column_count))


class BulkUpsertWriter:
    """
    Writes mapped records in bounded chunks through one connection.

    Args:
        conn: SQLAlchemy Connection, not inside a transaction
        chunk_size: Requested rows per statement
    """

    def __init__(self, conn, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.conn = conn
        self.chunk_size = chunk_size

    def write(
        self,
        pipeline: str,
        records: Sequence[MappedRecord],
        on_chunk: Optional[Callable[[List[MappedRecord], int], None]] = None,
    ) -> int:
        """
        Upsert records into the pipeline's reporting table.

        Args:
            pipeline: Pipeline name selecting the UpsertTarget
            records: Mapped records, in source order
            on_chunk: Called after each committed chunk with the chunk and
                the running total written

        Returns:
            Number of rows written

        Raises:
            WriteError: A chunk was rejected; earlier chunks remain committed
        """
        target = UPSERT_TARGETS[pipeline]
        unique = dedupe_by_conflict_key(target, records)
        if len(unique) < len(records):
            logger.info(
                "Collapsed duplicate conflict keys",
                table=target.table.name,
                duplicates=len(records) - len(unique),
            )

        columns = target.columns
        size = effective_chunk_size(self.chunk_size, len(columns))
        written = 0
        start_time = time.monotonic()

        for chunk_index, offset in enumerate(range(0, len(unique), size)):
            chunk = unique[offset:offset + size]
            rows = [record.as_row() for record in chunk]
            stmt = bulk_upsert(
                target.table,
                target.conflict_columns,
                rows,
                update_cols=target.update_columns,
                index_where=target.index_where,
            )

            try:
                with self.conn.begin():
                    self.conn.execute(stmt)
            except SQLAlchemyError as e:
                logger.error(
                    "Upsert chunk failed",
                    table=target.table.name,
                    chunk_index=chunk_index,
                    rows_written=written,
                    error=str(e),
                )
                raise WriteError(target.table.name, chunk_index, written, str(e)) from e

            written += len(chunk)
            logger.debug("Upserted chunk", table=target.table.name, chunk_index=chunk_index,
                         written=written, total=len(unique))
            if on_chunk is not None:
                on_chunk(chunk, written)

        if written:
            log_database_operation(
                logger,
                "UPSERT",
                table=target.table.name,
                duration_ms=(time.monotonic() - start_time) * 1000,
                rows_affected=written,
                chunk_size=size,
            )
        return written
