"""
Refresh the reporting materialised views after a sync run.

Each view is refreshed with REFRESH MATERIALIZED VIEW CONCURRENTLY so reads
are not blocked; if that fails (e.g. the view has never been populated) a
plain blocking refresh is tried once. A view that fails both is recorded and
logged; the run carries on.

Usage:
    from services.reporting_sync.refresh import refresh_views
    result = refresh_views(conn)
"""

import time
from typing import Iterable, Sequence

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .errors import RefreshError
from .models import RefreshResult

logger = structlog.get_logger(__name__)

REPORTING_VIEWS: Sequence[str] = (
    "mv_usage_daily",
    "mv_usage_monthly",
    "mv_usage_annual",
    "mv_bundle_expiry",
)

# View names are identifiers and cannot be bound; only these are accepted
_ALLOWED_VIEWS = frozenset(REPORTING_VIEWS)


def _refresh_materialized_view(conn, view_name: str, concurrent: bool = False) -> None:
    """
    Refresh a single materialized view in its own transaction.

    Args:
        conn: Database connection, not inside a transaction
        view_name: Name of the materialized view (must be allow-listed)
        concurrent: If True, use REFRESH CONCURRENTLY (requires unique index)
    """
    if view_name not in _ALLOWED_VIEWS:
        raise ValueError(f"Unknown materialized view: {view_name}")

    if concurrent:
        query = text(f"REFRESH MATERIALIZED VIEW CONCURRENTLY {view_name}")
    else:
        query = text(f"REFRESH MATERIALIZED VIEW {view_name}")

    with conn.begin():
        conn.execute(query)


def refresh_view(conn, view_name: str) -> bool:
    """
    Refresh one view, falling back to a blocking refresh.

    Returns:
        True if the concurrent refresh succeeded, False if the fallback was used

    Raises:
        RefreshError: Both attempts failed
    """
    try:
        _refresh_materialized_view(conn, view_name, concurrent=True)
        return True
    except SQLAlchemyError as e:
        logger.warning("Concurrent refresh failed, trying blocking refresh",
                       view=view_name, error=str(e))

    try:
        _refresh_materialized_view(conn, view_name, concurrent=False)
    except SQLAlchemyError as e:
        raise RefreshError(view_name, str(e)) from e
    return False


def refresh_views(conn, views: Iterable[str] = REPORTING_VIEWS) -> RefreshResult:
    """
    Refresh the reporting views.

    Args:
        conn: SQLAlchemy Connection, not inside a transaction
        views: Views to refresh, in order

    Returns:
        RefreshResult with per-view outcome
    """
    result = RefreshResult()
    start_time = time.monotonic()

    for view in views:
        try:
            concurrent = refresh_view(conn, view)
        except RefreshError as e:
            result.failed.append(view)
            result.errors.append(str(e))
            logger.error("Failed to refresh materialized view", view=view, error=str(e))
            continue

        result.refreshed.append(view)
        if not concurrent:
            result.fallback_used.append(view)
        logger.info("Refreshed materialized view", view=view, concurrent=concurrent)

    result.duration_ms = (time.monotonic() - start_time) * 1000

    if result.success:
        logger.info("View refresh complete", views=len(result.refreshed),
                    duration_ms=round(result.duration_ms, 2))
    else:
        logger.error("View refresh finished with failures", failed=result.failed)

    return result
