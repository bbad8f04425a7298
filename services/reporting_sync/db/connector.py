"""
PostgreSQL connectivity and statement builders for the reporting store.

Uses SQLAlchemy 2.x with the psycopg driver and PostgreSQL's
INSERT ... ON CONFLICT for idempotent multi-row upserts.
"""

from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import Engine, Table, create_engine, func, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.sql import Insert

logger = structlog.get_logger(__name__)

TENANT_SETTING = "app.current_tenant"
ADMIN_TENANT = "*"


def normalise_dsn(dsn: str) -> str:
    """Select the psycopg 3 driver for plain postgres DSNs."""
    if dsn.startswith("postgres://"):
        dsn = "postgresql://" + dsn[len("postgres://"):]
    if dsn.startswith("postgresql://"):
        dsn = "postgresql+psycopg://" + dsn[len("postgresql://"):]
    return dsn


def get_engine(dsn: str, **kwargs) -> Engine:
    """
    Create and return a SQLAlchemy engine for the reporting store.

    One run uses one connection sequentially, so the pool is kept small.

    Args:
        dsn: PostgreSQL connection string
        **kwargs: Additional arguments passed to create_engine()

    Returns:
        SQLAlchemy Engine instance
    """
    default_kwargs = {
        "echo": False,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "pool_size": 1,
        "max_overflow": 0,
        "connect_args": {
            "application_name": "reporting_sync",
            "connect_timeout": 10,
        }
    }
    default_kwargs.update(kwargs)

    logger.info("Creating database engine", dsn_host=dsn.split('@')[-1].split('/')[0] if '@' in dsn else 'unknown')

    return create_engine(normalise_dsn(dsn), **default_kwargs)


def bulk_upsert(
    table: Table,
    conflict_keys: Sequence[str],
    rows: List[Dict[str, Any]],
    update_cols: Optional[Sequence[str]] = None,
    index_where=None,
    touch_column: Optional[str] = "synced_at",
) -> Insert:
    """
    Create a multi-row upsert statement using INSERT ... ON CONFLICT.

    Every row must carry the same keys. Values are bound parameters.

    Args:
        table: SQLAlchemy Table object
        conflict_keys: Columns of the unique index that defines a conflict
        rows: Row dictionaries to insert
        update_cols: Columns overwritten on conflict. Empty means DO NOTHING.
        index_where: Predicate of a partial unique index, if any
        touch_column: Column set to now() on conflict (its server default
            covers inserts)

    Returns:
        SQLAlchemy Insert statement with ON CONFLICT clause

    Raises:
        ValueError: If conflict_keys or rows is empty

    Example:
        >>> stmt = bulk_upsert(
        ...     rpt_usage, ["source_id"], rows,
        ...     update_cols=["status_moniker"],
        ...     index_where=rpt_usage.c.source_id.isnot(None),
        ... )
        >>> conn.execute(stmt)
    """
    if not conflict_keys:
        raise ValueError("conflict_keys cannot be empty")

    if not rows:
        raise ValueError("rows cannot be empty")

    conflict_keys_list = list(conflict_keys)

    stmt = insert(table).values(rows)

    if update_cols is not None and len(update_cols) == 0:
        return stmt.on_conflict_do_nothing(
            index_elements=conflict_keys_list,
            index_where=index_where,
        )

    if update_cols is None:
        update_cols = [col for col in rows[0].keys() if col not in conflict_keys_list]

    update_dict = {col: stmt.excluded[col] for col in update_cols}
    if touch_column:
        update_dict[touch_column] = func.now()

    return stmt.on_conflict_do_update(
        index_elements=conflict_keys_list,
        index_where=index_where,
        set_=update_dict,
    )


def set_current_tenant(conn, tenant_id: str) -> None:
    """
    Set the tenant whose rows a reader session may see.

    Row-level security policies read ``app.current_tenant``; ``*`` grants
    the admin view. Applies to the session, not just the transaction.

    Raises:
        ValueError: If tenant_id is empty
    """
    if not tenant_id or not tenant_id.strip():
        raise ValueError("tenant_id cannot be empty")

    conn.execute(
        text("SELECT set_config(:name, :value, false)"),
        {"name": TENANT_SETTING, "value": tenant_id.strip()},
    )
    logger.debug("Current tenant set", tenant_id=tenant_id.strip())
