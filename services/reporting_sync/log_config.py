"""
structlog setup for the sync CLI.

configure_logging() is called once by main(); library modules only call
structlog.get_logger(__name__) and never configure logging themselves.
The two helpers below give database writes and table outcomes a fixed
event shape so runs can be compared in the log store.
"""

import logging
import sys
from typing import Optional

import structlog
from structlog.typing import FilteringBoundLogger


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "reporting-sync",
    environment: str = "development",
) -> None:
    """
    Configure structlog with JSON output and stdlib compatibility.

    Args:
        log_level: Minimum level to emit (DEBUG, INFO, ...)
        log_format: "json" for machine-readable output, "text" for console output
        service_name: Added to every log entry
        environment: Added to every log entry
    """
    level = getattr(logging, log_level.upper())

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),

        # Add service metadata
        lambda _, __, event_dict: {
            **event_dict,
            "service": service_name,
            "environment": environment,
        },
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> FilteringBoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (defaults to caller's module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_database_operation(
    logger: FilteringBoundLogger,
    operation: str,
    table: Optional[str] = None,
    duration_ms: Optional[float] = None,
    rows_affected: Optional[int] = None,
    **extra_context
) -> None:
    """
    Log a database operation with structured information.

    Args:
        logger: Logger instance
        operation: Database operation (UPSERT, UPDATE, REFRESH, ...)
        table: Table or view name
        duration_ms: Operation duration in milliseconds
        rows_affected: Number of rows affected
        **extra_context: Additional context to include
    """
    context = {
        "operation": operation.upper(),
        **extra_context
    }

    if table:
        context["table"] = table

    if duration_ms is not None:
        context["duration_ms"] = round(duration_ms, 2)

    if rows_affected is not None:
        context["rows_affected"] = rows_affected

    logger.info("Database operation completed", **context)


def log_table_sync(logger: FilteringBoundLogger, result) -> None:
    """
    Log the outcome of one table pipeline.

    Args:
        logger: Logger instance
        result: SyncResult for the table
    """
    context = {
        "table": result.table,
        "records_synced": result.records_synced,
        "records_skipped": result.records_skipped,
        "duration_ms": round(result.duration_ms, 2),
    }

    if result.error:
        logger.error("Table sync failed", error=result.error, **context)
    else:
        logger.info("Table sync completed", **context)
