"""
Exception types raised by the sync engine.

Per-record tenant resolution failures are not exceptions; see
tenants.Unresolved.
"""

from typing import Optional


class ReportingSyncError(Exception):
    """Base exception for reporting sync errors."""
    pass


class FetchError(ReportingSyncError):
    """Source API returned a non-success or malformed response."""

    def __init__(self, table: str, message: str, status_code: Optional[int] = None, body: str = ""):
        self.table = table
        self.status_code = status_code
        self.body = body
        detail = f"Source fetch {table} failed"
        if status_code is not None:
            detail += f" ({status_code})"
        super().__init__(f"{detail}: {message}")


class WriteError(ReportingSyncError):
    """Target store rejected an upsert chunk."""

    def __init__(self, table: str, chunk_index: int, rows_written: int, message: str):
        self.table = table
        self.chunk_index = chunk_index
        self.rows_written = rows_written
        super().__init__(
            f"Upsert into {table} failed at chunk {chunk_index} "
            f"after {rows_written} rows: {message}"
        )


class RefreshError(ReportingSyncError):
    """Materialised view could not be refreshed."""

    def __init__(self, view: str, message: str):
        self.view = view
        super().__init__(f"Refresh of {view} failed: {message}")


class TenantHierarchyError(ReportingSyncError):
    """Canonical tenant registry is not a valid forest."""
    pass
