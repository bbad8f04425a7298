"""
Database helpers for the reporting store.
"""

from .connector import bulk_upsert, get_engine, set_current_tenant
from .tables import (
    metadata,
    rpt_bundle_instances,
    rpt_bundles,
    rpt_endpoints,
    rpt_tenants,
    rpt_usage,
)

__all__ = [
    "bulk_upsert",
    "get_engine",
    "set_current_tenant",
    "metadata",
    "rpt_bundle_instances",
    "rpt_bundles",
    "rpt_endpoints",
    "rpt_tenants",
    "rpt_usage",
]
