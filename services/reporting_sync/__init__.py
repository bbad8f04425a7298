"""
Reporting Sync Service

Incrementally replicates sanitised operational records from the multi-tenant
source store into the reporting database:
- Watermark-based paginated fetch per source table
- Tenant resolution cascade (name -> id -> ICCID -> ICCID prefix)
- Idempotent chunked upserts into the reporting tables
- Usage -> bundle instance backfill and materialised view refresh
"""

__version__ = "0.1.0"
