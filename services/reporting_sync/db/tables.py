"""
SQLAlchemy table definitions for the reporting store.

Mirrors the deployed reporting schema closely enough to build statements and
to create a throwaway copy for integration tests. The dedup indexes are
partial (``WHERE source_id IS NOT NULL``); upserts must pass the same
predicate as ``index_where`` for Postgres to infer them.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    Table,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID

metadata = MetaData()


def _id_column() -> Column:
    return Column("id", UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))


def _tenant_column() -> Column:
    return Column("tenant_id", Text, ForeignKey("rpt_tenants.tenant_id"), nullable=False)


def _synced_at_column() -> Column:
    return Column("synced_at", DateTime(timezone=True), server_default=func.now())


rpt_tenants = Table(
    "rpt_tenants",
    metadata,
    Column("tenant_id", Text, primary_key=True),
    Column("tenant_name", Text, nullable=False),
    Column("parent_tenant_id", Text, ForeignKey("rpt_tenants.tenant_id")),
    Column("role", Text, nullable=False),
    Column("is_active", Boolean, server_default=text("true")),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    CheckConstraint("role IN ('tenant', 'customer')", name="rpt_tenants_role_check"),
)


rpt_usage = Table(
    "rpt_usage",
    metadata,
    _id_column(),
    Column("source_id", Text),
    _tenant_column(),
    Column("customer_name", Text),
    Column("endpoint_name", Text),
    Column("endpoint_description", Text),
    Column("iccid", Text),
    Column("timestamp", DateTime(timezone=True)),
    Column("usage_date", Date),
    Column("service_type", Text),
    Column("charge_type", Text),
    Column("consumption", BigInteger),
    Column("charged_consumption", BigInteger),
    Column("uplink_bytes", BigInteger),
    Column("downlink_bytes", BigInteger),
    Column("bundle_name", Text),
    Column("bundle_moniker", Text),
    Column("status_moniker", Text),
    Column("bundle_instance_id", Text),
    Column("sequence", Integer),
    Column("sequence_max", Integer),
    Column("rat_type_moniker", Text),
    Column("serving_operator_name", Text),
    Column("serving_country_name", Text),
    Column("serving_country_iso2", Text),
    Column("buy_charge", Numeric(12, 4)),
    Column("buy_currency", Text),
    Column("sell_charge", Numeric(12, 4)),
    Column("sell_currency", Text),
    _synced_at_column(),
)

Index(
    "idx_rpt_usage_source",
    rpt_usage.c.source_id,
    unique=True,
    postgresql_where=rpt_usage.c.source_id.isnot(None),
)
Index("idx_rpt_usage_tenant_date", rpt_usage.c.tenant_id, rpt_usage.c.usage_date)


rpt_bundles = Table(
    "rpt_bundles",
    metadata,
    _id_column(),
    Column("source_id", Text),
    _tenant_column(),
    Column("bundle_name", Text),
    Column("bundle_moniker", Text),
    Column("status_name", Text),
    Column("effective_from", Text),
    Column("effective_to", Text),
    _synced_at_column(),
)

# One catalog row per bundle per tenant
Index(
    "idx_rpt_bundles_source",
    rpt_bundles.c.source_id,
    rpt_bundles.c.tenant_id,
    unique=True,
    postgresql_where=rpt_bundles.c.source_id.isnot(None),
)


rpt_bundle_instances = Table(
    "rpt_bundle_instances",
    metadata,
    _id_column(),
    Column("source_id", Text),
    _tenant_column(),
    Column("customer_name", Text),
    Column("endpoint_name", Text),
    Column("iccid", Text),
    Column("bundle_name", Text),
    Column("bundle_moniker", Text),
    Column("bundle_instance_id", Text),
    Column("start_time", DateTime(timezone=True)),
    Column("end_time", DateTime(timezone=True)),
    Column("status_name", Text),
    Column("status_moniker", Text),
    Column("sequence", Integer),
    Column("sequence_max", Integer),
    Column("data_used_mb", BigInteger),
    Column("data_allowance_mb", BigInteger),
    _synced_at_column(),
)

Index(
    "idx_rpt_bi_source",
    rpt_bundle_instances.c.source_id,
    unique=True,
    postgresql_where=rpt_bundle_instances.c.source_id.isnot(None),
)
Index("idx_rpt_bi_tenant_iccid", rpt_bundle_instances.c.tenant_id, rpt_bundle_instances.c.iccid)


rpt_endpoints = Table(
    "rpt_endpoints",
    metadata,
    _id_column(),
    Column("source_id", Text),
    _tenant_column(),
    Column("customer_id", Text),
    Column("endpoint_name", Text),
    Column("endpoint_type", Text),
    Column("endpoint_type_name", Text),
    Column("status", Text),
    Column("endpoint_status_name", Text),
    Column("network_status_name", Text),
    Column("usage_rolling_24h", BigInteger),
    Column("usage_rolling_7d", BigInteger),
    Column("usage_rolling_28d", BigInteger),
    Column("usage_rolling_1y", BigInteger),
    Column("charge_rolling_24h", Numeric(12, 4)),
    Column("charge_rolling_7d", Numeric(12, 4)),
    Column("charge_rolling_28d", Numeric(12, 4)),
    Column("charge_rolling_1y", Numeric(12, 4)),
    Column("first_activity", DateTime(timezone=True)),
    Column("latest_activity", DateTime(timezone=True)),
    _synced_at_column(),
)

Index(
    "idx_rpt_endpoints_source",
    rpt_endpoints.c.source_id,
    rpt_endpoints.c.tenant_id,
    unique=True,
    postgresql_where=rpt_endpoints.c.source_id.isnot(None),
)
