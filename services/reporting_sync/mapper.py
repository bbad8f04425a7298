"""
Projection of raw source rows onto the sanitised reporting schema.

Each pipeline has an explicit allow-list of source columns it may read and
target columns it may write. Subscriber identifiers, location, device
identifiers, credentials and raw payloads are never read. The allow-lists
are checked against SENSITIVE_COLUMNS when this module is imported; adding a
sensitive column to any list fails the import.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple, Union

import structlog
from pydantic import TypeAdapter, ValidationError

from .models import MappedRecord

logger = structlog.get_logger(__name__)


SENSITIVE_COLUMNS: FrozenSet[str] = frozenset({
    "imsi",
    "msisdn",
    "imei",
    "eid",
    "epid",
    "activation_code",
    "lpa_string",
    "ip_address",
    "endpoint_http_address",
    "endpoint_http_addresses",
    "latest_lat",
    "latest_lon",
    "raw_data",
    "identities",
    "tags",
    "source",
    "api_key",
    "scope",
})


@dataclass(frozen=True)
class TableMapping:
    pipeline: str
    source_columns: Tuple[str, ...]
    target_columns: Tuple[str, ...]
    # Identifiers that are fine elsewhere but must not leave this source table
    forbidden: FrozenSet[str] = frozenset()

    @property
    def select_clause(self) -> str:
        return ",".join(self.source_columns)


ENDPOINTS = TableMapping(
    pipeline="endpoints",
    source_columns=(
        "id", "endpoint_identifier",
        "endpoint_name", "endpoint_type", "endpoint_type_name",
        "status", "endpoint_status_name", "endpoint_network_status_name",
        "tenant_id", "customer_id",
        "usage_rolling_24h", "usage_rolling_7d", "usage_rolling_28d", "usage_rolling_1y",
        "charge_rolling_24h", "charge_rolling_7d", "charge_rolling_28d", "charge_rolling_1y",
        "first_activity", "latest_activity",
        "created_at", "updated_at",
    ),
    target_columns=(
        "customer_id",
        "endpoint_name", "endpoint_type", "endpoint_type_name",
        "status", "endpoint_status_name", "network_status_name",
        "usage_rolling_24h", "usage_rolling_7d", "usage_rolling_28d", "usage_rolling_1y",
        "charge_rolling_24h", "charge_rolling_7d", "charge_rolling_28d", "charge_rolling_1y",
        "first_activity", "latest_activity",
    ),
    forbidden=frozenset({"iccid"}),
)

BUNDLE_INSTANCES = TableMapping(
    pipeline="bundle_instances",
    source_columns=(
        "id", "created_at",
        "tenant_id", "tenant_name", "customer_name",
        "endpoint_name", "iccid",
        "bundle_name", "bundle_moniker", "bundle_instance_id",
        "start_time", "end_time",
        "status_name", "status_moniker",
        "sequence", "sequence_max",
    ),
    target_columns=(
        "customer_name", "endpoint_name", "iccid",
        "bundle_name", "bundle_moniker", "bundle_instance_id",
        "start_time", "end_time",
        "status_name", "status_moniker",
        "sequence", "sequence_max",
    ),
)

USAGE = TableMapping(
    pipeline="usage",
    source_columns=(
        "id", "created_at",
        "tenant_name", "customer_name",
        "endpoint_name", "endpoint_description",
        "iccid",
        "timestamp",
        "service_type", "charge_type",
        "consumption", "charged_consumption", "uplink_bytes", "downlink_bytes",
        "bundle_name", "bundle_moniker", "status_moniker",
        "bundle_instance_id", "sequence", "sequence_max",
        "rat_type_moniker",
        "serving_operator_name", "serving_operator_tadig",
        "buy_rating_charge", "buy_rating_currency",
        "sell_rating_charge", "sell_rating_currency",
    ),
    target_columns=(
        "customer_name", "endpoint_name", "endpoint_description",
        "iccid", "timestamp", "usage_date",
        "service_type", "charge_type",
        "consumption", "charged_consumption", "uplink_bytes", "downlink_bytes",
        "bundle_name", "bundle_moniker", "status_moniker",
        "bundle_instance_id", "sequence", "sequence_max",
        "rat_type_moniker",
        "serving_operator_name", "serving_country_name", "serving_country_iso2",
        "buy_charge", "buy_currency", "sell_charge", "sell_currency",
    ),
)

BUNDLES = TableMapping(
    pipeline="bundles",
    source_columns=(
        "id", "bundle_id", "bundle_name", "bundle_moniker",
        "status_name", "status_moniker",
        "tenant_name",
        "start_time", "end_time",
        "collected_at",
    ),
    target_columns=(
        "bundle_name", "bundle_moniker", "status_name",
        "effective_from", "effective_to",
    ),
    forbidden=frozenset({"iccid", "endpoint_iccid"}),
)

TABLE_MAPPINGS: Mapping[str, TableMapping] = {
    m.pipeline: m for m in (ENDPOINTS, BUNDLE_INSTANCES, USAGE, BUNDLES)
}


def check_allow_lists(mappings=None) -> None:
    """
    Verify no allow-list names a sensitive column.

    Raises:
        ValueError: If a source or target column is sensitive for its table
    """
    for mapping in (mappings or TABLE_MAPPINGS).values():
        denied = SENSITIVE_COLUMNS | mapping.forbidden
        leaked = denied & (set(mapping.source_columns) | set(mapping.target_columns))
        if leaked:
            raise ValueError(
                f"Allow-list for {mapping.pipeline} includes sensitive columns: {sorted(leaked)}"
            )


check_allow_lists()


class Skip:
    """Marker returned when a record must be dropped instead of written."""

    def __repr__(self):
        return "SKIP"


SKIP = Skip()


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def text_or_none(value) -> Optional[str]:
    """Empty strings count as missing."""
    if value is None or value == "":
        return None
    return value


_DATETIME = TypeAdapter(datetime)


def to_datetime(value: str) -> datetime:
    """Parse an ISO-8601 timestamp with any fractional-second precision."""
    return _DATETIME.validate_python(value.strip())


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse an ISO-8601 source timestamp.

    Returns None for missing values. Unparseable values are logged and
    treated as missing.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return to_datetime(str(value))
    except ValidationError:
        logger.warning("Unparseable source timestamp", value=value)
        return None


def usage_date(timestamp: Optional[datetime]) -> Optional[date]:
    """Calendar date of the event in the source's own offset."""
    if timestamp is None:
        return None
    return timestamp.date()


def first_present(*values):
    """First value that is neither None nor an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def build_bundle_instance_source_id(bundle_instance_id, iccid, start_time) -> str:
    """Composite dedup key; missing parts become empty strings."""
    return "|".join(str(part) if part else "" for part in (bundle_instance_id, iccid, start_time))


# ---------------------------------------------------------------------------
# Per-table projections
# ---------------------------------------------------------------------------

def _map_endpoint(row: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
    status = row.get("status")
    status_name = row.get("endpoint_status_name")
    network_status = row.get("endpoint_network_status_name")

    values = {
        "customer_id": text_or_none(row.get("customer_id")),
        "endpoint_name": text_or_none(row.get("endpoint_name")),
        "endpoint_type": text_or_none(row.get("endpoint_type")),
        "endpoint_type_name": text_or_none(row.get("endpoint_type_name")),
        "status": first_present(status, status_name, network_status),
        "endpoint_status_name": first_present(status_name, network_status, status),
        "network_status_name": text_or_none(network_status),
        "first_activity": parse_timestamp(row.get("first_activity")),
        "latest_activity": parse_timestamp(row.get("latest_activity")),
    }
    for window in ("24h", "7d", "28d", "1y"):
        values[f"usage_rolling_{window}"] = row.get(f"usage_rolling_{window}")
        values[f"charge_rolling_{window}"] = row.get(f"charge_rolling_{window}")

    return text_or_none(row.get("endpoint_identifier")), values


def _map_bundle_instance(row: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
    source_id = build_bundle_instance_source_id(
        row.get("bundle_instance_id"), row.get("iccid"), row.get("start_time")
    )
    values = {
        "customer_name": text_or_none(row.get("customer_name")),
        "endpoint_name": text_or_none(row.get("endpoint_name")),
        "iccid": text_or_none(row.get("iccid")),
        "bundle_name": text_or_none(row.get("bundle_name")),
        "bundle_moniker": text_or_none(row.get("bundle_moniker")),
        "bundle_instance_id": text_or_none(row.get("bundle_instance_id")),
        "start_time": parse_timestamp(row.get("start_time")),
        "end_time": parse_timestamp(row.get("end_time")),
        "status_name": text_or_none(row.get("status_name")),
        "status_moniker": text_or_none(row.get("status_moniker")),
        "sequence": row.get("sequence"),
        "sequence_max": row.get("sequence_max"),
    }
    return source_id, values


def _map_usage(row: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
    timestamp = parse_timestamp(row.get("timestamp"))
    values = {
        "customer_name": text_or_none(row.get("customer_name")),
        "endpoint_name": text_or_none(row.get("endpoint_name")),
        "endpoint_description": text_or_none(row.get("endpoint_description")),
        "iccid": text_or_none(row.get("iccid")),
        "timestamp": timestamp,
        "usage_date": usage_date(timestamp),
        "service_type": text_or_none(row.get("service_type")),
        "charge_type": text_or_none(row.get("charge_type")),
        "consumption": row.get("consumption"),
        "charged_consumption": row.get("charged_consumption"),
        "uplink_bytes": row.get("uplink_bytes"),
        "downlink_bytes": row.get("downlink_bytes"),
        "bundle_name": text_or_none(row.get("bundle_name")),
        "bundle_moniker": text_or_none(row.get("bundle_moniker")),
        "status_moniker": text_or_none(row.get("status_moniker")),
        "bundle_instance_id": text_or_none(row.get("bundle_instance_id")),
        "sequence": row.get("sequence"),
        "sequence_max": row.get("sequence_max"),
        "rat_type_moniker": text_or_none(row.get("rat_type_moniker")),
        "serving_operator_name": text_or_none(row.get("serving_operator_name")),
        "serving_country_name": text_or_none(row.get("serving_operator_tadig")),
        "serving_country_iso2": None,
        "buy_charge": row.get("buy_rating_charge"),
        "buy_currency": text_or_none(row.get("buy_rating_currency")),
        "sell_charge": row.get("sell_rating_charge"),
        "sell_currency": text_or_none(row.get("sell_rating_currency")),
    }
    source_id = row.get("id")
    return (str(source_id) if source_id not in (None, "") else None), values


def _map_bundle(row: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
    values = {
        "bundle_name": text_or_none(row.get("bundle_name")),
        "bundle_moniker": text_or_none(row.get("bundle_moniker")),
        "status_name": text_or_none(row.get("status_name")),
        # Stored as text in the reporting schema
        "effective_from": text_or_none(row.get("start_time")),
        "effective_to": text_or_none(row.get("end_time")),
    }
    source_id = row.get("bundle_id")
    return (str(source_id) if source_id not in (None, "") else None), values


_PROJECTIONS: Dict[str, Callable[[Dict[str, Any]], Tuple[Optional[str], Dict[str, Any]]]] = {
    "endpoints": _map_endpoint,
    "bundle_instances": _map_bundle_instance,
    "usage": _map_usage,
    "bundles": _map_bundle,
}


def map_record(
    pipeline: str,
    row: Dict[str, Any],
    tenant_id: Optional[str],
    watermark: Optional[str] = None,
) -> Union[MappedRecord, Skip]:
    """
    Project a source row onto its reporting table.

    Args:
        pipeline: Pipeline name (endpoints, bundle_instances, usage, bundles)
        row: Raw source row
        tenant_id: Resolved canonical tenant, or None when resolution failed
        watermark: Raw watermark value of the row, carried but not persisted

    Returns:
        MappedRecord, or SKIP when the tenant is unresolved or the row has
        no dedup key
    """
    if not tenant_id:
        return SKIP

    source_id, values = _PROJECTIONS[pipeline](row)
    if not source_id:
        return SKIP

    target_columns = TABLE_MAPPINGS[pipeline].target_columns
    return MappedRecord(
        source_id=source_id,
        tenant_id=tenant_id,
        values={col: values[col] for col in target_columns},
        watermark=watermark,
    )
