"""
ICCID -> tenant index for usage rows that arrive without a usable tenant_name.

Built fresh each run from three source tables in fixed priority order; later
sources only fill gaps and never overwrite. A 12-character prefix map
recovers orphaned ICCIDs (decommissioned SIMs absent from every source) from
the dominant tenant among sibling ICCIDs on the same issuer/network prefix.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog

from .errors import FetchError
from .tenants import resolve_tenant_id

logger = structlog.get_logger(__name__)

PREFIX_LENGTH = 12

VIA_EXACT = "iccid"
VIA_PREFIX = "iccid_prefix"


@dataclass(frozen=True)
class LookupSource:
    """One fallback table the index is built from."""

    table: str
    select_columns: str
    name_field: Optional[str]
    id_field: Optional[str]
    order_column: str = "created_at"
    # A primary source must have both fields and its fetch failure is fatal
    primary: bool = False


LOOKUP_SOURCES: Tuple[LookupSource, ...] = (
    LookupSource(
        table="endpoints",
        select_columns="iccid,tenant_id",
        name_field=None,
        id_field="tenant_id",
        primary=True,
    ),
    LookupSource(
        table="bundle_instances_report",
        select_columns="iccid,tenant_name,tenant_id",
        name_field="tenant_name",
        id_field="tenant_id",
    ),
    LookupSource(
        table="active_bundles",
        select_columns="iccid,tenant_name",
        name_field="tenant_name",
        id_field=None,
        order_column="collected_at",
    ),
)


def normalise_iccid(iccid) -> Optional[str]:
    """Trim an ICCID; blanks and non-strings give None."""
    if not isinstance(iccid, str):
        return None
    return iccid.strip() or None


@dataclass
class IccidTenantIndex:
    exact: Dict[str, str] = field(default_factory=dict)
    prefix: Dict[str, str] = field(default_factory=dict)

    def lookup(self, iccid) -> Tuple[Optional[str], Optional[str]]:
        """
        Find the tenant for an ICCID.

        Returns:
            (tenant_id, via) where via is "iccid" or "iccid_prefix",
            or (None, None)
        """
        key = normalise_iccid(iccid)
        if key is None:
            return None, None
        tenant_id = self.exact.get(key)
        if tenant_id:
            return tenant_id, VIA_EXACT
        tenant_id = self.prefix.get(key[:PREFIX_LENGTH])
        if tenant_id:
            return tenant_id, VIA_PREFIX
        return None, None


def build_prefix_map(exact: Dict[str, str], length: int = PREFIX_LENGTH) -> Dict[str, str]:
    """
    Map each ICCID prefix to the tenant holding most ICCIDs under it.

    Ties go to the tenant seen first while iterating ``exact`` (insertion
    order), so the result is deterministic for a given build.
    """
    tallies: Dict[str, Counter] = {}
    for iccid, tenant_id in exact.items():
        tallies.setdefault(iccid[:length], Counter())[tenant_id] += 1

    # Counter.most_common keeps insertion order among equal counts
    return {
        prefix: counts.most_common(1)[0][0]
        for prefix, counts in tallies.items()
    }


def _merge_rows(index: Dict[str, str], source: LookupSource, rows: List[dict]) -> int:
    added = 0
    for row in rows:
        iccid = normalise_iccid(row.get("iccid"))
        if iccid is None or iccid in index:
            continue

        tenant_name = row.get(source.name_field) if source.name_field else None
        tenant_id = row.get(source.id_field) if source.id_field else None
        if source.primary and not tenant_id:
            continue

        resolved = resolve_tenant_id(tenant_name, tenant_id)
        if resolved:
            index[iccid] = resolved
            added += 1
    return added


def build_iccid_index(
    client,
    page_size: int = 1000,
    sources: Tuple[LookupSource, ...] = LOOKUP_SOURCES,
) -> IccidTenantIndex:
    """
    Build the ICCID -> tenant index from the fallback sources.

    Args:
        client: SourceClient used for read-only fetches
        page_size: Rows per source request
        sources: Fallback tables in priority order

    Raises:
        FetchError: The primary source could not be read
    """
    exact: Dict[str, str] = {}

    for source in sources:
        try:
            rows = client.fetch_all(
                source.table,
                select_columns=source.select_columns,
                watermark=None,
                watermark_column=source.order_column,
                order_column=source.order_column,
                page_size=page_size,
            )
        except FetchError as e:
            if source.primary:
                raise
            logger.warning("ICCID lookup source skipped", source=source.table, error=str(e))
            continue

        added = _merge_rows(exact, source, rows)
        logger.info(
            "ICCID lookup source merged",
            source=source.table,
            rows=len(rows),
            added=added,
            total=len(exact),
        )

    prefix = build_prefix_map(exact)
    logger.info("ICCID index built", exact_entries=len(exact), prefix_entries=len(prefix))
    return IccidTenantIndex(exact=exact, prefix=prefix)
