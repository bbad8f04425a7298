"""
Tenant resolution and the canonical tenant registry.

Source rows carry tenant ownership as free text (``tenant_name``) and/or an
API-internal identifier (``tenant_id``), both of which arrive with casing,
punctuation and whitespace variants. ``resolve`` maps them onto one of the
fixed canonical tenant IDs used by the reporting store.

The alias table is data, not code: a new alias is added to ``TENANT_ALIASES``
and nothing else changes.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

from .errors import TenantHierarchyError


# Canonical tenant_id -> every known human-readable variant (normalised form)
TENANT_ALIASES: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    "allsee": (
        "allsee technologies limited",
        "allsee technologies",
        "allsee",
    ),
    "cellular-lan": (
        "cellular-lan",
        "cellularlan",
        "cellular lan",
    ),
    "simsy-app": (
        "simsy_application",
        "simsy application",
        "s-imsy",
        "simsy",
        # Internal test accounts
        "dave (testing)",
        "dave testing",
    ),
    "travel-simsy": (
        "travel-simsy",
        "travel simsy",
        "travelsimsy",
    ),
    "trvllr": (
        "trvllr",
    ),
})


def _build_alias_map(aliases: Mapping[str, Tuple[str, ...]]) -> Mapping[str, str]:
    alias_map: Dict[str, str] = {}
    for tenant_id, variants in aliases.items():
        for variant in variants:
            key = variant.strip().lower()
            existing = alias_map.get(key)
            if existing is not None and existing != tenant_id:
                raise ValueError(f"Alias '{key}' maps to both {existing} and {tenant_id}")
            alias_map[key] = tenant_id
    return MappingProxyType(alias_map)


ALIAS_MAP: Mapping[str, str] = _build_alias_map(TENANT_ALIASES)

# IDs accepted verbatim when they arrive through the tenant_id field
CANONICAL_TENANT_IDS = frozenset(TENANT_ALIASES.keys())


@dataclass(frozen=True)
class Resolved:
    """Tenant was resolved; `via` names the field that matched."""

    tenant_id: str
    via: str


@dataclass(frozen=True)
class Unresolved:
    """No candidate matched. The caller must drop the record."""

    tenant_name: Optional[str] = None
    tenant_id: Optional[str] = None


Resolution = Union[Resolved, Unresolved]


def normalise(value) -> Optional[str]:
    """Trim and lowercase a candidate; non-strings and blanks give None."""
    if not isinstance(value, str):
        return None
    value = value.strip().lower()
    return value or None


def resolve(tenant_name=None, tenant_id=None) -> Resolution:
    """
    Resolve a tenant from a record's name and id fields.

    Cascade: tenant_name through the alias table, then tenant_id through the
    alias table, then tenant_id checked against the canonical IDs.

    Never raises; any input that matches nothing yields ``Unresolved``.
    """
    name = normalise(tenant_name)
    if name is not None and name in ALIAS_MAP:
        return Resolved(ALIAS_MAP[name], via="tenant_name")

    ident = normalise(tenant_id)
    if ident is not None:
        if ident in ALIAS_MAP:
            return Resolved(ALIAS_MAP[ident], via="tenant_id")
        if ident in CANONICAL_TENANT_IDS:
            return Resolved(ident, via="canonical_id")

    return Unresolved(
        tenant_name=tenant_name if isinstance(tenant_name, str) else None,
        tenant_id=tenant_id if isinstance(tenant_id, str) else None,
    )


def resolve_tenant_id(tenant_name=None, tenant_id=None) -> Optional[str]:
    """Convenience wrapper returning the tenant_id or None."""
    result = resolve(tenant_name, tenant_id)
    if isinstance(result, Resolved):
        return result.tenant_id
    return None


# ---------------------------------------------------------------------------
# Canonical tenant registry
# ---------------------------------------------------------------------------

ROLE_TENANT = "tenant"
ROLE_CUSTOMER = "customer"


@dataclass(frozen=True)
class CanonicalTenant:
    tenant_id: str
    tenant_name: str
    role: str
    parent_tenant_id: Optional[str] = None

    def to_row(self) -> Dict[str, Optional[str]]:
        return {
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant_name,
            "parent_tenant_id": self.parent_tenant_id,
            "role": self.role,
        }


MASTER_TENANT_ID = "s-imsy"

TENANT_REGISTRY: Tuple[CanonicalTenant, ...] = (
    CanonicalTenant("s-imsy", "S-IMSY", ROLE_TENANT),
    CanonicalTenant("allsee", "Allsee Technologies Limited", ROLE_TENANT, MASTER_TENANT_ID),
    CanonicalTenant("cellular-lan", "Cellular-Lan", ROLE_TENANT, MASTER_TENANT_ID),
    CanonicalTenant("simsy-app", "SIMSY_application", ROLE_TENANT, MASTER_TENANT_ID),
    CanonicalTenant("travel-simsy", "Travel-SIMSY", ROLE_TENANT, MASTER_TENANT_ID),
    CanonicalTenant("trvllr", "Trvllr", ROLE_TENANT, MASTER_TENANT_ID),
    CanonicalTenant("eclipse", "Eclipse", ROLE_CUSTOMER, MASTER_TENANT_ID),
)


def validate_hierarchy(tenants: Iterable[CanonicalTenant]) -> None:
    """
    Check the registry forms a forest rooted at tenant-role nodes.

    Raises:
        TenantHierarchyError: On duplicate IDs, unknown roles or parents,
            customer roots, customers parented by customers, or cycles
    """
    by_id: Dict[str, CanonicalTenant] = {}
    for tenant in tenants:
        if tenant.tenant_id in by_id:
            raise TenantHierarchyError(f"Duplicate tenant_id: {tenant.tenant_id}")
        if tenant.role not in (ROLE_TENANT, ROLE_CUSTOMER):
            raise TenantHierarchyError(f"Unknown role '{tenant.role}' for {tenant.tenant_id}")
        by_id[tenant.tenant_id] = tenant

    for tenant in by_id.values():
        if tenant.parent_tenant_id is not None and tenant.parent_tenant_id not in by_id:
            raise TenantHierarchyError(
                f"{tenant.tenant_id} references unknown parent {tenant.parent_tenant_id}"
            )

    for tenant in by_id.values():
        if tenant.parent_tenant_id is None:
            if tenant.role != ROLE_TENANT:
                raise TenantHierarchyError(f"Root {tenant.tenant_id} must have role 'tenant'")
            continue

        parent = by_id[tenant.parent_tenant_id]
        if tenant.role == ROLE_CUSTOMER and parent.role != ROLE_TENANT:
            raise TenantHierarchyError(
                f"Customer {tenant.tenant_id} must be parented by a tenant, not {parent.tenant_id}"
            )

        # Walk up; a forest reaches a root in at most len(by_id) steps
        seen = {tenant.tenant_id}
        current = parent
        while current.parent_tenant_id is not None:
            if current.tenant_id in seen:
                raise TenantHierarchyError(f"Cycle detected at {tenant.tenant_id}")
            seen.add(current.tenant_id)
            current = by_id[current.parent_tenant_id]
        if current.tenant_id in seen:
            raise TenantHierarchyError(f"Cycle detected at {tenant.tenant_id}")
