"""Subscription-tier entitlement policy for ELD data types.

This is the only place that knows which tier unlocks which data type.
"""

from __future__ import annotations

from ..models.enums import DataType, Tier
from ..models.tenant import Tenant

TIER_ORDER = {Tier.BASIC: 0, Tier.PREMIUM: 1, Tier.FLEET: 2, Tier.ENTERPRISE: 3}

REQUIRED_TIER = {
    DataType.VEHICLES: Tier.BASIC,
    DataType.DRIVERS: Tier.BASIC,
    DataType.HOS: Tier.PREMIUM,
    DataType.IFTA: Tier.PREMIUM,
    DataType.LOCATIONS: Tier.FLEET,
    DataType.FAULTS: Tier.FLEET,
}

# Subscription states that lose ELD access entirely.
INACTIVE_SUBSCRIPTIONS = {"canceled", "cancelled", "unpaid", "incomplete_expired"}

SYNC_ORDER = (
    DataType.VEHICLES,
    DataType.DRIVERS,
    DataType.HOS,
    DataType.IFTA,
    DataType.LOCATIONS,
    DataType.FAULTS,
)


def effective_tier(tenant: Tenant) -> Tier | None:
    """Tier the tenant is billed at right now; ``None`` means no access."""
    status = (tenant.subscription_status or "").strip().lower()
    if status in INACTIVE_SUBSCRIPTIONS:
        return None
    if status == "trialing":
        return Tier.BASIC
    try:
        return Tier((tenant.plan or "basic").strip().lower())
    except ValueError:
        return Tier.BASIC


def is_entitled(tenant: Tenant, data_type: DataType) -> bool:
    tier = effective_tier(tenant)
    if tier is None:
        return False
    if data_type == DataType.ALL:
        return True
    return TIER_ORDER[tier] >= TIER_ORDER[REQUIRED_TIER[data_type]]


def entitled_data_types(tenant: Tenant) -> list[DataType]:
    return [data_type for data_type in SYNC_ORDER if is_entitled(tenant, data_type)]


def required_tier(data_type: DataType) -> Tier:
    return REQUIRED_TIER.get(data_type, Tier.BASIC)
