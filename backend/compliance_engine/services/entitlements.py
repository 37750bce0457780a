"""Organization capability checks backed by org_entitlements."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.exceptions import EntitlementError
from compliance_engine.models.base import utcnow
from compliance_engine.models.entitlement import OrgEntitlement

FRAMEWORK_EVALUATIONS = "framework_evaluations"


async def has_entitlement(
    s: AsyncSession, org_id: str, feature_key: str, *, now: datetime | None = None,
) -> bool:
    now = now or utcnow()
    row = (await s.execute(
        select(OrgEntitlement).where(
            OrgEntitlement.organization_id == org_id,
            OrgEntitlement.feature_key == feature_key,
            OrgEntitlement.is_active.is_(True),
        )
    )).scalar_one_or_none()
    if row is None:
        return False
    return row.expires_at is None or row.expires_at > now


async def require_entitlement(s: AsyncSession, org_id: str, feature_key: str) -> None:
    """Raise EntitlementError unless the org holds an active, unexpired entitlement."""
    if not await has_entitlement(s, org_id, feature_key):
        raise EntitlementError(org_id, feature_key)


async def grant_entitlement(
    s: AsyncSession, org_id: str, feature_key: str, *, expires_at: datetime | None = None,
) -> OrgEntitlement:
    row = (await s.execute(
        select(OrgEntitlement).where(
            OrgEntitlement.organization_id == org_id,
            OrgEntitlement.feature_key == feature_key,
        )
    )).scalar_one_or_none()
    if row is None:
        row = OrgEntitlement(organization_id=org_id, feature_key=feature_key)
        s.add(row)
    row.is_active = True
    row.expires_at = expires_at
    await s.flush()
    return row
