"""
Structured audit sink — call log_audit_event() after state transitions.

Usage:
    from compliance_engine.middleware.audit import log_audit_event
    await log_audit_event(s, organization_id=org_id, actor_user_id=None,
                          actor_role="system", entity_type="compliance_framework",
                          entity_id=str(fw.id), action_type="FRAMEWORK_EVALUATED",
                          after_state={"frameworkCode": fw.code, "score": 87},
                          reason="evaluation")
"""
from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.models.audit import AuditEvent
from compliance_engine.models.base import utcnow


async def log_audit_event(
    session: AsyncSession,
    *,
    organization_id: str,
    actor_user_id: str | None,
    actor_role: str | None,
    entity_type: str,
    entity_id: str | int | None,
    action_type: str,
    after_state: dict[str, Any] | None = None,
    reason: str | None = None,
) -> AuditEvent:
    """Record one audit event. Flushed so failures surface to the caller."""
    event = AuditEvent(
        organization_id=organization_id,
        actor_user_id=actor_user_id,
        actor_role=actor_role,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        action_type=action_type,
        after_state=after_state,
        reason=reason,
        created_at=utcnow(),
    )
    session.add(event)
    await session.flush()
    return event
