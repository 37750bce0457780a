"""
Organization activity feed writer.

An injected activity logger is tried first; when it is missing or fails, the
entry is inserted into org_audit_logs directly. Never raises.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.models.audit import OrgAuditLog
from compliance_engine.models.base import utcnow

log = logging.getLogger(__name__)

# (organization_id, action, description, metadata) -> None
ActivityLogger = Callable[[str, str, str, "dict[str, Any] | None"], Awaitable[None]]


async def safe_log_activity(
    s: AsyncSession,
    org_id: str,
    action: str,
    description: str,
    metadata: dict[str, Any] | None = None,
    *,
    activity_logger: ActivityLogger | None = None,
) -> bool:
    """Returns True when some sink accepted the entry."""
    if activity_logger is not None:
        try:
            await activity_logger(org_id, action, description, metadata)
            return True
        except Exception as e:
            log.warning("Activity logger failed for %s/%s, falling back to raw insert: %s",
                        org_id, action, e)

    try:
        async with s.begin_nested():
            s.add(OrgAuditLog(
                organization_id=org_id,
                action=action,
                target=description,
                actor_email="system",
                log_metadata=metadata,
                created_at=utcnow(),
            ))
    except Exception as e:
        log.warning("Activity insert failed for %s/%s: %s", org_id, action, e)
        return False
    return True
