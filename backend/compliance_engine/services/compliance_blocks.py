"""
Compliance gates — org_compliance_blocks kept in step with mandatory-control gaps.

Missing mandatory controls open one block per gate key (never duplicated while
one is open); an empty gap list resolves every open block on those keys.
Gated actions call require_no_compliance_blocks() before they run.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.exceptions import ComplianceBlockedError
from compliance_engine.middleware.audit import log_audit_event
from compliance_engine.models.base import utcnow
from compliance_engine.models.compliance import OrgComplianceBlock
from compliance_engine.services.activity import ActivityLogger, safe_log_activity
from compliance_engine.services.best_effort import BestEffort

log = logging.getLogger(__name__)

GATE_AUDIT_EXPORT = "AUDIT_EXPORT"
GATE_CERT_REPORT = "CERT_REPORT"

FRAMEWORK_GATES = {
    "ISO27001": "FRAMEWORK_ISO27001",
    "SOC2": "FRAMEWORK_SOC2",
    "HIPAA": "FRAMEWORK_HIPAA",
    "NDIS": "FRAMEWORK_NDIS",
}

MAX_METADATA_CODES = 50

GATE_KEYS = frozenset({GATE_AUDIT_EXPORT, GATE_CERT_REPORT, *FRAMEWORK_GATES.values()})


@dataclass
class BlockRefreshResult:
    created: list[str] = field(default_factory=list)
    resolved: int = 0


def gate_keys_for(framework_code: str) -> list[str]:
    keys = [GATE_AUDIT_EXPORT, GATE_CERT_REPORT]
    if framework_code in FRAMEWORK_GATES:
        keys.append(FRAMEWORK_GATES[framework_code])
    return keys


async def list_open_blocks(s: AsyncSession, org_id: str) -> list[OrgComplianceBlock]:
    q = (
        select(OrgComplianceBlock)
        .where(
            OrgComplianceBlock.organization_id == org_id,
            OrgComplianceBlock.resolved_at.is_(None),
        )
        .order_by(OrgComplianceBlock.created_at, OrgComplianceBlock.id)
    )
    return list((await s.execute(q)).scalars().all())


async def refresh_compliance_blocks(
    s: AsyncSession,
    org_id: str,
    framework_code: str,
    missing_codes: list[str],
    *,
    activity_logger: ActivityLogger | None = None,
) -> BlockRefreshResult:
    result = BlockRefreshResult()
    gate_keys = gate_keys_for(framework_code)
    count = len(missing_codes)

    if count > 0:
        reason = f"{count} mandatory controls missing required evidence or remediation."
        metadata = {"framework": framework_code, "missingCodes": list(missing_codes[:MAX_METADATA_CODES])}
        for gate_key in gate_keys:
            existing = (await s.execute(
                select(OrgComplianceBlock.id).where(
                    OrgComplianceBlock.organization_id == org_id,
                    OrgComplianceBlock.gate_key == gate_key,
                    OrgComplianceBlock.resolved_at.is_(None),
                ).limit(1)
            )).first()
            if existing is not None:
                continue
            s.add(OrgComplianceBlock(
                organization_id=org_id,
                gate_key=gate_key,
                reason=reason,
                created_by=None,
                block_metadata=metadata,
                created_at=utcnow(),
            ))
            result.created.append(gate_key)
        await s.flush()
    else:
        res = await s.execute(
            update(OrgComplianceBlock)
            .where(
                OrgComplianceBlock.organization_id == org_id,
                OrgComplianceBlock.gate_key.in_(gate_keys),
                OrgComplianceBlock.resolved_at.is_(None),
            )
            .values(resolved_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result.resolved = res.rowcount or 0
        await safe_log_activity(
            s, org_id, "compliance_resolved",
            f"Resolved compliance blocks for {framework_code}",
            {"frameworkCode": framework_code},
            activity_logger=activity_logger,
        )

    await safe_log_activity(
        s, org_id, "control_evaluated",
        f"Compliance blocks refreshed for {framework_code}",
        {"frameworkCode": framework_code, "missingMandatoryCount": count},
        activity_logger=activity_logger,
    )

    await log_audit_event(
        s,
        organization_id=org_id,
        actor_user_id=None,
        actor_role="system",
        entity_type="compliance_block",
        entity_id=None,
        action_type="COMPLIANCE_BLOCK_CREATED" if count > 0 else "COMPLIANCE_BLOCK_RESOLVED",
        after_state={"frameworkCode": framework_code, "missingMandatoryCount": count},
        reason="automated_enforcement",
    )

    log.info("Blocks for %s/%s: %d created, %d resolved",
             org_id, framework_code, len(result.created), result.resolved)
    return result


async def require_no_compliance_blocks(
    s: AsyncSession,
    org_id: str,
    gate_key: str,
    *,
    activity_logger: ActivityLogger | None = None,
) -> None:
    """Raise ComplianceBlockedError while the gate or any framework gate is open.

    The enforcement is recorded in the activity feed and as a
    COMPLIANCE_BLOCK_ENFORCED audit event; the caller commits. A failed lookup
    also blocks.
    """
    if gate_key not in GATE_KEYS:
        raise ValueError(f"Unknown gate key '{gate_key}'")

    candidates = {gate_key, *FRAMEWORK_GATES.values()}
    try:
        block_ids = list((await s.execute(
            select(OrgComplianceBlock.id)
            .where(
                OrgComplianceBlock.organization_id == org_id,
                OrgComplianceBlock.resolved_at.is_(None),
                OrgComplianceBlock.gate_key.in_(candidates),
            )
            .order_by(OrgComplianceBlock.id)
        )).scalars().all())
    except SQLAlchemyError as e:
        log.error("Block lookup for %s/%s failed: %s", org_id, gate_key, e)
        raise ComplianceBlockedError(gate_key) from e

    if not block_ids:
        return

    await safe_log_activity(
        s, org_id, "compliance_blocked", f"Blocked gate: {gate_key}",
        {"gateKey": gate_key, "reasonCount": len(block_ids), "blockIds": block_ids},
        activity_logger=activity_logger,
    )
    await BestEffort(s, context=f"{org_id}/{gate_key}").run("enforcement_audit", lambda: log_audit_event(
        s,
        organization_id=org_id,
        actor_user_id=None,
        actor_role="system",
        entity_type="compliance_block",
        entity_id=None,
        action_type="COMPLIANCE_BLOCK_ENFORCED",
        after_state={"gateKey": gate_key, "blockIds": block_ids},
        reason="enforcement_gate",
    ))
    log.info("Gate %s blocked for %s by %d block(s)", gate_key, org_id, len(block_ids))
    raise ComplianceBlockedError(gate_key, block_ids)
