"""Compliance gates — block creation, deduplication, resolution and enforcement."""
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.exceptions import ComplianceBlockedError
from compliance_engine.models.audit import AuditEvent, OrgAuditLog
from compliance_engine.models.compliance import OrgComplianceBlock
from compliance_engine.services.compliance_blocks import (
    MAX_METADATA_CODES, gate_keys_for, list_open_blocks, refresh_compliance_blocks,
    require_no_compliance_blocks,
)

ORG = "org-gates"


def test_gate_keys():
    assert gate_keys_for("SOC2") == ["AUDIT_EXPORT", "CERT_REPORT", "FRAMEWORK_SOC2"]
    assert gate_keys_for("CUSTOM") == ["AUDIT_EXPORT", "CERT_REPORT"]


@pytest.mark.asyncio
async def test_missing_controls_open_blocks_once(db: AsyncSession):
    first = await refresh_compliance_blocks(db, ORG, "HIPAA", ["164.308(a)(1)", "164.312(a)(1)"])
    second = await refresh_compliance_blocks(db, ORG, "HIPAA", ["164.308(a)(1)"])
    await db.commit()

    assert first.created == ["AUDIT_EXPORT", "CERT_REPORT", "FRAMEWORK_HIPAA"]
    assert second.created == []
    blocks = await list_open_blocks(db, ORG)
    assert len(blocks) == 3
    assert blocks[0].reason == "2 mandatory controls missing required evidence or remediation."

    events = (await db.execute(select(AuditEvent))).scalars().all()
    assert {e.action_type for e in events} == {"COMPLIANCE_BLOCK_CREATED"}
    assert all(e.entity_type == "compliance_block" and e.reason == "automated_enforcement" for e in events)


@pytest.mark.asyncio
async def test_block_metadata_caps_codes(db: AsyncSession):
    codes = [f"C.{i}" for i in range(MAX_METADATA_CODES + 10)]
    await refresh_compliance_blocks(db, ORG, "CUSTOM", codes)
    await db.commit()

    block = (await list_open_blocks(db, ORG))[0]
    assert block.block_metadata["framework"] == "CUSTOM"
    assert len(block.block_metadata["missingCodes"]) == MAX_METADATA_CODES


@pytest.mark.asyncio
async def test_no_missing_controls_resolves_open_blocks(db: AsyncSession):
    await refresh_compliance_blocks(db, ORG, "SOC2", ["CC6.1"])
    await db.commit()

    result = await refresh_compliance_blocks(db, ORG, "SOC2", [])
    await db.commit()

    assert result.resolved == 3
    assert await list_open_blocks(db, ORG) == []
    resolved_at = (await db.execute(select(OrgComplianceBlock.resolved_at))).scalars().all()
    assert len(resolved_at) == 3
    assert all(ts is not None for ts in resolved_at)

    actions = (await db.execute(select(OrgAuditLog.action))).scalars().all()
    assert "compliance_resolved" in actions
    assert actions.count("control_evaluated") == 2


@pytest.mark.asyncio
async def test_resolution_leaves_other_frameworks_gate(db: AsyncSession):
    await refresh_compliance_blocks(db, ORG, "SOC2", ["CC6.1"])
    await refresh_compliance_blocks(db, ORG, "ISO27001", ["A.5.15"])
    await db.commit()

    await refresh_compliance_blocks(db, ORG, "ISO27001", [])
    await db.commit()

    assert [b.gate_key for b in await list_open_blocks(db, ORG)] == ["FRAMEWORK_SOC2"]


@pytest.mark.asyncio
async def test_failing_activity_logger_falls_back_to_feed(db: AsyncSession):
    async def broken(*args):
        raise RuntimeError("feed service down")

    await refresh_compliance_blocks(db, ORG, "SOC2", ["CC6.1"], activity_logger=broken)
    await db.commit()

    rows = (await db.execute(select(OrgAuditLog).where(OrgAuditLog.organization_id == ORG))).scalars().all()
    assert [r.action for r in rows] == ["control_evaluated"]
    assert rows[0].actor_email == "system"


# ── Enforcement ──

@pytest.mark.asyncio
async def test_gate_is_open_without_blocks(db: AsyncSession):
    assert await require_no_compliance_blocks(db, ORG, "AUDIT_EXPORT") is None
    assert (await db.execute(select(AuditEvent))).scalars().all() == []


@pytest.mark.asyncio
async def test_open_block_closes_gate_and_is_recorded(db: AsyncSession):
    await refresh_compliance_blocks(db, ORG, "SOC2", ["CC6.1"])
    await db.commit()

    with pytest.raises(ComplianceBlockedError) as exc:
        await require_no_compliance_blocks(db, ORG, "CERT_REPORT")
    await db.commit()

    assert exc.value.gate_key == "CERT_REPORT"
    open_ids = {b.id for b in await list_open_blocks(db, ORG) if b.gate_key in ("CERT_REPORT", "FRAMEWORK_SOC2")}
    assert set(exc.value.block_ids) == open_ids

    enforced = (await db.execute(
        select(AuditEvent).where(AuditEvent.action_type == "COMPLIANCE_BLOCK_ENFORCED")
    )).scalar_one()
    assert enforced.reason == "enforcement_gate"
    assert enforced.after_state["gateKey"] == "CERT_REPORT"
    feed = (await db.execute(
        select(OrgAuditLog).where(OrgAuditLog.action == "compliance_blocked")
    )).scalar_one()
    assert feed.log_metadata["reasonCount"] == 2


@pytest.mark.asyncio
async def test_open_framework_gate_blocks_every_action(db: AsyncSession):
    await refresh_compliance_blocks(db, ORG, "SOC2", ["CC6.1"])
    await refresh_compliance_blocks(db, ORG, "ISO27001", [])
    await db.commit()

    with pytest.raises(ComplianceBlockedError) as exc:
        await require_no_compliance_blocks(db, ORG, "AUDIT_EXPORT")
    assert len(exc.value.block_ids) == 1


@pytest.mark.asyncio
async def test_unknown_gate_key_is_rejected(db: AsyncSession):
    with pytest.raises(ValueError):
        await require_no_compliance_blocks(db, ORG, "EXPORT_EVERYTHING")
