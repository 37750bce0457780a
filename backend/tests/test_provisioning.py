"""Framework provisioning — tasks, links and staged evaluations per organization."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.config import FeatureFlags
from compliance_engine.models.compliance import (
    ComplianceFramework, ControlTask, OrgControlEvaluation, OrgTask,
)
from compliance_engine.models.framework import OrgFramework
from compliance_engine.services.compliance_data import load_framework_controls
from compliance_engine.services.control_schema import LEGACY, detect_controls_schema
from compliance_engine.services.provisioning import (
    default_due_date, enable_framework_for_org, provision_framework_controls,
)

ORG = "org-prov"

LEGACY_CONTROLS_DDL = """
CREATE TABLE compliance_controls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    framework_id INTEGER NOT NULL,
    code VARCHAR(100) NOT NULL,
    title VARCHAR(500) NOT NULL,
    description TEXT,
    category VARCHAR(300),
    risk_weight INTEGER,
    weight NUMERIC(6, 2),
    required_evidence_count INTEGER,
    is_mandatory BOOLEAN,
    framework_control_id INTEGER
)
"""


async def _count(db: AsyncSession, model) -> int:
    return (await db.execute(
        select(func.count()).select_from(model).where(model.organization_id == ORG)
    )).scalar_one()


@pytest.mark.asyncio
async def test_provisioning_creates_one_task_per_control(db: AsyncSession, installer, flags):
    result = await provision_framework_controls(db, ORG, "iso27001", flags=flags, installer=installer)
    await db.commit()

    assert result.framework_code == "ISO27001"
    assert result.tasks_created == 7
    assert result.controls_skipped == 0
    assert await _count(db, OrgTask) == 7
    assert await _count(db, ControlTask) == 7

    evaluations = (await db.execute(
        select(OrgControlEvaluation).where(OrgControlEvaluation.organization_id == ORG)
    )).scalars().all()
    assert len(evaluations) == 7
    assert {e.status for e in evaluations} == {"at_risk"}
    assert all(e.details["approved_evidence_count"] == 0 for e in evaluations)

    training = (await db.execute(
        select(OrgTask).where(OrgTask.title == "Run annual security awareness training")
    )).scalar_one()
    assert training.status == "pending"
    assert training.due_at is not None


@pytest.mark.asyncio
async def test_provisioning_is_idempotent(db: AsyncSession, installer, flags):
    await provision_framework_controls(db, ORG, "iso27001", flags=flags, installer=installer)
    await db.commit()
    again = await provision_framework_controls(db, ORG, "iso27001", flags=flags, installer=installer)
    await db.commit()

    assert again.tasks_created == 0
    assert again.controls_skipped == 7
    assert await _count(db, OrgTask) == 7
    assert await _count(db, OrgControlEvaluation) == 7


@pytest.mark.asyncio
async def test_due_dates_follow_risk(db: AsyncSession, installer, flags):
    await provision_framework_controls(db, ORG, "iso27001", flags=flags, installer=installer)
    await db.commit()

    access = (await db.execute(
        select(OrgTask).where(OrgTask.title == "Implement Access control")
    )).scalar_one()
    perimeter = (await db.execute(
        select(OrgTask).where(OrgTask.title == "Implement Physical security perimeters")
    )).scalar_one()
    # critical: 14 days, low: 90 days
    assert perimeter.due_at - access.due_at > timedelta(days=70)


def test_default_due_date():
    now = datetime(2026, 1, 1)
    assert default_due_date("critical", now) == now + timedelta(days=14)
    assert default_due_date("unknown", now) == now + timedelta(days=60)


@pytest.mark.asyncio
async def test_disabled_engine_provisions_nothing(db: AsyncSession, installer):
    off = FeatureFlags(enable_framework_engine=False)
    assert await provision_framework_controls(db, ORG, "iso27001", flags=off, installer=installer) is None
    assert await enable_framework_for_org(db, ORG, "iso27001", flags=off, installer=installer) is None
    assert not installer.installed
    assert await _count(db, OrgTask) == 0


@pytest.mark.asyncio
async def test_force_overrides_disabled_engine(db: AsyncSession, installer):
    off = FeatureFlags(enable_framework_engine=False)
    result = await provision_framework_controls(
        db, ORG, "soc2", flags=off, installer=installer, force=True,
    )
    await db.commit()
    assert result.tasks_created == 6


@pytest.mark.asyncio
async def test_enable_records_org_framework(db: AsyncSession, installer, flags):
    result = await enable_framework_for_org(db, ORG, "hipaa", flags=flags, installer=installer)
    await db.commit()

    assert result.framework_code == "HIPAA"
    assert result.tasks_created == 6
    row = (await db.execute(select(OrgFramework).where(OrgFramework.org_id == ORG))).scalar_one()
    assert row.framework_slug == "hipaa"


@pytest.mark.asyncio
async def test_unknown_framework_returns_none(db: AsyncSession, installer, flags):
    assert await provision_framework_controls(db, ORG, "nope", flags=flags, installer=installer) is None


@pytest.mark.asyncio
async def test_legacy_risk_weight_schema(db: AsyncSession, installer, flags):
    await db.execute(text("DROP TABLE compliance_controls"))
    await db.execute(text(LEGACY_CONTROLS_DDL))
    await db.commit()

    schema = await detect_controls_schema(db)
    assert schema.variant == LEGACY
    await db.rollback()

    result = await provision_framework_controls(db, ORG, "iso27001", flags=flags, installer=installer)
    await db.commit()
    assert result.tasks_created == 7

    weights = dict((await db.execute(text("SELECT code, risk_weight FROM compliance_controls"))).all())
    assert weights["A.5.15"] == 8
    assert weights["A.7.1"] == 1

    fw_id = (await db.execute(
        select(ComplianceFramework.id).where(ComplianceFramework.code == "ISO27001")
    )).scalar_one()
    controls = {c.code: c for c in await load_framework_controls(db, [fw_id])}
    assert controls["A.5.15"].risk_level == "critical"
    assert controls["A.5.1"].risk_level == "high"
    assert controls["A.8.16"].risk_level == "medium"
    assert controls["A.7.1"].risk_level == "low"
    assert controls["A.5.1"].is_mandatory is True
