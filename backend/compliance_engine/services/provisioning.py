"""
Framework Provisioning — sets an organization up on a framework.

For every applicable control without a linked task: one remediation task from
the first suggested template, a control_tasks link, and a staged at_risk
evaluation record. Re-running skips controls that already have a task.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.config import FeatureFlags
from compliance_engine.models.base import utcnow
from compliance_engine.models.compliance import (
    CONTROL_TYPE_FRAMEWORK_CONTROL,
    ComplianceFramework,
    ControlTask,
    OrgTask,
)
from compliance_engine.models.framework import FrameworkControl, OrgFramework
from compliance_engine.schemas.framework import EvidenceSuggestions, ProvisioningResult, TaskTemplate
from compliance_engine.services.compliance_data import upsert_evaluation_records
from compliance_engine.services.control_schema import detect_controls_schema, load_controls
from compliance_engine.services.control_status import ControlDefinition, normalize_risk_level
from compliance_engine.services.evidence_suggestions import get_evidence_suggestions
from compliance_engine.services.framework_installer import FrameworkInstaller, framework_code_for_slug

log = logging.getLogger(__name__)

DEFAULT_TASK_PRIORITY_BY_RISK = {
    "low": "low",
    "medium": "medium",
    "high": "high",
    "critical": "high",
}

DUE_IN_DAYS_BY_RISK = {
    "critical": 14,
    "high": 30,
    "medium": 60,
    "low": 90,
}

FALLBACK_TASK_DESCRIPTION = "Define and implement required control activities."


def default_due_date(risk_level: str | None, now: datetime | None = None) -> datetime:
    now = now or utcnow()
    return now + timedelta(days=DUE_IN_DAYS_BY_RISK[normalize_risk_level(risk_level)])


def _fallback_suggestions(control: ControlDefinition) -> EvidenceSuggestions:
    return EvidenceSuggestions(
        evidence_types=[],
        automation_triggers=[],
        review_cadence_days=90,
        task_templates=[TaskTemplate(
            title=f"Implement {control.title}",
            description=control.description or FALLBACK_TASK_DESCRIPTION,
            priority="medium",
        )],
    )


async def _mark_enabled(s: AsyncSession, org_id: str, slug: str) -> None:
    row = (await s.execute(
        select(OrgFramework).where(OrgFramework.org_id == org_id, OrgFramework.framework_slug == slug)
    )).scalar_one_or_none()
    if row is None:
        row = OrgFramework(org_id=org_id, framework_slug=slug)
        s.add(row)
    row.enabled_at = utcnow()
    await s.flush()


async def enable_framework_for_org(
    s: AsyncSession,
    org_id: str,
    slug: str,
    *,
    flags: FeatureFlags,
    installer: FrameworkInstaller,
    force: bool = False,
) -> ProvisioningResult | None:
    """Mark the framework enabled for the organization, then provision it."""
    if not flags.enable_framework_engine and not force:
        return None
    await installer.ensure_installed()
    await _mark_enabled(s, org_id, slug)
    return await provision_framework_controls(
        s, org_id, slug, flags=flags, installer=installer, force=force,
    )


async def provision_framework_controls(
    s: AsyncSession,
    org_id: str,
    slug: str,
    *,
    flags: FeatureFlags,
    installer: FrameworkInstaller,
    force: bool = False,
) -> ProvisioningResult | None:
    """Create tasks and staged evaluations for unlinked controls. Caller commits."""
    if not flags.enable_framework_engine and not force:
        return None

    await installer.ensure_installed()
    await installer.sync_compliance_framework(s, slug)
    await _mark_enabled(s, org_id, slug)

    code = framework_code_for_slug(slug)
    cf = (await s.execute(
        select(ComplianceFramework).where(ComplianceFramework.code == code)
    )).scalar_one_or_none()
    if cf is None:
        log.info("No compliance framework %s for org %s; nothing to provision", code, org_id)
        return None

    result = ProvisioningResult(organization_id=org_id, framework_slug=slug, framework_code=code)

    schema = await detect_controls_schema(s)
    controls = await load_controls(s, schema, [cf.id])
    if not controls:
        return result

    linked = set((await s.execute(
        select(ControlTask.control_id).where(
            ControlTask.organization_id == org_id,
            ControlTask.control_id.in_([c.id for c in controls]),
        )
    )).scalars().all())

    catalog_ids = [c.framework_control_id for c in controls if c.framework_control_id]
    catalog = {}
    if catalog_ids:
        catalog = {
            fc.id: fc
            for fc in (await s.execute(
                select(FrameworkControl).where(FrameworkControl.id.in_(catalog_ids))
            )).scalars().all()
        }

    now = utcnow()
    staged: list[dict] = []
    for control in controls:
        if control.id in linked:
            result.controls_skipped += 1
            continue

        source = catalog.get(control.framework_control_id) if control.framework_control_id else None
        suggestions = get_evidence_suggestions(source) if source is not None else _fallback_suggestions(control)
        template = suggestions.task_templates[0]
        risk_level = control.risk_level or (source.default_risk_level if source is not None else None)

        task = OrgTask(
            organization_id=org_id,
            title=template.title,
            description=template.description or control.description,
            status="pending",
            priority=template.priority or DEFAULT_TASK_PRIORITY_BY_RISK[normalize_risk_level(control.risk_level)],
            due_at=default_due_date(risk_level, now),
        )
        s.add(task)
        await s.flush()

        s.add(ControlTask(organization_id=org_id, control_id=control.id, task_id=task.id))
        result.tasks_created += 1

        staged.append({
            "control_type": CONTROL_TYPE_FRAMEWORK_CONTROL,
            "control_key": f"control:{control.id}",
            "required": True,
            "status": "at_risk",
            "last_evaluated_at": now,
            "framework_id": cf.id,
            "details": {
                "framework_code": cf.code,
                "control_code": control.code,
                "control_title": control.title,
                "required_evidence_count": 1,
                "approved_evidence_count": 0,
                "evidence_types": suggestions.evidence_types,
                "automation_triggers": suggestions.automation_triggers,
            },
        })

    await upsert_evaluation_records(s, org_id, staged)
    log.info("Provisioned %s for org %s: %d tasks created, %d controls skipped",
             code, org_id, result.tasks_created, result.controls_skipped)
    return result
