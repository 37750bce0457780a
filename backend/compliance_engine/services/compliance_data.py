"""
Compliance data access — batched loaders feeding the evaluation engine, plus
the org_control_evaluations upsert shared with provisioning.

Every loader takes `strict`: by default a failed query is logged and degrades
to an empty result; with strict=True it raises ComplianceDataError. The
org_frameworks filter and snapshot history always degrade.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.exceptions import ComplianceDataError
from compliance_engine.models.compliance import (
    CONTROL_TYPE_FRAMEWORK_SNAPSHOT,
    ComplianceFramework,
    ControlEvidence,
    ControlTask,
    OrgControlEvaluation,
    OrgControlMapping,
    OrgEvidence,
    OrgTask,
)
from compliance_engine.models.framework import OrgFramework
from compliance_engine.services.control_schema import detect_controls_schema, load_controls
from compliance_engine.services.control_status import ControlDefinition, EvidenceState, TaskState
from compliance_engine.services.framework_installer import framework_code_for_slug

log = logging.getLogger(__name__)

TREND_HISTORY_LIMIT = 200


@dataclass(frozen=True)
class FrameworkRef:
    id: int
    code: str
    title: str


@dataclass(frozen=True)
class TaskLink:
    control_id: int
    task_id: int
    entity_id: str | None = None


@dataclass(frozen=True)
class SnapshotPoint:
    framework_id: int | None
    compliance_score: int | None
    last_evaluated_at: datetime | None


def _degrade(what: str, e: Exception, strict: bool) -> None:
    if strict:
        raise ComplianceDataError(f"Failed to load {what}: {e}") from e
    log.warning("Failed to load %s, continuing with empty result: %s", what, e)


# ─────────────────────────────────────────────
# Frameworks & controls
# ─────────────────────────────────────────────

async def load_framework_by_code(s: AsyncSession, code: str) -> FrameworkRef | None:
    fw = (await s.execute(
        select(ComplianceFramework).where(ComplianceFramework.code == code)
    )).scalar_one_or_none()
    if fw is None:
        return None
    return FrameworkRef(id=fw.id, code=fw.code, title=fw.name or fw.code)


async def load_frameworks(
    s: AsyncSession, org_id: str | None = None, *, strict: bool = False,
) -> list[FrameworkRef]:
    """All compliance frameworks, narrowed to the org's enabled ones when it has any."""
    try:
        rows = (await s.execute(
            select(ComplianceFramework).order_by(ComplianceFramework.id)
        )).scalars().all()
    except SQLAlchemyError as e:
        _degrade("frameworks", e, strict)
        return []
    frameworks = [FrameworkRef(id=r.id, code=r.code, title=r.name or r.code) for r in rows]
    if not org_id:
        return frameworks

    try:
        slugs = (await s.execute(
            select(OrgFramework.framework_slug).where(OrgFramework.org_id == org_id)
        )).scalars().all()
    except SQLAlchemyError as e:
        log.warning("org_frameworks lookup failed for %s, using all frameworks: %s", org_id, e)
        return frameworks
    if not slugs:
        return frameworks
    enabled = {framework_code_for_slug(slug) for slug in slugs}
    return [fw for fw in frameworks if fw.code in enabled]


async def load_framework_controls(
    s: AsyncSession, framework_ids: Iterable[int], *, strict: bool = False,
) -> list[ControlDefinition]:
    ids = list(framework_ids)
    if not ids:
        return []
    try:
        schema = await detect_controls_schema(s)
        return await load_controls(s, schema, ids)
    except SQLAlchemyError as e:
        _degrade("controls", e, strict)
        return []


# ─────────────────────────────────────────────
# Evidence & tasks
# ─────────────────────────────────────────────

async def load_control_evidence(
    s: AsyncSession, org_id: str, control_ids: Iterable[int], *, strict: bool = False,
) -> list[EvidenceState]:
    """control_evidence rows; falls back to legacy org_control_mappings when that fails."""
    ids = list(control_ids)
    if not ids:
        return []
    try:
        rows = (await s.execute(
            select(ControlEvidence).where(
                ControlEvidence.organization_id == org_id,
                ControlEvidence.control_id.in_(ids),
            )
        )).scalars().all()
        return [
            EvidenceState(
                control_id=r.control_id, status=r.status, evidence_id=r.evidence_id,
                created_at=r.created_at, entity_id=r.entity_id,
            )
            for r in rows
        ]
    except SQLAlchemyError as e:
        log.info("control_evidence unavailable, trying legacy mappings: %s", e)
        await s.rollback()

    try:
        rows = (await s.execute(
            select(OrgControlMapping, OrgEvidence.status, OrgEvidence.created_at)
            .outerjoin(OrgEvidence, OrgControlMapping.evidence_id == OrgEvidence.id)
            .where(
                OrgControlMapping.organization_id == org_id,
                OrgControlMapping.control_id.in_(ids),
            )
        )).all()
    except SQLAlchemyError as e:
        _degrade("control evidence", e, strict)
        return []
    return [
        EvidenceState(
            control_id=m.control_id, status=status or "pending", evidence_id=m.evidence_id,
            created_at=created_at, entity_id=m.entity_id,
        )
        for m, status, created_at in rows
    ]


async def load_control_tasks(
    s: AsyncSession, org_id: str, control_ids: Iterable[int], *, strict: bool = False,
) -> list[TaskLink]:
    ids = list(control_ids)
    if not ids:
        return []
    try:
        rows = (await s.execute(
            select(ControlTask.control_id, ControlTask.task_id, ControlTask.entity_id).where(
                ControlTask.organization_id == org_id,
                ControlTask.control_id.in_(ids),
            )
        )).all()
    except SQLAlchemyError as e:
        _degrade("control tasks", e, strict)
        return []
    return [TaskLink(control_id=c, task_id=t, entity_id=ent) for c, t, ent in rows]


async def load_tasks(
    s: AsyncSession, org_id: str, task_ids: Iterable[int], *, strict: bool = False,
) -> list[TaskState]:
    ids = list(dict.fromkeys(task_ids))
    if not ids:
        return []
    try:
        rows = (await s.execute(
            select(OrgTask).where(OrgTask.organization_id == org_id, OrgTask.id.in_(ids))
        )).scalars().all()
    except SQLAlchemyError as e:
        _degrade("tasks", e, strict)
        return []
    return [
        TaskState(
            id=r.id, status=r.status, due_at=r.due_at, due_date=r.due_date,
            completed_at=r.completed_at,
        )
        for r in rows
    ]


# ─────────────────────────────────────────────
# Snapshot history
# ─────────────────────────────────────────────

async def load_recent_snapshots(
    s: AsyncSession, org_id: str, limit: int = TREND_HISTORY_LIMIT,
) -> list[SnapshotPoint]:
    """Newest first. Never raises."""
    try:
        rows = (await s.execute(
            select(
                OrgControlEvaluation.framework_id,
                OrgControlEvaluation.compliance_score,
                OrgControlEvaluation.last_evaluated_at,
            )
            .where(
                OrgControlEvaluation.organization_id == org_id,
                OrgControlEvaluation.control_type == CONTROL_TYPE_FRAMEWORK_SNAPSHOT,
            )
            .order_by(OrgControlEvaluation.last_evaluated_at.desc(), OrgControlEvaluation.id.desc())
            .limit(limit)
        )).all()
    except SQLAlchemyError as e:
        log.warning("Snapshot history unavailable for %s: %s", org_id, e)
        return []
    return [SnapshotPoint(framework_id=f, compliance_score=sc, last_evaluated_at=t) for f, sc, t in rows]


# ─────────────────────────────────────────────
# Evaluation records
# ─────────────────────────────────────────────

async def upsert_evaluation_records(s: AsyncSession, org_id: str, records: list[dict]) -> int:
    """Upsert org_control_evaluations rows by (organization, control_type, control_key)."""
    if not records:
        return 0
    keys = {(r["control_type"], r["control_key"]) for r in records}
    existing = {
        (e.control_type, e.control_key): e
        for e in (await s.execute(
            select(OrgControlEvaluation).where(
                OrgControlEvaluation.organization_id == org_id,
                OrgControlEvaluation.control_type.in_({k[0] for k in keys}),
                OrgControlEvaluation.control_key.in_({k[1] for k in keys}),
            )
        )).scalars().all()
    }
    for record in records:
        row = existing.get((record["control_type"], record["control_key"]))
        if row is None:
            s.add(OrgControlEvaluation(organization_id=org_id, **record))
        else:
            for k, v in record.items():
                setattr(row, k, v)
    await s.flush()
    return len(records)
