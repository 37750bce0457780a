"""
Compliance Evaluation Engine.

Two entry points share the per-control decision table in control_status:
  evaluate_framework_controls  — recompute one framework for an org and persist
                                 evaluations, a snapshot, the status rollup and gates
  get_org_compliance_snapshot  — read-only aggregate across the org's frameworks

Reads fan out over independent sessions; all writes of one evaluation go
through a single session, each side effect as its own best-effort step.
Evaluations of the same (org, framework) are serialised within this process
only; concurrent runs in separate processes are last-write-wins.
"""
from __future__ import annotations

import asyncio
import logging
import math
import weakref
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_engine.exceptions import ComplianceBlockedError
from compliance_engine.middleware.audit import log_audit_event
from compliance_engine.models.audit import OrgAuditLog
from compliance_engine.models.base import utcnow
from compliance_engine.models.compliance import (
    CONTROL_TYPE_FRAMEWORK_CONTROL,
    CONTROL_TYPE_FRAMEWORK_SNAPSHOT,
    OrgComplianceBlock,
    OrgComplianceStatus,
    OrgControlEvaluation,
)
from compliance_engine.schemas.compliance import (
    CategoryScore,
    ComplianceForecast,
    ComplianceSnapshot,
    ComplianceTrend,
    EvidenceBacklog,
    FrameworkDelta,
    FrameworkEvaluationResult,
    FrameworkScore,
    HighRiskControl,
    OpenViolation,
    TaskBacklog,
)
from compliance_engine.services import compliance_blocks
from compliance_engine.services.activity import ActivityLogger
from compliance_engine.services.best_effort import BestEffort
from compliance_engine.services.compliance_data import (
    FrameworkRef,
    SnapshotPoint,
    TaskLink,
    load_control_evidence,
    load_control_tasks,
    load_framework_by_code,
    load_framework_controls,
    load_frameworks,
    load_recent_snapshots,
    load_tasks,
    upsert_evaluation_records,
)
from compliance_engine.services.control_status import (
    ControlAssessment,
    ControlDefinition,
    EvidenceState,
    TaskState,
    WeightedTally,
    assess_control,
    evidence_status,
    is_task_complete,
    is_task_overdue,
    risk_rank,
    round_score,
    stable_hash,
)
from compliance_engine.services.entitlements import FRAMEWORK_EVALUATIONS, require_entitlement

log = logging.getLogger(__name__)

HIGH_RISK_LIMIT = 5
VELOCITY_WINDOW_DAYS = 30
FORECAST_HORIZON_DAYS = 21


def snapshot_status_for(score: int) -> str:
    if score == 100:
        return "compliant"
    if score >= 80:
        return "at_risk"
    return "non_compliant"


def assess_controls(
    controls: Iterable[ControlDefinition],
    evidence: Iterable[EvidenceState],
    links: Iterable[TaskLink],
    tasks: Iterable[TaskState],
    *,
    now: datetime,
) -> list[ControlAssessment]:
    """Group evidence and linked tasks by control and run the decision table on each."""
    evidence_by_control: dict[int, list[EvidenceState]] = {}
    for row in evidence:
        evidence_by_control.setdefault(row.control_id, []).append(row)

    task_by_id = {t.id: t for t in tasks}
    tasks_by_control: dict[int, list[TaskState]] = {}
    entity_by_control: dict[int, str] = {}
    for link in links:
        task = task_by_id.get(link.task_id)
        if task is None:
            continue
        tasks_by_control.setdefault(link.control_id, []).append(task)
        if link.entity_id and link.control_id not in entity_by_control:
            entity_by_control[link.control_id] = link.entity_id

    return [
        assess_control(
            c,
            evidence_by_control.get(c.id, []),
            tasks_by_control.get(c.id, []),
            now=now,
            entity_id=entity_by_control.get(c.id),
        )
        for c in controls
    ]


class ComplianceEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        activity_logger: ActivityLogger | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.activity_logger = activity_logger
        self.clock = clock or utcnow
        # Entries drop out once no run holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def _read(self, loader: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Run one loader in its own session so independent reads can be gathered."""
        async with self.session_factory() as s:
            return await loader(s, *args, **kwargs)

    # ═══════════════════════════════════════════
    # EVALUATE (persisting)
    # ═══════════════════════════════════════════

    async def evaluate_framework_controls(
        self, org_id: str, framework_code: str,
    ) -> FrameworkEvaluationResult | None:
        """Recompute and persist one framework for one org.

        Returns None when the ids are empty, the framework is unknown or has no
        controls. Raises EntitlementError without the framework_evaluations
        entitlement. Failed side effects are listed in `failed_steps`.
        """
        if not org_id or not framework_code:
            return None
        lock = self._locks.setdefault((org_id, framework_code), asyncio.Lock())
        async with lock:
            return await self._evaluate(org_id, framework_code)

    async def _evaluate(self, org_id: str, framework_code: str) -> FrameworkEvaluationResult | None:
        correlation_id = uuid4().hex

        async with self.session_factory() as s:
            await require_entitlement(s, org_id, FRAMEWORK_EVALUATIONS)
            fw = await load_framework_by_code(s, framework_code)
            if fw is None:
                log.info("Evaluation skipped: framework %s not found", framework_code)
                return None
            controls = await load_framework_controls(s, [fw.id])
        if not controls:
            log.info("Evaluation skipped: framework %s has no controls", framework_code)
            return None

        control_ids = [c.id for c in controls]
        evidence, links = await asyncio.gather(
            self._read(load_control_evidence, org_id, control_ids),
            self._read(load_control_tasks, org_id, control_ids),
        )
        tasks = await self._read(load_tasks, org_id, [link.task_id for link in links])

        evaluated_at = self.clock()
        assessments = assess_controls(controls, evidence, links, tasks, now=evaluated_at)

        tally = WeightedTally()
        missing_mandatory: list[str] = []
        partial: list[str] = []
        for a in assessments:
            tally.add(a)
            if a.is_mandatory and a.status == "non_compliant":
                missing_mandatory.append(a.control.code)
            if a.status == "at_risk":
                partial.append(a.control.code)

        score = tally.score_pct
        snapshot_status = snapshot_status_for(score)
        snapshot_hash = stable_hash({
            "orgId": org_id,
            "frameworkCode": fw.code,
            "score": score,
            "evaluatedAt": evaluated_at.isoformat(),
            "missingMandatoryCodes": missing_mandatory,
        })

        async with self.session_factory() as s:
            steps = BestEffort(s, context=f"{org_id}/{fw.code}")
            records = [self._evaluation_record(fw, a, evaluated_at) for a in assessments]

            await steps.run("evaluation_upserts", lambda: upsert_evaluation_records(s, org_id, records))
            await steps.run("evaluation_activity", lambda: self._log_evaluations(s, org_id, records))
            await steps.run("framework_snapshot", lambda: self._insert_snapshot(
                s, org_id, fw, tally, score, snapshot_status, snapshot_hash,
                missing_mandatory, partial, evaluated_at,
            ))
            await steps.run("status_rollup", lambda: self._upsert_status(
                s, org_id, fw, tally, score, evaluated_at,
            ))
            await steps.run("block_refresh", lambda: compliance_blocks.refresh_compliance_blocks(
                s, org_id, fw.code, missing_mandatory, activity_logger=self.activity_logger,
            ))
            await steps.run("audit_event", lambda: log_audit_event(
                s,
                organization_id=org_id,
                actor_user_id=None,
                actor_role="system",
                entity_type="framework",
                entity_id=fw.id,
                action_type="FRAMEWORK_EVALUATED",
                after_state={
                    "frameworkCode": fw.code,
                    "score": score,
                    "totalControls": len(controls),
                    "missingMandatory": len(missing_mandatory),
                    "correlation_id": correlation_id,
                },
                reason="evaluation",
            ))
            try:
                await s.commit()
            except SQLAlchemyError:
                log.exception("Committing evaluation of %s for %s failed", fw.code, org_id)
                await s.rollback()
                failed = ["commit"]
            else:
                failed = []

        failed = steps.failed_steps + failed
        log.info("Evaluated %s for %s: score=%d, missing=%d, failed_steps=%s [%s]",
                 fw.code, org_id, score, len(missing_mandatory), failed, correlation_id)

        return FrameworkEvaluationResult(
            framework_id=fw.id,
            framework_code=fw.code,
            score=score,
            snapshot_status=snapshot_status,
            snapshot_hash=snapshot_hash,
            evaluated_at=evaluated_at,
            total_controls=len(controls),
            compliant_count=tally.counts["compliant"],
            at_risk_count=tally.counts["at_risk"],
            non_compliant_count=tally.counts["non_compliant"],
            not_applicable_count=tally.counts["not_applicable"],
            missing_mandatory_codes=missing_mandatory,
            partial_codes=partial,
            correlation_id=correlation_id,
            failed_steps=failed,
        )

    @staticmethod
    def _evaluation_record(fw: FrameworkRef, a: ControlAssessment, evaluated_at: datetime) -> dict:
        return {
            "entity_id": a.entity_id,
            "control_type": CONTROL_TYPE_FRAMEWORK_CONTROL,
            "control_key": f"control:{a.control.id}",
            "required": a.is_mandatory,
            "status": a.status,
            "last_evaluated_at": evaluated_at,
            "framework_id": fw.id,
            "details": {**a.details(), "framework_code": fw.code},
        }

    @staticmethod
    async def _log_evaluations(s: AsyncSession, org_id: str, records: list[dict]) -> None:
        for r in records:
            s.add(OrgAuditLog(
                organization_id=org_id,
                action="control_evaluated",
                target=r["control_key"],
                actor_email="system",
                log_metadata=r["details"],
                created_at=r["last_evaluated_at"],
            ))
        await s.flush()

    @staticmethod
    async def _insert_snapshot(
        s: AsyncSession, org_id: str, fw: FrameworkRef, tally: WeightedTally, score: int,
        status: str, snapshot_hash: str, missing: list[str], partial: list[str],
        evaluated_at: datetime,
    ) -> None:
        s.add(OrgControlEvaluation(
            organization_id=org_id,
            control_type=CONTROL_TYPE_FRAMEWORK_SNAPSHOT,
            control_key=f"framework:{fw.code}:{evaluated_at.isoformat()}",
            required=True,
            status=status,
            last_evaluated_at=evaluated_at,
            framework_id=fw.id,
            compliance_score=score,
            total_controls=tally.controls,
            satisfied_controls=tally.counts["compliant"],
            missing_controls=tally.counts["non_compliant"],
            missing_control_codes=missing,
            partial_control_codes=partial,
            evaluated_by=None,
            snapshot_hash=snapshot_hash,
            evaluated_at=evaluated_at,
            details={"framework_code": fw.code, "missing_mandatory_codes": missing},
        ))
        await s.flush()

    @staticmethod
    async def _upsert_status(
        s: AsyncSession, org_id: str, fw: FrameworkRef, tally: WeightedTally, score: int,
        evaluated_at: datetime,
    ) -> None:
        row = await s.get(OrgComplianceStatus, org_id)
        if row is None:
            row = OrgComplianceStatus(organization_id=org_id)
            s.add(row)
        row.last_framework_code = fw.code
        row.last_score = score
        row.last_total_controls = tally.controls
        row.last_missing_controls = tally.counts["non_compliant"]
        row.last_partial_controls = tally.counts["at_risk"]
        row.last_evaluated_at = evaluated_at
        row.updated_at = utcnow()
        await s.flush()

    # ═══════════════════════════════════════════
    # SNAPSHOT (read-only)
    # ═══════════════════════════════════════════

    async def get_org_compliance_snapshot(self, org_id: str, strict: bool = False) -> ComplianceSnapshot:
        """Aggregate score, breakdowns, violations, backlog, trend and forecast.

        strict=True raises ComplianceDataError when framework, control, evidence
        or task queries fail; otherwise those degrade to empty data. An empty
        snapshot reports overall_score 0, which does not mean a measured zero.
        """
        if not org_id:
            return ComplianceSnapshot()

        frameworks = await self._read(load_frameworks, org_id, strict=strict)
        controls = await self._read(load_framework_controls, [fw.id for fw in frameworks], strict=strict)
        control_ids = [c.id for c in controls]

        evidence, links, history = await asyncio.gather(
            self._read(load_control_evidence, org_id, control_ids, strict=strict),
            self._read(load_control_tasks, org_id, control_ids, strict=strict),
            self._read(load_recent_snapshots, org_id),
        )
        tasks = await self._read(load_tasks, org_id, [link.task_id for link in links], strict=strict)

        now = self.clock()
        assessments = assess_controls(controls, evidence, links, tasks, now=now)
        by_framework: dict[int, list[ControlAssessment]] = {}
        for a in assessments:
            by_framework.setdefault(a.control.framework_id, []).append(a)

        overall = WeightedTally()
        categories: dict[str, WeightedTally] = {}
        framework_scores: list[FrameworkScore] = []
        open_violations: list[OpenViolation] = []
        high_risk: list[HighRiskControl] = []

        for fw in frameworks:
            fw_tally = WeightedTally()
            for a in by_framework.get(fw.id, []):
                fw_tally.add(a)
                overall.add(a)
                categories.setdefault(a.category, WeightedTally()).add(a)

                if a.is_mandatory and a.status != "compliant":
                    open_violations.append(OpenViolation(
                        **self._control_summary(fw, a),
                        entity_id=a.entity_id,
                        required_evidence_count=a.required_evidence,
                        approved_evidence_count=a.approved_evidence_count,
                        pending_evidence_count=a.pending_evidence_count,
                        rejected_evidence_count=a.rejected_evidence_count,
                        open_task_count=a.open_task_count,
                        overdue_task_count=a.overdue_task_count,
                    ))
                if a.risk_level in ("high", "critical") and a.status != "compliant":
                    high_risk.append(HighRiskControl(**self._control_summary(fw, a)))

            framework_scores.append(FrameworkScore(
                framework_id=fw.id,
                framework_code=fw.code,
                framework_title=fw.title or fw.code,
                score=fw_tally.score_pct,
                risk_score=fw_tally.risk_pct,
                total_controls=fw_tally.controls,
                **fw_tally.counts,
            ))

        high_risk.sort(key=lambda c: risk_rank(c.risk_level), reverse=True)

        evidence_backlog = EvidenceBacklog(
            pending=sum(1 for e in evidence if evidence_status(e) == "pending"),
            rejected=sum(1 for e in evidence if evidence_status(e) == "rejected"),
        )
        evidence_backlog.total = evidence_backlog.pending + evidence_backlog.rejected
        open_tasks = sum(1 for t in tasks if not is_task_complete(t))
        task_backlog = TaskBacklog(
            open=open_tasks,
            overdue=sum(1 for t in tasks if is_task_overdue(t, now)),
            total=open_tasks,
        )

        return ComplianceSnapshot(
            overall_score=overall.score_pct,
            framework_breakdown=framework_scores,
            category_breakdown=[
                CategoryScore(
                    category=name,
                    score=t.score_pct,
                    risk_score=t.risk_pct,
                    total_controls=t.controls,
                    **t.counts,
                )
                for name, t in categories.items()
            ],
            trend=self._trend(frameworks, history),
            open_violations=open_violations,
            high_risk_controls=high_risk[:HIGH_RISK_LIMIT],
            evidence_backlog=evidence_backlog,
            task_backlog=task_backlog,
            forecast=self._forecast(
                overall, evidence, tasks, now,
                backlog_items=task_backlog.total + evidence_backlog.total,
            ),
        )

    @staticmethod
    def _control_summary(fw: FrameworkRef, a: ControlAssessment) -> dict:
        return {
            "control_id": a.control.id,
            "framework_id": fw.id,
            "framework_code": fw.code,
            "code": a.control.code,
            "title": a.control.title,
            "status": a.status,
            "risk_level": a.risk_level,
            "category": a.category,
        }

    @staticmethod
    def _trend(frameworks: list[FrameworkRef], history: list[SnapshotPoint]) -> ComplianceTrend:
        def delta(rows: list[SnapshotPoint]) -> int | None:
            if len(rows) < 2:
                return None
            return (rows[0].compliance_score or 0) - (rows[1].compliance_score or 0)

        by_framework: dict[int, list[SnapshotPoint]] = {}
        for row in history:
            if row.framework_id is not None:
                by_framework.setdefault(row.framework_id, []).append(row)

        return ComplianceTrend(
            overall_delta=delta(history),
            framework_deltas=[
                FrameworkDelta(framework_code=fw.code, delta=delta(by_framework.get(fw.id, [])))
                for fw in frameworks
            ],
        )

    @staticmethod
    def _forecast(
        overall: WeightedTally, evidence: list[EvidenceState], tasks: list[TaskState],
        now: datetime, *, backlog_items: int,
    ) -> ComplianceForecast:
        cutoff = now - timedelta(days=VELOCITY_WINDOW_DAYS)
        completed = sum(1 for t in tasks if t.completed_at is not None and t.completed_at > cutoff)
        approved = sum(
            1 for e in evidence
            if evidence_status(e) == "approved" and e.created_at is not None and e.created_at > cutoff
        )
        velocity = (completed + approved) / VELOCITY_WINDOW_DAYS
        if velocity <= 0:
            return ComplianceForecast()

        days_to_full = math.ceil(backlog_items / velocity)
        projected = None
        if overall.weight > 0:
            current = overall.score_pct
            progress = min(1.0, FORECAST_HORIZON_DAYS / (days_to_full or FORECAST_HORIZON_DAYS))
            projected = min(100, round_score(current + (100 - current) * progress))
        return ComplianceForecast(
            projected_score_in_21_days=projected,
            velocity_per_day=velocity,
            days_to_full_compliance=days_to_full,
            basis="30_day_velocity_model",
        )

    # ═══════════════════════════════════════════
    # GATES
    # ═══════════════════════════════════════════

    async def list_open_blocks(self, org_id: str) -> list[OrgComplianceBlock]:
        return await self._read(compliance_blocks.list_open_blocks, org_id)

    async def require_no_compliance_blocks(self, org_id: str, gate_key: str) -> None:
        """Raise ComplianceBlockedError when the gate is closed, after committing the enforcement records."""
        async with self.session_factory() as s:
            try:
                await compliance_blocks.require_no_compliance_blocks(
                    s, org_id, gate_key, activity_logger=self.activity_logger,
                )
            except ComplianceBlockedError:
                try:
                    await s.commit()
                except SQLAlchemyError:
                    log.exception("Committing enforcement records for %s/%s failed", org_id, gate_key)
                raise
