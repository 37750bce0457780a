"""Pydantic schemas for compliance evaluation, snapshots and certification readiness."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ControlStatus = Literal["compliant", "at_risk", "non_compliant", "not_applicable"]
ReadinessStatus = Literal["certifiable", "conditionally_ready", "blocked"]


# ═══ Evaluation ═══


class FrameworkEvaluationResult(BaseModel):
    framework_id: int
    framework_code: str
    score: int
    snapshot_status: ControlStatus
    snapshot_hash: str
    evaluated_at: datetime
    total_controls: int
    compliant_count: int = 0
    at_risk_count: int = 0
    non_compliant_count: int = 0
    not_applicable_count: int = 0
    missing_mandatory_codes: list[str] = Field(default_factory=list)
    partial_codes: list[str] = Field(default_factory=list)
    correlation_id: str
    failed_steps: list[str] = Field(default_factory=list)


# ═══ Snapshot ═══


class FrameworkScore(BaseModel):
    framework_id: int
    framework_code: str
    framework_title: str
    score: int
    risk_score: int
    total_controls: int
    compliant: int = 0
    at_risk: int = 0
    non_compliant: int = 0
    not_applicable: int = 0


class CategoryScore(BaseModel):
    category: str
    score: int
    risk_score: int
    total_controls: int
    compliant: int = 0
    at_risk: int = 0
    non_compliant: int = 0
    not_applicable: int = 0


class FrameworkDelta(BaseModel):
    framework_code: str
    delta: int | None = None


class ComplianceTrend(BaseModel):
    overall_delta: int | None = None
    framework_deltas: list[FrameworkDelta] = Field(default_factory=list)


class HighRiskControl(BaseModel):
    control_id: int
    framework_id: int
    framework_code: str
    code: str
    title: str
    status: ControlStatus
    risk_level: str
    category: str


class OpenViolation(HighRiskControl):
    entity_id: str | None = None
    required_evidence_count: int
    approved_evidence_count: int
    pending_evidence_count: int
    rejected_evidence_count: int
    open_task_count: int
    overdue_task_count: int


class EvidenceBacklog(BaseModel):
    pending: int = 0
    rejected: int = 0
    total: int = 0


class TaskBacklog(BaseModel):
    open: int = 0
    overdue: int = 0
    total: int = 0


class ComplianceForecast(BaseModel):
    projected_score_in_21_days: int | None = None
    velocity_per_day: float = 0.0
    days_to_full_compliance: int | None = None
    basis: Literal["30_day_velocity_model", "insufficient_data"] = "insufficient_data"


class ComplianceSnapshot(BaseModel):
    # An empty snapshot also reports overall_score 0; it is not a measured zero.
    overall_score: int = 0
    framework_breakdown: list[FrameworkScore] = Field(default_factory=list)
    category_breakdown: list[CategoryScore] = Field(default_factory=list)
    trend: ComplianceTrend = Field(default_factory=ComplianceTrend)
    open_violations: list[OpenViolation] = Field(default_factory=list)
    high_risk_controls: list[HighRiskControl] = Field(default_factory=list)
    evidence_backlog: EvidenceBacklog = Field(default_factory=EvidenceBacklog)
    task_backlog: TaskBacklog = Field(default_factory=TaskBacklog)
    forecast: ComplianceForecast = Field(default_factory=ComplianceForecast)


# ═══ Certification readiness ═══


class FrameworkReadiness(BaseModel):
    framework_id: int
    framework_code: str
    framework_title: str
    status: ReadinessStatus
    missing_controls: list[str] = Field(default_factory=list)
    at_risk_controls: list[str] = Field(default_factory=list)
    required_evidence: int = 0
    open_remediation_tasks: int = 0


# ═══ Gates ═══


class ComplianceBlockOut(BaseModel):
    id: int
    organization_id: str
    gate_key: str
    reason: str
    metadata: dict | None = Field(None, validation_alias="block_metadata")
    created_at: datetime
    resolved_at: datetime | None = None
    model_config = {"from_attributes": True, "populate_by_name": True}


class GateCheckResult(BaseModel):
    gate_key: str
    allowed: bool = True
