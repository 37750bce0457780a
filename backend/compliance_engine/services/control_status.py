"""
Control status derivation — the single decision table shared by the persisting
evaluator and the read-only snapshot aggregator.

Status, evaluated in order:
  1. not_applicable  — control is not mandatory
  2. compliant       — evidence satisfied and no open tasks
  3. non_compliant   — any overdue open task
  4. non_compliant   — evidence unsatisfied on a high/critical control
  5. at_risk         — everything else (pending/rejected evidence, open tasks)

Score contribution: compliant 1, at_risk 0.5, non_compliant 0, weighted by
weight * risk multiplier (critical 1.4, high 1.2, medium 1.0, low 0.8).
not_applicable controls are left out of every denominator.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Iterable

RISK_MULTIPLIERS = {"critical": 1.4, "high": 1.2, "low": 0.8}
RISK_RANK = {"critical": 3, "high": 2}

_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619


# ─────────────────────────────────────────────
# Inputs
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class ControlDefinition:
    """Organization-applicable control, already normalised to risk_level form."""
    id: int
    framework_id: int
    code: str
    title: str
    category: str | None = None
    description: str | None = None
    risk_level: str | None = "medium"
    weight: float | None = 1.0
    required_evidence_count: int | None = 1
    is_mandatory: bool | None = True
    framework_control_id: int | None = None


@dataclass(frozen=True)
class EvidenceState:
    control_id: int
    status: str | None = None
    evidence_id: int | None = None
    created_at: datetime | None = None
    entity_id: str | None = None


@dataclass(frozen=True)
class TaskState:
    id: int
    status: str | None = None
    due_at: datetime | str | None = None
    due_date: date | str | None = None
    completed_at: datetime | None = None


# ─────────────────────────────────────────────
# Output
# ─────────────────────────────────────────────

@dataclass
class ControlAssessment:
    control: ControlDefinition
    status: str
    risk_level: str
    weight: float
    risk_weight: float
    required_evidence: int
    is_mandatory: bool
    approved_evidence_count: int = 0
    pending_evidence_count: int = 0
    rejected_evidence_count: int = 0
    open_task_count: int = 0
    overdue_task_count: int = 0
    entity_id: str | None = None

    @property
    def category(self) -> str:
        return self.control.category or "General"

    @property
    def weight_factor(self) -> float:
        """weight * risk multiplier; zero for not_applicable controls."""
        if self.status == "not_applicable":
            return 0.0
        return self.weight * self.risk_weight

    @property
    def score_contribution(self) -> float:
        return self.weight_factor * score_from_status(self.status)

    @property
    def risk_contribution(self) -> float:
        return self.weight_factor * risk_score_from_status(self.status)

    @property
    def missing_evidence(self) -> int:
        return max(0, self.required_evidence - self.approved_evidence_count)

    def details(self) -> dict[str, Any]:
        return {
            "control_id": self.control.id,
            "framework_id": self.control.framework_id,
            "code": self.control.code,
            "title": self.control.title,
            "category": self.category,
            "risk_level": self.risk_level,
            "weight": self.weight,
            "required_evidence_count": self.required_evidence,
            "approved_evidence_count": self.approved_evidence_count,
            "pending_evidence_count": self.pending_evidence_count,
            "rejected_evidence_count": self.rejected_evidence_count,
            "open_task_count": self.open_task_count,
            "overdue_task_count": self.overdue_task_count,
        }


@dataclass
class WeightedTally:
    """Running weighted score and status counts for one aggregation scope."""
    weight: float = 0.0
    score: float = 0.0
    risk: float = 0.0
    controls: int = 0
    counts: dict[str, int] = field(default_factory=lambda: {
        "compliant": 0, "at_risk": 0, "non_compliant": 0, "not_applicable": 0,
    })

    def add(self, assessment: ControlAssessment) -> None:
        self.controls += 1
        self.counts[assessment.status] += 1
        self.weight += assessment.weight_factor
        self.score += assessment.score_contribution
        self.risk += assessment.risk_contribution

    @property
    def score_pct(self) -> int:
        return _round_half_up(self.score / self.weight * 100) if self.weight > 0 else 0

    @property
    def risk_pct(self) -> int:
        return _round_half_up(self.risk / self.weight * 100) if self.weight > 0 else 0


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def normalize_risk_level(value: str | None) -> str:
    level = (value or "medium").strip().lower()
    if level in ("critical", "high", "low"):
        return level
    return "medium"


def risk_multiplier(risk_level: str | None) -> float:
    return RISK_MULTIPLIERS.get((risk_level or "medium").lower(), 1.0)


def risk_rank(risk_level: str | None) -> int:
    return RISK_RANK.get((risk_level or "").lower(), 1)


def score_from_status(status: str) -> float:
    if status == "compliant":
        return 1.0
    if status == "at_risk":
        return 0.5
    return 0.0


def risk_score_from_status(status: str) -> float:
    if status == "non_compliant":
        return 1.0
    if status == "at_risk":
        return 0.5
    return 0.0


def evidence_status(row: EvidenceState) -> str:
    return row.status or "pending"


def is_task_complete(task: TaskState) -> bool:
    return (task.status or "").lower() in ("completed", "done")


def _to_naive_utc(value: datetime | date | str) -> datetime:
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    elif not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def is_task_overdue(task: TaskState, now: datetime) -> bool:
    """Open task whose due moment has passed. No due date, or an unparsable
    one, is never overdue."""
    if is_task_complete(task):
        return False
    due = task.due_at or task.due_date
    if not due:
        return False
    try:
        return _to_naive_utc(due) < _to_naive_utc(now)
    except (TypeError, ValueError):
        return False


def _round_half_up(value: float) -> int:
    # Math.round semantics: 12.5 -> 13, not banker's rounding
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def round_score(value: float) -> int:
    return _round_half_up(value)


def fnv1a_32(text: str) -> str:
    """32-bit FNV-1a over the UTF-16 code units of text, as `fnv1a_<hex>`."""
    data = text.encode("utf-16-le")
    h = _FNV_OFFSET
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return f"fnv1a_{h:x}"


def stable_hash(payload: dict[str, Any]) -> str:
    """FNV-1a of the compact JSON of payload. Key order is significant."""
    return fnv1a_32(json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str))


# ─────────────────────────────────────────────
# Decision table
# ─────────────────────────────────────────────

def derive_status(
    *,
    is_mandatory: bool,
    evidence_satisfied: bool,
    open_task_count: int,
    overdue_task_count: int,
    risk_level: str,
) -> str:
    if not is_mandatory:
        return "not_applicable"
    if evidence_satisfied and open_task_count == 0:
        return "compliant"
    if overdue_task_count > 0:
        return "non_compliant"
    if not evidence_satisfied and risk_level in ("critical", "high"):
        return "non_compliant"
    return "at_risk"


def assess_control(
    control: ControlDefinition,
    evidence: Iterable[EvidenceState],
    tasks: Iterable[TaskState],
    *,
    now: datetime,
    entity_id: str | None = None,
) -> ControlAssessment:
    """Derive status and counts for one control from its evidence and linked tasks."""
    evidence = list(evidence)
    tasks = list(tasks)

    required = int(control.required_evidence_count if control.required_evidence_count is not None else 1)
    is_mandatory = control.is_mandatory is not False
    weight = float(control.weight if control.weight is not None else 1)
    risk_level = (control.risk_level or "medium").lower()

    approved = sum(1 for e in evidence if evidence_status(e) == "approved")
    pending = sum(1 for e in evidence if evidence_status(e) == "pending")
    rejected = sum(1 for e in evidence if evidence_status(e) == "rejected")

    open_tasks = sum(1 for t in tasks if not is_task_complete(t))
    overdue_tasks = sum(1 for t in tasks if is_task_overdue(t, now))

    evidence_satisfied = required <= 0 or approved >= required

    status = derive_status(
        is_mandatory=is_mandatory,
        evidence_satisfied=evidence_satisfied,
        open_task_count=open_tasks,
        overdue_task_count=overdue_tasks,
        risk_level=risk_level,
    )

    resolved_entity = next((e.entity_id for e in evidence if e.entity_id), None) or entity_id

    return ControlAssessment(
        control=control,
        status=status,
        risk_level=risk_level,
        weight=weight,
        risk_weight=risk_multiplier(risk_level),
        required_evidence=required,
        is_mandatory=is_mandatory,
        approved_evidence_count=approved,
        pending_evidence_count=pending,
        rejected_evidence_count=rejected,
        open_task_count=open_tasks,
        overdue_task_count=overdue_tasks,
        entity_id=resolved_entity,
    )
