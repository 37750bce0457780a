"""
Evidence Suggestion Resolver — default evidence, tasks, triggers and review
cadence for a catalog control.

A control's own suggested_* lists win when non-empty; otherwise the risk tier
table below applies (unknown or missing tier -> medium).
"""
from __future__ import annotations

from typing import Any, Mapping

from compliance_engine.schemas.framework import EvidenceSuggestions, TaskTemplate
from compliance_engine.services.control_status import normalize_risk_level

TIER_EVIDENCE_TYPES: dict[str, list[str]] = {
    "low": ["Policy"],
    "medium": ["Policy", "Procedure or operating record"],
    "high": ["Policy", "Technical evidence"],
    "critical": ["Policy", "Technical evidence", "Incident or exception log"],
}

TIER_AUTOMATION_TRIGGERS: dict[str, list[str]] = {
    "low": [],
    "medium": ["task_overdue"],
    "high": ["control_failed", "task_overdue"],
    "critical": ["control_failed", "task_overdue"],
}

TIER_REVIEW_CADENCE_DAYS: dict[str, int] = {
    "low": 365,
    "medium": 180,
    "high": 90,
    "critical": 60,
}

DEFAULT_TASK_DESCRIPTION = "Define, implement and evidence the activities required by this control."


def _field(control: Any, name: str) -> Any:
    if isinstance(control, Mapping):
        return control.get(name)
    return getattr(control, name, None)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v) for v in value if isinstance(v, str) and v.strip()]


def _task_templates(value: Any) -> list[TaskTemplate]:
    if not isinstance(value, (list, tuple)):
        return []
    templates = []
    for item in value:
        if isinstance(item, Mapping) and item.get("title"):
            templates.append(TaskTemplate(
                title=str(item["title"]),
                description=item.get("description"),
                priority=item.get("priority"),
            ))
    return templates


def get_evidence_suggestions(control: Any) -> EvidenceSuggestions:
    """Resolve suggestions for a FrameworkControl (or an equivalent mapping)."""
    tier = normalize_risk_level(_field(control, "default_risk_level"))

    evidence_types = _string_list(_field(control, "suggested_evidence_types"))
    if not evidence_types:
        evidence_types = list(TIER_EVIDENCE_TYPES[tier])

    triggers = _string_list(_field(control, "suggested_automation_triggers"))
    if not triggers:
        triggers = list(TIER_AUTOMATION_TRIGGERS[tier])

    templates = _task_templates(_field(control, "suggested_task_templates"))
    if not templates:
        title = _field(control, "title") or _field(control, "control_code") or "control"
        templates = [TaskTemplate(
            title=f"Implement {title}",
            description=_field(control, "summary_description") or DEFAULT_TASK_DESCRIPTION,
            priority="medium",
        )]

    cadence = _field(control, "review_frequency_days")
    if not isinstance(cadence, int) or isinstance(cadence, bool) or cadence <= 0:
        cadence = TIER_REVIEW_CADENCE_DAYS[tier]

    return EvidenceSuggestions(
        evidence_types=evidence_types,
        task_templates=templates,
        automation_triggers=triggers,
        review_cadence_days=cadence,
    )
