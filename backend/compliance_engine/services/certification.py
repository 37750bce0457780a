"""
Certification readiness per framework, projected from a compliance snapshot.

  blocked              — any mandatory control non_compliant
  conditionally_ready  — at-risk controls, outstanding evidence or open tasks
  certifiable          — none of the above
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from compliance_engine.schemas.compliance import ComplianceSnapshot, FrameworkReadiness

if TYPE_CHECKING:
    from compliance_engine.services.compliance_engine import ComplianceEngine


def project_certification_readiness(snapshot: ComplianceSnapshot) -> list[FrameworkReadiness]:
    buckets: dict[str, dict] = {}
    for v in snapshot.open_violations:
        b = buckets.setdefault(v.framework_code, {"missing": [], "at_risk": [], "evidence": 0, "tasks": 0})
        if v.status == "non_compliant":
            b["missing"].append(v.code)
        elif v.status == "at_risk":
            b["at_risk"].append(v.code)
        b["evidence"] += max(0, v.required_evidence_count - v.approved_evidence_count)
        b["tasks"] += v.open_task_count

    result = []
    for fw in snapshot.framework_breakdown:
        b = buckets.get(fw.framework_code, {"missing": [], "at_risk": [], "evidence": 0, "tasks": 0})
        if b["missing"]:
            status = "blocked"
        elif b["at_risk"] or b["evidence"] > 0 or b["tasks"] > 0:
            status = "conditionally_ready"
        else:
            status = "certifiable"
        result.append(FrameworkReadiness(
            framework_id=fw.framework_id,
            framework_code=fw.framework_code,
            framework_title=fw.framework_title,
            status=status,
            missing_controls=b["missing"],
            at_risk_controls=b["at_risk"],
            required_evidence=b["evidence"],
            open_remediation_tasks=b["tasks"],
        ))
    return result


async def get_framework_certification_readiness(
    engine: "ComplianceEngine", org_id: str,
) -> list[FrameworkReadiness]:
    snapshot = await engine.get_org_compliance_snapshot(org_id)
    return project_certification_readiness(snapshot)
