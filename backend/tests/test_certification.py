"""Unit tests — certification readiness projection."""
from compliance_engine.schemas.compliance import ComplianceSnapshot, FrameworkScore, OpenViolation
from compliance_engine.services.certification import project_certification_readiness


def _framework(fid, code):
    return FrameworkScore(
        framework_id=fid, framework_code=code, framework_title=code,
        score=0, risk_score=0, total_controls=0,
    )


def _violation(code, fw_code, status, approved=0, required=1, open_tasks=0):
    return OpenViolation(
        control_id=sum(map(ord, code)), framework_id=1, framework_code=fw_code, code=code,
        title=code, status=status, risk_level="medium", category="General",
        required_evidence_count=required, approved_evidence_count=approved,
        pending_evidence_count=0, rejected_evidence_count=0,
        open_task_count=open_tasks, overdue_task_count=0,
    )


def test_framework_without_violations_is_certifiable():
    snap = ComplianceSnapshot(framework_breakdown=[_framework(1, "SOC2")])
    [r] = project_certification_readiness(snap)
    assert r.status == "certifiable"
    assert r.required_evidence == 0


def test_at_risk_controls_make_a_framework_conditionally_ready():
    snap = ComplianceSnapshot(
        framework_breakdown=[_framework(1, "SOC2")],
        open_violations=[_violation("CC6.1", "SOC2", "at_risk", approved=1, open_tasks=2)],
    )
    [r] = project_certification_readiness(snap)
    assert r.status == "conditionally_ready"
    assert r.at_risk_controls == ["CC6.1"]
    assert r.required_evidence == 0
    assert r.open_remediation_tasks == 2


def test_non_compliant_mandatory_control_blocks():
    snap = ComplianceSnapshot(
        framework_breakdown=[_framework(1, "ISO27001"), _framework(2, "SOC2")],
        open_violations=[
            _violation("A.5.15", "ISO27001", "non_compliant", required=2),
            _violation("A.6.3", "ISO27001", "at_risk"),
        ],
    )
    iso, soc = project_certification_readiness(snap)
    assert iso.status == "blocked"
    assert iso.missing_controls == ["A.5.15"]
    assert iso.at_risk_controls == ["A.6.3"]
    assert iso.required_evidence == 3
    assert soc.status == "certifiable"
