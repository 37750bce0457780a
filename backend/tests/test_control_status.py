"""Unit tests — control status decision table, weighted scoring, snapshot hash."""
from datetime import date, datetime, timedelta

import pytest

from compliance_engine.services.control_status import (
    ControlDefinition,
    EvidenceState,
    TaskState,
    WeightedTally,
    assess_control,
    fnv1a_32,
    is_task_overdue,
    round_score,
    stable_hash,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _control(code="C1", risk="medium", mandatory=True, required=1, weight=1.0, category=None):
    return ControlDefinition(
        id=sum(map(ord, code)), framework_id=1, code=code, title=f"Control {code}",
        category=category, risk_level=risk, weight=weight,
        required_evidence_count=required, is_mandatory=mandatory,
    )


def _approved(control, n=1):
    return [EvidenceState(control_id=control.id, status="approved") for _ in range(n)]


# ── Decision table ──

def test_not_mandatory_is_not_applicable_even_with_gaps():
    c = _control(mandatory=False, risk="critical")
    a = assess_control(c, [], [TaskState(id=1, due_at=NOW - timedelta(days=3))], now=NOW)
    assert a.status == "not_applicable"
    assert a.weight_factor == 0


def test_satisfied_evidence_without_open_tasks_is_compliant():
    c = _control(required=2)
    a = assess_control(c, _approved(c, 2), [TaskState(id=1, status="Done")], now=NOW)
    assert a.status == "compliant"
    assert a.approved_evidence_count == 2
    assert a.open_task_count == 0


def test_zero_required_evidence_is_satisfied():
    c = _control(required=0)
    assert assess_control(c, [], [], now=NOW).status == "compliant"


def test_open_task_keeps_satisfied_control_at_risk():
    c = _control()
    a = assess_control(c, _approved(c), [TaskState(id=1, status="pending")], now=NOW)
    assert a.status == "at_risk"


def test_overdue_task_is_non_compliant():
    c = _control(risk="low")
    overdue = TaskState(id=1, status="in_progress", due_at=NOW - timedelta(minutes=1))
    a = assess_control(c, [], [overdue], now=NOW)
    assert a.status == "non_compliant"
    assert a.overdue_task_count == 1


@pytest.mark.parametrize("risk,expected", [
    ("critical", "non_compliant"),
    ("high", "non_compliant"),
    ("medium", "at_risk"),
    ("low", "at_risk"),
])
def test_unsatisfied_evidence_depends_on_risk(risk, expected):
    c = _control(risk=risk)
    pending = [EvidenceState(control_id=c.id, status=None)]
    a = assess_control(c, pending, [], now=NOW)
    assert a.status == expected
    assert a.pending_evidence_count == 1


def test_rejected_evidence_does_not_count():
    c = _control()
    rejected = [EvidenceState(control_id=c.id, status="rejected")]
    a = assess_control(c, rejected, [], now=NOW)
    assert a.status == "at_risk"
    assert a.rejected_evidence_count == 1
    assert a.missing_evidence == 1


def test_approving_evidence_never_lowers_status():
    rank = {"non_compliant": 0, "at_risk": 1, "compliant": 2}
    c = _control(risk="high", required=2)
    previous = -1
    for n in range(3):
        status = assess_control(c, _approved(c, n), [], now=NOW).status
        assert rank[status] >= previous
        previous = rank[status]
    assert previous == rank["compliant"]


def test_entity_from_evidence_wins_over_task_link():
    c = _control()
    ev = [EvidenceState(control_id=c.id, status="approved", entity_id="site-9")]
    assert assess_control(c, ev, [], now=NOW, entity_id="site-1").entity_id == "site-9"
    assert assess_control(c, [], [], now=NOW, entity_id="site-1").entity_id == "site-1"


def test_missing_category_defaults_to_general():
    assert assess_control(_control(), [], [], now=NOW).category == "General"


# ── Overdue detection ──

def test_date_only_due_counts_from_midnight():
    task = TaskState(id=1, due_date=date(2026, 3, 1))
    assert is_task_overdue(task, NOW)
    assert not is_task_overdue(task, datetime(2026, 2, 28, 23, 0))


def test_completed_or_undated_tasks_are_never_overdue():
    assert not is_task_overdue(TaskState(id=1, status="COMPLETED", due_at=NOW - timedelta(days=9)), NOW)
    assert not is_task_overdue(TaskState(id=2), NOW)


def test_iso_string_due_dates_are_parsed():
    assert is_task_overdue(TaskState(id=1, due_at="2026-02-01T00:00:00Z"), NOW)
    assert not is_task_overdue(TaskState(id=2, due_at="not a date"), NOW)


# ── Weighted scoring ──

def test_compliant_plus_non_compliant_medium_scores_fifty():
    tally = WeightedTally()
    good, bad = _control("G"), _control("B")
    tally.add(assess_control(good, _approved(good), [], now=NOW))
    tally.add(assess_control(bad, [], [TaskState(id=1, due_at=NOW - timedelta(days=1))], now=NOW))
    assert tally.score_pct == 50
    assert tally.risk_pct == 50


def test_not_applicable_controls_leave_the_denominator():
    tally = WeightedTally()
    good = _control("G")
    tally.add(assess_control(good, _approved(good), [], now=NOW))
    tally.add(assess_control(_control("N", mandatory=False), [], [], now=NOW))
    assert tally.score_pct == 100
    assert tally.controls == 2
    assert tally.counts["not_applicable"] == 1


def test_risk_multiplier_weights_the_score():
    tally = WeightedTally()
    crit, low = _control("CR", risk="critical"), _control("LO", risk="low")
    tally.add(assess_control(crit, _approved(crit), [], now=NOW))
    tally.add(assess_control(low, [], [TaskState(id=1, due_at=NOW - timedelta(days=1))], now=NOW))
    # 1.4 / (1.4 + 0.8)
    assert tally.score_pct == 64


def test_empty_tally_scores_zero():
    assert WeightedTally().score_pct == 0


def test_round_half_up():
    assert round_score(12.5) == 13
    assert round_score(12.49) == 12


# ── Snapshot hash ──

def test_fnv1a_reference_vectors():
    assert fnv1a_32("") == "fnv1a_811c9dc5"
    assert fnv1a_32("a") == "fnv1a_e40c292c"
    assert fnv1a_32("foobar") == "fnv1a_bf9cf968"


def test_stable_hash_covers_compact_json_in_key_order():
    payload = {
        "orgId": "org-1",
        "frameworkCode": "ISO27001",
        "score": 47,
        "evaluatedAt": "2026-03-01T09:00:00",
        "missingMandatoryCodes": ["A.3"],
    }
    assert stable_hash(payload) == fnv1a_32(
        '{"orgId":"org-1","frameworkCode":"ISO27001","score":47,'
        '"evaluatedAt":"2026-03-01T09:00:00","missingMandatoryCodes":["A.3"]}'
    )
    reordered = dict(reversed(list(payload.items())))
    assert stable_hash(reordered) != stable_hash(payload)


def test_stable_hash_changes_with_content():
    assert stable_hash({"score": 80}) != stable_hash({"score": 81})
