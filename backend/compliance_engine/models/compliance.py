"""
Organization compliance models — the org-facing control projection, evidence,
remediation tasks, evaluation records and enforcement gates.

Tables: compliance_frameworks, compliance_controls, org_evidence, control_evidence,
        org_control_mappings, org_tasks, control_tasks, org_control_evaluations,
        org_compliance_status, org_compliance_blocks
"""
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, utcnow

RISK_LEVELS = ("low", "medium", "high", "critical")
EVIDENCE_STATUSES = ("pending", "approved", "rejected")
CONTROL_STATUSES = ("compliant", "at_risk", "non_compliant", "not_applicable")

# control_type values in org_control_evaluations
CONTROL_TYPE_FRAMEWORK_CONTROL = "framework_control"
CONTROL_TYPE_FRAMEWORK_SNAPSHOT = "framework_snapshot"


# ─── Org-facing framework projection ──────────────────────────


class ComplianceFramework(Base):
    __tablename__ = "compliance_frameworks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # relationships
    controls: Mapped[list["ComplianceControl"]] = relationship(
        back_populates="framework", cascade="all, delete-orphan",
    )


class ComplianceControl(Base):
    """Organization-applicable control (modern schema variant, risk_level enum)."""
    __tablename__ = "compliance_controls"
    __table_args__ = (
        UniqueConstraint("framework_id", "code", name="uq_compliance_control_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    framework_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_frameworks.id", ondelete="CASCADE"), nullable=False,
    )
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(300))
    risk_level: Mapped[str] = mapped_column(
        Enum(*RISK_LEVELS, name="risk_level_enum"), default="medium", nullable=False,
    )
    weight: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=Decimal("1.00"), nullable=False)
    required_evidence_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_mandatory: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    framework_control_id: Mapped[int | None] = mapped_column(
        ForeignKey("framework_controls.id", ondelete="SET NULL"),
    )

    # relationships
    framework: Mapped["ComplianceFramework"] = relationship(back_populates="controls")


# ─── Evidence ─────────────────────────────────────────────────


class OrgEvidence(Base):
    """Evidence artifact uploaded by an organization."""
    __tablename__ = "org_evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(*EVIDENCE_STATUSES, name="evidence_status_enum"), default="pending", nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class ControlEvidence(Base):
    """Evidence linked to a control, with its own review status."""
    __tablename__ = "control_evidence"
    __table_args__ = (
        Index("ix_control_evidence_org_control", "organization_id", "control_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    control_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_controls.id", ondelete="CASCADE"), nullable=False,
    )
    evidence_id: Mapped[int | None] = mapped_column(
        ForeignKey("org_evidence.id", ondelete="SET NULL"),
    )
    # NULL status counts as pending
    status: Mapped[str | None] = mapped_column(Enum(*EVIDENCE_STATUSES, name="evidence_status_enum"))
    entity_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime | None] = mapped_column(DateTime, default=utcnow)


class OrgControlMapping(Base):
    """Legacy control <-> evidence link; status lives on org_evidence."""
    __tablename__ = "org_control_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    control_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_controls.id", ondelete="CASCADE"), nullable=False,
    )
    evidence_id: Mapped[int] = mapped_column(
        ForeignKey("org_evidence.id", ondelete="CASCADE"), nullable=False,
    )
    entity_id: Mapped[str | None] = mapped_column(String(64))

    # relationships
    evidence: Mapped["OrgEvidence"] = relationship()


# ─── Tasks ────────────────────────────────────────────────────


class OrgTask(Base):
    __tablename__ = "org_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    # Free text; "completed" / "done" (any case) close the task
    status: Mapped[str | None] = mapped_column(String(30), default="pending")
    priority: Mapped[str | None] = mapped_column(String(20))
    due_at: Mapped[datetime | None] = mapped_column(DateTime)
    due_date: Mapped[date | None] = mapped_column(Date)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False,
    )


class ControlTask(Base):
    __tablename__ = "control_tasks"
    __table_args__ = (
        UniqueConstraint("control_id", "task_id", name="uq_control_task"),
        Index("ix_control_tasks_org_control", "organization_id", "control_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    control_id: Mapped[int] = mapped_column(
        ForeignKey("compliance_controls.id", ondelete="CASCADE"), nullable=False,
    )
    task_id: Mapped[int] = mapped_column(
        ForeignKey("org_tasks.id", ondelete="CASCADE"), nullable=False,
    )
    entity_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ─── Evaluation records & framework snapshots ─────────────────


class OrgControlEvaluation(Base):
    """Per-control evaluation outcome, or (control_type='framework_snapshot')
    an append-only aggregate of one framework evaluation run."""
    __tablename__ = "org_control_evaluations"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "control_type", "control_key", name="uq_org_control_evaluation",
        ),
        Index("ix_org_eval_type_time", "organization_id", "control_type", "last_evaluated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64))
    control_type: Mapped[str] = mapped_column(String(40), nullable=False)
    control_key: Mapped[str] = mapped_column(String(200), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(*CONTROL_STATUSES, name="control_status_enum"), nullable=False,
    )
    last_evaluated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    framework_id: Mapped[int | None] = mapped_column(
        ForeignKey("compliance_frameworks.id", ondelete="CASCADE"),
    )

    # Snapshot-only columns
    compliance_score: Mapped[int | None] = mapped_column(Integer)
    total_controls: Mapped[int | None] = mapped_column(Integer)
    satisfied_controls: Mapped[int | None] = mapped_column(Integer)
    missing_controls: Mapped[int | None] = mapped_column(Integer)
    missing_control_codes: Mapped[list | None] = mapped_column(JSON)
    partial_control_codes: Mapped[list | None] = mapped_column(JSON)
    evaluated_by: Mapped[str | None] = mapped_column(String(200))
    snapshot_hash: Mapped[str | None] = mapped_column(String(40))
    evaluated_at: Mapped[datetime | None] = mapped_column(DateTime)

    details: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False,
    )


class OrgComplianceStatus(Base):
    """Latest evaluation rollup, one row per organization."""
    __tablename__ = "org_compliance_status"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_framework_code: Mapped[str | None] = mapped_column(String(50))
    last_score: Mapped[int | None] = mapped_column(Integer)
    last_total_controls: Mapped[int | None] = mapped_column(Integer)
    last_missing_controls: Mapped[int | None] = mapped_column(Integer)
    last_partial_controls: Mapped[int | None] = mapped_column(Integer)
    last_evaluated_at: Mapped[datetime | None] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False,
    )


# ─── Enforcement gates ────────────────────────────────────────


class OrgComplianceBlock(Base):
    """Open while resolved_at is NULL; blocks the action named by gate_key."""
    __tablename__ = "org_compliance_blocks"
    __table_args__ = (
        Index("ix_compliance_block_open", "organization_id", "gate_key", "resolved_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gate_key: Mapped[str] = mapped_column(String(60), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(200))
    block_metadata: Mapped[dict | None] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime)
