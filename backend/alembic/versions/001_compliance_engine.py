"""Compliance engine: catalog, org compliance, evaluations, gates and audit tables

Revision ID: 001_compliance_engine
Revises:
Create Date: 2026-10-19

Creates: frameworks, framework_domains, framework_controls, control_mappings,
         org_frameworks, compliance_frameworks, compliance_controls,
         org_evidence, control_evidence, org_control_mappings, org_tasks,
         control_tasks, org_control_evaluations, org_compliance_status,
         org_compliance_blocks, org_audit_logs, audit_events, org_entitlements
"""
from alembic import op
import sqlalchemy as sa

revision = "001_compliance_engine"
down_revision = None
branch_labels = None
depends_on = None

RISK_LEVELS = ("low", "medium", "high", "critical")
EVIDENCE_STATUSES = ("pending", "approved", "rejected")
CONTROL_STATUSES = ("compliant", "at_risk", "non_compliant", "not_applicable")


def upgrade() -> None:
    # ── 1. Catalog ────────────────────────────────────────────────
    op.create_table(
        "frameworks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("slug", sa.String(100), unique=True, nullable=False),
        sa.Column("version", sa.String(50), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.text("1"), nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "framework_domains",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("framework_id", sa.Integer, sa.ForeignKey("frameworks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("sort_order", sa.Integer, server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("framework_id", "name", name="uq_fwdomain_framework_name"),
    )

    op.create_table(
        "framework_controls",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("framework_id", sa.Integer, sa.ForeignKey("frameworks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("domain_id", sa.Integer, sa.ForeignKey("framework_domains.id", ondelete="CASCADE"), nullable=False),
        sa.Column("control_code", sa.String(100), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("summary_description", sa.Text, nullable=True),
        sa.Column("implementation_guidance", sa.Text, nullable=True),
        sa.Column("default_risk_level", sa.String(20), nullable=True),
        sa.Column("review_frequency_days", sa.Integer, nullable=True),
        sa.Column("suggested_evidence_types", sa.JSON, nullable=True),
        sa.Column("suggested_automation_triggers", sa.JSON, nullable=True),
        sa.Column("suggested_task_templates", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("framework_id", "control_code", name="uq_fwcontrol_framework_code"),
    )
    op.create_index("ix_fwcontrol_domain", "framework_controls", ["domain_id"])

    op.create_table(
        "control_mappings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("internal_control_id", sa.Integer,
                  sa.ForeignKey("framework_controls.id", ondelete="CASCADE"), nullable=False),
        sa.Column("framework_slug", sa.String(100), nullable=False),
        sa.Column("external_control_reference", sa.String(200), nullable=False),
        sa.Column("mapping_strength", sa.Enum("primary", "secondary", name="mapping_strength_enum"),
                  server_default="secondary", nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("internal_control_id", "framework_slug", "external_control_reference",
                            name="uq_control_mapping"),
    )

    op.create_table(
        "org_frameworks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("framework_slug", sa.String(100), nullable=False),
        sa.Column("enabled_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("org_id", "framework_slug", name="uq_org_framework"),
    )

    # ── 2. Org-facing projection ──────────────────────────────────
    op.create_table(
        "compliance_frameworks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(50), unique=True, nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "compliance_controls",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("framework_id", sa.Integer,
                  sa.ForeignKey("compliance_frameworks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code", sa.String(100), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("category", sa.String(300), nullable=True),
        sa.Column("risk_level", sa.Enum(*RISK_LEVELS, name="risk_level_enum"),
                  server_default="medium", nullable=False),
        sa.Column("weight", sa.Numeric(6, 2), server_default="1.00", nullable=False),
        sa.Column("required_evidence_count", sa.Integer, server_default="1", nullable=False),
        sa.Column("is_mandatory", sa.Boolean, server_default=sa.text("1"), nullable=False),
        sa.Column("framework_control_id", sa.Integer,
                  sa.ForeignKey("framework_controls.id", ondelete="SET NULL"), nullable=True),
        sa.UniqueConstraint("framework_id", "code", name="uq_compliance_control_code"),
    )

    # ── 3. Evidence & tasks ───────────────────────────────────────
    op.create_table(
        "org_evidence",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False, index=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("status", sa.Enum(*EVIDENCE_STATUSES, name="evidence_status_enum"),
                  server_default="pending", nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "control_evidence",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("control_id", sa.Integer,
                  sa.ForeignKey("compliance_controls.id", ondelete="CASCADE"), nullable=False),
        sa.Column("evidence_id", sa.Integer,
                  sa.ForeignKey("org_evidence.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.Enum(*EVIDENCE_STATUSES, name="evidence_status_enum"), nullable=True),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=True),
    )
    op.create_index("ix_control_evidence_org_control", "control_evidence", ["organization_id", "control_id"])

    op.create_table(
        "org_control_mappings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("control_id", sa.Integer,
                  sa.ForeignKey("compliance_controls.id", ondelete="CASCADE"), nullable=False),
        sa.Column("evidence_id", sa.Integer,
                  sa.ForeignKey("org_evidence.id", ondelete="CASCADE"), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=True),
    )

    op.create_table(
        "org_tasks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False, index=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("status", sa.String(30), server_default="pending", nullable=True),
        sa.Column("priority", sa.String(20), nullable=True),
        sa.Column("due_at", sa.DateTime, nullable=True),
        sa.Column("due_date", sa.Date, nullable=True),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "control_tasks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("control_id", sa.Integer,
                  sa.ForeignKey("compliance_controls.id", ondelete="CASCADE"), nullable=False),
        sa.Column("task_id", sa.Integer, sa.ForeignKey("org_tasks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("control_id", "task_id", name="uq_control_task"),
    )
    op.create_index("ix_control_tasks_org_control", "control_tasks", ["organization_id", "control_id"])

    # ── 4. Evaluations, rollup, gates ─────────────────────────────
    op.create_table(
        "org_control_evaluations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("control_type", sa.String(40), nullable=False),
        sa.Column("control_key", sa.String(200), nullable=False),
        sa.Column("required", sa.Boolean, server_default=sa.text("1"), nullable=False),
        sa.Column("status", sa.Enum(*CONTROL_STATUSES, name="control_status_enum"), nullable=False),
        sa.Column("last_evaluated_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.Column("framework_id", sa.Integer,
                  sa.ForeignKey("compliance_frameworks.id", ondelete="CASCADE"), nullable=True),
        sa.Column("compliance_score", sa.Integer, nullable=True),
        sa.Column("total_controls", sa.Integer, nullable=True),
        sa.Column("satisfied_controls", sa.Integer, nullable=True),
        sa.Column("missing_controls", sa.Integer, nullable=True),
        sa.Column("missing_control_codes", sa.JSON, nullable=True),
        sa.Column("partial_control_codes", sa.JSON, nullable=True),
        sa.Column("evaluated_by", sa.String(200), nullable=True),
        sa.Column("snapshot_hash", sa.String(40), nullable=True),
        sa.Column("evaluated_at", sa.DateTime, nullable=True),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("organization_id", "control_type", "control_key",
                            name="uq_org_control_evaluation"),
    )
    op.create_index("ix_org_eval_type_time", "org_control_evaluations",
                    ["organization_id", "control_type", "last_evaluated_at"])

    op.create_table(
        "org_compliance_status",
        sa.Column("organization_id", sa.String(64), primary_key=True),
        sa.Column("last_framework_code", sa.String(50), nullable=True),
        sa.Column("last_score", sa.Integer, nullable=True),
        sa.Column("last_total_controls", sa.Integer, nullable=True),
        sa.Column("last_missing_controls", sa.Integer, nullable=True),
        sa.Column("last_partial_controls", sa.Integer, nullable=True),
        sa.Column("last_evaluated_at", sa.DateTime, nullable=True),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "org_compliance_blocks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("gate_key", sa.String(60), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("created_by", sa.String(200), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.Column("resolved_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_compliance_block_open", "org_compliance_blocks",
                    ["organization_id", "gate_key", "resolved_at"])

    # ── 5. Activity, audit, entitlements ──────────────────────────
    op.create_table(
        "org_audit_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False, index=True),
        sa.Column("action", sa.String(60), nullable=False),
        sa.Column("target", sa.Text, nullable=True),
        sa.Column("actor_email", sa.String(200), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False, index=True),
        sa.Column("actor_user_id", sa.String(64), nullable=True),
        sa.Column("actor_role", sa.String(30), nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("action_type", sa.String(60), nullable=False),
        sa.Column("after_state", sa.JSON, nullable=True),
        sa.Column("reason", sa.String(200), nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "org_entitlements",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(64), nullable=False),
        sa.Column("feature_key", sa.String(100), nullable=False),
        sa.Column("is_active", sa.Boolean, server_default=sa.text("1"), nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("organization_id", "feature_key", name="uq_org_entitlement"),
    )


def downgrade() -> None:
    for table in (
        "org_entitlements", "audit_events", "org_audit_logs",
        "org_compliance_blocks", "org_compliance_status", "org_control_evaluations",
        "control_tasks", "org_tasks", "org_control_mappings", "control_evidence", "org_evidence",
        "compliance_controls", "compliance_frameworks",
        "org_frameworks", "control_mappings", "framework_controls", "framework_domains", "frameworks",
    ):
        op.drop_table(table)
