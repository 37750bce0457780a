"""
Framework catalog models — the declarative control library loaded from framework packs.

Tables: frameworks, framework_domains, framework_controls, control_mappings,
        org_frameworks
"""
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, utcnow

MAPPING_STRENGTHS = ("primary", "secondary")


class Framework(Base):
    """A compliance standard (ISO 27001, SOC 2, ...) as published in a pack."""
    __tablename__ = "frameworks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    version: Mapped[str | None] = mapped_column(String(50))
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False,
    )

    # relationships
    domains: Mapped[list["FrameworkDomain"]] = relationship(
        back_populates="framework", cascade="all, delete-orphan",
    )
    controls: Mapped[list["FrameworkControl"]] = relationship(
        back_populates="framework", cascade="all, delete-orphan",
    )


class FrameworkDomain(Base):
    __tablename__ = "framework_domains"
    __table_args__ = (
        UniqueConstraint("framework_id", "name", name="uq_fwdomain_framework_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    framework_id: Mapped[int] = mapped_column(
        ForeignKey("frameworks.id", ondelete="CASCADE"), nullable=False,
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # relationships
    framework: Mapped["Framework"] = relationship(back_populates="domains")
    controls: Mapped[list["FrameworkControl"]] = relationship(back_populates="domain")


class FrameworkControl(Base):
    """Catalog control. control_code is unique within its framework."""
    __tablename__ = "framework_controls"
    __table_args__ = (
        UniqueConstraint("framework_id", "control_code", name="uq_fwcontrol_framework_code"),
        Index("ix_fwcontrol_domain", "domain_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    framework_id: Mapped[int] = mapped_column(
        ForeignKey("frameworks.id", ondelete="CASCADE"), nullable=False,
    )
    domain_id: Mapped[int] = mapped_column(
        ForeignKey("framework_domains.id", ondelete="CASCADE"), nullable=False,
    )
    control_code: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    summary_description: Mapped[str | None] = mapped_column(Text)
    implementation_guidance: Mapped[str | None] = mapped_column(Text)
    default_risk_level: Mapped[str | None] = mapped_column(String(20))
    review_frequency_days: Mapped[int | None] = mapped_column(Integer)

    suggested_evidence_types: Mapped[list | None] = mapped_column(JSON)
    suggested_automation_triggers: Mapped[list | None] = mapped_column(JSON)
    suggested_task_templates: Mapped[list | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False,
    )

    # relationships
    framework: Mapped["Framework"] = relationship(back_populates="controls")
    domain: Mapped["FrameworkDomain"] = relationship(back_populates="controls")


class ControlMapping(Base):
    """Cross-framework link from a catalog control to an external control reference."""
    __tablename__ = "control_mappings"
    __table_args__ = (
        UniqueConstraint(
            "internal_control_id", "framework_slug", "external_control_reference",
            name="uq_control_mapping",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    internal_control_id: Mapped[int] = mapped_column(
        ForeignKey("framework_controls.id", ondelete="CASCADE"), nullable=False,
    )
    framework_slug: Mapped[str] = mapped_column(String(100), nullable=False)
    external_control_reference: Mapped[str] = mapped_column(String(200), nullable=False)
    mapping_strength: Mapped[str] = mapped_column(
        Enum(*MAPPING_STRENGTHS, name="mapping_strength_enum"),
        default="secondary", nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class OrgFramework(Base):
    """An organization has switched a framework on."""
    __tablename__ = "org_frameworks"
    __table_args__ = (
        UniqueConstraint("org_id", "framework_slug", name="uq_org_framework"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    framework_slug: Mapped[str] = mapped_column(String(100), nullable=False)
    enabled_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
