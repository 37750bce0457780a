"""Pydantic schemas for the framework catalog, pack loading and provisioning."""
from __future__ import annotations

from pydantic import BaseModel, Field


# ═══ Catalog ═══


class FrameworkOut(BaseModel):
    id: int
    name: str
    slug: str
    version: str | None = None
    description: str | None = None
    is_active: bool = True
    model_config = {"from_attributes": True}


class DomainOut(BaseModel):
    id: int
    framework_id: int
    name: str
    description: str | None = None
    sort_order: int = 0
    model_config = {"from_attributes": True}


class CatalogControlOut(BaseModel):
    id: int
    framework_id: int
    domain_id: int
    control_code: str
    title: str
    summary_description: str | None = None
    implementation_guidance: str | None = None
    default_risk_level: str | None = None
    review_frequency_days: int | None = None
    suggested_evidence_types: list[str] | None = None
    suggested_automation_triggers: list[str] | None = None
    suggested_task_templates: list[dict] | None = None
    model_config = {"from_attributes": True}


# ═══ Evidence suggestions ═══


class TaskTemplate(BaseModel):
    title: str
    description: str | None = None
    priority: str | None = None


class EvidenceSuggestions(BaseModel):
    evidence_types: list[str] = Field(default_factory=list)
    task_templates: list[TaskTemplate] = Field(default_factory=list)
    automation_triggers: list[str] = Field(default_factory=list)
    review_cadence_days: int


# ═══ Pack loading & provisioning ═══


class FrameworkPackResult(BaseModel):
    ok: bool
    framework_id: int | None = None
    framework_slug: str | None = None
    domains_upserted: int = 0
    controls_upserted: int = 0
    mappings_upserted: int = 0
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None


class ProvisioningResult(BaseModel):
    organization_id: str
    framework_slug: str
    framework_code: str
    tasks_created: int = 0
    controls_skipped: int = 0
