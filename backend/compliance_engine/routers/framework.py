"""
Framework catalog — /api/v1/frameworks

Read access through the registry (empty lists while the framework engine is
switched off), evidence suggestions per control and pack import.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.config import FeatureFlags
from compliance_engine.database import async_session, get_session
from compliance_engine.dependencies import get_feature_flags, get_framework_installer
from compliance_engine.exceptions import FrameworkPackError
from compliance_engine.schemas.framework import (
    CatalogControlOut, DomainOut, EvidenceSuggestions, FrameworkOut, FrameworkPackResult,
)
from compliance_engine.services.evidence_suggestions import get_evidence_suggestions
from compliance_engine.services.framework_installer import FrameworkInstaller
from compliance_engine.services.framework_pack import load_framework_pack, parse_pack_content
from compliance_engine.services.framework_registry import FrameworkRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/frameworks", tags=["Framework catalog"])


def get_registry(
    flags: FeatureFlags = Depends(get_feature_flags),
    installer: FrameworkInstaller = Depends(get_framework_installer),
) -> FrameworkRegistry:
    return FrameworkRegistry(async_session, flags, installer)


@router.get("", response_model=list[FrameworkOut], summary="Catalog frameworks")
async def list_frameworks(registry: FrameworkRegistry = Depends(get_registry)):
    return await registry.list_frameworks()


@router.get("/{slug}/domains", response_model=list[DomainOut], summary="Domains of a framework")
async def list_domains(slug: str, registry: FrameworkRegistry = Depends(get_registry)):
    return await registry.list_domains(slug)


@router.get("/{slug}/controls", response_model=list[CatalogControlOut], summary="Controls of a framework")
async def list_controls(slug: str, registry: FrameworkRegistry = Depends(get_registry)):
    return await registry.list_controls(slug)


@router.get(
    "/{slug}/controls/{control_code}/suggestions",
    response_model=EvidenceSuggestions,
    summary="Evidence, task and automation suggestions for a control",
)
async def control_suggestions(
    slug: str, control_code: str, registry: FrameworkRegistry = Depends(get_registry),
):
    ctrl = await registry.get_control(slug, control_code)
    if ctrl is None:
        raise HTTPException(404, "Control not found")
    return get_evidence_suggestions(ctrl)


@router.post("/import", response_model=FrameworkPackResult, summary="Import a framework pack (YAML or JSON)")
async def import_pack(
    request: Request,
    dry_run: bool = Query(False),
    s: AsyncSession = Depends(get_session),
):
    """The request body is the pack itself; it is never interpreted as a file path."""
    raw = (await request.body()).decode("utf-8", errors="replace")
    if not raw.strip():
        raise HTTPException(422, "Empty framework pack")
    try:
        pack = parse_pack_content(raw)
    except FrameworkPackError as e:
        raise HTTPException(422, str(e))

    result = await load_framework_pack(s, pack, dry_run=dry_run)
    if not result.ok:
        await s.rollback()
        raise HTTPException(422, result.error or "Framework pack could not be loaded")
    if not dry_run:
        await s.commit()
        logger.info("Imported framework pack %s", result.framework_slug)
    return result
