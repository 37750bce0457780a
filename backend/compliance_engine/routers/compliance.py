"""
Organization compliance — /api/v1/orgs/{org_id}/...

Framework enablement and provisioning, framework evaluation, the compliance
snapshot, certification readiness and open compliance gates.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.config import FeatureFlags
from compliance_engine.database import get_session
from compliance_engine.dependencies import (
    get_compliance_engine, get_feature_flags, get_framework_installer,
)
from compliance_engine.exceptions import ComplianceBlockedError, ComplianceDataError, EntitlementError
from compliance_engine.schemas.compliance import (
    ComplianceBlockOut, ComplianceSnapshot, FrameworkEvaluationResult, FrameworkReadiness,
    GateCheckResult,
)
from compliance_engine.schemas.framework import ProvisioningResult
from compliance_engine.services.certification import get_framework_certification_readiness
from compliance_engine.services.compliance_engine import ComplianceEngine
from compliance_engine.services.framework_installer import FrameworkInstaller
from compliance_engine.services.provisioning import (
    enable_framework_for_org, provision_framework_controls,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/orgs", tags=["Organization compliance"])


# ═══════════════════════════════════════════════════
# PROVISIONING
# ═══════════════════════════════════════════════════

@router.post(
    "/{org_id}/frameworks/{slug}/enable",
    response_model=ProvisioningResult,
    summary="Enable a framework for an organization and provision its controls",
)
async def enable_framework(
    org_id: str,
    slug: str,
    force: bool = Query(False),
    s: AsyncSession = Depends(get_session),
    flags: FeatureFlags = Depends(get_feature_flags),
    installer: FrameworkInstaller = Depends(get_framework_installer),
):
    if not flags.enable_framework_engine and not force:
        raise HTTPException(409, "Framework engine is disabled")
    result = await enable_framework_for_org(s, org_id, slug, flags=flags, installer=installer, force=force)
    if result is None:
        await s.rollback()
        raise HTTPException(404, f"Framework '{slug}' not found")
    await s.commit()
    return result


@router.post(
    "/{org_id}/frameworks/{slug}/provision",
    response_model=ProvisioningResult,
    summary="Create remediation tasks for controls without one",
)
async def provision_framework(
    org_id: str,
    slug: str,
    force: bool = Query(False),
    s: AsyncSession = Depends(get_session),
    flags: FeatureFlags = Depends(get_feature_flags),
    installer: FrameworkInstaller = Depends(get_framework_installer),
):
    if not flags.enable_framework_engine and not force:
        raise HTTPException(409, "Framework engine is disabled")
    result = await provision_framework_controls(s, org_id, slug, flags=flags, installer=installer, force=force)
    if result is None:
        await s.rollback()
        raise HTTPException(404, f"Framework '{slug}' not found")
    await s.commit()
    return result


# ═══════════════════════════════════════════════════
# EVALUATION & SNAPSHOT
# ═══════════════════════════════════════════════════

@router.post(
    "/{org_id}/compliance/frameworks/{code}/evaluate",
    response_model=FrameworkEvaluationResult,
    summary="Evaluate every control of a framework and persist the results",
)
async def evaluate_framework(
    org_id: str, code: str, engine: ComplianceEngine = Depends(get_compliance_engine),
):
    try:
        result = await engine.evaluate_framework_controls(org_id, code)
    except EntitlementError as e:
        raise HTTPException(403, str(e))
    if result is None:
        raise HTTPException(404, f"Framework '{code}' not found or has no controls")
    return result


@router.get(
    "/{org_id}/compliance/snapshot",
    response_model=ComplianceSnapshot,
    summary="Organization compliance snapshot",
)
async def compliance_snapshot(
    org_id: str,
    strict: bool = Query(False),
    engine: ComplianceEngine = Depends(get_compliance_engine),
):
    try:
        return await engine.get_org_compliance_snapshot(org_id, strict=strict)
    except ComplianceDataError as e:
        logger.error("Strict snapshot for %s failed: %s", org_id, e)
        raise HTTPException(503, str(e))


@router.get(
    "/{org_id}/compliance/certification-readiness",
    response_model=list[FrameworkReadiness],
    summary="Certification readiness per framework",
)
async def certification_readiness(
    org_id: str, engine: ComplianceEngine = Depends(get_compliance_engine),
):
    return await get_framework_certification_readiness(engine, org_id)


@router.get(
    "/{org_id}/compliance/blocks",
    response_model=list[ComplianceBlockOut],
    summary="Open compliance gates",
)
async def open_blocks(
    org_id: str, engine: ComplianceEngine = Depends(get_compliance_engine),
):
    return await engine.list_open_blocks(org_id)


@router.post(
    "/{org_id}/compliance/gates/{gate_key}/check",
    response_model=GateCheckResult,
    summary="Check that no open compliance block prevents a gated action",
)
async def check_gate(
    org_id: str, gate_key: str, engine: ComplianceEngine = Depends(get_compliance_engine),
):
    try:
        await engine.require_no_compliance_blocks(org_id, gate_key)
    except ValueError as e:
        raise HTTPException(422, str(e))
    except ComplianceBlockedError as e:
        logger.info("Gate %s closed for %s: blocks %s", e.gate_key, org_id, e.block_ids)
        raise HTTPException(423, {"message": str(e), "gate_key": e.gate_key, "block_ids": e.block_ids})
    return GateCheckResult(gate_key=gate_key)
