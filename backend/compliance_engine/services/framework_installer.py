"""
Framework installer — loads the bundled framework packs into the catalog and
derives the organization-facing compliance_frameworks / compliance_controls
projection from it.
"""
from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_engine.models.compliance import ComplianceFramework
from compliance_engine.models.framework import Framework, FrameworkControl, FrameworkDomain
from compliance_engine.services.control_schema import detect_controls_schema, upsert_control
from compliance_engine.services.framework_pack import load_framework_pack

log = logging.getLogger(__name__)

PACK_SUFFIXES = (".yaml", ".yml", ".json")

KNOWN_FRAMEWORK_CODES = {
    "iso27001": "ISO27001",
    "iso-27001": "ISO27001",
    "soc2": "SOC2",
    "soc-2": "SOC2",
    "hipaa": "HIPAA",
    "ndis": "NDIS",
    "ndis-practice-standards": "NDIS",
}


def framework_code_for_slug(slug: str) -> str:
    key = (slug or "").strip().lower()
    if key in KNOWN_FRAMEWORK_CODES:
        return KNOWN_FRAMEWORK_CODES[key]
    return re.sub(r"[^A-Z0-9]", "", key.upper())


class FrameworkInstaller:
    """Installs bundled packs once per instance; retries on the next call after a failure."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], packs_dir: str | Path):
        self.session_factory = session_factory
        self.packs_dir = Path(packs_dir)
        self._installed = False
        self._lock = asyncio.Lock()

    @property
    def installed(self) -> bool:
        return self._installed

    def pack_files(self) -> list[Path]:
        if not self.packs_dir.is_dir():
            log.warning("Framework packs directory %s does not exist", self.packs_dir)
            return []
        return sorted(p for p in self.packs_dir.iterdir() if p.suffix.lower() in PACK_SUFFIXES)

    async def ensure_installed(self) -> bool:
        if self._installed:
            return True
        async with self._lock:
            if self._installed:
                return True
            ok = True
            try:
                async with self.session_factory() as s:
                    for path in self.pack_files():
                        result = await load_framework_pack(s, path)
                        if not result.ok:
                            log.error("Bundled pack %s failed to load: %s", path.name, result.error)
                            ok = False
                    await s.commit()
            except SQLAlchemyError:
                log.exception("Installing bundled framework packs failed")
                return False
            self._installed = ok
            return ok

    async def sync_compliance_framework(self, s: AsyncSession, slug: str) -> ComplianceFramework | None:
        """Upsert the compliance framework and one compliance control per catalog control."""
        fw = (await s.execute(
            select(Framework).where(Framework.slug == slug)
        )).scalar_one_or_none()
        if fw is None:
            log.warning("Cannot sync unknown framework slug %s", slug)
            return None

        code = framework_code_for_slug(slug)
        cf = (await s.execute(
            select(ComplianceFramework).where(ComplianceFramework.code == code)
        )).scalar_one_or_none()
        if cf is None:
            cf = ComplianceFramework(code=code)
            s.add(cf)
        cf.name = fw.name
        cf.description = fw.description
        await s.flush()

        rows = (await s.execute(
            select(FrameworkControl, FrameworkDomain.name)
            .join(FrameworkDomain, FrameworkControl.domain_id == FrameworkDomain.id)
            .where(FrameworkControl.framework_id == fw.id)
            .order_by(FrameworkDomain.sort_order, FrameworkControl.control_code)
        )).all()

        schema = await detect_controls_schema(s)
        for ctrl, domain_name in rows:
            await upsert_control(
                s, schema, cf.id, ctrl.control_code,
                {
                    "title": ctrl.title,
                    "description": ctrl.summary_description,
                    "category": domain_name,
                    "framework_control_id": ctrl.id,
                },
                risk_level=ctrl.default_risk_level,
            )
        await s.flush()
        log.info("Synced %s (%d controls, %s schema)", code, len(rows), schema.variant)
        return cf
