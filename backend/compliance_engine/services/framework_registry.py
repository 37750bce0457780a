"""
Framework Registry — read access to the catalog.

With the framework engine switched off every read returns [] without touching
the installer or the database. Read failures are logged and reported as [].
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from compliance_engine.config import FeatureFlags
from compliance_engine.models.framework import Framework, FrameworkControl, FrameworkDomain
from compliance_engine.services.framework_installer import FrameworkInstaller

log = logging.getLogger(__name__)


class FrameworkRegistry:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        flags: FeatureFlags,
        installer: FrameworkInstaller,
    ):
        self.session_factory = session_factory
        self.flags = flags
        self.installer = installer

    async def list_frameworks(self) -> list[Framework]:
        if not self.flags.enable_framework_engine:
            return []
        try:
            await self.installer.ensure_installed()
            async with self.session_factory() as s:
                q = select(Framework).order_by(Framework.name)
                return list((await s.execute(q)).scalars().all())
        except Exception:
            log.exception("Listing frameworks failed")
            return []

    async def list_domains(self, slug: str) -> list[FrameworkDomain]:
        if not self.flags.enable_framework_engine:
            return []
        try:
            await self.installer.ensure_installed()
            async with self.session_factory() as s:
                q = (
                    select(FrameworkDomain)
                    .join(Framework, FrameworkDomain.framework_id == Framework.id)
                    .where(Framework.slug == slug)
                    .order_by(FrameworkDomain.sort_order, FrameworkDomain.name)
                )
                return list((await s.execute(q)).scalars().all())
        except Exception:
            log.exception("Listing domains for %s failed", slug)
            return []

    async def list_controls(self, slug: str) -> list[FrameworkControl]:
        if not self.flags.enable_framework_engine:
            return []
        try:
            await self.installer.ensure_installed()
            async with self.session_factory() as s:
                q = (
                    select(FrameworkControl)
                    .join(Framework, FrameworkControl.framework_id == Framework.id)
                    .where(Framework.slug == slug)
                    .order_by(FrameworkControl.control_code)
                )
                return list((await s.execute(q)).scalars().all())
        except Exception:
            log.exception("Listing controls for %s failed", slug)
            return []

    async def get_control(self, slug: str, control_code: str) -> FrameworkControl | None:
        for ctrl in await self.list_controls(slug):
            if ctrl.control_code == control_code:
                return ctrl
        return None
