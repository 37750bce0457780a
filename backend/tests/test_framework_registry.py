"""Framework registry and installer — bundled packs, feature flag, compliance projection."""
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.config import FeatureFlags
from compliance_engine.models.compliance import ComplianceControl, ComplianceFramework
from compliance_engine.models.framework import Framework
from compliance_engine.services.framework_installer import FrameworkInstaller, framework_code_for_slug
from compliance_engine.services.framework_registry import FrameworkRegistry


class _ExplodingInstaller:
    calls = 0

    async def ensure_installed(self):
        self.calls += 1
        raise RuntimeError("installer unavailable")


# ── Feature flag ──

@pytest.mark.asyncio
async def test_disabled_engine_returns_empty_without_installing(session_factory):
    flags = FeatureFlags(enable_framework_engine=False)
    installer = _ExplodingInstaller()
    registry = FrameworkRegistry(session_factory, flags, installer)
    assert await registry.list_frameworks() == []
    assert await registry.list_domains("iso27001") == []
    assert await registry.list_controls("iso27001") == []
    assert await registry.get_control("iso27001", "A.5.1") is None
    assert installer.calls == 0


@pytest.mark.asyncio
async def test_installer_failure_degrades_to_empty(db: AsyncSession, session_factory):
    registry = FrameworkRegistry(session_factory, FeatureFlags(), _ExplodingInstaller())
    assert await registry.list_frameworks() == []


# ── Installer ──

@pytest.mark.asyncio
async def test_installer_loads_bundled_packs_once(db: AsyncSession, installer: FrameworkInstaller):
    assert await installer.ensure_installed()
    assert installer.installed
    assert await installer.ensure_installed()

    slugs = (await db.execute(select(Framework.slug).order_by(Framework.slug))).scalars().all()
    assert slugs == ["hipaa", "iso27001", "ndis", "soc2"]


@pytest.mark.asyncio
async def test_registry_lists_catalog(db: AsyncSession, session_factory, installer, flags):
    registry = FrameworkRegistry(session_factory, flags, installer)

    names = [fw.name for fw in await registry.list_frameworks()]
    assert names == sorted(names)
    assert len(names) == 4

    domains = await registry.list_domains("iso27001")
    assert [d.name for d in domains][0] == "Organizational controls"
    controls = await registry.list_controls("iso27001")
    assert len(controls) == 7
    assert (await registry.get_control("iso27001", "A.5.15")).default_risk_level == "critical"
    assert await registry.get_control("iso27001", "Z.9") is None


@pytest.mark.asyncio
async def test_sync_compliance_framework(db: AsyncSession, installer: FrameworkInstaller):
    await installer.ensure_installed()
    cf = await installer.sync_compliance_framework(db, "iso27001")
    await db.commit()

    assert cf.code == "ISO27001"
    rows = (await db.execute(
        select(ComplianceControl).where(ComplianceControl.framework_id == cf.id)
    )).scalars().all()
    assert len(rows) == 7
    by_code = {r.code: r for r in rows}
    assert by_code["A.5.15"].risk_level == "critical"
    assert by_code["A.5.1"].category == "Organizational controls"
    assert all(r.framework_control_id is not None for r in rows)

    # Second sync updates in place
    await installer.sync_compliance_framework(db, "iso27001")
    await db.commit()
    assert (await db.execute(select(func.count()).select_from(ComplianceControl))).scalar_one() == 7
    assert (await db.execute(select(func.count()).select_from(ComplianceFramework))).scalar_one() == 1


@pytest.mark.asyncio
async def test_sync_unknown_slug(db: AsyncSession, installer: FrameworkInstaller):
    assert await installer.sync_compliance_framework(db, "nope") is None


def test_framework_codes():
    assert framework_code_for_slug("iso-27001") == "ISO27001"
    assert framework_code_for_slug("soc2") == "SOC2"
    assert framework_code_for_slug("pci-dss") == "PCIDSS"
