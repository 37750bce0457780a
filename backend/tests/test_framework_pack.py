"""Framework pack loader — parsing, upserts, warnings, dry runs."""
import json

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.config import settings
from compliance_engine.exceptions import FrameworkPackError
from compliance_engine.models.framework import (
    ControlMapping, Framework, FrameworkControl, FrameworkDomain,
)
from compliance_engine.services.framework_pack import (
    load_framework_pack, parse_pack_content, resolve_pack,
)

PACK_YAML = """
framework:
  name: Test Standard
  slug: test-std
  version: 1
domains:
  - key: gov
    name: Governance
    sort_order: 1
controls:
  - control_code: G.1
    title: Governance policy
    domain_key: gov
    default_risk_level: high
    suggested_evidence_types: [Policy]
  - control_code: O.1
    title: Operations runbook
    domain: Operations
mappings:
  - internal_control_code: G.1
    framework_slug: iso27001
    external_control_reference: A.5.1
    mapping_strength: primary
"""


async def _count(db: AsyncSession, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


# ── Parsing ──

def test_parse_yaml_and_json():
    assert parse_pack_content(PACK_YAML)["framework"]["slug"] == "test-std"
    as_json = json.dumps({"framework": {"name": "J", "slug": "j"}})
    assert parse_pack_content(as_json)["framework"]["name"] == "J"


def test_missing_slug_is_a_metadata_error():
    with pytest.raises(FrameworkPackError, match="framework metadata"):
        parse_pack_content("framework:\n  name: No slug\n")


def test_missing_framework_block_is_a_metadata_error():
    with pytest.raises(FrameworkPackError, match="framework metadata"):
        parse_pack_content("controls: []\n")


def test_unparsable_content():
    with pytest.raises(FrameworkPackError):
        parse_pack_content("{not json", "pack.json")


def test_resolve_pack_reads_bundled_file():
    pack = resolve_pack(f"{settings.FRAMEWORK_PACKS_DIR}/iso27001.yaml")
    assert pack["framework"]["slug"] == "iso27001"
    assert resolve_pack({"path": f"{settings.FRAMEWORK_PACKS_DIR}/soc2.yaml"})["framework"]["slug"] == "soc2"


# ── Loading ──

@pytest.mark.asyncio
async def test_load_pack_upserts_everything(db: AsyncSession):
    result = await load_framework_pack(db, PACK_YAML)
    await db.commit()

    assert result.ok
    assert result.framework_slug == "test-std"
    # Governance declared, Operations auto-created from the control
    assert result.domains_upserted == 2
    assert result.controls_upserted == 2
    assert result.mappings_upserted == 1
    assert result.warnings == []

    fw = (await db.execute(select(Framework).where(Framework.slug == "test-std"))).scalar_one()
    assert fw.version == "1"
    ctrl = (await db.execute(
        select(FrameworkControl).where(FrameworkControl.control_code == "G.1")
    )).scalar_one()
    assert ctrl.suggested_evidence_types == ["Policy"]
    assert ctrl.suggested_task_templates == []
    mapping = (await db.execute(select(ControlMapping))).scalar_one()
    assert mapping.mapping_strength == "primary"


@pytest.mark.asyncio
async def test_reloading_a_pack_is_idempotent(db: AsyncSession):
    await load_framework_pack(db, PACK_YAML)
    await db.commit()
    await load_framework_pack(db, PACK_YAML.replace("Governance policy", "Governance policy v2"))
    await db.commit()

    assert await _count(db, Framework) == 1
    assert await _count(db, FrameworkDomain) == 2
    assert await _count(db, FrameworkControl) == 2
    assert await _count(db, ControlMapping) == 1
    title = (await db.execute(
        select(FrameworkControl.title).where(FrameworkControl.control_code == "G.1")
    )).scalar_one()
    assert title == "Governance policy v2"


@pytest.mark.asyncio
async def test_empty_pack_succeeds_with_zero_counts(db: AsyncSession):
    result = await load_framework_pack(db, {"framework": {"name": "Empty", "slug": "empty"}})
    assert result.ok
    assert result.framework_id is not None
    assert (result.domains_upserted, result.controls_upserted, result.mappings_upserted) == (0, 0, 0)


@pytest.mark.asyncio
async def test_bad_records_become_warnings(db: AsyncSession):
    pack = {
        "framework": {"name": "Warn", "slug": "warn"},
        "domains": [{"description": "no name"}],
        "controls": [
            {"control_code": "W.1"},
            {"control_code": "W.2", "title": "No domain"},
            {"control_code": "W.3", "title": "Fine", "domain": "Main"},
        ],
        "mappings": [
            {"framework_slug": "soc2"},
            {"framework_slug": "soc2", "external_control_reference": "CC1.1", "internal_control_code": "nope"},
        ],
    }
    result = await load_framework_pack(db, pack)
    assert result.ok
    assert result.controls_upserted == 1
    assert result.warnings == [
        "Skipped domain with missing name",
        "Skipped control with missing code or title",
        "Skipped control W.2: missing domain mapping",
        "Skipped mapping with missing framework_slug or external reference",
        "Skipped mapping for soc2: missing internal control id",
    ]


@pytest.mark.asyncio
async def test_missing_metadata_fails_without_writing(db: AsyncSession):
    result = await load_framework_pack(db, {"framework": {"name": "No slug"}})
    assert not result.ok
    assert "framework metadata" in result.error
    assert await _count(db, Framework) == 0


@pytest.mark.asyncio
async def test_dry_run_reports_declared_counts_without_writing(db: AsyncSession):
    result = await load_framework_pack(db, PACK_YAML, dry_run=True)
    assert result.ok
    assert result.framework_id is None
    assert (result.domains_upserted, result.controls_upserted, result.mappings_upserted) == (1, 2, 1)
    assert await _count(db, Framework) == 0
