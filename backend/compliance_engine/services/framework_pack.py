"""
Framework Pack Loader — parses declarative framework packs (YAML or JSON) and
upserts them into the control catalog.

Pack layout:
  framework: {name, slug, version?, description?, is_active?}
  domains:   [{name, description?, sort_order?, key?}]
  controls:  [{control_code, title, domain?|domain_key?|domain_id?, ...}]
  mappings:  [{internal_control_id?|internal_control_code?, framework_slug,
               external_control_reference, mapping_strength?}]

Only missing framework metadata is fatal; every other problem is collected as a
warning and the offending record is skipped.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Union

import yaml
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_engine.exceptions import FrameworkPackError
from compliance_engine.models.framework import (
    ControlMapping, Framework, FrameworkControl, FrameworkDomain,
)
from compliance_engine.schemas.framework import FrameworkPackResult

log = logging.getLogger(__name__)

PackInput = Union[Mapping[str, Any], Path, str]


# ─────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────

def normalize_pack(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise FrameworkPackError("Framework pack must be an object")
    fw = raw.get("framework")
    if not isinstance(fw, Mapping):
        raise FrameworkPackError("Framework pack is missing the framework metadata")
    if not fw.get("name") or not fw.get("slug"):
        raise FrameworkPackError(
            "Framework pack requires framework.name and framework.slug (framework metadata)"
        )
    return dict(raw)


def parse_pack_content(contents: str, filename: str | None = None) -> dict[str, Any]:
    """Parse pack text. The file extension wins; otherwise {/[ means JSON, else YAML."""
    text = contents.strip()
    ext = Path(filename).suffix.lower() if filename else ""
    try:
        if ext == ".json":
            data = json.loads(text)
        elif ext in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        elif text.startswith("{") or text.startswith("["):
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise FrameworkPackError(f"Failed to parse framework pack: {e}") from e
    return normalize_pack(data)


def _read_pack_file(path: Path) -> dict[str, Any]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FrameworkPackError(f"Cannot read framework pack {path}: {e}") from e
    return parse_pack_content(contents, str(path))


def resolve_pack(pack: PackInput) -> dict[str, Any]:
    if isinstance(pack, Path):
        return _read_pack_file(pack)
    if isinstance(pack, str):
        candidate = pack.strip()
        try:
            is_file = len(candidate) < 4096 and Path(candidate).is_file()
        except (OSError, ValueError):
            is_file = False
        if is_file:
            return _read_pack_file(Path(candidate))
        return parse_pack_content(candidate)
    if isinstance(pack, Mapping) and pack.get("path") and "framework" not in pack:
        return _read_pack_file(Path(pack["path"]))
    return normalize_pack(pack)


def _normalize_key(value: Any) -> str:
    return str(value or "").strip().lower()


def _as_int(value: Any, default: int | None) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_list(value: Any) -> list | None:
    return list(value) if isinstance(value, (list, tuple)) else None


# ─────────────────────────────────────────────
# Upserts
# ─────────────────────────────────────────────

async def _upsert_framework(s: AsyncSession, meta: Mapping[str, Any]) -> Framework:
    fw = (await s.execute(
        select(Framework).where(Framework.slug == meta["slug"])
    )).scalar_one_or_none()
    if fw is None:
        fw = Framework(slug=meta["slug"])
        s.add(fw)
    fw.name = meta["name"]
    fw.version = str(meta["version"]) if meta.get("version") is not None else None
    fw.description = meta.get("description")
    fw.is_active = bool(meta.get("is_active", True))
    await s.flush()
    return fw


async def _upsert_domain(
    s: AsyncSession, framework_id: int, name: str,
    description: str | None = None, sort_order: int = 0,
) -> FrameworkDomain:
    domain = (await s.execute(
        select(FrameworkDomain).where(
            FrameworkDomain.framework_id == framework_id,
            FrameworkDomain.name == name,
        )
    )).scalar_one_or_none()
    if domain is None:
        domain = FrameworkDomain(framework_id=framework_id, name=name)
        s.add(domain)
    domain.description = description
    domain.sort_order = sort_order
    await s.flush()
    return domain


async def _upsert_control(
    s: AsyncSession, framework_id: int, domain_id: int, data: Mapping[str, Any],
) -> FrameworkControl:
    code = str(data["control_code"])
    ctrl = (await s.execute(
        select(FrameworkControl).where(
            FrameworkControl.framework_id == framework_id,
            FrameworkControl.control_code == code,
        )
    )).scalar_one_or_none()
    if ctrl is None:
        ctrl = FrameworkControl(framework_id=framework_id, control_code=code)
        s.add(ctrl)
    ctrl.domain_id = domain_id
    ctrl.title = data["title"]
    ctrl.summary_description = data.get("summary_description")
    ctrl.implementation_guidance = data.get("implementation_guidance")
    ctrl.default_risk_level = data.get("default_risk_level")
    ctrl.review_frequency_days = _as_int(data.get("review_frequency_days"), None)
    ctrl.suggested_evidence_types = _as_list(data.get("suggested_evidence_types"))
    ctrl.suggested_automation_triggers = _as_list(data.get("suggested_automation_triggers"))
    ctrl.suggested_task_templates = _as_list(data.get("suggested_task_templates")) or []
    await s.flush()
    return ctrl


async def _upsert_mapping(
    s: AsyncSession, internal_control_id: int, framework_slug: str,
    reference: str, strength: str,
) -> ControlMapping:
    mapping = (await s.execute(
        select(ControlMapping).where(
            ControlMapping.internal_control_id == internal_control_id,
            ControlMapping.framework_slug == framework_slug,
            ControlMapping.external_control_reference == reference,
        )
    )).scalar_one_or_none()
    if mapping is None:
        mapping = ControlMapping(
            internal_control_id=internal_control_id,
            framework_slug=framework_slug,
            external_control_reference=reference,
        )
        s.add(mapping)
    mapping.mapping_strength = strength
    await s.flush()
    return mapping


# ═══════════════════════════════════════════════
# LOADER
# ═══════════════════════════════════════════════

async def load_framework_pack(
    s: AsyncSession, pack: PackInput, *, dry_run: bool = False,
) -> FrameworkPackResult:
    """Load one pack into the catalog. The caller owns the transaction."""
    warnings: list[str] = []

    try:
        data = resolve_pack(pack)
    except FrameworkPackError as e:
        return FrameworkPackResult(ok=False, error=str(e), warnings=warnings)

    meta = data["framework"]
    domains = data.get("domains") or []
    controls = data.get("controls") or []
    mappings = data.get("mappings") or []

    if dry_run:
        return FrameworkPackResult(
            ok=True,
            framework_id=None,
            framework_slug=meta["slug"],
            domains_upserted=len(domains),
            controls_upserted=len(controls),
            mappings_upserted=len(mappings),
            warnings=warnings,
        )

    # 1. Framework
    try:
        async with s.begin_nested():
            fw = await _upsert_framework(s, meta)
    except SQLAlchemyError as e:
        log.error("Failed to upsert framework %s: %s", meta["slug"], e)
        return FrameworkPackResult(
            ok=False, error="Failed to upsert framework metadata", warnings=warnings,
        )
    if fw.id is None:
        return FrameworkPackResult(
            ok=False, error="Failed to upsert framework metadata", warnings=warnings,
        )

    domain_map: dict[str, int] = {}
    domains_upserted = controls_upserted = mappings_upserted = 0

    # 2. Declared domains
    for d in domains:
        if not isinstance(d, Mapping) or not d.get("name"):
            warnings.append("Skipped domain with missing name")
            continue
        try:
            async with s.begin_nested():
                domain = await _upsert_domain(
                    s, fw.id, str(d["name"]).strip(), d.get("description"),
                    _as_int(d.get("sort_order"), 0),
                )
        except SQLAlchemyError:
            warnings.append(f"Failed to upsert domain: {d['name']}")
            continue
        domains_upserted += 1
        domain_map[_normalize_key(d.get("key") or d["name"])] = domain.id

    async def ensure_domain(name: str, key: str) -> int | None:
        if key in domain_map:
            return domain_map[key]
        try:
            async with s.begin_nested():
                domain = await _upsert_domain(s, fw.id, name)
        except SQLAlchemyError:
            warnings.append(f"Failed to auto-create domain: {name}")
            return None
        nonlocal domains_upserted
        domains_upserted += 1
        domain_map[key] = domain.id
        return domain.id

    # 3. Controls
    control_ids: dict[str, int] = {}
    for c in controls:
        if not isinstance(c, Mapping) or not c.get("control_code") or not c.get("title"):
            warnings.append("Skipped control with missing code or title")
            continue

        domain_id = _as_int(c.get("domain_id"), None)
        if domain_id is None:
            key = _normalize_key(c.get("domain_key") or c.get("domain"))
            if key:
                name = str(c.get("domain") or c.get("domain_key") or "").strip()
                domain_id = domain_map.get(key) or (await ensure_domain(name, key) if name else None)

        if domain_id is None:
            warnings.append(f"Skipped control {c['control_code']}: missing domain mapping")
            continue

        try:
            async with s.begin_nested():
                ctrl = await _upsert_control(s, fw.id, domain_id, c)
        except SQLAlchemyError:
            warnings.append(f"Failed to upsert control: {c['control_code']}")
            continue
        controls_upserted += 1
        control_ids[ctrl.control_code] = ctrl.id

    # 4. Cross-framework mappings
    for m in mappings:
        if not isinstance(m, Mapping) or not m.get("framework_slug") or not m.get("external_control_reference"):
            warnings.append("Skipped mapping with missing framework_slug or external reference")
            continue

        internal_id = _as_int(m.get("internal_control_id"), None)
        if internal_id is None and m.get("internal_control_code"):
            internal_id = control_ids.get(str(m["internal_control_code"]))
        if internal_id is None:
            warnings.append(f"Skipped mapping for {m['framework_slug']}: missing internal control id")
            continue

        strength = "primary" if m.get("mapping_strength") == "primary" else "secondary"
        try:
            async with s.begin_nested():
                await _upsert_mapping(
                    s, internal_id, str(m["framework_slug"]),
                    str(m["external_control_reference"]), strength,
                )
        except SQLAlchemyError:
            warnings.append(f"Failed to upsert mapping for {m['framework_slug']}")
            continue
        mappings_upserted += 1

    if warnings:
        log.warning("Framework pack %s loaded with %d warnings: %s",
                    meta["slug"], len(warnings), warnings)
    else:
        log.info("Framework pack %s loaded: %d domains, %d controls, %d mappings",
                 meta["slug"], domains_upserted, controls_upserted, mappings_upserted)

    return FrameworkPackResult(
        ok=True,
        framework_id=fw.id,
        framework_slug=fw.slug,
        domains_upserted=domains_upserted,
        controls_upserted=controls_upserted,
        mappings_upserted=mappings_upserted,
        warnings=warnings,
    )
