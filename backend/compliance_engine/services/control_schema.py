"""
compliance_controls schema variants.

Older databases store a numeric risk_weight; current ones a risk_level enum.
The variant is probed from the live table and every row is normalised to
risk_level on read, so callers only ever see ControlDefinition values.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import column, insert, inspect, select, table, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import TableClause

from compliance_engine.services.control_status import ControlDefinition, normalize_risk_level

TABLE_NAME = "compliance_controls"
LEGACY = "legacy"
MODERN = "modern"

_READ_COLUMNS = (
    "id", "framework_id", "code", "title", "description", "category",
    "weight", "required_evidence_count", "is_mandatory", "framework_control_id",
)

# Python-side defaults the ORM would normally fill in
_INSERT_DEFAULTS = {"weight": 1.0, "required_evidence_count": 1, "is_mandatory": True}


def risk_level_from_weight(weight: Any) -> str:
    try:
        value = float(weight)
    except (TypeError, ValueError):
        return "medium"
    if value >= 7:
        return "critical"
    if value >= 5:
        return "high"
    if value <= 1:
        return "low"
    return "medium"


def risk_weight_from_level(level: str | None) -> int:
    return {"critical": 8, "high": 5, "low": 1}.get(normalize_risk_level(level), 3)


@dataclass(frozen=True)
class ControlsSchema:
    variant: str
    columns: frozenset[str]

    @property
    def table(self) -> TableClause:
        return table(TABLE_NAME, *(column(name) for name in sorted(self.columns)))

    def risk_values(self, risk_level: str | None) -> dict[str, Any]:
        """Column values encoding risk_level in this variant."""
        if self.variant == LEGACY:
            return {"risk_weight": risk_weight_from_level(risk_level)}
        if "risk_level" in self.columns:
            return {"risk_level": normalize_risk_level(risk_level)}
        return {}

    def writable(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in values.items() if k in self.columns}

    def to_definition(self, row: Any) -> ControlDefinition:
        data = dict(row._mapping)
        if self.variant == LEGACY:
            risk_level = risk_level_from_weight(data.get("risk_weight"))
        else:
            risk_level = normalize_risk_level(data.get("risk_level"))
        weight = data.get("weight")
        required = data.get("required_evidence_count")
        mandatory = data.get("is_mandatory")
        return ControlDefinition(
            id=data["id"],
            framework_id=data["framework_id"],
            code=data.get("code") or str(data["id"]),
            title=data.get("title") or data.get("code") or "",
            category=data.get("category"),
            description=data.get("description"),
            risk_level=risk_level,
            weight=float(weight) if weight is not None else 1.0,
            required_evidence_count=int(required) if required is not None else 1,
            is_mandatory=bool(mandatory) if mandatory is not None else True,
            framework_control_id=data.get("framework_control_id"),
        )


async def detect_controls_schema(s: AsyncSession) -> ControlsSchema:
    """Probe the live compliance_controls columns."""
    names = await s.run_sync(
        lambda sync_s: [c["name"] for c in inspect(sync_s.connection()).get_columns(TABLE_NAME)]
    )
    columns = frozenset(names)
    variant = LEGACY if "risk_level" not in columns and "risk_weight" in columns else MODERN
    return ControlsSchema(variant=variant, columns=columns)


async def load_controls(
    s: AsyncSession, schema: ControlsSchema, framework_ids: Iterable[int],
) -> list[ControlDefinition]:
    ids = list(framework_ids)
    if not ids:
        return []
    t = schema.table
    wanted = [n for n in _READ_COLUMNS if n in schema.columns]
    wanted.append("risk_weight" if schema.variant == LEGACY else "risk_level")
    cols = [t.c[n] for n in wanted if n in schema.columns]
    rows = (await s.execute(
        select(*cols).where(t.c.framework_id.in_(ids)).order_by(t.c.id)
    )).all()
    return [schema.to_definition(r) for r in rows]


async def upsert_control(
    s: AsyncSession, schema: ControlsSchema, framework_id: int, code: str,
    values: dict[str, Any], *, risk_level: str | None,
) -> None:
    """Insert or update one control by (framework_id, code)."""
    t = schema.table
    payload = schema.writable({**values, **schema.risk_values(risk_level)})
    existing_id = (await s.execute(
        select(t.c.id).where(t.c.framework_id == framework_id, t.c.code == code)
    )).scalar_one_or_none()
    if existing_id is not None:
        if payload:
            await s.execute(update(t).where(t.c.id == existing_id).values(**payload))
        return
    row = {**schema.writable(_INSERT_DEFAULTS), **payload, "framework_id": framework_id, "code": code}
    await s.execute(insert(t).values(**row))
