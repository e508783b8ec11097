"""
Structured ECO payloads.

The proposed-changes list, the impact analysis and the compliance checks are
typed records at the engine boundary.  Each record serializes as a tagged
dict (``{"kind": "field_change", ...}``); the column types in
``column_types.py`` do the JSON round trip so services never touch raw text.

Coercion accepts the shapes older clients and seed data produced:

    [{"field": "Material", "oldValue": "AL6061", "newValue": "AL7075"}]
    {"Unit Cost": {"from": 125, "to": 185}}
    {"changes": [{"field": "cost", "value": 150}]}
    {"fields": {"cost": 150}}

Anything else raises ValidationError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ecoflow.core.exceptions import ValidationError

FIELD_CHANGE_KIND = "field_change"
IMPACT_ANALYSIS_KIND = "impact_analysis"
COMPLIANCE_CHECK_KIND = "compliance_check"

COMPLIANCE_STATUSES = frozenset({"pending", "passed", "failed", "not_applicable"})

_MAX_FIELD_NAME = 100

_BEFORE_KEYS = ("before", "oldValue", "old_value", "from")
_AFTER_KEYS = ("after", "newValue", "new_value", "to", "value")


def _first_present(data: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


# ── Records ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FieldChange:
    """One field-level before/after pair."""
    field: str
    before: Any = None
    after: Any = None

    def to_dict(self) -> dict:
        return {
            "kind": FIELD_CHANGE_KIND,
            "field": self.field,
            "before": self.before,
            "after": self.after,
        }


@dataclass(frozen=True)
class ImpactAnalysis:
    """Requester-supplied impact assessment.

    Keys the engine does not know about are preserved in ``extra``.
    """
    summary: str | None = None
    risk_level: str | None = None
    affected_areas: tuple[str, ...] = ()
    cost_delta: float | None = None
    schedule_delta_days: int | None = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": IMPACT_ANALYSIS_KIND,
            "summary": self.summary,
            "risk_level": self.risk_level,
            "affected_areas": list(self.affected_areas),
            "cost_delta": self.cost_delta,
            "schedule_delta_days": self.schedule_delta_days,
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class ComplianceCheck:
    """Outcome of one regulatory / standards check."""
    standard: str
    status: str = "pending"
    notes: str | None = None

    def to_dict(self) -> dict:
        return {
            "kind": COMPLIANCE_CHECK_KIND,
            "standard": self.standard,
            "status": self.status,
            "notes": self.notes,
        }


# ── Coercion ─────────────────────────────────────────────────────────────────


def _field_change_from_dict(item: dict, position: int) -> FieldChange:
    kind = item.get("kind", FIELD_CHANGE_KIND)
    if kind != FIELD_CHANGE_KIND:
        raise ValidationError(
            f"proposed_changes[{position}] has kind {kind!r}",
            details={"proposed_changes": f"item {position}: expected kind {FIELD_CHANGE_KIND}"},
        )
    name = item.get("field") or item.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(
            f"proposed_changes[{position}] is missing 'field'",
            details={"proposed_changes": f"item {position}: field is required"},
        )
    name = name.strip()
    if len(name) > _MAX_FIELD_NAME:
        raise ValidationError(
            f"proposed_changes[{position}].field is too long",
            details={"proposed_changes": f"item {position}: field must be ≤ {_MAX_FIELD_NAME} characters"},
        )
    return FieldChange(
        field=name,
        before=_first_present(item, _BEFORE_KEYS),
        after=_first_present(item, _AFTER_KEYS),
    )


def coerce_proposed_changes(value: Any) -> tuple[FieldChange, ...]:
    """Normalise any accepted proposed-changes shape to a tuple of FieldChange."""
    if value is None:
        return ()

    if isinstance(value, (list, tuple)):
        out = []
        for i, item in enumerate(value):
            if isinstance(item, FieldChange):
                out.append(item)
            elif isinstance(item, dict):
                out.append(_field_change_from_dict(item, i))
            else:
                raise ValidationError(
                    f"proposed_changes[{i}] must be an object",
                    details={"proposed_changes": f"item {i}: expected object, got {type(item).__name__}"},
                )
        return tuple(out)

    if isinstance(value, dict):
        if isinstance(value.get("changes"), list):
            return coerce_proposed_changes(value["changes"])
        if isinstance(value.get("fields"), dict):
            return coerce_proposed_changes(value["fields"])
        out = []
        for name, entry in value.items():
            if isinstance(entry, dict):
                out.append(FieldChange(
                    field=str(name),
                    before=_first_present(entry, _BEFORE_KEYS),
                    after=_first_present(entry, _AFTER_KEYS),
                ))
            else:
                out.append(FieldChange(field=str(name), after=entry))
        return tuple(out)

    raise ValidationError(
        "proposed_changes must be a list or an object",
        details={"proposed_changes": f"unsupported type {type(value).__name__}"},
    )


_IMPACT_ALIASES = {
    "summary": ("summary",),
    "risk_level": ("risk_level", "riskLevel"),
    "affected_areas": ("affected_areas", "affectedAreas", "impact_areas", "impactAreas"),
    "cost_delta": ("cost_delta", "costDelta"),
    "schedule_delta_days": ("schedule_delta_days", "scheduleDeltaDays"),
}


def coerce_impact_analysis(value: Any) -> ImpactAnalysis | None:
    """Normalise an impact-analysis payload; ``None`` / ``{}`` mean "none given"."""
    if value is None or isinstance(value, ImpactAnalysis):
        return value
    if not isinstance(value, dict):
        raise ValidationError(
            "impact_analysis must be an object",
            details={"impact_analysis": f"unsupported type {type(value).__name__}"},
        )
    if not value:
        return None

    kind = value.get("kind", IMPACT_ANALYSIS_KIND)
    if kind != IMPACT_ANALYSIS_KIND:
        raise ValidationError(
            f"impact_analysis has kind {kind!r}",
            details={"impact_analysis": f"expected kind {IMPACT_ANALYSIS_KIND}"},
        )

    consumed = {"kind", "extra"}
    parsed: dict[str, Any] = {}
    for attr, keys in _IMPACT_ALIASES.items():
        for key in keys:
            if key in value:
                parsed[attr] = value[key]
                consumed.add(key)
                break

    areas = parsed.get("affected_areas") or ()
    if isinstance(areas, str):
        areas = (areas,)
    if not isinstance(areas, (list, tuple)):
        raise ValidationError(
            "impact_analysis.affected_areas must be a list",
            details={"impact_analysis": "affected_areas must be a list of strings"},
        )

    try:
        cost_delta = float(parsed["cost_delta"]) if parsed.get("cost_delta") is not None else None
        schedule = (
            int(parsed["schedule_delta_days"])
            if parsed.get("schedule_delta_days") is not None else None
        )
    except (TypeError, ValueError):
        raise ValidationError(
            "impact_analysis has a non-numeric delta",
            details={"impact_analysis": "cost_delta and schedule_delta_days must be numeric"},
        )

    extra = dict(value.get("extra") or {})
    extra.update({k: v for k, v in value.items() if k not in consumed})

    return ImpactAnalysis(
        summary=parsed.get("summary"),
        risk_level=parsed.get("risk_level"),
        affected_areas=tuple(str(a) for a in areas),
        cost_delta=cost_delta,
        schedule_delta_days=schedule,
        extra=extra,
    )


def _compliance_status(raw: Any, standard: str) -> str:
    if isinstance(raw, bool):
        return "passed" if raw else "failed"
    if raw is None:
        return "pending"
    status = str(raw).strip().lower()
    if status not in COMPLIANCE_STATUSES:
        raise ValidationError(
            f"compliance check {standard!r} has invalid status {raw!r}",
            details={"compliance_checks": f"status must be one of: {', '.join(sorted(COMPLIANCE_STATUSES))}"},
        )
    return status


def coerce_compliance_checks(value: Any) -> tuple[ComplianceCheck, ...]:
    """Normalise compliance checks given as a list of objects or a {standard: outcome} map."""
    if value is None:
        return ()

    if isinstance(value, (list, tuple)):
        out = []
        for i, item in enumerate(value):
            if isinstance(item, ComplianceCheck):
                out.append(item)
                continue
            if not isinstance(item, dict):
                raise ValidationError(
                    f"compliance_checks[{i}] must be an object",
                    details={"compliance_checks": f"item {i}: expected object"},
                )
            standard = item.get("standard") or item.get("name")
            if not standard:
                raise ValidationError(
                    f"compliance_checks[{i}] is missing 'standard'",
                    details={"compliance_checks": f"item {i}: standard is required"},
                )
            raw_status = item["status"] if "status" in item else item.get("passed")
            out.append(ComplianceCheck(
                standard=str(standard),
                status=_compliance_status(raw_status, str(standard)),
                notes=item.get("notes"),
            ))
        return tuple(out)

    if isinstance(value, dict):
        out = []
        for standard, outcome in value.items():
            if isinstance(outcome, dict):
                raw_status = outcome["status"] if "status" in outcome else outcome.get("passed")
                notes = outcome.get("notes")
            else:
                raw_status, notes = outcome, None
            out.append(ComplianceCheck(
                standard=str(standard),
                status=_compliance_status(raw_status, str(standard)),
                notes=notes,
            ))
        return tuple(out)

    raise ValidationError(
        "compliance_checks must be a list or an object",
        details={"compliance_checks": f"unsupported type {type(value).__name__}"},
    )
