"""
ECO Version Engine

Decides, for one requested change against the current latest row, whether
to mutate that row in place, write a new version, or do nothing.  Pure:
reads attributes off ``current``, never touches the session.

Rules:
  - Any supplied content field that differs from the current value → new
    version.  Unspecified fields are copied, status becomes the supplied
    status or ``draft``, and the requester becomes the acting user.
  - No differing content, status target in VERSIONED_STATUSES → new version
    with content copied verbatim; only workflow fields change.
  - No differing content, other status target → in-place mutation.
  - No differing content and no status change → no-op.
  - Risk enrichment is ordinary field data.  It never triggers a version on
    its own, and prior values carry forward when none are supplied.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from ecoflow.core.actor import Actor
from ecoflow.core.exceptions import ValidationError
from ecoflow.models.change_order import (
    CHANGE_TYPES,
    CONTENT_FIELDS,
    ENRICHMENT_FIELDS,
    PRIORITIES,
    WORKFLOW_FIELDS,
)
from ecoflow.models.eco_payloads import (
    coerce_compliance_checks,
    coerce_impact_analysis,
    coerce_proposed_changes,
)
from ecoflow.services.status_machine import entry_side_effects, versioning_required

MUTATE_IN_PLACE = "mutate_in_place"
CREATE_NEW_VERSION = "create_new_version"
NO_OP = "no_op"

TITLE_MAX = 200
DESCRIPTION_MAX = 5000


@dataclass
class ChangeIntent:
    """What the caller wants to happen to the latest version.

    ``content`` maps content field names to new values; a ``None`` value
    means "not supplied".  ``enrichment`` carries risk fields computed by the
    orchestrator.
    """
    actor: Actor
    content: dict = field(default_factory=dict)
    status: str | None = None
    enrichment: dict = field(default_factory=dict)
    at: datetime | None = None


@dataclass
class VersionDecision:
    kind: str
    values: dict = field(default_factory=dict)
    diff: dict = field(default_factory=dict)

    @property
    def creates_version(self) -> bool:
        return self.kind == CREATE_NEW_VERSION


# ── Content normalisation ────────────────────────────────────────────────────


def _parse_date(value, field_name):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip()).date()
        except ValueError:
            pass
    raise ValidationError(
        f"{field_name} must be an ISO date",
        details={field_name: "expected YYYY-MM-DD"},
    )


def normalize_content(content: dict, *, creating: bool = False) -> dict:
    """
    Validate and coerce supplied content fields.

    Unknown keys are rejected, ``None`` values are dropped (not supplied).
    With ``creating=True`` the fields a new chain cannot do without are
    required.
    """
    unknown = set(content) - set(CONTENT_FIELDS)
    if unknown:
        raise ValidationError(
            f"Unknown content field(s): {', '.join(sorted(unknown))}",
            details={k: "unknown field" for k in sorted(unknown)},
        )

    out = {k: v for k, v in content.items() if v is not None}

    if "title" in out:
        title = str(out["title"]).strip()
        if not title:
            raise ValidationError("title is required", details={"title": "required"})
        if len(title) > TITLE_MAX:
            raise ValidationError(
                f"title must be ≤ {TITLE_MAX} characters",
                details={"title": f"max {TITLE_MAX} characters"},
            )
        out["title"] = title

    if "description" in out and len(str(out["description"])) > DESCRIPTION_MAX:
        raise ValidationError(
            f"description must be ≤ {DESCRIPTION_MAX} characters",
            details={"description": f"max {DESCRIPTION_MAX} characters"},
        )

    if "change_type" in out and out["change_type"] not in CHANGE_TYPES:
        raise ValidationError(
            f"Invalid change_type: {out['change_type']}",
            details={"change_type": f"must be one of: {', '.join(CHANGE_TYPES)}"},
        )
    if "priority" in out and out["priority"] not in PRIORITIES:
        raise ValidationError(
            f"Invalid priority: {out['priority']}",
            details={"priority": f"must be one of: {', '.join(PRIORITIES)}"},
        )

    if "proposed_changes" in out:
        out["proposed_changes"] = coerce_proposed_changes(out["proposed_changes"])
    if "impact_analysis" in out:
        out["impact_analysis"] = coerce_impact_analysis(out["impact_analysis"])
    if "compliance_checks" in out:
        out["compliance_checks"] = coerce_compliance_checks(out["compliance_checks"])
    if "effective_date" in out:
        out["effective_date"] = _parse_date(out["effective_date"], "effective_date")

    if creating:
        missing = [f for f in ("title", "product_id") if f not in out]
        if missing:
            raise ValidationError(
                f"Missing required field(s): {', '.join(missing)}",
                details={f: "required" for f in missing},
            )
    return out


# ── Diffing ──────────────────────────────────────────────────────────────────


def _comparable(name, value):
    # Empty payload containers and NULL compare equal.
    if name in ("proposed_changes", "compliance_checks"):
        return tuple(value or ())
    return value


def jsonable(value):
    """Render a column value for an audit diff."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (tuple, list)):
        return [jsonable(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def content_diff(current, content: dict) -> dict:
    """Field → {old, new} for every supplied content value that differs."""
    diff = {}
    for name, new in content.items():
        if new is None:
            continue
        old = getattr(current, name)
        if _comparable(name, old) != _comparable(name, new):
            diff[name] = {"old": jsonable(old), "new": jsonable(new)}
    return diff


# ── Decision ─────────────────────────────────────────────────────────────────


def spawn_version(current, overrides: dict) -> dict:
    """Column values for the version that follows *current*."""
    values = {name: getattr(current, name) for name in CONTENT_FIELDS}
    values.update({name: getattr(current, name) for name in ENRICHMENT_FIELDS})
    values.update({name: getattr(current, name) for name in WORKFLOW_FIELDS})
    values.update(overrides)
    values.update({
        "chain_root_id": current.chain_root_id,
        "parent_id": current.id,
        "version": current.version + 1,
        "is_latest": True,
    })
    return values


def _enrichment(intent: ChangeIntent) -> dict:
    return {
        k: v for k, v in intent.enrichment.items()
        if k in ENRICHMENT_FIELDS and v is not None
    }


def decide(current, intent: ChangeIntent) -> VersionDecision:
    """
    Choose how *intent* lands on *current*.

    The caller has already validated the status transition; this only picks
    the write shape and assembles the values.
    """
    now = intent.at or datetime.now(timezone.utc)
    content = normalize_content(intent.content)
    diff = content_diff(current, content)
    enrichment = _enrichment(intent)

    if diff:
        target = intent.status or "draft"
        overrides = {name: content[name] for name in diff}
        overrides.update(enrichment)
        overrides.update({
            "status": target,
            "requested_by_id": intent.actor.id,
            "requested_by_name": intent.actor.display_name,
        })
        if target != current.status:
            overrides.update(entry_side_effects(current, target, intent.actor, now))
            diff["status"] = {"old": current.status, "new": target}
        return VersionDecision(CREATE_NEW_VERSION, spawn_version(current, overrides), diff)

    if intent.status is None or intent.status == current.status:
        return VersionDecision(NO_OP)

    target = intent.status
    updates = {"status": target}
    updates.update(entry_side_effects(current, target, intent.actor, now))
    updates.update(enrichment)
    diff = {"status": {"old": current.status, "new": target}}
    for name in ENRICHMENT_FIELDS:
        if name in enrichment and enrichment[name] != getattr(current, name):
            diff[name] = {"old": jsonable(getattr(current, name)), "new": jsonable(enrichment[name])}

    if versioning_required(target):
        return VersionDecision(CREATE_NEW_VERSION, spawn_version(current, updates), diff)
    return VersionDecision(MUTATE_IN_PLACE, updates, diff)
