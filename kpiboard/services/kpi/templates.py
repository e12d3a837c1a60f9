"""
Deliverable templates - the creator-authored, shared definition of a unit
of work inside a KPI.

Templates never carry scores or statuses; those live in the per-user state
(``user_state``). Template ids are 24 lowercase hex characters so evidence
filenames can reference them (``<id>[@YYYY-MM-DD]-<name>``).
"""

from dataclasses import asdict, dataclass
from uuid import uuid4

from kpiboard.core.exceptions import ValidationError
from kpiboard.services.kpi.recurrence import RECURRENCE_PATTERNS
from kpiboard.utils.helpers import parse_datetime

_REQUIRED_TEXT = ("title", "action", "indicator", "performanceTarget")


def new_deliverable_id() -> str:
    return uuid4().hex[:24]


@dataclass
class DeliverableTemplate:
    id: str
    title: str
    action: str
    indicator: str
    performanceTarget: str
    timeline: str | None = None
    priority: str = "Medium"
    isRecurring: bool = False
    recurrencePattern: str | None = None
    weight: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> "DeliverableTemplate":
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            action=data.get("action", ""),
            indicator=data.get("indicator", ""),
            performanceTarget=data.get("performanceTarget", ""),
            timeline=data.get("timeline"),
            priority=data.get("priority") or "Medium",
            isRecurring=bool(data.get("isRecurring")),
            recurrencePattern=data.get("recurrencePattern"),
            weight=float(data.get("weight") or 0.0),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def load_templates(raw: list | None) -> list[DeliverableTemplate]:
    """Deserialize the ``Kpi.deliverables`` JSON column."""
    return [DeliverableTemplate.from_dict(item) for item in (raw or []) if item.get("id")]


def build_template(data: dict, position: int) -> DeliverableTemplate:
    """Validate one creator-supplied deliverable and assign it an id.

    Raises ValidationError naming the offending field, e.g.
    ``deliverables[2].recurrencePattern``.
    """
    if not isinstance(data, dict):
        raise ValidationError(f"deliverables[{position}] must be an object")

    errors = {}
    for field_name in _REQUIRED_TEXT:
        if not str(data.get(field_name) or "").strip():
            errors[f"deliverables[{position}].{field_name}"] = "is required"

    is_recurring = bool(data.get("isRecurring"))
    pattern = data.get("recurrencePattern") or None
    timeline = None
    if is_recurring:
        if pattern not in RECURRENCE_PATTERNS:
            errors[f"deliverables[{position}].recurrencePattern"] = (
                f"must be one of {', '.join(RECURRENCE_PATTERNS)}"
            )
    else:
        pattern = None
        try:
            parsed = parse_datetime(data.get("timeline"))
        except ValueError as exc:
            errors[f"deliverables[{position}].timeline"] = str(exc)
        else:
            if parsed is None:
                errors[f"deliverables[{position}].timeline"] = "is required unless the deliverable is recurring"
            else:
                timeline = parsed.isoformat()

    if errors:
        raise ValidationError("Invalid deliverable", details=errors)

    return DeliverableTemplate(
        id=new_deliverable_id(),
        title=str(data["title"]).strip(),
        action=str(data["action"]).strip(),
        indicator=str(data["indicator"]).strip(),
        performanceTarget=str(data["performanceTarget"]).strip(),
        timeline=timeline,
        priority=(data.get("priority") or "Medium"),
        isRecurring=is_recurring,
        recurrencePattern=pattern,
    )


def build_templates(raw: list | None) -> list[DeliverableTemplate]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("deliverables must be a list")
    return [build_template(item, i) for i, item in enumerate(raw)]
