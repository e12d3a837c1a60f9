"""
Per-user deliverable state for one KPI.

Each viewer (assignee or creator) owns an independent list of
``UserDeliverableState`` entries, one per deliverable template. Scores,
statuses, evidence and occurrences live only here, never on the template.

Storage shape (``Kpi.user_deliverables``)::

    {
      "<user_id>": [
        {"deliverableId": "...", "status": "Pending",
         "assigneeScore": {...} | null, "creatorScore": {...} | null,
         "evidence": ["/uploads/evidence/..."], "hasSavedAssignee": false,
         "occurrences": [{"periodLabel": "2025-W33", "dueDate": "...", ...}]},
        ...
      ]
    }

``UserStateStore.load`` normalizes whatever is stored (older rows may hold
an association list instead of a mapping, integer keys, duplicated
occurrences) and keeps every user's list aligned with the current template
id set. ``dump`` writes the canonical shape back.
"""

from dataclasses import dataclass, field

from sqlalchemy.orm.attributes import flag_modified

from kpiboard.models.kpi import STATUS_PENDING
from kpiboard.services.kpi.templates import DeliverableTemplate, load_templates


def user_key(user_id) -> str:
    return str(user_id)


def union_evidence(existing: list[str], incoming) -> list[str]:
    """Set union that keeps first-seen order for stable payloads."""
    return list(dict.fromkeys([*existing, *(incoming or [])]))


# ── Value objects ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ScoreSnapshot:
    """A submitted score with provenance. Replaced wholesale, never edited."""

    value: float
    entered_by: int | None
    timestamp: str
    notes: str = ""
    supporting_documents: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict | None) -> "ScoreSnapshot | None":
        if not isinstance(data, dict) or data.get("value") is None:
            return None
        return cls(
            value=data["value"],
            entered_by=data.get("enteredBy"),
            timestamp=data.get("timestamp") or "",
            notes=data.get("notes") or "",
            supporting_documents=tuple(data.get("supportingDocuments") or ()),
        )

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "notes": self.notes,
            "enteredBy": self.entered_by,
            "timestamp": self.timestamp,
            "supportingDocuments": list(self.supporting_documents),
        }


def _snapshot_dict(snapshot: ScoreSnapshot | None) -> dict | None:
    return snapshot.to_dict() if snapshot else None


@dataclass
class UserDeliverableOccurrence:
    period_label: str
    due_date: str | None = None
    status: str = STATUS_PENDING
    assignee_score: ScoreSnapshot | None = None
    creator_score: ScoreSnapshot | None = None
    evidence: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "UserDeliverableOccurrence":
        return cls(
            period_label=str(data["periodLabel"]),
            due_date=data.get("dueDate"),
            status=data.get("status") or STATUS_PENDING,
            assignee_score=ScoreSnapshot.from_dict(data.get("assigneeScore")),
            creator_score=ScoreSnapshot.from_dict(data.get("creatorScore")),
            evidence=list(data.get("evidence") or []),
        )

    def to_dict(self) -> dict:
        return {
            "periodLabel": self.period_label,
            "dueDate": self.due_date,
            "status": self.status,
            "assigneeScore": _snapshot_dict(self.assignee_score),
            "creatorScore": _snapshot_dict(self.creator_score),
            "evidence": list(self.evidence),
        }


@dataclass
class UserDeliverableState:
    deliverable_id: str
    status: str = STATUS_PENDING
    assignee_score: ScoreSnapshot | None = None
    creator_score: ScoreSnapshot | None = None
    evidence: list[str] = field(default_factory=list)
    occurrences: list[UserDeliverableOccurrence] = field(default_factory=list)
    has_saved_assignee: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "UserDeliverableState":
        occurrences: dict[str, UserDeliverableOccurrence] = {}
        for raw in data.get("occurrences") or []:
            if not isinstance(raw, dict) or not raw.get("periodLabel"):
                continue
            occurrences.setdefault(str(raw["periodLabel"]), UserDeliverableOccurrence.from_dict(raw))
        return cls(
            deliverable_id=str(data["deliverableId"]),
            status=data.get("status") or STATUS_PENDING,
            assignee_score=ScoreSnapshot.from_dict(data.get("assigneeScore")),
            creator_score=ScoreSnapshot.from_dict(data.get("creatorScore")),
            evidence=list(data.get("evidence") or []),
            occurrences=list(occurrences.values()),
            has_saved_assignee=bool(data.get("hasSavedAssignee")),
        )

    def to_dict(self) -> dict:
        return {
            "deliverableId": self.deliverable_id,
            "status": self.status,
            "assigneeScore": _snapshot_dict(self.assignee_score),
            "creatorScore": _snapshot_dict(self.creator_score),
            "evidence": list(self.evidence),
            "hasSavedAssignee": self.has_saved_assignee,
            "occurrences": [o.to_dict() for o in self.occurrences],
        }

    def find_occurrence(self, label: str) -> UserDeliverableOccurrence | None:
        for occurrence in self.occurrences:
            if occurrence.period_label == label:
                return occurrence
        return None

    def find_or_create_occurrence(self, label: str, due_date: str | None = None) -> UserDeliverableOccurrence:
        occurrence = self.find_occurrence(label)
        if occurrence is None:
            occurrence = UserDeliverableOccurrence(period_label=label, due_date=due_date)
            self.occurrences.append(occurrence)
        elif occurrence.due_date is None and due_date:
            occurrence.due_date = due_date
        return occurrence


# ── Store ─────────────────────────────────────────────────────────────────────


def _as_mapping(raw) -> dict:
    """Coerce a stored per-user structure into ``{str(user_id): value}``.

    Accepts a mapping, an association list of ``[key, value]`` pairs, or a
    list of ``{"userId": ..., "deliverables"|"status": ...}`` records.
    """
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {user_key(k): v for k, v in raw.items()}
    mapping = {}
    for item in raw:
        if isinstance(item, (list, tuple)) and len(item) == 2:
            mapping[user_key(item[0])] = item[1]
        elif isinstance(item, dict) and "userId" in item:
            value = item.get("deliverables", item.get("status"))
            mapping[user_key(item["userId"])] = value
    return mapping


class UserStateStore:
    """In-memory view over a KPI's per-user JSON, aligned with its templates."""

    def __init__(self, templates: list[DeliverableTemplate], statuses: dict, states: dict):
        self.templates = templates
        self.statuses: dict[str, str] = statuses
        self.states: dict[str, list[UserDeliverableState]] = states

    @classmethod
    def load(cls, kpi) -> "UserStateStore":
        templates = load_templates(kpi.deliverables)
        statuses = {k: v for k, v in _as_mapping(kpi.user_statuses).items() if v}
        states = {}
        for key, entries in _as_mapping(kpi.user_deliverables).items():
            states[key] = [
                UserDeliverableState.from_dict(entry)
                for entry in (entries or [])
                if isinstance(entry, dict) and entry.get("deliverableId")
            ]
        store = cls(templates, statuses, states)
        store.normalize()
        return store

    # ── Template alignment ───────────────────────────────────────────────

    @property
    def template_ids(self) -> list[str]:
        return [t.id for t in self.templates]

    def template(self, deliverable_id: str) -> DeliverableTemplate | None:
        for template in self.templates:
            if template.id == deliverable_id:
                return template
        return None

    def template_index(self, deliverable_id: str) -> int:
        for index, template in enumerate(self.templates):
            if template.id == deliverable_id:
                return index
        return -1

    def _aligned(self, entries: list[UserDeliverableState]) -> list[UserDeliverableState]:
        by_id: dict[str, UserDeliverableState] = {}
        for entry in entries:
            by_id.setdefault(entry.deliverable_id, entry)
        return [by_id.get(tid) or UserDeliverableState(deliverable_id=tid) for tid in self.template_ids]

    def normalize(self) -> None:
        """Drop state for removed templates, seed state for new ones, order by template."""
        self.states = {key: self._aligned(entries) for key, entries in self.states.items()}

    # ── Lookup ───────────────────────────────────────────────────────────

    def has_user(self, user_id) -> bool:
        return user_key(user_id) in self.states

    def user_ids(self) -> list[str]:
        return list(self.states)

    def get_or_seed(self, user_id) -> list[UserDeliverableState]:
        key = user_key(user_id)
        if key not in self.states:
            self.states[key] = self._aligned([])
        return self.states[key]

    def peek(self, user_id) -> list[UserDeliverableState]:
        """Read-only view: stored entries, or fresh defaults that are not kept."""
        return self.states.get(user_key(user_id)) or self._aligned([])

    def find(self, user_id, deliverable_id: str) -> UserDeliverableState | None:
        for entry in self.states.get(user_key(user_id), []):
            if entry.deliverable_id == deliverable_id:
                return entry
        return None

    def find_or_create(self, user_id, deliverable_id: str) -> UserDeliverableState:
        entry = self.find(user_id, deliverable_id)
        if entry is None:
            entries = self.get_or_seed(user_id)
            entry = next((e for e in entries if e.deliverable_id == deliverable_id), None)
            if entry is None:
                entry = UserDeliverableState(deliverable_id=deliverable_id)
                entries.append(entry)
        return entry

    # ── Statuses ─────────────────────────────────────────────────────────

    def status_for(self, user_id, fallback: str) -> str:
        return self.statuses.get(user_key(user_id)) or fallback

    def set_status(self, user_id, status: str) -> None:
        self.statuses[user_key(user_id)] = status

    def clear_statuses(self) -> None:
        self.statuses = {}

    # ── Persistence ──────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {key: [e.to_dict() for e in entries] for key, entries in self.states.items()}

    def dump(self, kpi) -> None:
        """Write the canonical shape back onto the KPI row."""
        kpi.user_deliverables = self.to_dict()
        kpi.user_statuses = dict(self.statuses)
        flag_modified(kpi, "user_deliverables")
        flag_modified(kpi, "user_statuses")
