"""
Patch parsing - one canonical ``Patch`` type for every accepted write shape.

Three request shapes are accepted, alone or combined in one request:

1. Targeted::

       {"deliverableId": "...", "occurrenceLabel": "2025-W33"?,
        "updates": {"status"?, "assigneeScore"?, "creatorScore"?, "evidence"?,
                    "occurrences": [{"periodLabel", ...}]?}}

2. Batch::

       {"deliverables": [{"deliverableId", "scope"?, "occurrenceLabel"?,
                          "status"?, "assigneeScore"?, "creatorScore"?,
                          "evidence"?, "occurrences"?, "hasSavedAssignee"?}]}

3. Files whose name encodes the target::

       <24-hex deliverableId>[@|_YYYY-MM-DD]-<original name>
       <index>[@|_YYYY-MM-DD]-<original name>   (index into "deliverableIds")

Patches are keyed by ``deliverableId::scope[::label]``; when a key repeats,
later scalar fields win and evidence lists are unioned. ``scoreType``
("assigneeScore" | "creatorScore") pins which score both submitted scores
and bare file uploads belong to; without it, files attach to a score only
when the same patch carries one, otherwise they become generic evidence.
"""

import re
from dataclasses import dataclass, field

from kpiboard.core.exceptions import ValidationError
from kpiboard.models.kpi import DELIVERABLE_STATUSES
from kpiboard.services.kpi.user_state import union_evidence
from kpiboard.utils.helpers import parse_json_field

SCOPE_DELIVERABLE = "deliverable"
SCOPE_OCCURRENCE = "occurrence"

SCORE_TYPES = ("assigneeScore", "creatorScore")

FILE_WITH_ID_RE = re.compile(r"^([a-fA-F0-9]{24})(?:[@_](\d{4}-\d{2}-\d{2}))?-")
FILE_WITH_INDEX_RE = re.compile(r"^(\d+)(?:[@_](\d{4}-\d{2}-\d{2}))?-")


@dataclass(frozen=True)
class UploadedEvidence:
    """A request file after storage: the client's name and the stored URL."""

    original_name: str
    url: str


@dataclass
class Patch:
    deliverable_id: str
    scope: str = SCOPE_DELIVERABLE
    occurrence_label: str | None = None
    status: str | None = None
    assignee_score: object = None
    creator_score: object = None
    assignee_documents: list[str] = field(default_factory=list)
    creator_documents: list[str] = field(default_factory=list)
    evidence: list[str] = field(default_factory=list)
    has_saved_assignee: bool | None = None

    @property
    def key(self) -> str:
        if self.scope == SCOPE_OCCURRENCE:
            return f"{self.deliverable_id}::{self.scope}::{self.occurrence_label}"
        return f"{self.deliverable_id}::{self.scope}"

    @property
    def touches_creator_score(self) -> bool:
        return self.creator_score is not None

    @property
    def touches_creator_side(self) -> bool:
        return self.creator_score is not None or bool(self.creator_documents)

    def merge(self, other: "Patch") -> None:
        """Fold ``other`` (same key) into this patch."""
        for name in ("status", "assignee_score", "creator_score", "has_saved_assignee"):
            value = getattr(other, name)
            if value is not None:
                setattr(self, name, value)
        self.assignee_documents = union_evidence(self.assignee_documents, other.assignee_documents)
        self.creator_documents = union_evidence(self.creator_documents, other.creator_documents)
        self.evidence = union_evidence(self.evidence, other.evidence)


@dataclass
class ParsedRequest:
    patches: list[Patch]
    viewed_user_id: int
    score_type: str | None = None


# ── Small coercions ───────────────────────────────────────────────────────────


def _as_list(value) -> list:
    try:
        value = parse_json_field(value, default=[])
    except ValueError:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value:
        return [value]
    return []


def _as_bool(value) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_user_id(value, field_name: str) -> int:
    if isinstance(value, dict):
        value = value.get("_id", value.get("id"))
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a user id", details={field_name: "invalid"}) from None


def _status(value, where: str) -> str | None:
    if value is None or value == "":
        return None
    if value not in DELIVERABLE_STATUSES:
        raise ValidationError(
            f"Invalid status '{value}'",
            details={where: f"must be one of {', '.join(DELIVERABLE_STATUSES)}"},
        )
    return value


def _score_documents(raw_score) -> list[str]:
    if isinstance(raw_score, dict):
        return [str(d) for d in _as_list(raw_score.get("supportingDocuments"))]
    return []


def resolve_viewed_user(body: dict, caller_id: int) -> int:
    """evaluatedUserId, then assigneeId (id or {"_id"}), then the caller."""
    if body.get("evaluatedUserId") not in (None, ""):
        return _as_user_id(body["evaluatedUserId"], "evaluatedUserId")
    if body.get("assigneeId") not in (None, ""):
        return _as_user_id(body["assigneeId"], "assigneeId")
    return caller_id


def match_file_target(filename: str, deliverable_ids: list[str]) -> tuple[str, str | None] | None:
    """Return ``(deliverable_id, date_label)`` encoded in an upload filename."""
    name = filename or ""
    m = FILE_WITH_ID_RE.match(name)
    if m:
        return m.group(1).lower(), m.group(2)
    m = FILE_WITH_INDEX_RE.match(name)
    if m:
        index = int(m.group(1))
        if index < len(deliverable_ids) and deliverable_ids[index]:
            return str(deliverable_ids[index]), m.group(2)
    return None


# ── Parser ────────────────────────────────────────────────────────────────────


class _PatchCollector:
    def __init__(self, score_type: str | None, canonicalize=None):
        self.score_type = score_type
        self.canonicalize = canonicalize
        self._by_key: dict[str, Patch] = {}

    def _label(self, deliverable_id: str, label: str | None) -> str | None:
        if label and self.canonicalize is not None:
            return self.canonicalize(deliverable_id, label)
        return label

    def put(self, patch: Patch) -> Patch:
        existing = self._by_key.get(patch.key)
        if existing is None:
            self._by_key[patch.key] = patch
            return patch
        existing.merge(patch)
        return existing

    def build(self, deliverable_id, label, *, status, assignee_score, creator_score,
              loose_evidence, has_saved_assignee=None) -> Patch:
        label = self._label(str(deliverable_id), label)
        scope = SCOPE_OCCURRENCE if label else SCOPE_DELIVERABLE
        patch = Patch(
            deliverable_id=str(deliverable_id),
            scope=scope,
            occurrence_label=label or None,
            status=status,
            has_saved_assignee=has_saved_assignee,
        )
        take_assignee = self.score_type == "assigneeScore" or (self.score_type is None and assignee_score is not None)
        take_creator = self.score_type == "creatorScore" or (self.score_type is None and creator_score is not None)
        if take_assignee and assignee_score is not None:
            patch.assignee_score = assignee_score
            patch.assignee_documents = _score_documents(assignee_score)
        if take_creator and creator_score is not None:
            patch.creator_score = creator_score
            patch.creator_documents = _score_documents(creator_score)
        patch.evidence = union_evidence([], [str(e) for e in loose_evidence])
        return self.put(patch)

    def attach_file(self, deliverable_id: str, label: str | None, url: str) -> None:
        label = self._label(deliverable_id, label)
        patch = self.put(Patch(
            deliverable_id=deliverable_id,
            scope=SCOPE_OCCURRENCE if label else SCOPE_DELIVERABLE,
            occurrence_label=label,
        ))
        chosen = self.score_type
        if chosen is None:
            if patch.creator_score is not None:
                chosen = "creatorScore"
            elif patch.assignee_score is not None:
                chosen = "assigneeScore"
        if chosen == "creatorScore":
            patch.creator_documents = union_evidence(patch.creator_documents, [url])
        elif chosen == "assigneeScore":
            patch.assignee_documents = union_evidence(patch.assignee_documents, [url])
        else:
            patch.evidence = union_evidence(patch.evidence, [url])

    @property
    def patches(self) -> list[Patch]:
        return list(self._by_key.values())


def _parse_targeted(body: dict, collector: _PatchCollector) -> None:
    try:
        updates = parse_json_field(body.get("updates"), default={})
    except ValueError as exc:
        raise ValidationError(str(exc), details={"updates": "malformed JSON"}) from exc
    if not isinstance(updates, dict):
        raise ValidationError("updates must be an object", details={"updates": "invalid"})

    occurrences = updates.get("occurrences")
    nested = occurrences[0] if isinstance(occurrences, list) and occurrences and isinstance(occurrences[0], dict) else {}
    label = str(body.get("occurrenceLabel") or nested.get("periodLabel") or "")

    loose = union_evidence(
        _as_list(updates.get("evidence") or updates.get("supportingDocuments")),
        _as_list(nested.get("evidence") or nested.get("supportingDocuments")),
    )
    status_value = updates.get("status")
    if status_value in (None, ""):
        status_value = nested.get("status")

    collector.build(
        body["deliverableId"],
        label,
        status=_status(status_value, "updates.status"),
        assignee_score=updates.get("assigneeScore", nested.get("assigneeScore")),
        creator_score=updates.get("creatorScore", nested.get("creatorScore")),
        loose_evidence=loose,
        has_saved_assignee=_as_bool(updates.get("hasSavedAssignee", nested.get("hasSavedAssignee"))),
    )


def _parse_batch(items: list, collector: _PatchCollector) -> None:
    for position, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("deliverableId"):
            continue
        where = f"deliverables[{position}]"
        occurrences = item.get("occurrences")
        nested = occurrences[0] if isinstance(occurrences, list) and occurrences and isinstance(occurrences[0], dict) else {}
        wants_occurrence = item.get("scope") == SCOPE_OCCURRENCE or item.get("occurrenceLabel") or nested

        if wants_occurrence:
            label = str(item.get("occurrenceLabel") or nested.get("periodLabel") or "")
            if not label:
                raise ValidationError(
                    "Occurrence patch without a period label",
                    details={f"{where}.occurrenceLabel": "is required for occurrence scope"},
                )
            assignee = item.get("assigneeScore", nested.get("assigneeScore"))
            creator = item.get("creatorScore", nested.get("creatorScore"))
            status_value = nested.get("status") or item.get("status")
            loose = union_evidence(_as_list(item.get("evidence")), _as_list(nested.get("evidence")))
            saved = item.get("hasSavedAssignee", nested.get("hasSavedAssignee"))
        else:
            label = ""
            assignee = item.get("assigneeScore")
            creator = item.get("creatorScore")
            status_value = item.get("status")
            loose = _as_list(item.get("evidence"))
            saved = item.get("hasSavedAssignee")

        collector.build(
            item["deliverableId"],
            label,
            status=_status(status_value, f"{where}.status"),
            assignee_score=assignee,
            creator_score=creator,
            loose_evidence=loose,
            has_saved_assignee=_as_bool(saved),
        )


def parse_patches(
    body: dict | None,
    caller_id: int,
    uploads: list[UploadedEvidence] = (),
    canonicalize=None,
) -> ParsedRequest:
    """Normalize a write request into de-duplicated patches for one viewed user.

    ``canonicalize(deliverable_id, label)`` maps occurrence labels onto the
    deliverable's period labels before patches are keyed.
    """
    body = body or {}

    score_type = body.get("scoreType") if body.get("scoreType") in SCORE_TYPES else None
    collector = _PatchCollector(score_type, canonicalize)

    if body.get("deliverableId") and body.get("updates") not in (None, ""):
        _parse_targeted(body, collector)

    try:
        batch = parse_json_field(body.get("deliverables"), default=[])
    except ValueError as exc:
        raise ValidationError(str(exc), details={"deliverables": "malformed JSON"}) from exc
    if isinstance(batch, list):
        _parse_batch(batch, collector)

    deliverable_ids = [str(d) for d in _as_list(body.get("deliverableIds"))]
    for upload in uploads:
        target = match_file_target(upload.original_name, deliverable_ids)
        if target is None:
            continue
        deliverable_id, date_label = target
        collector.attach_file(deliverable_id, date_label, upload.url)

    return ParsedRequest(
        patches=collector.patches,
        viewed_user_id=resolve_viewed_user(body, caller_id),
        score_type=score_type,
    )
