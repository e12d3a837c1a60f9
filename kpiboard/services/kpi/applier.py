"""
Patch application against the per-user state store.

All validation (deliverable exists, occurrence scope fits the template,
caller may write creator scores, score values in range) happens before the
first mutation, so a rejected request leaves the store untouched.

Attribution:
    assigneeScore → entered by the viewed user
    creatorScore  → entered by the caller, who must be the KPI creator
Both snapshots are stored in the viewed user's slice.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, tzinfo
from numbers import Real

from kpiboard.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from kpiboard.services.kpi.patches import SCOPE_OCCURRENCE, Patch
from kpiboard.services.kpi.recurrence import occurrence_for_label
from kpiboard.services.kpi.user_state import ScoreSnapshot, UserStateStore, union_evidence
from kpiboard.utils.helpers import parse_datetime

SCORE_MIN = 0
SCORE_MAX = 100


@dataclass
class AppliedPatch:
    patch: Patch
    deliverable_index: int
    occurrence_label: str | None


@dataclass
class ApplyResult:
    deliverables_updated: bool = False
    applied: list[AppliedPatch] = field(default_factory=list)

    @property
    def creator_score_targets(self) -> list[AppliedPatch]:
        return [a for a in self.applied if a.patch.touches_creator_score]


def coerce_score(raw, where: str):
    if isinstance(raw, bool):
        raise ValidationError("Score must be a number", details={where: "not a number"})
    if isinstance(raw, Real):
        value = raw
    elif isinstance(raw, str) and raw.strip():
        try:
            value = float(raw)
        except ValueError:
            raise ValidationError("Score must be a number", details={where: "not a number"}) from None
        if value.is_integer():
            value = int(value)
    else:
        raise ValidationError("Score value is required", details={where: "missing value"})
    if not SCORE_MIN <= value <= SCORE_MAX:
        raise ValidationError(
            f"Score must be between {SCORE_MIN} and {SCORE_MAX}",
            details={where: "out of range"},
        )
    return value


def normalize_score(raw, entered_by: int, now: datetime, extra_documents=(), where: str = "score") -> ScoreSnapshot:
    """Turn a number or a partial score object into a full ScoreSnapshot.

    ``{"score": n}`` and ``{"evidence": [...]}`` are accepted as aliases of
    ``value`` and ``supportingDocuments``. ``enteredBy`` is always the
    attributed user, never taken from the request.
    """
    if isinstance(raw, dict):
        value = coerce_score(raw.get("value", raw.get("score")), where)
        notes = raw.get("notes") or ""
        documents = raw.get("supportingDocuments", raw.get("evidence")) or []
        if isinstance(documents, str):
            documents = [documents]
        try:
            stamp = parse_datetime(raw.get("timestamp"))
        except ValueError as exc:
            raise ValidationError(str(exc), details={f"{where}.timestamp": "invalid"}) from exc
    else:
        value = coerce_score(raw, where)
        notes = ""
        documents = []
        stamp = None

    return ScoreSnapshot(
        value=value,
        entered_by=entered_by,
        timestamp=(stamp or now).isoformat(),
        notes=str(notes),
        supporting_documents=tuple(union_evidence([str(d) for d in documents], extra_documents)),
    )


def occurrence_due_date(template, label: str | None, tz: tzinfo = timezone.utc) -> str:
    """Due date of ``label`` under the template's pattern; non-period labels are rejected."""
    occurrence = occurrence_for_label(template.recurrencePattern, label or "", tz)
    if occurrence is None:
        raise ValidationError(
            f"'{label}' is not a {template.recurrencePattern} period label",
            details={"occurrenceLabel": label},
        )
    return occurrence.due_date.isoformat()


@dataclass
class _Prepared:
    patch: Patch
    index: int
    due_date: str | None
    assignee: ScoreSnapshot | None
    creator: ScoreSnapshot | None


def _prepare(store, patches, *, caller_id, is_creator, viewed_user_id, now, tz) -> list[_Prepared]:
    prepared = []
    for patch in patches:
        index = store.template_index(patch.deliverable_id)
        if index < 0:
            raise NotFoundError("Deliverable", patch.deliverable_id)
        template = store.templates[index]

        due_date = None
        if patch.scope == SCOPE_OCCURRENCE:
            if not template.isRecurring:
                raise ValidationError(
                    "Occurrences exist only on recurring deliverables",
                    details={"occurrenceLabel": f"deliverable {patch.deliverable_id} is not recurring"},
                )
            due_date = occurrence_due_date(template, patch.occurrence_label, tz)

        if patch.touches_creator_side and not is_creator:
            raise PermissionDeniedError("Only the KPI creator can submit creator scores")

        assignee = creator = None
        if patch.assignee_score is not None:
            assignee = normalize_score(patch.assignee_score, viewed_user_id, now,
                                       patch.assignee_documents, where="assigneeScore")
        if patch.creator_score is not None:
            creator = normalize_score(patch.creator_score, caller_id, now,
                                      patch.creator_documents, where="creatorScore")
        prepared.append(_Prepared(patch, index, due_date, assignee, creator))
    return prepared


def _with_documents(snapshot: ScoreSnapshot, documents: list[str]) -> ScoreSnapshot:
    return replace(
        snapshot,
        supporting_documents=tuple(union_evidence(list(snapshot.supporting_documents), documents)),
    )


def _apply_one(target, item: _Prepared) -> None:
    patch = item.patch
    if patch.status is not None:
        target.status = patch.status

    if item.assignee is not None:
        target.assignee_score = item.assignee
    elif patch.assignee_documents:
        if target.assignee_score is not None:
            target.assignee_score = _with_documents(target.assignee_score, patch.assignee_documents)
        else:
            target.evidence = union_evidence(target.evidence, patch.assignee_documents)

    if item.creator is not None:
        target.creator_score = item.creator
    elif patch.creator_documents:
        if target.creator_score is not None:
            target.creator_score = _with_documents(target.creator_score, patch.creator_documents)
        else:
            target.evidence = union_evidence(target.evidence, patch.creator_documents)

    if patch.evidence:
        target.evidence = union_evidence(target.evidence, patch.evidence)


def apply_patches(
    store: UserStateStore,
    patches: list[Patch],
    *,
    caller_id: int,
    is_creator: bool,
    viewed_user_id: int,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
) -> ApplyResult:
    """Apply ``patches`` to ``viewed_user_id``'s slice of ``store``."""
    now = now or datetime.now(timezone.utc)
    prepared = _prepare(store, patches, caller_id=caller_id, is_creator=is_creator,
                        viewed_user_id=viewed_user_id, now=now, tz=tz)

    result = ApplyResult()
    for item in prepared:
        state = store.find_or_create(viewed_user_id, item.patch.deliverable_id)
        before = state.to_dict()

        if item.patch.scope == SCOPE_OCCURRENCE:
            target = state.find_or_create_occurrence(item.patch.occurrence_label, item.due_date)
        else:
            target = state
        _apply_one(target, item)

        if item.patch.has_saved_assignee is not None:
            state.has_saved_assignee = item.patch.has_saved_assignee

        if state.to_dict() != before:
            result.deliverables_updated = True
        result.applied.append(AppliedPatch(item.patch, item.index, item.patch.occurrence_label))

    return result
