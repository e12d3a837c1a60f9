"""
Discrepancy engine - keeps one Discrepancy row per
(kpi, deliverable index, assignee, occurrence label) in step with the
scores stored in the assignee's per-user state.

Flag rule (c = creator score, a = assignee score):

    c < floor                          "Creator score (c) is below 60."
    a present and (a - c) / a ≥ gap    "Creator score (c) is >= 30% lower than assignee (a)."

Without an assignee score nothing is compared and no record is touched.

Transitions applied by ``reconcile``:

    none      + flag      → open      (flagged)
    open      + flag      → open      (updated, only when a score value changed)
    resolved  + flag      → open      (re-flagged)
    open      + no flag   → resolved  (auto-resolved)
    otherwise             → no-op
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo

from sqlalchemy import select

from kpiboard.core.exceptions import NotFoundError
from kpiboard.models import db
from kpiboard.models.discrepancy import DELIVERABLE_LEVEL, Discrepancy, as_utc
from kpiboard.models.kpi import STATUS_APPROVED, STATUS_COMPLETED
from kpiboard.services.kpi.recurrence import occurrence_for_label
from kpiboard.services.kpi.user_state import ScoreSnapshot, UserStateStore

logger = logging.getLogger(__name__)

DEFAULT_SCORE_FLOOR = 60
DEFAULT_GAP_PERCENT = 30

AUTO_RESOLUTION_NOTES = "Automatically resolved: conditions for discrepancy no longer met."

OUTCOME_FLAGGED = "flagged"
OUTCOME_REFLAGGED = "re-flagged"
OUTCOME_UPDATED = "updated"
OUTCOME_AUTO_RESOLVED = "auto-resolved"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_SKIPPED = "skipped"


def _fmt(number) -> str:
    number = float(number)
    return str(int(number)) if number.is_integer() else f"{number:g}"


@dataclass(frozen=True)
class FlagDecision:
    should_flag: bool
    reasons: tuple[str, ...] = ()

    @property
    def reason(self) -> str:
        return " AND ".join(self.reasons)


def evaluate(assignee_value, creator_value, floor=DEFAULT_SCORE_FLOOR,
             gap_percent=DEFAULT_GAP_PERCENT) -> FlagDecision | None:
    """Apply the flag rule; ``None`` when there is nothing to compare."""
    if assignee_value is None or creator_value is None:
        return None

    reasons = []
    if creator_value < floor:
        reasons.append(f"Creator score ({_fmt(creator_value)}) is below {_fmt(floor)}.")
    if assignee_value > 0 and (assignee_value - creator_value) / assignee_value * 100 >= gap_percent:
        reasons.append(
            f"Creator score ({_fmt(creator_value)}) is >= {_fmt(gap_percent)}% "
            f"lower than assignee ({_fmt(assignee_value)})."
        )
    return FlagDecision(bool(reasons), tuple(reasons))


def _snapshot_dict(snapshot: ScoreSnapshot | None) -> dict | None:
    return snapshot.to_dict() if snapshot else None


def _value(snapshot: dict | None):
    return (snapshot or {}).get("value")


def find_discrepancy(kpi_id: int, deliverable_index: int, assignee_id: int, label: str | None) -> Discrepancy | None:
    return db.session.execute(
        select(Discrepancy).where(
            Discrepancy.kpi_id == kpi_id,
            Discrepancy.deliverable_index == deliverable_index,
            Discrepancy.assignee_id == assignee_id,
            Discrepancy.occurrence_label == (label or DELIVERABLE_LEVEL),
        )
    ).scalar_one_or_none()


@dataclass
class ReconcileOutcome:
    deliverable_index: int
    occurrence_label: str | None
    action: str
    discrepancy: Discrepancy | None = None


@dataclass
class ReconcileReport:
    outcomes: list[ReconcileOutcome] = field(default_factory=list)

    def count(self, action: str) -> int:
        return sum(1 for o in self.outcomes if o.action == action)


def _score_carrier(store: UserStateStore, user_id, deliverable_id: str, label: str | None):
    state = store.find(user_id, deliverable_id)
    if state is None:
        return None
    if label:
        return state.find_occurrence(label)
    return state


def reconcile_target(
    kpi,
    store: UserStateStore,
    *,
    deliverable_index: int,
    occurrence_label: str | None,
    assignee_id: int,
    actor_id: int,
    now: datetime,
    floor=DEFAULT_SCORE_FLOOR,
    gap_percent=DEFAULT_GAP_PERCENT,
) -> ReconcileOutcome:
    """Re-evaluate one target after its creator score was written."""
    template = store.templates[deliverable_index]
    carrier = _score_carrier(store, assignee_id, template.id, occurrence_label)
    outcome = ReconcileOutcome(deliverable_index, occurrence_label, OUTCOME_SKIPPED)
    if carrier is None or carrier.creator_score is None:
        return outcome

    assignee = carrier.assignee_score
    creator = carrier.creator_score
    decision = evaluate(assignee.value if assignee else None, creator.value, floor, gap_percent)
    if decision is None:
        return outcome

    record = find_discrepancy(kpi.id, deliverable_index, assignee_id, occurrence_label)
    outcome.discrepancy = record

    if decision.should_flag:
        if record is None:
            record = Discrepancy(
                kpi_id=kpi.id,
                deliverable_index=deliverable_index,
                assignee_id=assignee_id,
                occurrence_label=occurrence_label or DELIVERABLE_LEVEL,
                resolved=False,
                history=[],
            )
            db.session.add(record)
            outcome.action = OUTCOME_FLAGGED
        elif record.resolved:
            record.resolved = False
            record.resolution_notes = None
            record.resolved_at = None
            outcome.action = OUTCOME_REFLAGGED
        elif (_value(record.assignee_score) == assignee.value
              and _value(record.creator_score) == creator.value):
            outcome.action = OUTCOME_UNCHANGED
            return outcome
        else:
            outcome.action = OUTCOME_UPDATED

        record.assignee_score = _snapshot_dict(assignee)
        record.creator_score = _snapshot_dict(creator)
        record.reason = decision.reason
        record.flagged_at = now
        record.append_history(outcome.action, actor_id, now)
        outcome.discrepancy = record

    elif record is not None and not record.resolved:
        record.resolved = True
        record.resolution_notes = AUTO_RESOLUTION_NOTES
        record.resolved_score = _snapshot_dict(creator)
        record.resolved_at = now
        record.append_history(OUTCOME_AUTO_RESOLVED, actor_id, now)
        outcome.action = OUTCOME_AUTO_RESOLVED

    else:
        outcome.action = OUTCOME_UNCHANGED

    if outcome.action != OUTCOME_UNCHANGED:
        logger.info(
            "Discrepancy %s for deliverable %d",
            outcome.action, deliverable_index,
            extra={"kpi_id": kpi.id, "user_id": actor_id, "viewed_user_id": assignee_id,
                   "action": outcome.action},
        )
    return outcome


def reconcile(kpi, store: UserStateStore, applied, *, assignee_id: int, actor_id: int,
              now: datetime | None = None, floor=DEFAULT_SCORE_FLOOR,
              gap_percent=DEFAULT_GAP_PERCENT) -> ReconcileReport:
    """Run ``reconcile_target`` for every applied patch that wrote a creator score."""
    now = now or datetime.now(timezone.utc)
    report = ReconcileReport()
    for item in applied:
        if not item.patch.touches_creator_score:
            continue
        report.outcomes.append(reconcile_target(
            kpi, store,
            deliverable_index=item.deliverable_index,
            occurrence_label=item.occurrence_label,
            assignee_id=assignee_id,
            actor_id=actor_id,
            now=now,
            floor=floor,
            gap_percent=gap_percent,
        ))
    return report


# ── Manual actions ────────────────────────────────────────────────────────────


def write_back_creator_score(store: UserStateStore, user_id, deliverable_index: int, label: str | None,
                             snapshot: ScoreSnapshot, tz: tzinfo = timezone.utc) -> None:
    """Store ``snapshot`` as the creator score of one user's deliverable/occurrence.

    Status moves forward to Completed unless the item is already Approved.
    """
    template = store.templates[deliverable_index]
    state = store.find_or_create(user_id, template.id)
    if label:
        occurrence = occurrence_for_label(template.recurrencePattern, label, tz)
        target = state.find_or_create_occurrence(label, occurrence.due_date.isoformat() if occurrence else None)
    else:
        target = state
    target.creator_score = snapshot
    if target.status != STATUS_APPROVED:
        target.status = STATUS_COMPLETED


def resolve(discrepancy: Discrepancy, kpi, store: UserStateStore, *, actor_id: int, new_score,
            resolution_notes: str, score_notes: str | None = None, documents=(),
            now: datetime | None = None, tz: tzinfo = timezone.utc) -> ScoreSnapshot:
    """Close ``discrepancy`` with an authoritative creator score.

    Inputs are validated by the caller. The new snapshot becomes both the
    record's ``resolvedScore``/``creatorScore`` and the live creator score in
    the assignee's and the creator's slices.
    """
    now = now or datetime.now(timezone.utc)
    index = discrepancy.deliverable_index
    if not 0 <= index < len(store.templates):
        raise NotFoundError("Deliverable", index)

    snapshot = ScoreSnapshot(
        value=new_score,
        entered_by=actor_id,
        timestamp=now.isoformat(),
        notes=score_notes or resolution_notes,
        supporting_documents=tuple(documents),
    )

    discrepancy.previous_score = discrepancy.creator_score
    discrepancy.resolved_score = snapshot.to_dict()
    discrepancy.creator_score = snapshot.to_dict()
    discrepancy.resolved = True
    discrepancy.resolution_notes = resolution_notes
    discrepancy.resolved_at = now
    discrepancy.append_history("resolved", actor_id, now)

    label = discrepancy.occurrence
    targets = dict.fromkeys([discrepancy.assignee_id, kpi.created_by_id])
    for user_id in targets:
        if user_id is not None:
            write_back_creator_score(store, user_id, index, label, snapshot, tz)
    return snapshot


def book_meeting(discrepancy: Discrepancy, *, actor_id: int, when: datetime | None,
                 notes: str = "", now: datetime | None = None) -> None:
    """Record a review meeting; resolution state is left alone."""
    now = now or datetime.now(timezone.utc)
    discrepancy.meeting = {
        "bookedBy": actor_id,
        "timestamp": (when or now).isoformat(),
        "notes": notes or "",
    }
    discrepancy.append_history("meeting-booked", actor_id, now)


# ── Read side ─────────────────────────────────────────────────────────────────


def summarize(records) -> dict:
    """``{hasOpen, openCount, latestId, latestAt}`` over ``records``."""
    records = list(records)
    open_count = sum(1 for r in records if not r.resolved)
    latest = max(records, key=lambda r: as_utc(r.flagged_at), default=None)
    return {
        "hasOpen": open_count > 0,
        "openCount": open_count,
        "latestId": latest.id if latest else None,
        "latestAt": as_utc(latest.flagged_at).isoformat() if latest else None,
    }


def records_by_target(kpi_id: int, assignee_id: int) -> dict[tuple[int, str], list[Discrepancy]]:
    """Discrepancies of one assignee grouped by (deliverable index, label)."""
    rows = db.session.execute(
        select(Discrepancy).where(
            Discrepancy.kpi_id == kpi_id,
            Discrepancy.assignee_id == assignee_id,
        )
    ).scalars()
    grouped: dict[tuple[int, str], list[Discrepancy]] = defaultdict(list)
    for row in rows:
        grouped[(row.deliverable_index, row.occurrence_label or DELIVERABLE_LEVEL)].append(row)
    return grouped
