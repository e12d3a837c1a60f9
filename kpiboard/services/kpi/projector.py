"""
Response projector - builds the caller-facing view of one KPI.

Per template deliverable the view carries the viewed user's state (status,
scores, evidence), never template-level scores. Recurring deliverables list
the union of the current-period seed and every stored occurrence label,
each with a discrepancy summary; non-recurring deliverables carry one
deliverable-level summary.

The projector only reads: seeded defaults for users without state are
returned but never written back.
"""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo

from kpiboard.models.discrepancy import DELIVERABLE_LEVEL
from kpiboard.services.kpi.discrepancy_engine import summarize
from kpiboard.services.kpi.recurrence import current_occurrences
from kpiboard.services.kpi.user_state import (
    UserDeliverableOccurrence,
    UserDeliverableState,
    UserStateStore,
    user_key,
)


def _occurrence_rows(template, state: UserDeliverableState, now: datetime, tz: tzinfo) -> list[UserDeliverableOccurrence]:
    by_label = {o.period_label: o for o in state.occurrences}
    for seed in current_occurrences(template.recurrencePattern, now, tz):
        by_label.setdefault(
            seed.period_label,
            UserDeliverableOccurrence(period_label=seed.period_label, due_date=seed.due_date.isoformat()),
        )
    return [by_label[label] for label in sorted(by_label)]


def project_deliverable(index: int, template, state: UserDeliverableState, records: dict,
                        now: datetime, tz: tzinfo) -> dict:
    """Merge one template with the viewed user's state."""
    item = {
        **template.to_dict(),
        "deliverableIndex": index,
        **{k: v for k, v in state.to_dict().items() if k not in ("deliverableId", "occurrences")},
    }

    if template.isRecurring:
        occurrences = []
        rollup = []
        for occurrence in _occurrence_rows(template, state, now, tz):
            matched = records.get((index, occurrence.period_label), [])
            rollup.extend(matched)
            occurrences.append({**occurrence.to_dict(), "discrepancy": summarize(matched)})
        rollup.extend(records.get((index, DELIVERABLE_LEVEL), []))
        item["occurrences"] = occurrences
        item["discrepancy"] = summarize(rollup)
    else:
        item["occurrences"] = []
        item["discrepancy"] = summarize(records.get((index, DELIVERABLE_LEVEL), []))
    return item


def build_caller_view(
    kpi,
    store: UserStateStore,
    viewed_user_id,
    records: dict | None = None,
    *,
    caller=None,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
) -> dict:
    """Return ``kpi.to_dict()`` enriched with ``viewed_user_id``'s deliverables.

    ``records`` maps ``(deliverable_index, occurrence_label)`` to the
    viewed user's Discrepancy rows (see ``records_by_target``).
    """
    now = now or datetime.now(timezone.utc)
    records = records or {}
    states = store.peek(viewed_user_id)
    by_id = {s.deliverable_id: s for s in states}

    deliverables = [
        project_deliverable(i, template, by_id.get(template.id) or UserDeliverableState(template.id),
                            records, now, tz)
        for i, template in enumerate(store.templates)
    ]

    key = user_key(viewed_user_id)
    status = store.status_for(viewed_user_id, kpi.status)
    view = kpi.to_dict()
    view.update({
        "viewedUserId": viewed_user_id,
        "status": status,
        "globalStatus": kpi.status,
        "deliverables": deliverables,
        "userSpecific": {
            "statuses": {key: status},
            "deliverables": {key: [s.to_dict() for s in states]},
        },
    })
    if caller is not None:
        view["isCreator"] = kpi.is_creator(caller)
        view["isAssignedUser"] = kpi.is_assigned(caller)
    return view
