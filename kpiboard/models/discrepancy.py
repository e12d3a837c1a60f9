"""
Discrepancy Model - creator/assignee score disagreement records.

One row per (kpi_id, deliverable_index, assignee_id, occurrence_label).
``occurrence_label`` is the empty string for non-recurring deliverables so
the unique constraint also covers them (NULLs never collide in SQL).

Lifecycle:
    open ──(scores converge)──► resolved   history: auto-resolved
    open ──(creator resolves)──► resolved   history: resolved
    resolved ──(diverges again)──► open     history: re-flagged

``history`` is append-only, guarded by the ``revision`` version counter;
``meeting`` is independent of ``resolved``.
"""

from datetime import datetime, timezone

from kpiboard.models import db

DELIVERABLE_LEVEL = ""

DEFAULT_REASON = "Score discrepancy detected"

HISTORY_ACTIONS = frozenset({
    "flagged",
    "re-flagged",
    "updated",
    "meeting-booked",
    "resolved",
    "auto-resolved",
})


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Discrepancy(db.Model):
    __tablename__ = "kpi_discrepancies"
    __table_args__ = (
        db.UniqueConstraint(
            "kpi_id", "deliverable_index", "assignee_id", "occurrence_label",
            name="uq_discrepancy_target",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    kpi_id = db.Column(
        db.Integer,
        db.ForeignKey("kpis.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    deliverable_index = db.Column(db.Integer, nullable=False)
    assignee_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    occurrence_label = db.Column(
        db.String(20),
        nullable=False,
        default=DELIVERABLE_LEVEL,
        comment='Period label ("2025-W33", "2025-08") or "" for the deliverable itself',
    )

    # Score snapshots (ScoreSnapshot.to_dict()) captured at flag / resolve time
    assignee_score = db.Column(db.JSON, nullable=True)
    creator_score = db.Column(db.JSON, nullable=True)
    previous_score = db.Column(db.JSON, nullable=True)
    resolved_score = db.Column(db.JSON, nullable=True)

    reason = db.Column(db.Text, nullable=True)
    resolved = db.Column(db.Boolean, nullable=False, default=False, index=True)
    resolution_notes = db.Column(db.Text, nullable=True)
    flagged_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    meeting = db.Column(db.JSON, nullable=True,
                        comment='{"bookedBy": id, "timestamp": iso, "notes": str}')
    history = db.Column(db.JSON, nullable=False, default=list,
                        comment='Append-only [{"action", "by", "timestamp"}]')

    revision = db.Column(db.Integer, nullable=False,
                         comment="Optimistic-concurrency counter (version_id_col)")

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __mapper_args__ = {"version_id_col": revision}

    kpi = db.relationship("Kpi", back_populates="discrepancies")
    assignee = db.relationship("User", foreign_keys=[assignee_id])

    # ── Derived fields ───────────────────────────────────────────────────

    @property
    def meeting_booked(self) -> bool:
        return bool(self.meeting)

    @property
    def meeting_booked_at(self) -> str | None:
        return (self.meeting or {}).get("timestamp")

    @property
    def reason_effective(self) -> str:
        return (self.reason or "").strip() or DEFAULT_REASON

    @property
    def occurrence(self) -> str | None:
        return self.occurrence_label or None

    def append_history(self, action: str, by: int | None, at: datetime) -> None:
        """Append one audit event; the JSON list is replaced so the change is tracked."""
        if action not in HISTORY_ACTIONS:
            raise ValueError(f"Unknown history action '{action}'")
        self.history = [*(self.history or []), {
            "action": action,
            "by": by,
            "timestamp": at.isoformat(),
        }]

    def to_dict(self, include_history: bool = True):
        deliverable_title = None
        templates = (self.kpi.deliverables or []) if self.kpi else []
        if 0 <= self.deliverable_index < len(templates):
            deliverable_title = templates[self.deliverable_index].get("title")

        result = {
            "id": self.id,
            "kpiId": self.kpi_id,
            "kpiName": self.kpi.name if self.kpi else None,
            "deliverableIndex": self.deliverable_index,
            "deliverableTitle": deliverable_title,
            "assigneeId": self.assignee_id,
            "assignee": self.assignee.to_summary() if self.assignee else None,
            "occurrenceLabel": self.occurrence,
            "assigneeScore": self.assignee_score,
            "creatorScore": self.creator_score,
            "previousScore": self.previous_score,
            "resolvedScore": self.resolved_score,
            "reason": self.reason,
            "reasonEffective": self.reason_effective,
            "resolved": self.resolved,
            "resolutionNotes": self.resolution_notes,
            "flaggedAt": as_utc(self.flagged_at).isoformat() if self.flagged_at else None,
            "resolvedAt": as_utc(self.resolved_at).isoformat() if self.resolved_at else None,
            "meeting": self.meeting,
            "meetingBooked": self.meeting_booked,
            "meetingBookedAt": self.meeting_booked_at,
        }
        if include_history:
            result["history"] = list(self.history or [])
        return result

    def __repr__(self):
        return (f"<Discrepancy {self.id}: kpi={self.kpi_id} idx={self.deliverable_index} "
                f"assignee={self.assignee_id} label={self.occurrence_label!r}>")
