"""
Discrepancy Service - listing, meeting booking and manual resolution.

Visibility:
    super admin / KPI creator   every assignee of the KPI
    anyone else                 only records where they are the assignee
                                (or, without a KPI filter, KPIs they created)

Booking and resolution share the KPI write cycle (``kpi_service.run_kpi_write``):
resolution writes the new creator score back into the KPI document, and a
history append that races another writer fails on ``Discrepancy.revision``
and is replayed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import or_, select

from kpiboard.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from kpiboard.models import db
from kpiboard.models.auth import User
from kpiboard.models.discrepancy import Discrepancy
from kpiboard.models.kpi import Kpi
from kpiboard.services import kpi_service
from kpiboard.services.evidence_storage import save_evidence_file
from kpiboard.services.kpi import discrepancy_engine
from kpiboard.services.kpi.applier import coerce_score
from kpiboard.services.kpi.user_state import UserStateStore
from kpiboard.services.role_hierarchy import is_super_admin

logger = logging.getLogger(__name__)

STATUS_FILTERS = ("open", "resolved")


def get_discrepancy(discrepancy_id: int) -> Discrepancy:
    discrepancy = db.session.get(Discrepancy, discrepancy_id)
    if discrepancy is None:
        raise NotFoundError("Discrepancy", discrepancy_id)
    return discrepancy


def list_discrepancies(caller: User, kpi_id: int | None = None, assignee_id: int | None = None,
                       status: str | None = None) -> list[dict]:
    stmt = select(Discrepancy)

    if kpi_id is not None:
        kpi = kpi_service.get_kpi(kpi_id)
        stmt = stmt.where(Discrepancy.kpi_id == kpi.id)
        if not (is_super_admin(caller.role) or kpi.is_creator(caller)):
            if assignee_id is not None and assignee_id != caller.id:
                raise PermissionDeniedError("You can only view your own discrepancies")
            assignee_id = caller.id
    elif not is_super_admin(caller.role):
        created = select(Kpi.id).where(Kpi.created_by_id == caller.id)
        stmt = stmt.where(or_(Discrepancy.assignee_id == caller.id, Discrepancy.kpi_id.in_(created)))

    if assignee_id is not None:
        stmt = stmt.where(Discrepancy.assignee_id == assignee_id)

    if status:
        if status not in STATUS_FILTERS:
            raise ValidationError(f"Invalid status filter '{status}'",
                                  details={"status": f"must be one of {', '.join(STATUS_FILTERS)}"})
        stmt = stmt.where(Discrepancy.resolved.is_(status == "resolved"))

    rows = db.session.execute(stmt.order_by(Discrepancy.flagged_at.desc(), Discrepancy.id.desc())).scalars()
    return [d.to_dict() for d in rows]


def book_meeting(discrepancy_id: int, caller: User, when: datetime | None, notes: str = "") -> dict:
    """Record a meeting; allowed for the assignee, the KPI creator or a super admin."""
    discrepancy = get_discrepancy(discrepancy_id)
    allowed = (
        discrepancy.assignee_id == caller.id
        or discrepancy.kpi.is_creator(caller)
        or is_super_admin(caller.role)
    )
    if not allowed:
        raise PermissionDeniedError("Not allowed to book a meeting for this discrepancy")

    caller_id = caller.id
    kpi_id = discrepancy.kpi_id

    def _write():
        discrepancy_engine.book_meeting(get_discrepancy(discrepancy_id), actor_id=caller_id,
                                        when=when, notes=notes)

    kpi_service.run_kpi_write(kpi_id, _write)
    logger.info(
        "Meeting booked",
        extra={"discrepancy_id": discrepancy_id, "kpi_id": kpi_id,
               "user_id": caller_id, "action": "discrepancy:book"},
    )
    return get_discrepancy(discrepancy_id).to_dict()


def resolve_discrepancy(discrepancy_id: int, caller: User, *, resolution_notes, new_score,
                        notes: str | None = None, file=None) -> dict:
    """Creator-only: close the discrepancy with a new authoritative score."""
    discrepancy = get_discrepancy(discrepancy_id)
    kpi_id = discrepancy.kpi_id
    if not discrepancy.kpi.is_creator(caller):
        raise PermissionDeniedError("Only the KPI creator can resolve discrepancies")

    resolution_notes = str(resolution_notes or "").strip()
    if not resolution_notes:
        raise ValidationError("resolutionNotes is required", details={"resolutionNotes": "is required"})
    score = coerce_score(new_score, "newScore")

    documents = [save_evidence_file(file, file.filename)] if file is not None else []
    tz = kpi_service.kpi_timezone()
    caller_id = caller.id

    def _write():
        disc = get_discrepancy(discrepancy_id)
        kpi = kpi_service.get_kpi(kpi_id)
        store = UserStateStore.load(kpi)
        now = datetime.now(timezone.utc)
        discrepancy_engine.resolve(
            disc, kpi, store,
            actor_id=caller_id,
            new_score=score,
            resolution_notes=resolution_notes,
            score_notes=notes,
            documents=documents,
            now=now,
            tz=tz,
        )
        store.dump(kpi)
        kpi.last_updated_by = {"user": caller_id, "userType": "creator", "timestamp": now.isoformat()}

    kpi_service.run_kpi_write(kpi_id, _write)
    logger.info(
        "Discrepancy resolved with score %s", score,
        extra={"discrepancy_id": discrepancy_id, "kpi_id": kpi_id, "user_id": caller_id,
               "action": "discrepancy:resolve"},
    )
    return get_discrepancy(discrepancy_id).to_dict()
