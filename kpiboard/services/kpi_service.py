"""
KPI Service - business logic behind /api/v1/kpis and the header board.

Every write against a KPI document runs through ``run_kpi_write``:

    load → normalize → mutate → reconcile discrepancies → commit

``Kpi.revision`` is the SQLAlchemy version counter, so a concurrent writer
surfaces as StaleDataError at flush time. The cycle is then rolled back and
replayed from a fresh load, up to KPI_SAVE_MAX_RETRIES times, before a
ConflictError (409) is raised. Evidence files are stored once, before the
cycle, and only after the request has been validated.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo

from flask import current_app
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from kpiboard.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from kpiboard.models import db
from kpiboard.models.auth import User
from kpiboard.models.kpi import (
    DELIVERABLE_STATUSES,
    STATUS_PENDING,
    Kpi,
    KpiHeader,
    KpiRoleAssignment,
)
from kpiboard.models.org import Department
from kpiboard.services.department_service import get_accessible_department_ids_for
from kpiboard.services.evidence_storage import save_evidence_file
from kpiboard.services.kpi.applier import apply_patches, occurrence_due_date
from kpiboard.services.kpi.discrepancy_engine import reconcile, records_by_target
from kpiboard.services.kpi.patches import (
    UploadedEvidence,
    match_file_target,
    parse_patches,
    resolve_viewed_user,
)
from kpiboard.services.kpi.projector import build_caller_view
from kpiboard.services.kpi.recurrence import canonical_label
from kpiboard.services.kpi.templates import build_templates
from kpiboard.services.kpi.user_state import UserStateStore, union_evidence
from kpiboard.services.kpi.weights import academic_year_key, recompute_weights
from kpiboard.services.role_hierarchy import (
    ALL_ROLES,
    can_assign_to,
    is_super_admin,
    is_top_role,
)
from kpiboard.utils.helpers import parse_json_field

logger = logging.getLogger(__name__)


# ── Settings ──────────────────────────────────────────────────────────────────


def kpi_timezone() -> tzinfo:
    name = current_app.config.get("KPI_TIMEZONE") or "UTC"
    return timezone.utc if name.upper() == "UTC" else ZoneInfo(name)


def discrepancy_thresholds() -> tuple[float, float]:
    cfg = current_app.config
    return cfg["DISCREPANCY_SCORE_FLOOR"], cfg["DISCREPANCY_GAP_PERCENT"]


# ── Transaction cycle ─────────────────────────────────────────────────────────


def run_kpi_write(kpi_id: int | None, operation):
    """Run ``operation()`` and commit, replaying it on concurrent modification.

    A rollback expires every loaded instance, so ``operation`` reloads what it
    mutates and reads the caller only through values captured beforehand.
    """
    retries = current_app.config.get("KPI_SAVE_MAX_RETRIES", 3)
    for attempt in range(retries + 1):
        try:
            result = operation()
            db.session.commit()
            return result
        except (StaleDataError, IntegrityError) as exc:
            db.session.rollback()
            logger.warning(
                "Concurrent write on KPI %s (attempt %d/%d): %s",
                kpi_id, attempt + 1, retries + 1, type(exc).__name__,
                extra={"kpi_id": kpi_id, "action": "kpi:retry"},
            )
        except Exception:
            db.session.rollback()
            raise
    raise ConflictError("Kpi", "revision", str(kpi_id))


def get_kpi(kpi_id: int) -> Kpi:
    kpi = db.session.get(Kpi, kpi_id)
    if kpi is None:
        raise NotFoundError("Kpi", kpi_id)
    return kpi


def _get_user(user_id) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user


def _last_updated_by(caller_id: int, is_creator: bool, now: datetime) -> dict:
    return {
        "user": caller_id,
        "userType": "creator" if is_creator else "assignee",
        "timestamp": now.isoformat(),
    }


def _authorize_write(kpi: Kpi, caller: User, viewed_user_id: int) -> None:
    is_creator = kpi.is_creator(caller)
    if not (is_creator or kpi.is_assigned(caller) or is_super_admin(caller.role)):
        raise PermissionDeniedError("You are not assigned to this KPI")
    if viewed_user_id != caller.id and not is_creator:
        raise PermissionDeniedError("Only the KPI creator can update another user's view")
    if viewed_user_id != caller.id:
        _get_user(viewed_user_id)


# ── Read side ─────────────────────────────────────────────────────────────────


def visible_kpis_stmt(user: User, year: str | None = None):
    """KPIs ``user`` created or is assigned to (directly, by department, by role)."""
    stmt = select(Kpi)
    if not is_super_admin(user.role):
        conditions = [
            Kpi.created_by_id == user.id,
            Kpi.assigned_users.any(User.id == user.id),
            Kpi.role_assignments.any(KpiRoleAssignment.role == user.role),
        ]
        if user.department_id is not None:
            conditions.append(Kpi.departments.any(Department.id == user.department_id))
        stmt = stmt.where(or_(*conditions))
    if year:
        stmt = stmt.where(Kpi.academic_year == year)
    return stmt.order_by(Kpi.id)


def caller_view(kpi: Kpi, viewed_user_id: int, caller: User | None = None) -> dict:
    store = UserStateStore.load(kpi)
    return build_caller_view(
        kpi,
        store,
        viewed_user_id,
        records_by_target(kpi.id, viewed_user_id),
        caller=caller,
        tz=kpi_timezone(),
    )


def list_kpis(caller: User, year: str | None = None) -> list[dict]:
    kpis = db.session.execute(visible_kpis_stmt(caller, year)).scalars().all()
    return [caller_view(kpi, caller.id, caller) for kpi in kpis]


def get_user_kpis(caller: User, user_id: int) -> list[dict]:
    """Another user's KPI views: self, a top role, or the creator of one of their KPIs."""
    target = _get_user(user_id)
    kpis = db.session.execute(visible_kpis_stmt(target)).scalars().all()
    if caller.id != target.id and not is_top_role(caller.role):
        kpis = [k for k in kpis if k.is_creator(caller)]
        if not kpis:
            raise PermissionDeniedError("Not authorized to view this user's KPIs")
    return [caller_view(kpi, target.id, caller) for kpi in kpis]


def deliverable_statuses() -> list[str]:
    return list(DELIVERABLE_STATUSES)


def list_headers(caller: User, view_user_id: int | None = None) -> list[dict]:
    """KPI headers with the KPIs visible to the perspective user."""
    perspective = caller
    if view_user_id is not None and view_user_id != caller.id:
        if not is_top_role(caller.role):
            raise PermissionDeniedError("Viewing another user's board requires a top role")
        perspective = _get_user(view_user_id)

    visible = db.session.execute(visible_kpis_stmt(perspective)).scalars().all()
    by_header: dict[int, list[Kpi]] = {}
    for kpi in visible:
        by_header.setdefault(kpi.header_id, []).append(kpi)

    headers = db.session.execute(select(KpiHeader).order_by(KpiHeader.id)).scalars().all()
    return [
        {
            **header.to_dict(),
            "kpis": [caller_view(k, perspective.id, caller) for k in by_header.get(header.id, [])],
        }
        for header in headers
    ]


# ── Create / delete ───────────────────────────────────────────────────────────


def _id_list(value, field_name: str) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field_name} must be a list", details={field_name: "invalid"})
    ids = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("_id", item.get("id"))
        try:
            ids.append(int(item))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid id in {field_name}", details={field_name: str(item)}) from None
    return list(dict.fromkeys(ids))


def create_kpi(caller: User, data: dict) -> dict:
    """Validate targeting and templates, insert the KPI, recompute its year's weights."""
    errors = {}
    name = str(data.get("name") or "").strip()
    if not name:
        errors["name"] = "is required"
    if data.get("headerId") in (None, ""):
        errors["headerId"] = "is required"
    if errors:
        raise ValidationError("Missing required fields", details=errors)

    header = db.session.get(KpiHeader, data["headerId"])
    if header is None:
        raise NotFoundError("KpiHeader", data["headerId"])

    department_ids = _id_list(data.get("departments"), "departments")
    user_ids = _id_list(data.get("assignedUsers"), "assignedUsers")
    roles = data.get("assignedRoles") or []
    if not isinstance(roles, list):
        raise ValidationError("assignedRoles must be a list", details={"assignedRoles": "invalid"})
    if not (department_ids or user_ids or roles):
        raise ValidationError(
            "Assign the KPI to at least one department, user or role",
            details={"targets": "empty"},
        )

    departments = []
    for dept_id in department_ids:
        dept = db.session.get(Department, dept_id)
        if dept is None:
            raise NotFoundError("Department", dept_id)
        departments.append(dept)
    if departments and not is_super_admin(caller.role):
        accessible = get_accessible_department_ids_for(caller)
        outside = [d.id for d in departments if d.id not in accessible]
        if outside:
            raise PermissionDeniedError(f"Departments {outside} are outside your scope")

    users = [_get_user(uid) for uid in user_ids]
    for user in users:
        if not can_assign_to(caller.role, user.role):
            raise PermissionDeniedError(f"You cannot assign KPIs to {user.role}")
    for role in roles:
        if role not in ALL_ROLES:
            raise ValidationError(f"Unknown role '{role}'", details={"assignedRoles": role})
        if not can_assign_to(caller.role, role):
            raise PermissionDeniedError(f"You cannot assign KPIs to {role}")

    templates = build_templates(data.get("deliverables"))
    status = data.get("status") or STATUS_PENDING
    if status not in DELIVERABLE_STATUSES:
        raise ValidationError(f"Invalid status '{status}'", details={"status": "unknown"})

    now = datetime.now(timezone.utc)
    year = academic_year_key(now)

    def _create():
        kpi = Kpi(
            name=name,
            description=data.get("description") or "",
            header=header,
            status=status,
            academic_year=year,
            weight=0.0,
            deliverables=[t.to_dict() for t in templates],
            user_statuses={},
            user_deliverables={},
            created_by_id=caller.id,
            last_updated_by={"user": caller.id, "userType": "creator", "timestamp": now.isoformat()},
        )
        kpi.departments = departments
        kpi.assigned_users = users
        kpi.assigned_roles = roles
        db.session.add(kpi)
        db.session.flush()
        recompute_weights(year)
        return kpi.id

    kpi_id = run_kpi_write(None, _create)
    logger.info("KPI created", extra={"kpi_id": kpi_id, "user_id": caller.id, "action": "kpi:create"})
    return caller_view(get_kpi(kpi_id), caller.id, caller)


def delete_kpi(kpi_id: int, caller: User) -> None:
    kpi = get_kpi(kpi_id)
    if not (kpi.is_creator(caller) or is_super_admin(caller.role)):
        raise PermissionDeniedError("Only the KPI creator can delete it")
    year = kpi.academic_year

    def _delete():
        db.session.delete(get_kpi(kpi_id))
        db.session.flush()
        recompute_weights(year)

    run_kpi_write(kpi_id, _delete)
    logger.info("KPI deleted", extra={"kpi_id": kpi_id, "user_id": caller.id, "action": "kpi:delete"})


def _get_header(header_id: int) -> KpiHeader:
    header = db.session.get(KpiHeader, header_id)
    if header is None:
        raise NotFoundError("KpiHeader", header_id)
    return header


def delete_header(header_id: int, caller: User) -> int:
    """Delete a header with its KPIs (and their discrepancies); returns the KPI count."""
    header = _get_header(header_id)
    if not (header.created_by_id == caller.id or is_super_admin(caller.role)):
        raise PermissionDeniedError("Only the header creator can delete it")

    def _delete():
        header = _get_header(header_id)
        years = {k.academic_year for k in header.kpis}
        removed = len(header.kpis)
        db.session.delete(header)
        db.session.flush()
        for year in sorted(years):
            recompute_weights(year)
        return removed

    return run_kpi_write(None, _delete)


# ── Patch ─────────────────────────────────────────────────────────────────────


def _label_canonicalizer(store: UserStateStore, tz: tzinfo):
    def _canonicalize(deliverable_id: str, label: str) -> str:
        template = store.template(deliverable_id)
        pattern = template.recurrencePattern if template else None
        return canonical_label(pattern, label, tz)
    return _canonicalize


def _validate_upload_targets(body: dict, files) -> None:
    try:
        deliverable_ids = parse_json_field(body.get("deliverableIds"), default=[])
    except ValueError as exc:
        raise ValidationError(str(exc), details={"deliverableIds": "malformed JSON"}) from exc
    if isinstance(deliverable_ids, str):
        deliverable_ids = [deliverable_ids]
    unmatched = [f.filename for f in files if match_file_target(f.filename, [str(d) for d in deliverable_ids]) is None]
    if unmatched:
        raise ValidationError(
            "Upload filenames must start with a deliverable id or index",
            details={"files": unmatched},
        )


def update_kpi(kpi_id: int, caller: User, body: dict, files=()) -> dict:
    """Apply deliverable patches for one viewed user and reconcile discrepancies."""
    tz = kpi_timezone()
    floor, gap = discrepancy_thresholds()
    body = body or {}
    files = list(files)

    kpi = get_kpi(kpi_id)
    caller_id = caller.id
    viewed_user_id = resolve_viewed_user(body, caller_id)
    _authorize_write(kpi, caller, viewed_user_id)
    is_creator = kpi.is_creator(caller)
    _validate_upload_targets(body, files)

    # Dry run on a throwaway store so nothing is stored for a rejected request
    dry_store = UserStateStore.load(kpi)
    parsed = parse_patches(
        body, caller_id,
        [UploadedEvidence(f.filename, f"pending:{f.filename}") for f in files],
        _label_canonicalizer(dry_store, tz),
    )
    apply_patches(dry_store, parsed.patches, caller_id=caller_id, is_creator=is_creator,
                  viewed_user_id=viewed_user_id, tz=tz)

    uploads = [UploadedEvidence(f.filename, save_evidence_file(f, f.filename)) for f in files]

    def _write():
        kpi = get_kpi(kpi_id)
        store = UserStateStore.load(kpi)
        now = datetime.now(timezone.utc)
        parsed = parse_patches(body, caller_id, uploads, _label_canonicalizer(store, tz))
        result = apply_patches(
            store, parsed.patches,
            caller_id=caller_id,
            is_creator=is_creator,
            viewed_user_id=viewed_user_id,
            now=now,
            tz=tz,
        )
        if not result.deliverables_updated:
            return result

        store.dump(kpi)
        kpi.last_updated_by = _last_updated_by(caller_id, is_creator, now)
        if viewed_user_id != caller_id:
            reconcile(
                kpi, store, result.creator_score_targets,
                assignee_id=viewed_user_id,
                actor_id=caller_id,
                now=now,
                floor=floor,
                gap_percent=gap,
            )
        recompute_weights(kpi.academic_year)
        return result

    result = run_kpi_write(kpi_id, _write)
    logger.info(
        "KPI patched: %d patch(es), updated=%s", len(result.applied), result.deliverables_updated,
        extra={"kpi_id": kpi_id, "user_id": caller_id, "viewed_user_id": viewed_user_id,
               "action": "kpi:patch"},
    )
    return caller_view(get_kpi(kpi_id), viewed_user_id, caller)


# ── Status ────────────────────────────────────────────────────────────────────


def change_status(kpi_id: int, caller: User, data: dict) -> dict:
    """Set a status globally (creator, no assignee, promoteGlobally) or for one user."""
    status = data.get("status")
    if status not in DELIVERABLE_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'",
            details={"status": f"must be one of {', '.join(DELIVERABLE_STATUSES)}"},
        )

    kpi = get_kpi(kpi_id)
    caller_id = caller.id
    assignee = data.get("assigneeId")
    target_user_id = resolve_viewed_user({"assigneeId": assignee}, caller_id)
    _authorize_write(kpi, caller, target_user_id)
    is_creator = kpi.is_creator(caller)

    promote = data.get("promoteGlobally", True)
    if isinstance(promote, str):
        promote = promote.strip().lower() in ("1", "true", "yes")
    is_global = is_creator and assignee in (None, "") and promote is True

    def _write():
        kpi = get_kpi(kpi_id)
        store = UserStateStore.load(kpi)
        now = datetime.now(timezone.utc)
        if is_global:
            kpi.status = status
            store.clear_statuses()
        store.set_status(target_user_id, status)
        store.dump(kpi)
        kpi.last_updated_by = _last_updated_by(caller_id, is_creator, now)
        return kpi.status if is_global else store.status_for(target_user_id, kpi.status)

    effective = run_kpi_write(kpi_id, _write)
    logger.info(
        "KPI status set to %s", effective,
        extra={"kpi_id": kpi_id, "user_id": caller_id, "viewed_user_id": target_user_id,
               "action": "kpi:status"},
    )
    return {
        "status": effective,
        "scope": "global" if is_global else "assignee",
        "targetUserId": target_user_id,
    }


# ── Evidence upload ───────────────────────────────────────────────────────────


def upload_evidence(kpi_id: int, caller: User, file, *, deliverable_id: str,
                    occurrence_label: str | None = None, assignee_id=None) -> dict:
    """Attach one stored file to a deliverable/occurrence of the viewed user.

    When the creator uploads, the same URL also lands in the creator's own slice.
    """
    tz = kpi_timezone()
    kpi = get_kpi(kpi_id)
    caller_id = caller.id
    viewed_user_id = resolve_viewed_user({"assigneeId": assignee_id}, caller_id)
    _authorize_write(kpi, caller, viewed_user_id)
    is_creator = kpi.is_creator(caller)

    store = UserStateStore.load(kpi)
    template = store.template(deliverable_id)
    if template is None:
        raise NotFoundError("Deliverable", deliverable_id)
    label = (occurrence_label or "").strip() or None
    due_date = None
    if label:
        if not template.isRecurring:
            raise ValidationError(
                "Occurrences exist only on recurring deliverables",
                details={"occurrenceLabel": f"deliverable {deliverable_id} is not recurring"},
            )
        label = canonical_label(template.recurrencePattern, label, tz)
        due_date = occurrence_due_date(template, label, tz)

    url = save_evidence_file(file, file.filename)

    def _write():
        kpi = get_kpi(kpi_id)
        store = UserStateStore.load(kpi)
        now = datetime.now(timezone.utc)
        owners = [viewed_user_id]
        if is_creator and kpi.created_by_id != viewed_user_id:
            owners.append(kpi.created_by_id)
        for owner in owners:
            state = store.find_or_create(owner, deliverable_id)
            target = state.find_or_create_occurrence(label, due_date) if label else state
            target.evidence = union_evidence(target.evidence, [url])
        store.dump(kpi)
        kpi.last_updated_by = _last_updated_by(caller_id, is_creator, now)

    run_kpi_write(kpi_id, _write)
    logger.info(
        "Evidence attached to deliverable %s", deliverable_id,
        extra={"kpi_id": kpi_id, "user_id": caller_id, "viewed_user_id": viewed_user_id,
               "deliverable_id": deliverable_id, "action": "kpi:upload"},
    )
    return {"uploadedUrl": url, "kpi": caller_view(get_kpi(kpi_id), viewed_user_id, caller)}
