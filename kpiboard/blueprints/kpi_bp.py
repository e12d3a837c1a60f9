"""
KPI Blueprint - per-user KPI views, deliverable patches and evidence.

Endpoints:
    GET    /api/v1/kpis?year=2025-2026
           KPIs visible to the caller, each projected for the caller.

    POST   /api/v1/kpis
           Body: { "name", "description"?, "headerId", "departments": [],
                   "assignedUsers": [], "assignedRoles": [], "deliverables": [],
                   "status"? }
           Returns: 201 with the creator's view.

    PATCH  /api/v1/kpis/<id>
           JSON or multipart. Targeted ({deliverableId, occurrenceLabel?,
           updates}), batch ({deliverables: [...]}) and filename-encoded
           uploads (<deliverableId>[@YYYY-MM-DD]-<name>). "evaluatedUserId" /
           "assigneeId" select the viewed user; "scoreType" pins the score.
           Returns: the viewed user's view.

    PATCH  /api/v1/kpis/<id>/status
           Body: { "status", "promoteGlobally"?: true, "assigneeId"? }

    POST   /api/v1/kpis/<id>/upload
           Multipart: file, deliverableId, occurrenceLabel?, assigneeId?

    GET    /api/v1/kpis/user/<user_id>
    DELETE /api/v1/kpis/<id>
    GET    /api/v1/kpis/statuses

Layer contract:
    - Blueprint: parse request shape, call kpi_service, return JSON.
    - Authorization and all writes live in kpi_service.
"""

import logging

from flask import Blueprint, g, jsonify, request

from kpiboard.blueprints import register_error_handlers
from kpiboard.middleware.auth import require_auth
from kpiboard.services import kpi_service
from kpiboard.utils.errors import E, api_error

logger = logging.getLogger(__name__)

kpi_bp = register_error_handlers(Blueprint("kpi", __name__, url_prefix="/api/v1"))


def _request_body():
    """JSON body or multipart form fields as a plain dict; None when malformed."""
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else None
    return request.form.to_dict()


def _request_files():
    return [f for key in request.files for f in request.files.getlist(key) if f and f.filename]


# ═════════════════════════════════════════════════════════════════════════
# Read
# ═════════════════════════════════════════════════════════════════════════


@kpi_bp.route("/kpis", methods=["GET"])
@require_auth
def list_kpis():
    return jsonify(kpi_service.list_kpis(g.current_user, request.args.get("year") or None))


@kpi_bp.route("/kpis/statuses", methods=["GET"])
@require_auth
def list_statuses():
    return jsonify(kpi_service.deliverable_statuses())


@kpi_bp.route("/kpis/user/<int:user_id>", methods=["GET"])
@require_auth
def get_user_kpis(user_id):
    return jsonify(kpi_service.get_user_kpis(g.current_user, user_id))


# ═════════════════════════════════════════════════════════════════════════
# Write
# ═════════════════════════════════════════════════════════════════════════


@kpi_bp.route("/kpis", methods=["POST"])
@require_auth
def create_kpi():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "JSON body is required")
    return jsonify(kpi_service.create_kpi(g.current_user, data)), 201


@kpi_bp.route("/kpis/<int:kpi_id>", methods=["PATCH"])
@require_auth
def update_kpi(kpi_id):
    body = _request_body()
    if body is None:
        return api_error(E.VALIDATION_REQUIRED, "Request body must be a JSON object")
    return jsonify(kpi_service.update_kpi(kpi_id, g.current_user, body, _request_files()))


@kpi_bp.route("/kpis/<int:kpi_id>/status", methods=["PATCH"])
@require_auth
def change_status(kpi_id):
    data = _request_body()
    if not data or not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return jsonify(kpi_service.change_status(kpi_id, g.current_user, data))


@kpi_bp.route("/kpis/<int:kpi_id>/upload", methods=["POST"])
@require_auth
def upload_evidence(kpi_id):
    file = request.files.get("file")
    if file is None or not file.filename:
        return api_error(E.VALIDATION_REQUIRED, "No file uploaded")
    deliverable_id = (request.form.get("deliverableId") or "").strip()
    if not deliverable_id:
        return api_error(E.VALIDATION_REQUIRED, "deliverableId is required")

    result = kpi_service.upload_evidence(
        kpi_id,
        g.current_user,
        file,
        deliverable_id=deliverable_id,
        occurrence_label=request.form.get("occurrenceLabel"),
        assignee_id=request.form.get("assigneeId"),
    )
    return jsonify(result)


@kpi_bp.route("/kpis/<int:kpi_id>", methods=["DELETE"])
@require_auth
def delete_kpi(kpi_id):
    kpi_service.delete_kpi(kpi_id, g.current_user)
    return jsonify({"message": "KPI deleted", "id": kpi_id})
