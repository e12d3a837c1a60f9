"""
Discrepancy Blueprint - listing, meeting booking, manual resolution.

Endpoints:
    GET  /api/v1/discrepancies?kpiId=&assigneeId=&status=open|resolved
    GET  /api/v1/discrepancies/kpi/<kpi_id>?assigneeId=&status=
    PUT  /api/v1/discrepancies/<id>/book
         Body: { "date"?: ISO 8601, "notes"? }
    PUT  /api/v1/discrepancies/<id>/resolve
         JSON or multipart: { "resolutionNotes", "newScore", "notes"? } + file?
"""

import logging

from flask import Blueprint, g, jsonify, request

from kpiboard.blueprints import query_int, register_error_handlers
from kpiboard.middleware.auth import require_auth
from kpiboard.services import discrepancy_service
from kpiboard.utils.errors import E, api_error
from kpiboard.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

discrepancy_bp = register_error_handlers(Blueprint("discrepancy", __name__, url_prefix="/api/v1"))


def _list(kpi_id):
    try:
        assignee_id = query_int("assigneeId")
    except ValueError:
        return api_error(E.VALIDATION_REQUIRED, "assigneeId must be an integer")
    items = discrepancy_service.list_discrepancies(
        g.current_user,
        kpi_id=kpi_id,
        assignee_id=assignee_id,
        status=request.args.get("status") or None,
    )
    return jsonify({"items": items, "total": len(items)})


@discrepancy_bp.route("/discrepancies", methods=["GET"])
@require_auth
def list_discrepancies():
    try:
        kpi_id = query_int("kpiId")
    except ValueError:
        return api_error(E.VALIDATION_REQUIRED, "kpiId must be an integer")
    return _list(kpi_id)


@discrepancy_bp.route("/discrepancies/kpi/<int:kpi_id>", methods=["GET"])
@require_auth
def list_kpi_discrepancies(kpi_id):
    return _list(kpi_id)


@discrepancy_bp.route("/discrepancies/<int:discrepancy_id>/book", methods=["PUT"])
@require_auth
def book_meeting(discrepancy_id):
    data = request.get_json(silent=True) or {}
    try:
        when = parse_datetime(data.get("date"))
    except ValueError as exc:
        return api_error(E.VALIDATION_REQUIRED, str(exc))
    result = discrepancy_service.book_meeting(
        discrepancy_id, g.current_user, when, str(data.get("notes") or "")
    )
    return jsonify(result)


@discrepancy_bp.route("/discrepancies/<int:discrepancy_id>/resolve", methods=["PUT"])
@require_auth
def resolve(discrepancy_id):
    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return api_error(E.VALIDATION_REQUIRED, "Request body must be a JSON object")
    else:
        data = request.form.to_dict()

    file = request.files.get("file")
    result = discrepancy_service.resolve_discrepancy(
        discrepancy_id,
        g.current_user,
        resolution_notes=data.get("resolutionNotes"),
        new_score=data.get("newScore"),
        notes=data.get("notes"),
        file=file if file and file.filename else None,
    )
    return jsonify(result)
