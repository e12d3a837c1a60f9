"""
KPI Header Blueprint - board columns grouping KPIs.

Endpoints:
    POST   /api/v1/kpi-headers              { "name", "description"? }
    GET    /api/v1/kpi-headers?viewUserId=  headers with KPIs projected for
                                            the perspective user (top roles
                                            may look at another user's board)
    PATCH  /api/v1/kpi-headers/<id>         rename / describe (creator or super admin)
    DELETE /api/v1/kpi-headers/<id>         cascades to KPIs and discrepancies
"""

import logging

from flask import Blueprint, g, jsonify, request

from kpiboard.blueprints import query_int, register_error_handlers
from kpiboard.middleware.auth import require_auth
from kpiboard.models import db
from kpiboard.models.kpi import KpiHeader
from kpiboard.services import kpi_service
from kpiboard.services.role_hierarchy import is_super_admin
from kpiboard.utils.errors import E, api_error
from kpiboard.utils.helpers import db_commit_or_error, get_or_404

logger = logging.getLogger(__name__)

kpi_header_bp = register_error_handlers(Blueprint("kpi_header", __name__, url_prefix="/api/v1"))


def _can_manage(header: KpiHeader) -> bool:
    caller = g.current_user
    return header.created_by_id == caller.id or is_super_admin(caller.role)


@kpi_header_bp.route("/kpi-headers", methods=["POST"])
@require_auth
def create_header():
    data = request.get_json(silent=True) or {}
    name = str(data.get("name") or "").strip()
    if not name:
        return api_error(E.VALIDATION_REQUIRED, "name is required")

    header = KpiHeader(
        name=name,
        description=data.get("description") or "",
        created_by_id=g.current_user.id,
    )
    db.session.add(header)
    err = db_commit_or_error()
    if err:
        return err
    logger.info("KPI header created", extra={"user_id": g.current_user.id, "action": "header:create"})
    return jsonify(header.to_dict()), 201


@kpi_header_bp.route("/kpi-headers", methods=["GET"])
@require_auth
def list_headers():
    try:
        view_user_id = query_int("viewUserId")
    except ValueError:
        return api_error(E.VALIDATION_REQUIRED, "viewUserId must be an integer")
    return jsonify(kpi_service.list_headers(g.current_user, view_user_id))


@kpi_header_bp.route("/kpi-headers/<int:header_id>", methods=["PATCH"])
@require_auth
def update_header(header_id):
    header, err = get_or_404(KpiHeader, header_id, "KPI header")
    if err:
        return err
    if not _can_manage(header):
        return api_error(E.FORBIDDEN, "Only the header creator can edit it")

    data = request.get_json(silent=True) or {}
    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            return api_error(E.VALIDATION_REQUIRED, "name cannot be empty")
        header.name = name
    if "description" in data:
        header.description = data.get("description") or ""

    err = db_commit_or_error()
    if err:
        return err
    return jsonify(header.to_dict())


@kpi_header_bp.route("/kpi-headers/<int:header_id>", methods=["DELETE"])
@require_auth
def delete_header(header_id):
    removed = kpi_service.delete_header(header_id, g.current_user)
    logger.info(
        "KPI header deleted with %d KPI(s)", removed,
        extra={"user_id": g.current_user.id, "action": "header:delete"},
    )
    return jsonify({"message": "KPI header deleted", "id": header_id, "kpisRemoved": removed})
