"""
Role Blueprint - read-only view of the institutional role hierarchy.

Endpoints:
    GET /api/v1/roles              every role, top-down
    GET /api/v1/roles/assignable   roles the caller may target with KPIs
"""

from flask import Blueprint, g, jsonify

from kpiboard.blueprints import register_error_handlers
from kpiboard.middleware.auth import require_auth
from kpiboard.services.role_hierarchy import (
    ALL_ROLES,
    TOP_ROLES,
    get_accessible_roles,
    get_all_descendant_roles,
    is_top_role,
)

role_bp = register_error_handlers(Blueprint("role", __name__, url_prefix="/api/v1"))


@role_bp.route("/roles", methods=["GET"])
@require_auth
def list_roles():
    return jsonify([
        {"name": role, "isTopRole": role in TOP_ROLES, "directReports": get_accessible_roles(role)}
        for role in ALL_ROLES
    ])


@role_bp.route("/roles/assignable", methods=["GET"])
@require_auth
def assignable_roles():
    role = g.current_user.role
    roles = list(ALL_ROLES) if is_top_role(role) else get_all_descendant_roles(role)
    return jsonify({"role": role, "assignable": roles})
