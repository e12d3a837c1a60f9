"""
KPI Board
Blueprint registry and shared error mapping.
"""

import logging

from flask import request

from kpiboard.core.exceptions import (
    ConflictError,
    EvidenceStorageError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from kpiboard.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def register_error_handlers(bp):
    """Map service-layer exceptions to JSON responses for one blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(PermissionDeniedError)
    def _handle_forbidden(error: PermissionDeniedError):
        return api_error(E.FORBIDDEN, str(error) or "Forbidden")

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_STATE, str(error))

    @bp.errorhandler(EvidenceStorageError)
    def _handle_storage(error: EvidenceStorageError):
        logger.error("Evidence storage failed endpoint=%s: %s", request.endpoint, error)
        return api_error(E.STORAGE, str(error))

    return bp


def query_int(name: str):
    """Optional integer query parameter; ValueError on garbage."""
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    return int(raw)
