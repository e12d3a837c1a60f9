"""Shared utility functions for blueprints and services.

get_or_404:          tuple-return lookup for simple CRUD blueprints
parse_datetime:      ISO date / datetime parsing (None on empty, ValueError on bad input)
parse_json_field:    multipart form fields that carry JSON text
db_commit_or_error:  commit with uniform error responses
"""
import json
import logging
from datetime import date, datetime, time, timezone

from flask import jsonify

from kpiboard.models import db

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(KpiHeader, hid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found", "code": "ERR_NOT_FOUND"}), 404)
    return obj, None


def parse_datetime(value):
    """Parse an ISO date or datetime string to an aware UTC datetime.

    Returns None for empty input and raises ValueError on malformed input.
    Plain dates become midnight UTC; naive datetimes are taken as UTC.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Invalid date '{value}'. Use ISO 8601 (YYYY-MM-DD[THH:MM])") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_json_field(value, default=None):
    """Decode a form field that may hold JSON text; pass other values through.

    Multipart requests cannot nest objects, so clients send arrays and
    objects as JSON strings. Raises ValueError when the text is not JSON.
    """
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped[:1] in ("[", "{"):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Malformed JSON field: {exc.msg}") from exc
    return value


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure - ready for ``return``.

    IntegrityError → 409 (duplicate / constraint violation)
    OperationalError → 500 (connection / lock issues)
    """
    from sqlalchemy.exc import IntegrityError, OperationalError

    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return jsonify({"error": "Duplicate or constraint violation", "code": "ERR_CONFLICT_STATE"}), 409
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return jsonify({"error": "Database error", "code": "ERR_DATABASE"}), 500
