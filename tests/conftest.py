"""
Shared pytest fixtures for the KPI Board test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_department / make_header / make_kpi: ORM factories
    - creator / assignee / outsider / super_admin / kpi: a ready-made board
    - auth_headers: bearer token headers for a user

Factories commit: the KPI write cycle rolls the session back on a
concurrent write, which would otherwise discard uncommitted fixtures.
"""

import itertools

import pytest

from kpiboard import create_app
from kpiboard.models import db as _db
from kpiboard.models.auth import User
from kpiboard.models.kpi import STATUS_PENDING, Kpi, KpiHeader
from kpiboard.models.org import Department
from kpiboard.services.jwt_service import generate_access_token
from kpiboard.services.kpi.weights import academic_year_key

HEAD_OF_DEPARTMENT = "Heads of Departments"
LECTURER = "Lecturers / Teaching / Research Fellows"

PLAIN_ID = "a" * 24
WEEKLY_ID = "b" * 24

PLAIN_TEMPLATE = {
    "id": PLAIN_ID,
    "title": "Publish two papers",
    "action": "Submit manuscripts to indexed journals",
    "indicator": "Papers accepted",
    "performanceTarget": "2 papers",
    "timeline": "2026-06-30T00:00:00+00:00",
    "priority": "High",
    "isRecurring": False,
    "recurrencePattern": None,
    "weight": 0.0,
}

WEEKLY_TEMPLATE = {
    "id": WEEKLY_ID,
    "title": "Weekly office hours",
    "action": "Hold office hours",
    "indicator": "Sessions held",
    "performanceTarget": "1 per week",
    "timeline": None,
    "priority": "Medium",
    "isRecurring": True,
    "recurrencePattern": "weekly",
    "weight": 0.0,
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture(autouse=True)
def evidence_dir(app, tmp_path, monkeypatch):
    """Store uploaded evidence under the test's tmp dir."""
    path = tmp_path / "evidence"
    monkeypatch.setitem(app.config, "EVIDENCE_UPLOAD_DIR", str(path))
    return path


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def auth_headers():
    """Return a function building Authorization headers for a user."""
    def _headers(user):
        return {"Authorization": f"Bearer {generate_access_token(user.id, user.role)}"}
    return _headers


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    seq = itertools.count(1)

    def _make(role=LECTURER, department=None, name=None):
        n = next(seq)
        user = User(
            email=f"user{n}@example.edu",
            full_name=name or f"User {n}",
            role=role,
            department=department,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_department():
    def _make(name, parent=None, supervisors=()):
        dept = Department(name=name, parent=parent, category="Faculty" if parent is None else "Unit")
        dept.supervisors = list(supervisors)
        _db.session.add(dept)
        _db.session.commit()
        return dept

    return _make


@pytest.fixture()
def make_header():
    def _make(created_by, name="Research"):
        header = KpiHeader(name=name, description="", created_by_id=created_by.id)
        _db.session.add(header)
        _db.session.commit()
        return header

    return _make


@pytest.fixture()
def make_kpi(make_header):
    def _make(creator, *, assignees=(), roles=(), departments=(), deliverables=None,
              header=None, name="Research output", status=STATUS_PENDING, year=None):
        kpi = Kpi(
            name=name,
            description="",
            header=header or make_header(creator),
            status=status,
            academic_year=year or academic_year_key(),
            weight=0.0,
            deliverables=[dict(t) for t in (deliverables or (PLAIN_TEMPLATE, WEEKLY_TEMPLATE))],
            user_statuses={},
            user_deliverables={},
            created_by_id=creator.id,
        )
        kpi.assigned_users = list(assignees)
        kpi.assigned_roles = list(roles)
        kpi.departments = list(departments)
        _db.session.add(kpi)
        _db.session.commit()
        return kpi

    return _make


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def creator(make_user):
    return make_user(HEAD_OF_DEPARTMENT, name="Head Creator")


@pytest.fixture()
def assignee(make_user):
    return make_user(LECTURER, name="Assigned Lecturer")


@pytest.fixture()
def outsider(make_user):
    return make_user(LECTURER, name="Unrelated Lecturer")


@pytest.fixture()
def super_admin(make_user):
    return make_user("Super Admin", name="Admin")


@pytest.fixture()
def kpi(make_kpi, creator, assignee):
    """KPI by ``creator`` assigned to ``assignee``: one plain, one weekly deliverable."""
    return make_kpi(creator, assignees=[assignee])
