"""
Tests: health probes, app-level error handlers and the CLI.
"""

from kpiboard.models import db as _db


def test_ready(client):
    res = client.get("/api/v1/health/ready")
    assert res.status_code == 200
    assert res.get_json() == {"status": "ok"}


def test_live(client):
    res = client.get("/api/v1/health/live")
    assert res.status_code == 200
    data = res.get_json()
    assert data["status"] == "healthy"
    assert data["checks"]["database"]["status"] == "ok"
    assert data["checks"]["app"]["testing"] is True


def test_response_time_header(client):
    res = client.get("/api/v1/health/ready")
    assert "X-Request-Duration-Ms" in res.headers
    assert res.headers["X-Request-ID"]


def test_unknown_route_is_json(client):
    res = client.get("/api/v1/nowhere")
    assert res.status_code == 404
    assert res.get_json()["path"] == "/api/v1/nowhere"


def test_method_not_allowed(client):
    assert client.delete("/api/v1/health/ready").status_code == 405


def test_recompute_weights_command(app, make_kpi, creator):
    kpi = make_kpi(creator, year="2025-2026")

    result = app.test_cli_runner().invoke(args=["recompute-weights", "--year", "2025-2026"])
    assert result.exit_code == 0
    assert "2025-2026: 1 KPI(s)" in result.output
    _db.session.expire_all()
    assert _db.session.get(type(kpi), kpi.id).weight == 100.0
