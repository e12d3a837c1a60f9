"""
Tests: KPI API - listing, creation, deliverable patches, status, evidence,
deletion and concurrent writes.

Uses shared fixtures from conftest.py: client, session (autouse), kpi,
creator, assignee, outsider, super_admin, auth_headers.
"""

import io
import json

from sqlalchemy import text

from kpiboard.core.exceptions import EvidenceStorageError
from kpiboard.models import db as _db
from kpiboard.models.discrepancy import Discrepancy
from kpiboard.models.kpi import Kpi
from kpiboard.services import kpi_service
from kpiboard.services.kpi.user_state import UserStateStore
from kpiboard.services.kpi.weights import academic_year_key

BASE = "/api/v1/kpis"


# ── Helpers ──────────────────────────────────────────────────────────────────


def _ids(kpi):
    return [d["id"] for d in kpi.deliverables]


def _patch(client, kpi, user, auth_headers, **body):
    return client.patch(f"{BASE}/{kpi.id}", json=body, headers=auth_headers(user))


def _listed(client, user, auth_headers):
    res = client.get(BASE, headers=auth_headers(user))
    assert res.status_code == 200
    return res.get_json()


def _new_kpi_payload(header_id, **overrides):
    payload = {
        "name": "Teaching quality",
        "headerId": header_id,
        "deliverables": [{
            "title": "Course evaluations",
            "action": "Collect student feedback",
            "indicator": "Average rating",
            "performanceTarget": ">= 4.0",
            "timeline": "2026-06-30",
        }],
    }
    payload.update(overrides)
    return payload


# ── Listing ──────────────────────────────────────────────────────────────────


def test_list_requires_auth(client):
    res = client.get(BASE)
    assert res.status_code == 401
    assert res.get_json()["code"] == "ERR_UNAUTHORIZED"


def test_list_rejects_bad_token(client):
    res = client.get(BASE, headers={"Authorization": "Bearer not-a-token"})
    assert res.status_code == 401


def test_list_visibility(client, kpi, creator, assignee, outsider, super_admin, auth_headers):
    assert [k["id"] for k in _listed(client, assignee, auth_headers)] == [kpi.id]
    assert [k["id"] for k in _listed(client, creator, auth_headers)] == [kpi.id]
    assert [k["id"] for k in _listed(client, super_admin, auth_headers)] == [kpi.id]
    assert _listed(client, outsider, auth_headers) == []


def test_list_projects_for_caller(client, kpi, assignee, auth_headers):
    [view] = _listed(client, assignee, auth_headers)
    assert view["viewedUserId"] == assignee.id
    assert view["isAssignedUser"] is True
    assert view["isCreator"] is False
    assert len(view["deliverables"]) == 2
    assert view["header"]["name"] == "Research"


def test_role_and_department_targeting(client, make_kpi, make_user, make_department, creator, auth_headers):
    dept = make_department("History")
    member = make_user(department=dept)
    by_role = make_user("Assistant Lecturers")
    make_kpi(creator, departments=[dept], name="By department")
    make_kpi(creator, roles=["Assistant Lecturers"], name="By role")

    assert [k["name"] for k in _listed(client, member, auth_headers)] == ["By department"]
    assert [k["name"] for k in _listed(client, by_role, auth_headers)] == ["By role"]


def test_list_filters_by_year(client, make_kpi, creator, assignee, auth_headers):
    make_kpi(creator, assignees=[assignee], year="2020-2021", name="Old")
    make_kpi(creator, assignees=[assignee], name="Current")

    res = client.get(f"{BASE}?year=2020-2021", headers=auth_headers(assignee))
    assert [k["name"] for k in res.get_json()] == ["Old"]


def test_statuses(client, assignee, auth_headers):
    res = client.get(f"{BASE}/statuses", headers=auth_headers(assignee))
    assert res.get_json() == ["Pending", "In Progress", "Completed", "Approved", "Needs Revision"]


def test_user_kpis_access(client, kpi, creator, assignee, outsider, super_admin, auth_headers):
    res = client.get(f"{BASE}/user/{assignee.id}", headers=auth_headers(creator))
    assert res.status_code == 200
    assert res.get_json()[0]["viewedUserId"] == assignee.id

    assert client.get(f"{BASE}/user/{assignee.id}", headers=auth_headers(super_admin)).status_code == 200
    assert client.get(f"{BASE}/user/{assignee.id}", headers=auth_headers(assignee)).status_code == 200
    assert client.get(f"{BASE}/user/{assignee.id}", headers=auth_headers(outsider)).status_code == 403
    assert client.get(f"{BASE}/user/99999", headers=auth_headers(creator)).status_code == 404


# ── Create ───────────────────────────────────────────────────────────────────


def test_create_kpi(client, make_header, creator, assignee, auth_headers):
    header = make_header(creator)
    res = client.post(
        BASE,
        json=_new_kpi_payload(header.id, assignedUsers=[assignee.id]),
        headers=auth_headers(creator),
    )
    assert res.status_code == 201
    data = res.get_json()
    assert data["academicYear"] == academic_year_key()
    assert data["weight"] == 100.0
    assert data["isCreator"] is True
    assert data["assignedUsers"][0]["id"] == assignee.id
    [deliverable] = data["deliverables"]
    assert len(deliverable["id"]) == 24
    assert deliverable["weight"] == 100.0
    assert deliverable["timeline"] == "2026-06-30T00:00:00+00:00"
    assert data["lastUpdatedBy"]["userType"] == "creator"


def test_create_rebalances_year_weights(client, kpi, make_header, creator, assignee, auth_headers):
    header = make_header(creator)
    client.post(BASE, json=_new_kpi_payload(header.id, assignedUsers=[assignee.id]),
                headers=auth_headers(creator))
    assert _db.session.get(Kpi, kpi.id).weight == 50.0


def test_create_validation(client, make_header, creator, assignee, auth_headers):
    header = make_header(creator)

    res = client.post(BASE, json={"headerId": header.id}, headers=auth_headers(creator))
    assert res.status_code == 422
    assert "name" in res.get_json()["details"]

    res = client.post(BASE, json=_new_kpi_payload(header.id), headers=auth_headers(creator))
    assert res.status_code == 422

    bad = _new_kpi_payload(header.id, assignedUsers=[assignee.id])
    bad["deliverables"][0]["title"] = ""
    res = client.post(BASE, json=bad, headers=auth_headers(creator))
    assert res.status_code == 422
    assert "deliverables[0].title" in res.get_json()["details"]

    recurring = _new_kpi_payload(header.id, assignedUsers=[assignee.id])
    recurring["deliverables"][0].update({"isRecurring": True, "recurrencePattern": "hourly"})
    res = client.post(BASE, json=recurring, headers=auth_headers(creator))
    assert res.status_code == 422


def test_create_checks_references(client, make_header, creator, assignee, auth_headers):
    header = make_header(creator)
    res = client.post(BASE, json=_new_kpi_payload(99999, assignedUsers=[assignee.id]),
                      headers=auth_headers(creator))
    assert res.status_code == 404

    res = client.post(BASE, json=_new_kpi_payload(header.id, assignedUsers=[99999]),
                      headers=auth_headers(creator))
    assert res.status_code == 404


def test_create_respects_hierarchy(client, make_header, creator, make_user, auth_headers):
    header = make_header(creator)
    rector = make_user("Rector")

    res = client.post(BASE, json=_new_kpi_payload(header.id, assignedRoles=["Rector"]),
                      headers=auth_headers(creator))
    assert res.status_code == 403

    res = client.post(BASE, json=_new_kpi_payload(header.id, assignedUsers=[rector.id]),
                      headers=auth_headers(creator))
    assert res.status_code == 403

    res = client.post(BASE, json=_new_kpi_payload(header.id, assignedRoles=["Chancellor"]),
                      headers=auth_headers(creator))
    assert res.status_code == 422


def test_create_respects_department_scope(client, make_header, make_department, make_user, auth_headers):
    own = make_department("Physics")
    foreign = make_department("Arts")
    head = make_user("Heads of Departments", department=own)
    header = make_header(head)

    res = client.post(BASE, json=_new_kpi_payload(header.id, departments=[own.id]),
                      headers=auth_headers(head))
    assert res.status_code == 201

    res = client.post(BASE, json=_new_kpi_payload(header.id, departments=[foreign.id]),
                      headers=auth_headers(head))
    assert res.status_code == 403


def test_create_rejects_non_object_body(client, creator, auth_headers):
    res = client.post(BASE, json=[1, 2], headers=auth_headers(creator))
    assert res.status_code == 400


def test_create_rejects_unsupported_content_type(client, creator, auth_headers):
    res = client.post(BASE, data="name=x", content_type="text/plain", headers=auth_headers(creator))
    assert res.status_code == 415


# ── Patch ────────────────────────────────────────────────────────────────────


def test_patch_round_trip(client, kpi, assignee, auth_headers):
    plain_id = _ids(kpi)[0]
    res = _patch(client, kpi, assignee, auth_headers, deliverableId=plain_id, updates={
        "status": "In Progress",
        "assigneeScore": {"value": 80, "notes": "two papers", "timestamp": "2025-10-01T09:30:00Z"},
    })
    assert res.status_code == 200
    deliverable = res.get_json()["deliverables"][0]
    assert deliverable["status"] == "In Progress"
    assert deliverable["assigneeScore"]["value"] == 80
    assert deliverable["assigneeScore"]["notes"] == "two papers"
    assert deliverable["assigneeScore"]["timestamp"] == "2025-10-01T09:30:00+00:00"
    assert deliverable["assigneeScore"]["enteredBy"] == assignee.id

    [view] = _listed(client, assignee, auth_headers)
    assert view["deliverables"][0]["assigneeScore"] == deliverable["assigneeScore"]
    assert view["lastUpdatedBy"]["user"] == assignee.id
    assert view["lastUpdatedBy"]["userType"] == "assignee"


def test_patch_keeps_users_separate(client, kpi, creator, assignee, auth_headers):
    plain_id = _ids(kpi)[0]
    _patch(client, kpi, assignee, auth_headers, deliverableId=plain_id, updates={"assigneeScore": 80})

    [view] = _listed(client, creator, auth_headers)
    assert view["deliverables"][0]["assigneeScore"] is None


def test_patch_weekly_occurrence_by_date(client, kpi, assignee, auth_headers):
    weekly_id = _ids(kpi)[1]
    res = _patch(client, kpi, assignee, auth_headers, deliverableId=weekly_id,
                 occurrenceLabel="2025-08-12", updates={"assigneeScore": 70})
    assert res.status_code == 200

    occurrences = {o["periodLabel"]: o for o in res.get_json()["deliverables"][1]["occurrences"]}
    assert occurrences["2025-W33"]["assigneeScore"]["value"] == 70
    assert occurrences["2025-W33"]["dueDate"] == "2025-08-17T23:59:59.999000+00:00"


def test_patch_rejects_labels_outside_the_pattern(client, kpi, creator, assignee, auth_headers):
    weekly_id = _ids(kpi)[1]
    for label in ("not-a-period-label-at-all-xyz", "2025-08", "2025-W60"):
        res = _patch(client, kpi, assignee, auth_headers, deliverableId=weekly_id,
                     occurrenceLabel=label, updates={"assigneeScore": 90})
        assert res.status_code == 422
        assert res.get_json()["details"]["occurrenceLabel"] == label

    res = _patch(client, kpi, creator, auth_headers, evaluatedUserId=assignee.id, deliverableId=weekly_id,
                 occurrenceLabel="not-a-period-label-at-all-xyz", updates={"creatorScore": 40})
    assert res.status_code == 422
    assert _db.session.get(Kpi, kpi.id).revision == 1
    assert _db.session.query(Discrepancy).count() == 0


def test_patch_batch(client, kpi, assignee, auth_headers):
    plain_id, weekly_id = _ids(kpi)
    res = _patch(client, kpi, assignee, auth_headers, deliverables=[
        {"deliverableId": plain_id, "status": "Completed"},
        {"deliverableId": weekly_id, "scope": "occurrence", "occurrenceLabel": "2025-W40", "status": "Completed"},
    ])
    assert res.status_code == 200
    plain, weekly = res.get_json()["deliverables"]
    assert plain["status"] == "Completed"
    assert weekly["status"] == "Pending"
    assert any(o["periodLabel"] == "2025-W40" and o["status"] == "Completed" for o in weekly["occurrences"])


def test_patch_permissions(client, kpi, creator, assignee, outsider, auth_headers):
    plain_id = _ids(kpi)[0]

    res = _patch(client, kpi, assignee, auth_headers, deliverableId=plain_id, updates={"creatorScore": 90})
    assert res.status_code == 403

    res = _patch(client, kpi, assignee, auth_headers, evaluatedUserId=creator.id,
                 deliverableId=plain_id, updates={"assigneeScore": 90})
    assert res.status_code == 403

    res = _patch(client, kpi, outsider, auth_headers, deliverableId=plain_id, updates={"assigneeScore": 90})
    assert res.status_code == 403

    res = _patch(client, kpi, creator, auth_headers, evaluatedUserId=99999,
                 deliverableId=plain_id, updates={"creatorScore": 90})
    assert res.status_code == 404


def test_patch_rejections(client, kpi, assignee, auth_headers):
    plain_id = _ids(kpi)[0]

    res = _patch(client, kpi, assignee, auth_headers, deliverableId="f" * 24, updates={"status": "Completed"})
    assert res.status_code == 404

    res = _patch(client, kpi, assignee, auth_headers, deliverableId=plain_id,
                 occurrenceLabel="2025-W33", updates={"status": "Completed"})
    assert res.status_code == 422

    res = _patch(client, kpi, assignee, auth_headers, deliverableId=plain_id, updates={"assigneeScore": 101})
    assert res.status_code == 422

    res = _patch(client, kpi, assignee, auth_headers, deliverableId=plain_id, updates={"status": "Done"})
    assert res.status_code == 422

    assert client.patch(f"{BASE}/99999", json={}, headers=auth_headers(assignee)).status_code == 404
    assert client.patch(f"{BASE}/{kpi.id}", json=[1], headers=auth_headers(assignee)).status_code == 400

    [view] = _listed(client, assignee, auth_headers)
    assert view["revision"] == 1


def test_creator_score_on_assignee_view_flags_discrepancy(client, kpi, creator, assignee, auth_headers):
    plain_id = _ids(kpi)[0]
    _patch(client, kpi, assignee, auth_headers, deliverableId=plain_id, updates={"assigneeScore": 80})

    res = _patch(client, kpi, creator, auth_headers, evaluatedUserId=assignee.id,
                 deliverableId=plain_id, updates={"creatorScore": 55})
    assert res.status_code == 200
    data = res.get_json()
    assert data["viewedUserId"] == assignee.id
    deliverable = data["deliverables"][0]
    assert deliverable["creatorScore"]["enteredBy"] == creator.id
    assert deliverable["assigneeScore"]["value"] == 80
    assert deliverable["discrepancy"]["hasOpen"] is True
    assert data["lastUpdatedBy"]["userType"] == "creator"


def test_patch_with_uploaded_files(client, kpi, assignee, auth_headers, evidence_dir):
    plain_id = _ids(kpi)[0]
    res = client.patch(
        f"{BASE}/{kpi.id}",
        data={
            "deliverableIds": json.dumps([plain_id]),
            "file": (io.BytesIO(b"%PDF-1.4"), "0-report.pdf"),
        },
        content_type="multipart/form-data",
        headers=auth_headers(assignee),
    )
    assert res.status_code == 200
    [url] = res.get_json()["deliverables"][0]["evidence"]
    assert url.startswith("/uploads/evidence/")
    assert url.endswith("-0-report.pdf")
    assert (evidence_dir / url.rsplit("/", 1)[1]).read_bytes() == b"%PDF-1.4"


def test_patch_rejects_unmatched_files(client, kpi, assignee, auth_headers, evidence_dir):
    res = client.patch(
        f"{BASE}/{kpi.id}",
        data={"file": (io.BytesIO(b"x"), "report.pdf")},
        content_type="multipart/form-data",
        headers=auth_headers(assignee),
    )
    assert res.status_code == 422
    assert res.get_json()["details"]["files"] == ["report.pdf"]
    assert not evidence_dir.exists() or not any(evidence_dir.iterdir())


# ── Status ───────────────────────────────────────────────────────────────────


def test_creator_sets_global_status(client, kpi, creator, assignee, auth_headers):
    res = client.patch(f"{BASE}/{kpi.id}/status", json={"status": "Completed"}, headers=auth_headers(creator))
    assert res.status_code == 200
    assert res.get_json() == {"status": "Completed", "scope": "global", "targetUserId": creator.id}

    [view] = _listed(client, assignee, auth_headers)
    assert view["status"] == "Completed"
    assert view["globalStatus"] == "Completed"


def test_assignee_sets_own_status(client, kpi, creator, assignee, auth_headers):
    res = client.patch(f"{BASE}/{kpi.id}/status", json={"status": "In Progress"}, headers=auth_headers(assignee))
    assert res.get_json() == {"status": "In Progress", "scope": "assignee", "targetUserId": assignee.id}

    [creator_view] = _listed(client, creator, auth_headers)
    assert creator_view["status"] == "Pending"
    [assignee_view] = _listed(client, assignee, auth_headers)
    assert assignee_view["status"] == "In Progress"


def test_creator_sets_status_for_one_assignee(client, kpi, creator, assignee, auth_headers):
    res = client.patch(f"{BASE}/{kpi.id}/status", json={"status": "Needs Revision", "assigneeId": assignee.id},
                       headers=auth_headers(creator))
    assert res.get_json()["scope"] == "assignee"
    assert _db.session.get(Kpi, kpi.id).status == "Pending"


def test_creator_status_without_promotion(client, kpi, creator, auth_headers):
    res = client.patch(f"{BASE}/{kpi.id}/status", json={"status": "Approved", "promoteGlobally": False},
                       headers=auth_headers(creator))
    assert res.get_json()["scope"] == "assignee"


def test_status_validation(client, kpi, creator, assignee, outsider, auth_headers):
    url = f"{BASE}/{kpi.id}/status"
    assert client.patch(url, json={}, headers=auth_headers(creator)).status_code == 400
    assert client.patch(url, json={"status": "Finished"}, headers=auth_headers(creator)).status_code == 422
    assert client.patch(url, json={"status": "Completed", "assigneeId": creator.id},
                        headers=auth_headers(assignee)).status_code == 403
    assert client.patch(url, json={"status": "Completed"}, headers=auth_headers(outsider)).status_code == 403


# ── Evidence upload ──────────────────────────────────────────────────────────


def _upload(client, kpi, user, auth_headers, **form):
    form.setdefault("file", (io.BytesIO(b"scan"), "scan.png"))
    return client.post(f"{BASE}/{kpi.id}/upload", data=form, content_type="multipart/form-data",
                       headers=auth_headers(user))


def test_upload_evidence(client, kpi, assignee, auth_headers):
    plain_id = _ids(kpi)[0]
    res = _upload(client, kpi, assignee, auth_headers, deliverableId=plain_id)
    assert res.status_code == 200
    data = res.get_json()
    assert data["uploadedUrl"].endswith("-scan.png")
    assert data["kpi"]["deliverables"][0]["evidence"] == [data["uploadedUrl"]]

    served = client.get(data["uploadedUrl"])
    assert served.status_code == 200
    assert served.data == b"scan"


def test_creator_upload_lands_in_both_slices(client, kpi, creator, assignee, auth_headers):
    weekly_id = _ids(kpi)[1]
    res = _upload(client, kpi, creator, auth_headers, deliverableId=weekly_id,
                  occurrenceLabel="2025-08-12", assigneeId=str(assignee.id))
    assert res.status_code == 200
    url = res.get_json()["uploadedUrl"]

    store = UserStateStore.load(_db.session.get(Kpi, kpi.id))
    for user in (assignee, creator):
        occurrence = store.find(user.id, weekly_id).find_occurrence("2025-W33")
        assert occurrence.evidence == [url]


def test_upload_rejections(client, kpi, assignee, auth_headers):
    plain_id = _ids(kpi)[0]
    url = f"{BASE}/{kpi.id}/upload"

    res = client.post(url, data={"deliverableId": plain_id}, content_type="multipart/form-data",
                      headers=auth_headers(assignee))
    assert res.status_code == 400

    assert _upload(client, kpi, assignee, auth_headers).status_code == 400
    assert _upload(client, kpi, assignee, auth_headers, deliverableId="f" * 24).status_code == 404
    assert _upload(client, kpi, assignee, auth_headers, deliverableId=plain_id,
                   occurrenceLabel="2025-W33").status_code == 422


def test_upload_rejects_labels_outside_the_pattern(client, kpi, assignee, auth_headers, evidence_dir):
    weekly_id = _ids(kpi)[1]
    res = _upload(client, kpi, assignee, auth_headers, deliverableId=weekly_id, occurrenceLabel="2025-08")
    assert res.status_code == 422
    assert res.get_json()["details"] == {"occurrenceLabel": "2025-08"}
    assert not evidence_dir.exists() or not any(evidence_dir.iterdir())


# ── Storage failures ─────────────────────────────────────────────────────────


def _failing_storage(stream, filename):
    raise EvidenceStorageError(f"Could not store {filename}")


def test_storage_failure_leaves_patch_unapplied(client, kpi, assignee, auth_headers, monkeypatch):
    monkeypatch.setattr(kpi_service, "save_evidence_file", _failing_storage)
    plain_id = _ids(kpi)[0]

    res = client.patch(
        f"{BASE}/{kpi.id}",
        data={
            "deliverableId": plain_id,
            "updates": json.dumps({"assigneeScore": 75, "status": "Completed"}),
            "deliverableIds": json.dumps([plain_id]),
            "file": (io.BytesIO(b"%PDF-1.4"), "0-report.pdf"),
        },
        content_type="multipart/form-data",
        headers=auth_headers(assignee),
    )
    assert res.status_code == 500
    assert res.get_json()["code"] == "ERR_STORAGE"

    _db.session.expire_all()
    stored = _db.session.get(Kpi, kpi.id)
    assert stored.revision == 1
    assert stored.user_deliverables == {}
    [view] = _listed(client, assignee, auth_headers)
    assert view["deliverables"][0]["assigneeScore"] is None
    assert view["deliverables"][0]["status"] == "Pending"


def test_storage_failure_on_upload(client, kpi, assignee, auth_headers, monkeypatch):
    monkeypatch.setattr(kpi_service, "save_evidence_file", _failing_storage)

    res = _upload(client, kpi, assignee, auth_headers, deliverableId=_ids(kpi)[0])
    assert res.status_code == 500
    assert res.get_json()["code"] == "ERR_STORAGE"
    _db.session.expire_all()
    assert _db.session.get(Kpi, kpi.id).revision == 1


# ── Delete ───────────────────────────────────────────────────────────────────


def test_delete_kpi(client, kpi, make_kpi, creator, assignee, auth_headers):
    survivor = make_kpi(creator, assignees=[assignee], name="Survivor")

    assert client.delete(f"{BASE}/{kpi.id}", headers=auth_headers(assignee)).status_code == 403

    res = client.delete(f"{BASE}/{kpi.id}", headers=auth_headers(creator))
    assert res.status_code == 200
    assert res.get_json() == {"message": "KPI deleted", "id": kpi.id}
    assert _db.session.get(Kpi, kpi.id) is None
    assert _db.session.get(Kpi, survivor.id).weight == 100.0
    assert client.delete(f"{BASE}/{kpi.id}", headers=auth_headers(creator)).status_code == 404


# ── Concurrency ──────────────────────────────────────────────────────────────


def _concurrent_store(bump_on):
    """UserStateStore whose load() bumps the row revision behind the session's back."""
    calls = []

    class _Store(UserStateStore):
        @classmethod
        def load(cls, kpi):
            calls.append(kpi.id)
            if len(calls) in bump_on:
                _db.session.execute(
                    text("UPDATE kpis SET revision = revision + 1 WHERE id = :id"), {"id": kpi.id}
                )
            return super().load(kpi)

    return _Store, calls


def test_concurrent_write_is_retried(client, kpi, creator, auth_headers, monkeypatch):
    store_cls, calls = _concurrent_store(bump_on={1})
    monkeypatch.setattr(kpi_service, "UserStateStore", store_cls)

    res = client.patch(f"{BASE}/{kpi.id}/status", json={"status": "Completed"}, headers=auth_headers(creator))
    assert res.status_code == 200
    assert len(calls) == 2
    refreshed = _db.session.get(Kpi, kpi.id)
    assert refreshed.status == "Completed"
    assert refreshed.revision == 2


def test_persistent_conflict_returns_409(app, client, kpi, creator, auth_headers, monkeypatch):
    store_cls, calls = _concurrent_store(bump_on=set(range(1, 100)))
    monkeypatch.setattr(kpi_service, "UserStateStore", store_cls)

    res = client.patch(f"{BASE}/{kpi.id}/status", json={"status": "Completed"}, headers=auth_headers(creator))
    assert res.status_code == 409
    assert res.get_json()["code"] == "ERR_CONFLICT_STATE"
    assert len(calls) == app.config["KPI_SAVE_MAX_RETRIES"] + 1
    assert _db.session.get(Kpi, kpi.id).status == "Pending"


def test_replayed_patch_commits_a_single_update(client, kpi, creator, assignee, auth_headers, monkeypatch):
    plain_id = _ids(kpi)[0]
    _patch(client, kpi, assignee, auth_headers, deliverableId=plain_id, updates={"assigneeScore": 80})
    assert _db.session.get(Kpi, kpi.id).revision == 2

    # calls: dry run, first attempt (bumped), replay, response view
    store_cls, calls = _concurrent_store(bump_on={2})
    monkeypatch.setattr(kpi_service, "UserStateStore", store_cls)
    res = _patch(client, kpi, creator, auth_headers, evaluatedUserId=assignee.id,
                 deliverableId=plain_id, updates={"creatorScore": 55})
    assert res.status_code == 200
    assert len(calls) == 4
    last = res.get_json()["lastUpdatedBy"]
    assert (last["user"], last["userType"]) == (creator.id, "creator")

    _db.session.expire_all()
    assert _db.session.get(Kpi, kpi.id).revision == 3
    [record] = _db.session.query(Discrepancy).all()
    assert [h["action"] for h in record.history] == ["flagged"]
