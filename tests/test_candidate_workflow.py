from __future__ import annotations

import json

from sqlalchemy import func, select

from db import SessionLocal
from models import AuditLog, Candidate


def _api(client, action: str, data: dict, token: str | None):
    payload = {"action": action, "token": token, "data": data}
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _ok(res) -> dict:
    body = res.get_json()
    assert body["ok"] is True, body
    return body["data"]


def _submit(client, tokens, *, email: str, mobile: str, level: str = "Fresher", name: str = "Asha Rao") -> str:
    res = _api(
        client,
        "CANDIDATE_SUBMIT",
        {
            "fullName": name,
            "gender": "Female",
            "personalEmail": email,
            "mobileNumber": mobile,
            "experienceLevel": level,
            "source": "Campus",
            "college": "City College",
            "batchLabel": "B1",
        },
        tokens["HR_TAG"],
    )
    return _ok(res)["candidate"]["candidateId"]


def _send_to_ops_and_ld(client, tokens, ids: list[str]) -> None:
    _ok(_api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": ids}, tokens["HR_TAG"]))
    _ok(_api(client, "CANDIDATES_SEND_TO_ADMIN_AND_LD", {"candidateIds": ids}, tokens["HR_TAG"]))


def _decide(client, tokens, cid: str, status: str, reason: str = ""):
    return _api(client, "LD_UPDATE_DECISION", {"candidateId": cid, "ldStatus": status, "ldReason": reason}, tokens["LD"])


def _load(cid: str) -> Candidate:
    with SessionLocal() as db:
        return db.execute(select(Candidate).where(Candidate.candidateId == cid)).scalar_one()


def test_submit_then_duplicate_email_is_rejected(app_client, tokens):
    _app, client = app_client

    cid = _submit(client, tokens, email="A@X.com", mobile="90000 00001")
    cand = _load(cid)
    assert cand.status == "submitted"
    assert cand.personalEmail == "a@x.com"
    assert cand.mobileNumber == "9000000001"
    assert cand.ldStatus == "Pending"

    res = _api(
        client,
        "CANDIDATE_SUBMIT",
        {
            "fullName": "Other",
            "gender": "Male",
            "personalEmail": "a@x.com",
            "mobileNumber": "9000000002",
            "experienceLevel": "Lateral",
        },
        tokens["HR_TAG"],
    )
    assert res.status_code == 400
    body = res.get_json()
    assert body["error"]["code"] == "DUPLICATE"
    assert body["error"]["message"] == "Candidate with this email or mobile number already exists"


def test_submit_validates_mobile_and_reference(app_client, tokens):
    _app, client = app_client
    base = {"fullName": "X", "gender": "Male", "personalEmail": "x@x.com", "experienceLevel": "Fresher"}

    res = _api(client, "CANDIDATE_SUBMIT", {**base, "mobileNumber": "12345"}, tokens["HR_TAG"])
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"

    res = _api(
        client,
        "CANDIDATE_SUBMIT",
        {**base, "mobileNumber": "9000000009", "source": "Reference"},
        tokens["HR_TAG"],
    )
    assert res.get_json()["error"]["message"] == "Reference name is required when source is Reference"


def test_send_to_ops_counts_only_submitted(app_client, tokens):
    _app, client = app_client
    c1 = _submit(client, tokens, email="c1@x.com", mobile="9000000011")
    c2 = _submit(client, tokens, email="c2@x.com", mobile="9000000012")

    data = _ok(_api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [c1]}, tokens["HR_TAG"]))
    assert data["sentCount"] == 1

    data = _ok(_api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [c1, c2]}, tokens["HR_TAG"]))
    assert data["sentCount"] == 1
    assert data["candidateIds"] == [c2]
    assert data["message"] == "Successfully sent 1 candidate(s) to HR Ops team"

    res = _api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [c1, c2]}, tokens["HR_TAG"])
    assert res.status_code == 400
    assert res.get_json()["error"]["message"] == "No candidates were sent. They may have already been sent."


def test_employee_id_conflict_names_current_holder(app_client, tokens):
    _app, client = app_client
    c1 = _submit(client, tokens, email="b1@x.com", mobile="9000000021", name="Bina One")
    c2 = _submit(client, tokens, email="b2@x.com", mobile="9000000022", name="Bala Two")
    _ok(_api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [c1, c2]}, tokens["HR_TAG"]))

    data = _ok(_api(client, "ASSIGN_EMPLOYEE_ID", {"candidateId": c1, "employeeId": "emp001"}, tokens["HR_OPS"]))
    assert data["candidate"]["employeeId"] == "EMP001"

    res = _api(client, "ASSIGN_EMPLOYEE_ID", {"candidateId": c2, "employeeId": "EMP001"}, tokens["HR_OPS"])
    assert res.status_code == 400
    err = res.get_json()["error"]
    assert err["code"] == "CONFLICT"
    assert "Bina One" in err["message"]
    assert _load(c2).employeeId is None


def test_identifier_conflicts_with_employee_directory(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="d1@x.com", mobile="9000000031")
    _ok(_api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [cid]}, tokens["HR_TAG"]))

    # HO001 is a seeded employee id; its email is ho001@corp.example.com.
    res = _api(client, "ASSIGN_EMPLOYEE_ID", {"candidateId": cid, "employeeId": "HO001"}, tokens["HR_OPS"])
    assert res.get_json()["error"]["code"] == "CONFLICT"
    assert "employee records" in res.get_json()["error"]["message"]

    res = _api(
        client, "ASSIGN_OFFICE_EMAIL", {"candidateId": cid, "officeEmail": "HO001@corp.example.com"}, tokens["IT"]
    )
    assert res.get_json()["error"]["code"] == "CONFLICT"


def test_assignment_requires_eligible_state(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="e1@x.com", mobile="9000000041")

    res = _api(client, "ASSIGN_OFFICE_EMAIL", {"candidateId": cid, "officeEmail": "e1@corp.com"}, tokens["HR_OPS"])
    assert res.status_code == 404
    assert res.get_json()["error"]["message"] == "Candidate is not eligible for office email assignment"

    res = _api(client, "ASSIGN_OFFICE_EMAIL", {"candidateId": "CAND-NOPE", "officeEmail": "z@corp.com"}, tokens["HR_OPS"])
    assert res.status_code == 404
    assert res.get_json()["error"]["message"] == "Candidate not found"

    res = _api(client, "ASSIGN_EMPLOYEE_ID", {"candidateId": cid, "employeeId": "E-1"}, tokens["HR_OPS"])
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"

    res = _api(client, "ASSIGN_PERMANENT_ID", {"candidateId": cid, "permanentEmployeeId": "PERM01"}, tokens["HR_OPS"])
    assert res.get_json()["error"]["message"] == (
        "Candidate not found or not sent from HR Tag for permanent ID assignment"
    )


def test_ld_rejection_fans_out_to_every_team(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="f1@x.com", mobile="9000000051")
    _send_to_ops_and_ld(client, tokens, [cid])

    res = _decide(client, tokens, cid, "Rejected")
    assert res.get_json()["error"]["message"] == "Reason is required for rejected status"

    res = _decide(client, tokens, cid, "Rejected", "Better Offer")
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"

    _ok(_decide(client, tokens, cid, "Rejected", "Low Score"))
    cand = _load(cid)
    assert cand.ldStatus == "Rejected"
    assert cand.ldReason == "Low Score"
    assert cand.sentToHRTag is True and cand.sentToHRTagAt
    assert cand.sentToAdmin is True and cand.sentToAdminAt
    assert cand.routedToHROps and cand.routedToIT
    assert cand.routingReason == "L&D Rejected"

    for view, role in (("rejected-hrtag", "HR_TAG"), ("rejected-admin", "ADMIN"), ("rejected-it", "IT")):
        data = _ok(_api(client, "DASHBOARD_LIST", {"view": view}, tokens[role]))
        assert [c["candidateId"] for c in data["candidates"]] == [cid]
        assert data["candidates"][0]["currentStage"] == "L&D Rejected"


def test_ld_decision_requires_candidate_in_ld(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="g1@x.com", mobile="9000000061")

    res = _decide(client, tokens, cid, "Selected")
    assert res.get_json()["error"]["message"] == "Candidate has not been sent to L&D"

    res = _decide(client, tokens, "CAND-MISSING", "Selected")
    assert res.status_code == 404


def test_send_to_delivery_splits_by_experience_level(app_client, tokens):
    _app, client = app_client
    fresher = _submit(client, tokens, email="h1@x.com", mobile="9000000071", level="Fresher")
    lateral = _submit(client, tokens, email="h2@x.com", mobile="9000000072", level="Lateral")
    _send_to_ops_and_ld(client, tokens, [fresher, lateral])

    with SessionLocal() as db:
        # Exercise the allocation reset on the lateral path.
        db.execute(
            Candidate.__table__.update().where(Candidate.candidateId == lateral).values(allocationStatus="On Hold")
        )
        db.commit()

    _ok(_decide(client, tokens, fresher, "Selected"))
    _ok(_decide(client, tokens, lateral, "Selected"))

    data = _ok(_api(client, "LD_SEND_TO_DELIVERY", {"candidateIds": [fresher, lateral]}, tokens["LD"]))
    assert data["sentCount"] == 2
    assert data["breakdown"] == {"freshers": 1, "laterals": 1}

    f, lat = _load(fresher), _load(lateral)
    assert f.sentToDelivery is True
    assert lat.sentToDelivery is True
    assert lat.allocationStatus == "Pending Allocation"

    res = _api(client, "LD_SEND_TO_DELIVERY", {"candidateIds": [fresher, lateral]}, tokens["LD"])
    assert res.get_json()["error"]["message"] == "No eligible candidates found for delivery team"


def test_hrops_standard_path_requires_both_identifiers(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="i1@x.com", mobile="9000000081")
    _ok(_api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [cid]}, tokens["HR_TAG"]))
    _ok(_api(client, "ASSIGN_OFFICE_EMAIL", {"candidateId": cid, "officeEmail": "i1@corp.com"}, tokens["IT"]))

    res = _api(client, "HROPS_SEND_TO_DELIVERY", {"candidateIds": [cid]}, tokens["HR_OPS"])
    assert res.status_code == 400
    assert "both Office Email and Employee ID" in res.get_json()["error"]["message"]

    _ok(_api(client, "ASSIGN_EMPLOYEE_ID", {"candidateId": cid, "employeeId": "TR100"}, tokens["HR_OPS"]))
    data = _ok(_api(client, "HROPS_SEND_TO_DELIVERY", {"candidateIds": [cid]}, tokens["HR_OPS"]))
    assert data["sentCount"] == 1
    assert _load(cid).sentToDelivery is True


def test_permanent_id_path_end_to_end(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="j1@x.com", mobile="9000000091")
    other = _submit(client, tokens, email="j2@x.com", mobile="9000000092")
    _send_to_ops_and_ld(client, tokens, [cid, other])
    _ok(_decide(client, tokens, cid, "Selected"))
    _ok(_api(client, "LD_SEND_TO_DELIVERY", {"candidateIds": [cid]}, tokens["LD"]))
    _ok(_api(client, "DELIVERY_SEND_TO_HRTAG", {"candidateIds": [cid]}, tokens["DELIVERY"]))

    data = _ok(_api(client, "CANDIDATES_SEND_TO_HROPS_PERMANENT", {"candidateIds": [cid, other]}, tokens["HR_TAG"]))
    assert data["sentCount"] == 1
    assert "1 skipped" in data["message"]

    _ok(_api(client, "ASSIGN_PERMANENT_ID", {"candidateId": cid, "permanentEmployeeId": "perm0001"}, tokens["HR_OPS"]))
    data = _ok(_api(client, "HROPS_SEND_TO_DELIVERY_PERMANENT", {"candidateIds": [cid]}, tokens["HR_OPS"]))
    assert data["sentCount"] == 1

    res = _api(client, "HROPS_SEND_TO_DELIVERY_PERMANENT", {"candidateIds": [cid]}, tokens["HR_OPS"])
    assert res.status_code == 400

    cand = _load(cid)
    assert cand.permanentEmployeeId == "PERM0001"
    assert cand.sentToDeliveryAt >= cand.permanentIdAssignedAt


def test_allocation_and_admin_notes(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="k1@x.com", mobile="9000000101", level="Lateral")

    res = _api(client, "DELIVERY_UPDATE_ALLOCATION", {"candidateId": cid, "allocationStatus": "Allocated"}, tokens["DELIVERY"])
    assert res.get_json()["error"]["message"] == "Candidate not found or not sent to delivery"

    _send_to_ops_and_ld(client, tokens, [cid])
    _ok(_decide(client, tokens, cid, "Selected"))
    _ok(_api(client, "LD_SEND_TO_DELIVERY", {"candidateIds": [cid]}, tokens["LD"]))

    res = _api(client, "DELIVERY_UPDATE_ALLOCATION", {"candidateId": cid, "allocationStatus": "Benched"}, tokens["DELIVERY"])
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"

    _ok(
        _api(
            client,
            "DELIVERY_UPDATE_ALLOCATION",
            {"candidateId": cid, "allocationStatus": "Allocated", "assignedProject": "Apollo", "assignedTeam": "Core"},
            tokens["DELIVERY"],
        )
    )
    _ok(_api(client, "DELIVERY_UPDATE_ALLOCATION", {"candidateId": cid, "allocationStatus": "On Hold"}, tokens["DELIVERY"]))
    cand = _load(cid)
    assert cand.allocationStatus == "On Hold"
    assert cand.assignedProject == "Apollo"

    data = _ok(_api(client, "ADMIN_UPDATE_NOTES", {"candidateId": cid, "adminNotes": "Docs verified"}, tokens["ADMIN"]))
    assert data["candidate"]["adminNotes"] == "Docs verified"


def test_candidate_details_stage_and_timeline(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="l1@x.com", mobile="9000000111")
    _send_to_ops_and_ld(client, tokens, [cid])

    data = _ok(_api(client, "CANDIDATE_DETAILS", {"candidateId": cid}, tokens["ADMIN"]))
    assert data["candidate"]["currentStage"] == "L&D Review"
    assert data["candidate"]["isFullyProcessed"] is False
    stamps = [e["at"] for e in data["timeline"]]
    assert stamps == sorted(stamps)
    assert len(stamps) >= 3


def test_role_gate_rejects_other_teams(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="m1@x.com", mobile="9000000121")

    res = _api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [cid]}, tokens["LD"])
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"

    res = _api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [cid]}, None)
    assert res.status_code == 401

    res = _api(client, "NOT_A_REAL_ACTION", {}, tokens["HR_TAG"])
    assert res.status_code == 400


def test_transitions_write_audit_rows(app_client, tokens):
    _app, client = app_client
    cid = _submit(client, tokens, email="n1@x.com", mobile="9000000131")
    _ok(_api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [cid]}, tokens["HR_TAG"]))

    with SessionLocal() as db:
        n = db.execute(
            select(func.count())
            .select_from(AuditLog)
            .where(AuditLog.entityType == "CANDIDATE")
            .where(AuditLog.entityId == cid)
        ).scalar()
    assert n == 2
