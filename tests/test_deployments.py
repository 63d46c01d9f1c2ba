from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from actions import candidate_state
from actions.deployment_records import (
    BUCKET_ACTIVE,
    BUCKET_INACTIVE,
    BUCKET_TRANSFER,
    deployment_bucket,
    find_by_candidate,
    tenure,
    upsert_on_email_sent,
)
from conftest import PASSWORD, seed_employee
from db import SessionLocal
from models import Candidate, Deployment
from services.notification_gateway import SendResult
from utils import ApiError


def _api(client, action: str, data: dict, token: str | None):
    payload = {"action": action, "token": token, "data": data}
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _ok(res) -> dict:
    body = res.get_json()
    assert body["ok"] is True, body
    return body["data"]


def _ready_for_deployment(client, tokens, *, email: str, mobile: str, name: str = "Ravi Kumar") -> str:
    """Lateral candidate selected by L&D and handed to Delivery."""

    res = _api(
        client,
        "CANDIDATE_SUBMIT",
        {
            "fullName": name,
            "gender": "Male",
            "personalEmail": email,
            "mobileNumber": mobile,
            "experienceLevel": "Lateral",
            "source": "Walk-in",
        },
        tokens["HR_TAG"],
    )
    cid = _ok(res)["candidate"]["candidateId"]
    _ok(_api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [cid]}, tokens["HR_TAG"]))
    _ok(_api(client, "ASSIGN_EMPLOYEE_ID", {"candidateId": cid, "employeeId": f"TR{mobile[-4:]}"}, tokens["HR_OPS"]))
    _ok(_api(client, "CANDIDATES_SEND_TO_ADMIN_AND_LD", {"candidateIds": [cid]}, tokens["HR_TAG"]))
    _ok(_api(client, "LD_UPDATE_DECISION", {"candidateId": cid, "ldStatus": "Selected"}, tokens["LD"]))
    _ok(_api(client, "LD_SEND_TO_DELIVERY", {"candidateIds": [cid]}, tokens["LD"]))
    return cid


def _send_email(client, tokens, cid: str, recipients: list[str], cc: list[str] | None = None):
    return _api(
        client,
        "SEND_DEPLOYMENT_EMAIL",
        {
            "candidateId": cid,
            "formData": {"role": "Analyst", "client": "Acme", "bu": "Retail", "reportingTo": "Jo Lead"},
            "recipientEmails": recipients,
            "ccEmails": cc or [],
            "subject": "Deployment",
            "content": "Welcome aboard",
        },
        tokens["DELIVERY"],
    )


def _candidate(cid: str) -> Candidate:
    with SessionLocal() as db:
        return db.execute(select(Candidate).where(Candidate.candidateId == cid)).scalar_one()


def _deployment_count() -> int:
    with SessionLocal() as db:
        return int(db.execute(select(func.count()).select_from(Deployment)).scalar() or 0)


def test_deployment_email_creates_record_and_flags_candidate(app_client, tokens, outbox):
    _app, client = app_client
    cid = _ready_for_deployment(client, tokens, email="r1@x.com", mobile="9100000001")

    data = _ok(_send_email(client, tokens, cid, ["a@client.com", "b@client.com"], ["c@client.com"]))
    assert data["message"] == "Deployment email sent to 2 recipients (CC: 1)"
    assert data["data"]["successful"] == 2
    assert data["data"]["sentFrom"] == "manager@corp.example.com"
    assert len(outbox.outbox) == 2
    assert outbox.outbox[0]["cc"] == ["c@client.com"]

    dep = data["deployment"]
    assert dep["emailStatus"] == "Sent"
    assert dep["client"] == "Acme"
    assert dep["recipientEmails"] == ["a@client.com", "b@client.com"]
    assert dep["bucket"] == BUCKET_ACTIVE

    cand = _candidate(cid)
    assert cand.deploymentEmailSent is True
    assert cand.deploymentRecordId == dep["deploymentId"]

    res = _send_email(client, tokens, cid, ["a@client.com"])
    assert res.get_json()["error"]["code"] == "ALREADY_DONE"
    assert len(outbox.outbox) == 2


def test_partially_delivered_notification_still_records(app_client, tokens, outbox):
    _app, client = app_client
    cid = _ready_for_deployment(client, tokens, email="r2@x.com", mobile="9100000002")
    outbox.fail_addresses = {"bad@client.com"}

    data = _ok(_send_email(client, tokens, cid, ["ok@client.com", "bad@client.com"]))
    assert data["data"] == {
        "successful": 1,
        "failed": 1,
        "total": 2,
        "sentFrom": "manager@corp.example.com",
        "senderName": "Dev Lead",
    }
    assert data["deployment"]["emailStatus"] == "Partially Sent"
    assert _candidate(cid).deploymentEmailSent is True


def test_transport_failure_persists_nothing(app_client, tokens, outbox):
    _app, client = app_client
    cid = _ready_for_deployment(client, tokens, email="r3@x.com", mobile="9100000003")
    outbox.unavailable = True

    res = _send_email(client, tokens, cid, ["a@client.com"])
    assert res.status_code == 502
    err = res.get_json()["error"]
    assert err["code"] == "INTERNAL"
    assert err["message"].startswith("Failed to send email")
    assert _deployment_count() == 0
    assert _candidate(cid).deploymentEmailSent is False


def test_flag_failure_reports_partial_failure_and_retry_completes(app_client, tokens, outbox, monkeypatch):
    _app, client = app_client
    cid = _ready_for_deployment(client, tokens, email="r4@x.com", mobile="9100000004")

    def boom(db, **kwargs):
        raise OperationalError("UPDATE candidates", {}, Exception("disk I/O error"))

    original = candidate_state.record_deployment_email_sent
    monkeypatch.setattr(candidate_state, "record_deployment_email_sent", boom)
    res = _send_email(client, tokens, cid, ["a@client.com"])
    assert res.status_code == 500
    err = res.get_json()["error"]
    assert err["code"] == "PARTIAL_FAILURE"

    with SessionLocal() as db:
        dep = find_by_candidate(db, cid)
        assert dep is not None
        dep_id = dep.deploymentId
    assert dep_id in err["message"]
    assert _candidate(cid).deploymentEmailSent is False

    monkeypatch.setattr(candidate_state, "record_deployment_email_sent", original)
    data = _ok(_api(client, "CANDIDATE_MARK_DEPLOYED", {"candidateId": cid}, tokens["DELIVERY"]))
    assert data["deploymentId"] == dep_id
    cand = _candidate(cid)
    assert cand.deploymentEmailSent is True
    assert cand.deploymentRecordId == dep_id
    assert len(outbox.outbox) == 1

    res = _api(client, "CANDIDATE_MARK_DEPLOYED", {"candidateId": cid}, tokens["DELIVERY"])
    assert res.get_json()["error"]["code"] == "ALREADY_DONE"


def test_upsert_refreshes_existing_record(app_client, tokens, db):
    _app, client = app_client
    cid = _ready_for_deployment(client, tokens, email="r5@x.com", mobile="9100000005")

    first = upsert_on_email_sent(
        db,
        candidate_id=cid,
        placement={"client": "Acme"},
        outcome=SendResult(successful=1, total=1),
        recipients=["a@client.com"],
        auth=None,
    )
    # The candidate flag is committed with the record, not left to the caller.
    assert _candidate(cid).deploymentEmailSent is True
    assert _candidate(cid).deploymentRecordId == first.deploymentId

    second = upsert_on_email_sent(
        db,
        candidate_id=cid,
        placement={"client": "Globex"},
        outcome=SendResult(successful=2, total=2),
        recipients=["a@client.com", "b@client.com"],
        auth=None,
    )
    db.commit()

    assert first.deploymentId == second.deploymentId
    assert second.client == "Globex"
    assert second.emailTotal == 2
    assert db.execute(select(func.count()).select_from(Deployment)).scalar() == 1

    with pytest.raises(ApiError) as exc:
        candidate_state.record_deployment_email_sent(
            db, candidate_id=cid, deployment_record_id=second.deploymentId, auth=None
        )
    assert exc.value.code == "ALREADY_DONE"


def test_sender_must_be_delivery_manager(app_client, tokens):
    _app, client = app_client
    cid = _ready_for_deployment(client, tokens, email="r6@x.com", mobile="9100000006")
    seed_employee("DL002", "Delivery", "Dee Member")
    token = _ok(_api(client, "EMPLOYEE_LOGIN", {"empId": "DL002", "password": PASSWORD}, None))["sessionToken"]

    res = _send_email(client, {"DELIVERY": token}, cid, ["a@client.com"])
    assert res.status_code == 403
    assert "Only delivery managers can send emails" in res.get_json()["error"]["message"]

    data = _ok(_api(client, "EMAIL_CONFIG_TEST", {}, tokens["DELIVERY"]))
    assert data["success"] is True


def test_send_deployment_email_validates_input(app_client, tokens):
    _app, client = app_client
    cid = _ready_for_deployment(client, tokens, email="r7@x.com", mobile="9100000007")

    res = _api(client, "SEND_DEPLOYMENT_EMAIL", {"candidateId": cid, "recipientEmails": ["a@b.com"]}, tokens["DELIVERY"])
    assert res.get_json()["error"]["message"] == "Form data and candidate ID are required"

    res = _send_email(client, tokens, cid, [])
    assert res.get_json()["error"]["message"] == "At least one recipient email is required"


def test_exit_transfer_and_buckets(app_client, tokens, outbox):
    _app, client = app_client
    c1 = _ready_for_deployment(client, tokens, email="s1@x.com", mobile="9200000001", name="Sita One")
    c2 = _ready_for_deployment(client, tokens, email="s2@x.com", mobile="9200000002", name="Sam Two")
    d1 = _ok(_send_email(client, tokens, c1, ["a@client.com"]))["deployment"]["deploymentId"]
    d2 = _ok(_send_email(client, tokens, c2, ["a@client.com"]))["deployment"]["deploymentId"]

    data = _ok(
        _api(
            client,
            "SEND_INTERNAL_TRANSFER_EMAIL",
            {"deploymentId": d2, "formData": {"toTeam": "Platform"}, "recipientEmails": ["t@client.com"]},
            tokens["DELIVERY"],
        )
    )
    assert data["deployment"]["bucket"] == BUCKET_TRANSFER
    assert data["deployment"]["status"] == "Active"
    assert data["deployment"]["exitDate"] == ""

    res = _api(client, "DEPLOYMENT_EXIT", {"deploymentId": d1, "exitReason": " bye "}, tokens["HR_OPS"])
    assert res.get_json()["error"]["message"] == "Exit reason must be at least 5 characters long"

    data = _ok(_api(client, "DEPLOYMENT_EXIT", {"deploymentId": d1, "exitReason": "Moved   to another city"}, tokens["HR_OPS"]))
    assert data["message"] == "Sita One has been successfully marked as inactive"
    assert data["deployment"]["exitReason"] == "Moved to another city"
    assert data["deployment"]["status"] == "Inactive"

    res = _api(client, "DEPLOYMENT_EXIT", {"deploymentId": d1, "exitReason": "Second attempt"}, tokens["HR_OPS"])
    assert res.get_json()["error"]["code"] == "ALREADY_DONE"
    assert res.get_json()["error"]["message"] == "Sita One is already marked as inactive"

    res = _api(
        client,
        "SEND_INTERNAL_TRANSFER_EMAIL",
        {"deploymentId": d1, "formData": {"toTeam": "Platform"}, "recipientEmails": ["t@client.com"]},
        tokens["DELIVERY"],
    )
    assert res.status_code == 400

    listing = _ok(_api(client, "DEPLOYMENT_RECORDS_LIST", {"tab": "active"}, tokens["HR_OPS"]))
    assert listing["deployments"] == []
    assert listing["stats"] == {"active": 0, "internal-transfer": 1, "inactive": 1, "total": 2}

    listing = _ok(_api(client, "DEPLOYMENT_RECORDS_LIST", {"tab": "inactive", "search": "sita"}, tokens["ADMIN"]))
    assert [d["deploymentId"] for d in listing["deployments"]] == [d1]

    res = _api(client, "DEPLOYMENT_RECORDS_LIST", {"tab": "archived"}, tokens["HR_OPS"])
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"


def test_update_record_cannot_reactivate_exited(app_client, tokens, outbox):
    _app, client = app_client
    cid = _ready_for_deployment(client, tokens, email="u1@x.com", mobile="9300000001")
    dep_id = _ok(_send_email(client, tokens, cid, ["a@client.com"]))["deployment"]["deploymentId"]

    data = _ok(
        _api(
            client,
            "DEPLOYMENT_RECORD_UPDATE",
            {"deploymentId": dep_id, "fields": {"track": "Java", "doj": "2024-01-15", "leadOrNonLead": "Lead"}},
            tokens["DELIVERY"],
        )
    )
    assert data["deployment"]["track"] == "Java"
    assert data["deployment"]["doj"] == "2024-01-15T00:00:00.000Z"

    res = _api(client, "DEPLOYMENT_RECORD_UPDATE", {"deploymentId": dep_id, "fields": {"leadOrNonLead": "Boss"}}, tokens["DELIVERY"])
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"

    data = _ok(
        _api(client, "DEPLOYMENT_RECORD_UPDATE", {"deploymentId": dep_id, "fields": {"exitDate": "2024-06-30"}}, tokens["HR_OPS"])
    )
    assert data["deployment"]["status"] == "Inactive"
    assert data["deployment"]["bucket"] == BUCKET_INACTIVE
    assert data["deployment"]["tenure"] == "0.5"

    res = _api(client, "DEPLOYMENT_RECORD_UPDATE", {"deploymentId": dep_id, "fields": {"status": "Active"}}, tokens["HR_OPS"])
    assert res.get_json()["error"]["message"] == "Exited deployment records cannot be reactivated"


def test_tenure_counts_whole_months():
    assert tenure("2023-01-15", "2024-03-14") == "1.1"
    assert tenure("2023-01-15", "2024-03-15") == "1.2"
    assert tenure("2024-05-01", "2024-04-01") == "0.0"
    assert tenure("") == ""
    now = datetime(2025, 1, 10, tzinfo=timezone.utc)
    assert tenure("2022-01-10", now=now) == "3.0"


def test_bucket_precedence():
    dep = Deployment(status="Active", exitDate="", internalTransferDate="")
    assert deployment_bucket(dep) == BUCKET_ACTIVE

    dep.internalTransferDate = "2024-02-01T00:00:00.000Z"
    assert deployment_bucket(dep) == BUCKET_TRANSFER

    dep.status = " inactive "
    assert deployment_bucket(dep) == BUCKET_INACTIVE

    dep.status = "Active"
    dep.exitDate = "2024-03-01T00:00:00.000Z"
    assert deployment_bucket(dep) == BUCKET_INACTIVE
