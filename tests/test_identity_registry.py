from __future__ import annotations

import json

import pytest

from actions.identity_registry import (
    EMPLOYEE_ID,
    MOBILE,
    OFFICE_EMAIL,
    PERMANENT_ID,
    PERSONAL_EMAIL,
    find_holder,
    normalize_identity,
    reserve,
    validate_identity,
)
from utils import ApiError


def _api(client, action: str, data: dict, token: str | None):
    payload = {"action": action, "token": token, "data": data}
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def test_normalization_per_kind():
    assert normalize_identity(PERSONAL_EMAIL, "  Jane.Doe@Mail.COM ") == "jane.doe@mail.com"
    assert normalize_identity(OFFICE_EMAIL, "X@Corp.com") == "x@corp.com"
    assert normalize_identity(EMPLOYEE_ID, " emp01 ") == "EMP01"
    assert normalize_identity(PERMANENT_ID, "perm0001") == "PERM0001"
    assert normalize_identity(MOBILE, "(900) 000-0001") == "9000000001"
    assert normalize_identity(MOBILE, None) == ""

    with pytest.raises(ValueError):
        normalize_identity("passport", "X1")


@pytest.mark.parametrize(
    "kind,value",
    [
        (PERSONAL_EMAIL, "not-an-email"),
        (MOBILE, "12345"),
        (MOBILE, "900000000a"),
        (EMPLOYEE_ID, "E1"),
        (EMPLOYEE_ID, "EMP-01"),
        (PERMANENT_ID, "P12"),
        (OFFICE_EMAIL, ""),
    ],
)
def test_validate_rejects_malformed(kind, value):
    with pytest.raises(ApiError) as exc:
        validate_identity(kind, value)
    assert exc.value.code == "BAD_REQUEST"


def test_holder_lookup_spans_candidates_and_employees(app_client, tokens, db):
    _app, client = app_client

    assert find_holder(db, kind=OFFICE_EMAIL, value="HT001@Corp.Example.com") == ("employee", "Hema Tag")
    assert find_holder(db, kind=EMPLOYEE_ID, value="ld001") == ("employee", "Lara Dev")
    assert find_holder(db, kind=PERMANENT_ID, value="SA001") == ("employee", "Sam Super")
    assert find_holder(db, kind=EMPLOYEE_ID, value="FREE01") is None
    # Release the read transaction so the API requests below can write.
    db.rollback()

    res = _api(
        client,
        "CANDIDATE_SUBMIT",
        {
            "fullName": "Nila Cand",
            "gender": "Female",
            "personalEmail": "nila@x.com",
            "mobileNumber": "9700000001",
            "experienceLevel": "Fresher",
        },
        tokens["HR_TAG"],
    )
    cid = res.get_json()["data"]["candidate"]["candidateId"]
    _api(client, "CANDIDATES_SEND_TO_OPS", {"candidateIds": [cid]}, tokens["HR_TAG"])
    _api(client, "ASSIGN_OFFICE_EMAIL", {"candidateId": cid, "officeEmail": "nila@corp.com"}, tokens["IT"])

    assert find_holder(db, kind=OFFICE_EMAIL, value="NILA@corp.com") == ("candidate", "Nila Cand")
    assert find_holder(db, kind=OFFICE_EMAIL, value="nila@corp.com", owner_id=cid) is None
    assert find_holder(db, kind=MOBILE, value="97000 00001") == ("candidate", "Nila Cand")

    # Reassigning a candidate's own value is not a conflict.
    assert reserve(db, kind=OFFICE_EMAIL, value="Nila@Corp.com", owner_id=cid) == "nila@corp.com"

    with pytest.raises(ApiError) as exc:
        reserve(db, kind=OFFICE_EMAIL, value="nila@corp.com", owner_id="CAND-OTHER")
    assert exc.value.code == "CONFLICT"
    assert exc.value.message == "Office email nila@corp.com is already assigned to Nila Cand"
