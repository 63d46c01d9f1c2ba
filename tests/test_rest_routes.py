from __future__ import annotations


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_rest_routes_share_the_action_boundary(app_client, tokens):
    _app, client = app_client

    res = client.post(
        "/api/hr-tag/candidates",
        json={
            "fullName": "Rest Person",
            "gender": "Male",
            "personalEmail": "rest@x.com",
            "mobileNumber": "9600000001",
            "experienceLevel": "Fresher",
        },
        headers=_auth(tokens["HR_TAG"]),
    )
    assert res.status_code == 200
    cid = res.get_json()["data"]["candidate"]["candidateId"]

    res = client.post("/api/hr-tag/send-to-ops", json={"candidateIds": [cid]}, headers=_auth(tokens["HR_TAG"]))
    assert res.get_json()["data"]["sentCount"] == 1

    res = client.put(
        f"/api/it/candidates/{cid}/office-email",
        json={"officeEmail": "rest@corp.com"},
        headers={"X-Session-Token": tokens["IT"]},
    )
    assert res.get_json()["data"]["candidate"]["officeEmail"] == "rest@corp.com"

    res = client.get(f"/api/candidates/{cid}", headers=_auth(tokens["HR_OPS"]))
    assert res.get_json()["data"]["candidate"]["currentStage"] == "HR Ops Processing"

    res = client.get("/api/dashboards/hrops?search=rest", headers=_auth(tokens["HR_OPS"]))
    assert res.get_json()["data"]["pagination"]["total"] == 1

    res = client.get("/api/dashboards/hrops/stats", headers=_auth(tokens["HR_OPS"]))
    assert res.get_json()["data"]["stats"]["overview"]["withOfficeEmail"] == 1


def test_rest_routes_enforce_roles(app_client, tokens):
    _app, client = app_client

    res = client.get("/api/employees", headers=_auth(tokens["HR_TAG"]))
    assert res.status_code == 403

    res = client.get("/api/employees")
    assert res.status_code == 401

    res = client.get("/api/auth/lockout/HT001")
    assert res.get_json()["data"]["attemptsRemaining"] == 5


def test_action_endpoint_rejects_bad_bodies(app_client):
    _app, client = app_client

    res = client.post("/api", data="", content_type="text/plain")
    assert res.status_code == 400
    assert res.get_json()["error"]["message"] == "Empty body"

    res = client.post("/api", data="{not json", content_type="text/plain")
    assert res.get_json()["error"]["message"] == "Invalid JSON body"
