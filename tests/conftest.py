from __future__ import annotations

import json

import pytest

from app import create_app
from cache_layer import cache_clear
from db import SessionLocal
from models import Employee
from passwords import hash_password
from services.notification_gateway import get_gateway
from utils import iso_utc_now


PASSWORD = "Passw0rd123"

# One seeded actor per team; the Delivery actor is also the active delivery manager.
TEAM_ACTORS = {
    "HR_TAG": ("HT001", "HR Tag", "Hema Tag"),
    "HR_OPS": ("HO001", "HR Ops", "Omar Ops"),
    "IT": ("IT001", "IT", "Ivy Tech"),
    "LD": ("LD001", "L&D", "Lara Dev"),
    "DELIVERY": ("DL001", "Delivery", "Dev Lead"),
    "ADMIN": ("AD001", "Admin", "Ada Min"),
    "SUPER_ADMIN": ("SA001", "Super Admin", "Sam Super"),
}


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'onboardflow-test.db'}")
    monkeypatch.setenv("NOTIFY_BACKEND", "memory")
    monkeypatch.setenv("LOGIN_MAX_FAILED_ATTEMPTS", "5")
    monkeypatch.setenv("LOGIN_LOCK_MINUTES", "15")
    cache_clear()
    app = create_app()
    app.config["TESTING"] = True
    yield app, app.test_client()
    cache_clear()


@pytest.fixture()
def db(app_client):
    with SessionLocal() as session:
        yield session


@pytest.fixture()
def outbox(app_client):
    gateway = get_gateway()
    gateway.clear()
    return gateway


def seed_employee(emp_id: str, team: str, name: str, *, manager: bool = False, active: bool = True) -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            Employee(
                empId=emp_id,
                name=name,
                team=team,
                email=f"{emp_id.lower()}@corp.example.com",
                passwordHash=hash_password(PASSWORD),
                isActive=active,
                deleted=False,
                canSendEmail=manager,
                isDeliveryManager=manager,
                managerEmail="manager@corp.example.com" if manager else "",
                managerAppPassword="app-secret-1" if manager else "",
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()


def api_call(client, action: str, data: dict | None = None, token: str | None = None):
    payload = {"action": action, "token": token, "data": data or {}}
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


@pytest.fixture()
def tokens(app_client):
    """Seeds one actor per team, logs each in and returns {role: sessionToken}."""

    _app, client = app_client
    out = {}
    for role, (emp_id, team, name) in TEAM_ACTORS.items():
        seed_employee(emp_id, team, name, manager=(role == "DELIVERY"))
        res = api_call(client, "EMPLOYEE_LOGIN", {"empId": emp_id, "password": PASSWORD})
        body = res.get_json()
        assert body["ok"] is True, body
        out[role] = body["data"]["sessionToken"]
    return out
