from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from actions.helpers import actor_id, append_audit
from auth import TEAMS, issue_session_token, revoke_user_sessions, team_role
from models import Candidate, Employee
from passwords import hash_password, verify_password
from services.notification_gateway import SenderIdentity
from utils import ApiError, AuthContext, iso_utc_now, parse_datetime_maybe, to_bool, to_iso_utc


log = logging.getLogger("auth")


def find_by_email(db, email: Any) -> Optional[Employee]:
    e = str(email or "").strip().lower()
    if not e:
        return None
    return (
        db.execute(select(Employee).where(func.lower(Employee.email) == e).where(Employee.deleted == False))  # noqa: E712
        .scalars()
        .first()
    )


def find_by_emp_id(db, emp_id: Any) -> Optional[Employee]:
    eid = str(emp_id or "").strip().upper()
    if not eid:
        return None
    return (
        db.execute(select(Employee).where(Employee.empId == eid).where(Employee.deleted == False))  # noqa: E712
        .scalars()
        .first()
    )


def serialize_employee(emp: Employee) -> dict[str, Any]:
    out = {
        "empId": emp.empId,
        "name": emp.name or "",
        "team": emp.team or "",
        "email": emp.email or "",
        "isActive": bool(emp.isActive),
        "canSendEmail": bool(emp.canSendEmail),
        "isDeliveryManager": bool(emp.isDeliveryManager),
        "lastLoginAt": emp.lastLoginAt or "",
        "createdAt": emp.createdAt or "",
    }
    if emp.isDeliveryManager and emp.managerEmail:
        out["managerEmail"] = emp.managerEmail
    return out


def _is_locked(emp: Employee, now: datetime) -> Optional[datetime]:
    until = parse_datetime_maybe(emp.lockedUntil)
    if until and until > now:
        return until
    return None


def _minutes_left(until: datetime, now: datetime) -> int:
    return max(1, int(-(-(until - now).total_seconds() // 60)))


def employee_login(db, cfg, *, emp_id: Any, password: Any, client_ip: str = "") -> dict[str, Any]:
    eid = str(emp_id or "").strip().upper()
    pwd = str(password or "")
    if not eid or not pwd:
        raise ApiError("BAD_REQUEST", "Employee ID and Password are required")

    emp = find_by_emp_id(db, eid)
    if not emp:
        raise ApiError("AUTH_INVALID", "Invalid Employee ID or Password")

    now = datetime.now(timezone.utc)
    locked_until = _is_locked(emp, now)
    if locked_until:
        mins = _minutes_left(locked_until, now)
        raise ApiError(
            "LOCKED",
            f"Account is locked due to multiple failed attempts. Try again in {mins} minutes.",
        )
    if emp.lockedUntil:
        # Lock window elapsed; start counting afresh.
        emp.lockedUntil = ""
        emp.failedAttempts = 0

    max_attempts = int(cfg.LOGIN_MAX_FAILED_ATTEMPTS)

    if not emp.isActive:
        emp.failedAttempts = int(emp.failedAttempts or 0) + 1
        emp.lastFailedIp = client_ip
        db.commit()
        raise ApiError("FORBIDDEN", "Your account is inactive. Please contact administrator.")

    if not verify_password(pwd, emp.passwordHash):
        emp.failedAttempts = int(emp.failedAttempts or 0) + 1
        emp.lastFailedIp = client_ip
        log.warning("login failed empId=%s attempts=%s ip=%s", eid, emp.failedAttempts, client_ip)
        if emp.failedAttempts >= max_attempts:
            until = now + timedelta(minutes=int(cfg.LOGIN_LOCK_MINUTES))
            emp.lockedUntil = to_iso_utc(until)
            # Persist the lock even though the request fails.
            db.commit()
            raise ApiError(
                "LOCKED",
                f"Account locked due to multiple failed attempts. Try again in {int(cfg.LOGIN_LOCK_MINUTES)} minutes.",
            )
        left = max_attempts - emp.failedAttempts
        db.commit()
        raise ApiError(
            "AUTH_INVALID",
            f"Invalid Employee ID or Password. {left} attempt{'' if left == 1 else 's'} remaining.",
        )

    emp.failedAttempts = 0
    emp.lockedUntil = ""
    emp.lastLoginAt = iso_utc_now()

    role = team_role(emp.team)
    token = issue_session_token(
        db,
        user_id=emp.empId,
        email=emp.email,
        name=emp.name,
        role=role,
        auth_version=int(emp.authVersion or 0),
        session_ttl_minutes=int(cfg.SESSION_TTL_MINUTES),
    )
    return {
        "success": True,
        "message": f"Welcome {emp.team}!",
        "sessionToken": token["sessionToken"],
        "expiresAt": token["expiresAt"],
        "employee": serialize_employee(emp),
        "role": role,
    }


def lockout_status(db, cfg, *, emp_id: Any) -> dict[str, Any]:
    emp = find_by_emp_id(db, emp_id)
    if not emp:
        raise ApiError("NOT_FOUND", "Employee not found")
    now = datetime.now(timezone.utc)
    locked_until = _is_locked(emp, now)
    if locked_until:
        return {
            "isLocked": True,
            "lockedUntil": emp.lockedUntil,
            "timeRemaining": _minutes_left(locked_until, now),
        }
    attempts = 0 if emp.lockedUntil else int(emp.failedAttempts or 0)
    return {
        "isLocked": False,
        "attemptsRemaining": max(0, int(cfg.LOGIN_MAX_FAILED_ATTEMPTS) - attempts),
    }


def list_employees(db, *, include_inactive: bool = True) -> dict[str, Any]:
    q = select(Employee).where(Employee.deleted == False)  # noqa: E712
    if not include_inactive:
        q = q.where(Employee.isActive == True)  # noqa: E712
    rows = db.execute(q.order_by(Employee.createdAt.desc(), Employee.empId)).scalars().all()
    return {"success": True, "employees": [serialize_employee(e) for e in rows], "count": len(rows)}


def _active_delivery_manager(db) -> Optional[Employee]:
    return (
        db.execute(
            select(Employee)
            .where(Employee.team == "Delivery")
            .where(Employee.isDeliveryManager == True)  # noqa: E712
            .where(Employee.isActive == True)  # noqa: E712
            .where(Employee.deleted == False)  # noqa: E712
        )
        .scalars()
        .first()
    )


def add_employee(db, *, data: dict[str, Any], auth: AuthContext) -> dict[str, Any]:
    emp_id = str(data.get("empId") or "").strip().upper()
    password = str(data.get("password") or "")
    name = str(data.get("name") or "").strip()
    team = str(data.get("team") or "").strip()
    email = str(data.get("email") or "").strip().lower()
    is_manager = to_bool(data.get("isDeliveryManager"))
    manager_email = str(data.get("managerEmail") or "").strip().lower()
    manager_app_password = str(data.get("managerAppPassword") or "")

    if not emp_id or not password or not name or not team or not email:
        raise ApiError("BAD_REQUEST", "All basic fields are required")
    if team not in TEAMS:
        raise ApiError("BAD_REQUEST", f"Invalid team: {team}")

    is_manager = is_manager and team == "Delivery"
    if is_manager:
        if not manager_email or not manager_app_password:
            raise ApiError("BAD_REQUEST", "Manager email and app password are required for delivery managers")
        if _active_delivery_manager(db):
            raise ApiError(
                "BAD_REQUEST",
                "A delivery manager already exists. Please deactivate current manager first.",
            )

    existing = (
        db.execute(select(Employee.empId).where((Employee.empId == emp_id) | (func.lower(Employee.email) == email)))
        .first()
    )
    if existing:
        raise ApiError("DUPLICATE", "Employee with this ID or email already exists")

    taken = db.execute(
        select(Candidate.fullName)
        .where(
            (Candidate.officeEmail == email)
            | (Candidate.employeeId == emp_id)
            | (Candidate.permanentEmployeeId == emp_id)
        )
        .limit(1)
    ).first()
    if taken:
        raise ApiError("CONFLICT", f"Employee ID or email is already assigned to candidate {taken.fullName}")

    now = iso_utc_now()
    emp = Employee(
        empId=emp_id,
        name=name,
        team=team,
        email=email,
        passwordHash=hash_password(password),
        isActive=True,
        deleted=False,
        canSendEmail=is_manager,
        isDeliveryManager=is_manager,
        managerEmail=manager_email if is_manager else "",
        managerAppPassword=manager_app_password if is_manager else "",
        failedAttempts=0,
        lockedUntil="",
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    try:
        with db.begin_nested():
            db.add(emp)
            db.flush()
    except IntegrityError:
        raise ApiError("DUPLICATE", "Employee with this ID or email already exists")

    append_audit(
        db,
        entityType="EMPLOYEE",
        entityId=emp_id,
        action="EMPLOYEE_ADD",
        toState="ACTIVE",
        stageTag="EMPLOYEE_ADD",
        actor=auth,
        at=now,
        meta={"team": team, "isDeliveryManager": is_manager},
    )
    return {"success": True, "message": "Employee created successfully", "employee": serialize_employee(emp)}


def toggle_employee_status(db, *, emp_id: Any, auth: AuthContext) -> dict[str, Any]:
    emp = find_by_emp_id(db, emp_id)
    if not emp:
        raise ApiError("NOT_FOUND", "Employee not found")

    if not emp.isActive and emp.isDeliveryManager:
        other = _active_delivery_manager(db)
        if other and other.empId != emp.empId:
            raise ApiError(
                "BAD_REQUEST",
                "A delivery manager already exists. Please deactivate current manager first.",
            )

    before = "ACTIVE" if emp.isActive else "INACTIVE"
    emp.isActive = not bool(emp.isActive)
    if emp.isDeliveryManager:
        emp.canSendEmail = bool(emp.isActive)
    now = iso_utc_now()
    emp.updatedAt = now
    emp.updatedBy = actor_id(auth)
    if not emp.isActive:
        emp.authVersion = int(emp.authVersion or 0) + 1
        revoke_user_sessions(db, user_id=emp.empId, revoked_by=actor_id(auth))

    after = "ACTIVE" if emp.isActive else "INACTIVE"
    append_audit(
        db,
        entityType="EMPLOYEE",
        entityId=emp.empId,
        action="EMPLOYEE_TOGGLE_STATUS",
        fromState=before,
        toState=after,
        stageTag="EMPLOYEE_STATUS",
        actor=auth,
        at=now,
    )
    return {
        "success": True,
        "message": f"Employee {'activated' if emp.isActive else 'deactivated'} successfully",
        "employee": serialize_employee(emp),
    }


def delete_employee(db, *, emp_id: Any, auth: AuthContext) -> dict[str, Any]:
    emp = find_by_emp_id(db, emp_id)
    if not emp:
        raise ApiError("NOT_FOUND", "Employee not found")

    now = iso_utc_now()
    emp.deleted = True
    emp.isActive = False
    emp.canSendEmail = False
    emp.authVersion = int(emp.authVersion or 0) + 1
    emp.updatedAt = now
    emp.updatedBy = actor_id(auth)
    revoke_user_sessions(db, user_id=emp.empId, revoked_by=actor_id(auth))

    append_audit(
        db,
        entityType="EMPLOYEE",
        entityId=emp.empId,
        action="EMPLOYEE_DELETE",
        toState="DELETED",
        stageTag="EMPLOYEE_DELETE",
        actor=auth,
        at=now,
    )
    return {
        "success": True,
        "message": "Employee deleted successfully",
        "deletedEmployee": {"empId": emp.empId, "name": emp.name},
    }


def check_email_permission(db, *, emp_id: Any) -> Employee:
    """Sender gate for outbound deployment/transfer notifications."""

    emp = find_by_emp_id(db, emp_id)
    if not emp:
        raise ApiError("FORBIDDEN", "Employee not found or inactive")
    if not emp.isActive:
        raise ApiError("FORBIDDEN", "Employee not found or inactive")
    if not emp.canSendEmail:
        raise ApiError("FORBIDDEN", "You do not have permission to send emails. Only delivery managers can send emails.")
    if emp.team != "Delivery":
        raise ApiError("FORBIDDEN", "Only Delivery team members can send emails")
    return emp


def delivery_manager_credentials(db) -> dict[str, Any]:
    mgr = _active_delivery_manager(db)
    if not mgr:
        raise ApiError("NOT_FOUND", "No active delivery manager found")
    return {
        "success": True,
        "manager": {"empId": mgr.empId, "name": mgr.name, "managerEmail": mgr.managerEmail or ""},
    }


def delivery_manager_mailbox(db) -> SenderIdentity:
    mgr = _active_delivery_manager(db)
    if not mgr or not mgr.managerEmail:
        raise ApiError("NOT_FOUND", "No active delivery manager found with email permissions")
    return SenderIdentity(name=mgr.name or "", email=mgr.managerEmail, app_password=mgr.managerAppPassword or "")
