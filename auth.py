from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select

from models import Employee, Session as DbSession
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role, parse_datetime_maybe, sha256_hex, to_iso_utc


TEAMS = ("HR Tag", "HR Ops", "IT", "L&D", "Delivery", "Admin", "Super Admin")

HR_TAG = "HR_TAG"
HR_OPS = "HR_OPS"
IT = "IT"
LD = "LD"
DELIVERY = "DELIVERY"
ADMIN = "ADMIN"
SUPER_ADMIN = "SUPER_ADMIN"

ALL_TEAM_ROLES = [HR_TAG, HR_OPS, IT, LD, DELIVERY, ADMIN, SUPER_ADMIN]


PUBLIC_ACTIONS = {
    "EMPLOYEE_LOGIN",
    "LOCKOUT_STATUS",
}


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "EMPLOYEE_LOGIN": ["PUBLIC"],
    "LOCKOUT_STATUS": ["PUBLIC"],
    "SESSION_VALIDATE": ALL_TEAM_ROLES,
    "LOGOUT": ALL_TEAM_ROLES,
    # Employee directory
    "EMPLOYEES_LIST": [SUPER_ADMIN],
    "EMPLOYEE_ADD": [SUPER_ADMIN],
    "EMPLOYEE_TOGGLE_STATUS": [SUPER_ADMIN],
    "EMPLOYEE_DELETE": [SUPER_ADMIN],
    "DELIVERY_MANAGER_CREDENTIALS": [SUPER_ADMIN],
    # HR Tag
    "CANDIDATE_SUBMIT": [HR_TAG],
    "CANDIDATES_SEND_TO_OPS": [HR_TAG],
    "CANDIDATES_SEND_TO_ADMIN": [HR_TAG],
    "CANDIDATES_SEND_TO_ADMIN_AND_LD": [HR_TAG],
    "CANDIDATES_SEND_TO_HROPS_PERMANENT": [HR_TAG],
    # HR Ops / IT
    "ASSIGN_OFFICE_EMAIL": [HR_OPS, IT],
    "ASSIGN_EMPLOYEE_ID": [HR_OPS],
    "ASSIGN_PERMANENT_ID": [HR_OPS],
    "HROPS_SEND_TO_DELIVERY": [HR_OPS],
    "HROPS_SEND_TO_DELIVERY_PERMANENT": [HR_OPS],
    # L&D
    "LD_UPDATE_DECISION": [LD],
    "LD_SEND_TO_DELIVERY": [LD],
    # Delivery
    "DELIVERY_SEND_TO_HRTAG": [DELIVERY],
    "DELIVERY_UPDATE_ALLOCATION": [DELIVERY],
    "SEND_DEPLOYMENT_EMAIL": [DELIVERY],
    "SEND_INTERNAL_TRANSFER_EMAIL": [DELIVERY],
    "EMAIL_CONFIG_TEST": [DELIVERY],
    "DEPLOYMENT_RECORD_CREATE": [DELIVERY],
    "CANDIDATE_MARK_DEPLOYED": [DELIVERY],
    "DEPLOYMENT_RECORD_UPDATE": [DELIVERY, HR_OPS],
    "DEPLOYMENT_EXIT": [HR_OPS],
    "DEPLOYMENT_RECORDS_LIST": [DELIVERY, HR_OPS, ADMIN, SUPER_ADMIN],
    # Admin
    "ADMIN_UPDATE_NOTES": [ADMIN],
    # Read side (per-view gating happens in the dashboard engine)
    "CANDIDATE_DETAILS": ALL_TEAM_ROLES,
    "DASHBOARD_LIST": ALL_TEAM_ROLES,
    "DASHBOARD_STATS": ALL_TEAM_ROLES,
}


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def team_role(team: Any) -> str:
    t = str(team or "").strip()
    if t not in TEAMS:
        return ""
    return normalize_role(t)


def uuid_hex_32() -> str:
    return new_uuid().replace("-", "")


def issue_session_token(
    db,
    *,
    user_id: str,
    email: str,
    name: str = "",
    role: str,
    auth_version: int = 0,
    session_ttl_minutes: int,
) -> dict[str, str]:
    token = "ST-" + uuid_hex_32() + uuid_hex_32()
    now = datetime.now(timezone.utc)
    issued_at = to_iso_utc(now)
    expires_at = to_iso_utc(now + timedelta(minutes=session_ttl_minutes))

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            name=str(name or ""),
            role=normalize_role(role),
            authVersion=int(auth_version or 0),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def revoke_user_sessions(db, *, user_id: str, revoked_by: str) -> int:
    uid = str(user_id or "").strip()
    if not uid:
        return 0
    now = iso_utc_now()
    rows = (
        db.execute(select(DbSession).where(DbSession.userId == uid).where(DbSession.revokedAt == ""))
        .scalars()
        .all()
    )
    for s in rows:
        s.revokedAt = now
        s.revokedBy = str(revoked_by or "")
    return len(rows)


def revoke_session_token(db, token: Any, *, revoked_by: str) -> bool:
    if not token or not isinstance(token, str):
        return False
    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return False
    ses.revokedAt = iso_utc_now()
    ses.revokedBy = str(revoked_by or "")
    return True


_INVALID = AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def validate_session_token(db, token: Any, *, action: str | None = None) -> AuthContext:
    if not token or not isinstance(token, str):
        return _INVALID

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _INVALID

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _INVALID

    emp = db.execute(select(Employee).where(Employee.empId == ses.userId)).scalar_one_or_none()
    if not emp or emp.deleted:
        return _INVALID
    if not emp.isActive:
        raise ApiError("FORBIDDEN", "Your account is inactive. Please contact administrator.")
    if int(emp.authVersion or 0) != int(ses.authVersion or 0):
        return _INVALID

    # Avoid writing on every request: update lastSeenAt at most once per interval.
    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except ValueError:
        interval_s = 300
    last_dt = parse_datetime_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=str(ses.userId or ""),
        email=str(ses.email or ""),
        role=normalize_role(ses.role),
        expiresAt=str(ses.expiresAt or ""),
        name=str(ses.name or emp.name or ""),
    )


def assert_permission(role: str, action: str) -> None:
    role_u = normalize_role(role)
    action_u = str(action or "").upper().strip()

    allowed = STATIC_RBAC_PERMISSIONS.get(action_u)
    if allowed is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if is_public_action(action_u):
        return
    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if role_u not in allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def serialize_auth(auth: AuthContext) -> dict[str, Any]:
    return {
        "valid": bool(auth.valid),
        "expiresAt": auth.expiresAt,
        "me": {"empId": auth.userId, "email": auth.email, "name": auth.name, "role": role_or_public(auth)},
    }


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"
