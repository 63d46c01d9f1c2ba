from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

from flask import Blueprint, current_app, g, request
from sqlalchemy.exc import DBAPIError

from actions import dispatch, is_mutating
from auth import assert_permission, is_public_action, role_or_public, validate_session_token
from cache_layer import invalidate_dashboard_stats
from db import SessionLocal
from models import AuditLog
from utils import ApiError, AuthContext, err, iso_utc_now, now_monotonic, ok, parse_json_body, redact_for_audit


api_bp = Blueprint("api", __name__)

log = logging.getLogger("api")


def _request_token(body: dict | None = None) -> str:
    token = str((body or {}).get("token") or "").strip()
    if token:
        return token
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return str(request.headers.get("X-Session-Token") or "").strip()


def _client_ip() -> str:
    fwd = str(request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return fwd or str(request.remote_addr or "")


def _audit_row(action: str, auth_ctx: AuthContext | None, stage: str, remark: str, meta: dict) -> AuditLog:
    return AuditLog(
        logId=f"LOG-{os.urandom(16).hex()}",
        entityType="API",
        entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
        action=str(action or "").upper() or "UNKNOWN",
        fromState="",
        toState="",
        stageTag=stage,
        remark=remark,
        actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
        actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
        actorEmail=str(auth_ctx.email or "") if auth_ctx else "",
        at=iso_utc_now(),
        correlationId=str(getattr(g, "request_id", "") or ""),
        metaJson=json.dumps(meta),
    )


def _write_error_audit(action: str, auth_ctx: AuthContext | None, data: Any, err_obj: ApiError) -> None:
    db2 = SessionLocal()
    try:
        db2.add(
            _audit_row(
                action,
                auth_ctx,
                "API_ERROR",
                f"{err_obj.code}: {err_obj.message}",
                {"data": redact_for_audit(data or {}), "error": {"code": err_obj.code, "message": err_obj.message}},
            )
        )
        db2.commit()
    except DBAPIError:
        db2.rollback()
        log.warning("failed to write API_ERROR audit action=%s", action)
    finally:
        db2.close()


def _handle(action: str, data: dict, token: str):
    """
    Request boundary shared by `POST /api` and the REST routes: one session per
    request, token check, RBAC, dispatch, commit. Any error rolls the session back.
    """

    cfg = current_app.config["CFG"]
    action_u = str(action or "").upper().strip()
    data = dict(data or {})
    db = None
    auth_ctx = None
    try:
        if not action_u:
            raise ApiError("BAD_REQUEST", "Missing action")
        if action_u == "EMPLOYEE_LOGIN":
            data["clientIp"] = _client_ip()
        if action_u == "LOGOUT":
            data["token"] = token

        db = SessionLocal()
        if not is_public_action(action_u):
            auth_ctx = validate_session_token(db, token, action=action_u)
            if not auth_ctx.valid:
                raise ApiError("AUTH_INVALID", "Invalid or expired session")

        assert_permission(role_or_public(auth_ctx), action_u)
        out = dispatch(action_u, data, auth_ctx, db, cfg)

        db.add(_audit_row(action_u, auth_ctx, "API_CALL", "", {"data": redact_for_audit(data)}))
        db.commit()
        if is_mutating(action_u):
            invalidate_dashboard_stats()

        log.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            getattr(g, "request_id", ""),
            action_u,
            (auth_ctx.userId if auth_ctx else "PUBLIC"),
            (auth_ctx.role if auth_ctx else "PUBLIC"),
            int((now_monotonic() - g.start_ts) * 1000),
        )
        return ok(out)
    except ApiError as e:
        if db is not None:
            db.rollback()
        if e.code == "PARTIAL_FAILURE":
            invalidate_dashboard_stats()
        _write_error_audit(action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)
    except DBAPIError as e:
        if db is not None:
            db.rollback()
        request_id = str(getattr(g, "request_id", "") or "")
        orig_msg = re.sub(r"\s+", " ", str(getattr(e, "orig", "") or "")).strip()[:300]
        if cfg.IS_PRODUCTION or not orig_msg:
            msg = f"Database error (requestId: {request_id})"
        else:
            msg = f"Database error: {orig_msg} (requestId: {request_id})"
        api_err = ApiError("INTERNAL", msg, http_status=500)
        _write_error_audit(action_u, auth_ctx, data, api_err)
        log.exception("request_id=%s action=%s", request_id, action_u)
        return err(api_err.code, api_err.message, http_status=500)
    except Exception:
        if db is not None:
            db.rollback()
        request_id = str(getattr(g, "request_id", "") or "")
        api_err = ApiError("INTERNAL", f"Unexpected error (requestId: {request_id})", http_status=500)
        _write_error_audit(action_u, auth_ctx, data, api_err)
        log.exception("request_id=%s action=%s", request_id, action_u)
        return err(api_err.code, api_err.message, http_status=500)
    finally:
        if db is not None:
            db.close()


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _query() -> dict:
    return request.args.to_dict()


@api_bp.post("/api")
def api_route():
    raw = request.get_data(as_text=True)
    try:
        body = parse_json_body(raw)
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)
    return _handle(str(body.get("action") or ""), body.get("data") or {}, _request_token(body))


# ---------------------------------------------------------------------------
# Auth / directory
# ---------------------------------------------------------------------------


@api_bp.post("/api/auth/login")
def rest_login():
    return _handle("EMPLOYEE_LOGIN", _json_body(), "")


@api_bp.get("/api/auth/lockout/<emp_id>")
def rest_lockout_status(emp_id: str):
    return _handle("LOCKOUT_STATUS", {"empId": emp_id}, "")


@api_bp.get("/api/auth/session")
def rest_session_validate():
    return _handle("SESSION_VALIDATE", {}, _request_token())


@api_bp.post("/api/auth/logout")
def rest_logout():
    return _handle("LOGOUT", {}, _request_token())


@api_bp.get("/api/employees")
def rest_employees_list():
    return _handle("EMPLOYEES_LIST", _query(), _request_token())


@api_bp.post("/api/employees")
def rest_employee_add():
    return _handle("EMPLOYEE_ADD", _json_body(), _request_token())


@api_bp.post("/api/employees/<emp_id>/toggle-status")
def rest_employee_toggle(emp_id: str):
    return _handle("EMPLOYEE_TOGGLE_STATUS", {"empId": emp_id}, _request_token())


@api_bp.delete("/api/employees/<emp_id>")
def rest_employee_delete(emp_id: str):
    return _handle("EMPLOYEE_DELETE", {"empId": emp_id}, _request_token())


@api_bp.get("/api/employees/delivery-manager")
def rest_delivery_manager():
    return _handle("DELIVERY_MANAGER_CREDENTIALS", {}, _request_token())


# ---------------------------------------------------------------------------
# Candidate workflow
# ---------------------------------------------------------------------------

_BULK_ROUTES = {
    "/api/hr-tag/send-to-ops": "CANDIDATES_SEND_TO_OPS",
    "/api/hr-tag/send-to-admin": "CANDIDATES_SEND_TO_ADMIN",
    "/api/hr-tag/send-to-admin-and-ld": "CANDIDATES_SEND_TO_ADMIN_AND_LD",
    "/api/hr-tag/send-to-hrops-permanent": "CANDIDATES_SEND_TO_HROPS_PERMANENT",
    "/api/hr-ops/send-to-delivery": "HROPS_SEND_TO_DELIVERY",
    "/api/hr-ops/send-to-delivery-permanent": "HROPS_SEND_TO_DELIVERY_PERMANENT",
    "/api/ld/send-to-delivery": "LD_SEND_TO_DELIVERY",
    "/api/delivery/send-to-hrtag": "DELIVERY_SEND_TO_HRTAG",
}


def _bulk_view(action: str):
    def view():
        return _handle(action, _json_body(), _request_token())

    return view


for _path, _action in _BULK_ROUTES.items():
    api_bp.add_url_rule(_path, endpoint=_action.lower(), view_func=_bulk_view(_action), methods=["POST"])


@api_bp.post("/api/hr-tag/candidates")
def rest_candidate_submit():
    return _handle("CANDIDATE_SUBMIT", _json_body(), _request_token())


@api_bp.get("/api/candidates/<candidate_id>")
def rest_candidate_details(candidate_id: str):
    return _handle("CANDIDATE_DETAILS", {"candidateId": candidate_id}, _request_token())


@api_bp.put("/api/hr-ops/candidates/<candidate_id>/office-email")
@api_bp.put("/api/it/candidates/<candidate_id>/office-email")
def rest_assign_office_email(candidate_id: str):
    return _handle("ASSIGN_OFFICE_EMAIL", {**_json_body(), "candidateId": candidate_id}, _request_token())


@api_bp.put("/api/hr-ops/candidates/<candidate_id>/employee-id")
def rest_assign_employee_id(candidate_id: str):
    return _handle("ASSIGN_EMPLOYEE_ID", {**_json_body(), "candidateId": candidate_id}, _request_token())


@api_bp.put("/api/hr-ops/candidates/<candidate_id>/permanent-id")
def rest_assign_permanent_id(candidate_id: str):
    return _handle("ASSIGN_PERMANENT_ID", {**_json_body(), "candidateId": candidate_id}, _request_token())


@api_bp.put("/api/ld/candidates/<candidate_id>/decision")
def rest_ld_decision(candidate_id: str):
    return _handle("LD_UPDATE_DECISION", {**_json_body(), "candidateId": candidate_id}, _request_token())


@api_bp.put("/api/delivery/candidates/<candidate_id>/allocation")
def rest_update_allocation(candidate_id: str):
    return _handle("DELIVERY_UPDATE_ALLOCATION", {**_json_body(), "candidateId": candidate_id}, _request_token())


@api_bp.put("/api/admin/candidates/<candidate_id>/notes")
def rest_admin_notes(candidate_id: str):
    return _handle("ADMIN_UPDATE_NOTES", {**_json_body(), "candidateId": candidate_id}, _request_token())


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


@api_bp.post("/api/delivery/deployment-email")
def rest_send_deployment_email():
    return _handle("SEND_DEPLOYMENT_EMAIL", _json_body(), _request_token())


@api_bp.post("/api/delivery/internal-transfer-email")
def rest_send_internal_transfer_email():
    return _handle("SEND_INTERNAL_TRANSFER_EMAIL", _json_body(), _request_token())


@api_bp.get("/api/delivery/email-config-test")
def rest_email_config_test():
    return _handle("EMAIL_CONFIG_TEST", {}, _request_token())


@api_bp.post("/api/delivery/deployments")
def rest_deployment_record_create():
    return _handle("DEPLOYMENT_RECORD_CREATE", _json_body(), _request_token())


@api_bp.post("/api/delivery/candidates/<candidate_id>/mark-deployed")
def rest_candidate_mark_deployed(candidate_id: str):
    return _handle("CANDIDATE_MARK_DEPLOYED", {"candidateId": candidate_id}, _request_token())


@api_bp.get("/api/deployments")
def rest_deployment_records_list():
    return _handle("DEPLOYMENT_RECORDS_LIST", _query(), _request_token())


@api_bp.patch("/api/deployments/<deployment_id>")
def rest_deployment_record_update(deployment_id: str):
    return _handle(
        "DEPLOYMENT_RECORD_UPDATE", {"deploymentId": deployment_id, "fields": _json_body()}, _request_token()
    )


@api_bp.post("/api/deployments/<deployment_id>/exit")
def rest_deployment_exit(deployment_id: str):
    return _handle("DEPLOYMENT_EXIT", {**_json_body(), "deploymentId": deployment_id}, _request_token())


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


@api_bp.get("/api/dashboards/<view>")
def rest_dashboard_list(view: str):
    return _handle("DASHBOARD_LIST", {**_query(), "view": view}, _request_token())


@api_bp.get("/api/dashboards/<team>/stats")
def rest_dashboard_stats(team: str):
    return _handle("DASHBOARD_STATS", {"team": team}, _request_token())
