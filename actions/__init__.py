from __future__ import annotations

from typing import Any, Callable

from actions import candidate_state as cs
from actions import dashboard_queries as dq
from actions import deployment_records as dr
from actions import employee_directory as ed
from actions.helpers import parse_id_list
from auth import revoke_session_token, serialize_auth
from utils import ApiError, AuthContext, to_bool


Handler = Callable[[dict, "AuthContext | None", Any, Any], dict]


def employee_login(data, auth: AuthContext | None, db, cfg):
    return ed.employee_login(
        db,
        cfg,
        emp_id=data.get("empId"),
        password=data.get("password"),
        client_ip=str(data.get("clientIp") or ""),
    )


def lockout_status(data, auth: AuthContext | None, db, cfg):
    return ed.lockout_status(db, cfg, emp_id=data.get("empId"))


def session_validate(data, auth: AuthContext | None, db, cfg):
    return {"success": True, "message": "Session is valid", **serialize_auth(auth)}


def logout(data, auth: AuthContext | None, db, cfg):
    revoked = revoke_session_token(db, data.get("token"), revoked_by=auth.userId if auth else "")
    return {"success": True, "message": "Logged out successfully" if revoked else "Session already ended"}


def employees_list(data, auth: AuthContext | None, db, cfg):
    return ed.list_employees(db, include_inactive=to_bool(data.get("includeInactive", True)))


def employee_add(data, auth: AuthContext | None, db, cfg):
    return ed.add_employee(db, data=data, auth=auth)


def employee_toggle_status(data, auth: AuthContext | None, db, cfg):
    return ed.toggle_employee_status(db, emp_id=data.get("empId"), auth=auth)


def employee_delete(data, auth: AuthContext | None, db, cfg):
    return ed.delete_employee(db, emp_id=data.get("empId"), auth=auth)


def delivery_manager_credentials(data, auth: AuthContext | None, db, cfg):
    return ed.delivery_manager_credentials(db)


def candidate_submit(data, auth: AuthContext | None, db, cfg):
    return cs.submit_candidate(db, data=data, auth=auth)


def _ids(data) -> list[str]:
    return parse_id_list(data.get("candidateIds"))


def candidates_send_to_ops(data, auth: AuthContext | None, db, cfg):
    return cs.send_to_ops(db, candidate_ids=_ids(data), auth=auth)


def candidates_send_to_admin(data, auth: AuthContext | None, db, cfg):
    return cs.send_to_admin(db, candidate_ids=_ids(data), auth=auth)


def candidates_send_to_admin_and_ld(data, auth: AuthContext | None, db, cfg):
    return cs.send_to_admin_and_ld(db, candidate_ids=_ids(data), auth=auth)


def candidates_send_to_hrops_permanent(data, auth: AuthContext | None, db, cfg):
    return cs.send_to_hrops_for_permanent_id(db, candidate_ids=_ids(data), auth=auth)


def assign_office_email(data, auth: AuthContext | None, db, cfg):
    return cs.assign_office_email(db, candidate_id=data.get("candidateId"), office_email=data.get("officeEmail"), auth=auth)


def assign_employee_id(data, auth: AuthContext | None, db, cfg):
    return cs.assign_employee_id(db, candidate_id=data.get("candidateId"), employee_id=data.get("employeeId"), auth=auth)


def assign_permanent_id(data, auth: AuthContext | None, db, cfg):
    return cs.assign_permanent_id(
        db, candidate_id=data.get("candidateId"), permanent_id=data.get("permanentEmployeeId"), auth=auth
    )


def hrops_send_to_delivery(data, auth: AuthContext | None, db, cfg):
    return cs.hrops_send_to_delivery(db, candidate_ids=_ids(data), auth=auth)


def hrops_send_to_delivery_permanent(data, auth: AuthContext | None, db, cfg):
    return cs.hrops_send_to_delivery(db, candidate_ids=_ids(data), auth=auth, permanent=True)


def ld_update_decision(data, auth: AuthContext | None, db, cfg):
    return cs.update_ld_decision(
        db,
        candidate_id=data.get("candidateId"),
        status=data.get("ldStatus"),
        reason=data.get("ldReason"),
        auth=auth,
    )


def ld_send_to_delivery(data, auth: AuthContext | None, db, cfg):
    return cs.send_to_delivery(db, candidate_ids=_ids(data), auth=auth)


def delivery_send_to_hrtag(data, auth: AuthContext | None, db, cfg):
    return cs.send_to_hrtag_as_deployed(db, candidate_ids=_ids(data), auth=auth)


def delivery_update_allocation(data, auth: AuthContext | None, db, cfg):
    return cs.update_allocation(
        db,
        candidate_id=data.get("candidateId"),
        allocation_status=data.get("allocationStatus"),
        project=data.get("assignedProject"),
        team=data.get("assignedTeam"),
        notes=data.get("allocationNotes"),
        auth=auth,
    )


def admin_update_notes(data, auth: AuthContext | None, db, cfg):
    return cs.update_admin_notes(db, candidate_id=data.get("candidateId"), notes=data.get("adminNotes"), auth=auth)


def candidate_details(data, auth: AuthContext | None, db, cfg):
    return cs.candidate_details(db, candidate_id=data.get("candidateId"))


def send_deployment_email(data, auth: AuthContext | None, db, cfg):
    return dr.send_deployment_email(db, data=data, auth=auth)


def send_internal_transfer_email(data, auth: AuthContext | None, db, cfg):
    return dr.send_internal_transfer_email(db, data=data, auth=auth)


def email_config_test(data, auth: AuthContext | None, db, cfg):
    return dr.test_email_config(db, auth=auth)


def deployment_record_create(data, auth: AuthContext | None, db, cfg):
    return dr.create_deployment_record(db, data=data, auth=auth)


def candidate_mark_deployed(data, auth: AuthContext | None, db, cfg):
    return dr.mark_candidate_deployed(db, candidate_id=data.get("candidateId"), auth=auth)


def deployment_record_update(data, auth: AuthContext | None, db, cfg):
    return dr.update_deployment_record(db, deployment_id=data.get("deploymentId"), fields=data.get("fields") or {}, auth=auth)


def deployment_exit(data, auth: AuthContext | None, db, cfg):
    return dr.process_exit(db, deployment_id=data.get("deploymentId"), reason=data.get("exitReason"), auth=auth)


def deployment_records_list(data, auth: AuthContext | None, db, cfg):
    return dr.list_deployment_records(db, params=data)


def dashboard_list(data, auth: AuthContext | None, db, cfg):
    return dq.list_view(db, view=data.get("view"), params=data, auth=auth)


def dashboard_stats(data, auth: AuthContext | None, db, cfg):
    return dq.team_stats(db, team=data.get("team"), auth=auth)


ACTIONS: dict[str, Handler] = {
    "EMPLOYEE_LOGIN": employee_login,
    "LOCKOUT_STATUS": lockout_status,
    "SESSION_VALIDATE": session_validate,
    "LOGOUT": logout,
    "EMPLOYEES_LIST": employees_list,
    "EMPLOYEE_ADD": employee_add,
    "EMPLOYEE_TOGGLE_STATUS": employee_toggle_status,
    "EMPLOYEE_DELETE": employee_delete,
    "DELIVERY_MANAGER_CREDENTIALS": delivery_manager_credentials,
    "CANDIDATE_SUBMIT": candidate_submit,
    "CANDIDATES_SEND_TO_OPS": candidates_send_to_ops,
    "CANDIDATES_SEND_TO_ADMIN": candidates_send_to_admin,
    "CANDIDATES_SEND_TO_ADMIN_AND_LD": candidates_send_to_admin_and_ld,
    "CANDIDATES_SEND_TO_HROPS_PERMANENT": candidates_send_to_hrops_permanent,
    "ASSIGN_OFFICE_EMAIL": assign_office_email,
    "ASSIGN_EMPLOYEE_ID": assign_employee_id,
    "ASSIGN_PERMANENT_ID": assign_permanent_id,
    "HROPS_SEND_TO_DELIVERY": hrops_send_to_delivery,
    "HROPS_SEND_TO_DELIVERY_PERMANENT": hrops_send_to_delivery_permanent,
    "LD_UPDATE_DECISION": ld_update_decision,
    "LD_SEND_TO_DELIVERY": ld_send_to_delivery,
    "DELIVERY_SEND_TO_HRTAG": delivery_send_to_hrtag,
    "DELIVERY_UPDATE_ALLOCATION": delivery_update_allocation,
    "SEND_DEPLOYMENT_EMAIL": send_deployment_email,
    "SEND_INTERNAL_TRANSFER_EMAIL": send_internal_transfer_email,
    "EMAIL_CONFIG_TEST": email_config_test,
    "DEPLOYMENT_RECORD_CREATE": deployment_record_create,
    "CANDIDATE_MARK_DEPLOYED": candidate_mark_deployed,
    "DEPLOYMENT_RECORD_UPDATE": deployment_record_update,
    "DEPLOYMENT_EXIT": deployment_exit,
    "DEPLOYMENT_RECORDS_LIST": deployment_records_list,
    "ADMIN_UPDATE_NOTES": admin_update_notes,
    "CANDIDATE_DETAILS": candidate_details,
    "DASHBOARD_LIST": dashboard_list,
    "DASHBOARD_STATS": dashboard_stats,
}

READ_ONLY_ACTIONS = {
    "LOCKOUT_STATUS",
    "SESSION_VALIDATE",
    "EMPLOYEES_LIST",
    "DELIVERY_MANAGER_CREDENTIALS",
    "EMAIL_CONFIG_TEST",
    "DEPLOYMENT_RECORDS_LIST",
    "CANDIDATE_DETAILS",
    "DASHBOARD_LIST",
    "DASHBOARD_STATS",
}


def is_mutating(action: str) -> bool:
    a = str(action or "").upper().strip()
    return a in ACTIONS and a not in READ_ONLY_ACTIONS and a not in {"EMPLOYEE_LOGIN", "LOGOUT"}


def dispatch(action: str, data: dict, auth: AuthContext | None, db, cfg) -> dict:
    handler = ACTIONS.get(str(action or "").upper().strip())
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action}")
    if not isinstance(data, dict):
        raise ApiError("BAD_REQUEST", "data must be an object")
    return handler(data, auth, db, cfg)
