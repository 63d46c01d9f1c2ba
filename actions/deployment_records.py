from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, func, not_, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from actions import candidate_state
from actions.dashboard_queries import apply_date_window, apply_search, paginate
from actions.employee_directory import check_email_permission, delivery_manager_mailbox
from actions.helpers import actor_id, actor_name, append_audit, clean_email_list, load_json_list, new_prefixed_id
from models import Candidate, Deployment
from services.notification_gateway import (
    DEPLOYMENT_SUBJECT,
    TRANSFER_SUBJECT,
    NotificationError,
    SendResult,
    get_gateway,
    render_deployment_body,
    render_transfer_body,
)
from utils import ApiError, AuthContext, iso_utc_now, normalize_iso_maybe, parse_datetime_maybe


log = logging.getLogger("transitions")

BUCKET_ACTIVE = "active"
BUCKET_TRANSFER = "internal-transfer"
BUCKET_INACTIVE = "inactive"
BUCKETS = (BUCKET_ACTIVE, BUCKET_TRANSFER, BUCKET_INACTIVE)

STATUS_ACTIVE = "Active"
STATUS_INACTIVE = "Inactive"
LEAD_OPTIONS = {"Lead", "Non-Lead", ""}

MIN_EXIT_REASON_LEN = 5

UPDATABLE_FIELDS = (
    "track",
    "hrName",
    "calAdd",
    "dmDal",
    "tlLeadRec",
    "zoomNo",
    "workLocation",
    "doj",
    "extension",
    "status",
    "exitDate",
    "internalTransferDate",
    "leadOrNonLead",
)
_DATE_FIELDS = {"doj", "exitDate", "internalTransferDate"}

PLACEMENT_FIELDS = (
    "role",
    "email",
    "office",
    "modeOfHire",
    "fromTeam",
    "toTeam",
    "client",
    "bu",
    "reportingTo",
    "accountManager",
)

SEARCH_FIELDS = [
    Deployment.candidateName,
    Deployment.candidateEmpId,
    Deployment.client,
    Deployment.bu,
    Deployment.role,
    Deployment.hrName,
    Deployment.track,
    Deployment.email,
    Deployment.candidateOfficeEmail,
]

DATE_FILTER_FIELDS = {
    "createdAt": Deployment.createdAt,
    "doj": Deployment.doj,
    "exitDate": Deployment.exitDate,
    "internalTransferDate": Deployment.internalTransferDate,
}


# Buckets are mutually exclusive: inactive wins, transfer is carved out of active.
_HAS_EXIT = Deployment.exitDate != ""
_STATUS_INACTIVE = func.lower(func.trim(Deployment.status)) == "inactive"
_HAS_TRANSFER = Deployment.internalTransferDate != ""

IN_BUCKET_INACTIVE = or_(_STATUS_INACTIVE, _HAS_EXIT)
IN_BUCKET_TRANSFER = and_(_HAS_TRANSFER, not_(_HAS_EXIT), not_(_STATUS_INACTIVE))
IN_BUCKET_ACTIVE = and_(not_(_HAS_EXIT), not_(_STATUS_INACTIVE), not_(_HAS_TRANSFER))

BUCKET_PREDICATES = {
    BUCKET_ACTIVE: IN_BUCKET_ACTIVE,
    BUCKET_TRANSFER: IN_BUCKET_TRANSFER,
    BUCKET_INACTIVE: IN_BUCKET_INACTIVE,
}


def is_exited(dep: Deployment) -> bool:
    return bool(dep.exitDate) or str(dep.status or "").strip().lower() == "inactive"


def deployment_bucket(dep: Deployment) -> str:
    if is_exited(dep):
        return BUCKET_INACTIVE
    if dep.internalTransferDate:
        return BUCKET_TRANSFER
    return BUCKET_ACTIVE


def tenure(doj: Any, exit_date: Any = None, *, now: Optional[datetime] = None) -> str:
    """Whole months from `doj` to `exit_date` (or now) as "years.months"; "" without a doj."""

    start = parse_datetime_maybe(doj)
    if not start:
        return ""
    end = parse_datetime_maybe(exit_date) or now or datetime.now(timezone.utc)
    months = (end.year - start.year) * 12 - start.month + end.month
    if end.day < start.day:
        months -= 1
    months = max(0, months)
    return f"{months // 12}.{months % 12}"


def serialize_deployment(dep: Deployment) -> dict[str, Any]:
    out = {col.name: getattr(dep, col.name) for col in Deployment.__table__.columns}
    for key in ("recipientEmailsJson", "ccEmailsJson", "internalTransferRecipientsJson", "internalTransferCcJson"):
        out.pop(key, None)
    out["recipientEmails"] = load_json_list(dep.recipientEmailsJson)
    out["ccEmails"] = load_json_list(dep.ccEmailsJson)
    out["internalTransferRecipients"] = load_json_list(dep.internalTransferRecipientsJson)
    out["internalTransferCc"] = load_json_list(dep.internalTransferCcJson)
    out["emailResults"] = {
        "successful": int(dep.emailSuccessful or 0),
        "failed": int(dep.emailFailed or 0),
        "total": int(dep.emailTotal or 0),
    }
    out["tenure"] = tenure(dep.doj, dep.exitDate)
    out["bucket"] = deployment_bucket(dep)
    return out


def get_deployment(db, deployment_id: Any, *, for_update: bool = False) -> Deployment:
    did = str(deployment_id or "").strip()
    if not did:
        raise ApiError("BAD_REQUEST", "Missing deploymentId")
    q = select(Deployment).where(Deployment.deploymentId == did)
    if for_update:
        q = q.with_for_update(of=Deployment)
    dep = db.execute(q).scalars().first()
    if not dep:
        raise ApiError("NOT_FOUND", "Deployment record not found")
    return dep


def find_by_candidate(db, candidate_id: str) -> Optional[Deployment]:
    return db.execute(select(Deployment).where(Deployment.candidateId == str(candidate_id))).scalars().first()


def _apply_email_audit(
    dep: Deployment,
    *,
    subject: str,
    content: str,
    recipients: list[str],
    cc: list[str],
    outcome: SendResult,
    sender_emp_id: str,
    sender_name: str,
    sender_email: str,
) -> None:
    dep.emailSubject = subject or DEPLOYMENT_SUBJECT
    dep.emailContent = content or ""
    dep.recipientEmailsJson = json.dumps(recipients)
    dep.ccEmailsJson = json.dumps(cc)
    dep.sentBy = sender_emp_id
    dep.sentByName = sender_name
    dep.sentFromEmail = sender_email
    dep.emailStatus = outcome.status
    dep.emailSuccessful = int(outcome.successful)
    dep.emailFailed = int(outcome.failed)
    dep.emailTotal = int(outcome.total)


def _apply_placement(dep: Deployment, cand: Candidate, placement: dict[str, Any]) -> None:
    for key in PLACEMENT_FIELDS:
        if key in placement:
            setattr(dep, key, str(placement.get(key) or "").strip())
    if placement.get("deploymentDate"):
        dep.deploymentDate = normalize_iso_maybe(placement.get("deploymentDate"))
        if not dep.deploymentDate:
            raise ApiError("BAD_REQUEST", "Invalid deploymentDate")

    dep.candidateName = cand.fullName or ""
    dep.candidateEmpId = str(cand.permanentEmployeeId or cand.employeeId or "").upper()
    dep.candidateMobile = cand.mobileNumber or ""
    dep.candidateOfficeEmail = cand.officeEmail or ""
    dep.candidateExperienceLevel = cand.experienceLevel or ""
    dep.candidateAssignedTeam = cand.assignedTeam or ""
    dep.candidateBatch = cand.batchLabel or ""


def upsert_on_email_sent(
    db,
    *,
    candidate_id: Any,
    placement: dict[str, Any],
    outcome: SendResult,
    subject: str = "",
    content: str = "",
    recipients: Optional[list[str]] = None,
    cc: Optional[list[str]] = None,
    sender_email: str = "",
    auth: Optional[AuthContext],
) -> Deployment:
    """
    One deployment record per candidate. An existing record has its placement and
    notification audit refreshed in place; otherwise a new one is created. The
    candidate is then flagged deployed unless it already is.

    The record is committed before the candidate flag is written so a flag failure
    surfaces as PARTIAL_FAILURE with the record intact (retry via
    `mark_candidate_deployed`, no second notification).
    """

    cand = candidate_state.get_candidate(db, candidate_id, for_update=True)
    now = iso_utc_now()
    recipients = recipients or []
    cc = cc or []

    dep = find_by_candidate(db, cand.candidateId)
    created = dep is None
    if created:
        dep = Deployment(
            deploymentId=new_prefixed_id("DEP"),
            candidateId=cand.candidateId,
            status=STATUS_ACTIVE,
            createdAt=now,
        )
    _apply_placement(dep, cand, placement or {})
    _apply_email_audit(
        dep,
        subject=subject,
        content=content,
        recipients=recipients,
        cc=cc,
        outcome=outcome,
        sender_emp_id=actor_id(auth),
        sender_name=actor_name(auth),
        sender_email=sender_email,
    )
    dep.updatedAt = now
    dep.updatedBy = actor_id(auth)

    if created:
        try:
            with db.begin_nested():
                db.add(dep)
                db.flush()
        except IntegrityError:
            # A concurrent request created the record first; fold into it.
            existing = find_by_candidate(db, cand.candidateId)
            if existing is None:
                raise
            return upsert_on_email_sent(
                db,
                candidate_id=cand.candidateId,
                placement=placement,
                outcome=outcome,
                subject=subject,
                content=content,
                recipients=recipients,
                cc=cc,
                sender_email=sender_email,
                auth=auth,
            )

    append_audit(
        db,
        entityType="DEPLOYMENT",
        entityId=dep.deploymentId,
        action="DEPLOYMENT_RECORD_CREATE" if created else "DEPLOYMENT_RECORD_REFRESH",
        toState=dep.emailStatus,
        stageTag="DEPLOYMENT",
        actor=auth,
        at=now,
        meta={"candidateId": cand.candidateId, "emailResults": outcome.as_dict()},
    )
    db.commit()

    if not cand.deploymentEmailSent:
        deployment_id = dep.deploymentId
        try:
            candidate_state.record_deployment_email_sent(
                db, candidate_id=cand.candidateId, deployment_record_id=deployment_id, auth=auth
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            log.exception("candidate flag failed candidate=%s deployment=%s", cand.candidateId, deployment_id)
            raise ApiError(
                "PARTIAL_FAILURE",
                f"Deployment record {deployment_id} was saved but the candidate could not be marked as deployed. "
                "Retry marking the candidate as deployed; do not resend the email.",
            )

    log.info(
        "deployment %s candidate=%s deployment=%s status=%s",
        "created" if created else "refreshed",
        cand.candidateId,
        dep.deploymentId,
        dep.emailStatus,
    )
    return dep


def mark_candidate_deployed(db, *, candidate_id: Any, auth: AuthContext) -> dict[str, Any]:
    """Completes a deployment whose candidate flag failed after the record was saved."""

    cand = candidate_state.get_candidate(db, candidate_id)
    dep = find_by_candidate(db, cand.candidateId)
    if not dep:
        raise ApiError("NOT_FOUND", "No deployment record exists for this candidate")
    candidate_state.record_deployment_email_sent(
        db, candidate_id=cand.candidateId, deployment_record_id=dep.deploymentId, auth=auth
    )
    return {
        "success": True,
        "message": f"{cand.fullName} marked as deployed",
        "deploymentId": dep.deploymentId,
    }


def _resolve_sender(db, auth: AuthContext):
    check_email_permission(db, emp_id=auth.userId)
    try:
        return delivery_manager_mailbox(db)
    except ApiError as e:
        raise ApiError("FORBIDDEN", f"Access denied: {e.message}")


def _send(recipients: list[str], cc: list[str], subject: str, body: str, sender) -> SendResult:
    try:
        return get_gateway().send(recipients, cc, subject, body, sender=sender)
    except NotificationError as e:
        log.warning("notification aborted err=%s", e)
        raise ApiError("INTERNAL", f"Failed to send email: {e}", http_status=502)


def _recipient_message(kind: str, recipients: list[str], cc: list[str]) -> str:
    msg = f"{kind} email sent to {len(recipients)} recipients"
    if cc:
        msg += f" (CC: {len(cc)})"
    return msg


def send_deployment_email(db, *, data: dict[str, Any], auth: AuthContext) -> dict[str, Any]:
    candidate_id = str(data.get("candidateId") or "").strip()
    form = data.get("formData") or {}
    if not candidate_id or not isinstance(form, dict) or not form:
        raise ApiError("BAD_REQUEST", "Form data and candidate ID are required")

    recipients = clean_email_list(data.get("recipientEmails"))
    cc = clean_email_list(data.get("ccEmails"))
    if not recipients:
        raise ApiError("BAD_REQUEST", "At least one recipient email is required")

    cand = candidate_state.get_candidate(db, candidate_id)
    if cand.deploymentEmailSent:
        raise ApiError("ALREADY_DONE", "Deployment email has already been sent for this candidate")

    sender = _resolve_sender(db, auth)
    subject = str(data.get("subject") or "").strip() or DEPLOYMENT_SUBJECT
    content = str(data.get("content") or "")

    form = dict(form)
    form.setdefault("name", cand.fullName)
    form.setdefault("empId", cand.permanentEmployeeId or cand.employeeId or "")
    outcome = _send(recipients, cc, subject, render_deployment_body(form, content), sender)

    dep = upsert_on_email_sent(
        db,
        candidate_id=cand.candidateId,
        placement=form,
        outcome=outcome,
        subject=subject,
        content=content,
        recipients=recipients,
        cc=cc,
        sender_email=sender.email,
        auth=auth,
    )
    return {
        "success": True,
        "message": _recipient_message("Deployment", recipients, cc),
        "data": {**outcome.as_dict(), "sentFrom": sender.email, "senderName": sender.name},
        "deployment": serialize_deployment(dep),
    }


def create_deployment_record(db, *, data: dict[str, Any], auth: AuthContext) -> dict[str, Any]:
    """Records a notification that was already delivered outside this service."""

    candidate_id = str(data.get("candidateId") or "").strip()
    form = data.get("formData") or {}
    if not candidate_id or not isinstance(form, dict) or not form:
        raise ApiError("BAD_REQUEST", "Missing required fields: candidateId or formData")

    cand = candidate_state.get_candidate(db, candidate_id)
    if cand.deploymentEmailSent:
        raise ApiError("ALREADY_DONE", "Deployment email already sent for this candidate")

    recipients = clean_email_list(data.get("recipientEmails"))
    results = data.get("emailResults") or {}
    try:
        outcome = SendResult(
            successful=int(results.get("successful") or 0),
            failed=int(results.get("failed") or 0),
            total=int(results.get("total") or len(recipients)),
        )
    except (TypeError, ValueError, AttributeError):
        raise ApiError("BAD_REQUEST", "emailResults must contain integer counts")

    dep = upsert_on_email_sent(
        db,
        candidate_id=cand.candidateId,
        placement=form,
        outcome=outcome,
        subject=str(data.get("emailSubject") or ""),
        content=str(data.get("emailContent") or ""),
        recipients=recipients,
        cc=clean_email_list(data.get("ccEmails")),
        auth=auth,
    )
    return {
        "success": True,
        "message": "Deployment record created successfully",
        "deployment": serialize_deployment(dep),
    }


def record_internal_transfer(
    db,
    *,
    deployment_id: Any,
    outcome: SendResult,
    subject: str,
    content: str,
    recipients: list[str],
    cc: list[str],
    auth: Optional[AuthContext],
) -> Deployment:
    """Stamps transfer date and notification audit; never touches status or exitDate."""

    dep = get_deployment(db, deployment_id, for_update=True)
    before = deployment_bucket(dep)
    now = iso_utc_now()
    dep.internalTransferDate = now
    dep.internalTransferEmailSent = True
    dep.internalTransferSubject = subject or TRANSFER_SUBJECT
    dep.internalTransferContent = content or ""
    dep.internalTransferRecipientsJson = json.dumps(recipients)
    dep.internalTransferCcJson = json.dumps(cc)
    dep.internalTransferSentBy = actor_id(auth)
    dep.internalTransferSentByName = actor_name(auth)
    dep.internalTransferSentAt = now
    dep.updatedAt = now
    dep.updatedBy = actor_id(auth)

    append_audit(
        db,
        entityType="DEPLOYMENT",
        entityId=dep.deploymentId,
        action="INTERNAL_TRANSFER",
        fromState=before,
        toState=deployment_bucket(dep),
        stageTag="INTERNAL_TRANSFER",
        actor=auth,
        at=now,
        meta={"emailResults": outcome.as_dict()},
    )
    return dep


def send_internal_transfer_email(db, *, data: dict[str, Any], auth: AuthContext) -> dict[str, Any]:
    deployment_id = str(data.get("deploymentId") or "").strip()
    form = data.get("formData") or {}
    if not deployment_id or not isinstance(form, dict) or not form:
        raise ApiError("BAD_REQUEST", "Form data and deployment ID are required")

    recipients = clean_email_list(data.get("recipientEmails"))
    cc = clean_email_list(data.get("ccEmails"))
    if not recipients:
        raise ApiError("BAD_REQUEST", "At least one recipient email is required")

    dep = get_deployment(db, deployment_id)
    if is_exited(dep):
        raise ApiError("BAD_REQUEST", f"{dep.candidateName} is marked as inactive and cannot be transferred")

    sender = _resolve_sender(db, auth)
    subject = str(data.get("subject") or "").strip() or TRANSFER_SUBJECT
    content = str(data.get("content") or "")

    form = dict(form)
    form.setdefault("name", dep.candidateName)
    form.setdefault("empId", dep.candidateEmpId)
    outcome = _send(recipients, cc, subject, render_transfer_body(form, content), sender)

    dep = record_internal_transfer(
        db,
        deployment_id=dep.deploymentId,
        outcome=outcome,
        subject=subject,
        content=content,
        recipients=recipients,
        cc=cc,
        auth=auth,
    )
    return {
        "success": True,
        "message": _recipient_message("Internal transfer", recipients, cc),
        "data": {**outcome.as_dict(), "sentFrom": sender.email, "senderName": sender.name},
        "deployment": serialize_deployment(dep),
    }


def test_email_config(db, *, auth: AuthContext) -> dict[str, Any]:
    sender = _resolve_sender(db, auth)
    try:
        get_gateway().verify(sender)
    except NotificationError as e:
        return {"success": False, "message": str(e)}
    return {"success": True, "message": f"Email configuration is valid for {sender.email}"}


def process_exit(db, *, deployment_id: Any, reason: Any, auth: AuthContext) -> dict[str, Any]:
    text = re.sub(r"\s+", " ", str(reason or "")).strip()
    if not text:
        raise ApiError("BAD_REQUEST", "Exit reason is required")
    if len(text) < MIN_EXIT_REASON_LEN:
        raise ApiError("BAD_REQUEST", "Exit reason must be at least 5 characters long")

    dep = get_deployment(db, deployment_id, for_update=True)
    if is_exited(dep):
        raise ApiError("ALREADY_DONE", f"{dep.candidateName} is already marked as inactive")

    before = deployment_bucket(dep)
    now = iso_utc_now()
    dep.status = STATUS_INACTIVE
    dep.exitDate = now
    dep.exitReason = text
    dep.exitProcessedBy = actor_id(auth)
    dep.exitProcessedByName = actor_name(auth)
    dep.exitProcessedAt = now
    dep.updatedAt = now
    dep.updatedBy = actor_id(auth)

    append_audit(
        db,
        entityType="DEPLOYMENT",
        entityId=dep.deploymentId,
        action="DEPLOYMENT_EXIT",
        fromState=before,
        toState=BUCKET_INACTIVE,
        stageTag="EXIT",
        remark=text,
        actor=auth,
        at=now,
    )
    log.info("DEPLOYMENT_EXIT deployment=%s by=%s", dep.deploymentId, actor_id(auth))
    return {
        "success": True,
        "message": f"{dep.candidateName} has been successfully marked as inactive",
        "deployment": serialize_deployment(dep),
    }


def update_deployment_record(db, *, deployment_id: Any, fields: dict[str, Any], auth: AuthContext) -> dict[str, Any]:
    if not isinstance(fields, dict):
        raise ApiError("BAD_REQUEST", "fields must be an object")
    updates = {k: fields[k] for k in UPDATABLE_FIELDS if k in fields}
    if not updates:
        raise ApiError("BAD_REQUEST", "No updatable fields provided")

    dep = get_deployment(db, deployment_id, for_update=True)
    exited = is_exited(dep)

    clean: dict[str, str] = {}
    for key, raw in updates.items():
        val = str(raw or "").strip()
        if key in _DATE_FIELDS and val:
            iso = normalize_iso_maybe(val)
            if not iso:
                raise ApiError("BAD_REQUEST", f"Invalid date for {key}")
            val = iso
        if key == "leadOrNonLead" and val not in LEAD_OPTIONS:
            raise ApiError("BAD_REQUEST", "leadOrNonLead must be Lead or Non-Lead")
        clean[key] = val

    if exited:
        reactivating = ("exitDate" in clean and not clean["exitDate"]) or (
            "status" in clean and clean["status"].lower() != "inactive"
        )
        if reactivating:
            raise ApiError("BAD_REQUEST", "Exited deployment records cannot be reactivated")

    before = deployment_bucket(dep)
    for key, val in clean.items():
        setattr(dep, key, val)
    if dep.exitDate and str(dep.status or "").lower() != "inactive":
        dep.status = STATUS_INACTIVE

    now = iso_utc_now()
    dep.updatedAt = now
    dep.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="DEPLOYMENT",
        entityId=dep.deploymentId,
        action="DEPLOYMENT_RECORD_UPDATE",
        fromState=before,
        toState=deployment_bucket(dep),
        stageTag="DEPLOYMENT_UPDATE",
        actor=auth,
        at=now,
        meta={"fields": sorted(clean.keys())},
    )
    return {
        "success": True,
        "message": "Deployment record updated successfully",
        "deployment": serialize_deployment(dep),
    }


def list_deployment_records(db, *, params: dict[str, Any]) -> dict[str, Any]:
    tab = str(params.get("tab") or BUCKET_ACTIVE).strip()
    if tab not in BUCKET_PREDICATES:
        raise ApiError("BAD_REQUEST", f"Invalid tab: {tab}")
    filter_by = str(params.get("filterBy") or "createdAt").strip()
    if filter_by not in DATE_FILTER_FIELDS:
        raise ApiError("BAD_REQUEST", f"Invalid filterBy: {filter_by}")

    q = select(Deployment).where(BUCKET_PREDICATES[tab])
    client = str(params.get("client") or "").strip()
    if client:
        q = q.where(func.lower(Deployment.client) == client.lower())
    bu = str(params.get("bu") or "").strip()
    if bu:
        q = q.where(func.lower(Deployment.bu) == bu.lower())
    q = apply_search(q, params.get("search"), SEARCH_FIELDS)
    q = apply_date_window(q, DATE_FILTER_FIELDS[filter_by], params.get("fromDate"), params.get("toDate"))

    page = paginate(db, q.order_by(Deployment.createdAt.desc()), params)
    rows = [serialize_deployment(d) for d in page.pop("rows")]
    return {
        "success": True,
        "message": f"Retrieved {len(rows)} deployment records for {tab} tab",
        "deployments": rows,
        "pagination": page,
        "stats": deployment_bucket_counts(db),
    }


def deployment_bucket_counts(db) -> dict[str, int]:
    out = {}
    for name, pred in BUCKET_PREDICATES.items():
        out[name] = int(db.execute(select(func.count()).select_from(Deployment).where(pred)).scalar() or 0)
    out["total"] = sum(out.values())
    return out
