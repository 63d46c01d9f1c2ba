from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from actions.helpers import actor_id, actor_name, append_audit, new_prefixed_id
from actions.identity_registry import (
    EMPLOYEE_ID,
    MOBILE,
    OFFICE_EMAIL,
    PERMANENT_ID,
    PERSONAL_EMAIL,
    assert_contact_identity_free,
    conflict_on_race,
    reserve,
    validate_identity,
)
from models import Candidate
from utils import ApiError, AuthContext, iso_utc_now, to_bool


log = logging.getLogger("transitions")

STATUS_SUBMITTED = "submitted"
STATUS_SENT = "sent"

LD_PENDING = "Pending"
LD_SELECTED = "Selected"
LD_REJECTED = "Rejected"
LD_DROPPED = "Dropped"
LD_DECISIONS = {LD_SELECTED, LD_REJECTED, LD_DROPPED}
LD_TERMINAL = {LD_REJECTED, LD_DROPPED}

REJECTION_REASONS = {
    "Not Selected",
    "Uninformed Leave",
    "Underperformance",
    "Behavioural Issues",
    "Disciplinary Issues",
    "Low Score",
}
DROPPED_REASONS = {"Better Offer", "Health Issues", "Personal Reasons", "Abscond"}

FRESHER = "Fresher"
LATERAL = "Lateral"
EXPERIENCE_LEVELS = {FRESHER, LATERAL}
GENDERS = {"Male", "Female"}
SOURCES = {"Walk-in", "Reference", "Campus", ""}

ALLOCATION_PENDING = "Pending Allocation"
ALLOCATION_STATUSES = {ALLOCATION_PENDING, "Allocated", "On Hold", "Completed"}


# Shared SQL predicates over the flag set. Dashboards compose views from these.
IS_SENT = Candidate.status == STATUS_SENT
IS_LD_TERMINAL = Candidate.ldStatus.in_(sorted(LD_TERMINAL))
IS_LD_SELECTED = Candidate.ldStatus == LD_SELECTED
IS_LD_PENDING = or_(Candidate.ldStatus.is_(None), Candidate.ldStatus == "", Candidate.ldStatus == LD_PENDING)
HAS_PERMANENT_ID = and_(Candidate.permanentEmployeeId.is_not(None), Candidate.permanentEmployeeId != "")

# Preconditions for the guarded bulk transitions.
GUARD_SEND_TO_OPS = Candidate.status == STATUS_SUBMITTED
GUARD_SEND_TO_ADMIN = and_(IS_SENT, Candidate.sentToAdmin == False)  # noqa: E712
GUARD_SEND_TO_ADMIN_AND_LD = and_(IS_SENT, or_(Candidate.sentToAdmin == False, Candidate.sentToLD == False))  # noqa: E712
GUARD_LD_SEND_TO_DELIVERY = and_(IS_LD_SELECTED, Candidate.sentToDelivery == False)  # noqa: E712
GUARD_HROPS_SEND_TO_DELIVERY = and_(
    or_(IS_SENT, IS_LD_TERMINAL),
    Candidate.officeEmailAssignedBy != "",
    Candidate.employeeIdAssignedBy != "",
    Candidate.sentToDelivery == False,  # noqa: E712
)
GUARD_HROPS_SEND_TO_DELIVERY_PERMANENT = and_(
    IS_SENT,
    Candidate.sentToHROpsFromHRTag == True,  # noqa: E712
    Candidate.permanentIdAssignedBy != "",
    # Not yet re-sent since the permanent id was assigned.
    or_(Candidate.sentToDelivery == False, Candidate.sentToDeliveryAt < Candidate.permanentIdAssignedAt),  # noqa: E712
)
GUARD_SEND_TO_HRTAG_AS_DEPLOYED = and_(
    IS_SENT,
    Candidate.sentToDelivery == True,  # noqa: E712
    Candidate.sentToHRTag == False,  # noqa: E712
)
GUARD_SEND_TO_HROPS_FOR_PERMANENT_ID = and_(
    IS_SENT,
    Candidate.sentToHRTag == True,  # noqa: E712
    IS_LD_SELECTED,
    Candidate.sentToHROpsFromHRTag == False,  # noqa: E712
)

# Eligibility for single-record assignments.
ELIGIBLE_OFFICE_EMAIL = or_(IS_SENT, IS_LD_TERMINAL)
ELIGIBLE_EMPLOYEE_ID = or_(IS_SENT, IS_LD_TERMINAL)
ELIGIBLE_PERMANENT_ID = and_(IS_SENT, Candidate.sentToHROpsFromHRTag == True)  # noqa: E712
ELIGIBLE_ALLOCATION = and_(IS_SENT, Candidate.sentToDelivery == True)  # noqa: E712
ELIGIBLE_ADMIN_NOTES = or_(Candidate.sentToAdmin == True, IS_LD_TERMINAL)  # noqa: E712


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------

_STAGE_PRIORITY: list[tuple[Callable[[Candidate], bool], Callable[[Candidate], str]]] = [
    (lambda c: c.ldStatus in LD_TERMINAL, lambda c: f"L&D {c.ldStatus}"),
    (lambda c: bool(c.sentToDelivery), lambda c: "Delivery Team"),
    (lambda c: bool(c.sentToLD), lambda c: "L&D Review"),
    (lambda c: bool(c.sentToAdmin), lambda c: "Admin Review"),
    (lambda c: c.status == STATUS_SENT, lambda c: "HR Ops Processing"),
]


def current_stage(cand: Candidate) -> str:
    """First matching rule wins; see _STAGE_PRIORITY for the order."""

    for matches, label in _STAGE_PRIORITY:
        if matches(cand):
            return label(cand)
    return "HR Tag Submitted"


def is_fully_processed(cand: Candidate) -> bool:
    return bool(cand.officeEmail) and bool(cand.employeeId) and cand.ldStatus == LD_SELECTED


def build_timeline(cand: Candidate) -> list[dict[str, str]]:
    events = [
        ("Candidate submitted by HR Tag", cand.createdAt, cand.submittedByName),
        ("Sent to HR Ops", cand.sentToOpsAt, cand.sentToOpsByName),
        (f"Office email assigned: {cand.officeEmail or ''}", cand.officeEmailAssignedAt, cand.officeEmailAssignedByName),
        (f"Employee ID assigned: {cand.employeeId or ''}", cand.employeeIdAssignedAt, cand.employeeIdAssignedByName),
        ("Sent to Admin", cand.sentToAdminAt, cand.sentToAdminByName),
        ("Sent to L&D", cand.sentToLDAt, cand.sentToLDByName),
        (
            f"L&D decision: {cand.ldStatus}" + (f" ({cand.ldReason})" if cand.ldReason else ""),
            cand.ldStatusUpdatedAt,
            cand.ldStatusUpdatedByName,
        ),
        ("Sent to HR Tag", cand.sentToHRTagAt, cand.sentToHRTagByName),
        ("Sent to HR Ops for permanent ID", cand.sentToHROpsFromHRTagAt, cand.sentToHROpsFromHRTagByName),
        (
            f"Permanent ID assigned: {cand.permanentEmployeeId or ''}",
            cand.permanentIdAssignedAt,
            cand.permanentIdAssignedByName,
        ),
        ("Sent to Delivery", cand.sentToDeliveryAt, cand.sentToDeliveryByName),
        ("Deployment email sent", cand.deploymentEmailSentAt, cand.deploymentEmailSentBy),
    ]
    out = [{"event": label, "at": str(at), "by": str(by or "")} for label, at, by in events if at]
    out.sort(key=lambda e: e["at"])
    return out


def serialize_candidate(cand: Candidate) -> dict[str, Any]:
    out = {col.name: getattr(cand, col.name) for col in Candidate.__table__.columns}
    out["currentStage"] = current_stage(cand)
    out["isFullyProcessed"] = is_fully_processed(cand)
    return out


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def get_candidate(db, candidate_id: Any, *, for_update: bool = False) -> Candidate:
    cid = str(candidate_id or "").strip()
    if not cid:
        raise ApiError("BAD_REQUEST", "Missing candidateId")
    q = select(Candidate).where(Candidate.candidateId == cid)
    if for_update:
        q = q.with_for_update(of=Candidate)
    cand = db.execute(q).scalars().first()
    if not cand:
        raise ApiError("NOT_FOUND", "Candidate not found")
    return cand


def _load_eligible(db, candidate_id: Any, eligible, not_eligible_message: str) -> Candidate:
    cand = get_candidate(db, candidate_id, for_update=True)
    row = db.execute(
        select(Candidate.candidateId).where(Candidate.candidateId == cand.candidateId).where(eligible)
    ).first()
    if not row:
        raise ApiError("NOT_FOUND", not_eligible_message)
    return cand


def _stamp(cand: Candidate, flag: str, *, now: str, auth: Optional[AuthContext]) -> None:
    setattr(cand, flag, True)
    setattr(cand, f"{flag}At", now)
    setattr(cand, f"{flag}By", actor_id(auth))
    setattr(cand, f"{flag}ByName", actor_name(auth))


def _touch(cand: Candidate, *, now: str, auth: Optional[AuthContext]) -> None:
    cand.updatedAt = now
    cand.updatedBy = actor_id(auth)


def _bulk_transition(
    db,
    *,
    candidate_ids: list[str],
    guard,
    mutate: Callable[[Candidate, str], None],
    action: str,
    auth: Optional[AuthContext],
    zero_message: str,
) -> list[Candidate]:
    """
    Best-effort bulk flag-set: applies `mutate` to every listed candidate that currently
    satisfies `guard`. Zero matches is a user error; partial matches succeed.
    """

    rows = (
        db.execute(
            select(Candidate)
            .where(Candidate.candidateId.in_(candidate_ids))
            .where(guard)
            .order_by(Candidate.createdAt)
            .with_for_update(of=Candidate)
        )
        .scalars()
        .all()
    )
    if not rows:
        raise ApiError("BAD_REQUEST", zero_message)

    now = iso_utc_now()
    for cand in rows:
        before = current_stage(cand)
        mutate(cand, now)
        _touch(cand, now=now, auth=auth)
        append_audit(
            db,
            entityType="CANDIDATE",
            entityId=cand.candidateId,
            action=action,
            fromState=before,
            toState=current_stage(cand),
            stageTag=action,
            actor=auth,
            at=now,
        )
    log.info("%s requested=%s modified=%s by=%s", action, len(candidate_ids), len(rows), actor_id(auth))
    return rows


def _bulk_result(rows: list[Candidate], requested: list[str], message: str) -> dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "sentCount": len(rows),
        "requestedCount": len(requested),
        "candidateIds": [c.candidateId for c in rows],
    }


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def submit_candidate(db, *, data: dict[str, Any], auth: AuthContext) -> dict[str, Any]:
    full_name = str(data.get("fullName") or "").strip()
    if not full_name:
        raise ApiError("BAD_REQUEST", "Full name is required")

    gender = str(data.get("gender") or "").strip()
    if gender not in GENDERS:
        raise ApiError("BAD_REQUEST", "Gender must be Male or Female")

    experience = str(data.get("experienceLevel") or "").strip()
    if experience not in EXPERIENCE_LEVELS:
        raise ApiError("BAD_REQUEST", "Experience level must be Fresher or Lateral")

    source = str(data.get("source") or "").strip()
    if source not in SOURCES:
        raise ApiError("BAD_REQUEST", "Source must be Walk-in, Reference or Campus")
    reference_name = str(data.get("referenceName") or "").strip()
    if source == "Reference" and not reference_name:
        raise ApiError("BAD_REQUEST", "Reference name is required when source is Reference")

    email = validate_identity(PERSONAL_EMAIL, data.get("personalEmail"))
    mobile = validate_identity(MOBILE, data.get("mobileNumber"))
    assert_contact_identity_free(db, personal_email=email, mobile=mobile)

    is_fresher = experience == FRESHER
    now = iso_utc_now()
    cand = Candidate(
        candidateId=new_prefixed_id("CAND"),
        personalEmail=email,
        mobileNumber=mobile,
        fullName=full_name,
        gender=gender,
        fatherName=str(data.get("fatherName") or "").strip(),
        firstGraduate=to_bool(data.get("firstGraduate")),
        experienceLevel=experience,
        source=source,
        referenceName=reference_name if source == "Reference" else "",
        native=str(data.get("native") or "").strip(),
        college=str(data.get("college") or "").strip(),
        batchLabel=str(data.get("batchLabel") or "").strip() if is_fresher else "",
        year=str(data.get("year") or "").strip() if is_fresher else "",
        linkedinUrl=str(data.get("linkedinUrl") or "").strip(),
        resumeFileName=str(data.get("resumeFileName") or "").strip(),
        resumePath=str(data.get("resumePath") or "").strip(),
        submittedBy=actor_id(auth),
        submittedByName=actor_name(auth),
        status=STATUS_SUBMITTED,
        ldStatus=LD_PENDING,
        allocationStatus=ALLOCATION_PENDING,
        createdAt=now,
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    try:
        with db.begin_nested():
            db.add(cand)
            db.flush()
    except IntegrityError:
        raise ApiError("DUPLICATE", "Candidate with this email or mobile number already exists")

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.candidateId,
        action="CANDIDATE_SUBMIT",
        toState=current_stage(cand),
        stageTag="CANDIDATE_SUBMIT",
        actor=auth,
        at=now,
    )
    log.info("CANDIDATE_SUBMIT candidate=%s by=%s", cand.candidateId, actor_id(auth))
    return {"success": True, "message": "Candidate added successfully", "candidate": serialize_candidate(cand)}


def send_to_ops(db, *, candidate_ids: list[str], auth: AuthContext) -> dict[str, Any]:
    def mutate(c: Candidate, now: str) -> None:
        c.status = STATUS_SENT
        c.sentToOpsAt = now
        c.sentToOpsBy = actor_id(auth)
        c.sentToOpsByName = actor_name(auth)

    rows = _bulk_transition(
        db,
        candidate_ids=candidate_ids,
        guard=GUARD_SEND_TO_OPS,
        mutate=mutate,
        action="CANDIDATES_SEND_TO_OPS",
        auth=auth,
        zero_message="No candidates were sent. They may have already been sent.",
    )
    return _bulk_result(rows, candidate_ids, f"Successfully sent {len(rows)} candidate(s) to HR Ops team")


def send_to_admin(db, *, candidate_ids: list[str], auth: AuthContext) -> dict[str, Any]:
    rows = _bulk_transition(
        db,
        candidate_ids=candidate_ids,
        guard=GUARD_SEND_TO_ADMIN,
        mutate=lambda c, now: _stamp(c, "sentToAdmin", now=now, auth=auth),
        action="CANDIDATES_SEND_TO_ADMIN",
        auth=auth,
        zero_message="No candidates were sent to Admin.",
    )
    return _bulk_result(rows, candidate_ids, f"Successfully sent {len(rows)} candidate(s) to Admin")


def send_to_admin_and_ld(db, *, candidate_ids: list[str], auth: AuthContext) -> dict[str, Any]:
    def mutate(c: Candidate, now: str) -> None:
        if not c.sentToAdmin:
            _stamp(c, "sentToAdmin", now=now, auth=auth)
        if not c.sentToLD:
            _stamp(c, "sentToLD", now=now, auth=auth)

    rows = _bulk_transition(
        db,
        candidate_ids=candidate_ids,
        guard=GUARD_SEND_TO_ADMIN_AND_LD,
        mutate=mutate,
        action="CANDIDATES_SEND_TO_ADMIN_AND_LD",
        auth=auth,
        zero_message="No candidates were sent to Admin and L&D.",
    )
    return _bulk_result(rows, candidate_ids, f"Successfully sent {len(rows)} candidate(s) to BOTH Admin and L&D")


def _assign_identifier(
    db,
    *,
    candidate_id: Any,
    kind: str,
    raw_value: Any,
    eligible,
    not_eligible_message: str,
    column: str,
    stamp_prefix: str,
    action: str,
    auth: AuthContext,
) -> Candidate:
    value = validate_identity(kind, raw_value)
    cand = _load_eligible(db, candidate_id, eligible, not_eligible_message)
    previous = getattr(cand, column) or ""
    reserve(db, kind=kind, value=value, owner_id=cand.candidateId)

    now = iso_utc_now()
    try:
        with db.begin_nested():
            setattr(cand, column, value)
            setattr(cand, f"{stamp_prefix}AssignedBy", actor_id(auth))
            setattr(cand, f"{stamp_prefix}AssignedByName", actor_name(auth))
            setattr(cand, f"{stamp_prefix}AssignedAt", now)
            _touch(cand, now=now, auth=auth)
            db.flush()
    except IntegrityError:
        # Lost a race with a concurrent assignment of the same value.
        raise conflict_on_race(kind, value)

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.candidateId,
        action=action,
        fromState=previous,
        toState=value,
        stageTag=action,
        actor=auth,
        at=now,
    )
    log.info("%s candidate=%s value=%s by=%s", action, cand.candidateId, value, actor_id(auth))
    return cand


def _team_label(auth: AuthContext) -> str:
    return "IT Team" if str(auth.role or "") == "IT" else "HR Ops"


def assign_office_email(db, *, candidate_id: Any, office_email: Any, auth: AuthContext) -> dict[str, Any]:
    cand = _assign_identifier(
        db,
        candidate_id=candidate_id,
        kind=OFFICE_EMAIL,
        raw_value=office_email,
        eligible=ELIGIBLE_OFFICE_EMAIL,
        not_eligible_message="Candidate is not eligible for office email assignment",
        column="officeEmail",
        stamp_prefix="officeEmail",
        action="ASSIGN_OFFICE_EMAIL",
        auth=auth,
    )
    return {
        "success": True,
        "message": f"Office email {cand.officeEmail} assigned successfully to {cand.fullName} by {_team_label(auth)}",
        "candidate": serialize_candidate(cand),
    }


def assign_employee_id(db, *, candidate_id: Any, employee_id: Any, auth: AuthContext) -> dict[str, Any]:
    cand = _assign_identifier(
        db,
        candidate_id=candidate_id,
        kind=EMPLOYEE_ID,
        raw_value=employee_id,
        eligible=ELIGIBLE_EMPLOYEE_ID,
        not_eligible_message="Candidate is not eligible for employee ID assignment",
        column="employeeId",
        stamp_prefix="employeeId",
        action="ASSIGN_EMPLOYEE_ID",
        auth=auth,
    )
    return {
        "success": True,
        "message": f"Employee ID {cand.employeeId} assigned successfully to {cand.fullName} by HR Ops",
        "candidate": serialize_candidate(cand),
    }


def assign_permanent_id(db, *, candidate_id: Any, permanent_id: Any, auth: AuthContext) -> dict[str, Any]:
    cand = _assign_identifier(
        db,
        candidate_id=candidate_id,
        kind=PERMANENT_ID,
        raw_value=permanent_id,
        eligible=ELIGIBLE_PERMANENT_ID,
        not_eligible_message="Candidate not found or not sent from HR Tag for permanent ID assignment",
        column="permanentEmployeeId",
        stamp_prefix="permanentId",
        action="ASSIGN_PERMANENT_ID",
        auth=auth,
    )
    return {
        "success": True,
        "message": f"Permanent Employee ID {cand.permanentEmployeeId} assigned successfully to {cand.fullName} by HR Ops",
        "candidate": serialize_candidate(cand),
    }


def update_ld_decision(db, *, candidate_id: Any, status: Any, reason: Any, auth: AuthContext) -> dict[str, Any]:
    ld_status = str(status or "").strip()
    ld_reason = str(reason or "").strip()
    if ld_status not in LD_DECISIONS:
        raise ApiError("BAD_REQUEST", "Invalid L&D status. Must be Selected, Rejected, or Dropped")
    if ld_status in LD_TERMINAL:
        if not ld_reason:
            raise ApiError("BAD_REQUEST", f"Reason is required for {ld_status.lower()} status")
        allowed = REJECTION_REASONS if ld_status == LD_REJECTED else DROPPED_REASONS
        if ld_reason not in allowed:
            raise ApiError("BAD_REQUEST", f"Invalid reason for {ld_status.lower()} status: {ld_reason}")
    else:
        ld_reason = ""

    cand = get_candidate(db, candidate_id, for_update=True)
    if not cand.sentToLD:
        raise ApiError("BAD_REQUEST", "Candidate has not been sent to L&D")

    before = cand.ldStatus or LD_PENDING
    now = iso_utc_now()
    cand.ldStatus = ld_status
    cand.ldReason = ld_reason
    cand.ldStatusUpdatedBy = actor_id(auth)
    cand.ldStatusUpdatedByName = actor_name(auth)
    cand.ldStatusUpdatedAt = now

    if ld_status in LD_TERMINAL:
        # Rejection fans out to HR Tag, HR Ops, IT and Admin in the same write.
        _stamp(cand, "sentToHRTag", now=now, auth=auth)
        _stamp(cand, "sentToAdmin", now=now, auth=auth)
        cand.routedToHRTag = True
        cand.routedToHROps = True
        cand.routedToIT = True
        cand.routedToAdmin = True
        cand.routingTimestamp = now
        cand.routingReason = f"L&D {ld_status}"
    _touch(cand, now=now, auth=auth)

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.candidateId,
        action="LD_UPDATE_DECISION",
        fromState=before,
        toState=ld_status,
        stageTag="LD_DECISION",
        remark=ld_reason,
        actor=auth,
        at=now,
    )
    log.info("LD_UPDATE_DECISION candidate=%s %s->%s by=%s", cand.candidateId, before, ld_status, actor_id(auth))

    msg = f"Candidate marked as {ld_status}"
    if ld_status in LD_TERMINAL:
        msg += " and routed to HR Tag, HR Ops, IT and Admin"
    return {"success": True, "message": msg, "candidate": serialize_candidate(cand)}


def send_to_delivery(db, *, candidate_ids: list[str], auth: AuthContext) -> dict[str, Any]:
    """L&D hand-off. Laterals also enter the allocation queue."""

    breakdown = {"freshers": 0, "laterals": 0}

    def mutate(c: Candidate, now: str) -> None:
        _stamp(c, "sentToDelivery", now=now, auth=auth)
        if c.experienceLevel == LATERAL:
            c.allocationStatus = ALLOCATION_PENDING
            breakdown["laterals"] += 1
        else:
            breakdown["freshers"] += 1

    rows = _bulk_transition(
        db,
        candidate_ids=candidate_ids,
        guard=GUARD_LD_SEND_TO_DELIVERY,
        mutate=mutate,
        action="LD_SEND_TO_DELIVERY",
        auth=auth,
        zero_message="No eligible candidates found for delivery team",
    )
    out = _bulk_result(rows, candidate_ids, f"Successfully sent {len(rows)} candidate(s) to Delivery Team")
    out["breakdown"] = breakdown
    return out


def hrops_send_to_delivery(db, *, candidate_ids: list[str], auth: AuthContext, permanent: bool = False) -> dict[str, Any]:
    if permanent:
        rows = _bulk_transition(
            db,
            candidate_ids=candidate_ids,
            guard=GUARD_HROPS_SEND_TO_DELIVERY_PERMANENT,
            mutate=lambda c, now: _stamp(c, "sentToDelivery", now=now, auth=auth),
            action="HROPS_SEND_TO_DELIVERY_PERMANENT",
            auth=auth,
            zero_message="No candidates were sent to Delivery. Make sure candidates have a Permanent Employee ID assigned.",
        )
        msg = f"Successfully sent {len(rows)} candidate(s) with permanent ID to Delivery Team"
    else:
        rows = _bulk_transition(
            db,
            candidate_ids=candidate_ids,
            guard=GUARD_HROPS_SEND_TO_DELIVERY,
            mutate=lambda c, now: _stamp(c, "sentToDelivery", now=now, auth=auth),
            action="HROPS_SEND_TO_DELIVERY",
            auth=auth,
            zero_message="No candidates were sent to Delivery. Make sure candidates have both Office Email and Employee ID assigned.",
        )
        msg = f"Successfully sent {len(rows)} candidate(s) to Delivery Team"
    return _bulk_result(rows, candidate_ids, msg)


def send_to_hrtag_as_deployed(db, *, candidate_ids: list[str], auth: AuthContext) -> dict[str, Any]:
    rows = _bulk_transition(
        db,
        candidate_ids=candidate_ids,
        guard=GUARD_SEND_TO_HRTAG_AS_DEPLOYED,
        mutate=lambda c, now: _stamp(c, "sentToHRTag", now=now, auth=auth),
        action="DELIVERY_SEND_TO_HRTAG",
        auth=auth,
        zero_message="No candidates were sent to HR Tag. Make sure candidates are available for deployment.",
    )
    return _bulk_result(
        rows, candidate_ids, f"Successfully sent {len(rows)} candidate(s) to HR Tag as deployed candidates"
    )


def send_to_hrops_for_permanent_id(db, *, candidate_ids: list[str], auth: AuthContext) -> dict[str, Any]:
    rows = _bulk_transition(
        db,
        candidate_ids=candidate_ids,
        guard=GUARD_SEND_TO_HROPS_FOR_PERMANENT_ID,
        mutate=lambda c, now: _stamp(c, "sentToHROpsFromHRTag", now=now, auth=auth),
        action="CANDIDATES_SEND_TO_HROPS_PERMANENT",
        auth=auth,
        zero_message="No candidates are valid for permanent ID assignment",
    )
    msg = f"Successfully sent {len(rows)} deployed candidate(s) to HR Ops for permanent Employee ID assignment"
    if len(rows) < len(candidate_ids):
        msg += f" ({len(candidate_ids) - len(rows)} skipped as not eligible)"
    return _bulk_result(rows, candidate_ids, msg)


def update_allocation(
    db,
    *,
    candidate_id: Any,
    allocation_status: Any,
    project: Any = "",
    team: Any = "",
    notes: Any = "",
    auth: AuthContext,
) -> dict[str, Any]:
    status = str(allocation_status or "").strip()
    if not status:
        raise ApiError("BAD_REQUEST", "Allocation status is required")
    if status not in ALLOCATION_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid allocation status: {status}")

    cand = _load_eligible(db, candidate_id, ELIGIBLE_ALLOCATION, "Candidate not found or not sent to delivery")

    before = cand.allocationStatus or ""
    now = iso_utc_now()
    cand.allocationStatus = status
    # Blank inputs keep the previous values.
    cand.assignedProject = str(project or "").strip() or cand.assignedProject
    cand.assignedTeam = str(team or "").strip() or cand.assignedTeam
    cand.allocationNotes = str(notes or "").strip() or cand.allocationNotes
    cand.allocationUpdatedBy = actor_id(auth)
    cand.allocationUpdatedAt = now
    _touch(cand, now=now, auth=auth)

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.candidateId,
        action="DELIVERY_UPDATE_ALLOCATION",
        fromState=before,
        toState=status,
        stageTag="ALLOCATION",
        actor=auth,
        at=now,
        meta={"project": cand.assignedProject, "team": cand.assignedTeam},
    )
    return {
        "success": True,
        "message": f"Allocation updated successfully for {cand.fullName}",
        "candidate": serialize_candidate(cand),
    }


def update_admin_notes(db, *, candidate_id: Any, notes: Any, auth: AuthContext) -> dict[str, Any]:
    cand = _load_eligible(db, candidate_id, ELIGIBLE_ADMIN_NOTES, "Candidate not found or not available for Admin review")
    now = iso_utc_now()
    cand.adminNotes = str(notes or "").strip()
    cand.adminNotesUpdatedBy = actor_id(auth)
    cand.adminNotesUpdatedAt = now
    _touch(cand, now=now, auth=auth)
    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.candidateId,
        action="ADMIN_UPDATE_NOTES",
        stageTag="ADMIN_NOTES",
        actor=auth,
        at=now,
    )
    return {
        "success": True,
        "message": f"Notes updated successfully for {cand.fullName}",
        "candidate": serialize_candidate(cand),
    }


def record_deployment_email_sent(
    db, *, candidate_id: str, deployment_record_id: str, auth: Optional[AuthContext]
) -> Candidate:
    """
    Flags the candidate as deployed exactly once. The conditional UPDATE is the guard:
    a second call matches zero rows and fails with ALREADY_DONE.
    """

    now = iso_utc_now()
    res = db.execute(
        update(Candidate)
        .where(Candidate.candidateId == str(candidate_id))
        .where(Candidate.deploymentEmailSent == False)  # noqa: E712
        .values(
            deploymentEmailSent=True,
            deploymentEmailSentAt=now,
            deploymentEmailSentBy=actor_id(auth),
            deploymentRecordId=str(deployment_record_id or ""),
            deploymentStatus="deployed",
            updatedAt=now,
            updatedBy=actor_id(auth),
        )
        .execution_options(synchronize_session="fetch")
    )
    if res.rowcount == 0:
        get_candidate(db, candidate_id)
        raise ApiError("ALREADY_DONE", "Deployment email has already been sent for this candidate")

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=str(candidate_id),
        action="DEPLOYMENT_EMAIL_SENT",
        toState="deployed",
        stageTag="DEPLOYMENT",
        actor=auth,
        at=now,
        meta={"deploymentRecordId": deployment_record_id},
    )
    return get_candidate(db, candidate_id)


def candidate_details(db, *, candidate_id: Any) -> dict[str, Any]:
    cand = get_candidate(db, candidate_id)
    return {
        "success": True,
        "message": f"Retrieved details for {cand.fullName}",
        "candidate": serialize_candidate(cand),
        "timeline": build_timeline(cand),
    }
