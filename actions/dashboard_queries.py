"""
Read-side views over candidate state.

Every dashboard is a (base predicate, search field set, date field) triple composed
from the shared predicates in `actions.candidate_state`. Nothing here mutates; stats
re-run the same predicates as counts and are cached per team until the next mutation.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, true

from actions import candidate_state as cs
from auth import ADMIN, DELIVERY, HR_OPS, HR_TAG, IT, LD, SUPER_ADMIN
from cache_layer import DASHBOARD_STATS_NS, cache_get_or_set, make_cache_key
from models import Candidate
from utils import ApiError, AuthContext, clamp_int, day_range_bounds, normalize_role, to_iso_utc


DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
RECENT_LIMIT = 5


# ---------------------------------------------------------------------------
# Predicate builder
# ---------------------------------------------------------------------------

def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def apply_search(q, term: Any, fields: list):
    s = str(term or "").strip()
    if not s or not fields:
        return q
    pattern = f"%{_escape_like(s)}%"
    return q.where(or_(*[col.ilike(pattern, escape="\\") for col in fields]))


def apply_date_window(q, column, from_date: Any, to_date: Any):
    start, end = day_range_bounds(from_date, to_date)
    if start:
        q = q.where(column >= start)
    if end:
        q = q.where(column != "").where(column <= end)
    return q


def paginate(db, q, params: dict[str, Any]) -> dict[str, Any]:
    page = clamp_int(params.get("page"), 1, 1, 1_000_000)
    limit = clamp_int(params.get("limit"), DEFAULT_PAGE_SIZE, 1, MAX_PAGE_SIZE)
    total = int(db.execute(select(func.count()).select_from(q.order_by(None).subquery())).scalar() or 0)
    rows = db.execute(q.offset((page - 1) * limit).limit(limit)).scalars().all()
    return {
        "rows": rows,
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": (total + limit - 1) // limit,
    }


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

_BASIC_SEARCH = [Candidate.fullName, Candidate.personalEmail, Candidate.mobileNumber]
_PROFILE_SEARCH = _BASIC_SEARCH + [Candidate.fatherName, Candidate.college, Candidate.native, Candidate.source]
_ASSIGNED_SEARCH = _BASIC_SEARCH + [Candidate.officeEmail, Candidate.employeeId, Candidate.permanentEmployeeId]
_REJECTION_SEARCH = _BASIC_SEARCH + [Candidate.officeEmail, Candidate.ldReason]

_IN_DELIVERY = and_(cs.IS_SENT, Candidate.sentToDelivery == True)  # noqa: E712


@dataclass(frozen=True)
class View:
    predicate: Any
    search: list
    date_field: Any
    roles: tuple[str, ...]


VIEWS: dict[str, View] = {
    "hrtag": View(
        true(),
        _BASIC_SEARCH + [Candidate.college, Candidate.linkedinUrl],
        Candidate.createdAt,
        (HR_TAG,),
    ),
    "hrtag-admin": View(Candidate.sentToAdmin == True, _BASIC_SEARCH, Candidate.sentToAdminAt, (HR_TAG, ADMIN)),  # noqa: E712
    "hrtag-deployed": View(
        and_(cs.IS_SENT, Candidate.sentToHRTag == True, cs.IS_LD_SELECTED),  # noqa: E712
        _BASIC_SEARCH + [Candidate.college],
        Candidate.sentToHRTagAt,
        (HR_TAG, ADMIN, IT),
    ),
    "hrops": View(
        or_(cs.IS_SENT, Candidate.sentToHROpsFromHRTag == True, cs.IS_LD_TERMINAL),  # noqa: E712
        _PROFILE_SEARCH + [Candidate.officeEmail, Candidate.employeeId],
        Candidate.createdAt,
        (HR_OPS,),
    ),
    "hrops-permanent": View(
        and_(cs.IS_SENT, Candidate.sentToHROpsFromHRTag == True),  # noqa: E712
        _PROFILE_SEARCH + [Candidate.officeEmail, Candidate.employeeId, Candidate.permanentEmployeeId],
        Candidate.sentToHROpsFromHRTagAt,
        (HR_OPS,),
    ),
    "it": View(
        or_(cs.IS_SENT, cs.IS_LD_TERMINAL),
        _PROFILE_SEARCH + [Candidate.officeEmail],
        Candidate.createdAt,
        (IT,),
    ),
    "admin": View(cs.ELIGIBLE_ADMIN_NOTES, _ASSIGNED_SEARCH, Candidate.createdAt, (ADMIN,)),
    "ld": View(Candidate.sentToLD == True, _ASSIGNED_SEARCH, Candidate.sentToLDAt, (LD,)),  # noqa: E712
    "delivery": View(_IN_DELIVERY, _ASSIGNED_SEARCH, Candidate.sentToDeliveryAt, (DELIVERY,)),
    "delivery-hrops": View(
        and_(_IN_DELIVERY, cs.HAS_PERMANENT_ID),
        _ASSIGNED_SEARCH,
        Candidate.sentToDeliveryAt,
        (DELIVERY, HR_OPS),
    ),
    "delivery-training-cleared": View(
        and_(_IN_DELIVERY, Candidate.experienceLevel == cs.FRESHER),
        _ASSIGNED_SEARCH,
        Candidate.sentToDeliveryAt,
        (DELIVERY,),
    ),
    "delivery-ready": View(
        and_(
            _IN_DELIVERY,
            or_(
                and_(Candidate.experienceLevel == cs.FRESHER, cs.HAS_PERMANENT_ID),
                Candidate.experienceLevel == cs.LATERAL,
            ),
            Candidate.deploymentEmailSent == False,  # noqa: E712
        ),
        _ASSIGNED_SEARCH,
        Candidate.sentToDeliveryAt,
        (DELIVERY,),
    ),
    "delivery-email-sent": View(
        Candidate.deploymentEmailSent == True,  # noqa: E712
        _ASSIGNED_SEARCH,
        Candidate.deploymentEmailSentAt,
        (DELIVERY, HR_TAG, HR_OPS, ADMIN),
    ),
    "rejected-hrtag": View(
        and_(cs.IS_LD_TERMINAL, Candidate.sentToHRTag == True),  # noqa: E712
        _REJECTION_SEARCH,
        Candidate.ldStatusUpdatedAt,
        (HR_TAG,),
    ),
    "rejected-hrops": View(
        and_(cs.IS_LD_TERMINAL, Candidate.routedToHROps == True),  # noqa: E712
        _REJECTION_SEARCH,
        Candidate.ldStatusUpdatedAt,
        (HR_OPS,),
    ),
    "rejected-it": View(
        and_(cs.IS_LD_TERMINAL, Candidate.routedToIT == True),  # noqa: E712
        _REJECTION_SEARCH,
        Candidate.ldStatusUpdatedAt,
        (IT,),
    ),
    "rejected-admin": View(
        and_(cs.IS_LD_TERMINAL, Candidate.sentToAdmin == True),  # noqa: E712
        _REJECTION_SEARCH,
        Candidate.ldStatusUpdatedAt,
        (ADMIN,),
    ),
    "rejected-delivery": View(
        and_(cs.IS_LD_TERMINAL, Candidate.sentToLD == True),  # noqa: E712
        _REJECTION_SEARCH,
        Candidate.ldStatusUpdatedAt,
        (DELIVERY,),
    ),
}


def _assert_view_access(roles: tuple[str, ...], auth: Optional[AuthContext]) -> None:
    role = normalize_role(auth.role if auth else "")
    if role == SUPER_ADMIN:
        return
    if role not in roles:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role or 'PUBLIC'}")


def get_view(name: Any) -> View:
    key = str(name or "").strip().lower()
    view = VIEWS.get(key)
    if view is None:
        raise ApiError("BAD_REQUEST", f"Unknown view: {key}")
    return view


def _apply_filters(q, params: dict[str, Any]):
    ld_status = str(params.get("ldStatus") or "").strip()
    if ld_status and ld_status.lower() != "all":
        if ld_status == cs.LD_PENDING:
            q = q.where(cs.IS_LD_PENDING)
        else:
            q = q.where(Candidate.ldStatus == ld_status)

    level = str(params.get("experienceLevel") or "").strip()
    if level and level.lower() != "all":
        if level not in cs.EXPERIENCE_LEVELS:
            raise ApiError("BAD_REQUEST", "Invalid experienceLevel")
        q = q.where(Candidate.experienceLevel == level)

    alloc = str(params.get("allocationStatus") or "").strip()
    if alloc and alloc.lower() != "all":
        if alloc not in cs.ALLOCATION_STATUSES:
            raise ApiError("BAD_REQUEST", "Invalid allocationStatus")
        q = q.where(Candidate.allocationStatus == alloc)

    status = str(params.get("status") or "").strip()
    if status in {cs.STATUS_SUBMITTED, cs.STATUS_SENT}:
        q = q.where(Candidate.status == status)

    batch = str(params.get("batchLabel") or "").strip()
    if batch and batch.lower() != "all":
        q = q.where(Candidate.batchLabel == batch)
    return q


def list_view(db, *, view: Any, params: dict[str, Any], auth: Optional[AuthContext]) -> dict[str, Any]:
    vdef = get_view(view)
    _assert_view_access(vdef.roles, auth)

    q = select(Candidate).where(vdef.predicate)
    q = _apply_filters(q, params)
    q = apply_search(q, params.get("search"), vdef.search)
    q = apply_date_window(q, vdef.date_field, params.get("fromDate"), params.get("toDate"))
    q = q.order_by(vdef.date_field.desc(), Candidate.createdAt.desc())

    page = paginate(db, q, params)
    rows = [cs.serialize_candidate(c) for c in page.pop("rows")]
    return {
        "success": True,
        "message": f"Retrieved {len(rows)} candidates",
        "view": str(view).strip().lower(),
        "candidates": rows,
        "pagination": page,
    }


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

_HAS_OFFICE_EMAIL = and_(Candidate.officeEmail.is_not(None), Candidate.officeEmail != "")
_HAS_EMPLOYEE_ID = and_(Candidate.employeeId.is_not(None), Candidate.employeeId != "")

TEAM_OVERVIEW: dict[str, tuple[str, dict[str, Any]]] = {
    "hrtag": (
        "hrtag",
        {
            "submitted": Candidate.status == cs.STATUS_SUBMITTED,
            "sent": cs.IS_SENT,
            "freshers": Candidate.experienceLevel == cs.FRESHER,
            "laterals": Candidate.experienceLevel == cs.LATERAL,
            "rejected": Candidate.ldStatus == cs.LD_REJECTED,
            "dropped": Candidate.ldStatus == cs.LD_DROPPED,
            "deployed": and_(Candidate.sentToHRTag == True, cs.IS_LD_SELECTED),  # noqa: E712
            "sentToHROpsForPermanentId": Candidate.sentToHROpsFromHRTag == True,  # noqa: E712
        },
    ),
    "hrops": (
        "hrops",
        {
            "withOfficeEmail": _HAS_OFFICE_EMAIL,
            "withEmployeeId": _HAS_EMPLOYEE_ID,
            "withPermanentId": cs.HAS_PERMANENT_ID,
            "pendingPermanentId": and_(Candidate.sentToHROpsFromHRTag == True, ~cs.HAS_PERMANENT_ID),  # noqa: E712
            "rejectedOrDropped": cs.IS_LD_TERMINAL,
        },
    ),
    "it": (
        "it",
        {
            "withOfficeEmail": _HAS_OFFICE_EMAIL,
            "withoutOfficeEmail": ~_HAS_OFFICE_EMAIL,
            "deployed": Candidate.sentToDelivery == True,  # noqa: E712
            "rejectedOrDropped": cs.IS_LD_TERMINAL,
        },
    ),
    "ld": (
        "ld",
        {
            "pending": cs.IS_LD_PENDING,
            "selected": cs.IS_LD_SELECTED,
            "rejected": Candidate.ldStatus == cs.LD_REJECTED,
            "dropped": Candidate.ldStatus == cs.LD_DROPPED,
            "sentToDelivery": Candidate.sentToDelivery == True,  # noqa: E712
        },
    ),
    "delivery": (
        "delivery",
        {
            "pendingAllocation": Candidate.allocationStatus == cs.ALLOCATION_PENDING,
            "allocated": Candidate.allocationStatus == "Allocated",
            "onHold": Candidate.allocationStatus == "On Hold",
            "completed": Candidate.allocationStatus == "Completed",
            "emailSent": Candidate.deploymentEmailSent == True,  # noqa: E712
            "freshers": Candidate.experienceLevel == cs.FRESHER,
            "laterals": Candidate.experienceLevel == cs.LATERAL,
        },
    ),
    "admin": (
        "admin",
        {
            "sentToAdmin": Candidate.sentToAdmin == True,  # noqa: E712
            "rejectedOrDropped": cs.IS_LD_TERMINAL,
            "withNotes": Candidate.adminNotes != "",
        },
    ),
}

_ROLE_TEAM = {HR_TAG: "hrtag", HR_OPS: "hrops", IT: "it", LD: "ld", DELIVERY: "delivery", ADMIN: "admin"}


def _count(db, *predicates) -> int:
    return int(db.execute(select(func.count()).select_from(Candidate).where(*predicates)).scalar() or 0)


def _compute_team_stats(db, team: str, now: datetime) -> dict[str, Any]:
    view_name, extra = TEAM_OVERVIEW[team]
    view = VIEWS[view_name]
    base = view.predicate

    overview: dict[str, int] = {"total": _count(db, base)}
    for label, pred in extra.items():
        overview[label] = _count(db, base, pred)

    breakdown = {
        cs.LD_PENDING: _count(db, base, cs.IS_LD_PENDING),
        cs.LD_SELECTED: _count(db, base, cs.IS_LD_SELECTED),
        cs.LD_REJECTED: _count(db, base, Candidate.ldStatus == cs.LD_REJECTED),
        cs.LD_DROPPED: _count(db, base, Candidate.ldStatus == cs.LD_DROPPED),
    }

    month_start = to_iso_utc(now.replace(day=1, hour=0, minute=0, second=0, microsecond=0))
    day_start = to_iso_utc(now.replace(hour=0, minute=0, second=0, microsecond=0))
    col = view.date_field
    windows = {
        "thisMonth": _count(db, base, col >= month_start),
        "today": _count(db, base, col >= day_start),
    }

    recent = (
        db.execute(select(Candidate).where(base).order_by(col.desc(), Candidate.createdAt.desc()).limit(RECENT_LIMIT))
        .scalars()
        .all()
    )
    return {
        "team": team,
        "overview": overview,
        "ldStatusBreakdown": breakdown,
        "windows": windows,
        "recent": [
            {
                "candidateId": c.candidateId,
                "fullName": c.fullName,
                "experienceLevel": c.experienceLevel,
                "currentStage": cs.current_stage(c),
                "createdAt": c.createdAt,
            }
            for c in recent
        ],
        "generatedAt": to_iso_utc(now),
    }


def team_stats(db, *, team: Any, auth: Optional[AuthContext]) -> dict[str, Any]:
    role = normalize_role(auth.role if auth else "")
    key = str(team or "").strip().lower() or _ROLE_TEAM.get(role, "")
    if key not in TEAM_OVERVIEW:
        raise ApiError("BAD_REQUEST", f"Unknown team: {key or team}")
    _assert_view_access(VIEWS[TEAM_OVERVIEW[key][0]].roles, auth)

    now = datetime.now(timezone.utc)
    cache_key = make_cache_key(DASHBOARD_STATS_NS, scope=[key], params={"day": now.strftime("%Y-%m-%d")})
    stats = cache_get_or_set(cache_key, lambda: _compute_team_stats(db, key, now))
    return {"success": True, "message": f"Dashboard statistics for {key}", "stats": stats}
