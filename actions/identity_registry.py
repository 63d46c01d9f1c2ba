from __future__ import annotations

import re
from typing import Any, Optional

from sqlalchemy import select

from actions.employee_directory import find_by_email, find_by_emp_id
from models import Candidate
from utils import ApiError


PERSONAL_EMAIL = "personalEmail"
MOBILE = "mobile"
OFFICE_EMAIL = "officeEmail"
EMPLOYEE_ID = "employeeId"
PERMANENT_ID = "permanentEmployeeId"

IDENTITY_KINDS = {PERSONAL_EMAIL, MOBILE, OFFICE_EMAIL, EMPLOYEE_ID, PERMANENT_ID}

_EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")
_EMPLOYEE_ID_RE = re.compile(r"^[A-Z0-9]{3,10}$")
_PERMANENT_ID_RE = re.compile(r"^[A-Z0-9]{4,12}$")
_MOBILE_RE = re.compile(r"^\d{10}$")

_CANDIDATE_COLUMN = {
    PERSONAL_EMAIL: Candidate.personalEmail,
    MOBILE: Candidate.mobileNumber,
    OFFICE_EMAIL: Candidate.officeEmail,
    EMPLOYEE_ID: Candidate.employeeId,
    PERMANENT_ID: Candidate.permanentEmployeeId,
}

_LABEL = {
    PERSONAL_EMAIL: "Personal email",
    MOBILE: "Mobile number",
    OFFICE_EMAIL: "Office email",
    EMPLOYEE_ID: "Employee ID",
    PERMANENT_ID: "Permanent Employee ID",
}

_FORMAT_ERROR = {
    PERSONAL_EMAIL: "Please provide a valid email address",
    MOBILE: "Mobile number must be 10 digits",
    OFFICE_EMAIL: "Please provide a valid email address",
    EMPLOYEE_ID: "Employee ID must be 3-10 characters long and contain only letters and numbers",
    PERMANENT_ID: "Permanent Employee ID must be 4-12 characters long and contain only letters and numbers",
}


def _assert_kind(kind: str) -> str:
    if kind not in IDENTITY_KINDS:
        raise ValueError(f"Unknown identity kind: {kind}")
    return kind


def normalize_identity(kind: str, value: Any) -> str:
    """Lowercase for emails, uppercase for employee ids, digits only for mobiles."""

    _assert_kind(kind)
    s = str(value or "").strip()
    if kind in {PERSONAL_EMAIL, OFFICE_EMAIL}:
        return s.lower()
    if kind in {EMPLOYEE_ID, PERMANENT_ID}:
        return s.upper()
    return re.sub(r"[\s\-()]", "", s)


def validate_identity(kind: str, value: Any) -> str:
    """Normalize and format-check; raises BAD_REQUEST on a malformed value."""

    norm = normalize_identity(kind, value)
    if not norm:
        raise ApiError("BAD_REQUEST", f"{_LABEL[kind]} is required")
    pattern = {
        PERSONAL_EMAIL: _EMAIL_RE,
        OFFICE_EMAIL: _EMAIL_RE,
        EMPLOYEE_ID: _EMPLOYEE_ID_RE,
        PERMANENT_ID: _PERMANENT_ID_RE,
        MOBILE: _MOBILE_RE,
    }[kind]
    if not pattern.match(norm):
        raise ApiError("BAD_REQUEST", _FORMAT_ERROR[kind])
    return norm


def find_holder(db, *, kind: str, value: Any, owner_id: str = "") -> Optional[tuple[str, str]]:
    """
    Returns ("candidate" | "employee", display name) for whoever already holds `value`,
    or None when free.

    Candidates are searched excluding `owner_id`; the Employee directory shares the
    office email and employee id namespaces.
    """

    norm = normalize_identity(kind, value)
    if not norm:
        return None

    col = _CANDIDATE_COLUMN[kind]
    q = select(Candidate.candidateId, Candidate.fullName).where(col == norm)
    if owner_id:
        q = q.where(Candidate.candidateId != str(owner_id))
    row = db.execute(q.limit(1)).first()
    if row:
        return "candidate", str(row.fullName or row.candidateId)

    if kind == OFFICE_EMAIL:
        emp = find_by_email(db, norm)
        if emp:
            return "employee", str(emp.name or emp.empId)
    elif kind in {EMPLOYEE_ID, PERMANENT_ID}:
        emp = find_by_emp_id(db, norm)
        if emp:
            return "employee", str(emp.name or emp.empId)
    return None


def conflict_message(kind: str, value: str, holder: tuple[str, str]) -> str:
    source, name = holder
    if source == "employee":
        return f"{_LABEL[kind]} {value} already exists in employee records"
    return f"{_LABEL[kind]} {value} is already assigned to {name}"


def reserve(db, *, kind: str, value: Any, owner_id: str = "") -> str:
    """
    Advisory uniqueness check before a write. Returns the normalized value or raises
    CONFLICT naming the existing holder. The unique constraints on the tables remain
    the authoritative guard; callers translate IntegrityError via `conflict_on_race`.
    """

    norm = normalize_identity(kind, value)
    holder = find_holder(db, kind=kind, value=norm, owner_id=owner_id)
    if holder:
        raise ApiError("CONFLICT", conflict_message(kind, norm, holder))
    return norm


def conflict_on_race(kind: str, value: str) -> ApiError:
    return ApiError("CONFLICT", f"{_LABEL[kind]} {value} already exists")


def assert_contact_identity_free(db, *, personal_email: str, mobile: str) -> None:
    q = (
        select(Candidate.candidateId)
        .where((Candidate.personalEmail == personal_email) | (Candidate.mobileNumber == mobile))
        .limit(1)
    )
    if db.execute(q).first():
        raise ApiError("DUPLICATE", "Candidate with this email or mobile number already exists")
