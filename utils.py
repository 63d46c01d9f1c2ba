from __future__ import annotations

import hashlib
import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: int | None = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.http_status = int(http_status or _DEFAULT_STATUS.get(self.code, 400))


_DEFAULT_STATUS = {
    "BAD_REQUEST": 400,
    "DUPLICATE": 400,
    "CONFLICT": 400,
    "ALREADY_DONE": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "LOCKED": 423,
    "PARTIAL_FAILURE": 500,
    "INTERNAL": 500,
}


@dataclass(frozen=True)
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str
    name: str = ""


def ok(data: Any = None, http_status: int = 200):
    return {"ok": True, "data": data if data is not None else {}}, http_status


def err(code: str, message: str, http_status: int = 400):
    return {"ok": False, "error": {"code": str(code or "INTERNAL"), "message": str(message or "")}}, http_status


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    """Parse an ISO date or datetime string into an aware UTC datetime."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    s = str(value or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def normalize_iso_maybe(value: Any) -> str:
    dt = parse_datetime_maybe(value)
    return to_iso_utc(dt) if dt else ""


_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def day_range_bounds(from_date: Any, to_date: Any) -> tuple[str, str]:
    """
    Inclusive day window as ISO strings: from-day 00:00:00.000 through to-day 23:59:59.999.
    Either bound may be empty.
    """

    start = ""
    end = ""
    f = str(from_date or "").strip()
    t = str(to_date or "").strip()
    if f:
        if not _DAY_RE.match(f) or parse_datetime_maybe(f[:10]) is None:
            raise ApiError("BAD_REQUEST", "Invalid fromDate")
        start = f"{f[:10]}T00:00:00.000Z"
    if t:
        if not _DAY_RE.match(t) or parse_datetime_maybe(t[:10]) is None:
            raise ApiError("BAD_REQUEST", "Invalid toDate")
        end = f"{t[:10]}T23:59:59.999Z"
    return start, end


def new_uuid() -> str:
    return str(uuid.uuid4())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def now_monotonic() -> float:
    return time.monotonic()


def normalize_role(role: Any) -> str:
    return re.sub(r"[^A-Z_]", "", str(role or "").upper().strip().replace(" ", "_").replace("&", ""))


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(s)
    except json.JSONDecodeError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


_REDACT_KEYS = {"password", "newpassword", "managerapppassword", "apppassword", "token", "sessiontoken"}


def redact_for_audit(data: Any) -> Any:
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        return [redact_for_audit(v) for v in data]
    return data


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def clamp_int(value: Any, default: int, lo: int, hi: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = default
    return max(lo, min(hi, n))
