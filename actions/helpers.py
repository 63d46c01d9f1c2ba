from __future__ import annotations

import json
import os
from typing import Any, Optional

from models import AuditLog
from utils import ApiError, AuthContext, iso_utc_now, redact_for_audit


def new_prefixed_id(prefix: str) -> str:
    return f"{str(prefix or '').upper().strip()}-{os.urandom(8).hex().upper()}"


def actor_id(auth: Optional[AuthContext]) -> str:
    if not auth:
        return "SYSTEM"
    return str(auth.userId or auth.email or "SYSTEM")


def actor_name(auth: Optional[AuthContext]) -> str:
    if not auth:
        return "System"
    return str(auth.name or auth.userId or auth.email or "")


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    actor: Optional[AuthContext] = None,
    at: str = "",
    meta: Optional[dict[str, Any]] = None,
) -> None:
    db.add(
        AuditLog(
            logId=new_prefixed_id("LOG"),
            entityType=str(entityType or "").upper(),
            entityId=str(entityId or ""),
            action=str(action or "").upper(),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or ""),
            remark=str(remark or ""),
            actorUserId=actor_id(actor),
            actorRole=str(actor.role if actor else "SYSTEM"),
            actorEmail=str(actor.email if actor else ""),
            at=at or iso_utc_now(),
            correlationId="",
            metaJson=json.dumps(redact_for_audit(meta or {})),
        )
    )


def parse_id_list(value: Any, *, field: str = "candidateIds") -> list[str]:
    """Accepts a list or CSV string; returns unique, order-preserving ids."""

    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        items = []
    out: list[str] = []
    seen: set[str] = set()
    for it in items:
        s = str(it or "").strip()
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    if not out:
        raise ApiError("BAD_REQUEST", f"{field} must be a non-empty list")
    return out


def clean_email_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v).strip() for v in value if str(v or "").strip()]


def load_json_list(raw: Any) -> list:
    try:
        val = json.loads(str(raw or "[]") or "[]")
    except (TypeError, ValueError):
        return []
    return val if isinstance(val, list) else []
