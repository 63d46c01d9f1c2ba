"""
Outbound notification gateway for deployment and internal-transfer notices.

One message is sent per primary recipient (CC list attached to each). Per-recipient
failures are counted, never raised; `NotificationError` is raised only when nothing
can be sent at all (no usable sender, transport unreachable, relay rejected auth).

Backends (NOTIFY_BACKEND):
- smtp:   smtplib against SMTP_HOST:SMTP_PORT using the delivery manager's mailbox.
- http:   JSON POST per recipient to MAIL_RELAY_URL (bearer MAIL_RELAY_TOKEN).
- memory: keeps messages in-process; used in development and tests.
"""
from __future__ import annotations

import html
import logging
import smtplib
import ssl
import threading
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Optional

import requests


log = logging.getLogger("notify")

DEPLOYMENT_SUBJECT = "Employee Deployment Notice"
TRANSFER_SUBJECT = "Internal Transfer Notice"


class NotificationError(Exception):
    pass


@dataclass(frozen=True)
class SenderIdentity:
    name: str
    email: str
    app_password: str = ""

    @property
    def from_header(self) -> str:
        return f"{self.name} - Delivery Department <{self.email}>"


@dataclass
class SendResult:
    successful: int = 0
    failed: int = 0
    total: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.total and self.successful == 0:
            return "Failed"
        if self.failed > 0:
            return "Partially Sent"
        return "Sent"

    def as_dict(self) -> dict[str, Any]:
        return {"successful": self.successful, "failed": self.failed, "total": self.total}


def _transport_lost(result: SendResult, remaining: list[str], reason: str) -> None:
    """
    The transport went away mid-batch. Before anything was delivered this is a plain
    NotificationError; afterwards the unsent recipients are counted as failed so the
    caller still records what went out.
    """

    if result.successful == 0:
        raise NotificationError(reason)
    log.warning("transport lost after %d sent; %d unsent: %s", result.successful, len(remaining), reason)
    for rcpt in remaining:
        result.failed += 1
        result.failures.append({"email": rcpt, "error": reason})


class NotificationGateway:
    def send(
        self,
        recipients: list[str],
        cc_list: list[str],
        subject: str,
        html_body: str,
        *,
        sender: SenderIdentity,
    ) -> SendResult:
        raise NotImplementedError

    def verify(self, sender: SenderIdentity) -> None:
        """Raises NotificationError when `sender` cannot send through this backend."""

        if not sender.email:
            raise NotificationError("Manager email credentials are incomplete")


class SmtpGateway(NotificationGateway):
    def __init__(self, *, host: str, port: int, use_tls: bool = True, timeout: int = 20):
        self.host = host
        self.port = int(port)
        self.use_tls = bool(use_tls)
        self.timeout = int(timeout)

    def _connect(self, sender: SenderIdentity) -> smtplib.SMTP:
        if not sender.email or not sender.app_password:
            raise NotificationError("Manager email credentials are incomplete")
        try:
            conn = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            if self.use_tls:
                conn.starttls(context=ssl.create_default_context())
            conn.login(sender.email, sender.app_password)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Email configuration error: {e}") from e
        return conn

    def verify(self, sender: SenderIdentity) -> None:
        conn = self._connect(sender)
        try:
            conn.noop()
        finally:
            conn.quit()

    def send(self, recipients, cc_list, subject, html_body, *, sender):
        result = SendResult(total=len(recipients))
        conn = self._connect(sender)
        try:
            for i, rcpt in enumerate(recipients):
                msg = EmailMessage()
                msg["From"] = sender.from_header
                msg["To"] = rcpt
                if cc_list:
                    msg["Cc"] = ", ".join(cc_list)
                msg["Subject"] = subject
                msg.set_content("This message requires an HTML-capable mail client.")
                msg.add_alternative(html_body, subtype="html")
                try:
                    conn.send_message(msg)
                    result.successful += 1
                except smtplib.SMTPServerDisconnected as e:
                    _transport_lost(result, recipients[i:], f"Mail server disconnected: {e}")
                    break
                except (smtplib.SMTPException, OSError) as e:
                    result.failed += 1
                    result.failures.append({"email": rcpt, "error": str(e)})
                    log.warning("smtp send failed to=%s err=%s", rcpt, e)
        finally:
            try:
                conn.quit()
            except (smtplib.SMTPException, OSError):
                pass
        return result


class HttpRelayGateway(NotificationGateway):
    def __init__(self, *, url: str, token: str = "", timeout: int = 20):
        self.url = url
        self.token = token
        self.timeout = int(timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def send(self, recipients, cc_list, subject, html_body, *, sender):
        self.verify(sender)
        result = SendResult(total=len(recipients))
        for i, rcpt in enumerate(recipients):
            payload = {
                "from": {"name": sender.name, "email": sender.email},
                "to": [rcpt],
                "cc": list(cc_list),
                "subject": subject,
                "html": html_body,
            }
            try:
                resp = requests.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
            except requests.ConnectionError as e:
                _transport_lost(result, recipients[i:], f"Mail relay unreachable: {e}")
                break
            except requests.RequestException as e:
                result.failed += 1
                result.failures.append({"email": rcpt, "error": str(e)})
                log.warning("relay send failed to=%s err=%s", rcpt, e)
                continue
            if resp.status_code in (401, 403):
                _transport_lost(result, recipients[i:], "Mail relay rejected credentials")
                break
            if resp.ok:
                result.successful += 1
            else:
                result.failed += 1
                result.failures.append({"email": rcpt, "error": f"HTTP {resp.status_code}"})
                log.warning("relay send failed to=%s status=%s", rcpt, resp.status_code)
        return result


class InMemoryGateway(NotificationGateway):
    """Records messages instead of sending them. Addresses in `fail_addresses` fail."""

    def __init__(self):
        self._lock = threading.Lock()
        self.outbox: list[dict[str, Any]] = []
        self.fail_addresses: set[str] = set()
        self.unavailable = False

    def send(self, recipients, cc_list, subject, html_body, *, sender):
        self.verify(sender)
        if self.unavailable:
            raise NotificationError("Mail transport unavailable")
        result = SendResult(total=len(recipients))
        with self._lock:
            for rcpt in recipients:
                if rcpt.lower() in self.fail_addresses:
                    result.failed += 1
                    result.failures.append({"email": rcpt, "error": "rejected"})
                    continue
                self.outbox.append(
                    {"from": sender.from_header, "to": rcpt, "cc": list(cc_list), "subject": subject, "html": html_body}
                )
                result.successful += 1
        return result

    def clear(self) -> None:
        with self._lock:
            self.outbox.clear()
            self.fail_addresses.clear()
            self.unavailable = False


def build_gateway(cfg) -> NotificationGateway:
    backend = str(getattr(cfg, "NOTIFY_BACKEND", "memory") or "memory").lower()
    if backend == "smtp":
        return SmtpGateway(
            host=cfg.SMTP_HOST,
            port=cfg.SMTP_PORT,
            use_tls=cfg.SMTP_USE_TLS,
            timeout=cfg.MAIL_TIMEOUT_SECONDS,
        )
    if backend == "http":
        return HttpRelayGateway(url=cfg.MAIL_RELAY_URL, token=cfg.MAIL_RELAY_TOKEN, timeout=cfg.MAIL_TIMEOUT_SECONDS)
    return InMemoryGateway()


_gateway: Optional[NotificationGateway] = None


def init_gateway(cfg) -> NotificationGateway:
    global _gateway
    _gateway = build_gateway(cfg)
    return _gateway


def get_gateway() -> NotificationGateway:
    if _gateway is None:
        raise RuntimeError("Notification gateway not initialized")
    return _gateway


# ---------------------------------------------------------------------------
# Bodies
# ---------------------------------------------------------------------------

_DEPLOYMENT_COLUMNS = [
    ("name", "Name"),
    ("empId", "Emp ID"),
    ("role", "Role"),
    ("email", "Email"),
    ("office", "Office"),
    ("modeOfHire", "Mode of Hire"),
    ("fromTeam", "From Team"),
    ("toTeam", "To Team"),
    ("client", "Client"),
    ("bu", "BU"),
    ("reportingTo", "Reporting To"),
    ("accountManager", "Account Manager"),
    ("deploymentDate", "Deployment Date"),
]

_TRANSFER_COLUMNS = [
    ("name", "Name"),
    ("empId", "Emp ID"),
    ("role", "Role"),
    ("fromTeam", "From Team"),
    ("toTeam", "To Team"),
    ("client", "Client"),
    ("bu", "BU"),
    ("reportingTo", "Reporting To"),
    ("effectiveDate", "Effective Date"),
]


def _render(title: str, columns: list[tuple[str, str]], form: dict[str, Any], content: str) -> str:
    head = "".join(f"<th>{html.escape(label)}</th>" for _, label in columns)
    row = "".join(f"<td>{html.escape(str(form.get(key) or ''))}</td>" for key, _ in columns)
    intro = ""
    if content:
        paragraphs = [p.strip() for p in str(content).splitlines() if p.strip()]
        intro = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head><body>"
        f"<h1>{html.escape(title)}</h1>{intro}"
        f"<table border=\"1\" cellpadding=\"6\" cellspacing=\"0\"><thead><tr>{head}</tr></thead>"
        f"<tbody><tr>{row}</tr></tbody></table>"
        "</body></html>"
    )


def render_deployment_body(form: dict[str, Any], content: str = "") -> str:
    return _render(DEPLOYMENT_SUBJECT, _DEPLOYMENT_COLUMNS, form, content)


def render_transfer_body(form: dict[str, Any], content: str = "") -> str:
    return _render(TRANSFER_SUBJECT, _TRANSFER_COLUMNS, form, content)
