# settlement/services/notifications.py
from __future__ import annotations

"""
Fire-and-forget notifications.

Financial code only ever calls notify(), after its commit. Deliveries are
Celery tasks (one per handler) so they survive a restart of the web process
and are retried with backoff while SMTP is down. A failing handler can never
roll back or block a ledger write.
"""

import logging
import os
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Optional

from celery import shared_task
from flask import Flask, current_app, has_app_context

log = logging.getLogger("notifications")

Handler = Callable[["Notification"], None]


@dataclass
class SMTPConfig:
    host: str
    port: int
    username: str
    password: str
    use_tls: bool = True
    from_email: str = ""
    from_name: str = "Marketplace Payouts"

    @property
    def ready(self) -> bool:
        return bool(self.host and self.port and self.username and self.password and self.from_email)


def load_smtp_config() -> SMTPConfig:
    return SMTPConfig(
        host=(os.getenv("SMTP_HOST") or "").strip(),
        port=int(os.getenv("SMTP_PORT") or "587"),
        username=(os.getenv("SMTP_USER") or "").strip(),
        password=(os.getenv("SMTP_PASS") or "").strip(),
        use_tls=(os.getenv("SMTP_TLS", "1").strip().lower() in {"1", "true", "yes", "y", "on"}),
        from_email=(os.getenv("SMTP_FROM_EMAIL") or "").strip(),
        from_name=(os.getenv("SMTP_FROM_NAME") or "Marketplace Payouts").strip(),
    )


class EmailService:
    """
    SMTP sender.
    - Not configured (dev): logs and returns False.
    - SMTP errors are raised to the caller; the bus logs them.
    """

    def __init__(self, cfg: Optional[SMTPConfig] = None):
        self.cfg = cfg or load_smtp_config()

    def ready(self) -> bool:
        return self.cfg.ready

    def send_text(self, to_email: str, subject: str, text: str) -> bool:
        if not self.ready():
            log.warning("EmailService not configured (SMTP_*), not sending: %s", subject)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.cfg.from_name} <{self.cfg.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text, "plain", "utf-8"))

        with smtplib.SMTP(self.cfg.host, self.cfg.port, timeout=20) as s:
            if self.cfg.use_tls:
                s.starttls()
            s.login(self.cfg.username, self.cfg.password)
            s.sendmail(self.cfg.from_email, [to_email], msg.as_string())
        return True


@dataclass(frozen=True)
class Notification:
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)


class NotificationBus:
    """
    Handlers are registered by name so a Celery worker (its own create_app)
    can find the same handler for a queued delivery.

    sync=True delivers inline; otherwise one deliver_notification task is
    queued per handler, retried with backoff on SMTP/network errors.
    """

    def __init__(self, *, sync: bool = False, enabled: bool = True):
        self.enabled = enabled
        self.sync = sync
        self._handlers: Dict[str, List[str]] = {}
        self._by_name: Dict[str, Handler] = {}
        self.delivered = 0
        self.failed = 0

    def subscribe(self, event: str, handler: Handler, *, name: Optional[str] = None) -> str:
        """event="*" receives everything. Returns the handler name."""
        key = name or f"{getattr(handler, '__qualname__', 'handler')}#{len(self._by_name)}"
        self._by_name[key] = handler
        names = self._handlers.setdefault(event, [])
        if key not in names:
            names.append(key)
        return key

    def handler_names(self, event: str) -> List[str]:
        return self._handlers.get(event, []) + self._handlers.get("*", [])

    def publish(self, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        if not self.enabled:
            return False
        msg = Notification(event=event, payload=dict(payload or {}))

        if self.sync:
            self._deliver(msg)
            return True

        for name in self.handler_names(event):
            deliver_notification.apply_async(
                args=(msg.event, msg.payload, name),
                retry=True,
                retry_policy={"max_retries": 3, "interval_start": 0, "interval_step": 0.5},
            )
        return True

    def run_handler(self, name: str, msg: Notification) -> bool:
        """Single delivery; exceptions go to the caller (the Celery task retries)."""
        handler = self._by_name.get(name)
        if handler is None:
            log.error("no notification handler %r for event=%s", name, msg.event)
            return False
        handler(msg)
        self.delivered += 1
        return True

    def _deliver(self, msg: Notification) -> None:
        for name in self.handler_names(msg.event):
            try:
                self.run_handler(name, msg)
            except Exception:
                self.failed += 1
                log.exception("notification handler failed event=%s handler=%s", msg.event, name)


@shared_task(bind=True, name="settlement.deliver_notification", acks_late=True, ignore_result=True)
def deliver_notification(self, event: str, payload: Dict[str, Any], handler_name: str) -> bool:
    bus = get_bus()
    if bus is None:
        log.error("notification bus not installed, dropping event=%s", event)
        return False
    try:
        return bus.run_handler(handler_name, Notification(event=event, payload=payload))
    except (smtplib.SMTPException, OSError) as e:
        retries = int(current_app.config.get("NOTIFICATION_MAX_RETRIES", 5))
        log.warning("notification delivery failed event=%s handler=%s attempt=%d: %s",
                    event, handler_name, self.request.retries + 1, e)
        raise self.retry(exc=e, max_retries=retries, countdown=min(600, 2 ** (self.request.retries + 1) * 15))


# =============================================================================
# Payout e-mails
# =============================================================================

_SUBJECTS = {
    "payout.requested": "Payout request received",
    "payout.approved": "Payout request approved",
    "payout.processing": "Payout is being processed",
    "payout.completed": "Payout completed",
    "payout.failed": "Payout request rejected",
    "payout.cancelled": "Payout request cancelled",
    "wallet.frozen": "Your wallet has been frozen",
}


def render_payout_email(msg: Notification) -> str:
    p = msg.payload
    lines = [
        f"Hello {p.get('vendor_name') or 'vendor'},",
        "",
        f"Payout {p.get('payout_id', '')}: {p.get('status', msg.event)}",
        f"Amount: {p.get('amount', '')}",
    ]
    if p.get("external_transaction_id"):
        lines.append(f"Transaction reference: {p['external_transaction_id']}")
    if p.get("failure_reason"):
        lines.append(f"Reason: {p['failure_reason']}")
    return "\n".join(lines)


def make_email_handler(email: EmailService) -> Handler:
    def _send(msg: Notification) -> None:
        to = msg.payload.get("to")
        if not to:
            return
        subject = _SUBJECTS.get(msg.event, msg.event)
        email.send_text(to, subject, render_payout_email(msg))

    return _send


def init_notifications(app: Flask, email: Optional[EmailService] = None) -> NotificationBus:
    bus = NotificationBus(
        sync=bool(app.config.get("NOTIFICATIONS_SYNC", False)),
        enabled=bool(app.config.get("NOTIFICATIONS_ENABLED", True)),
    )
    email_handler = make_email_handler(email or EmailService())
    for event in _SUBJECTS:
        bus.subscribe(event, email_handler, name="email")

    app.extensions["notifications"] = bus
    return bus


def get_bus() -> Optional[NotificationBus]:
    if not has_app_context():
        return None
    return current_app.extensions.get("notifications")


def notify(event: str, **payload: Any) -> bool:
    """Publish if a bus is installed. Never raises."""
    bus = get_bus()
    if bus is None:
        return False
    try:
        return bus.publish(event, payload)
    except Exception:
        log.exception("notify failed event=%s", event)
        return False


__all__ = [
    "SMTPConfig",
    "EmailService",
    "Notification",
    "NotificationBus",
    "deliver_notification",
    "make_email_handler",
    "init_notifications",
    "get_bus",
    "notify",
    "render_payout_email",
]
