from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app, render_template_string

logger = logging.getLogger(__name__)


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    text: str
    html: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


def _build_message(email: OutgoingEmail, from_addr: str):
    if email.html:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(email.text, "plain", "utf-8"))
        msg.attach(MIMEText(email.html, "html", "utf-8"))
    else:
        msg = MIMEText(email.text, "plain", "utf-8")
    msg["Subject"] = email.subject
    msg["From"] = from_addr
    msg["To"] = email.to
    for k, v in email.headers.items():
        msg[k] = v
    return msg


def _send_smtp(email: OutgoingEmail, config) -> None:
    host = (config.get("SMTP_HOST") or "").strip()
    if not host:
        raise smtplib.SMTPException("SMTP host not configured (SMTP_HOST missing)")
    msg = _build_message(email, config.get("MAIL_FROM") or "")
    with smtplib.SMTP(host, int(config.get("SMTP_PORT") or 587), timeout=30) as server:
        if config.get("SMTP_USE_TLS"):
            server.starttls()
        username = config.get("SMTP_USERNAME") or ""
        if username:
            server.login(username, config.get("SMTP_PASSWORD") or "")
        server.send_message(msg)


def send_email(email: OutgoingEmail) -> tuple[bool, str]:
    """
    Deliver one email through the configured backend.

    Returns (success, message). Never raises for delivery problems; callers treat
    email as best-effort and keep their own transaction going.
    """
    config = current_app.config
    backend = (config.get("MAIL_BACKEND") or "console").strip().lower()
    if backend == "console":
        current_app.extensions.setdefault("mail_outbox", []).append(email)
        logger.info("[EMAIL console] to=%s subject=%s", email.to, email.subject)
        return True, "logged"
    try:
        _send_smtp(email, config)
    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed sending to %s: %s", email.to, e)
        return False, f"SMTP authentication failed: {e}"
    except (smtplib.SMTPException, OSError) as e:
        logger.error("SMTP error sending to %s: %s", email.to, e)
        return False, f"SMTP error: {e}"
    logger.info("[EMAIL smtp] to=%s subject=%s", email.to, email.subject)
    return True, "sent"


def send_template(to: str, subject: str, text_template: str, html_template: str, **context) -> tuple[bool, str]:
    text = render_template_string(text_template, **context)
    html = render_template_string(html_template, **context)
    return send_email(OutgoingEmail(to=to, subject=subject, text=text, html=html))


def outbox() -> list[OutgoingEmail]:
    """Messages captured by the console backend (used by tests and local dev)."""
    return current_app.extensions.setdefault("mail_outbox", [])
