from __future__ import annotations

import smtplib
from email.message import EmailMessage

from .settings import settings


def email_configured() -> bool:
    """True when WRC_ENABLE_EMAIL is on and every SMTP/recipient setting is present."""
    return settings.enable_email and all(
        (
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        )
    )


def send_email(subject: str, body: str) -> bool:
    """Deliver one alert over SMTP (STARTTLS). Returns False when disabled or on failure.

    Alerting is best effort: a broken mail server must not stop the control loop.
    """
    if not email_configured():
        return False

    msg = EmailMessage()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = f"[wrc] {subject}"
    msg.set_content(body)
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError):
        return False


def _lines(**fields: str) -> str:
    return "\n".join(f"{k.replace('_', ' ').capitalize()}: {v}" for k, v in fields.items())


def instance_alert(workload: str, instance_id: str, healthy: bool, detail: str) -> bool:
    state = "UP" if healthy else "DOWN"
    subject = f"{'RECOVERED' if healthy else 'DOWN'}: {workload} ({instance_id})"
    return send_email(subject, _lines(workload=workload, instance=instance_id, status=state, detail=detail))


def workload_alert(workload: str, detail: str) -> bool:
    return send_email(f"ALERT: {workload}", _lines(workload=workload, detail=detail))
