"""
Alert emails.

Bodies are rendered from the Jinja2 templates in app/templates/email and sent
through aiosmtplib with the SMTP settings.
"""

from pathlib import Path
from typing import Dict, Any
import logging

import aiosmtplib
from email.mime.text import MIMEText
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core.config import settings

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent.parent / "templates" / "email"

jinja_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(['html', 'xml']),
    trim_blocks=True
)


def smtp_configured() -> bool:
    return bool(settings.SMTP_HOST and settings.EMAIL_FROM)


def build_message(to_email: str, subject: str, body: str) -> MIMEText:
    message = MIMEText(body, "plain", "utf-8")
    message["From"] = f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>"
    message["To"] = to_email
    message["Subject"] = subject
    return message


async def send_email(to_email: str, subject: str, body: str) -> bool:
    """Send a plain text email. Returns False when SMTP is missing or the send fails."""
    if not smtp_configured():
        logger.warning(f"SMTP not configured, alert email to {to_email} not sent: {subject}")
        return False

    try:
        # Port 465 uses implicit TLS, 587 upgrades with STARTTLS
        await aiosmtplib.send(
            build_message(to_email, subject, body),
            hostname=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            use_tls=settings.SMTP_PORT == 465,
            start_tls=settings.SMTP_PORT == 587,
        )
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send alert email to {to_email}: {e}")
        return False

    logger.info(f"Alert email sent to {to_email}")
    return True


def render_alert_email(notification: Dict[str, Any]) -> Dict[str, str]:
    """Subject and body of an alert email."""
    template = jinja_env.get_template("alert_notification.txt")
    return {
        "subject": f"{notification['alert_type']}: {notification['device_name']}",
        "body": template.render(**notification),
    }


async def send_alert_email(email: str, notification: Dict[str, Any]) -> bool:
    content = render_alert_email(notification)
    return await send_email(email, content["subject"], content["body"])
