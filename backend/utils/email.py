"""Transactional email through the Brevo HTTP API"""

import os
import logging
import requests
import html
from datetime import datetime

logger = logging.getLogger(__name__)

BREVO_API_KEY = os.getenv("BREVO_API_KEY")
FROM_EMAIL = os.getenv("FROM_EMAIL")
FROM_NAME = os.getenv("FROM_NAME", "Housemate")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"


def is_email_configured() -> bool:
    return bool(BREVO_API_KEY and FROM_EMAIL)


async def send_email(to_email: str, subject: str, html_content: str, text_content: str) -> bool:
    """
    Send an email via Brevo.

    Returns True when Brevo accepted the message. Delivery problems are logged
    and reported as False so callers can treat email as best-effort.
    """
    if not is_email_configured():
        logger.warning("Email service not configured: BREVO_API_KEY and FROM_EMAIL required")
        return False

    headers = {
        "accept": "application/json",
        "api-key": BREVO_API_KEY,
        "content-type": "application/json"
    }
    payload = {
        "sender": {"name": FROM_NAME, "email": FROM_EMAIL},
        "to": [{"email": to_email}],
        "subject": subject,
        "htmlContent": html_content,
        "textContent": text_content
    }

    try:
        response = requests.post(BREVO_API_URL, json=payload, headers=headers, timeout=10)
    except requests.exceptions.Timeout:
        logger.error("Brevo API request timed out")
        return False
    except requests.exceptions.RequestException as e:
        logger.error(f"Brevo API request failed: {e}")
        return False

    if response.status_code == 201:
        logger.info(f"Email sent to {to_email}")
        return True
    logger.error(f"Brevo API error ({response.status_code}): {response.text}")
    return False


async def send_password_reset_email(user_email: str, user_name: str, reset_token: str, expires_at: datetime) -> bool:
    reset_link = f"{FRONTEND_URL}/reset-password/{reset_token}"
    safe_user_name = html.escape(user_name)
    expires_label = expires_at.strftime("%Y-%m-%d %H:%M UTC")

    subject = "Reset your Housemate password"

    html_content = f"""
    <p>Hi {safe_user_name},</p>
    <p>We received a request to reset your Housemate password.</p>
    <p><a href="{reset_link}">Reset your password</a></p>
    <p>This link expires at <strong>{expires_label}</strong>.</p>
    <p>If you did not ask for this, you can ignore this email.</p>
    """

    text_content = f"""
Hi {user_name},

We received a request to reset your Housemate password.
Use this link to continue: {reset_link}

This link expires at {expires_label}.
If you did not ask for this, you can ignore this email.
    """

    return await send_email(user_email, subject, html_content, text_content)
