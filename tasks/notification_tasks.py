"""
tasks/notification_tasks.py
Celery tasks and templates for inspection booking emails.

The API never talks to the mail provider directly: services enqueue
send_email only after their transaction has committed.

Usage from a service:
    from tasks import notification_tasks
    notification_tasks.send_email.delay(to_email, subject, html_body)
"""

import html
import logging
from datetime import date
from typing import Tuple

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Core Delivery ─────────────────────────────────────────────────────────────

def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": to_email,
            "subject": subject,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


# ── Templates ─────────────────────────────────────────────────────────────────

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body style="margin: 0; padding: 0; font-family: Arial, sans-serif; background-color: #f4f4f4;">
  <table role="presentation" style="width: 100%; max-width: 600px; margin: 40px auto; background-color: #ffffff; border-radius: 8px;">
    <tr>
      <td style="padding: 32px 40px; text-align: center; background-color: {accent}; border-radius: 8px 8px 0 0;">
        <h1 style="margin: 0; color: #ffffff; font-size: 24px;">{title}</h1>
      </td>
    </tr>
    <tr>
      <td style="padding: 40px; color: #374151; font-size: 16px;">
        <p>Dear {recipient_name},</p>
        {content}
        <hr style="border: none; border-top: 1px solid #e5e7eb; margin: 24px 0;">
        <p style="color: #6b7280; font-size: 14px;">If you have any questions, please contact your property manager.</p>
      </td>
    </tr>
    <tr>
      <td style="padding: 20px 40px; background-color: #f9fafb; text-align: center; color: #9ca3af; font-size: 12px;">
        This is an automated message. Please do not reply directly to this email.
      </td>
    </tr>
  </table>
</body>
</html>"""

_DETAILS = """
        <p style="margin: 0 0 4px; color: #6b7280; font-size: 14px;">Property Address:</p>
        <p style="margin: 0 0 16px; font-weight: bold;">{address}</p>
        <p style="margin: 0 0 4px; color: #6b7280; font-size: 14px;">Inspection Date:</p>
        <p style="margin: 0 0 16px; font-weight: bold;">{schedule_date}</p>"""

_TIME_SLOT = """
        <p style="margin: 0 0 4px; color: #6b7280; font-size: 14px;">Time Slot:</p>
        <p style="margin: 0 0 16px; font-weight: bold;">{start_time} - {end_time}</p>"""

TEMPLATES = {
    "BOOKING_INVITATION": {
        "email_subject": "Safety Check Inspection - {address}",
        "title": "Safety Check Inspection",
        "accent": "#4F46E5",
        "content": (
            "<p>A safety check inspection has been scheduled for your property.</p>"
            + _DETAILS
            + """
        <p>Please choose a convenient time slot for the inspection:</p>
        <p style="text-align: center;">
          <a href="{booking_link}" style="display: inline-block; padding: 14px 32px; background-color: #4F46E5; color: #ffffff; text-decoration: none; border-radius: 8px;">Book Inspection Time</a>
        </p>
        <p style="color: #6b7280; font-size: 14px; word-break: break-all;">{booking_link}</p>
        <p style="color: #ef4444; font-size: 14px; font-weight: bold;">This link will expire in {ttl_days} days.</p>"""
        ),
    },
    "BOOKING_CONFIRMED": {
        "email_subject": "Booking Confirmed - {address}",
        "title": "Booking Confirmed",
        "accent": "#10B981",
        "content": (
            "<p>The property inspection booking has been <strong>confirmed</strong>.</p>"
            + _DETAILS
            + _TIME_SLOT
            + """
        <p style="margin: 0 0 4px; color: #6b7280; font-size: 14px;">Booked By:</p>
        <p style="margin: 0 0 16px; font-weight: bold;">{booker_name} ({booker_label})</p>
        <p>Please ensure someone is available at the property during the inspection time.</p>"""
        ),
    },
    "BOOKING_REJECTED": {
        "email_subject": "Booking Update - {address}",
        "title": "Booking Update",
        "accent": "#F59E0B",
        "content": (
            "<p>Unfortunately your requested inspection time could not be accommodated.</p>"
            + _DETAILS
            + _TIME_SLOT
            + "\n        <p>Your property manager will be in touch to arrange another time.</p>"
        ),
    },
    "BOOKING_RESCHEDULED": {
        "email_subject": "Booking Rescheduled - {address}",
        "title": "Booking Rescheduled",
        "accent": "#3B82F6",
        "content": (
            "<p>Your property inspection has been moved to a new time.</p>"
            + """
        <p style="margin: 0 0 4px; color: #6b7280; font-size: 14px;">Previous Time:</p>
        <p style="margin: 0 0 16px; text-decoration: line-through;">{old_schedule_date}, {old_start_time} - {old_end_time}</p>"""
            + _DETAILS
            + _TIME_SLOT
        ),
    },
}


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


def format_schedule_date(value: date) -> str:
    """date(2025, 6, 1) → 'Sunday, 1 June 2025'"""
    return f"{value:%A}, {value.day} {value:%B %Y}"


def render_email(template_key: str, recipient_name: str = None, **fields) -> Tuple[str, str]:
    """Render (subject, html_body) for one template. Field values are HTML-escaped."""
    tmpl = TEMPLATES[template_key]
    safe = {key: html.escape(str(value)) for key, value in fields.items()}
    subject = _render(tmpl["email_subject"], **{k: str(v) for k, v in fields.items()})
    body = _render(
        _LAYOUT,
        title=tmpl["title"],
        accent=tmpl["accent"],
        recipient_name=html.escape(recipient_name or "Tenant"),
        content=_render(tmpl["content"], **safe),
    )
    return subject, body


# ── Tasks ─────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_email(self, to_email: str, subject: str, html_body: str):
    """Send a transactional email via Resend with retry on failure."""
    success = _send_email(to_email, subject, html_body)
    if not success:
        raise self.retry(countdown=60 * (2 ** self.request.retries))
