"""
Email delivery for reorder alerts.

SendGrid is called after the alert transaction commits. A failed send is
logged and reported as False; it never changes alert state.
"""

import asyncio

import sendgrid
import structlog
from sendgrid.helpers.mail import Mail

from core.config import Settings
from realtime.events import AlertRaised

logger = structlog.get_logger()

SEVERITY_LABELS = {"out": "Out of stock", "critical": "Critical low stock", "low": "Low stock"}


def render_alert_email(event: AlertRaised) -> tuple[str, str]:
    """Subject and HTML body for an AlertRaised event."""
    label = SEVERITY_LABELS.get(event.severity, event.severity)
    subject = f"StockPulse Alert: {label}"
    colour = "#dc2626" if event.severity in ("critical", "out") else "#f59e0b"
    html_content = f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #1e1b4b; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">StockPulse Reorder Alert</h1>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        <div style="border-left: 4px solid {colour}; padding: 16px; margin-bottom: 16px;">
          <p style="margin: 0; font-weight: 600; color: #1e293b;">{event.severity.upper()}: {label}</p>
        </div>
        <p style="color: #334155;"><strong>Product:</strong> {event.pid}</p>
        <p style="color: #334155;"><strong>Warehouse:</strong> {event.wid}</p>
        <p style="color: #334155;">
          On hand {event.observed_on_hand}, available {event.observed_available},
          reorder point {event.threshold}.
        </p>
        <p style="color: #334155;"><strong>Suggested order:</strong> {event.suggested_qty} units</p>
      </div>
    </div>
    """
    return subject, html_content


async def send_alert_email(settings: Settings, to_email: str, event: AlertRaised) -> bool:
    """Send one reorder alert email. Returns True if SendGrid accepted it."""
    subject, html_content = render_alert_email(event)
    try:
        sg = sendgrid.SendGridAPIClient(api_key=settings.sendgrid_api_key)
        email = Mail(
            from_email=settings.alert_from_email,
            to_emails=to_email,
            subject=subject,
            html_content=html_content,
        )
        response = await asyncio.to_thread(sg.send, email)
    except Exception as exc:
        logger.warning(
            "alert.email_failed",
            alert_id=str(event.alert_id),
            to=to_email,
            error=str(exc),
        )
        return False
    accepted = response.status_code in (200, 201, 202)
    if not accepted:
        logger.warning("alert.email_rejected", alert_id=str(event.alert_id), status_code=response.status_code)
    return accepted
