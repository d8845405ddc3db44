"""
Qontax Recurrence — Email service (SMTP).

Setup:
1. Create an app password (or SMTP credential) for the sender mailbox
2. Set SMTP_EMAIL and SMTP_APP_PASSWORD (and SMTP_HOST / SMTP_PORT if not Gmail)
"""

import asyncio
import html
import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from billing.config import settings

logger = logging.getLogger(__name__)


def _deliver(host: str, port: int, sender: str, password: str, to: str, raw: str) -> None:
    with smtplib.SMTP(host, port, timeout=15) as server:
        server.ehlo()
        server.starttls()
        server.ehlo()
        server.login(sender, password)
        server.sendmail(sender, [to], raw)


async def send_email(
    to: str,
    subject: str,
    body_html: str,
    reply_to: str | None = None,
) -> dict:
    """
    Send an email via SMTP.
    Returns {"success": True/False, "message": "..."}
    """
    sender = settings.smtp_email
    password = settings.smtp_app_password

    if not sender or not password:
        logger.warning("SMTP not configured — skipping email send")
        return {"success": False, "message": "SMTP credentials not configured. Set SMTP_EMAIL and SMTP_APP_PASSWORD."}

    msg = MIMEMultipart("alternative")
    msg["From"] = f"{settings.alert_sender_name} <{sender}>"
    msg["To"] = to
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to

    # Plain-text fallback
    plain_text = body_html.replace("<br>", "\n").replace("<br/>", "\n")
    plain_text = re.sub(r"<[^>]+>", "", plain_text)

    msg.attach(MIMEText(plain_text, "plain"))
    msg.attach(MIMEText(body_html, "html"))

    try:
        # smtplib blocks; keep the event loop free for other runs
        await asyncio.to_thread(
            _deliver, settings.smtp_host, settings.smtp_port, sender, password, to, msg.as_string(),
        )
        logger.info(f"✅ Email sent to {to}: {subject}")
        return {"success": True, "message": f"Email sent to {to}"}

    except smtplib.SMTPAuthenticationError as e:
        logger.error(f"SMTP auth failed: {e}")
        return {"success": False, "message": "SMTP authentication failed. Check your App Password."}
    except Exception as e:
        logger.error(f"Email send failed: {e}")
        return {"success": False, "message": f"Email failed: {str(e)}"}


def describe_failed_contracts(failed: list[dict]) -> str:
    """'Client A (Contract: id), Client B (Contract: id)' or 'N/A'."""
    if not failed:
        return "N/A"
    return ", ".join(
        f"{c.get('client_name') or 'Unknown client'} (Contract: {c.get('contract_id')})"
        for c in failed
    )


def build_failure_alert_email(
    failed: list[dict],
    summary: dict,
    provider_name: str = "Qontax",
) -> tuple[str, str]:
    """Alert for a run where some of the tenant's contracts failed. Returns (subject, html)."""
    contracts_text = html.escape(describe_failed_contracts(failed))
    technical_error = html.escape(
        (failed[0].get("error_msg") if failed else None) or "Unspecified error"
    )
    subject = f"⚠️ {provider_name} Alert: Recurring invoice failure"
    body = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 40px 20px;">
      <h2 style="color: #b91c1c;">⚠️ {provider_name} Alert: Recurring invoice failure</h2>
      <p style="color: #333;">An error occurred during today's recurring invoice run.</p>
      <div style="background: #fef2f2; border: 1px solid #fca5a5; border-radius: 12px; padding: 24px; margin: 24px 0;">
        <p style="margin: 0 0 8px;"><strong>Affected contracts:</strong> {contracts_text}</p>
        <p style="margin: 0;"><strong>Technical error:</strong> {technical_error}</p>
      </div>
      <h3 style="color: #111;">Run summary</h3>
      <ul>
        <li>Total contracts: {summary.get("total", 0)}</li>
        <li>Success: {summary.get("success", 0)}</li>
        <li>Errors: {summary.get("errors", 0)}</li>
        <li>Skipped: {summary.get("skipped", 0)}</li>
      </ul>
      <p style="color: #666; font-size: 14px;">Open the monitoring page to reprocess if needed.</p>
    </div>
    """
    return subject, body


def build_test_alert_email(
    contracts_list: str,
    technical_error: str,
    provider_name: str = "Qontax",
) -> tuple[str, str]:
    """Manually triggered test alert. Returns (subject, html)."""
    subject = f"⚠️ {provider_name} Alert: Recurring invoice failure (Test)"
    body = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 40px 20px;">
      <h2 style="color: #b91c1c;">⚠️ {provider_name} Alert: Recurring invoice failure (Test)</h2>
      <p style="color: #333;">A simulated error occurred in the recurring invoice automation.</p>
      <p><strong>Affected contracts:</strong> {html.escape(contracts_list)}</p>
      <p><strong>Technical error:</strong> {html.escape(technical_error)}</p>
      <p style="color: #666; font-size: 14px;">Open the monitoring page to confirm the alert arrived.</p>
    </div>
    """
    return subject, body
