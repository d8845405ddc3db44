"""
Qontax Recurrence — Failure alert dispatch.

After a run, every tenant with at least one failed contract gets one
dispatch: an email and/or a webhook, depending on its AlertSettings row.
Delivery is best-effort and never fails the run. ``send_test_alert`` is
the synchronous variant used to verify a configuration.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.config import settings
from billing.models.automation import AlertSettings
from billing.services.email_service import (
    send_email, build_failure_alert_email, build_test_alert_email,
)
from billing.services.ledger import ExecutionLogSink
from billing.services.notify import WebhookError, post_webhook, send_webhook

logger = logging.getLogger(__name__)

DEFAULT_TEST_CONTRACTS = "Test contract (see the monitoring page for real runs)."
DEFAULT_TEST_ERROR = "This is a test alert triggered manually from the monitoring page."


class AlertDeliveryError(RuntimeError):
    """No requested test-alert channel was reached; ``status_code`` hints the HTTP answer.

    ``failed`` maps each attempted channel to its error message.
    """

    def __init__(self, message: str, status_code: int = 502, failed: Optional[dict[str, str]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.failed = failed or {}


async def get_alert_settings(session: AsyncSession, tenant_id: str) -> Optional[AlertSettings]:
    result = await session.execute(
        select(AlertSettings).where(AlertSettings.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def upsert_alert_settings(
    session: AsyncSession,
    tenant_id: str,
    email: Optional[str],
    email_enabled: bool,
    webhook_url: Optional[str],
    webhook_enabled: bool,
) -> AlertSettings:
    row = await get_alert_settings(session, tenant_id)
    if row is None:
        row = AlertSettings(tenant_id=tenant_id)
        session.add(row)
    row.email = email or None
    row.email_enabled = email_enabled
    row.webhook_url = webhook_url or None
    row.webhook_enabled = webhook_enabled
    await session.commit()
    await session.refresh(row)
    return row


class AlertDispatcher:
    """Fans a tenant's failures out to its configured channels."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def dispatch(
        self,
        tenant_id: str,
        failed_contracts: list[dict],
        summary: dict,
        execution_date: datetime,
        log_id: Optional[str] = None,
    ) -> bool:
        """Deliver the failure alert. Returns True when any channel got it."""
        try:
            async with self._session_factory() as session:
                cfg = await get_alert_settings(session, tenant_id)
        except Exception as e:
            logger.error("Failed to load alert settings for %s: %s", tenant_id, e)
            return False

        if cfg is None:
            logger.info("No alert settings for tenant %s — skipping alert", tenant_id)
            return False

        delivered = False

        if cfg.email_enabled and cfg.email:
            if not settings.email_configured:
                logger.warning("Email alert for %s skipped — SMTP not configured", tenant_id)
            else:
                subject, body = build_failure_alert_email(
                    failed_contracts, summary, provider_name=settings.alert_sender_name,
                )
                outcome = await send_email(to=cfg.email, subject=subject, body_html=body)
                if outcome.get("success"):
                    logger.info("Alert email sent to %s", cfg.email)
                    delivered = True
                else:
                    logger.error(
                        "Failed to send alert email for tenant %s: %s",
                        tenant_id, outcome.get("message"),
                    )

        if cfg.webhook_enabled and cfg.webhook_url:
            payload = {
                "type": "recurring_invoices_failed",
                "tenant_id": tenant_id,
                "execution_date": execution_date.isoformat(),
                "summary": summary,
                "failed_contracts": failed_contracts,
            }
            if await send_webhook(cfg.webhook_url, payload):
                delivered = True
            else:
                logger.error("Failed to send alert webhook for tenant %s", tenant_id)

        if delivered and log_id:
            try:
                async with self._session_factory() as session:
                    await ExecutionLogSink(session).mark_alert_sent(
                        log_id, datetime.now(timezone.utc)
                    )
            except Exception as e:
                logger.warning("Could not flag automation log %s as alerted: %s", log_id, e)

        return delivered


async def send_test_alert(
    email: Optional[str],
    send_email_flag: bool,
    webhook_url: Optional[str],
    send_webhook_flag: bool,
    contracts_list: Optional[str] = None,
    technical_error: Optional[str] = None,
) -> dict[str, dict[str, str]]:
    """Deliver a test alert right now on every requested channel.

    Channels are tried independently. Returns ``{"sent": {...}, "failed":
    {...}}`` when at least one channel got the alert. Raises
    AlertDeliveryError when none did (400 no channel requested, 500 the
    email transport is missing, 502 delivery failed).
    """
    want_email = bool(send_email_flag and email)
    want_webhook = bool(send_webhook_flag and webhook_url)
    if not want_email and not want_webhook:
        raise AlertDeliveryError(
            "Enable at least one alert channel (email or webhook) to run the test.", 400,
        )

    contracts_text = contracts_list or DEFAULT_TEST_CONTRACTS
    error_text = technical_error or DEFAULT_TEST_ERROR
    sent: dict[str, str] = {}
    failed: dict[str, str] = {}
    transport_missing = False

    if want_email:
        if not settings.email_configured:
            transport_missing = True
            failed["email"] = "SMTP credentials not configured"
        else:
            subject, body = build_test_alert_email(
                contracts_text, error_text, provider_name=settings.alert_sender_name,
            )
            outcome = await send_email(to=email, subject=subject, body_html=body)
            if outcome.get("success"):
                sent["email"] = email
            else:
                failed["email"] = outcome.get("message") or "Email failed"

    if want_webhook:
        try:
            await post_webhook(webhook_url, {
                "type": "recurring_invoices_failed_test",
                "message": "Recurring invoice automation alert test",
                "contracts_list": contracts_text,
                "technical_error": error_text,
            })
            sent["webhook_url"] = webhook_url
        except WebhookError as e:
            failed["webhook"] = str(e)

    for channel, message in failed.items():
        logger.warning("Test alert %s channel failed: %s", channel, message)

    if not sent:
        # 500 only when the sole failure is the missing SMTP setup
        status = 500 if transport_missing and len(failed) == 1 else 502
        raise AlertDeliveryError("; ".join(failed.values()), status, failed)

    return {"sent": sent, "failed": failed}
