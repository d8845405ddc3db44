"""
Qontax Recurrence — Webhook notification service.
"""

import logging

import aiohttp

from billing.config import settings

logger = logging.getLogger(__name__)


class WebhookError(RuntimeError):
    """A webhook endpoint refused or could not be reached."""


async def post_webhook(url: str, payload: dict) -> None:
    """POST ``payload`` as JSON to ``url``. Raises WebhookError on any failure."""
    try:
        timeout = aiohttp.ClientTimeout(total=settings.webhook_timeout_secs)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload) as resp:
                if 200 <= resp.status < 300:
                    logger.info("Webhook delivered to %s", url)
                    return
                body = await resp.text()
                raise WebhookError(f"Webhook {url} answered {resp.status}: {body[:200]}")
    except WebhookError:
        raise
    except Exception as e:
        raise WebhookError(f"Webhook {url} failed: {e}") from e


async def send_webhook(url: str, payload: dict) -> bool:
    """Best-effort variant of post_webhook. Returns True on success."""
    try:
        await post_webhook(url, payload)
        return True
    except WebhookError as e:
        logger.error("%s", e)
        return False
