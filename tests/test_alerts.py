"""
Tests for alert delivery — dispatcher, test alerts, email builders, SMTP & webhook transports.
"""

import smtplib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp import test_utils, web

from billing.services.alerts import (
    AlertDeliveryError, AlertDispatcher, DEFAULT_TEST_ERROR,
    get_alert_settings, send_test_alert, upsert_alert_settings,
)
from billing.services.email_service import (
    build_failure_alert_email, build_test_alert_email, describe_failed_contracts, send_email,
)
from billing.services.ledger import ExecutionLogSink, build_execution_log
from billing.services.notify import WebhookError, post_webhook, send_webhook
from tests.conftest import NOW, TENANT_A


FAILED = [
    {"contract_id": "c-1", "client_name": "Acme", "amount": 1500.0, "status": "error",
     "is_vip": False, "error_msg": "connection reset", "target_date": "2025-01-15"},
]
SUMMARY = {"total": 3, "success": 2, "errors": 1, "skipped": 0}


async def _write_log(session) -> str:
    entry = build_execution_log(TENANT_A, NOW.date(), FAILED, success_count=2, error_count=1)
    ids = await ExecutionLogSink(session).write_entries([entry])
    return ids[TENANT_A]


# ── Dispatcher ──────────────────────────────────────────

class TestAlertDispatcher:
    async def test_no_settings_row_sends_nothing(self, session_factory):
        with patch("billing.services.alerts.send_email", new_callable=AsyncMock) as mock_email, \
             patch("billing.services.alerts.send_webhook", new_callable=AsyncMock) as mock_hook:
            delivered = await AlertDispatcher(session_factory).dispatch(TENANT_A, FAILED, SUMMARY, NOW)

        assert delivered is False
        mock_email.assert_not_called()
        mock_hook.assert_not_called()

    async def test_email_and_webhook_delivered(self, session_factory, seed, smtp_configured):
        await seed.alert_settings(webhook_url="https://hooks.example.com/x", webhook_enabled=True)
        log_id = await _write_log(seed.session)

        with patch("billing.services.alerts.send_email", new_callable=AsyncMock,
                   return_value={"success": True, "message": "ok"}) as mock_email, \
             patch("billing.services.alerts.send_webhook", new_callable=AsyncMock,
                   return_value=True) as mock_hook:
            delivered = await AlertDispatcher(session_factory).dispatch(
                TENANT_A, FAILED, SUMMARY, NOW, log_id=log_id,
            )

        assert delivered is True
        assert mock_email.call_args.kwargs["to"] == "finance@acme.com.br"
        assert "Recurring invoice failure" in mock_email.call_args.kwargs["subject"]

        url, payload = mock_hook.call_args.args
        assert url == "https://hooks.example.com/x"
        assert payload["type"] == "recurring_invoices_failed"
        assert payload["tenant_id"] == TENANT_A
        assert payload["execution_date"] == NOW.isoformat()
        assert payload["summary"] == SUMMARY
        assert payload["failed_contracts"] == FAILED

        log = (await seed.automation_logs())[0]
        assert log.alert_sent is True
        assert log.alert_timestamp is not None

    async def test_email_skipped_without_smtp(self, session_factory, seed):
        await seed.alert_settings()
        with patch("billing.services.alerts.send_email", new_callable=AsyncMock) as mock_email:
            delivered = await AlertDispatcher(session_factory).dispatch(TENANT_A, FAILED, SUMMARY, NOW)

        assert delivered is False
        mock_email.assert_not_called()

    async def test_disabled_channels(self, session_factory, seed, smtp_configured):
        await seed.alert_settings(email_enabled=False, webhook_url="https://h.example.com", webhook_enabled=False)
        with patch("billing.services.alerts.send_email", new_callable=AsyncMock) as mock_email, \
             patch("billing.services.alerts.send_webhook", new_callable=AsyncMock) as mock_hook:
            delivered = await AlertDispatcher(session_factory).dispatch(TENANT_A, FAILED, SUMMARY, NOW)

        assert delivered is False
        mock_email.assert_not_called()
        mock_hook.assert_not_called()

    async def test_failed_delivery_leaves_log_unflagged(self, session_factory, seed, smtp_configured):
        await seed.alert_settings()
        log_id = await _write_log(seed.session)

        with patch("billing.services.alerts.send_email", new_callable=AsyncMock,
                   return_value={"success": False, "message": "Email failed: refused"}):
            delivered = await AlertDispatcher(session_factory).dispatch(
                TENANT_A, FAILED, SUMMARY, NOW, log_id=log_id,
            )

        assert delivered is False
        assert (await seed.automation_logs())[0].alert_sent is False

    async def test_settings_load_failure(self):
        broken_factory = MagicMock(side_effect=RuntimeError("pool exhausted"))
        delivered = await AlertDispatcher(broken_factory).dispatch(TENANT_A, FAILED, SUMMARY, NOW)
        assert delivered is False


class TestAlertSettingsStore:
    async def test_upsert_creates_then_updates(self, db_session):
        first = await upsert_alert_settings(db_session, TENANT_A, "a@x.com", True, None, False)
        second = await upsert_alert_settings(db_session, TENANT_A, "", False, "https://h.example.com", True)

        assert first.id == second.id
        row = await get_alert_settings(db_session, TENANT_A)
        assert row.email is None
        assert row.webhook_url == "https://h.example.com"
        assert row.webhook_enabled is True

    async def test_mark_alert_sent_unknown_log(self, db_session):
        await ExecutionLogSink(db_session).mark_alert_sent("nope")


# ── Test alerts ─────────────────────────────────────────

class TestSendTestAlert:
    async def test_no_channel_is_400(self):
        with pytest.raises(AlertDeliveryError) as exc:
            await send_test_alert("a@x.com", False, None, True)
        assert exc.value.status_code == 400

    async def test_email_without_smtp_is_500(self):
        with pytest.raises(AlertDeliveryError) as exc:
            await send_test_alert("a@x.com", True, None, False)
        assert exc.value.status_code == 500

    async def test_email_failure_is_502(self, smtp_configured):
        with patch("billing.services.alerts.send_email", new_callable=AsyncMock,
                   return_value={"success": False, "message": "Email failed: refused"}):
            with pytest.raises(AlertDeliveryError, match="refused") as exc:
                await send_test_alert("a@x.com", True, None, False)
        assert exc.value.status_code == 502

    async def test_webhook_failure_is_502(self):
        with patch("billing.services.alerts.post_webhook", new_callable=AsyncMock,
                   side_effect=WebhookError("answered 500")):
            with pytest.raises(AlertDeliveryError) as exc:
                await send_test_alert(None, False, "https://h.example.com", True)
        assert exc.value.status_code == 502

    async def test_both_channels(self, smtp_configured):
        with patch("billing.services.alerts.send_email", new_callable=AsyncMock,
                   return_value={"success": True, "message": "ok"}) as mock_email, \
             patch("billing.services.alerts.post_webhook", new_callable=AsyncMock) as mock_hook:
            outcome = await send_test_alert("a@x.com", True, "https://h.example.com", True)

        assert outcome["sent"] == {"email": "a@x.com", "webhook_url": "https://h.example.com"}
        assert outcome["failed"] == {}
        assert "(Test)" in mock_email.call_args.kwargs["subject"]
        payload = mock_hook.call_args.args[1]
        assert payload["type"] == "recurring_invoices_failed_test"
        assert payload["technical_error"] == DEFAULT_TEST_ERROR

    async def test_email_delivered_webhook_refused(self, smtp_configured):
        with patch("billing.services.alerts.send_email", new_callable=AsyncMock,
                   return_value={"success": True, "message": "ok"}) as mock_email, \
             patch("billing.services.alerts.post_webhook", new_callable=AsyncMock,
                   side_effect=WebhookError("refused")):
            outcome = await send_test_alert("a@x.com", True, "https://h.example.com", True)

        mock_email.assert_awaited_once()
        assert outcome["sent"] == {"email": "a@x.com"}
        assert outcome["failed"] == {"webhook": "refused"}

    async def test_email_failure_still_tries_webhook(self, smtp_configured):
        with patch("billing.services.alerts.send_email", new_callable=AsyncMock,
                   return_value={"success": False, "message": "Email failed: refused"}), \
             patch("billing.services.alerts.post_webhook", new_callable=AsyncMock) as mock_hook:
            outcome = await send_test_alert("a@x.com", True, "https://h.example.com", True)

        mock_hook.assert_awaited_once()
        assert outcome["sent"] == {"webhook_url": "https://h.example.com"}
        assert outcome["failed"] == {"email": "Email failed: refused"}

    async def test_missing_smtp_still_tries_webhook(self):
        with patch("billing.services.alerts.post_webhook", new_callable=AsyncMock) as mock_hook:
            outcome = await send_test_alert("a@x.com", True, "https://h.example.com", True)

        mock_hook.assert_awaited_once()
        assert outcome["failed"] == {"email": "SMTP credentials not configured"}

    async def test_every_channel_failed_is_502(self, smtp_configured):
        with patch("billing.services.alerts.send_email", new_callable=AsyncMock,
                   return_value={"success": False, "message": "Email failed: refused"}), \
             patch("billing.services.alerts.post_webhook", new_callable=AsyncMock,
                   side_effect=WebhookError("answered 500")):
            with pytest.raises(AlertDeliveryError) as exc:
                await send_test_alert("a@x.com", True, "https://h.example.com", True)

        assert exc.value.status_code == 502
        assert set(exc.value.failed) == {"email", "webhook"}


# ── Email content ───────────────────────────────────────

class TestAlertEmails:
    def test_describe_failed_contracts(self):
        assert describe_failed_contracts([]) == "N/A"
        text = describe_failed_contracts(FAILED + [{"contract_id": "c-2", "client_name": None}])
        assert text == "Acme (Contract: c-1), Unknown client (Contract: c-2)"

    def test_failure_email_body(self):
        subject, body = build_failure_alert_email(FAILED, SUMMARY, provider_name="Qontax")
        assert subject == "⚠️ Qontax Alert: Recurring invoice failure"
        assert "Acme (Contract: c-1)" in body
        assert "connection reset" in body
        assert "Total contracts: 3" in body
        assert "Errors: 1" in body

    def test_failure_email_escapes_html(self):
        failed = [{"contract_id": "c-1", "client_name": "<b>Evil</b>", "error_msg": "<script>"}]
        _, body = build_failure_alert_email(failed, SUMMARY)
        assert "<script>" not in body
        assert "&lt;b&gt;Evil&lt;/b&gt;" in body

    def test_test_email(self):
        subject, body = build_test_alert_email("Contract X", "Boom & co")
        assert subject.endswith("(Test)")
        assert "Boom &amp; co" in body


# ── SMTP transport ──────────────────────────────────────

class TestSendEmail:
    async def test_not_configured(self):
        result = await send_email("a@x.com", "Hi", "<p>Hi</p>")
        assert result["success"] is False
        assert "not configured" in result["message"]

    async def test_sends_via_smtp(self, smtp_configured):
        with patch("billing.services.email_service.smtplib.SMTP") as mock_smtp:
            server = mock_smtp.return_value.__enter__.return_value
            result = await send_email("a@x.com", "Hi", "<p>Hi<br>there</p>", reply_to="r@x.com")

        assert result["success"] is True
        mock_smtp.assert_called_once_with("smtp.test.local", 587, timeout=15)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("alerts@qontax.test", "app-password")
        sender, recipients, raw = server.sendmail.call_args.args
        assert recipients == ["a@x.com"]
        assert "Reply-To: r@x.com" in raw

    async def test_auth_failure(self, smtp_configured):
        with patch("billing.services.email_service.smtplib.SMTP",
                   side_effect=smtplib.SMTPAuthenticationError(535, b"bad credentials")):
            result = await send_email("a@x.com", "Hi", "<p>Hi</p>")

        assert result["success"] is False
        assert "authentication failed" in result["message"]


# ── Webhook transport ───────────────────────────────────

class TestWebhook:
    async def _server(self, status: int, received: list):
        async def handler(request):
            received.append(await request.json())
            return web.json_response({"ok": status < 300}, status=status)

        app = web.Application()
        app.router.add_post("/hook", handler)
        return test_utils.TestServer(app)

    async def test_post_webhook_delivers_json(self):
        received = []
        async with await self._server(200, received) as server:
            await post_webhook(str(server.make_url("/hook")), {"type": "ping"})
        assert received == [{"type": "ping"}]

    async def test_non_2xx_raises(self):
        received = []
        async with await self._server(500, received) as server:
            with pytest.raises(WebhookError, match="500"):
                await post_webhook(str(server.make_url("/hook")), {"type": "ping"})

    async def test_send_webhook_swallows_errors(self):
        received = []
        async with await self._server(503, received) as server:
            assert await send_webhook(str(server.make_url("/hook")), {"type": "ping"}) is False

    async def test_unreachable_host(self):
        with pytest.raises(WebhookError):
            await post_webhook("http://127.0.0.1:9/hook", {"type": "ping"})
