"""
Qontax Recurrence — Execution log & alert settings routes.
Lets a tenant monitor recurring runs and decide where failures are reported.
"""

import logging
from datetime import date, datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.database import get_db
from billing.models.audit_log import AuditLog
from billing.models.automation import AutomationLog
from billing.models.contract import Invoice
from billing.routes.deps import get_current_tenant
from billing.schemas.contract import (
    AlertSettingsRequest, AlertSettingsResponse,
    AlertTestRequest, AlertTestResponse,
    AutomationLogListResponse, AutomationLogResponse, LastRunResponse,
)
from billing.services.alerts import (
    AlertDeliveryError, get_alert_settings, send_test_alert, upsert_alert_settings,
)

logger = logging.getLogger(__name__)
automation_router = APIRouter(prefix="/recurring", tags=["automation"])


def log_window(
    preset: str | None,
    start: date | None,
    end: date | None,
    today: date,
) -> tuple[date | None, date | None]:
    """Resolve a dashboard date preset into inclusive execution-date bounds."""
    if preset == "7d":
        return today - timedelta(days=6), today
    if preset == "30d":
        return today - timedelta(days=29), today
    if preset == "current-month":
        first = today.replace(day=1)
        next_first = (first + timedelta(days=32)).replace(day=1)
        return first, next_first - timedelta(days=1)
    return start, end


# ═══════════════════════════════════════════════════════
#  Execution logs
# ═══════════════════════════════════════════════════════

@automation_router.get("/logs", response_model=AutomationLogListResponse)
async def list_automation_logs(
    preset: str | None = Query(None, pattern="^(7d|30d|current-month|custom)$"),
    start: date | None = Query(None, description="First execution date (custom range)"),
    end: date | None = Query(None, description="Last execution date (custom range)"),
    limit: int = Query(100, ge=1, le=500),
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """
    List the tenant's execution log entries, newest first.
    Optional filters: preset window, or explicit start/end dates.
    """
    lo, hi = log_window(preset, start, end, datetime.now(timezone.utc).date())

    stmt = (
        select(AutomationLog)
        .where(AutomationLog.tenant_id == tenant_id)
        .order_by(AutomationLog.created_at.desc(), AutomationLog.execution_date.desc())
        .limit(limit)
    )
    if lo:
        stmt = stmt.where(AutomationLog.execution_date >= lo)
    if hi:
        stmt = stmt.where(AutomationLog.execution_date <= hi)

    result = await db.execute(stmt)
    logs = result.scalars().all()

    return {
        "logs": [AutomationLogResponse.model_validate(log) for log in logs],
        "total": len(logs),
    }


@automation_router.get("/last-run", response_model=LastRunResponse)
async def get_last_run(
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """When the engine last created an invoice for this tenant."""
    result = await db.execute(
        select(AuditLog.created_at, AuditLog.invoice_id)
        .join(Invoice, Invoice.id == AuditLog.invoice_id)
        .where(Invoice.tenant_id == tenant_id)
        .where(AuditLog.event_type == "auto_generated")
        .order_by(AuditLog.created_at.desc())
        .limit(1)
    )
    row = result.first()
    if not row:
        return LastRunResponse()
    return LastRunResponse(last_run_at=row.created_at, invoice_id=row.invoice_id)


# ═══════════════════════════════════════════════════════
#  Alert settings
# ═══════════════════════════════════════════════════════

@automation_router.get("/alert-settings", response_model=AlertSettingsResponse)
async def read_alert_settings(
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    row = await get_alert_settings(db, tenant_id)
    if not row:
        raise HTTPException(404, "No alert settings for this account")
    return row


@automation_router.put("/alert-settings", response_model=AlertSettingsResponse)
async def save_alert_settings(
    req: AlertSettingsRequest,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    row = await upsert_alert_settings(
        db,
        tenant_id,
        email=req.email,
        email_enabled=req.email_enabled,
        webhook_url=req.webhook_url,
        webhook_enabled=req.webhook_enabled,
    )
    logger.info("Alert settings saved for tenant %s", tenant_id)
    return row


@automation_router.post(
    "/alert-settings/test",
    response_model=AlertTestResponse,
    dependencies=[Depends(get_current_tenant)],
)
async def trigger_test_alert(req: AlertTestRequest):
    """Deliver a test alert to the given targets and report the outcome."""
    try:
        outcome = await send_test_alert(
            email=req.email,
            send_email_flag=req.send_email,
            webhook_url=req.webhook_url,
            send_webhook_flag=req.send_webhook,
            contracts_list=req.contracts_list,
            technical_error=req.technical_error,
        )
    except AlertDeliveryError as e:
        logger.error("Error in test alert: %s", e)
        return JSONResponse(
            {"ok": False, "error": str(e), "failed": e.failed}, status_code=e.status_code,
        )
    return AlertTestResponse(ok=True, sent=outcome["sent"], failed=outcome["failed"])
