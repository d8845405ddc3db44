"""
Qontax Recurrence — Recurring contract routes and the engine trigger.
"""

import logging
from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.config import settings
from billing.database import get_db, get_session_factory
from billing.models.contract import Client, Invoice, RecurringContract
from billing.routes.deps import get_current_tenant
from billing.schemas import (
    ProcessFailureResponse, ProcessRecurringRequest, ProcessRecurringResponse,
)
from billing.schemas.contract import (
    ClientCreateRequest, ClientResponse,
    ContractStatusUpdateRequest, InvoiceListResponse, InvoiceResponse,
    RecurringContractCreateRequest, RecurringContractListResponse,
    RecurringContractResponse,
)
from billing.services.recurrence_engine import (
    InvalidTargetDate, RecurrenceEngine, month_bounds,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/recurring", tags=["recurring"])


def _contract_to_response(c: RecurringContract) -> dict:
    return {
        "id": c.id,
        "client_id": c.client_id,
        "client_name": c.client.legal_name if c.client else None,
        "contract_name": c.contract_name,
        "service_description": c.service_description,
        "amount": c.amount,
        "charge_day": c.charge_day,
        "auto_issue": bool(c.auto_issue),
        "is_vip": bool(c.is_vip),
        "status": c.status,
        "created_at": c.created_at,
    }


async def _get_owned_contract(db: AsyncSession, tenant_id: str, contract_id: str) -> RecurringContract:
    result = await db.execute(
        select(RecurringContract)
        .where(RecurringContract.id == contract_id)
        .where(RecurringContract.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    contract = result.scalar_one_or_none()
    if not contract:
        raise HTTPException(404, "Contract not found")
    return contract


# ═══════════════════════════════════════════════════════
#  Engine trigger
# ═══════════════════════════════════════════════════════

@router.post(
    "/process",
    response_model=ProcessRecurringResponse,
    responses={400: {"model": ProcessFailureResponse}},
)
async def process_recurring_invoices(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Run the recurrence engine.

    Business outcomes (including partial failure) always answer 200; read
    ``summary.errors`` and ``results[].status``. A bad ``target_date`` is a
    400. Infrastructure failures answer ``{success: false, error}`` with
    ``settings.failure_status_code``.
    """
    try:
        body = await request.json()
    except ValueError:
        body = None  # empty or non-JSON body: run with defaults

    try:
        req = ProcessRecurringRequest.from_body(body)
        report = await RecurrenceEngine(session_factory).run(req)
    except InvalidTargetDate as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)
    except Exception as e:
        logger.error("Recurring run failed: %s", e)
        return JSONResponse(
            {"success": False, "error": str(e)},
            status_code=settings.failure_status_code,
        )

    return report.to_response()


# ═══════════════════════════════════════════════════════
#  Clients
# ═══════════════════════════════════════════════════════

@router.get("/clients", response_model=list[ClientResponse])
async def list_clients(
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Client).where(Client.tenant_id == tenant_id).order_by(Client.legal_name)
    )
    return result.scalars().all()


@router.post("/clients", response_model=ClientResponse, status_code=201)
async def create_client(
    req: ClientCreateRequest,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    client = Client(tenant_id=tenant_id, legal_name=req.legal_name, tax_id=req.tax_id)
    db.add(client)
    await db.commit()
    await db.refresh(client)
    return client


# ═══════════════════════════════════════════════════════
#  Recurring contracts
# ═══════════════════════════════════════════════════════

@router.get("/contracts", response_model=RecurringContractListResponse)
async def list_contracts(
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """List the tenant's contracts, newest first."""
    result = await db.execute(
        select(RecurringContract)
        .where(RecurringContract.tenant_id == tenant_id)
        .order_by(RecurringContract.created_at.desc())
    )
    contracts = result.scalars().unique().all()
    return {
        "contracts": [_contract_to_response(c) for c in contracts],
        "total": len(contracts),
    }


@router.post("/contracts", response_model=RecurringContractResponse, status_code=201)
async def create_contract(
    req: RecurringContractCreateRequest,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    client = await db.get(Client, req.client_id)
    if not client or client.tenant_id != tenant_id:
        raise HTTPException(404, "Client not found")

    contract = RecurringContract(
        tenant_id=tenant_id,
        client_id=client.id,
        contract_name=req.contract_name,
        service_description=req.service_description,
        amount=req.amount,
        charge_day=req.charge_day,
        auto_issue=req.auto_issue,
        is_vip=req.is_vip,
        status="active",
    )
    db.add(contract)
    await db.commit()

    contract = await _get_owned_contract(db, tenant_id, contract.id)
    logger.info("Recurring contract %s created for tenant %s", contract.id, tenant_id)
    return _contract_to_response(contract)


@router.patch("/contracts/{contract_id}/status", response_model=RecurringContractResponse)
async def update_contract_status(
    contract_id: str,
    req: ContractStatusUpdateRequest,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Pause or resume a contract. Paused contracts are never picked by the engine."""
    contract = await _get_owned_contract(db, tenant_id, contract_id)
    contract.status = req.status
    await db.commit()

    contract = await _get_owned_contract(db, tenant_id, contract_id)
    logger.info("Recurring contract %s is now %s", contract_id, req.status)
    return _contract_to_response(contract)


@router.get("/contracts/missing", response_model=RecurringContractListResponse)
async def list_missing_contracts(
    vip_only: bool = Query(False),
    on: date | None = Query(None, description="Reference day (defaults to today, UTC)"),
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """
    Active contracts whose charge day already passed this month but that
    still have no invoice for the month.
    """
    today = on or datetime.now(timezone.utc).date()
    start, end = month_bounds(datetime(today.year, today.month, today.day, tzinfo=timezone.utc))

    result = await db.execute(
        select(RecurringContract)
        .where(RecurringContract.tenant_id == tenant_id)
        .where(RecurringContract.status == "active")
        .where(RecurringContract.charge_day <= today.day)
        .order_by(RecurringContract.charge_day)
    )
    contracts = result.scalars().unique().all()
    if vip_only:
        contracts = [c for c in contracts if c.is_vip]

    inv_result = await db.execute(
        select(Invoice.recurring_contract_id, Invoice.client_id)
        .where(Invoice.tenant_id == tenant_id)
        .where(Invoice.issued_at >= start)
        .where(Invoice.issued_at <= end)
    )
    invoiced_contracts: set[str] = set()
    invoiced_clients: set[str] = set()
    for contract_ref, client_ref in inv_result.all():
        if contract_ref:
            invoiced_contracts.add(contract_ref)
        elif client_ref:
            # hand-made invoice: counts for every contract of that client
            invoiced_clients.add(client_ref)

    missing = [
        c for c in contracts
        if c.id not in invoiced_contracts and c.client_id not in invoiced_clients
    ]
    return {
        "contracts": [_contract_to_response(c) for c in missing],
        "total": len(missing),
    }


@router.get("/contracts/{contract_id}/invoices", response_model=InvoiceListResponse)
async def list_contract_invoices(
    contract_id: str,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    """Invoice history of one contract, newest first."""
    await _get_owned_contract(db, tenant_id, contract_id)
    result = await db.execute(
        select(Invoice)
        .where(Invoice.recurring_contract_id == contract_id)
        .where(Invoice.tenant_id == tenant_id)
        .order_by(Invoice.issued_at.desc())
    )
    invoices = result.scalars().all()
    return {
        "invoices": [InvoiceResponse.model_validate(inv) for inv in invoices],
        "total": len(invoices),
    }
