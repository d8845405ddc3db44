"""
Qontax Recurrence — Client, contract, execution log & alert schemas.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


# ── Client ──────────────────────────────────────────────
class ClientCreateRequest(BaseModel):
    legal_name: str = Field(..., min_length=2, max_length=300)
    tax_id: str = Field("", max_length=20)


class ClientResponse(BaseModel):
    id: str
    legal_name: str
    tax_id: str = ""

    model_config = {"from_attributes": True}


# ── Recurring contract ──────────────────────────────────
class RecurringContractCreateRequest(BaseModel):
    client_id: str
    contract_name: str = Field(..., min_length=1, max_length=300)
    service_description: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    charge_day: int = Field(..., ge=1, le=31)
    auto_issue: bool = True
    is_vip: bool = False


class ContractStatusUpdateRequest(BaseModel):
    status: str = Field(..., pattern="^(active|paused)$")


class RecurringContractResponse(BaseModel):
    id: str
    client_id: str
    client_name: Optional[str] = None
    contract_name: str
    service_description: str
    amount: Decimal
    charge_day: int
    auto_issue: bool
    is_vip: bool
    status: str
    created_at: Optional[datetime] = None


class RecurringContractListResponse(BaseModel):
    contracts: list[RecurringContractResponse]
    total: int


# ── Invoice ─────────────────────────────────────────────
class InvoiceResponse(BaseModel):
    id: str
    client_id: Optional[str] = None
    recurring_contract_id: Optional[str] = None
    amount: Decimal
    service_description: str
    issued_at: datetime
    status: str
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class InvoiceListResponse(BaseModel):
    invoices: list[InvoiceResponse]
    total: int


# ── Execution log ───────────────────────────────────────
class AutomationLogResponse(BaseModel):
    id: str
    execution_date: date
    status: str
    invoices_created_count: int
    error_message: Optional[str] = None
    affected_contracts: list[dict] = []
    alert_sent: bool = False
    alert_timestamp: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AutomationLogListResponse(BaseModel):
    logs: list[AutomationLogResponse]
    total: int


class LastRunResponse(BaseModel):
    last_run_at: Optional[datetime] = None
    invoice_id: Optional[str] = None


# ── Alerts ──────────────────────────────────────────────
class AlertSettingsRequest(BaseModel):
    email: Optional[EmailStr] = None
    email_enabled: bool = True
    webhook_url: Optional[str] = Field(None, max_length=1000)
    webhook_enabled: bool = False


class AlertSettingsResponse(BaseModel):
    tenant_id: str
    email: Optional[str] = None
    email_enabled: bool = True
    webhook_url: Optional[str] = None
    webhook_enabled: bool = False

    model_config = {"from_attributes": True}


class AlertTestRequest(BaseModel):
    email: Optional[EmailStr] = None
    send_email: bool = True
    webhook_url: Optional[str] = Field(None, max_length=1000)
    send_webhook: bool = False
    contracts_list: Optional[str] = None
    technical_error: Optional[str] = None


class AlertTestResponse(BaseModel):
    ok: bool
    sent: dict[str, str] = {}
    failed: dict[str, str] = {}  # channel -> error, for channels that did not get the alert
