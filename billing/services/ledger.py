"""
Qontax Recurrence — Storage access used by the recurrence engine.

Thin async wrappers over one ``AsyncSession``: the contract repository,
the invoice ledger, and the two append-only sinks (per-invoice audit
events and per-tenant execution logs).
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.models.audit_log import AuditLog
from billing.models.automation import AutomationLog
from billing.models.contract import Client, Invoice, RecurringContract

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContractCandidate:
    """A due contract joined with its client's display name."""

    id: str
    tenant_id: str
    client_id: str
    client_name: Optional[str]
    contract_name: str
    service_description: str
    amount: Decimal
    charge_day: int
    is_vip: bool


class ContractRepository:
    """Read-only access to recurring contracts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_active_contracts(
        self,
        charge_day: Optional[int] = None,
        ids: Optional[Sequence[str]] = None,
        require_auto_issue: bool = True,
    ) -> list[ContractCandidate]:
        stmt = (
            select(
                RecurringContract.id,
                RecurringContract.tenant_id,
                RecurringContract.client_id,
                Client.legal_name,
                RecurringContract.contract_name,
                RecurringContract.service_description,
                RecurringContract.amount,
                RecurringContract.charge_day,
                RecurringContract.is_vip,
            )
            .outerjoin(Client, Client.id == RecurringContract.client_id)
            .where(RecurringContract.status == "active")
            .order_by(RecurringContract.created_at, RecurringContract.id)
        )
        if require_auto_issue:
            stmt = stmt.where(RecurringContract.auto_issue.is_(True))
        if ids:
            stmt = stmt.where(RecurringContract.id.in_(list(ids)))
        if charge_day is not None:
            stmt = stmt.where(RecurringContract.charge_day == charge_day)

        result = await self.session.execute(stmt)
        return [
            ContractCandidate(
                id=row.id,
                tenant_id=row.tenant_id,
                client_id=row.client_id,
                client_name=row.legal_name,
                contract_name=row.contract_name,
                service_description=row.service_description,
                amount=row.amount,
                charge_day=row.charge_day,
                is_vip=bool(row.is_vip),
            )
            for row in result.all()
        ]


class InvoiceLedger:
    """Existence checks and draft creation for contract invoices."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_invoice_for_contract_in_period(
        self,
        contract_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.recurring_contract_id == contract_id)
            .where(Invoice.issued_at >= period_start)
            .where(Invoice.issued_at <= period_end)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def insert_draft_invoice(
        self,
        contract: ContractCandidate,
        issued_at: datetime,
        billing_period: str,
    ) -> Invoice:
        """Insert and commit a draft invoice copied from ``contract``.

        Raises ``SQLAlchemyError`` (``IntegrityError`` on a constraint
        violation) after rolling the session back.
        """
        invoice = Invoice(
            id=str(uuid.uuid4()),
            tenant_id=contract.tenant_id,
            client_id=contract.client_id,
            recurring_contract_id=contract.id,
            billing_period=billing_period,
            amount=contract.amount,
            service_description=contract.service_description,
            issued_at=issued_at,
            status="draft",
        )
        self.session.add(invoice)
        try:
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise
        return invoice


class AuditLogSink:
    """Append-only per-invoice audit events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_auto_generated(self, invoice_id: str, contract: ContractCandidate) -> bool:
        """Write the ``auto_generated`` event. Returns False instead of raising."""
        entry = AuditLog(
            id=str(uuid.uuid4()),
            invoice_id=invoice_id,
            event_type="auto_generated",
            message=f"Invoice generated automatically from recurring contract: {contract.contract_name}",
            payload={
                "contract_id": contract.id,
                "contract_name": contract.contract_name,
                "charge_day": contract.charge_day,
                "generated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        try:
            self.session.add(entry)
            await self.session.commit()
            return True
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.warning("Failed to write audit log for invoice %s: %s", invoice_id, e)
            return False


class ExecutionLogSink:
    """Append-only per-tenant run summaries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def write_entries(self, entries: list[AutomationLog]) -> dict[str, str]:
        """Persist all entries in one transaction.

        Returns ``{tenant_id: log_id}``; empty when the write failed (the
        failure is logged, not raised).
        """
        if not entries:
            return {}
        try:
            self.session.add_all(entries)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Error inserting automation logs: %s", e)
            return {}
        return {e.tenant_id: e.id for e in entries}

    async def mark_alert_sent(self, log_id: str, when: Optional[datetime] = None) -> None:
        entry = await self.session.get(AutomationLog, log_id)
        if not entry:
            return
        entry.alert_sent = True
        entry.alert_timestamp = when or datetime.now(timezone.utc)
        await self.session.commit()


def build_execution_log(
    tenant_id: str,
    execution_date: date,
    results: list[dict],
    success_count: int,
    error_count: int,
) -> AutomationLog:
    """One AutomationLog row summarising a tenant's share of a run."""
    return AutomationLog(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        execution_date=execution_date,
        status="error" if error_count > 0 else "success",
        invoices_created_count=success_count,
        error_message=(
            f"Errors in {error_count} contracts during automatic processing."
            if error_count > 0 else None
        ),
        affected_contracts=results,
    )
