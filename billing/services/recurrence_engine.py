"""
Qontax Recurrence — Recurring invoice engine.

One invocation = one run:

1. Resolve the processing date and contract filters from the trigger.
2. Load the due contracts (active, auto-issue) with their client names.
3. For each contract, create a draft invoice unless one already exists
   for the contract in the processing month.
4. Fold the per-contract results into one execution log row per tenant.
5. Alert every tenant that had at least one failure.

A contract's failure never stops its siblings. Only a bad target date,
missing configuration, or a failed candidate query abort the run.
"""

import asyncio
import calendar
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from billing.config import settings, require_configured
from billing.schemas import (
    ContractOutcome, ContractResult, ProcessRecurringRequest,
    ProcessRecurringResponse, ResultDetail, RunSummary,
)
from billing.services.alerts import AlertDispatcher
from billing.services.ledger import (
    AuditLogSink, ContractCandidate, ContractRepository, ExecutionLogSink,
    InvoiceLedger, build_execution_log,
)

logger = logging.getLogger(__name__)

INVALID_TARGET_DATE_MESSAGE = "Invalid target_date. Use ISO format YYYY-MM-DD."
ALREADY_ISSUED_MESSAGE = "Invoice already issued for this period"
BUDGET_EXHAUSTED_MESSAGE = "Run time budget exhausted before this contract was processed"


class InvalidTargetDate(ValueError):
    """The supplied target_date is not a calendar date."""


# ─── Date helpers ─────────────────────────────────────────────────────

def parse_target_date(raw: str) -> datetime:
    """Parse ``YYYY-MM-DD`` or an ISO-8601 timestamp into an aware UTC datetime."""
    text = (raw or "").strip()
    try:
        if len(text) == 10:
            d = date.fromisoformat(text)
            return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise InvalidTargetDate(INVALID_TARGET_DATE_MESSAGE) from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Inclusive first and last instant of the UTC calendar month holding ``moment``."""
    last_day = calendar.monthrange(moment.year, moment.month)[1]
    start = datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)
    end = datetime(moment.year, moment.month, last_day, 23, 59, 59, 999999, tzinfo=timezone.utc)
    return start, end


def billing_period(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


# ─── Selection ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Selection:
    """Which contracts a run looks at, and for which date."""

    processing_date: datetime
    target_date: Optional[str] = None
    charge_day: Optional[int] = None
    contract_ids: Optional[tuple[str, ...]] = None
    require_auto_issue: bool = True
    source: Optional[str] = None


def resolve_selection(req: ProcessRecurringRequest, now: Optional[datetime] = None) -> Selection:
    """Turn a trigger into filters.

    - explicit ``contract_ids``: exactly those contracts, any charge day
    - ``target_date``: contracts charged on that day of month
    - ``force`` / ``manual`` without a date: every due contract
    - otherwise (scheduled): contracts charged today
    """
    if req.target_date is not None:
        processing_date = parse_target_date(req.target_date)
    else:
        processing_date = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)

    ids = tuple(req.contract_ids) if req.contract_ids else None

    if ids:
        charge_day = None
    elif req.target_date is not None:
        charge_day = processing_date.day
    elif req.is_force:
        charge_day = None
    else:
        charge_day = processing_date.day

    return Selection(
        processing_date=processing_date,
        target_date=req.target_date,
        charge_day=charge_day,
        contract_ids=ids,
        require_auto_issue=True,
        source=req.source,
    )


# ─── Aggregation ──────────────────────────────────────────────────────

@dataclass
class TenantBucket:
    """A tenant's share of one run."""

    tenant_id: str
    results: list[ContractResult] = field(default_factory=list)
    success_count: int = 0
    error_count: int = 0

    def add(self, result: ContractResult) -> None:
        self.results.append(result)
        if result.status == ContractOutcome.SUCCESS.value:
            self.success_count += 1
        elif result.status == ContractOutcome.ERROR.value:
            self.error_count += 1

    @property
    def failed(self) -> list[ContractResult]:
        return [r for r in self.results if r.status == ContractOutcome.ERROR.value]


def group_by_tenant(
    contracts: list[ContractCandidate],
    results: list[ContractResult],
) -> dict[str, TenantBucket]:
    """Bucket results per tenant, keeping contract order inside each bucket."""
    buckets: dict[str, TenantBucket] = {}
    for contract, result in zip(contracts, results):
        bucket = buckets.setdefault(contract.tenant_id, TenantBucket(contract.tenant_id))
        bucket.add(result)
    return buckets


def summarize(results: list[ContractResult]) -> RunSummary:
    return RunSummary(
        total=len(results),
        success=sum(1 for r in results if r.status == ContractOutcome.SUCCESS.value),
        errors=sum(1 for r in results if r.status == ContractOutcome.ERROR.value),
        skipped=sum(1 for r in results if r.status == ContractOutcome.SKIPPED.value),
    )


@dataclass
class RunReport:
    selection: Selection
    results: list[ContractResult] = field(default_factory=list)
    buckets: dict[str, TenantBucket] = field(default_factory=dict)
    summary: RunSummary = field(default_factory=RunSummary)
    alerted_tenants: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.summary.errors == 0

    def to_response(self) -> ProcessRecurringResponse:
        target = self.selection.processing_date.isoformat()
        if not self.results:
            return ProcessRecurringResponse(
                success=True,
                processed=0,
                message="No contracts to process",
                target_date=target,
            )
        return ProcessRecurringResponse(
            success=self.success,
            processed=len(self.results),
            details=[
                ResultDetail(client=r.client_name, status=r.status, message=r.error_msg)
                for r in self.results
            ],
            message=f"Processed {self.summary.total} contracts",
            target_date=target,
            summary=self.summary,
            results=self.results,
        )


# ─── Engine ───────────────────────────────────────────────────────────

def _db_error_message(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


class RecurrenceEngine:
    """Creates the month's draft invoices for due recurring contracts."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: Optional[AlertDispatcher] = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher or AlertDispatcher(session_factory)

    async def run(
        self,
        req: Optional[ProcessRecurringRequest] = None,
        now: Optional[datetime] = None,
    ) -> RunReport:
        req = req or ProcessRecurringRequest()
        selection = resolve_selection(req, now)
        require_configured()

        logger.info(
            "🔁 Processing recurring invoices for day %d (target_date: %s, source: %s)",
            selection.processing_date.day,
            selection.target_date or "today",
            selection.source or "unknown",
        )

        async with self._session_factory() as session:
            contracts = await ContractRepository(session).list_active_contracts(
                charge_day=selection.charge_day,
                ids=selection.contract_ids,
                require_auto_issue=selection.require_auto_issue,
            )

        report = RunReport(selection=selection)
        if not contracts:
            logger.info("No contracts to process for this date")
            return report

        logger.info("Found %d contracts to process", len(contracts))

        report.results = await self._process_all(contracts, selection)
        report.buckets = group_by_tenant(contracts, report.results)
        report.summary = summarize(report.results)

        log_ids = await self._write_execution_logs(report.buckets, selection.processing_date.date())
        report.alerted_tenants = await self._dispatch_alerts(report, log_ids)

        logger.info("Processing complete: %s", report.summary.model_dump())
        return report

    async def _process_all(
        self,
        contracts: list[ContractCandidate],
        selection: Selection,
    ) -> list[ContractResult]:
        bounds = month_bounds(selection.processing_date)
        semaphore = asyncio.Semaphore(max(1, int(settings.recurrence_max_concurrency)))
        deadline = time.monotonic() + settings.recurrence_run_timeout_secs

        async def _guarded(contract: ContractCandidate) -> ContractResult:
            async with semaphore:
                if time.monotonic() > deadline:
                    logger.warning("Run budget exhausted — contract %s left for the next run", contract.id)
                    return self._result(contract, selection, ContractOutcome.ERROR, BUDGET_EXHAUSTED_MESSAGE)
                return await self._process_contract(contract, selection, bounds)

        # gather keeps input order, so aggregation stays deterministic
        return list(await asyncio.gather(*(_guarded(c) for c in contracts)))

    async def _process_contract(
        self,
        contract: ContractCandidate,
        selection: Selection,
        bounds: tuple[datetime, datetime],
    ) -> ContractResult:
        period_start, period_end = bounds
        try:
            async with self._session_factory() as session:
                ledger = InvoiceLedger(session)

                existing = await ledger.find_invoice_for_contract_in_period(
                    contract.id, period_start, period_end,
                )
                if existing:
                    logger.info("Invoice already exists for contract %s in this month", contract.id)
                    return self._result(contract, selection, ContractOutcome.SKIPPED, ALREADY_ISSUED_MESSAGE)

                try:
                    invoice = await ledger.insert_draft_invoice(
                        contract,
                        issued_at=selection.processing_date,
                        billing_period=billing_period(selection.processing_date),
                    )
                except IntegrityError as e:
                    # Lost a race against an overlapping run for the same period
                    if await ledger.find_invoice_for_contract_in_period(
                        contract.id, period_start, period_end,
                    ):
                        logger.info("Contract %s was invoiced by a concurrent run — skipping", contract.id)
                        return self._result(contract, selection, ContractOutcome.SKIPPED, ALREADY_ISSUED_MESSAGE)
                    logger.error("Error creating invoice for contract %s: %s", contract.id, e)
                    return self._result(contract, selection, ContractOutcome.ERROR, _db_error_message(e))
                except SQLAlchemyError as e:
                    logger.error("Error creating invoice for contract %s: %s", contract.id, e)
                    return self._result(contract, selection, ContractOutcome.ERROR, _db_error_message(e))

                await AuditLogSink(session).record_auto_generated(invoice.id, contract)

            logger.info("✅ Created invoice %s for contract %s", invoice.id, contract.id)
            return self._result(contract, selection, ContractOutcome.SUCCESS)

        except Exception as e:
            logger.error("Error processing contract %s: %s", contract.id, e)
            return self._result(contract, selection, ContractOutcome.ERROR, str(e) or type(e).__name__)

    def _result(
        self,
        contract: ContractCandidate,
        selection: Selection,
        status: ContractOutcome,
        error_msg: Optional[str] = None,
    ) -> ContractResult:
        amount = float(contract.amount or 0)
        return ContractResult(
            contract_id=contract.id,
            client_name=contract.client_name,
            amount=amount,
            status=status,
            is_vip=bool(contract.is_vip) or amount >= settings.vip_amount_threshold,
            error_msg=error_msg,
            target_date=selection.processing_date.date().isoformat(),
        )

    async def _write_execution_logs(
        self,
        buckets: dict[str, TenantBucket],
        execution_date: date,
    ) -> dict[str, str]:
        entries = [
            build_execution_log(
                tenant_id=bucket.tenant_id,
                execution_date=execution_date,
                results=[r.model_dump(mode="json") for r in bucket.results],
                success_count=bucket.success_count,
                error_count=bucket.error_count,
            )
            for bucket in buckets.values()
        ]
        try:
            async with self._session_factory() as session:
                log_ids = await ExecutionLogSink(session).write_entries(entries)
        except Exception as e:
            logger.error("Unexpected error while writing automation logs: %s", e)
            return {}
        logger.info("Wrote %d automation log entries", len(log_ids))
        return log_ids

    async def _dispatch_alerts(self, report: RunReport, log_ids: dict[str, str]) -> list[str]:
        """Alert each tenant with failures once. Returns the tenants dispatched to."""
        summary = report.summary.model_dump()
        dispatched: list[str] = []
        for bucket in report.buckets.values():
            if bucket.error_count == 0:
                continue
            dispatched.append(bucket.tenant_id)
            try:
                await self._dispatcher.dispatch(
                    bucket.tenant_id,
                    [r.model_dump(mode="json") for r in bucket.failed],
                    summary,
                    report.selection.processing_date,
                    log_id=log_ids.get(bucket.tenant_id),
                )
            except Exception as e:
                logger.error("Failed to process alerts for tenant %s: %s", bucket.tenant_id, e)
        return dispatched
