"""
Shared test fixtures — async DB, seed helpers, mock settings, FastAPI test client.
"""

import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from billing.database import Base, enable_sqlite_foreign_keys, get_db, get_session_factory
from billing.main import app
from billing.models import AlertSettings, AutomationLog, Client, Invoice, RecurringContract


TENANT_A = "tenant-aaaa"
TENANT_B = "tenant-bbbb"

# Wednesday 15 January, so charge day 15 is due
NOW = datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc)


# ── Test Database (SQLite file per test) ────────────────
# A file database, because the engine opens one session per contract and
# every session must see the same data.

@pytest_asyncio.fixture()
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def client(session_factory):
    """FastAPI test client with test DB injected."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Seed helpers ────────────────────────────────────────

class Seeder:
    """Writes rows straight into the test database."""

    def __init__(self, session):
        self.session = session

    async def client(self, tenant_id: str = TENANT_A, legal_name: str = "Acme Serviços Ltda") -> Client:
        row = Client(id=str(uuid.uuid4()), tenant_id=tenant_id, legal_name=legal_name, tax_id="12345678000199")
        self.session.add(row)
        await self.session.commit()
        return row

    async def contract(
        self,
        client: Client,
        charge_day: int = 15,
        amount: str = "1500.00",
        auto_issue: bool = True,
        status: str = "active",
        is_vip: bool = False,
        name: str | None = None,
    ) -> RecurringContract:
        row = RecurringContract(
            id=str(uuid.uuid4()),
            tenant_id=client.tenant_id,
            client_id=client.id,
            contract_name=name or f"Monthly retainer day {charge_day}",
            service_description="Consultoria contábil mensal",
            amount=Decimal(amount),
            charge_day=charge_day,
            auto_issue=auto_issue,
            is_vip=is_vip,
            status=status,
        )
        self.session.add(row)
        await self.session.commit()
        return row

    async def invoice(
        self,
        contract: RecurringContract | None = None,
        client: Client | None = None,
        issued_at: datetime = NOW,
        billing_period: str | None = None,
        status: str = "issued",
    ) -> Invoice:
        owner = contract or client
        row = Invoice(
            id=str(uuid.uuid4()),
            tenant_id=owner.tenant_id,
            client_id=contract.client_id if contract else client.id,
            recurring_contract_id=contract.id if contract else None,
            billing_period=billing_period,
            amount=Decimal("1500.00"),
            service_description="Consultoria contábil mensal",
            issued_at=issued_at,
            status=status,
        )
        self.session.add(row)
        await self.session.commit()
        return row

    async def alert_settings(
        self,
        tenant_id: str = TENANT_A,
        email: str | None = "finance@acme.com.br",
        email_enabled: bool = True,
        webhook_url: str | None = None,
        webhook_enabled: bool = False,
    ) -> AlertSettings:
        row = AlertSettings(
            tenant_id=tenant_id,
            email=email,
            email_enabled=email_enabled,
            webhook_url=webhook_url,
            webhook_enabled=webhook_enabled,
        )
        self.session.add(row)
        await self.session.commit()
        return row

    async def count(self, model, *where) -> int:
        stmt = select(func.count()).select_from(model)
        for clause in where:
            stmt = stmt.where(clause)
        return (await self.session.execute(stmt)).scalar_one()

    async def automation_logs(self) -> list[AutomationLog]:
        result = await self.session.execute(
            select(AutomationLog).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())


@pytest_asyncio.fixture()
async def seed(db_session):
    return Seeder(db_session)


# ── Mock Settings ───────────────────────────────────────

@pytest.fixture(autouse=True)
def mock_settings(tmp_path):
    """Override settings for tests — patches at ALL import points."""
    mock_s = MagicMock()
    mock_s.database_url = f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    mock_s.smtp_host = "smtp.test.local"
    mock_s.smtp_port = 587
    mock_s.smtp_email = ""
    mock_s.smtp_app_password = ""
    mock_s.email_configured = False
    mock_s.alert_sender_name = "Qontax"
    mock_s.webhook_timeout_secs = 5
    mock_s.recurrence_max_concurrency = 1
    mock_s.recurrence_run_timeout_secs = 120
    mock_s.vip_amount_threshold = 10000
    mock_s.scheduler_enabled = False
    mock_s.scheduler_hour_utc = 9
    mock_s.failure_status_code = 200
    os.makedirs(tmp_path, exist_ok=True)

    with patch("billing.config.settings", mock_s), \
         patch("billing.services.recurrence_engine.settings", mock_s), \
         patch("billing.services.alerts.settings", mock_s), \
         patch("billing.services.email_service.settings", mock_s), \
         patch("billing.services.notify.settings", mock_s), \
         patch("billing.services.scheduler.settings", mock_s), \
         patch("billing.routes.recurring.settings", mock_s):
        yield mock_s


@pytest.fixture
def smtp_configured(mock_settings):
    mock_settings.smtp_email = "alerts@qontax.test"
    mock_settings.smtp_app_password = "app-password"
    mock_settings.email_configured = True
    return mock_settings
