"""
Qontax Recurrence — Execution log & alert settings models.
"""

import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, JSON, String, Text, func

from billing.database import Base


class AutomationLog(Base):
    """Outcome of one engine run for one tenant.

    Every contract of the tenant processed in that run is folded into
    ``affected_contracts``; the alert columns are filled in by the alert
    dispatcher, never by the engine itself.
    """
    __tablename__ = "automation_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)

    execution_date = Column(Date, nullable=False, index=True)
    status = Column(String(20), nullable=False)  # success, error
    invoices_created_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # [{contract_id, client_name, amount, status, is_vip, error_msg, target_date}]
    affected_contracts = Column(JSON, default=list)

    alert_sent = Column(Boolean, nullable=False, default=False)
    alert_timestamp = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<AutomationLog {self.tenant_id} {self.execution_date} — {self.status}>"


class AlertSettings(Base):
    """Where a tenant wants to hear about failed runs. At most one row per tenant."""
    __tablename__ = "alert_settings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, unique=True)

    email = Column(String(200), nullable=True)
    email_enabled = Column(Boolean, nullable=False, default=True)
    webhook_url = Column(String(1000), nullable=True)
    webhook_enabled = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<AlertSettings {self.tenant_id}>"
