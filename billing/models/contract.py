"""
Qontax Recurrence — Client, Recurring Contract & Invoice models.
"""

import uuid

from sqlalchemy import (
    Boolean, Column, String, Text, DateTime, Numeric,
    ForeignKey, Integer, UniqueConstraint, CheckConstraint, func,
)
from sqlalchemy.orm import relationship

from billing.database import Base


class Client(Base):
    """A tenant's customer. Only the display data the engine needs lives here."""
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)

    legal_name = Column(String(300), nullable=False)  # razão social
    tax_id = Column(String(20), default="")            # CNPJ / CPF

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    contracts = relationship("RecurringContract", back_populates="client")

    def __repr__(self):
        return f"<Client {self.legal_name}>"


class RecurringContract(Base):
    """A standing agreement to bill one client a fixed amount on a fixed day each month."""
    __tablename__ = "recurring_contracts"
    __table_args__ = (
        CheckConstraint("charge_day >= 1 AND charge_day <= 31", name="ck_recurring_contracts_charge_day"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False)

    contract_name = Column(String(300), nullable=False)
    service_description = Column(Text, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    charge_day = Column(Integer, nullable=False)  # 1–31, calendar day of month

    auto_issue = Column(Boolean, nullable=False, default=True)  # False = needs manual approval
    is_vip = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="active")  # active, paused

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    client = relationship("Client", back_populates="contracts", lazy="joined")
    invoices = relationship("Invoice", back_populates="recurring_contract")

    def __repr__(self):
        return f"<RecurringContract {self.contract_name} – day {self.charge_day}>"


class Invoice(Base):
    """An invoice record. Rendering and emission happen elsewhere."""
    __tablename__ = "invoices"
    __table_args__ = (
        # At most one invoice per contract per calendar month.
        UniqueConstraint("recurring_contract_id", "billing_period", name="uq_invoices_contract_period"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=True)

    # Null means the invoice was created by hand
    recurring_contract_id = Column(String(36), ForeignKey("recurring_contracts.id"), nullable=True, index=True)
    billing_period = Column(String(7), nullable=True)  # "YYYY-MM", set for contract invoices

    amount = Column(Numeric(12, 2), nullable=False)
    service_description = Column(Text, nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)  # emission date

    status = Column(String(20), nullable=False, default="draft")  # draft, processing, issued, cancelled
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    recurring_contract = relationship("RecurringContract", back_populates="invoices")

    def __repr__(self):
        return f"<Invoice {self.id[:8]} – {self.status}>"
