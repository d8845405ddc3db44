"""
Qontax Recurrence — Audit Log model.
One row per invoice the recurrence engine created, tying it to its contract.
"""

import uuid

from sqlalchemy import Column, String, Text, DateTime, ForeignKey, JSON, func

from billing.database import Base


class AuditLog(Base):
    """Immutable per-invoice audit trail."""
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)

    event_type = Column(String(50), nullable=False)   # e.g. "auto_generated"
    message = Column(Text, default="")                 # Human-readable summary

    # contract_id, contract_name, charge_day, generated_at
    payload = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<AuditLog {self.invoice_id} — {self.event_type}>"
