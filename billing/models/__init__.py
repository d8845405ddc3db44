from billing.models.contract import Client, RecurringContract, Invoice  # noqa: F401
from billing.models.audit_log import AuditLog  # noqa: F401
from billing.models.automation import AutomationLog, AlertSettings  # noqa: F401
