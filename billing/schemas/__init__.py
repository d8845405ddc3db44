"""
Qontax Recurrence — Pydantic request/response schemas for engine runs.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

SOURCE_MAX_LENGTH = 100


class ContractOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class ProcessRecurringRequest(BaseModel):
    """Body of POST /recurring/process. Every field is optional."""

    source: str | None = Field(None, max_length=SOURCE_MAX_LENGTH)
    manual: bool = False
    force: bool = False
    target_date: str | None = None
    contract_ids: list[str] | None = None

    @property
    def is_force(self) -> bool:
        return self.manual or self.force

    @classmethod
    def from_body(cls, body: Any) -> "ProcessRecurringRequest":
        """Lenient parse of a raw JSON body.

        Fields of the wrong type are ignored rather than rejected, an
        overlong ``source`` is truncated, and the flags only count when
        they are literally ``true``.
        """
        if not isinstance(body, dict):
            return cls()

        source = body.get("source")
        target_date = body.get("target_date")
        contract_ids = body.get("contract_ids")
        if isinstance(contract_ids, list):
            contract_ids = [str(c) for c in contract_ids if c] or None
        else:
            contract_ids = None

        return cls(
            source=source[:SOURCE_MAX_LENGTH] if isinstance(source, str) else None,
            manual=body.get("manual") is True,
            force=body.get("force") is True,
            target_date=target_date if isinstance(target_date, str) else None,
            contract_ids=contract_ids,
        )


class ContractResult(BaseModel):
    """Outcome of evaluating one contract in one run."""

    contract_id: str
    client_name: str | None = None
    amount: float = 0
    status: ContractOutcome
    is_vip: bool = False
    error_msg: str | None = None
    target_date: str  # YYYY-MM-DD

    model_config = {"use_enum_values": True}


class RunSummary(BaseModel):
    total: int = 0
    success: int = 0
    errors: int = 0
    skipped: int = 0


class ResultDetail(BaseModel):
    client: str | None = None
    status: str
    message: str | None = None


class ProcessRecurringResponse(BaseModel):
    success: bool
    processed: int = 0
    details: list[ResultDetail] = []
    message: str = ""
    target_date: str  # ISO timestamp of the processing date
    summary: RunSummary = Field(default_factory=RunSummary)
    results: list[ContractResult] = []


class ProcessFailureResponse(BaseModel):
    success: bool = False
    error: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "1.0.0"
    timestamp: str | None = None
    database: str = "connected"
