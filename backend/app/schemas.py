from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class LedgerInstructionIn(BaseModel):
    program_id: str = Field(alias="programId")
    accounts: list[str] = Field(default_factory=list)
    data: str = Field(default="", description="Base64 encoded instruction data")

    model_config = {"populate_by_name": True}


class LedgerNotificationIn(BaseModel):
    signature: str = Field(min_length=1)
    slot: int = Field(ge=0)
    timestamp: float | str | None = Field(default=None, description="Unix seconds or ISO-8601")
    instructions: list[LedgerInstructionIn] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "slot": self.slot,
            "timestamp": self.timestamp,
            "instructions": [
                {"programId": ix.program_id, "accounts": ix.accounts, "data": ix.data}
                for ix in self.instructions
            ],
        }


class WebhookAck(BaseModel):
    received: int = 0
    decoded: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0


class FinalizationErrorOut(BaseModel):
    error_id: int
    market_id: str
    market_on_chain_address: str
    error_message: str
    resolution_proposed_at: datetime | None = None
    attempt_count: int
    created_at: datetime
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    resolved_by: str | None = None

    model_config = {"from_attributes": True}


class FinalizationErrorList(BaseModel):
    items: list[FinalizationErrorOut]
    total: int
    limit: int
    offset: int


class JobRunResponse(BaseModel):
    job: str
    summary: dict[str, Any]

    @field_validator("summary", mode="before")
    @classmethod
    def _summary_to_dict(cls, value: Any) -> dict[str, Any]:
        if hasattr(value, "to_dict"):
            return value.to_dict()
        return value
