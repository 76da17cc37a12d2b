from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel


@dataclass(frozen=True)
class UsageRecord:
    """One token count for one direction of one provider call."""

    call_type: str
    token_type: str
    token_count: int
    model: str
    message: str | None = None
    created_at: datetime | None = None


class ModelUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    other_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0


class UsageRecordOut(BaseModel):
    call_type: str
    token_type: str
    token_count: int
    model: str
    message: str | None = None
    created_at: datetime | None = None


class UsageStats(BaseModel):
    summary: dict[str, ModelUsage]
    grand_total_cost: float
    details: list[UsageRecordOut]
