"""
Token usage accounting: append-only records, cost computed on read.

Records go to a UsageStore (Postgres in production). Stats are never
stored; every get_usage_stats() call re-aggregates the fetched records
against MODEL_COSTS.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Protocol, Sequence

from loguru import logger

from medchat.core.text import truncate
from medchat.models.usage import ModelUsage, UsageRecord, UsageRecordOut, UsageStats

# USD per 10,000 tokens
MODEL_COSTS: dict[str, dict[str, float]] = {
    "gpt-4o": {"input": 0.025, "output": 0.10},
    "gpt-4o-mini": {"input": 0.0015, "output": 0.006},
    "text-embedding-3-small": {"input": 0.0002, "output": 0.0002},
}

TIME_RANGES = ("today", "week", "month")
AUDIT_MESSAGE_LIMIT = 1000


class UsageStore(Protocol):
    async def insert_record(self, record: UsageRecord) -> None: ...

    async def fetch_records(self, since: datetime | None = None) -> Sequence[UsageRecord]: ...


def range_start(time_range: str | None, now: datetime | None = None) -> datetime | None:
    """Translate a named range into its inclusive lower bound. None means all time."""
    if time_range is None:
        return None
    now = now or datetime.now(timezone.utc)
    if time_range == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if time_range == "week":
        return now - timedelta(days=7)
    if time_range == "month":
        # calendar month back, clamped to the target month's length
        year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
        for day in range(now.day, 0, -1):
            try:
                return now.replace(year=year, month=month, day=day)
            except ValueError:
                continue
    raise ValueError(f"Unknown time range {time_range!r}, expected one of {TIME_RANGES}")


def aggregate_usage(
    records: Iterable[UsageRecord],
    costs: dict[str, dict[str, float]] = MODEL_COSTS,
) -> tuple[dict[str, ModelUsage], float]:
    """
    Sum tokens and cost per model.

    Records for models missing from `costs` are skipped. Token types other
    than input/output land in other_tokens and are billed at the input rate.
    Costs are rounded to 4 places only after accumulation, so the rounded
    per-model costs may not add up exactly to the rounded grand total.
    """
    summary: dict[str, ModelUsage] = {}
    grand_total = 0.0

    for record in records:
        rates = costs.get(record.model)
        if not rates:
            continue

        usage = summary.setdefault(record.model, ModelUsage())
        blocks = record.token_count / 10000

        if record.token_type == "input":
            usage.input_tokens += record.token_count
            cost = blocks * rates["input"]
        elif record.token_type == "output":
            usage.output_tokens += record.token_count
            cost = blocks * rates["output"]
        else:
            usage.other_tokens += record.token_count
            cost = blocks * rates["input"]

        usage.total_tokens += record.token_count
        usage.cost += cost
        grand_total += cost

    for usage in summary.values():
        usage.cost = round(usage.cost, 4)

    return summary, round(grand_total, 4)


class UsageTracker:
    def __init__(self, store: UsageStore, costs: dict[str, dict[str, float]] | None = None):
        self.store = store
        self.costs = costs if costs is not None else MODEL_COSTS

    async def record(self, entry: UsageRecord) -> bool:
        """Append one record. Never raises; returns False when the record was dropped."""
        if entry.token_count < 0:
            logger.warning(
                "[usage] dropping {} record with negative count {}", entry.call_type, entry.token_count
            )
            return False

        if entry.message and len(entry.message) > AUDIT_MESSAGE_LIMIT:
            entry = UsageRecord(
                call_type=entry.call_type,
                token_type=entry.token_type,
                token_count=entry.token_count,
                model=entry.model,
                message=truncate(entry.message, AUDIT_MESSAGE_LIMIT),
                created_at=entry.created_at,
            )

        try:
            await self.store.insert_record(entry)
        except Exception as e:
            logger.warning("[usage] failed to store {} record: {}", entry.call_type, e)
            return False

        logger.debug(
            "[usage] {} {} {} tokens ({})",
            entry.call_type,
            entry.token_type,
            entry.token_count,
            entry.model,
        )
        return True

    async def get_usage_stats(self, time_range: str | None = None) -> UsageStats:
        since = range_start(time_range)
        records = list(await self.store.fetch_records(since))
        summary, grand_total = aggregate_usage(records, self.costs)
        return UsageStats(
            summary=summary,
            grand_total_cost=grand_total,
            details=[
                UsageRecordOut(
                    call_type=r.call_type,
                    token_type=r.token_type,
                    token_count=r.token_count,
                    model=r.model,
                    message=r.message,
                    created_at=r.created_at,
                )
                for r in records
            ],
        )
