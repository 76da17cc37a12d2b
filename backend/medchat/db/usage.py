from datetime import datetime

from medchat.db import postgres
from medchat.models.usage import UsageRecord


class PostgresUsageStore:
    """Append-only api_tracking table. Rows are inserted, never updated."""

    async def insert_record(self, record: UsageRecord) -> None:
        await postgres.execute(
            """INSERT INTO api_tracking (call_type, token_type, token_count, model, message)
               VALUES ($1, $2, $3, $4, $5)""",
            record.call_type,
            record.token_type,
            record.token_count,
            record.model,
            record.message,
        )

    async def fetch_records(self, since: datetime | None = None) -> list[UsageRecord]:
        if since is None:
            rows = await postgres.fetch_all(
                """SELECT call_type, token_type, token_count, model, message, created_at
                   FROM api_tracking ORDER BY created_at ASC"""
            )
        else:
            rows = await postgres.fetch_all(
                """SELECT call_type, token_type, token_count, model, message, created_at
                   FROM api_tracking WHERE created_at >= $1 ORDER BY created_at ASC""",
                since,
            )
        return [
            UsageRecord(
                call_type=r["call_type"],
                token_type=r["token_type"],
                token_count=r["token_count"],
                model=r["model"],
                message=r["message"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
