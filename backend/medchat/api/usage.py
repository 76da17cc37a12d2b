from fastapi import APIRouter, Depends, HTTPException
from loguru import logger

from medchat.api.deps import get_usage_tracker
from medchat.core.usage import TIME_RANGES, UsageTracker
from medchat.models.usage import UsageStats

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("", response_model=UsageStats)
async def usage_stats(
    time_range: str | None = None,
    tracker: UsageTracker = Depends(get_usage_tracker),
):
    if time_range is not None and time_range not in TIME_RANGES:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown time_range {time_range!r}, expected one of {', '.join(TIME_RANGES)}",
        )
    try:
        return await tracker.get_usage_stats(time_range)
    except Exception as e:
        logger.error("[usage] stats query failed: {}", e)
        raise HTTPException(status_code=503, detail="Usage statistics unavailable")
