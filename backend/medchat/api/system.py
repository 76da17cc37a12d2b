import asyncio

import httpx
from fastapi import APIRouter, Depends
from loguru import logger

from medchat.api.deps import get_gateway
from medchat.core.llm import LLMGateway
from medchat.db import postgres
from medchat.models.system import HealthResponse

router = APIRouter(prefix="/api/system", tags=["system"])


async def check_postgres() -> bool:
    try:
        row = await postgres.fetch_one("SELECT 1")
        return row is not None
    except Exception as e:
        logger.warning("Postgres check failed: {}", e)
        return False


async def check_llm(gateway: LLMGateway) -> bool:
    if not gateway.api_key:
        return False
    try:
        resp = await gateway.client.get(
            f"{gateway.base_url}/models",
            headers={"Authorization": f"Bearer {gateway.api_key}"},
            timeout=2.0,
        )
        return resp.status_code == 200
    except httpx.HTTPError as e:
        logger.warning("LLM provider check failed: {}", e)
        return False


@router.get("/health", response_model=HealthResponse)
async def health(gateway: LLMGateway = Depends(get_gateway)):
    postgres_ok, llm_ok = await asyncio.gather(
        check_postgres(),
        check_llm(gateway),
    )

    return {
        "status": "ok" if postgres_ok and llm_ok else "error",
        "dependencies": {
            "postgres": "connected" if postgres_ok else "error",
            "llm": "connected" if llm_ok else "error",
        },
    }
