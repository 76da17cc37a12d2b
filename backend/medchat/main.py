import asyncio
import sys
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from medchat.config import Settings, get_settings
from medchat.core.llm import LLMGateway
from medchat.core.rag import RagOrchestrator
from medchat.core.retrieval import VectorRetriever
from medchat.core.tasks import TaskRunner
from medchat.core.usage import UsageTracker
from medchat.db import postgres
from medchat.db.chunks import PostgresChunkStore
from medchat.db.usage import PostgresUsageStore
from medchat.api import chat, forward, system, usage


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def wire_services(app: FastAPI, settings: Settings, client: httpx.AsyncClient) -> None:
    """Build the pipeline objects once and hang them off app.state."""
    tasks = TaskRunner()
    tracker = UsageTracker(PostgresUsageStore())
    gateway = LLMGateway(
        client,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.completion_model,
        embedding_model=settings.embedding_model,
        usage=tracker,
        tasks=tasks,
    )
    retriever = VectorRetriever(
        PostgresChunkStore(),
        tasks=tasks,
        similarity_threshold=settings.rag_similarity_threshold,
    )

    app.state.tasks = tasks
    app.state.usage_tracker = tracker
    app.state.gateway = gateway
    app.state.orchestrator = RagOrchestrator(gateway, retriever, top_k=settings.rag_top_k)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting MedChat backend...")
    logger.info(
        f"Connecting to PostgreSQL at {settings.postgres_host}:{settings.postgres_port}"
    )

    for attempt in range(10):
        try:
            await postgres.create_pool()
            break
        except Exception as e:
            if attempt < 9:
                logger.warning(
                    f"DB connection attempt {attempt + 1} failed: {e}. Retrying in 2s..."
                )
                await asyncio.sleep(2)
            else:
                logger.error("Failed to connect to database after 10 attempts")
                raise

    await postgres.ensure_schema()

    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set, chat requests will fail")

    client = httpx.AsyncClient(timeout=settings.llm_timeout_seconds)
    wire_services(app, settings, client)
    logger.info("MedChat backend ready")
    yield

    await app.state.tasks.drain()
    await client.aclose()
    await postgres.close_pool()
    logger.info("MedChat backend shut down")


app = FastAPI(
    title="MedChat API",
    version="0.1.0",
    description="Retrieval-augmented medical chat with plain-language answers",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)
app.include_router(usage.router)
app.include_router(forward.router)
app.include_router(system.router)


@app.get("/")
async def root():
    return {"message": "MedChat API", "version": "0.1.0", "docs": "/docs"}
