"""Request-scoped access to the services wired up in main.lifespan."""

from fastapi import Request

from medchat.core.llm import LLMGateway
from medchat.core.rag import RagOrchestrator
from medchat.core.usage import UsageTracker


def get_orchestrator(request: Request) -> RagOrchestrator:
    return request.app.state.orchestrator


def get_usage_tracker(request: Request) -> UsageTracker:
    return request.app.state.usage_tracker


def get_gateway(request: Request) -> LLMGateway:
    return request.app.state.gateway
