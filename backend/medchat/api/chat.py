import json

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from loguru import logger

from medchat.api.deps import get_orchestrator
from medchat.core.errors import InvalidInputError, MedChatError, UpstreamError
from medchat.core.rag import RagOrchestrator
from medchat.core.tokens import MAX_HISTORY_TOKENS, MAX_MESSAGE_TOKENS, count_tokens, count_tokens_text
from medchat.models.chat import RagChatRequest, RagChatResponse

router = APIRouter(prefix="/api/chat", tags=["chat"])

RETRY_MESSAGE = "Sorry, something went wrong while answering. Please try again."


def _check_size(body: RagChatRequest) -> None:
    """Reject oversized input before any model call is made."""
    message_tokens = count_tokens_text(body.message)
    if message_tokens > MAX_MESSAGE_TOKENS:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "message_too_long",
                "tokens": message_tokens,
                "max": MAX_MESSAGE_TOKENS,
                "message": "Message too long — please ask a shorter question",
            },
        )

    history_tokens = count_tokens(body.conversation_history)
    if history_tokens > MAX_HISTORY_TOKENS:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "history_too_long",
                "tokens": history_tokens,
                "max": MAX_HISTORY_TOKENS,
                "message": "Conversation too long — please start a new conversation",
            },
        )


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@router.post("", response_model=RagChatResponse)
async def chat(body: RagChatRequest, orchestrator: RagOrchestrator = Depends(get_orchestrator)):
    _check_size(body)
    try:
        return await orchestrator.get_chat_response(body)
    except UpstreamError as e:
        logger.error("[chat] upstream failure: {}", e)
        raise HTTPException(status_code=502, detail=RETRY_MESSAGE)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MedChatError as e:
        logger.exception("[chat] pipeline error: {}", e)
        raise HTTPException(status_code=500, detail=RETRY_MESSAGE)


@router.post("/stream")
async def chat_stream(body: RagChatRequest, orchestrator: RagOrchestrator = Depends(get_orchestrator)):
    # Size check before streaming starts; status can't change mid-stream
    _check_size(body)

    async def stream_response():
        async for event in orchestrator.stream_chat_response(body):
            if event.kind == "start":
                yield _sse({"type": "start"})
            elif event.kind == "token":
                yield _sse({"type": "token", "content": event.payload})
            elif event.kind == "complete":
                yield _sse({"type": "done", **event.payload.model_dump()})
            elif event.kind == "error":
                logger.error("[chat] streaming pipeline failed: {}", event.payload)
                yield _sse({"type": "error", "content": RETRY_MESSAGE})

    return StreamingResponse(
        stream_response(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )
