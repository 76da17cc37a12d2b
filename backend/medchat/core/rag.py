"""
RAG pipeline: optimize query → retrieve chunks → technical answer → ESL simplification.

Stages run strictly one after another; each needs the previous one's output.
Gateway errors from the three generation stages propagate unchanged and
abort the request. Retrieval is the one soft stage: any failure there
yields an empty context and the answer is generated without it.
"""

import asyncio
import random
import string
import time
from collections.abc import AsyncIterator

from loguru import logger

from medchat.core.llm import LLMGateway
from medchat.core.prompts import (
    NO_CONTEXT_TEXT,
    QUERY_OPTIMIZER_PROMPT,
    SIMPLIFICATION_PROMPT,
    TECHNICAL_RESPONSE_PROMPT,
    render_template,
)
from medchat.core.retrieval import VectorRetriever
from medchat.core.text import generate_excerpt
from medchat.models.chat import (
    ChatContext,
    ChatMessage,
    Citation,
    CompletionOptions,
    RagChatRequest,
    RagChatResponse,
    StreamEvent,
    StreamingCallbacks,
)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_conversation_id() -> str:
    """Session-scoped id: millisecond timestamp plus a random suffix. Not globally unique."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"conv_{int(time.time() * 1000)}_{suffix}"


def format_history(history: list[ChatMessage]) -> str:
    return "\n".join(
        f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}" for m in history
    )


def build_context_text(contexts: list[ChatContext]) -> str:
    if not contexts:
        return NO_CONTEXT_TEXT
    return "\n\n".join(ctx.content for ctx in contexts)


class RagOrchestrator:
    def __init__(self, gateway: LLMGateway, retriever: VectorRetriever, top_k: int = 3):
        self.gateway = gateway
        self.retriever = retriever
        self.top_k = top_k

    async def get_chat_response(
        self,
        request: RagChatRequest,
        callbacks: StreamingCallbacks | None = None,
    ) -> RagChatResponse:
        start = time.monotonic()
        history = list(request.conversation_history)

        optimized_query = await self.optimize_query(request.message)
        contexts = await self.retrieve_context(optimized_query)
        technical_response = await self.generate_technical_response(
            request.message, optimized_query, history, contexts
        )

        citations = self.retriever.dedupe_citations(contexts)
        response_text = await self.simplify_response(
            technical_response,
            request.message,
            optimized_query,
            history,
            callbacks=self._wrap_callbacks(callbacks, citations, contexts) if callbacks else None,
        )

        logger.info(
            "[rag] answered in {}ms with {} chunks, {} citations",
            int((time.monotonic() - start) * 1000),
            len(contexts),
            len(citations),
        )
        return RagChatResponse(
            response=response_text,
            context_used=contexts,
            optimized_query=optimized_query,
            technical_response=technical_response,
            citations=citations,
            conversation_id=request.conversation_id or generate_conversation_id(),
        )

    @staticmethod
    def _wrap_callbacks(
        callbacks: StreamingCallbacks,
        citations: list[Citation],
        contexts: list[ChatContext],
    ) -> StreamingCallbacks:
        def on_complete(full_text: str) -> None:
            if callbacks.on_complete:
                callbacks.on_complete(full_text, {"citations": citations, "context_used": contexts})

        return StreamingCallbacks(
            on_start=callbacks.on_start,
            on_token=callbacks.on_token,
            on_complete=on_complete,
            on_error=callbacks.on_error,
        )

    async def optimize_query(self, message: str) -> str:
        result = await self.gateway.complete(
            [ChatMessage(role="user", content=message)],
            CompletionOptions(
                instructions=QUERY_OPTIMIZER_PROMPT,
                call_type="query_optimization",
                temperature=0.3,
                max_tokens=500,
            ),
        )
        optimized = result.text.strip()
        logger.debug("[rag] optimized query: {!r}", generate_excerpt(optimized))
        return optimized

    async def retrieve_context(self, optimized_query: str) -> list[ChatContext]:
        try:
            embedding = await self.gateway.embed(optimized_query, "rag_query_embedding")
            return await self.retriever.match_chunks(embedding, self.top_k)
        except Exception as e:
            logger.warning("[rag] retrieval failed, answering without context: {}", e)
            return []

    async def generate_technical_response(
        self,
        original_message: str,
        optimized_query: str,
        history: list[ChatMessage],
        contexts: list[ChatContext],
    ) -> str:
        instructions = render_template(
            TECHNICAL_RESPONSE_PROMPT,
            context=build_context_text(contexts),
            original_message=original_message,
            optimized_query=optimized_query,
        )
        result = await self.gateway.complete(
            [*history, ChatMessage(role="user", content=original_message)],
            CompletionOptions(instructions=instructions, call_type="technical_response"),
        )
        return result.text

    async def simplify_response(
        self,
        technical_response: str,
        original_message: str,
        optimized_query: str,
        history: list[ChatMessage],
        callbacks: StreamingCallbacks | None = None,
    ) -> str:
        instructions = render_template(
            SIMPLIFICATION_PROMPT,
            conversation_history=format_history(history),
            original_message=original_message,
            optimized_query=optimized_query,
            technical_response=technical_response,
        )
        messages = [*history, ChatMessage(role="user", content=original_message)]
        options = CompletionOptions(
            instructions=instructions,
            call_type="response_simplification",
            temperature=0.3,
            max_tokens=600,
            stream=callbacks is not None,
        )
        if callbacks is not None:
            result = await self.gateway.complete_streaming(messages, options, callbacks)
        else:
            result = await self.gateway.complete(messages, options)
        return result.text

    async def stream_chat_response(self, request: RagChatRequest) -> AsyncIterator[StreamEvent]:
        """
        Run the pipeline and yield its progress as events: "start", "token"
        for every simplified-answer fragment, then a single "complete"
        (payload: RagChatResponse) or "error" (payload: the exception).
        """
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        callbacks = StreamingCallbacks(
            on_start=lambda: queue.put_nowait(StreamEvent("start")),
            on_token=lambda token: queue.put_nowait(StreamEvent("token", token)),
        )
        task = asyncio.ensure_future(self.get_chat_response(request, callbacks))
        task.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event

            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                yield StreamEvent("error", error)
            else:
                yield StreamEvent("complete", task.result())
        finally:
            if not task.done():
                task.cancel()
