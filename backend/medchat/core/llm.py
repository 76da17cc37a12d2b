"""
Gateway to the hosted language model: completions (plain and streamed)
and embeddings, over the OpenAI Responses and Embeddings REST endpoints.

Every successful call schedules its usage records on the TaskRunner, so
accounting happens without the caller doing anything and without the
caller waiting on it.
"""

import json

import httpx
from loguru import logger

from medchat.core.errors import InvalidInputError, UpstreamError
from medchat.core.tasks import TaskRunner
from medchat.core.text import generate_excerpt
from medchat.core.usage import UsageTracker
from medchat.models.chat import ChatMessage, CompletionOptions, CompletionResult, StreamingCallbacks
from medchat.models.usage import UsageRecord

_ROLE_PREFIX = {"user": "User: ", "assistant": "Assistant: "}


def format_messages_for_input(messages: list[ChatMessage]) -> str:
    """Flatten a conversation into the "Role: content" transcript the Responses API takes as input."""
    return "\n\n".join(
        _ROLE_PREFIX[m.role] + m.content for m in messages if m.role != "system"
    )


def extract_output_text(data: dict) -> str:
    """Pull the answer text out of a non-streaming Responses payload."""
    if isinstance(data.get("output_text"), str) and data["output_text"]:
        return data["output_text"]

    output = data.get("output") or []
    if not output:
        raise UpstreamError("No output received from the model")

    if not isinstance(output, list):
        raise UpstreamError("Unexpected output payload from the model")

    message = next(
        (item for item in output if isinstance(item, dict) and item.get("type") == "message"), None
    )
    if message is None:
        raise UpstreamError("Unexpected output type from the model")

    content = message.get("content") or []
    if not content or not isinstance(content, list):
        raise UpstreamError("No content in model response")

    text_part = next(
        (c for c in content if isinstance(c, dict) and c.get("type") == "output_text"), None
    )
    if text_part is None or not text_part.get("text"):
        raise UpstreamError("No text content found in model response")
    return text_part["text"]


async def _error_detail(resp: httpx.Response) -> str:
    body = await resp.aread()
    try:
        message = json.loads(body).get("error", {}).get("message")
    except (ValueError, AttributeError):
        message = None
    return message or resp.reason_phrase or "request failed"


class LLMGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        usage: UsageTracker | None = None,
        tasks: TaskRunner | None = None,
    ):
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.embedding_model = embedding_model
        self.usage = usage
        self.tasks = tasks or TaskRunner()

    @property
    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _build_request(self, messages: list[ChatMessage], options: CompletionOptions, stream: bool) -> dict:
        body: dict = {
            "model": self.model,
            "input": format_messages_for_input(messages),
            "temperature": options.temperature,
            "max_output_tokens": options.max_tokens,
            "stream": stream,
        }
        if options.instructions:
            body["instructions"] = options.instructions
        if options.previous_response_id:
            body["previous_response_id"] = options.previous_response_id

        logger.debug(
            "[llm] {} call: model={} stream={} temperature={} max_tokens={} input={!r}",
            options.call_type,
            self.model,
            stream,
            options.temperature,
            options.max_tokens,
            generate_excerpt(body["input"]),
        )
        return body

    def _track(self, call_type: str, token_type: str, count: int | None, model: str, message: str | None) -> None:
        if self.usage is None or count is None:
            return
        record = UsageRecord(
            call_type=call_type,
            token_type=token_type,
            token_count=count,
            model=model,
            message=message,
        )
        self.tasks.spawn(self.usage.record(record), label=f"usage:{call_type}")

    def _track_completion(self, body: dict, usage: dict | None, call_type: str, text: str) -> None:
        if not isinstance(usage, dict):
            return
        audit_input = body["input"]
        if body.get("instructions"):
            audit_input += f"\nINSTRUCTIONS:\n{body['instructions']}"
        self._track(call_type, "input", usage.get("input_tokens"), self.model, audit_input)
        self._track(call_type, "output", usage.get("output_tokens"), self.model, text)

    async def complete(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions | None = None,
    ) -> CompletionResult:
        options = options or CompletionOptions()
        if options.stream:
            return await self.complete_streaming(messages, options)

        body = self._build_request(messages, options, stream=False)
        try:
            resp = await self.client.post(f"{self.base_url}/responses", headers=self._headers, json=body)
        except httpx.HTTPError as e:
            logger.error("[llm] {} request failed: {}", options.call_type, e)
            raise UpstreamError(f"Completion request failed: {e}") from e

        if not resp.is_success:
            detail = await _error_detail(resp)
            logger.error("[llm] {} HTTP {}: {}", options.call_type, resp.status_code, detail)
            raise UpstreamError(f"HTTP {resp.status_code}: {detail}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("Completion response is not valid JSON") from e
        if not isinstance(data, dict):
            raise UpstreamError("Unexpected completion payload: expected a JSON object")

        status = data.get("status")
        if status == "failed":
            message = (data.get("error") or {}).get("message", "Unknown error")
            raise UpstreamError(f"Response failed: {message}")
        if status == "incomplete":
            reason = (data.get("incomplete_details") or {}).get("reason", "Unknown reason")
            raise UpstreamError(f"Response incomplete: {reason}")

        text = extract_output_text(data)
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        logger.info(
            "[llm] {} done: id={} tokens in={} out={}",
            options.call_type,
            data.get("id"),
            usage.get("input_tokens", 0),
            usage.get("output_tokens", 0),
        )
        self._track_completion(body, usage, options.call_type, text)
        return CompletionResult(text=text, response_id=data.get("id", ""))

    async def complete_streaming(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions | None = None,
        callbacks: StreamingCallbacks | None = None,
    ) -> CompletionResult:
        """
        Stream a completion, forwarding each text delta to callbacks.on_token
        in arrival order. Exactly one of on_complete / on_error fires.
        """
        options = options or CompletionOptions()
        callbacks = callbacks or StreamingCallbacks()
        body = self._build_request(messages, options, stream=True)

        try:
            return await self._read_stream(body, options.call_type, callbacks)
        except UpstreamError as e:
            if callbacks.on_error:
                callbacks.on_error(e)
            raise

    async def _read_stream(self, body: dict, call_type: str, callbacks: StreamingCallbacks) -> CompletionResult:
        parts: list[str] = []
        response_id = ""

        try:
            async with self.client.stream(
                "POST", f"{self.base_url}/responses", headers=self._headers, json=body
            ) as resp:
                if not resp.is_success:
                    detail = await _error_detail(resp)
                    logger.error("[llm] {} stream HTTP {}: {}", call_type, resp.status_code, detail)
                    raise UpstreamError(f"HTTP {resp.status_code}: {detail}", status_code=resp.status_code)

                if callbacks.on_start:
                    callbacks.on_start()

                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if not payload or payload == "[DONE]":
                        continue
                    try:
                        event = json.loads(payload)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(event, dict):
                        continue

                    kind = event.get("type")
                    if kind == "response.created":
                        response_id = (event.get("response") or {}).get("id", "")
                    elif kind == "response.output_text.delta":
                        delta = event.get("delta") or ""
                        parts.append(delta)
                        if callbacks.on_token:
                            callbacks.on_token(delta)
                    elif kind == "response.completed":
                        response = event.get("response") or {}
                        full_text = "".join(parts)
                        response_id = response.get("id") or response_id
                        self._track_completion(body, response.get("usage"), call_type, full_text)
                        logger.info("[llm] {} stream done: id={} chunks={}", call_type, response_id, len(parts))
                        if callbacks.on_complete:
                            callbacks.on_complete(full_text)
                        return CompletionResult(text=full_text, response_id=response_id)
                    elif kind == "response.failed":
                        error = (event.get("response") or {}).get("error") or {}
                        raise UpstreamError(f"Response failed: {error.get('message', 'Unknown error')}")
                    elif kind == "response.incomplete":
                        details = (event.get("response") or {}).get("incomplete_details") or {}
                        raise UpstreamError(f"Response incomplete: {details.get('reason', 'Unknown reason')}")
        except httpx.HTTPError as e:
            logger.error("[llm] {} stream broken: {}", call_type, e)
            raise UpstreamError(f"Streaming request failed: {e}") from e

        raise UpstreamError("Stream ended before the response completed")

    async def embed(self, text: str, call_type: str = "embedding_chunk") -> list[float]:
        if not text or not text.strip():
            raise InvalidInputError("Input text for embedding cannot be empty.")

        body = {"input": text, "model": self.embedding_model}
        try:
            resp = await self.client.post(f"{self.base_url}/embeddings", headers=self._headers, json=body)
        except httpx.HTTPError as e:
            logger.error("[llm] embedding request failed: {}", e)
            raise UpstreamError(f"Embedding request failed: {e}") from e

        if not resp.is_success:
            detail = await _error_detail(resp)
            logger.error("[llm] embedding HTTP {}: {}", resp.status_code, detail)
            raise UpstreamError(f"Embeddings HTTP {resp.status_code}: {detail}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("Embedding response is not valid JSON") from e
        if not isinstance(data, dict):
            raise UpstreamError("Unexpected embeddings payload: expected a JSON object")

        items = data.get("data")
        if data.get("object") != "list" or not isinstance(items, list) or not items:
            raise UpstreamError("Unexpected embeddings response: expected a list of embeddings")

        first = items[0] if isinstance(items[0], dict) else {}
        vector = first.get("embedding")
        if first.get("object") != "embedding" or not isinstance(vector, list) or not vector:
            raise UpstreamError("No valid embedding vector in embeddings response")

        prompt_tokens = (data.get("usage") or {}).get("prompt_tokens")
        if prompt_tokens:
            self._track(
                call_type,
                "input",
                prompt_tokens,
                data.get("model") or self.embedding_model,
                f'Embedding for: "{text[:100]}..."',
            )
        return vector
