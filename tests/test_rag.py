import asyncio
import json
import re

import httpx
import pytest

from medchat.core.errors import InvalidInputError, PromptTemplateError, UpstreamError
from medchat.core.llm import LLMGateway
from medchat.core.prompts import NO_CONTEXT_TEXT
from medchat.core.rag import RagOrchestrator, build_context_text, format_history, generate_conversation_id
from medchat.core.tasks import TaskRunner
from medchat.models.chat import ChatContext, ChatMessage, RagChatRequest, StreamingCallbacks

from stubs import RecordingTransport, StubGateway, StubRetriever, embedding_body, response_body, streamed_text

ASTHMA_CONTEXTS = [
    ChatContext(id="c1", content="Asthma inflames the airways.", post_slug="asthma-basics", relevance_score=0.9),
    ChatContext(id="c2", content="Pollen and cold air are common triggers.", post_slug="asthma-triggers", relevance_score=0.8),
]

HISTORY = [
    ChatMessage(role="user", content="hello"),
    ChatMessage(role="assistant", content="Hi, how can I help?"),
]


def ask(orchestrator, message="whats asthma", history=(), callbacks=None, conversation_id=None):
    request = RagChatRequest(message=message, conversation_history=list(history), conversation_id=conversation_id)
    return asyncio.run(orchestrator.get_chat_response(request, callbacks))


def stage_options(gateway, call_type):
    return next(options for _, _, options in gateway.calls if options.call_type == call_type)


def stage_messages(gateway, call_type):
    return next(messages for _, messages, options in gateway.calls if options.call_type == call_type)


def test_asthma_scenario_runs_all_four_stages():
    gateway = StubGateway()
    retriever = StubRetriever(ASTHMA_CONTEXTS)
    response = ask(RagOrchestrator(gateway, retriever))

    assert gateway.call_types() == ["query_optimization", "technical_response", "response_simplification"]
    assert gateway.embed_calls == [
        ("Please explain asthma, including its symptoms, causes and triggers.", "rag_query_embedding")
    ]
    assert retriever.calls == [([0.5, 0.5], 3)]

    technical = stage_options(gateway, "technical_response").instructions
    assert "Asthma inflames the airways.\n\nPollen and cold air are common triggers." in technical
    assert "ORIGINAL USER QUESTION: whats asthma" in technical

    assert response.response == "Asthma makes it hard to breathe."
    assert "symptoms" in response.optimized_query and "causes" in response.optimized_query
    assert response.technical_response == "Asthma is a chronic inflammatory disease of the airways."
    assert response.context_used == ASTHMA_CONTEXTS
    assert [(c.text, c.link) for c in response.citations] == [
        ("[1]", "/blog/article/asthma-basics"),
        ("[2]", "/blog/article/asthma-triggers"),
    ]


def test_optimize_stage_is_low_temperature_single_message():
    gateway = StubGateway()
    ask(RagOrchestrator(gateway, StubRetriever()), history=HISTORY)

    options = stage_options(gateway, "query_optimization")
    assert options.temperature == 0.3
    assert options.max_tokens == 500
    assert options.stream is False
    assert stage_messages(gateway, "query_optimization") == [ChatMessage(role="user", content="whats asthma")]


def test_answer_and_simplify_stages_see_the_conversation():
    gateway = StubGateway()
    ask(RagOrchestrator(gateway, StubRetriever(ASTHMA_CONTEXTS)), history=HISTORY)

    expected = [*HISTORY, ChatMessage(role="user", content="whats asthma")]
    assert stage_messages(gateway, "technical_response") == expected
    assert stage_messages(gateway, "response_simplification") == expected

    simplify = stage_options(gateway, "response_simplification")
    assert simplify.temperature == 0.3
    assert simplify.max_tokens == 600
    assert "User: hello\nAssistant: Hi, how can I help?" in simplify.instructions
    assert "Asthma is a chronic inflammatory disease of the airways." in simplify.instructions
    assert "{{" not in simplify.instructions


def test_failing_retriever_degrades_to_no_context():
    gateway = StubGateway()
    response = ask(RagOrchestrator(gateway, StubRetriever(fail=True)))

    assert response.context_used == []
    assert response.citations == []
    assert response.response == "Asthma makes it hard to breathe."
    technical = stage_options(gateway, "technical_response").instructions
    assert f"RETRIEVED MEDICAL CONTEXT:\n{NO_CONTEXT_TEXT}\n" in technical


def test_failing_embedding_degrades_to_no_context():
    gateway = StubGateway(embed_error=InvalidInputError("empty"))
    retriever = StubRetriever(ASTHMA_CONTEXTS)
    response = ask(RagOrchestrator(gateway, retriever))

    assert retriever.calls == []
    assert response.context_used == []
    assert gateway.call_types()[-1] == "response_simplification"


@pytest.mark.parametrize("stage", ["query_optimization", "technical_response", "response_simplification"])
def test_generation_stage_errors_propagate_unchanged(stage):
    error = UpstreamError("HTTP 500: boom", status_code=500)
    gateway = StubGateway(failures={stage: error})

    with pytest.raises(UpstreamError) as exc:
        ask(RagOrchestrator(gateway, StubRetriever(ASTHMA_CONTEXTS)))

    assert exc.value is error
    assert gateway.call_types()[-1] == stage


def test_http_500_on_answer_stage_stops_before_simplify():
    calls = {"responses": 0}

    def handler(request):
        if request.url.path.endswith("/embeddings"):
            return httpx.Response(200, json=embedding_body())
        calls["responses"] += 1
        if calls["responses"] == 1:
            return httpx.Response(200, json=response_body("Explain asthma symptoms and causes."))
        return httpx.Response(500, json={"error": {"message": "internal error"}})

    transport = RecordingTransport(handler)

    async def main():
        async with transport.client() as client:
            gateway = LLMGateway(client, api_key="sk-test", tasks=TaskRunner())
            orchestrator = RagOrchestrator(gateway, StubRetriever(ASTHMA_CONTEXTS))
            return await orchestrator.get_chat_response(RagChatRequest(message="whats asthma"))

    with pytest.raises(UpstreamError) as exc:
        asyncio.run(main())

    assert exc.value.status_code == 500
    bodies = transport.bodies("/responses")
    assert len(bodies) == 2
    assert "ORIGINAL USER QUESTION: whats asthma" in bodies[1]["instructions"]


def test_streaming_simplify_end_to_end():
    def handler(request):
        if request.url.path.endswith("/embeddings"):
            return httpx.Response(200, json=embedding_body())
        body = json.loads(request.content)
        if body["stream"]:
            return httpx.Response(200, content=streamed_text("Hel", "lo"))
        return httpx.Response(200, json=response_body("technical or optimized text"))

    tokens, completions, errors = [], [], []
    callbacks = StreamingCallbacks(
        on_token=tokens.append,
        on_complete=lambda text, meta: completions.append((text, meta)),
        on_error=errors.append,
    )
    transport = RecordingTransport(handler)

    async def main():
        async with transport.client() as client:
            gateway = LLMGateway(client, api_key="sk-test", tasks=TaskRunner())
            orchestrator = RagOrchestrator(gateway, StubRetriever(ASTHMA_CONTEXTS))
            request = RagChatRequest(message="whats asthma")
            return await orchestrator.get_chat_response(request, callbacks)

    response = asyncio.run(main())

    assert tokens == ["Hel", "lo"]
    assert errors == []
    assert len(completions) == 1
    text, meta = completions[0]
    assert text == "Hello"
    assert [c.text for c in meta["citations"]] == ["[1]", "[2]"]
    assert meta["context_used"] == ASTHMA_CONTEXTS
    assert response.response == "Hello"
    assert response.citations == meta["citations"]
    assert [b["stream"] for b in transport.bodies("/responses")] == [False, False, True]


def test_non_streaming_request_never_streams():
    gateway = StubGateway()
    ask(RagOrchestrator(gateway, StubRetriever()))
    assert [kind for kind, _, _ in gateway.calls] == ["complete", "complete", "complete"]


def test_streaming_error_reaches_on_error():
    errors = []
    gateway = StubGateway(failures={"response_simplification": UpstreamError("Response failed: overloaded")})
    callbacks = StreamingCallbacks(on_error=errors.append, on_complete=lambda *a: pytest.fail("no completion expected"))

    with pytest.raises(UpstreamError):
        ask(RagOrchestrator(gateway, StubRetriever()), callbacks=callbacks)
    assert len(errors) == 1


def test_conversation_id_generated_or_echoed():
    orchestrator = RagOrchestrator(StubGateway(), StubRetriever())
    assert re.fullmatch(r"conv_\d+_[a-z0-9]{9}", ask(orchestrator).conversation_id)
    assert ask(orchestrator, conversation_id="session-42").conversation_id == "session-42"
    assert generate_conversation_id() != generate_conversation_id()


def test_stream_chat_response_yields_events_in_order():
    orchestrator = RagOrchestrator(StubGateway(texts={"response_simplification": "Breathe easy"}), StubRetriever(ASTHMA_CONTEXTS))

    async def collect():
        return [e async for e in orchestrator.stream_chat_response(RagChatRequest(message="whats asthma"))]

    events = asyncio.run(collect())

    assert [e.kind for e in events] == ["start", "token", "token", "complete"]
    assert "".join(e.payload for e in events if e.kind == "token") == "Breathe easy"
    final = events[-1].payload
    assert final.response == "Breathe easy"
    assert len(final.citations) == 2


def test_stream_chat_response_reports_errors_as_events():
    error = UpstreamError("HTTP 502: bad gateway", status_code=502)
    orchestrator = RagOrchestrator(StubGateway(failures={"technical_response": error}), StubRetriever())

    async def collect():
        return [e async for e in orchestrator.stream_chat_response(RagChatRequest(message="whats asthma"))]

    events = asyncio.run(collect())
    assert [e.kind for e in events] == ["error"]
    assert events[0].payload is error


def test_unfilled_template_is_caught_before_sending(monkeypatch):
    monkeypatch.setattr("medchat.core.rag.SIMPLIFICATION_PROMPT", "Simplify {{technical_response}} for {{reader}}")
    gateway = StubGateway()

    with pytest.raises(PromptTemplateError):
        ask(RagOrchestrator(gateway, StubRetriever()))
    assert "response_simplification" not in gateway.call_types()


def test_helpers():
    assert build_context_text([]) == NO_CONTEXT_TEXT
    assert build_context_text(ASTHMA_CONTEXTS) == "Asthma inflames the airways.\n\nPollen and cold air are common triggers."
    assert format_history(HISTORY) == "User: hello\nAssistant: Hi, how can I help?"
