"""
Vector retrieval: query embedding -> scored article chunks -> citations.

Retrieval is a soft dependency. Any store failure becomes an empty list,
and the pipeline carries on with the "no context" placeholder.
"""

from typing import Protocol

from loguru import logger
from pydantic import ValidationError

from medchat.core.tasks import TaskRunner
from medchat.models.chat import ChatContext, Citation

# Any positive similarity qualifies; the generation stages ignore noise.
SIMILARITY_THRESHOLD = 0.0


class ChunkStore(Protocol):
    async def match_chunks(
        self, embedding: list[float], similarity_threshold: float, match_count: int
    ) -> list[dict]: ...

    async def increment_retrieved_count(self, chunk_id: str) -> None: ...


def citation_link(post_slug: str) -> str:
    return f"/blog/article/{post_slug}"


def row_to_context(row: dict) -> ChatContext | None:
    """Map a similarity row to a ChatContext, or None when id, text or slug is missing."""
    chunk_id = row.get("id")
    content = row.get("chunk_text") or row.get("content")
    post_slug = row.get("post_slug")
    if not chunk_id or not content or not post_slug:
        return None
    score = row.get("similarity_score", row.get("relevance_score"))
    return ChatContext(
        id=str(chunk_id),
        content=content,
        post_slug=post_slug,
        relevance_score=float(score) if score is not None else None,
    )


def dedupe_citations(contexts: list[ChatContext]) -> list[Citation]:
    """One citation per source, numbered [1], [2], ... in first-seen order."""
    seen: set[str] = set()
    citations: list[Citation] = []
    for ctx in contexts:
        link = citation_link(ctx.post_slug)
        if link in seen:
            continue
        seen.add(link)
        citations.append(Citation(text=f"[{len(citations) + 1}]", link=link))
    return citations


class VectorRetriever:
    def __init__(
        self,
        store: ChunkStore,
        tasks: TaskRunner | None = None,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
    ):
        self.store = store
        self.tasks = tasks or TaskRunner()
        self.similarity_threshold = similarity_threshold

    async def match_chunks(self, embedding: list[float], top_k: int = 3) -> list[ChatContext]:
        try:
            rows = await self.store.match_chunks(embedding, self.similarity_threshold, top_k)
        except Exception as e:
            logger.warning("[retrieval] similarity search failed, continuing without context: {}", e)
            return []

        contexts: list[ChatContext] = []
        for row in rows or []:
            if len(contexts) >= top_k:
                break
            try:
                ctx = row_to_context(row)
            except (AttributeError, TypeError, ValueError, ValidationError):
                ctx = None
            if ctx is None:
                logger.warning("[retrieval] skipping malformed chunk: {!r}", row)
                continue
            contexts.append(ctx)
            self.tasks.spawn(
                self.store.increment_retrieved_count(ctx.id),
                label=f"retrieved_count:{ctx.id}",
            )

        logger.debug(
            "[retrieval] {} chunks from {}",
            len(contexts),
            [c.post_slug for c in contexts],
        )
        return contexts

    @staticmethod
    def dedupe_citations(contexts: list[ChatContext]) -> list[Citation]:
        return dedupe_citations(contexts)
