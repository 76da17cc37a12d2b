"""
Article chunk store on Postgres + pgvector.

Both calls go through SQL functions owned by the content database:
match_article_chunks for similarity search and
increment_chunk_retrieved_count for the per-chunk analytics counter
(a single-row UPDATE ... + 1, so concurrent chats never race).
"""

from medchat.db import postgres


def to_vector_literal(embedding: list[float]) -> str:
    """pgvector text form, e.g. '[0.1,0.2]'. Avoids registering a codec on every connection."""
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


class PostgresChunkStore:
    async def match_chunks(
        self,
        embedding: list[float],
        similarity_threshold: float,
        match_count: int,
    ) -> list[dict]:
        rows = await postgres.fetch_all(
            """SELECT id, chunk_text, post_slug, similarity_score
               FROM match_article_chunks($1::vector, $2, $3)""",
            to_vector_literal(embedding),
            similarity_threshold,
            match_count,
        )
        return [dict(r) for r in rows]

    async def increment_retrieved_count(self, chunk_id: str) -> None:
        await postgres.execute(
            "SELECT increment_chunk_retrieved_count($1)",
            chunk_id,
        )
