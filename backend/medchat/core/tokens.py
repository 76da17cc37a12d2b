from functools import lru_cache

import tiktoken

from medchat.models.chat import ChatMessage

# Upper bound for a single user message, before any prompt or history is added.
MAX_MESSAGE_TOKENS = 2000
# Upper bound for the conversation history sent alongside it.
MAX_HISTORY_TOKENS = 6000


@lru_cache()
def _encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def count_tokens_text(text: str) -> int:
    """Count tokens in a plain string."""
    return len(_encoding().encode(text))


def count_tokens(messages: list[ChatMessage]) -> int:
    """Count tokens across messages. Includes ~4 tokens per-message overhead."""
    total = 0
    for message in messages:
        total += len(_encoding().encode(message.content))
        total += 4  # role + formatting
    return total
