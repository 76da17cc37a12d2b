import re

# Order matters: images before links, bold before italics.
_MARKDOWN_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"#+\s"), ""),
    (re.compile(r"(\*\*|__)(.*?)\1"), r"\2"),
    (re.compile(r"(\*|_)(.*?)\1"), r"\2"),
    (re.compile(r"`{1,3}(.*?)`{1,3}"), r"\1"),
    (re.compile(r"!\[(.*?)\]\(.*?\)"), r"\1"),
    (re.compile(r"\[(.*?)\]\(.*?\)"), r"\1"),
    (re.compile(r"-{3,}"), ""),
    (re.compile(r"-\s\[\s\]\s"), ""),
    (re.compile(r"-\s\[x\]\s"), ""),
    (re.compile(r"^\s*>\s", re.MULTILINE), ""),
    (re.compile(r"^\s*[-*+]\s", re.MULTILINE), ""),
]
_WHITESPACE = re.compile(r"\s+")


def generate_excerpt(markdown: str | None, max_length: int = 200) -> str:
    """Strip basic markdown, collapse whitespace and cut to max_length (plus '...')."""
    if not markdown:
        return ""

    text = markdown
    for pattern, replacement in _MARKDOWN_RULES:
        text = pattern.sub(replacement, text)
    text = _WHITESPACE.sub(" ", text).strip()

    if len(text) <= max_length:
        return text
    return text[:max_length].strip() + "..."


def truncate(text: str | None, max_length: int) -> str | None:
    if text is None or len(text) <= max_length:
        return text
    return text[:max_length] + "..."
