"""Text chunking with paragraph/sentence boundaries and overlap."""

from __future__ import annotations

import math
import re

from langchain_core.documents import Document

CHARS_PER_TOKEN = 4

_PARAGRAPH_RE = re.compile(r"\n\n+")
# Trailing text without terminal punctuation is kept as its own "sentence".
_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+$")


def estimate_tokens(text: str) -> int:
    """Rough token count at ~4 characters per token."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _tail(text: str, chars: int) -> str:
    return text[-chars:] if chars > 0 else ""


def chunk_text(text: str, max_tokens: int = 500, overlap_tokens: int = 50) -> list[Document]:
    """Split *text* into token-bounded chunks.

    Paragraphs (blank-line separated) are packed together until the next
    one would exceed *max_tokens*.  A paragraph that is on its own larger
    than the budget is split into sentences.  Every new chunk is seeded
    with up to ``overlap_tokens * 4`` trailing characters of the previous
    chunk, fewer when the seed and the next unit would not fit together.
    Only a single sentence longer than the budget yields an oversized chunk.

    Parameters
    ----------
    text:
        Plain text to split.
    max_tokens:
        Token budget per chunk (estimated at 4 characters/token).
    overlap_tokens:
        Size of the overlap carried into the next chunk.

    Returns
    -------
    list[Document]
        One ``Document`` per chunk with ``chunk_index`` and
        ``token_count`` metadata.
    """
    overlap_chars = overlap_tokens * CHARS_PER_TOKEN
    budget_chars = max_tokens * CHARS_PER_TOKEN
    chunks: list[str] = []
    current = ""

    for paragraph in (p for p in _PARAGRAPH_RE.split(text) if p.strip()):
        if estimate_tokens(paragraph) > max_tokens:
            units = _SENTENCE_RE.findall(paragraph) or [paragraph]
        else:
            units = [paragraph]

        for position, unit in enumerate(units):
            if not unit.strip():
                continue
            sep = "\n\n" if position == 0 else ""
            if not current.strip():
                current = unit
            elif estimate_tokens(current + sep + unit) > max_tokens:
                chunks.append(current.strip())
                # the seed shrinks so that seed + unit stays inside the budget
                seed = _tail(current, min(overlap_chars, budget_chars - len(sep) - len(unit)))
                current = seed + sep + unit if seed else unit
            else:
                current += sep + unit

    if current.strip():
        chunks.append(current.strip())

    return [
        Document(page_content=content, metadata={"chunk_index": i, "token_count": estimate_tokens(content)})
        for i, content in enumerate(chunks)
    ]
    return [
        Document(page_content=content, metadata={"chunk_index": i, "token_count": tokens})
        for i, (content, tokens) in enumerate(chunks)
    ]
