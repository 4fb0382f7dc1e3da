"""
RAG context prompt blocks

Renders a RAGContext as plain-text sections for an interpretation prompt.
Used with: enrich_prompt_with_context(base_prompt, context)
"""

from typing import Optional

from dreamrag.config import settings
from dreamrag.models import RAGContext, SearchResult

DREAM_CONTENT_MARKER = "DREAM CONTENT:"

KNOWLEDGE_HEADER = "RELEVANT PSYCHOANALYTIC KNOWLEDGE:"
SYMBOLS_HEADER = "SYMBOL INTERPRETATIONS:"
THEMES_HEADER = "RELEVANT THEMES:"

CONTEXT_INSTRUCTION = (
    "Use this knowledge to enrich your interpretation while maintaining the analytical approach."
)

TRUNCATION_SUFFIX = "..."


def _relevance(passage: SearchResult) -> float:
    score = passage.semantic_score if passage.semantic_score is not None else passage.hybrid_score
    return min(max(score, 0.0), 1.0)


def _format_passage(index: int, passage: SearchResult, text: Optional[str] = None) -> str:
    chapter = f" - {passage.chapter}" if passage.chapter else ""
    content = passage.text if text is None else text
    return (
        f'{index}. From "{passage.source or "Unknown source"}"{chapter}:\n'
        f'   "{content}"\n'
        f"   [Relevance: {_relevance(passage) * 100:.1f}%]"
    )


def _format_tail(context: RAGContext) -> str:
    sections = []
    if context.symbols:
        lines = [f"- {s.symbol}: {' | '.join(s.interpretations)}" for s in context.symbols]
        sections.append(SYMBOLS_HEADER + "\n" + "\n".join(lines))
    if context.themes:
        sections.append(THEMES_HEADER + "\n" + "\n".join(f"- {t}" for t in context.themes))
    return "\n\n".join(sections)


def format_rag_context(context: RAGContext, max_chars: Optional[int] = None) -> str:
    """
    Render passages, symbol interpretations and themes.

    Passages are dropped from the end until the block fits ``max_chars``
    (default: settings.rag_max_context_chars). The first passage is kept and
    truncated if it alone is too long. Returns "" for an empty context.
    """
    if context.is_empty():
        return ""

    max_chars = settings.rag_max_context_chars if max_chars is None else max_chars
    tail = _format_tail(context)
    tail_len = len(tail) + 2 if tail else 0

    blocks: list[str] = []
    used = len(KNOWLEDGE_HEADER) + tail_len
    for index, passage in enumerate(context.relevant_passages, start=1):
        block = _format_passage(index, passage)
        if used + len(block) + 2 <= max_chars:
            blocks.append(block)
            used += len(block) + 2
            continue
        if not blocks:
            overflow = used + len(block) + 2 - max_chars
            keep = max(len(passage.text) - overflow - len(TRUNCATION_SUFFIX), 0)
            blocks.append(_format_passage(index, passage, passage.text[:keep] + TRUNCATION_SUFFIX))
        break

    text = KNOWLEDGE_HEADER + "\n" + "\n\n".join(blocks)
    if tail:
        text += "\n\n" + tail
    return text


def enrich_prompt_with_context(base_prompt: str, context: RAGContext) -> str:
    """
    Insert the rendered context ahead of the dream content.

    Appended at the end when the prompt has no DREAM CONTENT: marker.
    """
    block = format_rag_context(context)
    if not block:
        return base_prompt

    insert = f"{block}\n\n{CONTEXT_INSTRUCTION}\n\n"
    if DREAM_CONTENT_MARKER in base_prompt:
        return base_prompt.replace(DREAM_CONTENT_MARKER, insert + DREAM_CONTENT_MARKER, 1)
    return f"{base_prompt.rstrip()}\n\n{insert.rstrip()}\n"
