"""Pure renderers turning selected chunks into agent-ready context text."""

from ctx_engine.core.models import ScoredChunk
from ctx_engine.infrastructure.chunking.text import language_for_path

CONTEXT_HEADER = "## Relevant Code Context"
TRUNCATION_NOTICE = (
    "*Note: Context was truncated to fit token budget. Additional relevant code may exist.*"
)
COMPACT_LIMIT = 10

_XML_ESCAPES = {"&": "&amp;", "<": "&lt;", ">": "&gt;", '"': "&quot;", "'": "&apos;"}


def escape_xml(text: str) -> str:
    return "".join(_XML_ESCAPES.get(ch, ch) for ch in text)


def _relevance(score: float) -> str:
    return f"{score * 100:.0f}%"


def format_markdown(chunks: list[ScoredChunk], query: str, truncated: bool = False, total_tokens: int = 0) -> str:
    """Markdown grouped by file, with a fenced code block per chunk."""
    if not chunks:
        return f'{CONTEXT_HEADER}\n\nNo relevant code context found for: "{query}"'

    sections = [CONTEXT_HEADER, f'*Query: "{query}" | {len(chunks)} chunks | ~{total_tokens} tokens*']
    if truncated:
        sections.append(TRUNCATION_NOTICE)
    sections.append("")

    by_file: dict[str, list[ScoredChunk]] = {}
    for sc in chunks:
        by_file.setdefault(sc.file_path, []).append(sc)

    for file_path, file_chunks in by_file.items():
        sections.append(f"### {file_path}")
        lang = language_for_path(file_path)
        for sc in file_chunks:
            chunk = sc.chunk
            name = f"`{chunk.name}`" if chunk.name else "(anonymous)"
            sections.append(
                f"#### [{chunk.chunk_type.value}] {name} "
                f"(L{chunk.start_line}-{chunk.end_line}) [{_relevance(sc.score)}]"
            )
            if chunk.summary:
                sections.append("\n".join(f"> {line}" for line in chunk.summary.split("\n")))
            sections.append(f"```{lang}")
            sections.append(chunk.content)
            sections.append("```")
            sections.append("")

    return "\n".join(sections)


def format_compact(chunks: list[ScoredChunk], query: str = "", truncated: bool = False, total_tokens: int = 0) -> str:
    """One line per chunk, capped at ten."""
    if not chunks:
        return ""

    lines = ["**Relevant code:**"]
    for sc in chunks[:COMPACT_LIMIT]:
        chunk = sc.chunk
        lines.append(f"- {chunk.chunk_type.value} `{chunk.name or 'anonymous'}` at {chunk.file_path}:{chunk.start_line}")
    if len(chunks) > COMPACT_LIMIT:
        lines.append(f"- ... and {len(chunks) - COMPACT_LIMIT} more")
    return "\n".join(lines)


def format_xml(chunks: list[ScoredChunk], query: str = "", truncated: bool = False, total_tokens: int = 0) -> str:
    if not chunks:
        return "<context></context>"

    parts = []
    for sc in chunks:
        chunk = sc.chunk
        attrs = [
            f'file="{escape_xml(chunk.file_path)}"',
            f'type="{chunk.chunk_type.value}"',
            f'lines="{chunk.start_line}-{chunk.end_line}"',
            f'relevance="{_relevance(sc.score)}"',
        ]
        if chunk.name:
            attrs.append(f'name="{escape_xml(chunk.name)}"')
        parts.append(f"  <chunk {' '.join(attrs)}>\n{escape_xml(chunk.content)}\n  </chunk>")

    return "<context>\n" + "\n".join(parts) + "\n</context>"
