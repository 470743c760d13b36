"""
把检索到的 chunks 组装成给 LLM 的上下文文本。

- 每个 chunk 带 `### [path:start-end]` 引用头，方便回答里直接引用
- 字符预算 = max_tokens * 4（代码约 4 字符 / token）
- 超出预算时截断，并在 footer 标注
"""

from __future__ import annotations

import math
from typing import Literal

from pydantic import BaseModel

from coderag.storage.models import RetrievedChunk

CHARS_PER_TOKEN = 4
DEFAULT_MAX_TOKENS = 30000
FOOTER_RESERVE_CHARS = 200

Lang = Literal["en", "fr"]


class ContextOptions(BaseModel):
    max_tokens: int = DEFAULT_MAX_TOKENS
    include_scores: bool = False
    group_by_file: bool = True
    language: Lang = "fr"


class ContextResult(BaseModel):
    context: str
    chunks_included: int
    chunks_total: int
    estimated_tokens: int
    truncated: bool
    files: list[str]


class Citation(BaseModel):
    file: str
    start_line: int
    end_line: int
    symbol: str | None = None


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def format_citation(chunk: RetrievedChunk) -> str:
    return f"[{chunk.file_path}:{chunk.start_line}-{chunk.end_line}]"


def extract_citations(chunks: list[RetrievedChunk]) -> list[Citation]:
    return [
        Citation(file=c.file_path, start_line=c.start_line, end_line=c.end_line, symbol=c.symbol_name or None)
        for c in chunks
    ]


def group_chunks_by_file(chunks: list[RetrievedChunk]) -> dict[str, list[RetrievedChunk]]:
    """按文件分组（保持文件首次出现的顺序），组内按起始行排序。"""
    grouped: dict[str, list[RetrievedChunk]] = {}
    for chunk in chunks:
        grouped.setdefault(chunk.file_path, []).append(chunk)
    for file_chunks in grouped.values():
        file_chunks.sort(key=lambda c: c.start_line)
    return grouped


def format_chunk(chunk: RetrievedChunk, include_scores: bool = False) -> str:
    lines = [f"### {format_citation(chunk)}"]
    if chunk.symbol_name:
        lines.append(f"**{chunk.chunk_type}**: `{chunk.symbol_name}`")
    if chunk.context:
        lines.append("")
        lines.append(f"> {chunk.context}")
    if include_scores:
        lines.append(f"_Relevance: {chunk.score * 100:.0f}%_")
    lines.append("")
    lines.append(f"```{chunk.language}")
    lines.append(chunk.content)
    lines.append("```")
    lines.append("")
    return "\n".join(lines)


def _format_grouped(
    chunks: list[RetrievedChunk],
    include_scores: bool,
    max_chars: int,
) -> tuple[str, list[RetrievedChunk], bool]:
    sections: list[str] = []
    included: list[RetrievedChunk] = []
    total_chars = 0
    truncated = False

    for file_path, file_chunks in group_chunks_by_file(chunks).items():
        file_header = f"## {file_path}\n\n"
        if total_chars + len(file_header) > max_chars:
            truncated = True
            break

        parts = [file_header]
        file_chars = len(file_header)
        for chunk in file_chunks:
            formatted = format_chunk(chunk, include_scores)
            if total_chars + file_chars + len(formatted) > max_chars:
                truncated = True
                break
            parts.append(formatted)
            file_chars += len(formatted)
            included.append(chunk)

        if len(parts) > 1:
            sections.append("".join(parts))
            total_chars += file_chars
        if truncated:
            break

    return "\n".join(sections), included, truncated


def _format_sequential(
    chunks: list[RetrievedChunk],
    include_scores: bool,
    max_chars: int,
) -> tuple[str, list[RetrievedChunk], bool]:
    sections: list[str] = []
    included: list[RetrievedChunk] = []
    total_chars = 0
    for chunk in chunks:
        formatted = format_chunk(chunk, include_scores)
        if total_chars + len(formatted) > max_chars:
            return "\n".join(sections), included, True
        sections.append(formatted)
        total_chars += len(formatted)
        included.append(chunk)
    return "\n".join(sections), included, False


def build_code_context(chunks: list[RetrievedChunk], options: ContextOptions | None = None) -> ContextResult:
    opts = options or ContextOptions()
    if opts.max_tokens <= 0:
        raise ValueError("max_tokens must be > 0")

    if not chunks:
        empty = (
            "Aucun code pertinent trouve dans le repository."
            if opts.language == "fr"
            else "No relevant code found in the repository."
        )
        return ContextResult(
            context=empty,
            chunks_included=0,
            chunks_total=0,
            estimated_tokens=estimate_tokens(empty),
            truncated=False,
            files=[],
        )

    if opts.language == "fr":
        header_lines = [
            "## Code source pertinent",
            "",
            f"J'ai trouve {len(chunks)} section(s) de code pertinente(s) dans le repository:",
            "",
        ]
    else:
        header_lines = [
            "## Relevant Source Code",
            "",
            f"Found {len(chunks)} relevant code section(s) in the repository:",
            "",
        ]
    header = "\n".join(header_lines)

    available = opts.max_tokens * CHARS_PER_TOKEN - len(header) - FOOTER_RESERVE_CHARS
    if opts.group_by_file:
        formatted, included, truncated = _format_grouped(chunks, opts.include_scores, available)
    else:
        formatted, included, truncated = _format_sequential(chunks, opts.include_scores, available)

    footer_lines = ["---"]
    if truncated:
        if opts.language == "fr":
            footer_lines.append(f"_Note: {len(included)}/{len(chunks)} sections affichees (limite de tokens atteinte)_")
        else:
            footer_lines.append(f"_Note: Showing {len(included)}/{len(chunks)} sections (token limit reached)_")
        footer_lines.append("")
    if opts.language == "fr":
        footer_lines.append("Utilise ces informations pour repondre avec precision.")
        footer_lines.append("Cite toujours les fichiers avec le format `[chemin:lignes]`.")
    else:
        footer_lines.append("Use this information to answer accurately.")
        footer_lines.append("Always cite files using the format `[path:lines]`.")

    context = "\n".join([header, formatted, "\n".join(footer_lines)])
    return ContextResult(
        context=context,
        chunks_included=len(included),
        chunks_total=len(chunks),
        estimated_tokens=estimate_tokens(context),
        truncated=truncated,
        files=list(dict.fromkeys(c.file_path for c in included)),
    )


def build_minimal_context(chunks: list[RetrievedChunk], language: Lang = "fr") -> str:
    """只列文件和 symbol，token 预算很紧时使用。"""
    if not chunks:
        return "Aucun code pertinent trouve." if language == "fr" else "No relevant code found."

    lines = ["## Fichiers pertinents" if language == "fr" else "## Relevant Files", ""]
    for file_path, file_chunks in group_chunks_by_file(chunks).items():
        symbols = [f"`{c.symbol_name}`" for c in file_chunks if c.symbol_name][:5]
        suffix = f": {', '.join(symbols)}" if symbols else ""
        lines.append(f"- **{file_path}**{suffix}")
    return "\n".join(lines)
