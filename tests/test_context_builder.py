from __future__ import annotations

import pytest

from coderag.retrieval.context_builder import ContextOptions
from coderag.retrieval.context_builder import build_code_context
from coderag.retrieval.context_builder import build_minimal_context
from coderag.retrieval.context_builder import estimate_tokens
from coderag.retrieval.context_builder import extract_citations
from coderag.retrieval.context_builder import format_chunk
from coderag.retrieval.context_builder import format_citation
from coderag.retrieval.context_builder import group_chunks_by_file
from coderag.storage.models import RetrievedChunk


def _hit(chunk_id: str, path: str, start: int, content: str = "return 1", symbol: str | None = None) -> RetrievedChunk:
    return RetrievedChunk(
        id=chunk_id,
        file_path=path,
        start_line=start,
        end_line=start + 4,
        content=content,
        language="typescript",
        chunk_type="function",
        symbol_name=symbol,
        score=0.82,
    )


CHUNKS = [
    _hit("1", "src/lib/auth.ts", 40, symbol="logout"),
    _hit("2", "src/app/page.tsx", 1),
    _hit("3", "src/lib/auth.ts", 10, symbol="login"),
]


def test_citations() -> None:
    assert format_citation(CHUNKS[0]) == "[src/lib/auth.ts:40-44]"
    citations = extract_citations(CHUNKS)
    assert citations[0].file == "src/lib/auth.ts"
    assert citations[0].symbol == "logout"
    assert citations[1].symbol is None


def test_group_chunks_by_file_sorts_within_file() -> None:
    grouped = group_chunks_by_file(CHUNKS)
    assert list(grouped) == ["src/lib/auth.ts", "src/app/page.tsx"]
    assert [c.start_line for c in grouped["src/lib/auth.ts"]] == [10, 40]


def test_format_chunk() -> None:
    chunk = CHUNKS[0].model_copy(update={"context": "Ends the user session."})
    formatted = format_chunk(chunk, include_scores=True)
    assert formatted.startswith("### [src/lib/auth.ts:40-44]\n**function**: `logout`\n\n> Ends the user session.")
    assert "_Relevance: 82%_" in formatted
    assert "```typescript\nreturn 1\n```" in formatted


def test_empty_context_messages() -> None:
    fr = build_code_context([])
    assert fr.context == "Aucun code pertinent trouve dans le repository."
    assert fr.chunks_total == 0
    en = build_code_context([], ContextOptions(language="en"))
    assert en.context == "No relevant code found in the repository."


def test_build_grouped_context() -> None:
    result = build_code_context(CHUNKS, ContextOptions(language="en"))

    assert result.context.startswith("## Relevant Source Code\n\nFound 3 relevant code section(s)")
    assert "## src/lib/auth.ts\n\n### [src/lib/auth.ts:10-14]" in result.context
    assert result.context.index("auth.ts:10-14") < result.context.index("auth.ts:40-44")
    assert result.context.endswith("Always cite files using the format `[path:lines]`.")
    assert result.chunks_included == 3
    assert result.truncated is False
    assert result.files == ["src/lib/auth.ts", "src/app/page.tsx"]
    assert result.estimated_tokens == estimate_tokens(result.context)


def test_build_context_truncates_to_max_tokens() -> None:
    big = [_hit(str(i), f"src/mod{i}.ts", 1, content="x" * 400) for i in range(10)]
    result = build_code_context(big, ContextOptions(max_tokens=300, group_by_file=False))

    assert result.truncated is True
    assert 0 < result.chunks_included < 10
    assert f"_Note: {result.chunks_included}/10 sections affichees (limite de tokens atteinte)_" in result.context
    assert result.context.startswith("## Code source pertinent")


def test_invalid_max_tokens() -> None:
    with pytest.raises(ValueError):
        build_code_context(CHUNKS, ContextOptions(max_tokens=0))


def test_minimal_context() -> None:
    assert build_minimal_context([], "en") == "No relevant code found."
    minimal = build_minimal_context(CHUNKS)
    assert minimal.splitlines() == [
        "## Fichiers pertinents",
        "",
        "- **src/lib/auth.ts**: `login`, `logout`",
        "- **src/app/page.tsx**",
    ]
