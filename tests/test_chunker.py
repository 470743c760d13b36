from __future__ import annotations

from coderag.parsing.ast_chunker import chunk_file_ast
from coderag.parsing.ast_chunker import extract_symbols
from coderag.parsing.chunker import MAX_CHUNK_SIZE
from coderag.parsing.chunker import calculate_file_hash
from coderag.parsing.chunker import chunk_file
from coderag.parsing.chunker import split_into_fixed_chunks
from coderag.parsing.grammars import GrammarRegistry
from coderag.parsing.grammars import ParserContext
from coderag.parsing.grammars import build_grammar_registry
from coderag.parsing.languages import Language

PY_SOURCE = "\n".join(
    [
        "import os",
        "from typing import Any",
        "",
        "",
        "def load_settings(path: str) -> dict[str, Any]:",
        "    with open(path) as fh:",
        "        return {'raw': fh.read(), 'cwd': os.getcwd()}",
        "",
        "",
        "class SettingsCache:",
        "    def __init__(self) -> None:",
        "        self.items: dict[str, Any] = {}",
        "",
        "    def get(self, key: str) -> Any:",
        "        return self.items.get(key)",
        "",
    ]
)

TS_SOURCE = "\n".join(
    [
        "import { db } from './db'",
        "",
        "export interface UserRecord {",
        "  id: string",
        "  email: string",
        "}",
        "",
        "export async function findUserByEmail(email: string): Promise<UserRecord | null> {",
        "  return db.user.findFirst({ where: { email } })",
        "}",
        "",
        "export const normalizeEmail = (email: string) => {",
        "  return email.trim().toLowerCase()",
        "}",
        "",
    ]
)


def _assert_valid(chunks: list) -> None:
    for chunk in chunks:
        assert chunk.content.strip()
        assert 1 <= chunk.start_line <= chunk.end_line


def test_chunk_file_regex_python_symbols() -> None:
    chunks = chunk_file(PY_SOURCE, "src/settings.py")
    _assert_valid(chunks)
    by_name = {c.symbol_name: c for c in chunks}
    assert by_name["load_settings"].chunk_type == "function"
    assert by_name["load_settings"].start_line == 5
    assert by_name["load_settings"].end_line == 7
    assert by_name["SettingsCache"].chunk_type == "class"
    assert "os" in by_name["load_settings"].dependencies


def test_chunk_file_empty_and_tiny() -> None:
    assert chunk_file("   \n\n", "src/empty.py") == []
    tiny = chunk_file("x = 1\n", "src/tiny.py")
    assert len(tiny) == 1
    assert tiny[0].chunk_type == "other"
    assert tiny[0].start_line == 1


def test_chunk_file_package_json_is_config() -> None:
    chunks = chunk_file('{\n  "name": "demo",\n  "version": "1.0.0"\n}\n', "package.json")
    assert len(chunks) == 1
    assert chunks[0].chunk_type == "config"
    assert chunks[0].symbol_name == "package.json"


def test_chunk_file_prisma_models() -> None:
    schema = "\n".join(
        [
            "datasource db {",
            '  provider = "postgresql"',
            "}",
            "",
            "model User {",
            "  id    String @id",
            "  email String @unique",
            "}",
            "",
        ]
    )
    chunks = chunk_file(schema, "prisma/schema.prisma")
    assert [c.symbol_name for c in chunks] == ["User"]
    assert chunks[0].start_line == 5
    assert chunks[0].end_line == 8


def test_fixed_chunks_respect_max_size_and_overlap() -> None:
    content = "\n".join(f"line number {i} with some filler text to make it long" for i in range(200))
    chunks = split_into_fixed_chunks(content, "notes/data.txt", Language.TEXT)
    assert len(chunks) > 1
    _assert_valid(chunks)
    for chunk in chunks:
        assert len(chunk.content) <= MAX_CHUNK_SIZE
    # 相邻窗口有重叠行
    assert chunks[1].start_line <= chunks[0].end_line
    assert chunks[-1].end_line == 200


def test_calculate_file_hash_is_git_blob_sha() -> None:
    # `git hash-object` of "hello\n"
    assert calculate_file_hash("hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"


def test_ast_chunker_python() -> None:
    ctx = ParserContext(build_grammar_registry([Language.PYTHON]))
    chunks = chunk_file_ast(PY_SOURCE, "src/settings.py", ctx)
    _assert_valid(chunks)
    names = [c.symbol_name for c in chunks]
    assert names == ["load_settings", "SettingsCache"]
    assert chunks[1].chunk_type == "class"
    assert chunks[1].end_line == 15


def test_ast_chunker_typescript_exports() -> None:
    ctx = ParserContext(build_grammar_registry([Language.TYPESCRIPT]))
    chunks = chunk_file_ast(TS_SOURCE, "src/users.ts", ctx)
    _assert_valid(chunks)
    by_name = {c.symbol_name: c for c in chunks}
    assert by_name["UserRecord"].chunk_type == "interface"
    assert by_name["findUserByEmail"].chunk_type == "function"
    assert by_name["normalizeEmail"].chunk_type == "function"
    assert "./db" in by_name["findUserByEmail"].dependencies


def test_ast_chunker_falls_back_without_grammar() -> None:
    ctx = ParserContext(GrammarRegistry(grammars={}))
    chunks = chunk_file_ast(PY_SOURCE, "src/settings.py", ctx)
    assert [c.symbol_name for c in chunks] == ["load_settings", "SettingsCache"]


def test_extract_symbols_includes_nested_methods() -> None:
    ctx = ParserContext(build_grammar_registry([Language.PYTHON]))
    names = {s.name for s in extract_symbols(PY_SOURCE, "src/settings.py", ctx)}
    assert {"load_settings", "SettingsCache", "__init__", "get"} <= names
