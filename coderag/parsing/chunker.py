"""
基于正则的代码切片（AST 不可用时的兜底）。

策略：
- 配置类文件（package.json / prisma / json / yaml ...）：整块或按 model 切
- 代码文件：逐行匹配语义单元（函数 / 类 / 接口 / 类型），用括号计数或缩进找块尾
- 都没命中：固定窗口切分（最多 2000 字符，窗口间保留约 100 字符的重叠）
"""

from __future__ import annotations

import hashlib
import math
import re

from coderag.parsing.languages import BRACE_LANGUAGES
from coderag.parsing.languages import JS_FAMILY
from coderag.parsing.languages import Language
from coderag.parsing.languages import detect_language
from coderag.parsing.languages import file_name
from coderag.storage.models import ChunkType
from coderag.storage.models import CodeChunk

MAX_CHUNK_SIZE = 2000
MIN_CHUNK_SIZE = 50
OVERLAP_SIZE = 100
OVERLAP_LINES = OVERLAP_SIZE // 40
DEFAULT_BLOCK_LINES = 50

CONFIG_FILE_NAMES: frozenset[str] = frozenset({"package.json", "tsconfig.json", "schema.prisma", ".env.example"})

SEMANTIC_PATTERNS: dict[Language, tuple[tuple[ChunkType, re.Pattern[str]], ...]] = {
    Language.TYPESCRIPT: (
        ("function", re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s+(\w+)")),
        ("function", re.compile(r"^(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s+)?\(")),
        ("function", re.compile(r"^(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s+)?\([^)]*\)\s*(?::\s*\w+)?\s*=>")),
        ("class", re.compile(r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)")),
        ("interface", re.compile(r"^(?:export\s+)?interface\s+(\w+)")),
        ("type", re.compile(r"^(?:export\s+)?type\s+(\w+)")),
    ),
    Language.JAVASCRIPT: (
        ("function", re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s+(\w+)")),
        ("function", re.compile(r"^(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s+)?\(")),
        ("function", re.compile(r"^(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s+)?\([^)]*\)\s*=>")),
        ("class", re.compile(r"^(?:export\s+)?(?:default\s+)?class\s+(\w+)")),
    ),
    Language.PYTHON: (
        ("function", re.compile(r"^(?:async\s+)?def\s+(\w+)")),
        ("class", re.compile(r"^class\s+(\w+)")),
    ),
    Language.GO: (
        ("function", re.compile(r"^func\s+(?:\([^)]+\)\s*)?(\w+)")),
        ("type", re.compile(r"^type\s+(\w+)\s+struct")),
        ("interface", re.compile(r"^type\s+(\w+)\s+interface")),
    ),
    Language.RUST: (
        ("function", re.compile(r"^(?:pub\s+)?(?:async\s+)?fn\s+(\w+)")),
        ("type", re.compile(r"^(?:pub\s+)?struct\s+(\w+)")),
        ("type", re.compile(r"^(?:pub\s+)?enum\s+(\w+)")),
        ("interface", re.compile(r"^(?:pub\s+)?trait\s+(\w+)")),
    ),
    Language.JAVA: (
        ("class", re.compile(r"^(?:public\s+)?(?:abstract\s+)?(?:final\s+)?class\s+(\w+)")),
        ("interface", re.compile(r"^(?:public\s+)?interface\s+(\w+)")),
        ("function", re.compile(r"^\s*(?:public|private|protected)\s+(?:static\s+)?(?:[\w<>\[\],]+\s+)+(\w+)\s*\(")),
    ),
}

_JS_IMPORT = re.compile(r"import\s+.*?from\s+['\"]([^'\"]+)['\"]")
_JS_REQUIRE = re.compile(r"require\s*\(\s*['\"]([^'\"]+)['\"]\s*\)")
_PY_IMPORT = re.compile(r"^\s*(?:from\s+(\S+)\s+)?import\s+(\S+)", re.MULTILINE)
_GO_IMPORT = re.compile(r"import\s+(?:\(\s*)?[\"']([^\"']+)[\"']")
_PRISMA_MODEL = re.compile(r"^model\s+(\w+)\s*\{.*?^\}", re.MULTILINE | re.DOTALL)
_LEADING_WS = re.compile(r"^(\s*)")


def extract_dependencies(content: str, language: Language) -> list[str]:
    deps: list[str] = []
    if language in JS_FAMILY:
        deps.extend(m.group(1) for m in _JS_IMPORT.finditer(content))
        deps.extend(m.group(1) for m in _JS_REQUIRE.finditer(content))
    elif language is Language.PYTHON:
        deps.extend(m.group(1) or m.group(2) for m in _PY_IMPORT.finditer(content))
    elif language is Language.GO:
        deps.extend(m.group(1) for m in _GO_IMPORT.finditer(content))
    return list(dict.fromkeys(deps))


def find_block_end(lines: list[str], start: int, language: Language) -> int:
    """返回块尾行（0-indexed，包含）。"""
    if language in BRACE_LANGUAGES:
        depth = 0
        opened = False
        for i in range(start, len(lines)):
            for char in lines[i]:
                if char == "{":
                    depth += 1
                    opened = True
                elif char == "}":
                    depth -= 1
                    if opened and depth == 0:
                        return i

    if language is Language.PYTHON:
        start_indent = len(_LEADING_WS.match(lines[start]).group(1))
        last_non_blank = start
        for i in range(start + 1, len(lines)):
            line = lines[i]
            if not line.strip():
                continue
            if len(_LEADING_WS.match(line).group(1)) <= start_indent:
                return last_non_blank
            last_non_blank = i
        return last_non_blank

    return min(start + DEFAULT_BLOCK_LINES, len(lines) - 1)


def _extract_semantic_chunks(content: str, file_path: str, language: Language) -> list[CodeChunk]:
    patterns = SEMANTIC_PATTERNS.get(language, ())
    if not patterns:
        return []

    lines = content.split("\n")
    file_deps = extract_dependencies(content, language)
    used: set[int] = set()
    chunks: list[CodeChunk] = []

    for i, line in enumerate(lines):
        if i in used:
            continue
        for chunk_type, pattern in patterns:
            match = pattern.match(line)
            if match is None:
                continue
            end = find_block_end(lines, i, language)
            chunk_content = "\n".join(lines[i : end + 1])
            if len(chunk_content) < MIN_CHUNK_SIZE:
                continue
            used.update(range(i, end + 1))
            chunk_deps = extract_dependencies(chunk_content, language)
            chunks.append(
                CodeChunk(
                    content=chunk_content,
                    file_path=file_path,
                    start_line=i + 1,
                    end_line=end + 1,
                    language=language.value,
                    chunk_type=chunk_type,
                    symbol_name=match.group(1),
                    dependencies=chunk_deps or file_deps,
                )
            )
            break
    return chunks


def split_into_fixed_chunks(content: str, file_path: str, language: Language, start_line: int = 1) -> list[CodeChunk]:
    """固定窗口切分；下一个窗口会带上上一个窗口末尾的 OVERLAP_LINES 行。"""
    lines = content.split("\n")
    chunks: list[CodeChunk] = []
    window: list[str] = []
    window_start = start_line
    window_size = 0

    def flush() -> None:
        chunk_content = "\n".join(window)
        if len(chunk_content) >= MIN_CHUNK_SIZE:
            chunks.append(
                CodeChunk(
                    content=chunk_content,
                    file_path=file_path,
                    start_line=window_start,
                    end_line=window_start + len(window) - 1,
                    language=language.value,
                    chunk_type="other",
                    dependencies=extract_dependencies(chunk_content, language),
                )
            )

    for line in lines:
        line_size = len(line) + 1
        if window and window_size + line_size > MAX_CHUNK_SIZE:
            flush()
            overlap = window[-OVERLAP_LINES:] if len(window) > OVERLAP_LINES else []
            if len("\n".join(overlap)) > MAX_CHUNK_SIZE // 2:
                overlap = []
            window_start = window_start + len(window) - len(overlap)
            window = list(overlap)
            window_size = len("\n".join(window))
        window.append(line)
        window_size += line_size

    if window:
        flush()
    return chunks


def _line_count(content: str) -> int:
    return max(len(content.split("\n")), 1)


def _chunk_config_file(content: str, file_path: str, language: Language) -> list[CodeChunk]:
    name = file_name(file_path)

    if name == "schema.prisma" or language is Language.PRISMA:
        chunks: list[CodeChunk] = []
        for match in _PRISMA_MODEL.finditer(content):
            start = content.count("\n", 0, match.start()) + 1
            chunks.append(
                CodeChunk(
                    content=match.group(0),
                    file_path=file_path,
                    start_line=start,
                    end_line=start + match.group(0).count("\n"),
                    language=Language.PRISMA.value,
                    chunk_type="type",
                    symbol_name=match.group(1),
                )
            )
        if chunks:
            return chunks

    if name == "package.json":
        return [
            CodeChunk(
                content=content,
                file_path=file_path,
                start_line=1,
                end_line=_line_count(content),
                language=Language.JSON.value,
                chunk_type="config",
                symbol_name="package.json",
            )
        ]

    if len(content) <= MAX_CHUNK_SIZE:
        return [
            CodeChunk(
                content=content,
                file_path=file_path,
                start_line=1,
                end_line=_line_count(content),
                language=language.value,
                chunk_type="config",
            )
        ]

    return split_into_fixed_chunks(content, file_path, language)


def is_config_file(file_path: str, language: Language) -> bool:
    return file_name(file_path) in CONFIG_FILE_NAMES or language in {Language.JSON, Language.YAML, Language.PRISMA}


def whole_file_chunk(content: str, file_path: str, language: Language) -> CodeChunk:
    return CodeChunk(
        content=content,
        file_path=file_path,
        start_line=1,
        end_line=_line_count(content),
        language=language.value,
        chunk_type="other",
        dependencies=extract_dependencies(content, language),
    )


def chunk_file(content: str, file_path: str) -> list[CodeChunk]:
    """
    正则切片入口。

    - 空文件 / 纯空白：返回 `[]`
    - 非空但太短（< MIN_CHUNK_SIZE）：整文件作为一个 `other` chunk，保证非空输入不会丢内容
    """
    if not content.strip():
        return []

    language = detect_language(file_path)
    if is_config_file(file_path, language):
        chunks = _chunk_config_file(content, file_path, language)
    else:
        chunks = _extract_semantic_chunks(content, file_path, language)
        if not chunks:
            chunks = split_into_fixed_chunks(content, file_path, language)

    if not chunks:
        chunks = [whole_file_chunk(content, file_path, language)]
    return chunks


def calculate_file_hash(content: str) -> str:
    """git blob sha1，与 GitHub tree 接口里的 `sha` 字段可直接比较。"""
    data = content.encode("utf-8")
    return hashlib.sha1(b"blob " + str(len(data)).encode("ascii") + b"\0" + data).hexdigest()


def estimate_tokens(text: str) -> int:
    # 代码大约 4 个字符一个 token
    return math.ceil(len(text) / 4)
