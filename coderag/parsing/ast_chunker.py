"""
基于 Tree-sitter AST 的代码切片。

- 只取“顶层”语义单元（根节点的直接子节点，或根节点下 export 语句里的声明）
- `export_statement` / Python `decorated_definition` / `const x = () => {}` 会被展开识别
- 依赖（imports）在文件级提取，挂到每个 chunk 上
- 语法缺失 / AST 没有产出：回退到正则切片 `chunk_file`
"""

from __future__ import annotations

import logging

from pydantic import BaseModel
from tree_sitter import Node

from coderag.errors import ParseError
from coderag.parsing.chunker import MIN_CHUNK_SIZE
from coderag.parsing.chunker import chunk_file
from coderag.parsing.chunker import is_config_file
from coderag.parsing.chunker import whole_file_chunk
from coderag.parsing.grammars import ParserContext
from coderag.parsing.languages import JS_FAMILY
from coderag.parsing.languages import Language
from coderag.parsing.languages import detect_language
from coderag.storage.models import ChunkType
from coderag.storage.models import CodeChunk

logger = logging.getLogger(__name__)

ROOT_NODE_TYPES: frozenset[str] = frozenset({"program", "module", "translation_unit", "source_file"})
VARIABLE_DECLARATIONS: frozenset[str] = frozenset({"lexical_declaration", "variable_declaration"})

_TS_NODES: dict[str, ChunkType] = {
    "function_declaration": "function",
    "generator_function_declaration": "function",
    "class_declaration": "class",
    "abstract_class_declaration": "class",
    "interface_declaration": "interface",
    "type_alias_declaration": "type",
    "enum_declaration": "type",
}

SEMANTIC_NODE_TYPES: dict[Language, dict[str, ChunkType]] = {
    Language.TYPESCRIPT: _TS_NODES,
    Language.JAVASCRIPT: {
        "function_declaration": "function",
        "generator_function_declaration": "function",
        "class_declaration": "class",
    },
    Language.PYTHON: {
        "function_definition": "function",
        "class_definition": "class",
        "decorated_definition": "function",
    },
    Language.GO: {
        "function_declaration": "function",
        "method_declaration": "function",
        "type_declaration": "type",
    },
    Language.RUST: {
        "function_item": "function",
        "impl_item": "class",
        "struct_item": "type",
        "enum_item": "type",
        "trait_item": "interface",
    },
    Language.JAVA: {
        "method_declaration": "function",
        "constructor_declaration": "function",
        "class_declaration": "class",
        "interface_declaration": "interface",
        "enum_declaration": "type",
    },
    Language.C: {
        "function_definition": "function",
        "struct_specifier": "type",
        "enum_specifier": "type",
    },
    Language.CPP: {
        "function_definition": "function",
        "class_specifier": "class",
        "struct_specifier": "type",
        "enum_specifier": "type",
    },
}

NAME_NODE_TYPES: dict[Language, frozenset[str]] = {
    Language.TYPESCRIPT: frozenset({"identifier", "property_identifier", "type_identifier"}),
    Language.JAVASCRIPT: frozenset({"identifier", "property_identifier"}),
    Language.PYTHON: frozenset({"identifier"}),
    Language.GO: frozenset({"identifier", "field_identifier", "type_identifier"}),
    Language.RUST: frozenset({"identifier", "type_identifier"}),
    Language.JAVA: frozenset({"identifier"}),
    Language.C: frozenset({"identifier", "type_identifier"}),
    Language.CPP: frozenset({"identifier", "type_identifier"}),
}


class SymbolInfo(BaseModel):
    name: str
    type: ChunkType
    line: int


def _text(node: Node) -> str:
    raw = node.text
    if raw is None:
        return ""
    return raw.decode("utf-8", errors="replace")


def _arrow_declaration(node: Node) -> bool:
    if node.type not in VARIABLE_DECLARATIONS or not node.named_children:
        return False
    value = node.named_children[0].child_by_field_name("value")
    return value is not None and value.type == "arrow_function"


def _chunk_type(node: Node, language: Language) -> ChunkType | None:
    table = SEMANTIC_NODE_TYPES.get(language)
    if not table:
        return None

    if node.type == "export_statement":
        declaration = node.child_by_field_name("declaration")
        if declaration is None:
            return None
        if declaration.type in table:
            return table[declaration.type]
        if _arrow_declaration(declaration):
            return "function"
        return None

    if node.type == "decorated_definition":
        for child in node.named_children:
            if child.type in table and child.type != "decorated_definition":
                return table[child.type]
        return None

    if node.type in table:
        return table[node.type]

    if language in JS_FAMILY and _arrow_declaration(node):
        return "function"
    return None


def _symbol_name(node: Node, language: Language) -> str | None:
    name_types = NAME_NODE_TYPES.get(language, frozenset({"identifier"}))

    if node.type in VARIABLE_DECLARATIONS:
        declarator = node.child_by_field_name("declarator")
        if declarator is None and node.named_children:
            declarator = node.named_children[0]
        if declarator is not None:
            name = declarator.child_by_field_name("name")
            if name is not None:
                return _text(name)

    if node.type == "export_statement":
        declaration = node.child_by_field_name("declaration")
        if declaration is not None:
            return _symbol_name(declaration, language)

    if node.type == "decorated_definition":
        for child in node.named_children:
            if child.type in {"function_definition", "class_definition"}:
                return _symbol_name(child, language)

    if node.type == "type_declaration":
        for child in node.named_children:
            if child.type == "type_spec":
                return _symbol_name(child, language)

    name = node.child_by_field_name("name")
    if name is not None and name.type in name_types:
        return _text(name)

    for child in node.named_children:
        if child.type in name_types:
            return _text(child)
    return None


def _walk(root: Node) -> list[Node]:
    found: list[Node] = []
    stack: list[Node] = [root]
    while stack:
        node = stack.pop()
        found.append(node)
        stack.extend(reversed(node.children))
    return found


def _extract_imports(root: Node, language: Language) -> list[str]:
    imports: list[str] = []
    for node in _walk(root):
        if language in JS_FAMILY and node.type == "import_statement":
            source = node.child_by_field_name("source")
            if source is not None:
                imports.append(_text(source).strip("'\"`"))
        elif language is Language.PYTHON and node.type == "import_from_statement":
            module = node.child_by_field_name("module_name")
            if module is not None:
                imports.append(_text(module))
        elif language is Language.PYTHON and node.type == "import_statement":
            for child in node.children_by_field_name("name"):
                target = child.child_by_field_name("name") if child.type == "aliased_import" else child
                if target is not None:
                    imports.append(_text(target))
        elif language is Language.GO and node.type == "import_spec":
            path = node.child_by_field_name("path")
            if path is not None:
                imports.append(_text(path).strip('"`'))
    return list(dict.fromkeys(imports))


def _top_level_units(root: Node) -> list[Node]:
    """根节点的直接子节点；export 语句保留整条（内部声明由 `_chunk_type` 展开）。"""
    if root.type not in ROOT_NODE_TYPES:
        return []
    return list(root.named_children)


def _extract_ast_chunks(content: str, file_path: str, language: Language, ctx: ParserContext) -> list[CodeChunk]:
    tree = ctx.parse(content, language, file_path)
    root = tree.root_node
    dependencies = _extract_imports(root, language)

    chunks: list[CodeChunk] = []
    emitted: list[tuple[int, int]] = []
    for node in _top_level_units(root):
        chunk_type = _chunk_type(node, language)
        if chunk_type is None:
            continue
        start = node.start_point[0]
        end = node.end_point[0]
        if any(start >= s and end <= e for s, e in emitted):
            continue
        chunk_content = _text(node)
        if len(chunk_content) < MIN_CHUNK_SIZE:
            continue
        # 超过 MAX_CHUNK_SIZE 的单元也整块保留，不做二次切分
        chunks.append(
            CodeChunk(
                content=chunk_content,
                file_path=file_path,
                start_line=start + 1,
                end_line=end + 1,
                language=language.value,
                chunk_type=chunk_type,
                symbol_name=_symbol_name(node, language),
                dependencies=dependencies,
            )
        )
        emitted.append((start, end))
    return chunks


def chunk_file_ast(content: str, file_path: str, ctx: ParserContext) -> list[CodeChunk]:
    if not content.strip():
        return []

    language = detect_language(file_path)
    if is_config_file(file_path, language) or not ctx.registry.is_supported(language, file_path):
        return chunk_file(content, file_path)

    try:
        chunks = _extract_ast_chunks(content, file_path, language, ctx)
    except ParseError as exc:
        logger.warning(f"AST parse unavailable for {file_path}: {exc}")
        return chunk_file(content, file_path)

    if chunks:
        return chunks

    chunks = chunk_file(content, file_path)
    return chunks or [whole_file_chunk(content, file_path, language)]


def extract_symbols(content: str, file_path: str, ctx: ParserContext) -> list[SymbolInfo]:
    """文件内所有可识别符号（不限顶层），用于统计 / 调试。"""
    language = detect_language(file_path)
    if not ctx.registry.is_supported(language, file_path):
        return []
    try:
        tree = ctx.parse(content, language, file_path)
    except ParseError:
        return []

    symbols: list[SymbolInfo] = []
    for node in _walk(tree.root_node):
        chunk_type = _chunk_type(node, language)
        if chunk_type is None:
            continue
        name = _symbol_name(node, language)
        if name:
            symbols.append(SymbolInfo(name=name, type=chunk_type, line=node.start_point[0] + 1))
    return symbols
