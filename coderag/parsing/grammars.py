"""
Tree-sitter 语法注册表 + 解析上下文。

- `GrammarRegistry`：进程内构建一次，构建后只读；加载失败的语法直接缺席（chunker 会走正则兜底）
- `ParserContext`：每次 pipeline 运行创建一个，持有 `tree_sitter.Parser` 实例，显式传入 chunker
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from tree_sitter import Language as Grammar
from tree_sitter import Parser, Tree
from tree_sitter_language_pack import get_language

from coderag.errors import ParseError
from coderag.parsing.languages import Language
from coderag.parsing.languages import file_extension

logger = logging.getLogger(__name__)

TSX_GRAMMAR = "tsx"

GRAMMAR_NAMES: Mapping[Language, str] = MappingProxyType(
    {
        Language.TYPESCRIPT: "typescript",
        Language.JAVASCRIPT: "javascript",
        Language.PYTHON: "python",
        Language.GO: "go",
        Language.RUST: "rust",
        Language.JAVA: "java",
        Language.C: "c",
        Language.CPP: "cpp",
        Language.CSHARP: "csharp",
        Language.RUBY: "ruby",
        Language.PHP: "php",
        Language.KOTLIN: "kotlin",
        Language.SWIFT: "swift",
        Language.SHELL: "bash",
        Language.JSON: "json",
    }
)


@dataclass(frozen=True)
class GrammarRegistry:
    grammars: Mapping[str, Grammar]

    def grammar_name_for(self, language: Language, file_path: str = "") -> str | None:
        if language is Language.TYPESCRIPT and file_extension(file_path) == "tsx":
            return TSX_GRAMMAR
        return GRAMMAR_NAMES.get(language)

    def is_supported(self, language: Language, file_path: str = "") -> bool:
        name = self.grammar_name_for(language, file_path)
        return name is not None and name in self.grammars

    def get(self, name: str) -> Grammar | None:
        return self.grammars.get(name)


def build_grammar_registry(languages: Iterable[Language] | None = None) -> GrammarRegistry:
    wanted = list(languages) if languages is not None else list(GRAMMAR_NAMES)
    names = {GRAMMAR_NAMES[lang] for lang in wanted if lang in GRAMMAR_NAMES}
    if Language.TYPESCRIPT in wanted:
        names.add(TSX_GRAMMAR)

    loaded: dict[str, Grammar] = {}
    for name in sorted(names):
        try:
            loaded[name] = get_language(name)
        except Exception as exc:
            logger.warning(f"Tree-sitter grammar unavailable: {name} ({exc})")
    logger.info(f"Tree-sitter grammars loaded: {len(loaded)}/{len(names)}")
    return GrammarRegistry(grammars=MappingProxyType(loaded))


class ParserContext:
    """单次运行内复用的 parser 集合（不跨线程共享）。"""

    def __init__(self, registry: GrammarRegistry) -> None:
        self._registry = registry
        self._parsers: dict[str, Parser] = {}

    @property
    def registry(self) -> GrammarRegistry:
        return self._registry

    def parse(self, content: str, language: Language, file_path: str = "") -> Tree:
        name = self._registry.grammar_name_for(language, file_path)
        if name is None:
            raise ParseError(f"No grammar for language: {language.value}")
        parser = self._parsers.get(name)
        if parser is None:
            grammar = self._registry.get(name)
            if grammar is None:
                raise ParseError(f"Grammar not loaded: {name}")
            parser = Parser(grammar)
            self._parsers[name] = parser
        return parser.parse(content.encode("utf-8"))
