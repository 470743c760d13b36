from __future__ import annotations

import posixpath
from enum import Enum


class Language(str, Enum):
    TYPESCRIPT = "typescript"
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    GO = "go"
    RUST = "rust"
    JAVA = "java"
    KOTLIN = "kotlin"
    SWIFT = "swift"
    RUBY = "ruby"
    PHP = "php"
    CSHARP = "csharp"
    CPP = "cpp"
    C = "c"
    VUE = "vue"
    SVELTE = "svelte"
    PRISMA = "prisma"
    SQL = "sql"
    JSON = "json"
    YAML = "yaml"
    MARKDOWN = "markdown"
    SHELL = "shell"
    DART = "dart"
    TEXT = "text"


_EXTENSION_TO_LANGUAGE: dict[str, Language] = {
    "ts": Language.TYPESCRIPT,
    "tsx": Language.TYPESCRIPT,
    "mts": Language.TYPESCRIPT,
    "cts": Language.TYPESCRIPT,
    "js": Language.JAVASCRIPT,
    "jsx": Language.JAVASCRIPT,
    "mjs": Language.JAVASCRIPT,
    "cjs": Language.JAVASCRIPT,
    "py": Language.PYTHON,
    "go": Language.GO,
    "rs": Language.RUST,
    "java": Language.JAVA,
    "kt": Language.KOTLIN,
    "swift": Language.SWIFT,
    "rb": Language.RUBY,
    "php": Language.PHP,
    "cs": Language.CSHARP,
    "cpp": Language.CPP,
    "hpp": Language.CPP,
    "c": Language.C,
    "h": Language.C,
    "vue": Language.VUE,
    "svelte": Language.SVELTE,
    "prisma": Language.PRISMA,
    "sql": Language.SQL,
    "json": Language.JSON,
    "yaml": Language.YAML,
    "yml": Language.YAML,
    "md": Language.MARKDOWN,
    "mdx": Language.MARKDOWN,
    "sh": Language.SHELL,
    "bash": Language.SHELL,
    "zsh": Language.SHELL,
    "dart": Language.DART,
}

# 会被索引的语言（TEXT 等非代码文件不会进入索引）
CODE_LANGUAGES: frozenset[Language] = frozenset(
    {
        Language.TYPESCRIPT,
        Language.JAVASCRIPT,
        Language.PYTHON,
        Language.GO,
        Language.RUST,
        Language.JAVA,
        Language.KOTLIN,
        Language.SWIFT,
        Language.RUBY,
        Language.PHP,
        Language.CSHARP,
        Language.CPP,
        Language.C,
        Language.VUE,
        Language.SVELTE,
        Language.PRISMA,
        Language.SQL,
        Language.JSON,
        Language.YAML,
        Language.SHELL,
        Language.MARKDOWN,
        Language.DART,
    }
)

BRACE_LANGUAGES: frozenset[Language] = frozenset(
    {
        Language.TYPESCRIPT,
        Language.JAVASCRIPT,
        Language.JAVA,
        Language.GO,
        Language.RUST,
        Language.CSHARP,
        Language.CPP,
        Language.C,
    }
)

JS_FAMILY: frozenset[Language] = frozenset({Language.TYPESCRIPT, Language.JAVASCRIPT})


def file_extension(path: str) -> str:
    name = posixpath.basename(path.replace("\\", "/"))
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[1].lower()


def file_name(path: str) -> str:
    return posixpath.basename(path.replace("\\", "/"))


def detect_language(path: str) -> Language:
    return _EXTENSION_TO_LANGUAGE.get(file_extension(path), Language.TEXT)
