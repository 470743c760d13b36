"""
文件过滤与大仓库优先级裁剪。

过滤顺序（任一命中即排除）：
- 二进制扩展名
- 默认排除目录（node_modules / .git / dist ...，任意层级）
- 默认排除模式（压缩产物、lockfile、.d.ts、快照 ...）
- `.gitignore`（可关闭）
- 代码语言白名单

仓库估算行数超过阈值时，只保留优先目录 + 重要文件；仍然超限就按“重要文件优先”贪心截断。
这里全部是纯函数，没有 I/O。
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence

import pathspec
from pydantic import BaseModel, Field

from coderag.parsing.languages import CODE_LANGUAGES
from coderag.parsing.languages import detect_language
from coderag.parsing.languages import file_extension
from coderag.parsing.languages import file_name

LARGE_REPO_THRESHOLD = 50_000
AVG_CHARS_PER_LINE = 40

DEFAULT_EXCLUDED_DIRS: frozenset[str] = frozenset(
    {
        "node_modules",
        ".git",
        ".svn",
        ".hg",
        "dist",
        "build",
        "out",
        ".next",
        ".nuxt",
        ".output",
        "coverage",
        "__pycache__",
        ".pytest_cache",
        ".mypy_cache",
        "venv",
        ".venv",
        "env",
        ".env",
        "vendor",
        "target",
        "Pods",
        ".gradle",
        ".idea",
        ".vscode",
        ".DS_Store",
        "tmp",
        "temp",
        "logs",
        "log",
        ".cache",
        ".parcel-cache",
        ".turbo",
        "storybook-static",
    }
)

DEFAULT_EXCLUDED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\.min\.(js|css)$"),
    re.compile(r"\.bundle\.(js|css)$"),
    re.compile(r"\.map$"),
    re.compile(r"\.lock$"),
    re.compile(r"package-lock\.json$"),
    re.compile(r"yarn\.lock$"),
    re.compile(r"pnpm-lock\.yaml$"),
    re.compile(r"composer\.lock$"),
    re.compile(r"Gemfile\.lock$"),
    re.compile(r"Cargo\.lock$"),
    re.compile(r"\.d\.ts$"),
    re.compile(r"\.generated\."),
    re.compile(r"\.snap$"),
)

BINARY_EXTENSIONS: frozenset[str] = frozenset(
    {
        # images
        "png", "jpg", "jpeg", "gif", "bmp", "ico", "webp", "svg", "avif",
        # fonts
        "woff", "woff2", "ttf", "otf", "eot",
        # documents
        "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx",
        # archives
        "zip", "tar", "gz", "rar", "7z", "bz2",
        # audio / video
        "mp3", "mp4", "wav", "ogg", "webm", "avi", "mov", "flv",
        # compiled
        "exe", "dll", "so", "dylib", "class", "pyc", "pyo", "o", "obj",
        # databases
        "db", "sqlite", "sqlite3",
        "bin", "dat", "dump",
    }
)

PRIORITY_FOLDERS: tuple[str, ...] = (
    "src",
    "lib",
    "app",
    "pages",
    "components",
    "api",
    "server",
    "client",
    "core",
    "modules",
    "packages",
    "services",
    "utils",
    "helpers",
    "hooks",
    "contexts",
    "providers",
    "middleware",
    "routes",
    "controllers",
    "models",
    "schemas",
    "types",
    "interfaces",
    "config",
    "scripts",
)

IMPORTANT_FILES: frozenset[str] = frozenset(
    {
        "package.json",
        "tsconfig.json",
        "schema.prisma",
        ".env.example",
        "README.md",
        "Dockerfile",
        "docker-compose.yml",
        "docker-compose.yaml",
    }
)

EMPTY_REPOSITORY_WARNING = "No indexable code files found in repository"


class FileInfo(BaseModel):
    path: str
    size: int = Field(ge=0)
    sha: str | None = None


class FilterOptions(BaseModel):
    max_total_lines: int = Field(default=LARGE_REPO_THRESHOLD, gt=0)
    gitignore_content: str = ""
    respect_gitignore: bool = True


class FilterResult(BaseModel):
    included: list[FileInfo]
    excluded: list[FileInfo]
    total_files: int
    total_size: int
    included_size: int
    is_prioritized: bool
    is_empty: bool
    warnings: list[str]


class RepositoryFileStats(BaseModel):
    total_files: int
    estimated_lines: int
    is_large: bool
    code_files: int


def _normalize(path: str) -> str:
    return path.replace("\\", "/")


def parse_gitignore(content: str) -> list[str]:
    patterns: list[str] = []
    for raw in content.split("\n"):
        line = raw.strip()
        if line and not line.startswith("#"):
            patterns.append(line)
    return patterns


def build_gitignore_spec(patterns: Sequence[str]) -> pathspec.GitIgnoreSpec:
    # `!` 取反模式不会把已排除的路径加回来，直接丢弃
    return pathspec.GitIgnoreSpec.from_lines(p for p in patterns if not p.startswith("!"))


def matches_gitignore(file_path: str, patterns: Sequence[str] | pathspec.PathSpec) -> bool:
    spec = patterns if isinstance(patterns, pathspec.PathSpec) else build_gitignore_spec(patterns)
    return spec.match_file(_normalize(file_path))


def is_in_excluded_dir(file_path: str) -> bool:
    return any(part in DEFAULT_EXCLUDED_DIRS for part in _normalize(file_path).split("/"))


def matches_excluded_pattern(file_path: str) -> bool:
    normalized = _normalize(file_path)
    return any(pattern.search(normalized) for pattern in DEFAULT_EXCLUDED_PATTERNS)


def is_binary_file(file_path: str) -> bool:
    return file_extension(file_path) in BINARY_EXTENSIONS


def is_in_priority_folder(file_path: str) -> bool:
    return any(part.lower() in PRIORITY_FOLDERS for part in _normalize(file_path).split("/"))


def is_important_file(file_path: str) -> bool:
    return file_name(file_path) in IMPORTANT_FILES


def is_code_file(file_path: str) -> bool:
    return detect_language(file_path) in CODE_LANGUAGES


def estimate_lines(size: int) -> int:
    return math.ceil(size / AVG_CHARS_PER_LINE)


def estimate_total_lines(files: Sequence[FileInfo]) -> int:
    return estimate_lines(sum(f.size for f in files))


def should_include_file(file_path: str, gitignore: pathspec.PathSpec | None = None) -> bool:
    if is_binary_file(file_path):
        return False
    if is_in_excluded_dir(file_path):
        return False
    if matches_excluded_pattern(file_path):
        return False
    if gitignore is not None and matches_gitignore(file_path, gitignore):
        return False
    return is_code_file(file_path)


def filter_files(files: Sequence[FileInfo], options: FilterOptions | None = None) -> FilterResult:
    """
    过滤 + 优先级裁剪，返回 `FilterResult`。

    - 没有任何可索引文件：`is_empty=True`，并带上固定 warning
    - 估算行数（`ceil(size / 40)`）超过 `max_total_lines`：`is_prioritized=True`，被裁掉的文件进入 `excluded`
    """
    options = options or FilterOptions()
    gitignore = None
    if options.respect_gitignore and options.gitignore_content:
        gitignore = build_gitignore_spec(parse_gitignore(options.gitignore_content))
    total_size = sum(f.size for f in files)

    included: list[FileInfo] = []
    excluded: list[FileInfo] = []
    for file in files:
        if should_include_file(file.path, gitignore):
            included.append(file)
        else:
            excluded.append(file)

    if not included:
        return FilterResult(
            included=[],
            excluded=excluded,
            total_files=len(files),
            total_size=total_size,
            included_size=0,
            is_prioritized=False,
            is_empty=True,
            warnings=[EMPTY_REPOSITORY_WARNING],
        )

    warnings: list[str] = []
    final_included = included
    is_prioritized = False
    estimated = estimate_total_lines(included)

    if estimated > options.max_total_lines:
        is_prioritized = True
        warnings.append(
            f"Repository is large (~{round(estimated / 1000)}k lines). "
            f"Only priority folders will be indexed: {', '.join(PRIORITY_FOLDERS[:5])}, etc."
        )
        priority_files = [f for f in included if is_in_priority_folder(f.path) or is_important_file(f.path)]

        if estimate_total_lines(priority_files) > options.max_total_lines:
            # sorted() 是稳定排序：重要文件优先，其余保持原顺序
            priority_files = sorted(priority_files, key=lambda f: 0 if is_important_file(f.path) else 1)
            accumulated = 0
            final_included = []
            for file in priority_files:
                lines = estimate_lines(file.size)
                if accumulated + lines <= options.max_total_lines:
                    final_included.append(file)
                    accumulated += lines
            warnings.append(f"Indexed {len(final_included)} of {len(included)} files due to size limit.")
        else:
            final_included = priority_files

        kept = {f.path for f in final_included}
        excluded.extend(f for f in included if f.path not in kept)

    return FilterResult(
        included=final_included,
        excluded=excluded,
        total_files=len(files),
        total_size=total_size,
        included_size=sum(f.size for f in final_included),
        is_prioritized=is_prioritized,
        is_empty=False,
        warnings=warnings,
    )


def is_empty_repository(files: Sequence[FileInfo]) -> bool:
    return not any(is_code_file(f.path) and not is_in_excluded_dir(f.path) for f in files)


def get_repository_stats(files: Sequence[FileInfo]) -> RepositoryFileStats:
    code_files = [f for f in files if is_code_file(f.path) and not is_in_excluded_dir(f.path)]
    estimated = estimate_total_lines(code_files)
    return RepositoryFileStats(
        total_files=len(files),
        estimated_lines=estimated,
        is_large=estimated > LARGE_REPO_THRESHOLD,
        code_files=len(code_files),
    )
