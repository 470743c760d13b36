from __future__ import annotations

from coderag.parsing.file_filter import EMPTY_REPOSITORY_WARNING
from coderag.parsing.file_filter import FileInfo
from coderag.parsing.file_filter import FilterOptions
from coderag.parsing.file_filter import build_gitignore_spec
from coderag.parsing.file_filter import filter_files
from coderag.parsing.file_filter import get_repository_stats
from coderag.parsing.file_filter import is_empty_repository
from coderag.parsing.file_filter import matches_gitignore
from coderag.parsing.file_filter import parse_gitignore
from coderag.parsing.file_filter import should_include_file


def test_gitignore_glob_matches_any_depth() -> None:
    patterns = parse_gitignore("# logs\n*.log\n\n")
    assert patterns == ["*.log"]
    assert matches_gitignore("error.log", patterns)
    assert matches_gitignore("logs/debug.log", patterns)
    assert not matches_gitignore("file.txt", patterns)


def test_gitignore_rooted_and_directory_patterns() -> None:
    assert matches_gitignore("generated/api.ts", ["/generated/"])
    assert not matches_gitignore("src/generated/api.ts", ["/generated/"])
    assert matches_gitignore("src/secret/keys.ts", ["secret/"])
    assert not matches_gitignore("src/app.ts", ["!src/app.ts"])
    assert matches_gitignore("src/app.ts", ["*.ts", "!src/app.ts"])


def test_gitignore_double_star_and_anchored_paths() -> None:
    assert matches_gitignore("a/b.ts", ["a/**/b.ts"])
    assert matches_gitignore("a/x/y/b.ts", ["a/**/b.ts"])
    assert matches_gitignore("lib/gen.ts", ["lib/gen.ts"])
    assert not matches_gitignore("src/lib/gen.ts", ["lib/gen.ts"])

    spec = build_gitignore_spec(["lib/gen.ts", "*.log"])
    assert matches_gitignore("lib/gen.ts", spec)
    assert not should_include_file("lib/gen.ts", spec)
    assert should_include_file("src/lib/gen.ts", spec)


def test_default_excluded_dirs_always_dropped() -> None:
    assert not should_include_file("node_modules/react/index.js")
    assert not should_include_file("src/__pycache__/mod.py")
    assert not should_include_file("dist/bundle.js")
    assert should_include_file("src/index.ts")


def test_binary_and_non_code_files_dropped() -> None:
    assert not should_include_file("assets/logo.png")
    assert not should_include_file("README")


def test_filter_files_respects_gitignore() -> None:
    files = [
        FileInfo(path="src/app.ts", size=400),
        FileInfo(path="src/generated/client.ts", size=400),
    ]
    result = filter_files(files, FilterOptions(gitignore_content="generated/"))
    assert [f.path for f in result.included] == ["src/app.ts"]
    assert [f.path for f in result.excluded] == ["src/generated/client.ts"]
    assert not result.is_empty

    ignored_off = filter_files(files, FilterOptions(gitignore_content="generated/", respect_gitignore=False))
    assert len(ignored_off.included) == 2


def test_filter_files_empty_repository_warning() -> None:
    result = filter_files([FileInfo(path="node_modules/a.js", size=10), FileInfo(path="logo.png", size=10)])
    assert result.is_empty
    assert result.included == []
    assert result.warnings == [EMPTY_REPOSITORY_WARNING]
    assert is_empty_repository([FileInfo(path="dist/bundle.js", size=10)])
    assert not is_empty_repository([FileInfo(path="src/app.ts", size=10)])


def test_filter_files_prioritizes_large_repository() -> None:
    files = [
        FileInfo(path="src/core.ts", size=4000),
        FileInfo(path="package.json", size=400),
        FileInfo(path="misc/huge.ts", size=400_000),
    ]
    result = filter_files(files, FilterOptions(max_total_lines=1000))
    assert result.is_prioritized
    included = {f.path for f in result.included}
    assert "src/core.ts" in included
    assert "misc/huge.ts" not in included
    assert any("large" in w for w in result.warnings)


def test_repository_stats() -> None:
    stats = get_repository_stats([FileInfo(path="src/a.py", size=400), FileInfo(path="node_modules/b.js", size=400)])
    assert stats.total_files == 2
    assert stats.code_files == 1
    assert stats.estimated_lines == 10
    assert not stats.is_large
