"""
GitHub API response schemas（Pydantic）。

说明：
- 字段只覆盖索引流程需要的子集（repo / ref / commit / tree / contents）。
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from coderag.parsing.file_filter import FileInfo


class GitHubRepositoryInfo(BaseModel):
    default_branch: str


class GitHubRefObject(BaseModel):
    sha: str


class GitHubRef(BaseModel):
    object: GitHubRefObject


class GitHubTreeRef(BaseModel):
    sha: str


class GitHubCommit(BaseModel):
    sha: str
    tree: GitHubTreeRef


class GitHubTreeEntry(BaseModel):
    path: str
    mode: str | None = None
    type: Literal["blob", "tree", "commit"]
    sha: str
    size: int | None = None


class GitHubTree(BaseModel):
    sha: str
    tree: list[GitHubTreeEntry]
    truncated: bool = False


class GitHubContent(BaseModel):
    type: str
    path: str
    sha: str
    size: int = 0
    content: str | None = None
    encoding: str | None = None


class FileContent(BaseModel):
    path: str
    content: str
    sha: str
    size: int


class RepositoryStructure(BaseModel):
    files: list[FileInfo]
    gitignore: str | None
    commit_sha: str
    branch: str
    truncated: bool
    estimated_lines: int
    is_large: bool
