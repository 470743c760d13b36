"""
GitHub API 客户端（仓库源连接器）。

约定：
- 结构类请求（repo / ref / commit / tree）出错直接抛 `FetchError`（不要吞），便于定位与告警
- 单文件内容拉取失败只 log 并返回 None：pipeline 会跳过该文件
- 文件内容按 blob sha 缓存（同一个 sha 的内容永远不变）
"""

from __future__ import annotations

import base64
import binascii
import logging

import httpx
from pydantic import ValidationError

from coderag.errors import FetchError
from coderag.github.schemas import FileContent
from coderag.github.schemas import GitHubCommit
from coderag.github.schemas import GitHubContent
from coderag.github.schemas import GitHubRef
from coderag.github.schemas import GitHubRepositoryInfo
from coderag.github.schemas import GitHubTree
from coderag.github.schemas import RepositoryStructure
from coderag.infra.cache import Cache
from coderag.parsing.file_filter import LARGE_REPO_THRESHOLD
from coderag.parsing.file_filter import FileInfo
from coderag.parsing.file_filter import estimate_total_lines

logger = logging.getLogger(__name__)

MAX_FILES_TO_FETCH = 5000


class GitHubClient:
    """最小 GitHub API client（Git Trees API + contents API）。"""

    def __init__(
        self,
        api_base_url: str,
        token: str,
        http_client: httpx.AsyncClient,
        cache: Cache | None = None,
    ) -> None:
        self._api_base_url = api_base_url.rstrip("/")
        self._token = token
        self._http_client = http_client
        self._cache = cache

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> object:
        url = f"{self._api_base_url}{path}"
        try:
            response = await self._http_client.get(url, headers=self._headers(), params=params)
        except httpx.HTTPError as exc:
            logger.error(f"GitHub HTTP error: {exc}")
            raise FetchError(f"GitHub request failed: {exc}") from exc
        if response.status_code >= 400:
            raise FetchError(f"GitHub API error {response.status_code}: {response.text}", status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(f"GitHub returned a non-JSON body for {path}", status_code=response.status_code) from exc

    async def get_default_branch(self, owner: str, repo: str) -> str:
        data = await self._get_json(f"/repos/{owner}/{repo}")
        return GitHubRepositoryInfo.model_validate(data).default_branch

    async def fetch_latest_commit_sha(self, owner: str, repo: str, branch: str | None = None) -> str:
        target = branch or await self.get_default_branch(owner=owner, repo=repo)
        data = await self._get_json(f"/repos/{owner}/{repo}/git/ref/heads/{target}")
        return GitHubRef.model_validate(data).object.sha

    async def fetch_repository_structure(
        self,
        owner: str,
        repo: str,
        branch: str | None = None,
        max_files: int = MAX_FILES_TO_FETCH,
    ) -> RepositoryStructure:
        """
        拉取仓库完整文件列表（不含内容）+ .gitignore + commit sha。

        注意：GitHub tree 接口一次最多 100k 条目，超出时 `truncated=True`。
        """
        target = branch or await self.get_default_branch(owner=owner, repo=repo)
        commit_sha = await self.fetch_latest_commit_sha(owner=owner, repo=repo, branch=target)
        try:
            commit = GitHubCommit.model_validate(await self._get_json(f"/repos/{owner}/{repo}/git/commits/{commit_sha}"))
            tree = GitHubTree.model_validate(
                await self._get_json(f"/repos/{owner}/{repo}/git/trees/{commit.tree.sha}", params={"recursive": "1"})
            )
        except ValidationError as exc:
            raise FetchError(f"Unexpected GitHub response shape: {exc}") from exc

        blobs = [entry for entry in tree.tree if entry.type == "blob"]
        files = [FileInfo(path=entry.path, size=entry.size or 0, sha=entry.sha) for entry in blobs[:max_files]]

        gitignore = None
        if any(f.path == ".gitignore" for f in files):
            gitignore_file = await self.fetch_file_content(owner=owner, repo=repo, path=".gitignore")
            gitignore = gitignore_file.content if gitignore_file is not None else None

        estimated = estimate_total_lines(files)
        logger.info(f"GitHub tree {owner}/{repo}@{target}: {len(files)} file(s), commit={commit_sha}")
        return RepositoryStructure(
            files=files,
            gitignore=gitignore,
            commit_sha=commit_sha,
            branch=target,
            truncated=tree.truncated or len(blobs) > max_files,
            estimated_lines=estimated,
            is_large=estimated > LARGE_REPO_THRESHOLD,
        )

    async def fetch_file_content(self, owner: str, repo: str, path: str, sha: str | None = None) -> FileContent | None:
        cache_key = f"file:{owner}/{repo}:{sha or path}"
        if self._cache is not None and sha is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return FileContent.model_validate_json(cached)

        try:
            data = await self._get_json(f"/repos/{owner}/{repo}/contents/{path}")
            item = GitHubContent.model_validate(data)
        except (FetchError, ValidationError) as exc:
            logger.warning(f"GitHub file fetch failed for {path}: {exc}")
            return None
        if item.type != "file":
            return None

        try:
            raw = base64.b64decode(item.content or "")
            content = raw.decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            logger.warning(f"GitHub file {path} is not utf-8 text: {exc}")
            return None

        file_content = FileContent(path=item.path, content=content, sha=item.sha, size=item.size)
        if self._cache is not None:
            self._cache.set(f"file:{owner}/{repo}:{item.sha}", file_content.model_dump_json())
        return file_content
