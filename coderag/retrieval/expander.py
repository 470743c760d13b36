"""
Query expansion：用 LLM 从问题里抽取关键词 / 文件路径线索 / 代码概念。

失败时降级为「问题里长度 > 3 的词」，不会让检索失败。
"""

from __future__ import annotations

import logging

import httpx
from openai import OpenAIError
from pydantic import BaseModel, ConfigDict, Field

from coderag.llm.client import ChatMessage
from coderag.llm.client import OpenAICompatLLMClient

logger = logging.getLogger(__name__)

ARCHITECTURE_PATH_PATTERNS: tuple[str, ...] = ("%lib/%", "%api/%", "%services/%", "%config%")

EXPANSION_PROMPT = """Analyze this question about a codebase and extract search terms.

Question: "{query}"

Extract:
1. keywords: Technical terms that would appear in relevant code
2. filePatterns: Directory or file name patterns (without wildcards, just the key part like "auth", "api", "utils")
3. concepts: Function names, class names, variable patterns that might be relevant
4. isArchitectureQuestion: Does it ask about HOW something works, WHERE something is stored, or WHAT technology is used?
5. intent: What code would answer this question?

Be thorough - include synonyms and related terms. For example:
- "authentication" -> also include "auth", "login", "session", "jwt", "token"
- "database" -> also include "db", "prisma", "postgres", "storage"
- "API endpoints" -> also include "route", "api", "handler"

Respond with a JSON object with exactly these keys: keywords, filePatterns, concepts, isArchitectureQuestion, intent."""


class ExpandedQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    keywords: list[str] = Field(default_factory=list)
    file_patterns: list[str] = Field(default_factory=list, alias="filePatterns")
    concepts: list[str] = Field(default_factory=list)
    is_architecture_question: bool = Field(default=False, alias="isArchitectureQuestion")
    intent: str = ""


def fallback_expansion(query: str) -> ExpandedQuery:
    return ExpandedQuery(
        keywords=[word for word in query.split() if len(word) > 3],
        intent=query,
    )


class QueryExpander:
    def __init__(self, llm_client: OpenAICompatLLMClient) -> None:
        self._llm_client = llm_client

    async def expand(self, query: str) -> ExpandedQuery:
        messages = [
            ChatMessage(role="system", content="You extract search terms from questions about source code. Output JSON only."),
            ChatMessage(role="user", content=EXPANSION_PROMPT.format(query=query)),
        ]
        try:
            expanded = await self._llm_client.complete_json(messages=messages, schema=ExpandedQuery, temperature=0)
        except (ValueError, RuntimeError, OpenAIError, httpx.HTTPError) as exc:
            logger.error(f"Query expansion failed, using fallback: {exc}")
            return fallback_expansion(query)
        logger.info(get_expansion_summary(expanded))
        return expanded


def to_file_path_patterns(expanded: ExpandedQuery) -> list[str]:
    """把 file_patterns 转成 SQL LIKE 模式（`%p%`）；架构类问题额外加基础设施路径。去重保序。"""
    patterns = [f"%{pattern}%" for pattern in expanded.file_patterns if pattern.strip()]
    if expanded.is_architecture_question:
        patterns.extend(ARCHITECTURE_PATH_PATTERNS)
    return list(dict.fromkeys(patterns))


def to_search_query(expanded: ExpandedQuery) -> str:
    return " ".join([*expanded.keywords, *expanded.concepts])


def get_expansion_summary(expanded: ExpandedQuery) -> str:
    keywords = ", ".join(expanded.keywords[:5]) + ("..." if len(expanded.keywords) > 5 else "")
    patterns = ", ".join(expanded.file_patterns[:3]) + ("..." if len(expanded.file_patterns) > 3 else "")
    return f"Query expansion: keywords=[{keywords}] patterns=[{patterns}] architecture={expanded.is_architecture_question}"
