"""
Query 分类：决定是否用结构化 metadata 过滤（穷举型问题）代替语义检索。

- 关键词表覆盖英文 + 法文
- 得分 = 命中关键词长度之和（越长越具体）；confidence = min(score / 20, 1)
- "list all X" 一类措辞标记为 list query
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Literal

from pydantic import BaseModel

from coderag.storage.models import MetadataFilter


class QueryType(str, Enum):
    API_ROUTES = "API_ROUTES"
    COMPONENTS = "COMPONENTS"
    HOOKS = "HOOKS"
    SCHEMA = "SCHEMA"
    TESTS = "TESTS"
    TYPES = "TYPES"
    CONFIG = "CONFIG"
    EMBEDDINGS = "EMBEDDINGS"
    INDEXING = "INDEXING"
    GENERIC = "GENERIC"


class QueryClassification(BaseModel):
    type: QueryType
    is_list_query: bool
    confidence: float


# (english, french)
QUERY_KEYWORDS: MappingProxyType[QueryType, tuple[tuple[str, ...], tuple[str, ...]]] = MappingProxyType(
    {
        QueryType.API_ROUTES: (
            ("endpoint", "endpoints", "api", "route", "routes", "rest", "http"),
            ("endpoint", "endpoints", "api", "route", "routes"),
        ),
        QueryType.COMPONENTS: (
            ("component", "components", "ui", "widget", "widgets"),
            ("composant", "composants", "interface"),
        ),
        QueryType.HOOKS: (
            ("hook", "hooks", "usehook", "custom hook"),
            ("hook", "hooks"),
        ),
        QueryType.SCHEMA: (
            ("schema", "database", "db", "prisma", "model", "models", "table", "tables"),
            ("schema", "base de donnees", "modele", "modeles", "table", "tables"),
        ),
        QueryType.TESTS: (
            ("test", "tests", "testing", "spec", "specs", "unit test", "integration test"),
            ("test", "tests", "tester"),
        ),
        QueryType.TYPES: (
            ("type", "types", "interface", "interfaces", "typedef", "typing"),
            ("type", "types", "interface", "interfaces", "typage"),
        ),
        QueryType.CONFIG: (
            (
                "config", "configuration", "settings", "env", "environment",
                "stack", "tech stack", "technology", "technologies", "framework", "frameworks",
                "dependencies", "package", "packages", "library", "libraries",
                "font", "fonts", "typography", "typeface", "color", "colors", "theme",
                "tailwind", "css", "style", "styles", "design", "layout",
            ),
            (
                "config", "configuration", "parametres", "environnement",
                "stack", "technique", "technologie", "technologies", "framework", "frameworks",
                "dependances", "librairie", "librairies", "bibliotheque", "bibliotheques",
                "police", "polices", "typographie", "typo", "typos", "couleur", "couleurs",
                "theme", "tailwind", "css", "style", "styles", "design", "layout", "mise en page",
            ),
        ),
        QueryType.EMBEDDINGS: (
            (
                "embedding", "embeddings", "vector", "vectors", "vectorization",
                "voyage", "pgvector", "pinecone", "rag", "retrieval",
                "similarity", "semantic search", "chunk", "chunks",
            ),
            (
                "embedding", "embeddings", "vecteur", "vecteurs", "vectorisation",
                "voyage", "pgvector", "pinecone", "rag", "retrieval",
                "similarite", "recherche semantique", "chunk", "chunks", "stockage",
            ),
        ),
        QueryType.INDEXING: (
            (
                "index", "indexing", "reindex", "reindexing", "re-index",
                "pipeline", "parsing", "chunking", "contextual",
                "devstral", "mistral", "context generation",
                "webhook", "trigger", "github webhook",
            ),
            (
                "index", "indexation", "reindexation", "re-indexation", "reindexer",
                "pipeline", "parsing", "chunking", "contextuel",
                "devstral", "mistral", "generation de contexte",
                "webhook", "declencheur", "trigger",
            ),
        ),
    }
)

LIST_INDICATORS: tuple[str, ...] = (
    # en
    "all", "list", "every", "available", "what are", "show me", "give me", "what is the",
    # fr
    "tous", "toutes", "liste", "quels", "quelles", "disponibles", "montre", "donne",
    "c'est quoi", "quelle est", "quel est", "quoi",
)

METADATA_FILTERS: MappingProxyType[QueryType, MetadataFilter] = MappingProxyType(
    {
        QueryType.API_ROUTES: MetadataFilter(file_path_patterns=["%route.ts", "%route.tsx", "%/api/%"]),
        QueryType.COMPONENTS: MetadataFilter(
            file_path_patterns=["%components%", "%.tsx"],
            chunk_types=["function", "class"],
        ),
        QueryType.HOOKS: MetadataFilter(
            file_path_patterns=["%hooks%", "%use%.ts", "%use%.tsx"],
            symbol_name_pattern="use%",
        ),
        QueryType.SCHEMA: MetadataFilter(
            file_path_patterns=["%schema.prisma", "%prisma%", "%models%", "%entities%"],
        ),
        QueryType.TESTS: MetadataFilter(file_path_patterns=["%.test.%", "%.spec.%", "%__tests__%"]),
        QueryType.TYPES: MetadataFilter(
            file_path_patterns=["%types%", "%.d.ts"],
            chunk_types=["interface", "type"],
        ),
        QueryType.CONFIG: MetadataFilter(
            file_path_patterns=[
                "%config%",
                "%.config.%",
                "%next.config%",
                "%tsconfig%",
                "%package.json",
                "%.env%",
                "%Dockerfile%",
                "%docker-compose%",
                "%.nvmrc",
                "%.node-version",
                "%layout.tsx",
                "%globals.css",
                "%tailwind%",
                "%theme%",
            ],
        ),
        QueryType.EMBEDDINGS: MetadataFilter(
            file_path_patterns=[
                "%embeddings%",
                "%voyage%",
                "%vector%",
                "%rag%",
                "%lib/db%",
                "%reranker%",
                "%retrieval%",
            ],
        ),
        QueryType.INDEXING: MetadataFilter(
            file_path_patterns=[
                "%indexing%",
                "%pipeline%",
                "%parsing%",
                "%chunker%",
                "%contextual%",
                "%ast-%",
            ],
        ),
    }
)

_LABELS: MappingProxyType[QueryType, tuple[str, str]] = MappingProxyType(
    {
        QueryType.API_ROUTES: ("API endpoints", "endpoints API"),
        QueryType.COMPONENTS: ("UI components", "composants UI"),
        QueryType.HOOKS: ("React hooks", "hooks React"),
        QueryType.SCHEMA: ("database schema", "schema de base de donnees"),
        QueryType.TESTS: ("tests", "tests"),
        QueryType.TYPES: ("type definitions", "definitions de types"),
        QueryType.CONFIG: ("configuration files", "fichiers de configuration"),
        QueryType.EMBEDDINGS: ("embeddings & RAG", "embeddings et RAG"),
        QueryType.INDEXING: ("indexing pipeline", "pipeline d'indexation"),
        QueryType.GENERIC: ("code", "code"),
    }
)


def classify_query(query: str) -> QueryClassification:
    normalized = query.lower().strip()
    is_list_query = any(indicator in normalized for indicator in LIST_INDICATORS)

    best_type = QueryType.GENERIC
    best_score = 0
    for query_type, (english, french) in QUERY_KEYWORDS.items():
        score = sum(len(keyword) for keyword in (*english, *french) if keyword in normalized)
        if score > best_score:
            best_type = query_type
            best_score = score

    return QueryClassification(
        type=best_type,
        is_list_query=is_list_query,
        confidence=min(best_score / 20, 1.0),
    )


def get_metadata_filter(query_type: QueryType) -> MetadataFilter | None:
    """GENERIC 没有过滤条件，返回 None。"""
    metadata_filter = METADATA_FILTERS.get(query_type)
    return metadata_filter.model_copy(deep=True) if metadata_filter is not None else None


def get_query_type_label(query_type: QueryType, lang: Literal["en", "fr"] = "fr") -> str:
    english, french = _LABELS[query_type]
    return english if lang == "en" else french
