from __future__ import annotations

from coderag.retrieval.classifier import METADATA_FILTERS
from coderag.retrieval.classifier import QueryType
from coderag.retrieval.classifier import classify_query
from coderag.retrieval.classifier import get_metadata_filter
from coderag.retrieval.classifier import get_query_type_label


def test_classify_list_query_with_type() -> None:
    result = classify_query("List all API endpoints")
    assert result.type is QueryType.API_ROUTES
    assert result.is_list_query is True
    assert 0.3 <= result.confidence <= 1.0


def test_classify_french_query() -> None:
    result = classify_query("Quels sont les composants de l'interface ?")
    assert result.type is QueryType.COMPONENTS
    assert result.is_list_query is True


def test_classify_generic_query() -> None:
    result = classify_query("why does checkout crash")
    assert result.type is QueryType.GENERIC
    assert result.confidence == 0.0
    assert result.is_list_query is False


def test_confidence_is_capped() -> None:
    result = classify_query("embedding embeddings vector vectors vectorization pgvector semantic search")
    assert result.type is QueryType.EMBEDDINGS
    assert result.confidence == 1.0


def test_metadata_filter_is_a_copy() -> None:
    hooks = get_metadata_filter(QueryType.HOOKS)
    assert hooks is not None
    assert hooks.symbol_name_pattern == "use%"
    hooks.file_path_patterns.append("%mutated%")
    assert "%mutated%" not in METADATA_FILTERS[QueryType.HOOKS].file_path_patterns
    assert get_metadata_filter(QueryType.GENERIC) is None


def test_query_type_labels() -> None:
    assert get_query_type_label(QueryType.HOOKS, "en") == "React hooks"
    assert get_query_type_label(QueryType.HOOKS) == "hooks React"
