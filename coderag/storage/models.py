from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator

ChunkType = Literal["function", "class", "interface", "type", "config", "import", "other"]


class CodeChunk(BaseModel):
    """
    一个可检索的代码片段（函数 / 类 / 配置块 / 固定窗口）。

    - 行号 1-indexed，且 `start_line <= end_line`
    - `context` 由 contextual describer 生成（可为空）
    - `file_hash` 是所在文件的 git blob sha，用于增量索引比对
    """

    content: str
    file_path: str
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    language: str
    chunk_type: ChunkType
    symbol_name: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    context: str | None = None
    file_hash: str = ""
    embedding: list[float] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_line_range(self) -> CodeChunk:
        if self.end_line < self.start_line:
            raise ValueError(f"end_line {self.end_line} < start_line {self.start_line}")
        return self


class StoredChunk(CodeChunk):
    id: str
    repository_id: str


class RetrievedChunk(BaseModel):
    """检索结果视图：不同来源会填充不同的分数字段。"""

    id: str
    file_path: str
    start_line: int
    end_line: int
    content: str
    language: str
    chunk_type: str
    symbol_name: str | None = None
    context: str | None = None
    score: float = 0.0
    vector_score: float | None = None
    text_score: float | None = None
    original_score: float | None = None
    rerank_score: float | None = None


class FileMatch(BaseModel):
    file_path: str
    chunk_count: int
    similarity: float


class MetadataFilter(BaseModel):
    file_path_patterns: list[str] = Field(default_factory=list)
    chunk_types: list[str] = Field(default_factory=list)
    symbol_name_pattern: str | None = None


class RepositoryStats(BaseModel):
    total_chunks: int
    total_files: int
    languages: dict[str, int]
    chunk_types: dict[str, int]


class JobStatus(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    PARSING = "parsing"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobPhase(str, Enum):
    INITIALIZING = "Initializing"
    FETCHING = "Fetching files"
    PARSING = "Parsing code"
    CONTEXT = "Generating context"
    EMBEDDING = "Generating embeddings"
    FINALIZING = "Finalizing"


class IndexingJob(BaseModel):
    id: str
    repository_id: str
    status: JobStatus = JobStatus.PENDING
    current_phase: str | None = None
    progress: int = Field(default=0, ge=0, le=100)
    files_total: int = 0
    files_processed: int = 0
    chunks_created: int = 0
    error_message: str | None = None
    commit_sha: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime


class TokenUsageEvent(BaseModel):
    type: Literal["indexing_context", "indexing_embedding"]
    model: str
    input_tokens: int
    output_tokens: int = 0
