"""
Pydantic models for the Regulation RAG FastAPI backend.
"""

from typing import Optional
from pydantic import BaseModel, Field


class RetrieveRequest(BaseModel):
    """Request body for single-shot retrieval."""
    query: str = Field(..., min_length=1, max_length=1000)
    top_k: int = Field(default=5, ge=1, le=20)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    use_hybrid_search: bool = True


class MultiHopRequest(BaseModel):
    """Request body for multi-hop retrieval."""
    query: str = Field(..., min_length=1, max_length=1000)
    max_hops: int = Field(default=3, ge=1, le=5)
    min_similarity: float = Field(default=0.3, ge=0.0, le=1.0)
    top_k_per_hop: int = Field(default=5, ge=1, le=20)
    follow_table_references: bool = True
    follow_article_references: bool = True


class AgentRequest(BaseModel):
    """Request body for the agent endpoint."""
    query: str = Field(..., min_length=1, max_length=2000)
    max_steps: int = Field(default=5, ge=1, le=10)
    model: Optional[str] = None


class ClassifyRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)


class FormatRequest(BaseModel):
    """Raw chunk text to render."""
    text: str = Field(..., max_length=100_000)
    output: str = Field(default="markdown", pattern=r"^(markdown|html)$")


class ChunkInfo(BaseModel):
    """A retrieved chunk in an API response."""
    id: str
    text: str
    chunk_index: int
    source_file: str
    page_number: Optional[int] = None
    section_title: Optional[str] = None
    file_id: Optional[str] = None
    similarity: float
    hop_number: Optional[int] = None


class RetrieveResponse(BaseModel):
    chunks: list[ChunkInfo]
    count: int
    message: Optional[str] = None
    latency_ms: float


class HopInfo(BaseModel):
    hop_number: int
    query: str
    chunk_ids: list[str]
    detected_references: list[str]


class MultiHopResponse(BaseModel):
    chunks: list[ChunkInfo]
    hops: list[HopInfo]
    total_hops: int
    followed_references: list[str]
    execution_time_ms: int
    message: Optional[str] = None


class AgentStepInfo(BaseModel):
    step_number: int
    thought: str
    action: str
    action_input: dict
    observation: str
    is_complete: bool


class AgentResponse(BaseModel):
    """Response body for the agent endpoint."""
    answer: str
    confidence: str
    reasoning: list[str]
    sources: list[ChunkInfo]
    steps: list[AgentStepInfo]
    execution_time_ms: int


class ClassifyResponse(BaseModel):
    is_document_related: bool
    confidence: float
    reasoning: str


class FormatResponse(BaseModel):
    formatted_text: str
    has_table: bool
    table_summaries: list[str]


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str
