"""
Regulation RAG - Retrieval and agentic QA over building regulations

This package provides:
- Tenant-scoped hybrid retrieval (pgvector + full-text, fused with RRF)
- Multi-hop retrieval that follows article and table cross-references
- A tool-calling agent answering Bouwbesluit questions with cited sources
- Table-aware formatting of chunk text for prompts (Markdown) and UI (HTML)

Chunks are written by a separate ingestion pipeline; this package only reads them.
"""

from .vector_store import ChunkStore, RetrievedChunk
from .embeddings import EmbeddingService
from .retriever import HybridRetriever
from .multi_hop import MultiHopRetriever
from .agent import LegalRAGAgent
from .table_formatter import format_rag_table_content, format_rag_source_text

__all__ = [
    "ChunkStore",
    "RetrievedChunk",
    "EmbeddingService",
    "HybridRetriever",
    "MultiHopRetriever",
    "LegalRAGAgent",
    "format_rag_table_content",
    "format_rag_source_text",
]

__version__ = "0.1.0"
