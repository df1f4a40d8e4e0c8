"""
FastAPI Backend for Regulation RAG

REST endpoints for retrieval, multi-hop retrieval, the legal agent, query
classification and chunk formatting. Every project-scoped route passes its
``project_id`` down to the store, which filters every query by it.

Run with: uvicorn execution.regulation_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    RetrieveRequest, RetrieveResponse,
    MultiHopRequest, MultiHopResponse, HopInfo,
    AgentRequest, AgentResponse, AgentStepInfo,
    ClassifyRequest, ClassifyResponse,
    FormatRequest, FormatResponse,
    ChunkInfo, HealthResponse,
)
from .agent import AgentConfig, AgentError, LegalRAGAgent
from .embeddings import EmbeddingService
from .llm import ChatModel, ChatModelConfig
from .multi_hop import MultiHopRetriever
from .query_classifier import QueryClassifier
from .retriever import HybridRetriever
from .table_formatter import format_rag_table_content, format_rag_source_text
from .vector_store import ChunkStore, RetrievedChunk

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

NO_DOCUMENTS_MESSAGE = "No embedded documents found in this project"
NO_RESULTS_MESSAGE = "No relevant information found"


class ServiceContainer:
    """Lazily built services for one application instance."""

    def __init__(
        self,
        store: Optional[ChunkStore] = None,
        embedding_service: Optional[EmbeddingService] = None,
        chat_model: Optional[ChatModel] = None,
        classifier_model: Optional[ChatModel] = None,
    ):
        self._store = store
        self._embeddings = embedding_service
        self._chat_model = chat_model
        self._classifier_model = classifier_model
        self._retriever = None
        self._multi_hop = None
        self._agent = None
        self._classifier = None

    def get_store(self) -> ChunkStore:
        if self._store is None:
            store = ChunkStore()
            store.connect()
            self._store = store
        return self._store

    def get_retriever(self) -> HybridRetriever:
        if self._retriever is None:
            if self._embeddings is None:
                self._embeddings = EmbeddingService()
            self._retriever = HybridRetriever(self.get_store(), self._embeddings)
        return self._retriever

    def get_multi_hop(self) -> MultiHopRetriever:
        if self._multi_hop is None:
            self._multi_hop = MultiHopRetriever(self.get_retriever())
        return self._multi_hop

    def get_agent(self) -> LegalRAGAgent:
        if self._agent is None:
            model = os.getenv("AGENT_MODEL", "gpt-4o")
            if self._chat_model is None:
                self._chat_model = ChatModel(ChatModelConfig(model=model))
            self._agent = LegalRAGAgent(self.get_multi_hop(), self._chat_model, AgentConfig(model=model))
        return self._agent

    def get_classifier(self) -> QueryClassifier:
        if self._classifier is None:
            if self._classifier_model is None:
                self._classifier_model = ChatModel(ChatModelConfig(
                    model=os.getenv("CLASSIFIER_MODEL", "gpt-4o-mini"),
                    temperature=0.0,
                    timeout=15.0,
                ))
            self._classifier = QueryClassifier(self._classifier_model)
        return self._classifier


def _chunk_info(chunk: RetrievedChunk) -> ChunkInfo:
    return ChunkInfo(
        id=chunk.id,
        text=chunk.text,
        chunk_index=chunk.index,
        source_file=chunk.source_file,
        page_number=chunk.page_number,
        section_title=chunk.section_title,
        file_id=chunk.file_id,
        similarity=chunk.similarity,
        hop_number=chunk.hop_number,
    )


def _container(request: Request) -> ServiceContainer:
    return request.app.state.container


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the API around ``container`` (a fresh one when omitted)."""
    app = FastAPI(
        title="Regulation RAG API",
        description="Retrieval and agentic question answering over project regulation documents",
        version=__version__,
    )
    app.state.container = container or ServiceContainer()

    # Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Endpoints
    # =========================================================================

    @app.get("/api/v1/health", response_model=HealthResponse)
    def health_check(request: Request):
        """Health check endpoint."""
        try:
            _container(request).get_store()
            db_status = "connected"
        except Exception as e:
            logger.warning(f"Health check: database disconnected: {e}")
            db_status = "disconnected"

        return HealthResponse(status="ok", version=__version__, database=db_status)

    @app.post("/api/v1/projects/{project_id}/rag/retrieve", response_model=RetrieveResponse)
    def retrieve(project_id: str, body: RetrieveRequest, request: Request):
        """Single-shot vector or hybrid retrieval."""
        start = time.time()
        services = _container(request)
        try:
            if services.get_store().count_chunks(project_id) == 0:
                return RetrieveResponse(
                    chunks=[], count=0, message=NO_DOCUMENTS_MESSAGE,
                    latency_ms=(time.time() - start) * 1000,
                )

            chunks = services.get_retriever().find_relevant_content(
                project_id,
                body.query,
                top_k=body.top_k,
                similarity_threshold=body.similarity_threshold,
                use_hybrid_search=body.use_hybrid_search,
            )
        except Exception as e:
            logger.error(f"Retrieval failed for project {project_id}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Failed to retrieve content")

        return RetrieveResponse(
            chunks=[_chunk_info(c) for c in chunks],
            count=len(chunks),
            message=None if chunks else NO_RESULTS_MESSAGE,
            latency_ms=(time.time() - start) * 1000,
        )

    @app.post("/api/v1/projects/{project_id}/rag/multi-hop", response_model=MultiHopResponse)
    def multi_hop(project_id: str, body: MultiHopRequest, request: Request):
        """Retrieval that follows article and table references."""
        try:
            retriever = _container(request).get_multi_hop()
            result = retriever.retrieve(
                project_id,
                body.query,
                max_hops=body.max_hops,
                min_similarity=body.min_similarity,
                top_k_per_hop=body.top_k_per_hop,
                follow_table_references=body.follow_table_references,
                follow_article_references=body.follow_article_references,
            )
        except Exception as e:
            logger.error(f"Multi-hop retrieval failed for project {project_id}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Failed to retrieve content")

        chunks = retriever.rerank(result)
        return MultiHopResponse(
            chunks=[_chunk_info(c) for c in chunks],
            hops=[
                HopInfo(
                    hop_number=h.hop_number,
                    query=h.query,
                    chunk_ids=[c.id for c in h.retrieved_chunks],
                    detected_references=h.detected_references,
                )
                for h in result.hops
            ],
            total_hops=result.total_hops,
            followed_references=result.followed_references,
            execution_time_ms=result.execution_time_ms,
            message=None if chunks else NO_RESULTS_MESSAGE,
        )

    @app.get("/api/v1/projects/{project_id}/chunks/{chunk_id}/similar", response_model=list[ChunkInfo])
    def similar_chunks(project_id: str, chunk_id: str, request: Request, top_k: int = 3):
        """Related chunks for the sources panel."""
        top_k = max(1, min(top_k, 20))
        try:
            chunks = _container(request).get_retriever().find_similar_chunks(
                chunk_id, top_k=top_k, project_id=project_id
            )
        except Exception as e:
            logger.error(f"Similar-chunk lookup failed for {chunk_id}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Failed to find similar chunks")
        return [_chunk_info(c) for c in chunks]

    @app.post("/api/v1/projects/{project_id}/rag/agent", response_model=AgentResponse)
    def agent_query(project_id: str, body: AgentRequest, request: Request):
        """Answer a question with the tool-calling agent."""
        try:
            result = _container(request).get_agent().query(
                project_id, body.query, max_steps=body.max_steps, model=body.model
            )
        except AgentError as e:
            logger.error(f"Agent failed for project {project_id}: {e}")
            raise HTTPException(status_code=502, detail=str(e))
        except Exception as e:
            logger.error(f"Agent setup failed for project {project_id}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Agent unavailable")

        return AgentResponse(
            answer=result.answer,
            confidence=result.confidence,
            reasoning=result.reasoning,
            sources=[_chunk_info(c) for c in result.sources],
            steps=[AgentStepInfo(**s.to_dict()) for s in result.steps],
            execution_time_ms=result.execution_time_ms,
        )

    @app.post("/api/v1/rag/classify-query", response_model=ClassifyResponse)
    def classify_query(body: ClassifyRequest, request: Request):
        """Decide whether a question needs the document agent."""
        result = _container(request).get_classifier().classify(body.query)
        return ClassifyResponse(
            is_document_related=result.is_document_related,
            confidence=result.confidence,
            reasoning=result.reasoning,
        )

    @app.post("/api/v1/rag/format", response_model=FormatResponse)
    def format_chunk(body: FormatRequest):
        """Render raw chunk text as Markdown or HTML."""
        content = format_rag_table_content(body.text)
        if body.output == "html":
            return FormatResponse(
                formatted_text=format_rag_source_text(body.text),
                has_table=content.has_table,
                table_summaries=content.table_summaries,
            )
        return FormatResponse(
            formatted_text=content.formatted_text,
            has_table=content.has_table,
            table_summaries=content.table_summaries,
        )

    return app


app = create_app()
