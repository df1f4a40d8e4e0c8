"""
Hybrid Retriever for Regulation Documents

Combines semantic (vector) search with keyword (ts_rank) search
using Reciprocal Rank Fusion.

Hybrid mode ranks by the fused RRF score but gates on the vector
similarity: a chunk that only the keyword search found falls back to its
fused score, which is far below any useful threshold, so it is normally
dropped. Hybrid mode can therefore return fewer than ``top_k`` chunks.
"""

import logging
from typing import Optional
from dataclasses import dataclass, replace

from .vector_store import ChunkStore, RetrievedChunk
from .embeddings import EmbeddingService
from .language_patterns import DEFAULT_FTS_CONFIG

logger = logging.getLogger(__name__)


@dataclass
class RetrievalConfig:
    """Configuration for hybrid retrieval."""
    top_k: int = 5
    similarity_threshold: float = 0.7
    use_hybrid_search: bool = True

    # RRF parameter (higher = flatter contribution across ranks)
    rrf_k: int = 60

    # Each strategy fetches top_k * candidate_multiplier candidates before fusion
    candidate_multiplier: int = 2

    fts_language: str = DEFAULT_FTS_CONFIG


class HybridRetriever:
    """
    Tenant-scoped retrieval over project document chunks.

    Pipeline:
    1. Embed the query (one call per invocation)
    2. Vector search, or vector + keyword search in hybrid mode
    3. Reciprocal Rank Fusion to combine the two rankings
    4. Re-filter the fused top-k on similarity threshold
    """

    def __init__(
        self,
        store: ChunkStore,
        embedding_service: EmbeddingService,
        config: Optional[RetrievalConfig] = None,
    ):
        """
        Initialize retriever.

        Args:
            store: Chunk store instance
            embedding_service: Query embedding service
            config: Optional retrieval configuration (per-call arguments override it)
        """
        self.store = store
        self.embeddings = embedding_service
        self.config = config or RetrievalConfig()

    def find_relevant_content(
        self,
        project_id: str,
        query: str,
        top_k: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        use_hybrid_search: Optional[bool] = None,
    ) -> list[RetrievedChunk]:
        """
        Retrieve chunks relevant to a query within one project.

        Args:
            project_id: Tenant scope
            query: Natural-language query
            top_k: Maximum number of chunks to return
            similarity_threshold: Minimum similarity (0-1)
            use_hybrid_search: Fuse vector and keyword rankings

        Returns:
            Ranked chunks; an empty list when nothing meets the threshold.
        """
        top_k = top_k if top_k is not None else self.config.top_k
        threshold = (
            similarity_threshold if similarity_threshold is not None
            else self.config.similarity_threshold
        )
        hybrid = use_hybrid_search if use_hybrid_search is not None else self.config.use_hybrid_search

        logger.info(
            f"Retrieving for project {project_id}: '{query[:100]}' "
            f"(top_k={top_k}, threshold={threshold}, hybrid={hybrid})"
        )

        query_embedding = self.embeddings.embed_query(query)

        if hybrid:
            results = self._hybrid_search(project_id, query, query_embedding, top_k, threshold)
        else:
            results = self._vector_search(project_id, query_embedding, top_k, threshold)

        avg = sum(r.similarity for r in results) / len(results) if results else 0.0
        logger.info(f"Retrieved {len(results)} chunks with avg similarity {avg:.3f}")
        return results

    def _vector_search(
        self,
        project_id: str,
        query_embedding: list[float],
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        return self.store.search(project_id, query_embedding, top_k=top_k, threshold=threshold)

    def _hybrid_search(
        self,
        project_id: str,
        query: str,
        query_embedding: list[float],
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        """
        Fetch top_k*2 candidates from each strategy, fuse, keep top_k, re-filter.
        """
        candidates = top_k * self.config.candidate_multiplier

        # Vector candidates are not threshold-filtered; the gate runs after fusion
        vector_results = self.store.search(project_id, query_embedding, top_k=candidates)
        keyword_results = self.store.keyword_search(
            project_id, query, top_k=candidates, fts_language=self.config.fts_language
        )
        logger.debug(
            f"Hybrid candidates: {len(vector_results)} vector, {len(keyword_results)} keyword"
        )

        fused = self._reciprocal_rank_fusion(vector_results, keyword_results)[:top_k]

        filtered = [r for r in fused if r.similarity >= threshold]
        if len(filtered) < len(fused):
            logger.debug(f"Threshold {threshold} dropped {len(fused) - len(filtered)} fused results")
        return filtered

    def _reciprocal_rank_fusion(
        self,
        vector_results: list[RetrievedChunk],
        keyword_results: list[RetrievedChunk],
    ) -> list[RetrievedChunk]:
        """
        Combine results using Reciprocal Rank Fusion.

        RRF score = sum(1 / (k + rank)) across result lists, rank 0-based.
        Results are ordered by the fused score. Each copy carries the vector
        similarity as ``similarity`` when vector search saw the chunk, and
        the fused score otherwise.
        """
        k = self.config.rrf_k
        scores: dict[str, float] = {}
        result_map: dict[str, RetrievedChunk] = {}
        vector_scores: dict[str, float] = {}
        keyword_scores: dict[str, float] = {}

        for rank, result in enumerate(vector_results):
            scores[result.id] = scores.get(result.id, 0.0) + 1.0 / (k + rank)
            result_map[result.id] = result
            vector_scores[result.id] = result.similarity

        for rank, result in enumerate(keyword_results):
            scores[result.id] = scores.get(result.id, 0.0) + 1.0 / (k + rank)
            keyword_scores[result.id] = result.similarity
            if result.id not in result_map:
                result_map[result.id] = result

        # sorted() is stable, so ties keep first-seen (vector) order
        sorted_ids = sorted(scores.keys(), key=lambda x: scores[x], reverse=True)

        # Copies, so callers never see mutated store results
        results = []
        for chunk_id in sorted_ids:
            original = result_map[chunk_id]
            vector_similarity = vector_scores.get(chunk_id)
            new_metadata = {
                **original.metadata,
                "rrf_score": scores[chunk_id],
                "vector_similarity": vector_similarity,
                "keyword_score": keyword_scores.get(chunk_id),
            }
            similarity = vector_similarity if vector_similarity is not None else scores[chunk_id]
            results.append(replace(original, similarity=similarity, metadata=new_metadata))

        return results

    def find_similar_chunks(
        self,
        chunk_id: str,
        top_k: int = 3,
        project_id: Optional[str] = None,
    ) -> list[RetrievedChunk]:
        """
        Nearest neighbours of a stored chunk within its own project.

        Args:
            chunk_id: Source chunk
            top_k: Number of neighbours
            project_id: When given, the source chunk must belong to this project

        Returns:
            Neighbour chunks, excluding the source; empty if the chunk is unknown.
        """
        found = self.store.get_chunk_embedding(chunk_id, project_id=project_id)
        if found is None:
            logger.info(f"Chunk {chunk_id} not found, no similar chunks")
            return []

        embedding, owner_project_id = found
        return self.store.search(
            owner_project_id, embedding, top_k=top_k, exclude_chunk_id=chunk_id
        )


# CLI for testing
if __name__ == "__main__":
    import os
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    store = ChunkStore()
    store.connect()

    retriever = HybridRetriever(store, EmbeddingService())

    project_id = os.getenv("PROJECT_ID", "")
    query = sys.argv[1] if len(sys.argv) > 1 else "minimale vrije verdiepingshoogte woonfunctie"

    print(f"\nSearching project {project_id} for: {query}")
    print("-" * 50)

    results = retriever.find_relevant_content(project_id, query, top_k=5, similarity_threshold=0.3)

    for i, result in enumerate(results, 1):
        print(f"\n{i}. [{result.source_file}] (similarity: {result.similarity:.4f})")
        print(f"   Section: {result.section_title}")
        print(f"   Preview: {result.text[:200]}...")

    store.close()
