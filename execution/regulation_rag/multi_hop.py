"""
Multi-Hop Retrieval for Regulation Documents

Single-shot retrieval finds "Artikel 4.164" but not "Tabel 4.162" that the
article points to. The multi-hop retriever scans retrieved text for
cross-references and issues follow-up queries for the ones not yet
covered, feeding each hop's new chunks into the next scan.

Termination: every reference is queried at most once per run, and a hop
that yields no new chunks (or has nothing left to follow) ends the loop.
"""

import re
import time
import logging
from typing import Optional
from dataclasses import dataclass, field, replace

from .vector_store import RetrievedChunk
from .retriever import HybridRetriever
from .references import Reference, ReferenceDetector, DutchLegalReferenceDetector, TABLE, ARTICLE

logger = logging.getLogger(__name__)

# Later hops are penalised: adjusted = similarity / (1 + hop * HOP_DECAY)
HOP_DECAY = 0.3
FOLLOW_UP_TOP_K = 3


@dataclass
class HopRecord:
    """One hop: the query (or joined follow-up queries) and what it found."""
    hop_number: int
    query: str
    retrieved_chunks: list[RetrievedChunk]
    detected_references: list[str]


@dataclass
class MultiHopResult:
    all_chunks: list[RetrievedChunk]
    hops: list[HopRecord]
    total_hops: int
    execution_time_ms: int
    # Every reference label a follow-up query was issued for, in order
    followed_references: list[str] = field(default_factory=list)


class MultiHopRetriever:
    """
    Iterative retrieval that follows article and table references.

    Hop 0 runs the user query; hops 1..max_hops-1 run one query per
    unresolved reference (``"Tabel X.Y"`` / ``"Artikel X.Y"``).
    """

    def __init__(
        self,
        retriever: HybridRetriever,
        detector: Optional[ReferenceDetector] = None,
    ):
        self.retriever = retriever
        self.detector = detector or DutchLegalReferenceDetector()

    def _extract_references(self, chunks: list[RetrievedChunk]) -> list[Reference]:
        refs: list[Reference] = []
        for chunk in chunks:
            for ref in self.detector.detect_references(chunk.text):
                if ref not in refs:
                    refs.append(ref)
        return refs

    def _already_have_reference(self, reference: Reference, chunks: list[RetrievedChunk]) -> bool:
        """True when a retrieved chunk *is* the referenced article/table.

        A chunk that merely cites the reference in running text does not
        count. The reference must name the chunk's source file or section,
        or open one of its lines (a heading or table caption).
        """
        pattern = self.detector.mention_pattern(reference)
        heading = re.compile(r"^[\s#*|>-]*" + pattern.pattern, re.IGNORECASE | re.MULTILINE)

        for chunk in chunks:
            if pattern.search(chunk.source_file or "") or pattern.search(chunk.section_title or ""):
                return True
            if heading.search(chunk.text or ""):
                return True
        return False

    def _follow_up_references(
        self,
        candidates: list[Reference],
        existing_chunks: list[RetrievedChunk],
        followed: set[Reference],
        follow_table_references: bool,
        follow_article_references: bool,
    ) -> list[Reference]:
        selected = []
        # Tables first: they carry the normative values articles point to
        for kind, enabled in ((TABLE, follow_table_references), (ARTICLE, follow_article_references)):
            if not enabled:
                continue
            for ref in candidates:
                if ref.kind != kind or ref in followed:
                    continue
                if self._already_have_reference(ref, existing_chunks):
                    logger.debug(f"[Multi-Hop] Already have {ref.label}, skipping")
                    continue
                selected.append(ref)
        return selected

    def retrieve(
        self,
        project_id: str,
        initial_query: str,
        max_hops: int = 3,
        min_similarity: float = 0.3,
        top_k_per_hop: int = 5,
        follow_table_references: bool = True,
        follow_article_references: bool = True,
    ) -> MultiHopResult:
        """
        Execute multi-hop retrieval.

        Args:
            project_id: Tenant scope
            initial_query: User query for hop 0
            max_hops: Hop budget, hop 0 included
            min_similarity: Threshold for every hop (looser than single-shot)
            top_k_per_hop: top_k for hop 0; follow-ups use a fixed smaller top_k
            follow_table_references: Follow "tabel X.Y" references
            follow_article_references: Follow "artikel X.Y" references

        Returns:
            MultiHopResult with chunks in discovery order, unique by id
        """
        start_time = time.time()
        max_hops = max(1, max_hops)

        logger.info(f"[Multi-Hop] Starting retrieval for: '{initial_query[:100]}'")
        logger.info(f"[Multi-Hop] Max hops: {max_hops}, Top-K per hop: {top_k_per_hop}")

        initial_results = self.retriever.find_relevant_content(
            project_id,
            initial_query,
            top_k=top_k_per_hop,
            similarity_threshold=min_similarity,
            use_hybrid_search=True,
        )

        all_chunks: list[RetrievedChunk] = []
        seen_ids: set[str] = set()
        for chunk in initial_results:
            if chunk.id not in seen_ids:
                seen_ids.add(chunk.id)
                all_chunks.append(chunk)

        current_refs = self._extract_references(all_chunks)
        logger.info(f"[Multi-Hop] Hop 0: {len(all_chunks)} chunks, {len(current_refs)} references")

        hops = [HopRecord(
            hop_number=0,
            query=initial_query,
            retrieved_chunks=list(all_chunks),
            detected_references=[r.label for r in current_refs],
        )]

        followed: set[Reference] = set()
        followed_log: list[str] = []

        for hop_num in range(1, max_hops):
            follow_ups = self._follow_up_references(
                current_refs,
                all_chunks,
                followed,
                follow_table_references,
                follow_article_references,
            )

            if not follow_ups:
                logger.info(f"[Multi-Hop] Hop {hop_num}: No more references to follow, stopping")
                break

            queries = []
            new_chunks: list[RetrievedChunk] = []
            duplicates = 0

            for ref in follow_ups:
                followed.add(ref)
                followed_log.append(ref.label)
                query = self.detector.query_for(ref)
                queries.append(query)
                logger.info(f"[Multi-Hop] Hop {hop_num}: Searching for '{query}'")

                results = self.retriever.find_relevant_content(
                    project_id,
                    query,
                    top_k=FOLLOW_UP_TOP_K,
                    similarity_threshold=min_similarity,
                    use_hybrid_search=True,
                )
                for chunk in results:
                    if chunk.id in seen_ids:
                        duplicates += 1
                        continue
                    seen_ids.add(chunk.id)
                    new_chunks.append(chunk)

            logger.info(
                f"[Multi-Hop] Hop {hop_num}: Retrieved {len(new_chunks)} new chunks "
                f"({duplicates} duplicates)"
            )

            if not new_chunks:
                logger.info(f"[Multi-Hop] Hop {hop_num}: No new chunks found, stopping")
                break

            all_chunks.extend(new_chunks)
            current_refs = self._extract_references(new_chunks)

            hops.append(HopRecord(
                hop_number=hop_num,
                query=", ".join(queries),
                retrieved_chunks=new_chunks,
                detected_references=[r.label for r in current_refs],
            ))

        execution_time_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"[Multi-Hop] Complete: {len(all_chunks)} total chunks in {len(hops)} hops "
            f"({execution_time_ms}ms)"
        )

        return MultiHopResult(
            all_chunks=all_chunks,
            hops=hops,
            total_hops=len(hops),
            execution_time_ms=execution_time_ms,
            followed_references=followed_log,
        )

    def rerank(self, result: MultiHopResult) -> list[RetrievedChunk]:
        """
        Apply the hop-decay penalty and sort by adjusted score.

        Returns copies with ``similarity`` replaced by the adjusted score and
        ``hop_number`` / ``original_similarity`` recorded in metadata.
        """
        hop_of = {}
        for hop in result.hops:
            for chunk in hop.retrieved_chunks:
                hop_of.setdefault(chunk.id, hop.hop_number)

        ranked = []
        for chunk in result.all_chunks:
            hop_number = hop_of.get(chunk.id, 0)
            adjusted = chunk.similarity * (1.0 / (1 + hop_number * HOP_DECAY))
            ranked.append(replace(
                chunk,
                similarity=adjusted,
                metadata={
                    **chunk.metadata,
                    "hop_number": hop_number,
                    "original_similarity": chunk.similarity,
                },
            ))

        ranked.sort(key=lambda c: c.similarity, reverse=True)
        return ranked

    def multi_hop_retrieve(self, project_id: str, query: str, **options) -> list[RetrievedChunk]:
        """``retrieve`` followed by ``rerank``."""
        return self.rerank(self.retrieve(project_id, query, **options))
