"""
Tests for execution/regulation_rag/multi_hop.py

Covers: the article -> table follow-up scenario, follow-up selection,
        termination, de-duplication, hop-decay reranking, option flags.

Runs against the in-memory Bouwbesluit corpus from conftest and against
scripted MagicMock retrievers.
"""

from unittest.mock import MagicMock

import pytest


def _chunk(chunk_id, text, similarity=0.8, source_file="bouwbesluit.pdf", section_title=None):
    from execution.regulation_rag.vector_store import RetrievedChunk
    return RetrievedChunk(
        id=chunk_id, text=text, index=0, source_file=source_file,
        similarity=similarity, section_title=section_title,
    )


def _scripted(responses):
    """Multi-hop retriever whose underlying retriever answers per query."""
    from execution.regulation_rag.multi_hop import MultiHopRetriever
    retriever = MagicMock()
    retriever.find_relevant_content.side_effect = lambda project_id, query, **kw: list(responses.get(query, []))
    return MultiHopRetriever(retriever), retriever


def _queries(retriever):
    return [c.args[1] for c in retriever.find_relevant_content.call_args_list]


# ---------------------------------------------------------------------------
# End-to-end scenario on the sample corpus
# ---------------------------------------------------------------------------

QUERY = "minimale vrije verdiepingshoogte woning"


class TestArticleToTableScenario:
    """Hop 0 finds the article, hop 1 finds the table it cites."""

    def test_follows_table_reference(self, multi_hop_retriever):
        from tests.conftest import PROJECT_A
        result = multi_hop_retriever.retrieve(PROJECT_A, QUERY, max_hops=3)

        assert [c.id for c in result.hops[0].retrieved_chunks] == ["art-4-164"]
        assert result.hops[0].detected_references == ["Tabel 4.162", "Artikel 4.164"]
        assert result.followed_references == ["Tabel 4.162"]
        assert result.total_hops == 2
        assert result.hops[1].query == "Tabel 4.162"
        assert [c.id for c in result.all_chunks] == ["art-4-164", "tab-4-162"]

    def test_never_leaves_project(self, multi_hop_retriever, bouwbesluit_store):
        from tests.conftest import PROJECT_A, PROJECT_B
        result = multi_hop_retriever.retrieve(PROJECT_A, QUERY)
        assert all(c.project_id == PROJECT_A for c in result.all_chunks)
        assert set(bouwbesluit_store.search_calls) == {PROJECT_A}
        assert PROJECT_B not in bouwbesluit_store.keyword_calls

    def test_rerank_penalises_later_hops(self, multi_hop_retriever):
        from tests.conftest import PROJECT_A
        result = multi_hop_retriever.retrieve(PROJECT_A, QUERY)
        ranked = multi_hop_retriever.rerank(result)

        table = next(c for c in ranked if c.id == "tab-4-162")
        assert table.hop_number == 1
        assert table.similarity == pytest.approx(table.metadata["original_similarity"] / 1.3)
        article = next(c for c in ranked if c.id == "art-4-164")
        assert article.hop_number == 0
        assert article.similarity == article.metadata["original_similarity"]

    def test_single_hop_budget(self, multi_hop_retriever):
        from tests.conftest import PROJECT_A
        result = multi_hop_retriever.retrieve(PROJECT_A, QUERY, max_hops=1)
        assert result.total_hops == 1
        assert result.followed_references == []

    def test_table_following_disabled(self, multi_hop_retriever):
        from tests.conftest import PROJECT_A
        result = multi_hop_retriever.retrieve(PROJECT_A, QUERY, follow_table_references=False)
        assert result.total_hops == 1
        assert [c.id for c in result.all_chunks] == ["art-4-164"]

    def test_no_results(self, multi_hop_retriever):
        from tests.conftest import PROJECT_A
        result = multi_hop_retriever.retrieve(PROJECT_A, "parkeerplaatsen fietsenstalling")
        assert result.all_chunks == []
        assert result.total_hops == 1


# ---------------------------------------------------------------------------
# Follow-up selection
# ---------------------------------------------------------------------------

class TestAlreadyHaveReference:
    """Only chunks that *are* the reference count as resolved."""

    def test_heading_counts(self):
        from execution.regulation_rag.multi_hop import MultiHopRetriever
        from execution.regulation_rag.references import Reference, ARTICLE
        mh = MultiHopRetriever(MagicMock())
        chunks = [_chunk("a", "Artikel 4.164 Hoogte verblijfsgebied\n1. tekst")]
        assert mh._already_have_reference(Reference(ARTICLE, "4.164"), chunks)

    def test_markdown_heading_counts(self):
        from execution.regulation_rag.multi_hop import MultiHopRetriever
        from execution.regulation_rag.references import Reference, TABLE
        mh = MultiHopRetriever(MagicMock())
        chunks = [_chunk("a", "intro\n## Tabel 4.162 Afmetingen")]
        assert mh._already_have_reference(Reference(TABLE, "4.162"), chunks)

    def test_running_text_citation_does_not_count(self):
        from execution.regulation_rag.multi_hop import MultiHopRetriever
        from execution.regulation_rag.references import Reference, TABLE
        mh = MultiHopRetriever(MagicMock())
        chunks = [_chunk("a", "1. de in tabel 4.162 aangegeven waarde")]
        assert not mh._already_have_reference(Reference(TABLE, "4.162"), chunks)

    def test_section_title_counts(self):
        from execution.regulation_rag.multi_hop import MultiHopRetriever
        from execution.regulation_rag.references import Reference, ARTICLE
        mh = MultiHopRetriever(MagicMock())
        chunks = [_chunk("a", "lid 2 ...", section_title="Artikel 2.1 Sterkte")]
        assert mh._already_have_reference(Reference(ARTICLE, "2.1"), chunks)


class TestFollowUpControl:
    """Termination, ordering and de-duplication."""

    def test_each_reference_followed_once(self):
        mh, retriever = _scripted({
            "q": [_chunk("a", "zie tabel 9.9")],
            "Tabel 9.9": [_chunk("b", "zie tabel 9.9 en artikel 1.1")],
            "Artikel 1.1": [_chunk("c", "opnieuw tabel 9.9")],
        })

        result = mh.retrieve("p1", "q", max_hops=5)

        assert _queries(retriever) == ["q", "Tabel 9.9", "Artikel 1.1"]
        assert result.followed_references == ["Tabel 9.9", "Artikel 1.1"]
        assert result.total_hops == 3

    def test_tables_followed_before_articles(self):
        mh, retriever = _scripted({
            "q": [_chunk("a", "volgens artikel 1.2 en tabel 3.4")],
        })
        mh.retrieve("p1", "q", max_hops=2)
        assert _queries(retriever) == ["q", "Tabel 3.4", "Artikel 1.2"]

    def test_stops_when_hop_finds_nothing_new(self):
        mh, retriever = _scripted({
            "q": [_chunk("a", "zie tabel 1.1")],
            "Tabel 1.1": [_chunk("a", "zie tabel 1.1")],
        })
        result = mh.retrieve("p1", "q", max_hops=3)
        assert result.total_hops == 1
        assert _queries(retriever) == ["q", "Tabel 1.1"]

    def test_chunks_unique_within_and_across_hops(self):
        mh, _ = _scripted({
            "q": [_chunk("c1", "zie tabel 1.1 en tabel 1.2")],
            "Tabel 1.1": [_chunk("c1", "dup"), _chunk("c2", "tabel data")],
            "Tabel 1.2": [_chunk("c2", "tabel data"), _chunk("c3", "meer data")],
        })
        result = mh.retrieve("p1", "q", max_hops=2)

        ids = [c.id for c in result.all_chunks]
        assert ids == ["c1", "c2", "c3"]
        assert [c.id for c in result.hops[1].retrieved_chunks] == ["c2", "c3"]
        assert result.hops[1].query == "Tabel 1.1, Tabel 1.2"

    def test_follow_up_parameters(self):
        mh, retriever = _scripted({"q": [_chunk("a", "zie tabel 1.1")]})
        mh.retrieve("p1", "q", max_hops=2, min_similarity=0.4, top_k_per_hop=7)

        first, follow_up = retriever.find_relevant_content.call_args_list
        assert first.kwargs == {"top_k": 7, "similarity_threshold": 0.4, "use_hybrid_search": True}
        assert follow_up.kwargs == {"top_k": 3, "similarity_threshold": 0.4, "use_hybrid_search": True}

    def test_article_following_disabled(self):
        mh, retriever = _scripted({"q": [_chunk("a", "volgens artikel 1.2")]})
        result = mh.retrieve("p1", "q", follow_article_references=False)
        assert _queries(retriever) == ["q"]
        assert result.total_hops == 1


# ---------------------------------------------------------------------------
# Reranking
# ---------------------------------------------------------------------------

class TestRerank:
    """Hop-decay penalty."""

    def test_decay_and_order(self):
        from execution.regulation_rag.multi_hop import MultiHopRetriever, MultiHopResult, HopRecord
        a = _chunk("a", "x", similarity=0.6)
        b = _chunk("b", "y", similarity=0.9)
        c = _chunk("c", "z", similarity=0.7)
        result = MultiHopResult(
            all_chunks=[a, b, c],
            hops=[
                HopRecord(0, "q", [a], []),
                HopRecord(1, "Tabel 1.1", [b], []),
                HopRecord(2, "Artikel 1.2", [c], []),
            ],
            total_hops=3,
            execution_time_ms=1,
        )

        ranked = MultiHopRetriever(MagicMock()).rerank(result)

        scores = {r.id: r.similarity for r in ranked}
        assert scores["a"] == pytest.approx(0.6)
        assert scores["b"] == pytest.approx(0.9 / 1.3)
        assert scores["c"] == pytest.approx(0.7 / 1.6)
        assert [r.id for r in ranked] == ["b", "a", "c"]
        # Originals untouched
        assert b.similarity == 0.9
        assert b.metadata == {}

    def test_multi_hop_retrieve_combines(self):
        mh, _ = _scripted({"q": [_chunk("a", "geen verwijzingen", similarity=0.5)]})
        chunks = mh.multi_hop_retrieve("p1", "q", max_hops=2)
        assert [(c.id, c.hop_number) for c in chunks] == [("a", 0)]
