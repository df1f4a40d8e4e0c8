"""
Shared fixtures and test utilities for Regulation RAG tests.

Provides mock services, a Bouwbesluit sample corpus and a scripted OpenAI
client so that all tests run without API keys, databases, or network access.
"""

import re
import sys
import json
import uuid
import hashlib
from pathlib import Path
from types import SimpleNamespace
from dataclasses import replace

import numpy as np
import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

PROJECT_A = "11111111-1111-1111-1111-111111111111"
PROJECT_B = "22222222-2222-2222-2222-222222222222"

_TOKEN = re.compile(r"[\w.]+")


def tokenize(text):
    return [t.strip(".").lower() for t in _TOKEN.findall(text or "") if t.strip(".")]


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic bag-of-words embeddings -- never calls external APIs.

    Every token maps to a sha256-seeded random +/-1 vector, so texts sharing
    tokens are similar and texts sharing none are near-orthogonal.
    """

    def __init__(self, dimensions=1536):
        self._dimensions = dimensions
        self._call_count = 0
        self.queries = []

    def embed_query(self, query):
        self._call_count += 1
        self.queries.append(query)
        return self.embed_text(query)

    def embed_text(self, text):
        vector = np.zeros(self._dimensions)
        for token in tokenize(text):
            seed = int(hashlib.sha256(token.encode()).hexdigest()[:8], 16)
            vector += np.random.default_rng(seed).choice([-1.0, 1.0], size=self._dimensions)
        return vector.tolist()

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService(dimensions=1536)


# ---------------------------------------------------------------------------
# Mock chunk store (no database needed)
# ---------------------------------------------------------------------------

def _cosine(a, b):
    a_arr = np.array(a)
    b_arr = np.array(b)
    norm = np.linalg.norm(a_arr) * np.linalg.norm(b_arr)
    if norm == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / norm)


class MockChunkStore:
    """In-memory mock of ChunkStore for testing without PostgreSQL."""

    def __init__(self, embedding_service):
        self._embeddings = embedding_service
        self._chunks = {}
        self.search_calls = []
        self.keyword_calls = []

    def add_chunk(self, project_id, text, source_file="bouwbesluit.pdf",
                  embedding_text=None, chunk_id=None, section_title=None):
        """Store a chunk; ``embedding_text`` stands in for what the chunk is about."""
        from execution.regulation_rag.vector_store import RetrievedChunk
        chunk_id = chunk_id or str(uuid.uuid4())
        index = sum(1 for c, _ in self._chunks.values() if c.project_id == project_id)
        chunk = RetrievedChunk(
            id=chunk_id,
            text=text,
            index=index,
            source_file=source_file,
            similarity=0.0,
            file_id=f"file-{source_file}",
            project_id=project_id,
            section_title=section_title,
        )
        embedding = self._embeddings.embed_text(embedding_text or text)
        self._chunks[chunk_id] = (chunk, embedding)
        return chunk_id

    def connect(self):
        pass

    def close(self):
        pass

    def search(self, project_id, query_embedding, top_k=5, threshold=None, exclude_chunk_id=None):
        self.search_calls.append(project_id)
        scored = []
        for chunk, embedding in self._chunks.values():
            if chunk.project_id != project_id or chunk.id == exclude_chunk_id:
                continue
            similarity = _cosine(query_embedding, embedding)
            if threshold is not None and similarity < threshold:
                continue
            scored.append(replace(chunk, similarity=similarity, metadata={}))
        scored.sort(key=lambda c: c.similarity, reverse=True)
        return scored[:top_k]

    def keyword_search(self, project_id, query, top_k=5, fts_language=None):
        self.keyword_calls.append(project_id)
        terms = set(tokenize(query))
        results = []
        for chunk, _ in self._chunks.values():
            if chunk.project_id != project_id or not terms:
                continue
            tokens = tokenize(chunk.text)
            # plainto_tsquery ANDs every term
            if terms.issubset(tokens):
                rank = sum(tokens.count(t) for t in terms) / (len(tokens) or 1)
                results.append(replace(chunk, similarity=rank, metadata={}))
        results.sort(key=lambda c: c.similarity, reverse=True)
        return results[:top_k]

    def get_chunk_embedding(self, chunk_id, project_id=None):
        if chunk_id not in self._chunks:
            return None
        chunk, embedding = self._chunks[chunk_id]
        if project_id and chunk.project_id != project_id:
            return None
        return embedding, chunk.project_id

    def count_chunks(self, project_id):
        return sum(1 for c, _ in self._chunks.values() if c.project_id == project_id)


@pytest.fixture
def mock_chunk_store(mock_embedding_service):
    return MockChunkStore(mock_embedding_service)


# ---------------------------------------------------------------------------
# Bouwbesluit sample corpus
# ---------------------------------------------------------------------------

ARTICLE_4_164 = """Artikel 4.164 Hoogte verblijfsgebied
1. Een verblijfsgebied heeft boven de vloer een vrije hoogte van ten minste de in tabel 4.162 aangegeven waarde.
2. Een verblijfsruimte heeft een vrije hoogte van ten minste 2,6 m."""

TABLE_4_162 = """Tabel 4.162 Afmetingen verblijfsgebied en verblijfsruimte
--- Tabel Details ---
| Gebruiksfunctie | Hoogte [m] |
| --- | --- |
| woonwagen | 2,2 |
| andere woonfunctie | 2,6 |
--- Tabel Samenvatting (Semantisch Verrijkt) ---
"De minimale vrije hoogte voor een andere woonfunctie is 2,6 m."
"Voor een woonwagen geldt een minimale hoogte van 2,2 m."
"""

ARTICLE_2_1 = """Artikel 2.1 Sterkte bij fundamentele belastingcombinaties
1. Een bouwconstructie bezwijkt niet bij de fundamentele belastingcombinaties."""


@pytest.fixture
def bouwbesluit_store(mock_chunk_store):
    """Two projects: A holds the article/table pair, B holds a look-alike table."""
    store = mock_chunk_store
    store.add_chunk(
        PROJECT_A, ARTICLE_4_164, source_file="bouwbesluit-h4.pdf",
        embedding_text="minimale vrije verdiepingshoogte woning verblijfsgebied",
        chunk_id="art-4-164",
    )
    store.add_chunk(
        PROJECT_A, TABLE_4_162, source_file="bouwbesluit-h4.pdf",
        embedding_text="Tabel 4.162", chunk_id="tab-4-162",
    )
    store.add_chunk(
        PROJECT_A, ARTICLE_2_1, source_file="bouwbesluit-h2.pdf",
        embedding_text="sterkte bouwconstructie belastingcombinaties", chunk_id="art-2-1",
    )
    store.add_chunk(
        PROJECT_B, TABLE_4_162, source_file="other-tenant.pdf",
        embedding_text="Tabel 4.162 minimale vrije verdiepingshoogte woning", chunk_id="b-tab-4-162",
    )
    return store


@pytest.fixture
def retriever(bouwbesluit_store, mock_embedding_service):
    from execution.regulation_rag.retriever import HybridRetriever
    return HybridRetriever(bouwbesluit_store, mock_embedding_service)


@pytest.fixture
def multi_hop_retriever(retriever):
    from execution.regulation_rag.multi_hop import MultiHopRetriever
    return MultiHopRetriever(retriever)


# ---------------------------------------------------------------------------
# Scripted OpenAI client
# ---------------------------------------------------------------------------

def make_tool_call(name, arguments, call_id=None):
    """SDK-shaped tool call; ``arguments`` may be a dict or a raw string."""
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return SimpleNamespace(
        id=call_id or f"call_{uuid.uuid4().hex[:8]}",
        type="function",
        function=SimpleNamespace(name=name, arguments=arguments),
    )


def make_response(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls or None)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class ScriptedOpenAI:
    """Stands in for ``openai.OpenAI``; replays canned chat responses in order.

    Items may be responses or exceptions (raised when reached). Once the
    script is exhausted a plain "done" response is returned.
    """

    def __init__(self, responses=None, embeddings=None):
        self._responses = list(responses or [])
        self.requests = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
        self.embeddings = SimpleNamespace(create=self._embed)
        self._embedding = embeddings

    def _create(self, **kwargs):
        # Snapshot messages: the caller keeps appending to the same list
        self.requests.append({**kwargs, "messages": [dict(m) for m in kwargs.get("messages", [])]})
        if not self._responses:
            return make_response("done")
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def _embed(self, **kwargs):
        self.requests.append(kwargs)
        return SimpleNamespace(data=[SimpleNamespace(embedding=self._embedding)])


@pytest.fixture
def scripted_openai():
    return ScriptedOpenAI
