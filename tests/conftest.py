"""Shared fixtures for doc-graph tests."""

from __future__ import annotations

import hashlib
from typing import Any, List, Optional

import pytest

from doc_graph.entities import EntityExtractor
from doc_graph.llm import LLMOutcome
from doc_graph.memory_store import InMemoryStorage
from doc_graph.models import Document, Entity, Relationship
from doc_graph.relations import RelationExtractor
from doc_graph.storage import SQLiteStorage
from doc_graph.tokenizer import Tokenizer


# ---------------------------------------------------------------------------
# Ensure no real API calls leak out
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch, tmp_path):
    """Point the default DB at a temp dir and disable remote services."""
    monkeypatch.setenv("DOC_GRAPH_DB", str(tmp_path / "default.sqlite"))
    monkeypatch.delenv("DOC_GRAPH_CONFIG", raising=False)
    monkeypatch.delenv("DOC_GRAPH_LLM_ENDPOINT", raising=False)
    monkeypatch.delenv("DOC_GRAPH_EMBEDDING_API_KEY", raising=False)


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sqlite_storage(tmp_path):
    """Fresh SQLiteStorage backed by a temp file."""
    s = SQLiteStorage(db_path=str(tmp_path / "test.sqlite"))
    yield s
    s.close()


@pytest.fixture
def memory_storage():
    return InMemoryStorage()


@pytest.fixture(params=["sqlite", "memory"])
def storage(request, tmp_path):
    """Run the test once per storage backend."""
    if request.param == "sqlite":
        s = SQLiteStorage(db_path=str(tmp_path / "param.sqlite"))
    else:
        s = InMemoryStorage()
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeLLM:
    """Stands in for ``ChatCompletionClient``: replays canned outcomes.

    ``replies`` items are either a list (success) or a string (failure
    message).  The last reply repeats once the list is exhausted.
    """

    def __init__(self, *replies: Any):
        self.replies = list(replies) or [[]]
        self.calls: List[tuple] = []

    async def complete_json_array(self, system: str, user: str) -> LLMOutcome:
        self.calls.append((system, user))
        reply = self.replies[min(len(self.calls) - 1, len(self.replies) - 1)]
        if isinstance(reply, str):
            return LLMOutcome.failure(reply)
        return LLMOutcome.success(reply)


class FakeEmbedder:
    """Deterministic embedder: identical texts give identical unit vectors."""

    def __init__(self, dimensions: int = 4, fail: bool = False):
        self.dimensions = dimensions
        self.fail = fail
        self.call_count = 0

    async def embed(self, text: str) -> List[float]:
        self.call_count += 1
        return self._vector(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        from doc_graph.embeddings import EmbeddingError

        self.call_count += 1
        if self.fail:
            raise EmbeddingError("embedding service down")
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> List[float]:
        digest = hashlib.md5(text.encode("utf-8")).digest()
        vec = [digest[i] / 255.0 + 0.01 for i in range(self.dimensions)]
        mag = sum(v * v for v in vec) ** 0.5
        return [v / mag for v in vec]


@pytest.fixture
def fake_embedder():
    return FakeEmbedder(dimensions=4)


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tokenizer():
    return Tokenizer(use_segmenter=False)


@pytest.fixture
def location_extractor():
    """Rule extractor that knows a few place names."""
    return EntityExtractor(custom_types={"location": [r"北京|上海|中国"]})


@pytest.fixture
def relation_extractor():
    return RelationExtractor()


# ---------------------------------------------------------------------------
# Sample data helpers
# ---------------------------------------------------------------------------

def make_entity(
    name: str,
    doc_id: str = "d1",
    start: int = 0,
    entity_type: str = "person",
    aliases: Optional[List[str]] = None,
    context: Optional[List[str]] = None,
    confidence: float = 0.7,
) -> Entity:
    return Entity(
        name=name,
        type=entity_type,
        doc_id=doc_id,
        start_pos=start,
        end_pos=start + len(name),
        confidence=confidence,
        aliases=list(aliases or []),
        context_words=list(context or []),
    )


def seed_graph(storage, edges, doc_id: str = "g1"):
    """Persist one entity per name in *edges* and the given relationships.

    *edges* is a list of ``(source_name, target_name, type)``.  Returns a
    ``name -> id`` map.
    """
    names: List[str] = []
    for src, tgt, _ in edges:
        for name in (src, tgt):
            if name not in names:
                names.append(name)
    storage.save_document(Document(title="graph", content=" ".join(names), doc_id=doc_id))
    storage.save_entities(
        [make_entity(name, doc_id=doc_id, start=i * 10) for i, name in enumerate(names)]
    )
    ids = {e.name: e.id for e in storage.get_entities(doc_id=doc_id)}
    storage.save_relationships([
        Relationship(
            source_entity_id=ids[src],
            target_entity_id=ids[tgt],
            type=rel_type,
            doc_id=doc_id,
            confidence=0.8,
            source="rule",
        )
        for src, tgt, rel_type in edges
    ])
    return ids
