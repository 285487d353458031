"""Core data model shared by every sub-system.

* ``Token``: ephemeral, produced per tokenize call
* ``Document``: root of ownership; everything else dies with it
* ``Entity`` / ``Relationship``: the knowledge graph proper
* ``EntityAlias`` / ``EntitySimilarity``: fusion byproducts
* ``IndexPosting``: one inverted-index row enriched with tf-idf inputs
* ``NetworkGraph`` / ``SearchResult``: query-time outputs

Offsets are half-open code-point indices into the source ``str``.
Timestamps are unix seconds (float).
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


def new_doc_id() -> str:
    return uuid.uuid4().hex[:16]


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------

@dataclass
class Token:
    text: str
    start: int
    end: int
    type: Optional[str] = None
    weight: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Document:
    title: str
    content: str
    doc_id: str = field(default_factory=new_doc_id)
    tags: List[str] = field(default_factory=list)
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

@dataclass
class Entity:
    """A typed span of a document.

    ``id`` stays ``None`` until the entity has been through storage.
    ``merged_into`` is set when fusion folded this entity into another one.
    """

    name: str
    type: str
    doc_id: str
    start_pos: int
    end_pos: int
    source: str = "rule"  # rule | dict | llm
    confidence: float = 0.7
    id: Optional[int] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    aliases: List[str] = field(default_factory=list)
    context_words: List[str] = field(default_factory=list)
    occurrences: int = 1
    merged_into: Optional[int] = None

    @property
    def span_key(self) -> tuple:
        return (self.doc_id, self.start_pos, self.end_pos, self.name)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Relationship:
    source_entity_id: Optional[int]
    target_entity_id: Optional[int]
    type: str
    doc_id: str
    confidence: float
    source: str  # rule | cooccur | llm
    evidence_text: str = ""
    id: Optional[int] = None
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple:
        return (self.source_entity_id, self.target_entity_id, self.type)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EntityAlias:
    entity_id: int
    alias: str


@dataclass
class EntitySimilarity:
    entity_id1: int
    entity_id2: int
    similarity_score: float
    calculation_method: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IndexPosting:
    """One (term, document) pair plus the corpus counts tf-idf needs."""

    term: str
    doc_id: str
    frequency: int
    positions: List[int]
    total_tokens: int
    doc_frequency: int
    total_documents: int


@dataclass
class NetworkGraph:
    nodes: List[Entity] = field(default_factory=list)
    edges: List[Relationship] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@dataclass
class SearchOptions:
    limit: int = 10
    offset: int = 0
    sort_by: str = "relevance"  # relevance | score | created_at | updated_at | title
    fuzzy: bool = False
    entity_types: List[str] = field(default_factory=list)


@dataclass
class AdvancedQuery:
    text: Optional[str] = None
    entity_types: List[str] = field(default_factory=list)
    date_from: Optional[float] = None
    date_to: Optional[float] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class SearchResult:
    item: Any
    score: float
    highlights: List[str] = field(default_factory=list)
    match_positions: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        item = self.item.to_dict() if hasattr(self.item, "to_dict") else self.item
        return {
            "item": item,
            "score": round(self.score, 6),
            "highlights": list(self.highlights),
            "match_positions": list(self.match_positions),
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class ProcessResult:
    doc_id: str
    tokens: List[Token] = field(default_factory=list)
    entities: List[Entity] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "doc_id": self.doc_id,
            "tokens": [t.to_dict() for t in self.tokens],
            "entities": [e.to_dict() for e in self.entities],
            "relationships": [r.to_dict() for r in self.relationships],
        }
        if self.error is not None:
            d["error"] = self.error
        return d
