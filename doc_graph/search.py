"""Query layer over a storage backend.

* Document search: TF-IDF over the inverted index
  (``tf = freq / doc_tokens``, ``idf = ln(N / df)``)
* Entity search: name substring or alias match, uniform ``SearchResult``
* Graph queries: bounded-depth neighbourhood and shortest relationship path,
  both breadth-first with an explicit queue and visited set
* Advanced search: text search composed with date / tag / entity-type filters
* Optional vector similarity over entity names (``EntityVectorIndex``)
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import replace
from typing import Deque, Dict, List, Optional, Sequence, Set, Tuple

from .models import (
    AdvancedQuery,
    Document,
    Entity,
    NetworkGraph,
    Relationship,
    SearchOptions,
    SearchResult,
)
from .storage import StorageBackend
from .tokenizer import Tokenizer
from .vectors import EntityVectorIndex, VectorSearchUnavailable

logger = logging.getLogger(__name__)

_SORT_ALIASES = {
    "relevance": "score",
    "score": "score",
    "created_at": "created_at",
    "createdat": "created_at",
    "updated_at": "updated_at",
    "updatedat": "updated_at",
    "title": "title",
}


def sort_and_paginate(results: Sequence[SearchResult], options: SearchOptions) -> List[SearchResult]:
    """Order *results* by ``options.sort_by`` then slice ``[offset:offset+limit]``.

    Scores and timestamps sort descending, titles ascending.  Raises
    ``ValueError`` for an unknown sort key.
    """
    sort_key = _SORT_ALIASES.get((options.sort_by or "relevance").lower())
    if sort_key is None:
        raise ValueError(f"unknown sort_by: {options.sort_by!r}")

    if sort_key == "score":
        ordered = sorted(results, key=lambda r: -r.score)
    elif sort_key == "title":
        ordered = sorted(
            results,
            key=lambda r: (getattr(r.item, "title", None) or getattr(r.item, "name", "")).lower(),
        )
    else:
        ordered = sorted(results, key=lambda r: -(getattr(r.item, sort_key, None) or 0.0))

    offset = max(options.offset, 0)
    limit = max(options.limit, 0)
    return ordered[offset:offset + limit]


class SearchAPI:
    """Read-side queries: documents, entities, relationships and the graph."""

    def __init__(
        self,
        storage: StorageBackend,
        tokenizer: Optional[Tokenizer] = None,
        vector_index: Optional[EntityVectorIndex] = None,
        embedder=None,
    ) -> None:
        self.storage = storage
        self.tokenizer = tokenizer or Tokenizer()
        self.vector_index = vector_index
        self.embedder = embedder

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def search_documents(
        self, query: str, options: Optional[SearchOptions] = None
    ) -> List[SearchResult]:
        options = options or SearchOptions()
        return sort_and_paginate(self._rank_documents(query, options.fuzzy), options)

    def _query_terms(self, query: str) -> List[str]:
        terms: List[str] = []
        for tok in self.tokenizer.tokenize(query or ""):
            term = tok.text.strip().lower()
            if term and term not in terms:
                terms.append(term)
        return terms

    def _rank_documents(self, query: str, fuzzy: bool = False) -> List[SearchResult]:
        """Score every document matching at least one query term (unsorted)."""
        scores: Dict[str, float] = {}
        highlights: Dict[str, List[str]] = {}
        positions: Dict[str, Set[int]] = {}

        for term in self._query_terms(query):
            for posting in self.storage.get_inverted_index(term, fuzzy=fuzzy):
                if posting.total_tokens <= 0 or posting.doc_frequency <= 0:
                    continue
                tf = posting.frequency / posting.total_tokens
                idf = math.log(posting.total_documents / posting.doc_frequency)
                scores[posting.doc_id] = scores.get(posting.doc_id, 0.0) + tf * idf
                matched = highlights.setdefault(posting.doc_id, [])
                if posting.term not in matched:
                    matched.append(posting.term)
                positions.setdefault(posting.doc_id, set()).update(posting.positions)

        results: List[SearchResult] = []
        for doc_id, score in scores.items():
            doc = self.storage.get_document(doc_id)
            if doc is None:
                continue
            results.append(
                SearchResult(
                    item=doc,
                    score=score,
                    highlights=highlights[doc_id],
                    match_positions=sorted(positions[doc_id]),
                )
            )
        logger.debug("Query %r matched %d document(s)", query, len(results))
        return results

    # ------------------------------------------------------------------
    # Entities & relationships
    # ------------------------------------------------------------------

    def search_entities(
        self, query: str, options: Optional[SearchOptions] = None
    ) -> List[SearchResult]:
        options = options or SearchOptions()
        query = (query or "").strip()
        if not query:
            return []
        needle = query.lower()

        results: List[SearchResult] = []
        for ent in self.storage.search_entities(query, options.entity_types or None):
            names = {a.lower() for a in ent.aliases or []}
            if ent.id is not None:
                names.update(a.lower() for a in self.storage.get_entity_aliases(ent.id))
            if needle == ent.name.lower() or needle in names:
                score = 1.0
            else:
                score = min(1.0, len(query) / max(len(ent.name), 1))
            results.append(
                SearchResult(
                    item=ent,
                    score=score,
                    highlights=[ent.name],
                    match_positions=[ent.start_pos],
                )
            )
        return sort_and_paginate(results, options)

    def search_relationships(
        self,
        source_id: Optional[int] = None,
        target_id: Optional[int] = None,
        relation_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Relationship]:
        rels = self.storage.get_relationships(
            source_entity_id=source_id,
            target_entity_id=target_id,
            relation_type=relation_type,
        )
        return rels[max(offset, 0):max(offset, 0) + max(limit, 0)]

    # ------------------------------------------------------------------
    # Graph traversal
    # ------------------------------------------------------------------

    def _neighbours(
        self, entity_id: int, include_reverse: bool
    ) -> List[Tuple[Relationship, int, bool]]:
        """``(relationship, other endpoint, is_reverse)`` for every edge at *entity_id*."""
        hops = [
            (rel, rel.target_entity_id, False)
            for rel in self.storage.get_relationships(source_entity_id=entity_id)
        ]
        if include_reverse:
            hops.extend(
                (rel, rel.source_entity_id, True)
                for rel in self.storage.get_relationships(target_entity_id=entity_id)
            )
        return hops

    def get_entity_graph(
        self, entity_id: int, depth: int = 2, include_reverse: bool = True
    ) -> NetworkGraph:
        """Entities and relationships within *depth* hops of *entity_id*.

        Edges are only collected from entities strictly closer than *depth*,
        so ``depth=0`` yields the root alone.  A missing root yields an
        empty graph.
        """
        root = self.storage.get_entity(entity_id)
        if root is None:
            return NetworkGraph()

        nodes: Dict[int, Entity] = {entity_id: root}
        edges: Dict[tuple, Relationship] = {}
        visited = {entity_id}
        queue: Deque[Tuple[int, int]] = deque([(entity_id, 0)])

        while queue:
            current, level = queue.popleft()
            if level >= depth:
                continue
            for rel, other, _ in self._neighbours(current, include_reverse):
                edges.setdefault(rel.key, rel)
                if other in visited:
                    continue
                visited.add(other)
                ent = self.storage.get_entity(other)
                if ent is None:
                    continue
                nodes[other] = ent
                queue.append((other, level + 1))

        return NetworkGraph(nodes=list(nodes.values()), edges=list(edges.values()))

    def find_entity_path(
        self, source_id: int, target_id: int, max_depth: int = 3
    ) -> List[Relationship]:
        """Shortest hop path from *source_id* to *target_id* over undirected edges.

        Edges walked against their direction come back typed ``<type>_reverse``.
        Returns ``[]`` for identical endpoints or when no path fits in
        *max_depth* hops.
        """
        if source_id == target_id:
            return []

        visited = {source_id}
        queue: Deque[Tuple[int, List[Relationship]]] = deque([(source_id, [])])
        while queue:
            current, path = queue.popleft()
            if len(path) >= max_depth:
                continue
            for rel, other, reverse in self._neighbours(current, include_reverse=True):
                if other in visited:
                    continue
                step = replace(rel, type=f"{rel.type}_reverse") if reverse else rel
                extended = path + [step]
                if other == target_id:
                    return extended
                visited.add(other)
                queue.append((other, extended))
        return []

    # ------------------------------------------------------------------
    # Advanced search
    # ------------------------------------------------------------------

    def advanced_search(
        self, query: AdvancedQuery, options: Optional[SearchOptions] = None
    ) -> List[SearchResult]:
        options = options or SearchOptions()
        if query.text and query.text.strip():
            candidates = self._rank_documents(query.text, options.fuzzy)
        else:
            candidates = [SearchResult(item=doc, score=0.0) for doc in self.storage.list_documents()]

        tags = set(query.tags or [])
        entity_types = set(query.entity_types or options.entity_types or [])
        kept = [
            r for r in candidates
            if self._matches_filters(r.item, query, tags, entity_types)
        ]
        return sort_and_paginate(kept, options)

    def _matches_filters(
        self, doc: Document, query: AdvancedQuery, tags: Set[str], entity_types: Set[str]
    ) -> bool:
        created = doc.created_at or 0.0
        if query.date_from is not None and created < query.date_from:
            return False
        if query.date_to is not None and created > query.date_to:
            return False
        if tags and not tags.intersection(doc.tags or []):
            return False
        if entity_types:
            found = {e.type for e in self.storage.get_entities(doc_id=doc.doc_id)}
            if not found & entity_types:
                return False
        return True

    # ------------------------------------------------------------------
    # Vector similarity (optional capability)
    # ------------------------------------------------------------------

    @property
    def vector_search_available(self) -> bool:
        return self.vector_index is not None and self.embedder is not None

    async def search_similar_entities(self, text: str, limit: int = 10) -> List[SearchResult]:
        """Entities whose embedded names are closest to *text*.

        Raises ``VectorSearchUnavailable`` when no index/embedder is wired in.
        """
        if not self.vector_search_available:
            raise VectorSearchUnavailable("entity vector search is not configured")
        vector = await self.embedder.embed(text)
        results: List[SearchResult] = []
        for entity_id, score in self.vector_index.search(vector, limit):
            ent = self.storage.get_entity(entity_id)
            if ent is None or ent.merged_into is not None:
                continue
            results.append(
                SearchResult(item=ent, score=score, highlights=[ent.name],
                             match_positions=[ent.start_pos])
            )
        return results
