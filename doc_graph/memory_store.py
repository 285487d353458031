"""In-memory storage backend.

Dict-backed implementation of ``StorageBackend`` with the same semantics as
``SQLiteStorage``: upserts, conjunctive filters, cascading deletes and
all-or-nothing batch writes.  Suitable for:

- **Unit testing**: fast, isolated tests without a database file
- **Embedding**: hosts that keep the graph in process memory

Every read returns copies, so callers never alias stored state.
"""

from __future__ import annotations

import copy
import itertools
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import (
    Document,
    Entity,
    EntitySimilarity,
    IndexPosting,
    Relationship,
    Token,
)
from .storage import (
    EntityNotFoundError,
    StorageBackend,
    canonical_pair,
    count_entities_by_type,
    drop_unresolved,
    index_terms,
)

logger = logging.getLogger(__name__)


class InMemoryStorage(StorageBackend):
    """Storage kept in plain dictionaries keyed by primary key."""

    def __init__(self) -> None:
        self._documents: Dict[str, Document] = {}
        self._entities: Dict[int, Entity] = {}
        self._relationships: Dict[int, Relationship] = {}
        # term -> doc_id -> positions
        self._postings: Dict[str, Dict[str, List[int]]] = {}
        self._token_counts: Dict[str, int] = {}
        self._aliases: Dict[int, set] = {}
        self._similarities: Dict[Tuple[int, int], EntitySimilarity] = {}
        self._entity_ids = itertools.count(1)
        self._relationship_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def save_document(self, doc: Document) -> Document:
        now = time.time()
        stored = copy.deepcopy(doc)
        existing = self._documents.get(doc.doc_id)
        stored.created_at = existing.created_at if existing else (doc.created_at or now)
        stored.updated_at = now
        self._documents[doc.doc_id] = stored
        return copy.deepcopy(stored)

    def get_document(self, doc_id: str) -> Optional[Document]:
        doc = self._documents.get(doc_id)
        return copy.deepcopy(doc) if doc else None

    def list_documents(self) -> List[Document]:
        docs = sorted(self._documents.values(), key=lambda d: (d.created_at or 0.0, d.doc_id))
        return [copy.deepcopy(d) for d in docs]

    def delete_document(self, doc_id: str) -> bool:
        if doc_id not in self._documents:
            return False
        del self._documents[doc_id]

        self._drop_postings(doc_id)
        for rid in [rid for rid, r in self._relationships.items() if r.doc_id == doc_id]:
            del self._relationships[rid]
        for eid in [eid for eid, e in self._entities.items() if e.doc_id == doc_id]:
            self._delete_entity(eid)

        logger.info("Deleted document %s (cascade)", doc_id)
        return True

    def purge_document_data(self, doc_id: str) -> int:
        for rid in [rid for rid, r in self._relationships.items() if r.doc_id == doc_id]:
            del self._relationships[rid]
        self._drop_postings(doc_id)

        referenced = set()
        for rel in self._relationships.values():
            referenced.update((rel.source_entity_id, rel.target_entity_id))
        referenced.update(
            e.merged_into for e in self._entities.values()
            if e.merged_into is not None and e.doc_id != doc_id
        )
        doomed = [
            eid for eid, e in self._entities.items()
            if e.doc_id == doc_id and eid not in referenced
        ]
        for eid in doomed:
            self._delete_entity(eid)
        return len(doomed)

    def _drop_postings(self, doc_id: str) -> None:
        for term in list(self._postings):
            self._postings[term].pop(doc_id, None)
            if not self._postings[term]:
                del self._postings[term]
        self._token_counts.pop(doc_id, None)

    def _delete_entity(self, entity_id: int) -> None:
        self._entities.pop(entity_id, None)
        self._aliases.pop(entity_id, None)
        for rid in [
            rid for rid, r in self._relationships.items()
            if entity_id in (r.source_entity_id, r.target_entity_id)
        ]:
            del self._relationships[rid]
        for pair in [p for p in self._similarities if entity_id in p]:
            del self._similarities[pair]
        for ent in self._entities.values():
            if ent.merged_into == entity_id:
                ent.merged_into = None

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def _find_span(self, ent: Entity) -> Optional[Entity]:
        for stored in self._entities.values():
            if stored.span_key == ent.span_key:
                return stored
        return None

    def save_entities(self, entities: Sequence[Entity]) -> None:
        missing = {e.doc_id for e in entities if e.doc_id not in self._documents}
        if missing:
            raise ValueError(f"entities reference unknown document(s): {sorted(missing)}")

        for ent in entities:
            stored = self._find_span(ent)
            if stored is None:
                new = copy.deepcopy(ent)
                new.id = next(self._entity_ids)
                new.merged_into = None
                self._entities[new.id] = new
            elif ent.confidence >= stored.confidence:
                stored.type = ent.type
                stored.source = ent.source
                stored.confidence = ent.confidence
                stored.properties = copy.deepcopy(ent.properties)
                stored.context_words = list(ent.context_words)

    def get_entities(
        self,
        doc_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        include_merged: bool = True,
    ) -> List[Entity]:
        out: List[Entity] = []
        for eid in sorted(self._entities):
            ent = self._entities[eid]
            if doc_id is not None and ent.doc_id != doc_id:
                continue
            if entity_type is not None and ent.type != entity_type:
                continue
            if not include_merged and ent.merged_into is not None:
                continue
            out.append(copy.deepcopy(ent))
        return out

    def get_entity(self, entity_id: int) -> Optional[Entity]:
        ent = self._entities.get(entity_id)
        return copy.deepcopy(ent) if ent else None

    def update_entity(self, entity: Entity) -> None:
        if entity.id is None or entity.id not in self._entities:
            raise EntityNotFoundError(f"entity {entity.id} not found")
        self._write_entity(entity)

    def _write_entity(self, entity: Entity) -> None:
        stored = self._entities[entity.id]
        stored.type = entity.type
        stored.confidence = entity.confidence
        stored.properties = copy.deepcopy(entity.properties)
        stored.aliases = list(entity.aliases)
        stored.context_words = list(entity.context_words)
        stored.occurrences = entity.occurrences or 1
        stored.merged_into = entity.merged_into

    def search_entities(
        self,
        query: str,
        entity_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]:
        query = query.strip().lower()
        if not query:
            return []
        hits: List[Entity] = []
        for ent in self._entities.values():
            if ent.merged_into is not None:
                continue
            if entity_types and ent.type not in entity_types:
                continue
            aliases = {a.lower() for a in self._aliases.get(ent.id, ())}
            if query in ent.name.lower() or query in aliases:
                hits.append(ent)
        hits.sort(key=lambda e: (-(e.occurrences or 1), e.id))
        if limit is not None:
            hits = hits[:limit]
        return [copy.deepcopy(e) for e in hits]

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def save_relationships(self, relationships: Sequence[Relationship]) -> None:
        kept = drop_unresolved(relationships)
        for rel in kept:
            for eid in (rel.source_entity_id, rel.target_entity_id):
                if eid not in self._entities:
                    raise EntityNotFoundError(f"relationship references unknown entity {eid}")
            if rel.doc_id not in self._documents:
                raise ValueError(f"relationship references unknown document {rel.doc_id}")

        for rel in kept:
            new = copy.deepcopy(rel)
            new.id = next(self._relationship_ids)
            self._relationships[new.id] = new

    def get_relationships(
        self,
        source_entity_id: Optional[int] = None,
        target_entity_id: Optional[int] = None,
        relation_type: Optional[str] = None,
        doc_id: Optional[str] = None,
    ) -> List[Relationship]:
        out: List[Relationship] = []
        for rid in sorted(self._relationships):
            rel = self._relationships[rid]
            if source_entity_id is not None and rel.source_entity_id != source_entity_id:
                continue
            if target_entity_id is not None and rel.target_entity_id != target_entity_id:
                continue
            if relation_type is not None and rel.type != relation_type:
                continue
            if doc_id is not None and rel.doc_id != doc_id:
                continue
            out.append(copy.deepcopy(rel))
        return out

    def update_relationship_endpoints(self, old_id: int, new_id: int) -> int:
        if new_id not in self._entities:
            raise EntityNotFoundError(f"entity {new_id} not found")
        return self._rewrite_endpoints(old_id, new_id)

    def _rewrite_endpoints(self, old_id: int, new_id: int) -> int:
        moved = 0
        for rel in self._relationships.values():
            if rel.source_entity_id == old_id:
                rel.source_entity_id = new_id
                moved += 1
            if rel.target_entity_id == old_id:
                rel.target_entity_id = new_id
                moved += 1

        best: Dict[tuple, Relationship] = {}
        doomed: List[int] = []
        for rid in sorted(self._relationships):
            rel = self._relationships[rid]
            if new_id not in (rel.source_entity_id, rel.target_entity_id):
                continue
            if rel.source_entity_id == rel.target_entity_id:
                doomed.append(rid)
                continue
            key = (rel.source_entity_id, rel.target_entity_id, rel.type, rel.doc_id)
            kept = best.get(key)
            if kept is None:
                best[key] = rel
            elif rel.confidence > kept.confidence:
                doomed.append(kept.id)
                best[key] = rel
            else:
                doomed.append(rid)
        for rid in doomed:
            del self._relationships[rid]
        return moved

    def record_merge(self, main: Entity, losers: Sequence[Entity], method: str) -> int:
        # Validate everything up front so a failure leaves no partial merge.
        for ent in [main, *losers]:
            if ent.id is None or ent.id not in self._entities:
                raise EntityNotFoundError(f"entity {ent.id} not found")
        pairs = [canonical_pair(main.id, loser.id) for loser in losers]

        self._write_entity(main)
        moved = 0
        for loser, pair in zip(losers, pairs):
            self._entities[loser.id].merged_into = main.id
            self._aliases.setdefault(main.id, set()).add(loser.name)
            self._similarities[pair] = EntitySimilarity(pair[0], pair[1], 1.0, method)
            moved += self._rewrite_endpoints(loser.id, main.id)
        return moved

    # ------------------------------------------------------------------
    # Inverted index
    # ------------------------------------------------------------------

    def build_inverted_index(self, doc_id: str, tokens: Sequence[Token]) -> None:
        if doc_id not in self._documents:
            raise ValueError(f"cannot index unknown document {doc_id}")
        terms = index_terms(tokens)
        self._drop_postings(doc_id)

        total = sum(len(p) for p in terms.values())
        if not total:
            return
        for term, positions in terms.items():
            self._postings.setdefault(term, {})[doc_id] = list(positions)
        self._token_counts[doc_id] = total

    def get_inverted_index(self, term: str, fuzzy: bool = False) -> List[IndexPosting]:
        term = term.strip().lower()
        if not term:
            return []
        if fuzzy:
            terms = sorted(t for t in self._postings if term in t)
        else:
            terms = [term] if term in self._postings else []

        total_docs = len(self._token_counts)
        out: List[IndexPosting] = []
        for t in terms:
            docs = self._postings[t]
            for doc_id in sorted(docs):
                positions = docs[doc_id]
                out.append(
                    IndexPosting(
                        term=t,
                        doc_id=doc_id,
                        frequency=len(positions),
                        positions=list(positions),
                        total_tokens=self._token_counts.get(doc_id, 0),
                        doc_frequency=len(docs),
                        total_documents=total_docs,
                    )
                )
        return out

    # ------------------------------------------------------------------
    # Aliases & similarity
    # ------------------------------------------------------------------

    def add_entity_alias(self, entity_id: int, alias: str) -> None:
        if entity_id not in self._entities:
            raise EntityNotFoundError(f"entity {entity_id} not found")
        self._aliases.setdefault(entity_id, set()).add(alias)

    def get_entity_aliases(self, entity_id: int) -> List[str]:
        return sorted(self._aliases.get(entity_id, ()))

    def find_entities_by_alias(self, alias: str) -> List[Entity]:
        alias = alias.strip().lower()
        return [
            copy.deepcopy(self._entities[eid])
            for eid in sorted(self._aliases)
            if eid in self._entities
            and alias in {a.lower() for a in self._aliases[eid]}
        ]

    def add_entity_similarity(
        self, entity_id1: int, entity_id2: int, score: float, method: str
    ) -> None:
        low, high = canonical_pair(entity_id1, entity_id2)
        for eid in (low, high):
            if eid not in self._entities:
                raise EntityNotFoundError(f"entity {eid} not found")
        self._similarities[(low, high)] = EntitySimilarity(low, high, score, method)

    def get_entity_similarities(
        self, entity_id: Optional[int] = None
    ) -> List[EntitySimilarity]:
        return [
            copy.deepcopy(self._similarities[pair])
            for pair in sorted(self._similarities)
            if entity_id is None or entity_id in pair
        ]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        active = [e for e in self._entities.values() if e.merged_into is None]
        return {
            "documents": len(self._documents),
            "entities": len(self._entities),
            "active_entities": len(active),
            "entities_by_type": count_entities_by_type(active),
            "relationships": len(self._relationships),
            "index_terms": len(self._postings),
            "aliases": sum(len(a) for a in self._aliases.values()),
            "similarities": len(self._similarities),
        }
