"""Storage layer.

``StorageBackend`` is the contract the pipeline, fusion engine and search
layer call through.  Two backends implement it:

* ``SQLiteStorage`` (this module): single-file database, foreign keys with
  ``ON DELETE CASCADE`` so a document takes its entities, relationships,
  index postings, aliases and similarity records with it
* ``InMemoryStorage`` (``memory_store.py``): dict-backed, same semantics

Multi-row writes run in one transaction: on any error the batch is rolled
back and the error propagates.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import (
    Document,
    Entity,
    EntitySimilarity,
    IndexPosting,
    Relationship,
    Token,
)

logger = logging.getLogger(__name__)


class EntityNotFoundError(LookupError):
    """Raised when an operation needs an entity id that is not stored."""


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class StorageBackend(ABC):
    """Operations the core requires of a persistence backend."""

    # -- documents -------------------------------------------------------

    @abstractmethod
    def save_document(self, doc: Document) -> Document:
        """Upsert by ``doc_id``; returns the stored document with timestamps."""

    @abstractmethod
    def get_document(self, doc_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def list_documents(self) -> List[Document]:
        pass

    @abstractmethod
    def delete_document(self, doc_id: str) -> bool:
        """Delete a document and everything it owns. Returns False if absent."""

    @abstractmethod
    def purge_document_data(self, doc_id: str) -> int:
        """Clear derived rows before a document is processed again.

        The document's relationships and postings go.  Its entities go too,
        except those another document still points at (a relationship
        endpoint or a ``merged_into`` link); those keep their ids so the
        re-extracted span upserts onto them.  Returns entities removed.
        """

    # -- entities --------------------------------------------------------

    @abstractmethod
    def save_entities(self, entities: Sequence[Entity]) -> None:
        """Upsert on ``(name, doc_id, start_pos, end_pos)``; higher confidence wins."""

    @abstractmethod
    def get_entities(
        self,
        doc_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        include_merged: bool = True,
    ) -> List[Entity]:
        pass

    @abstractmethod
    def get_entity(self, entity_id: int) -> Optional[Entity]:
        pass

    @abstractmethod
    def update_entity(self, entity: Entity) -> None:
        """Persist the mutable parts of a stored entity (aliases, context, counts)."""

    @abstractmethod
    def search_entities(
        self,
        query: str,
        entity_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]:
        """Case-insensitive name substring or exact alias match, active entities only."""

    # -- relationships ---------------------------------------------------

    @abstractmethod
    def save_relationships(self, relationships: Sequence[Relationship]) -> None:
        pass

    @abstractmethod
    def get_relationships(
        self,
        source_entity_id: Optional[int] = None,
        target_entity_id: Optional[int] = None,
        relation_type: Optional[str] = None,
        doc_id: Optional[str] = None,
    ) -> List[Relationship]:
        pass

    def get_all_relationships(self) -> List[Relationship]:
        return self.get_relationships()

    @abstractmethod
    def update_relationship_endpoints(self, old_id: int, new_id: int) -> int:
        """Point every relationship touching ``old_id`` at ``new_id``.

        Rows that become self-loops are dropped, and rows of one document
        that now share ``(source, target, type)`` collapse to the one with
        the highest confidence (lowest id on ties).  Returns endpoints moved.
        """

    @abstractmethod
    def record_merge(self, main: Entity, losers: Sequence[Entity], method: str) -> int:
        """Persist *main*'s merged state and retire *losers* into it.

        One transaction: alias rows, similarity records, endpoint rewrites
        and ``merged_into`` for every loser.  Raises ``EntityNotFoundError``
        (nothing written) when any id is not stored.  Returns endpoints moved.
        """

    # -- inverted index --------------------------------------------------

    @abstractmethod
    def build_inverted_index(self, doc_id: str, tokens: Sequence[Token]) -> None:
        """Replace the document's postings (delete-then-insert)."""

    @abstractmethod
    def get_inverted_index(self, term: str, fuzzy: bool = False) -> List[IndexPosting]:
        pass

    # -- aliases & similarity --------------------------------------------

    @abstractmethod
    def add_entity_alias(self, entity_id: int, alias: str) -> None:
        pass

    @abstractmethod
    def get_entity_aliases(self, entity_id: int) -> List[str]:
        pass

    @abstractmethod
    def find_entities_by_alias(self, alias: str) -> List[Entity]:
        pass

    @abstractmethod
    def add_entity_similarity(
        self, entity_id1: int, entity_id2: int, score: float, method: str
    ) -> None:
        """Store one record per unordered pair, canonicalised to ``id1 < id2``."""

    @abstractmethod
    def get_entity_similarities(
        self, entity_id: Optional[int] = None
    ) -> List[EntitySimilarity]:
        pass

    # -- misc ------------------------------------------------------------

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        pass

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Helpers shared by both backends
# ---------------------------------------------------------------------------

def index_terms(tokens: Iterable[Token]) -> Dict[str, List[int]]:
    """Group token start offsets by case-folded term."""
    positions: Dict[str, List[int]] = defaultdict(list)
    for tok in tokens:
        term = tok.text.strip().lower()
        if term:
            positions[term].append(tok.start)
    return positions


def canonical_pair(entity_id1: int, entity_id2: int) -> tuple[int, int]:
    if entity_id1 == entity_id2:
        raise ValueError(f"similarity needs two distinct entities, got {entity_id1} twice")
    return (entity_id1, entity_id2) if entity_id1 < entity_id2 else (entity_id2, entity_id1)


def drop_unresolved(relationships: Sequence[Relationship]) -> List[Relationship]:
    """Remove relationships whose endpoints never got a storage id."""
    kept = [
        r for r in relationships
        if r.source_entity_id is not None and r.target_entity_id is not None
    ]
    if len(kept) != len(relationships):
        logger.warning(
            "Dropped %d relationship(s) with unresolved entity ids",
            len(relationships) - len(kept),
        )
    return kept


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    doc_id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '',
    tags TEXT DEFAULT '[]',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    doc_id TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    start_pos INTEGER NOT NULL,
    end_pos INTEGER NOT NULL,
    source TEXT NOT NULL DEFAULT 'rule',
    confidence REAL NOT NULL DEFAULT 0.0,
    properties TEXT DEFAULT '{}',
    aliases TEXT DEFAULT '[]',
    context_words TEXT DEFAULT '[]',
    occurrences INTEGER DEFAULT 1,
    merged_into INTEGER REFERENCES entities(id) ON DELETE SET NULL,
    UNIQUE (name, doc_id, start_pos, end_pos)
);

CREATE INDEX IF NOT EXISTS idx_entities_doc ON entities(doc_id);
CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(type);
CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name);

CREATE TABLE IF NOT EXISTS relationships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_entity_id INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    target_entity_id INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    doc_id TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    confidence REAL NOT NULL DEFAULT 0.0,
    source TEXT NOT NULL DEFAULT 'rule',
    evidence_text TEXT DEFAULT '',
    properties TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_rel_source ON relationships(source_entity_id);
CREATE INDEX IF NOT EXISTS idx_rel_target ON relationships(target_entity_id);
CREATE INDEX IF NOT EXISTS idx_rel_doc ON relationships(doc_id);

CREATE TABLE IF NOT EXISTS index_postings (
    term TEXT NOT NULL,
    doc_id TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    frequency INTEGER NOT NULL,
    positions TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (term, doc_id)
);

CREATE INDEX IF NOT EXISTS idx_postings_doc ON index_postings(doc_id);

CREATE TABLE IF NOT EXISTS doc_token_counts (
    doc_id TEXT PRIMARY KEY REFERENCES documents(doc_id) ON DELETE CASCADE,
    total_tokens INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS entity_aliases (
    entity_id INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    alias TEXT NOT NULL,
    PRIMARY KEY (entity_id, alias)
);

CREATE INDEX IF NOT EXISTS idx_alias ON entity_aliases(alias);

CREATE TABLE IF NOT EXISTS entity_similarity (
    entity_id1 INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    entity_id2 INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    similarity_score REAL NOT NULL,
    calculation_method TEXT NOT NULL,
    created_at REAL NOT NULL,
    PRIMARY KEY (entity_id1, entity_id2),
    CHECK (entity_id1 < entity_id2)
);
"""


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

class SQLiteStorage(StorageBackend):
    """SQLite-backed storage with cascading deletes."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        from .config import load_config

        cfg = load_config()
        self.db_path = db_path or cfg.db_path

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            # One connection may be used from worker threads; sqlite
            # serialises the writes.
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA temp_store = MEMORY")
        return self._conn

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        cur = conn.cursor()
        for stmt in _SCHEMA_SQL.split(";"):
            stmt = stmt.strip()
            if stmt:
                cur.execute(stmt)
        conn.commit()

    # ------------------------------------------------------------------
    # Row converters
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(
            title=row["title"],
            content=row["content"],
            doc_id=row["doc_id"],
            tags=json.loads(row["tags"] or "[]"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> Entity:
        return Entity(
            name=row["name"],
            type=row["type"],
            doc_id=row["doc_id"],
            start_pos=row["start_pos"],
            end_pos=row["end_pos"],
            source=row["source"],
            confidence=row["confidence"],
            id=row["id"],
            properties=json.loads(row["properties"] or "{}"),
            aliases=json.loads(row["aliases"] or "[]"),
            context_words=json.loads(row["context_words"] or "[]"),
            occurrences=row["occurrences"] or 1,
            merged_into=row["merged_into"],
        )

    @staticmethod
    def _row_to_relationship(row: sqlite3.Row) -> Relationship:
        return Relationship(
            source_entity_id=row["source_entity_id"],
            target_entity_id=row["target_entity_id"],
            type=row["type"],
            doc_id=row["doc_id"],
            confidence=row["confidence"],
            source=row["source"],
            evidence_text=row["evidence_text"] or "",
            id=row["id"],
            properties=json.loads(row["properties"] or "{}"),
        )

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def save_document(self, doc: Document) -> Document:
        conn = self._get_conn()
        now = time.time()
        try:
            conn.execute(
                """INSERT INTO documents (doc_id, title, content, tags, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(doc_id) DO UPDATE SET
                       title = excluded.title,
                       content = excluded.content,
                       tags = excluded.tags,
                       updated_at = excluded.updated_at""",
                (doc.doc_id, doc.title, doc.content, json.dumps(doc.tags or []),
                 doc.created_at or now, now),
            )
            # created_at survives the upsert, so read it back in the same transaction.
            row = conn.execute(
                "SELECT * FROM documents WHERE doc_id = ?", (doc.doc_id,)
            ).fetchone()
            if row is None:
                raise sqlite3.DatabaseError(f"document {doc.doc_id} missing after upsert")
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return self._row_to_document(row)

    def get_document(self, doc_id: str) -> Optional[Document]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
        return self._row_to_document(row) if row else None

    def list_documents(self) -> List[Document]:
        conn = self._get_conn()
        rows = conn.execute("SELECT * FROM documents ORDER BY created_at, doc_id").fetchall()
        return [self._row_to_document(r) for r in rows]

    def delete_document(self, doc_id: str) -> bool:
        conn = self._get_conn()
        cur = conn.execute("DELETE FROM documents WHERE doc_id = ?", (doc_id,))
        conn.commit()
        deleted = cur.rowcount > 0
        if deleted:
            logger.info("Deleted document %s (cascade)", doc_id)
        return deleted

    def purge_document_data(self, doc_id: str) -> int:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM relationships WHERE doc_id = ?", (doc_id,))
            conn.execute("DELETE FROM index_postings WHERE doc_id = ?", (doc_id,))
            conn.execute("DELETE FROM doc_token_counts WHERE doc_id = ?", (doc_id,))
            # Only other documents' rows remain, so any reference left is foreign.
            cur = conn.execute(
                """DELETE FROM entities
                   WHERE doc_id = :doc
                     AND id NOT IN (SELECT source_entity_id FROM relationships)
                     AND id NOT IN (SELECT target_entity_id FROM relationships)
                     AND id NOT IN (SELECT merged_into FROM entities
                                    WHERE merged_into IS NOT NULL AND doc_id != :doc)""",
                {"doc": doc_id},
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return cur.rowcount

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def save_entities(self, entities: Sequence[Entity]) -> None:
        if not entities:
            return
        conn = self._get_conn()
        try:
            for ent in entities:
                # Re-saving a span keeps fusion state (aliases, occurrences)
                # and only replaces the row when confidence does not drop.
                conn.execute(
                    """INSERT INTO entities
                       (name, type, doc_id, start_pos, end_pos, source, confidence,
                        properties, aliases, context_words, occurrences)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(name, doc_id, start_pos, end_pos) DO UPDATE SET
                           type = excluded.type,
                           source = excluded.source,
                           confidence = excluded.confidence,
                           properties = excluded.properties,
                           context_words = excluded.context_words
                       WHERE excluded.confidence >= entities.confidence""",
                    (
                        ent.name,
                        ent.type,
                        ent.doc_id,
                        ent.start_pos,
                        ent.end_pos,
                        ent.source,
                        ent.confidence,
                        json.dumps(ent.properties or {}),
                        json.dumps(ent.aliases or []),
                        json.dumps(ent.context_words or []),
                        ent.occurrences or 1,
                    ),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def get_entities(
        self,
        doc_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        include_merged: bool = True,
    ) -> List[Entity]:
        conn = self._get_conn()
        clauses: List[str] = []
        params: List[Any] = []
        if doc_id is not None:
            clauses.append("doc_id = ?")
            params.append(doc_id)
        if entity_type is not None:
            clauses.append("type = ?")
            params.append(entity_type)
        if not include_merged:
            clauses.append("merged_into IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = conn.execute(f"SELECT * FROM entities {where} ORDER BY id", params).fetchall()
        return [self._row_to_entity(r) for r in rows]

    def get_entity(self, entity_id: int) -> Optional[Entity]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return self._row_to_entity(row) if row else None

    def update_entity(self, entity: Entity) -> None:
        conn = self._get_conn()
        try:
            self._write_entity(conn, entity)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    @staticmethod
    def _write_entity(conn: sqlite3.Connection, entity: Entity) -> None:
        if entity.id is None:
            raise EntityNotFoundError("cannot update an entity that was never persisted")
        cur = conn.execute(
            """UPDATE entities
               SET type = ?, confidence = ?, properties = ?, aliases = ?,
                   context_words = ?, occurrences = ?, merged_into = ?
               WHERE id = ?""",
            (
                entity.type,
                entity.confidence,
                json.dumps(entity.properties or {}),
                json.dumps(entity.aliases or []),
                json.dumps(entity.context_words or []),
                entity.occurrences or 1,
                entity.merged_into,
                entity.id,
            ),
        )
        if cur.rowcount == 0:
            raise EntityNotFoundError(f"entity {entity.id} not found")

    def search_entities(
        self,
        query: str,
        entity_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Entity]:
        query = query.strip().lower()
        if not query:
            return []
        conn = self._get_conn()
        sql = """SELECT DISTINCT e.* FROM entities e
                 LEFT JOIN entity_aliases a ON a.entity_id = e.id
                 WHERE e.merged_into IS NULL
                   AND (lower(e.name) LIKE ? ESCAPE '\\' OR lower(a.alias) = ?)"""
        params: List[Any] = [_like_pattern(query), query]
        if entity_types:
            sql += f" AND e.type IN ({','.join('?' for _ in entity_types)})"
            params.extend(entity_types)
        sql += " ORDER BY e.occurrences DESC, e.id LIMIT ?"
        params.append(limit if limit is not None else -1)
        rows = conn.execute(sql, params).fetchall()
        return [self._row_to_entity(r) for r in rows]

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def save_relationships(self, relationships: Sequence[Relationship]) -> None:
        kept = drop_unresolved(relationships)
        if not kept:
            return
        conn = self._get_conn()
        try:
            for rel in kept:
                conn.execute(
                    """INSERT INTO relationships
                       (source_entity_id, target_entity_id, type, doc_id, confidence,
                        source, evidence_text, properties)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        rel.source_entity_id,
                        rel.target_entity_id,
                        rel.type,
                        rel.doc_id,
                        rel.confidence,
                        rel.source,
                        rel.evidence_text or "",
                        json.dumps(rel.properties or {}),
                    ),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def get_relationships(
        self,
        source_entity_id: Optional[int] = None,
        target_entity_id: Optional[int] = None,
        relation_type: Optional[str] = None,
        doc_id: Optional[str] = None,
    ) -> List[Relationship]:
        conn = self._get_conn()
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("source_entity_id", source_entity_id),
            ("target_entity_id", target_entity_id),
            ("type", relation_type),
            ("doc_id", doc_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = conn.execute(f"SELECT * FROM relationships {where} ORDER BY id", params).fetchall()
        return [self._row_to_relationship(r) for r in rows]

    def update_relationship_endpoints(self, old_id: int, new_id: int) -> int:
        conn = self._get_conn()
        try:
            moved = self._rewrite_endpoints(conn, old_id, new_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return moved

    @staticmethod
    def _rewrite_endpoints(conn: sqlite3.Connection, old_id: int, new_id: int) -> int:
        src = conn.execute(
            "UPDATE relationships SET source_entity_id = ? WHERE source_entity_id = ?",
            (new_id, old_id),
        )
        tgt = conn.execute(
            "UPDATE relationships SET target_entity_id = ? WHERE target_entity_id = ?",
            (new_id, old_id),
        )
        conn.execute(
            "DELETE FROM relationships WHERE source_entity_id = ? AND target_entity_id = ?",
            (new_id, new_id),
        )
        # A row goes when a sibling in the same document beats it.
        conn.execute(
            """DELETE FROM relationships
               WHERE (source_entity_id = :eid OR target_entity_id = :eid)
                 AND EXISTS (
                     SELECT 1 FROM relationships r2
                     WHERE r2.source_entity_id = relationships.source_entity_id
                       AND r2.target_entity_id = relationships.target_entity_id
                       AND r2.type = relationships.type
                       AND r2.doc_id = relationships.doc_id
                       AND r2.id != relationships.id
                       AND (r2.confidence > relationships.confidence
                            OR (r2.confidence = relationships.confidence
                                AND r2.id < relationships.id)))""",
            {"eid": new_id},
        )
        return src.rowcount + tgt.rowcount

    def record_merge(self, main: Entity, losers: Sequence[Entity], method: str) -> int:
        conn = self._get_conn()
        moved = 0
        try:
            self._write_entity(conn, main)
            for loser in losers:
                low, high = canonical_pair(main.id, loser.id)
                cur = conn.execute(
                    "UPDATE entities SET merged_into = ? WHERE id = ?", (main.id, loser.id)
                )
                if cur.rowcount == 0:
                    raise EntityNotFoundError(f"entity {loser.id} not found")
                conn.execute(
                    "INSERT OR IGNORE INTO entity_aliases (entity_id, alias) VALUES (?, ?)",
                    (main.id, loser.name),
                )
                conn.execute(
                    """INSERT OR REPLACE INTO entity_similarity
                       (entity_id1, entity_id2, similarity_score, calculation_method, created_at)
                       VALUES (?, ?, 1.0, ?, ?)""",
                    (low, high, method, time.time()),
                )
                moved += self._rewrite_endpoints(conn, loser.id, main.id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return moved

    # ------------------------------------------------------------------
    # Inverted index
    # ------------------------------------------------------------------

    def build_inverted_index(self, doc_id: str, tokens: Sequence[Token]) -> None:
        terms = index_terms(tokens)
        total = sum(len(p) for p in terms.values())
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM index_postings WHERE doc_id = ?", (doc_id,))
            conn.execute("DELETE FROM doc_token_counts WHERE doc_id = ?", (doc_id,))
            if total:
                conn.executemany(
                    """INSERT INTO index_postings (term, doc_id, frequency, positions)
                       VALUES (?, ?, ?, ?)""",
                    [
                        (term, doc_id, len(positions), json.dumps(positions))
                        for term, positions in terms.items()
                    ],
                )
                conn.execute(
                    "INSERT INTO doc_token_counts (doc_id, total_tokens) VALUES (?, ?)",
                    (doc_id, total),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def get_inverted_index(self, term: str, fuzzy: bool = False) -> List[IndexPosting]:
        term = term.strip().lower()
        if not term:
            return []
        conn = self._get_conn()
        if fuzzy:
            where, param = "p.term LIKE ? ESCAPE '\\'", _like_pattern(term)
        else:
            where, param = "p.term = ?", term
        total_docs = conn.execute("SELECT COUNT(*) AS c FROM doc_token_counts").fetchone()["c"]
        rows = conn.execute(
            f"""SELECT p.term, p.doc_id, p.frequency, p.positions, c.total_tokens,
                       (SELECT COUNT(*) FROM index_postings p2 WHERE p2.term = p.term)
                           AS doc_frequency
                FROM index_postings p
                JOIN doc_token_counts c ON c.doc_id = p.doc_id
                WHERE {where}
                ORDER BY p.term, p.doc_id""",
            (param,),
        ).fetchall()
        return [
            IndexPosting(
                term=r["term"],
                doc_id=r["doc_id"],
                frequency=r["frequency"],
                positions=json.loads(r["positions"] or "[]"),
                total_tokens=r["total_tokens"],
                doc_frequency=r["doc_frequency"],
                total_documents=total_docs,
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Aliases & similarity
    # ------------------------------------------------------------------

    def add_entity_alias(self, entity_id: int, alias: str) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT OR IGNORE INTO entity_aliases (entity_id, alias) VALUES (?, ?)",
            (entity_id, alias),
        )
        conn.commit()

    def get_entity_aliases(self, entity_id: int) -> List[str]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT alias FROM entity_aliases WHERE entity_id = ? ORDER BY alias",
            (entity_id,),
        ).fetchall()
        return [r["alias"] for r in rows]

    def find_entities_by_alias(self, alias: str) -> List[Entity]:
        conn = self._get_conn()
        rows = conn.execute(
            """SELECT e.* FROM entities e
               JOIN entity_aliases a ON a.entity_id = e.id
               WHERE lower(a.alias) = ?
               ORDER BY e.id""",
            (alias.strip().lower(),),
        ).fetchall()
        return [self._row_to_entity(r) for r in rows]

    def add_entity_similarity(
        self, entity_id1: int, entity_id2: int, score: float, method: str
    ) -> None:
        low, high = canonical_pair(entity_id1, entity_id2)
        conn = self._get_conn()
        conn.execute(
            """INSERT OR REPLACE INTO entity_similarity
               (entity_id1, entity_id2, similarity_score, calculation_method, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (low, high, score, method, time.time()),
        )
        conn.commit()

    def get_entity_similarities(
        self, entity_id: Optional[int] = None
    ) -> List[EntitySimilarity]:
        conn = self._get_conn()
        if entity_id is None:
            rows = conn.execute(
                "SELECT * FROM entity_similarity ORDER BY entity_id1, entity_id2"
            ).fetchall()
        else:
            rows = conn.execute(
                """SELECT * FROM entity_similarity
                   WHERE entity_id1 = ? OR entity_id2 = ?
                   ORDER BY entity_id1, entity_id2""",
                (entity_id, entity_id),
            ).fetchall()
        return [
            EntitySimilarity(
                entity_id1=r["entity_id1"],
                entity_id2=r["entity_id2"],
                similarity_score=r["similarity_score"],
                calculation_method=r["calculation_method"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return database statistics."""
        conn = self._get_conn()

        def _count(sql: str) -> int:
            return conn.execute(sql).fetchone()["c"]

        by_type = conn.execute(
            "SELECT type, COUNT(*) AS c FROM entities WHERE merged_into IS NULL GROUP BY type"
        ).fetchall()
        return {
            "documents": _count("SELECT COUNT(*) AS c FROM documents"),
            "entities": _count("SELECT COUNT(*) AS c FROM entities"),
            "active_entities": _count(
                "SELECT COUNT(*) AS c FROM entities WHERE merged_into IS NULL"
            ),
            "entities_by_type": {r["type"]: r["c"] for r in by_type},
            "relationships": _count("SELECT COUNT(*) AS c FROM relationships"),
            "index_terms": _count("SELECT COUNT(DISTINCT term) AS c FROM index_postings"),
            "aliases": _count("SELECT COUNT(*) AS c FROM entity_aliases"),
            "similarities": _count("SELECT COUNT(*) AS c FROM entity_similarity"),
        }


def count_entities_by_type(entities: Iterable[Entity]) -> Dict[str, int]:
    return dict(Counter(e.type for e in entities))
