"""Optional vector-similarity capability for entities.

Kept apart from ``StorageBackend``: a deployment either wires an
``EntityVectorIndex`` into the search layer or it does not, and callers
asking for similarity search without one get ``VectorSearchUnavailable``.

Vectors live in a ``sqlite-vec`` ``vec0`` table keyed by entity id.  They are
L2-normalised on the way in, so the L2 distance sqlite-vec reports maps to
cosine similarity as ``1 - d^2 / 2``.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import List, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class VectorSearchUnavailable(RuntimeError):
    """Raised when vector similarity is requested but no index is configured."""


def _load_vec_extension(conn: sqlite3.Connection) -> None:
    """Load the sqlite-vec extension into *conn*.

    Extension loading is only enabled for the duration of the load call.
    """
    conn.enable_load_extension(True)
    try:
        import sqlite_vec
        sqlite_vec.load(conn)
    except Exception as exc:
        logger.error("Failed to load sqlite-vec: %s", exc)
        raise
    finally:
        conn.enable_load_extension(False)


def _normalise(vector: Sequence[float], dimensions: int) -> bytes:
    arr = np.asarray(vector, dtype=np.float32)
    if arr.shape != (dimensions,):
        raise ValueError(f"expected a {dimensions}-dim vector, got shape {arr.shape}")
    norm = float(np.linalg.norm(arr))
    if norm > 0:
        arr = arr / norm
    return arr.astype(np.float32).tobytes()


class EntityVectorIndex:
    """Nearest-neighbour lookup over entity name embeddings."""

    def __init__(self, db_path: str, dimensions: int) -> None:
        self.db_path = db_path
        self.dimensions = dimensions
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        _load_vec_extension(self._conn)
        self._conn.execute(
            f"""CREATE VIRTUAL TABLE IF NOT EXISTS entity_vectors USING vec0(
                    embedding float[{dimensions}]
                )"""
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def add(self, entity_id: int, vector: Sequence[float]) -> None:
        """Insert or replace the vector for *entity_id*."""
        blob = _normalise(vector, self.dimensions)
        try:
            # vec0 tables have no upsert
            self._conn.execute("DELETE FROM entity_vectors WHERE rowid = ?", (entity_id,))
            self._conn.execute(
                "INSERT INTO entity_vectors(rowid, embedding) VALUES (?, ?)",
                (entity_id, blob),
            )
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def remove(self, entity_id: int) -> None:
        self._conn.execute("DELETE FROM entity_vectors WHERE rowid = ?", (entity_id,))
        self._conn.commit()

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) AS c FROM entity_vectors").fetchone()["c"]

    def search(self, vector: Sequence[float], limit: int = 10) -> List[Tuple[int, float]]:
        """Return ``(entity_id, cosine_similarity)`` pairs, best first."""
        blob = _normalise(vector, self.dimensions)
        rows = self._conn.execute(
            """SELECT rowid, distance FROM entity_vectors
               WHERE embedding MATCH ?
               ORDER BY distance
               LIMIT ?""",
            (blob, limit),
        ).fetchall()
        return [
            (r["rowid"], round(1.0 - (r["distance"] ** 2) / 2.0, 6))
            for r in rows
        ]
