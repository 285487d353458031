"""Entity fusion: find and merge entities that denote the same thing.

1. Candidate set = the given entities plus every active persisted entity
2. Pairwise similarity matrix (exact / fuzzy / semantic strategy, optional
   type penalty and context-word Jaccard)
3. Threshold clustering via connected components (explicit DFS stack)
4. Each multi-member cluster collapses into its main entity: the member
   with the lowest storage id, else the first member

Merged-away entities stay stored with ``merged_into`` set.  Their
relationships are re-pointed at the main entity and they drop out of later
candidate sets, so running fusion again makes no new merges.
"""

from __future__ import annotations

import copy
import logging
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence

from rapidfuzz.distance import Levenshtein

from .config import Config
from .embeddings import EmbeddingError, cosine_similarity
from .models import Entity
from .storage import EntityNotFoundError, StorageBackend

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class FusionStrategy(str, Enum):
    EXACT = "exact_match"
    FUZZY = "fuzzy_match"
    SEMANTIC = "semantic_match"


@dataclass
class FusionConfig:
    strategy: FusionStrategy = FusionStrategy.FUZZY
    threshold: float = 0.8
    consider_type: bool = True
    consider_context: bool = False

    def __post_init__(self) -> None:
        # Unknown strategy names raise ValueError here.
        self.strategy = FusionStrategy(self.strategy)
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"fusion threshold must be within [0, 1], got {self.threshold}")

    @classmethod
    def from_config(cls, cfg: Config) -> "FusionConfig":
        return cls(
            strategy=FusionStrategy(cfg.fusion_strategy),
            threshold=cfg.fusion_threshold,
            consider_type=cfg.fusion_consider_type,
            consider_context=cfg.fusion_consider_context,
        )


# ---------------------------------------------------------------------------
# Similarity functions
# ---------------------------------------------------------------------------

def normalize_name(name: str) -> str:
    return _WS_RE.sub(" ", unicodedata.normalize("NFKC", name)).strip().casefold()


def levenshtein_similarity(a: str, b: str) -> float:
    """``1 - distance / max(len)``, case-insensitive.

    Pairs whose lengths differ by more than half the longer one score 0.
    """
    if not a or not b:
        return 0.0
    a, b = a.lower(), b.lower()
    longest = max(len(a), len(b))
    if abs(len(a) - len(b)) / longest > 0.5:
        return 0.0
    return 1.0 - Levenshtein.distance(a, b) / longest


def exact_similarity(a: Entity, b: Entity) -> float:
    if (
        a.name == b.name
        or b.name in (a.aliases or [])
        or a.name in (b.aliases or [])
        or normalize_name(a.name) == normalize_name(b.name)
    ):
        return 1.0
    return 0.0


def fuzzy_similarity(a: Entity, b: Entity) -> float:
    """Best edit-distance similarity over name x alias pairs, both directions."""
    best = levenshtein_similarity(a.name, b.name)
    for alias in a.aliases or []:
        best = max(best, levenshtein_similarity(alias, b.name))
    for alias in b.aliases or []:
        best = max(best, levenshtein_similarity(a.name, alias))
    return best


def context_similarity(a: Entity, b: Entity) -> float:
    words_a, words_b = set(a.context_words or []), set(b.context_words or [])
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


# ---------------------------------------------------------------------------
# Semantic scorers
# ---------------------------------------------------------------------------

class SemanticScorer(Protocol):
    async def prepare(self, entities: Sequence[Entity]) -> None:
        ...

    def score(self, a: Entity, b: Entity) -> float:
        ...


class FuzzySemanticScorer:
    """Default semantic scorer: degrades to fuzzy matching."""

    async def prepare(self, entities: Sequence[Entity]) -> None:
        return None

    def score(self, a: Entity, b: Entity) -> float:
        return fuzzy_similarity(a, b)


class EmbeddingSemanticScorer:
    """Cosine similarity of embedded entity names.

    Names that could not be embedded fall back to fuzzy similarity.
    """

    def __init__(self, embedder) -> None:
        self.embedder = embedder
        self._vectors: Dict[str, List[float]] = {}

    async def prepare(self, entities: Sequence[Entity]) -> None:
        names = sorted({e.name for e in entities if e.name and e.name not in self._vectors})
        if not names:
            return
        try:
            vectors = await self.embedder.embed_batch(names)
        except EmbeddingError as exc:
            logger.warning("Embedding %d names failed (%s), semantic scores fall back to fuzzy",
                           len(names), exc)
            return
        self._vectors.update(zip(names, vectors))

    def score(self, a: Entity, b: Entity) -> float:
        va, vb = self._vectors.get(a.name), self._vectors.get(b.name)
        if va is None or vb is None:
            return fuzzy_similarity(a, b)
        return max(0.0, cosine_similarity(va, vb))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class EntityFusion:
    """Cluster and merge duplicate entities through a storage backend."""

    def __init__(
        self,
        storage: StorageBackend,
        config: Optional[FusionConfig] = None,
        semantic_scorer: Optional[SemanticScorer] = None,
    ) -> None:
        self.storage = storage
        self.config = config or FusionConfig()
        self.semantic_scorer: SemanticScorer = semantic_scorer or FuzzySemanticScorer()

    # ------------------------------------------------------------------
    # Similarity
    # ------------------------------------------------------------------

    def similarity(self, a: Entity, b: Entity, config: Optional[FusionConfig] = None) -> float:
        """Pairwise similarity under *config*; symmetric in ``a`` and ``b``."""
        config = config or self.config
        if config.strategy is FusionStrategy.EXACT:
            score = exact_similarity(a, b)
        elif config.strategy is FusionStrategy.FUZZY:
            score = fuzzy_similarity(a, b)
        else:
            score = self.semantic_scorer.score(a, b)

        if config.consider_type and a.type and b.type and a.type != b.type:
            score *= 0.5
        if config.consider_context:
            score = (score + context_similarity(a, b)) / 2
        return score

    def similarity_matrix(
        self, entities: Sequence[Entity], config: Optional[FusionConfig] = None
    ) -> List[List[float]]:
        n = len(entities)
        matrix = [[0.0] * n for _ in range(n)]
        for i in range(n):
            matrix[i][i] = 1.0
            for j in range(i + 1, n):
                score = self.similarity(entities[i], entities[j], config)
                matrix[i][j] = matrix[j][i] = score
        return matrix

    @staticmethod
    def cluster(matrix: Sequence[Sequence[float]], threshold: float) -> List[List[int]]:
        """Connected components over edges with similarity >= threshold."""
        n = len(matrix)
        visited = [False] * n
        clusters: List[List[int]] = []
        for root in range(n):
            if visited[root]:
                continue
            visited[root] = True
            stack = [root]
            members: List[int] = []
            while stack:
                current = stack.pop()
                members.append(current)
                for j in range(n):
                    if not visited[j] and matrix[current][j] >= threshold:
                        visited[j] = True
                        stack.append(j)
            clusters.append(sorted(members))
        return clusters

    # ------------------------------------------------------------------
    # Fusion run
    # ------------------------------------------------------------------

    async def execute(
        self, entities: Sequence[Entity], config: Optional[FusionConfig] = None
    ) -> List[Entity]:
        """Fuse *entities* with each other and with everything already stored.

        Returns one entity per input position: the fused form of its cluster.
        """
        config = config or self.config
        if not entities:
            return []

        candidates: List[Entity] = []
        slot_of_id: Dict[int, int] = {}

        def _add(ent: Entity) -> int:
            if ent.id is not None:
                if ent.id in slot_of_id:
                    return slot_of_id[ent.id]
                slot_of_id[ent.id] = len(candidates)
            candidates.append(ent)
            return len(candidates) - 1

        input_slots = [_add(self._resolve(ent)) for ent in entities]
        for ent in self.storage.get_entities(include_merged=False):
            _add(ent)

        if config.strategy is FusionStrategy.SEMANTIC:
            await self.semantic_scorer.prepare(candidates)

        matrix = self.similarity_matrix(candidates, config)
        fused: Dict[int, Entity] = {}
        merges = 0
        for members in self.cluster(matrix, config.threshold):
            if len(members) < 2:
                continue
            merged = self._merge_cluster([candidates[i] for i in members])
            merges += 1
            for i in members:
                fused[i] = merged

        logger.info(
            "Fusion over %d candidates (%s, threshold=%.2f): %d cluster(s) merged",
            len(candidates), config.strategy.value, config.threshold, merges,
        )
        return [fused.get(slot, candidates[slot]) for slot in input_slots]

    def _resolve(self, ent: Entity) -> Entity:
        """Swap a persisted entity for its stored state, following ``merged_into``."""
        if ent.id is None:
            return ent
        current = self.storage.get_entity(ent.id)
        if current is None:
            return ent
        seen = {current.id}
        while current.merged_into is not None and current.merged_into not in seen:
            target = self.storage.get_entity(current.merged_into)
            if target is None:
                break
            seen.add(target.id)
            current = target
        return current

    def _merge_cluster(self, members: Sequence[Entity]) -> Entity:
        persisted = [m for m in members if m.id is not None]
        main = min(persisted, key=lambda e: e.id) if persisted else members[0]
        merged = copy.deepcopy(main)
        others = [m for m in members if m is not main]
        for other in others:
            _absorb(merged, other)

        if merged.id is not None:
            losers = [o for o in others if o.id is not None and o.id != merged.id]
            if losers:
                self._retire(merged, losers, "fusion")
            else:
                self.storage.update_entity(merged)
        return merged

    def _retire(self, main: Entity, losers: Sequence[Entity], method: str) -> None:
        """Record the merge of *losers* into *main* and re-point their relationships."""
        moved = self.storage.record_merge(main, losers, method)
        logger.info(
            "Merged entities %s into %s (%r), %d relationship endpoint(s) moved",
            [loser.id for loser in losers], main.id, main.name, moved,
        )

    # ------------------------------------------------------------------
    # Manual merge
    # ------------------------------------------------------------------

    def merge_entities(self, source_id: int, target_id: int) -> Entity:
        """Fold entity *source_id* into *target_id* (user-directed correction)."""
        if source_id == target_id:
            raise ValueError("cannot merge an entity into itself")
        source = self.storage.get_entity(source_id)
        target = self.storage.get_entity(target_id)
        if source is None or target is None:
            raise EntityNotFoundError(
                f"One or both entities not found: {source_id}, {target_id}"
            )
        _absorb(target, source)
        self._retire(target, [source], "manual_fusion")
        return target


def _absorb(main: Entity, other: Entity) -> None:
    """Union *other*'s names, aliases and context into *main*; add occurrences."""
    aliases = list(main.aliases or [])
    for name in [other.name, *(other.aliases or [])]:
        if name and name != main.name and name not in aliases:
            aliases.append(name)
    context = list(main.context_words or [])
    for word in other.context_words or []:
        if word not in context:
            context.append(word)
    main.aliases = aliases
    main.context_words = context
    main.occurrences = (main.occurrences or 1) + (other.occurrences or 1)
