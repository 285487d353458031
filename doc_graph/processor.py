"""Document processing pipeline.

For one document, in order:

1. Persist the document (upsert; re-processing purges previously derived data)
2. Tokenize and rebuild its inverted-index postings
3. Extract entities and persist them
4. Reload the document's entities so they carry storage ids
5. Extract relationships between the reloaded entities and persist them
6. Optionally fuse the new entities against the whole store
7. Optionally embed entity names into the vector index

Storage write failures abort the document.  ``process_batch`` isolates them
per document and reports the message on that document's result.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from .config import Config
from .embeddings import EmbeddingError, NameEmbedder
from .entities import EntityExtractor
from .fusion import EmbeddingSemanticScorer, EntityFusion, FusionConfig, FusionStrategy
from .llm import ChatCompletionClient, LLMConfig
from .models import Document, Entity, ProcessResult
from .relations import RelationExtractor
from .storage import SQLiteStorage, StorageBackend
from .tokenizer import Tokenizer
from .vectors import EntityVectorIndex

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class DocumentProcessor:
    """Run the extraction pipeline for documents against one storage backend."""

    def __init__(
        self,
        storage: StorageBackend,
        tokenizer: Optional[Tokenizer] = None,
        entity_extractor: Optional[EntityExtractor] = None,
        relation_extractor: Optional[RelationExtractor] = None,
        fusion: Optional[EntityFusion] = None,
        auto_fuse: bool = False,
        vector_index: Optional[EntityVectorIndex] = None,
        embedder: Optional[NameEmbedder] = None,
    ) -> None:
        self.storage = storage
        self.tokenizer = tokenizer or Tokenizer()
        self.entity_extractor = entity_extractor or EntityExtractor()
        self.relation_extractor = relation_extractor or RelationExtractor()
        self.fusion = fusion
        self.auto_fuse = auto_fuse
        self.vector_index = vector_index
        self.embedder = embedder

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        storage: Optional[StorageBackend] = None,
        embedder: Optional[NameEmbedder] = None,
        vector_index: Optional[EntityVectorIndex] = None,
    ) -> "DocumentProcessor":
        storage = storage or SQLiteStorage(cfg.db_path)
        llm = ChatCompletionClient(LLMConfig.from_config(cfg)) if cfg.llm_enabled else None

        fusion_config = FusionConfig.from_config(cfg)
        scorer = None
        if fusion_config.strategy is FusionStrategy.SEMANTIC and embedder is not None:
            scorer = EmbeddingSemanticScorer(embedder)

        return cls(
            storage=storage,
            tokenizer=Tokenizer(use_segmenter=cfg.use_segmenter),
            entity_extractor=EntityExtractor.from_config(cfg, llm),
            relation_extractor=RelationExtractor.from_config(cfg, llm),
            fusion=EntityFusion(storage, fusion_config, semantic_scorer=scorer),
            auto_fuse=cfg.auto_fuse,
            vector_index=vector_index,
            embedder=embedder,
        )

    # ------------------------------------------------------------------
    # Single document
    # ------------------------------------------------------------------

    async def process_document(self, doc: Document) -> ProcessResult:
        reprocess = self.storage.get_document(doc.doc_id) is not None
        stored = self.storage.save_document(doc)
        doc_id = stored.doc_id
        if reprocess:
            removed = self.storage.purge_document_data(doc_id)
            logger.info("Re-processing document %s, %d stale entities removed", doc_id, removed)

        tokens = self.tokenizer.tokenize(stored.content)
        self.storage.build_inverted_index(doc_id, tokens)

        extracted = await self.entity_extractor.extract(stored.content, doc_id)
        self.storage.save_entities(extracted)

        # Only reloaded entities carry the ids relationships point at.  Spans
        # kept alive by other documents but gone from this text are skipped.
        spans = {e.span_key for e in extracted}
        entities = [e for e in self.storage.get_entities(doc_id=doc_id) if e.span_key in spans]

        relationships = await self.relation_extractor.extract(entities, stored.content, doc_id)
        self.storage.save_relationships(relationships)

        if self.auto_fuse and self.fusion is not None and entities:
            await self.fusion.execute(entities)
            entities = [
                e for e in self.storage.get_entities(doc_id=doc_id) if e.span_key in spans
            ]

        if self.vector_index is not None and self.embedder is not None:
            await self._index_vectors(entities)

        logger.info(
            "Processed document %s: %d tokens, %d entities, %d relationships",
            doc_id, len(tokens), len(entities), len(relationships),
        )
        return ProcessResult(
            doc_id=doc_id,
            tokens=tokens,
            entities=entities,
            relationships=self.storage.get_relationships(doc_id=doc_id),
        )

    async def _index_vectors(self, entities: Sequence[Entity]) -> None:
        active = [e for e in entities if e.id is not None and e.merged_into is None]
        if not active:
            return
        try:
            vectors = await self.embedder.embed_batch([e.name for e in active])
        except EmbeddingError as exc:
            logger.warning("Embedding %d entity names failed: %s, skipping vector index",
                           len(active), exc)
            return
        for ent, vector in zip(active, vectors):
            try:
                self.vector_index.add(ent.id, vector)
            except ValueError as exc:
                logger.warning("Vector for entity %s rejected: %s", ent.id, exc)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def process_batch(
        self,
        documents: Sequence[Document],
        progress_cb: Optional[ProgressCallback] = None,
    ) -> List[ProcessResult]:
        """Process *documents* in order; one failure never stops the rest."""
        results: List[ProcessResult] = []
        total = len(documents)
        for done, doc in enumerate(documents, start=1):
            try:
                results.append(await self.process_document(doc))
            except Exception as exc:
                logger.error("Processing document %s failed: %s", doc.doc_id, exc)
                results.append(ProcessResult(doc_id=doc.doc_id, error=str(exc)))
            if progress_cb is not None:
                progress_cb(done, total)

        failed = sum(1 for r in results if not r.ok)
        logger.info("Batch finished: %d document(s), %d failed", total, failed)
        return results
