"""FastAPI HTTP API for the document knowledge graph.

Endpoints:
    POST   /v1/documents                -- Process one document through the pipeline
    POST   /v1/documents/batch          -- Process several documents (per-document errors)
    GET    /v1/documents/{doc_id}       -- Document with its entities
    DELETE /v1/documents/{doc_id}       -- Delete a document and everything derived from it
    GET    /v1/search                   -- TF-IDF document search
    POST   /v1/search/advanced          -- Text search plus date / tag / entity-type filters
    GET    /v1/entities                 -- List entities
    GET    /v1/entities/search          -- Entity name / alias search
    GET    /v1/entities/similar         -- Vector similarity over entity names (optional)
    GET    /v1/entities/{id}            -- One entity with its aliases
    GET    /v1/entities/{id}/graph      -- Bounded-depth neighbourhood graph
    GET    /v1/relationships            -- Filtered relationship listing
    GET    /v1/path                     -- Shortest relationship path between two entities
    POST   /v1/fusion                   -- Run entity fusion
    POST   /v1/entities/merge           -- Manually merge one entity into another
    GET    /v1/graph                    -- Whole graph, or the graph around a search hit
    GET    /v1/stats                    -- Statistics
    GET    /v1/health                   -- Health check

Run: ``python -m doc_graph.api``
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from .config import Config, load_config
from .embeddings import NameEmbedder
from .fusion import EntityFusion, FusionConfig
from .graph import GraphService
from .middleware import APIKeyMiddleware, RequestAuditMiddleware
from .models import AdvancedQuery, Document, SearchOptions
from .processor import DocumentProcessor
from .search import SearchAPI
from .storage import EntityNotFoundError, SQLiteStorage, StorageBackend
from .vectors import EntityVectorIndex, VectorSearchUnavailable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared state (initialised in lifespan)
# ---------------------------------------------------------------------------

_config: Optional[Config] = None
_storage: Optional[StorageBackend] = None
_vector_index: Optional[EntityVectorIndex] = None
_processor: Optional[DocumentProcessor] = None
_search: Optional[SearchAPI] = None
_fusion: Optional[EntityFusion] = None
_graph: Optional[GraphService] = None
_start_time: float = 0.0

_audit_log_path = os.environ.get("DOC_GRAPH_AUDIT_LOG")
if _audit_log_path:
    _audit_handler = logging.FileHandler(_audit_log_path)
    _audit_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    logging.getLogger("audit").addHandler(_audit_handler)
logging.getLogger("audit").setLevel(logging.INFO)


def init_state(
    cfg: Config,
    storage: StorageBackend,
    embedder: Optional[NameEmbedder] = None,
    vector_index: Optional[EntityVectorIndex] = None,
) -> None:
    """Wire the module-level services around *storage*."""
    global _config, _storage, _vector_index, _processor, _search, _fusion, _graph, _start_time

    _config = cfg
    _storage = storage
    _vector_index = vector_index
    _processor = DocumentProcessor.from_config(
        cfg, storage=storage, embedder=embedder, vector_index=vector_index
    )
    _search = SearchAPI(
        storage,
        tokenizer=_processor.tokenizer,
        vector_index=vector_index,
        embedder=embedder,
    )
    _fusion = _processor.fusion
    _graph = GraphService(storage, _search)
    _start_time = time.time()


def reset_state() -> None:
    global _config, _storage, _vector_index, _processor, _search, _fusion, _graph
    if _vector_index is not None:
        _vector_index.close()
    if _storage is not None:
        _storage.close()
    _config = _storage = _vector_index = None
    _processor = _search = _fusion = _graph = None


def _require(service: Any, name: str) -> Any:
    if service is None:
        raise HTTPException(503, f"{name} not initialised")
    return service


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown logic."""
    cfg = load_config()
    errors = cfg.validate()
    if errors:
        logger.warning("Config validation warnings: %s", errors)

    storage = SQLiteStorage(cfg.db_path)

    embedder = None
    vector_index = None
    if cfg.embeddings_enabled:
        embedder = NameEmbedder(
            api_key=cfg.embedding_api_key,
            model=cfg.embedding_model,
            dimensions=cfg.embedding_dimensions,
            base_url=cfg.embedding_base_url,
        )
        try:
            vector_index = EntityVectorIndex(cfg.db_path, cfg.embedding_dimensions)
        except Exception as exc:
            logger.warning("Vector index unavailable (%s), similarity search disabled", exc)
    else:
        logger.info("No DOC_GRAPH_EMBEDDING_API_KEY, vector search disabled")

    if not cfg.llm_enabled:
        logger.info("No DOC_GRAPH_LLM_ENDPOINT, extraction uses local rules only")

    init_state(cfg, storage, embedder=embedder, vector_index=vector_index)
    logger.info(
        "Doc graph API ready: db=%s llm=%s vectors=%s fusion=%s/%.2f auto_fuse=%s",
        cfg.db_path,
        "on" if cfg.llm_enabled else "off",
        "on" if vector_index is not None else "off",
        cfg.fusion_strategy,
        cfg.fusion_threshold,
        cfg.auto_fuse,
    )

    yield

    reset_state()


app = FastAPI(
    title="Doc Graph API",
    version="0.1.0",
    lifespan=lifespan,
)

# Last added runs first: auth is checked before the audit line is written.
app.add_middleware(RequestAuditMiddleware)

_api_key = os.environ.get("DOC_GRAPH_API_KEY", "")
if _api_key:
    app.add_middleware(APIKeyMiddleware, api_key=_api_key)
    logger.info("API key authentication enabled")
else:
    logger.warning("No DOC_GRAPH_API_KEY set -- API is UNAUTHENTICATED")


# --- Centralized error handling ---

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    logger.warning("HTTP %d: %s (path=%s)", exc.status_code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "status_code": exc.status_code},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.warning("Validation error: %s (path=%s)", str(exc)[:200], request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "detail": exc.errors()},
    )


@app.exception_handler(EntityNotFoundError)
async def not_found_handler(request, exc):
    return JSONResponse(status_code=404, content={"error": str(exc), "status_code": 404})


@app.exception_handler(VectorSearchUnavailable)
async def unavailable_handler(request, exc):
    return JSONResponse(status_code=501, content={"error": str(exc), "status_code": 501})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc):
    logger.warning("Bad request: %s (path=%s)", exc, request.url.path)
    return JSONResponse(status_code=400, content={"error": str(exc), "status_code": 400})


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.exception("Unhandled error: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class DocumentRequest(BaseModel):
    content: str = Field(..., max_length=1_000_000)
    title: str = ""
    doc_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    tags: List[str] = Field(default_factory=list)

    def to_document(self) -> Document:
        doc = Document(title=self.title, content=self.content, tags=list(self.tags))
        if self.doc_id:
            doc.doc_id = self.doc_id
        return doc


class BatchRequest(BaseModel):
    documents: List[DocumentRequest] = Field(..., min_length=1, max_length=500)


class AdvancedSearchRequest(BaseModel):
    text: Optional[str] = None
    entity_types: List[str] = Field(default_factory=list)
    date_from: Optional[float] = None
    date_to: Optional[float] = None
    tags: List[str] = Field(default_factory=list)
    limit: int = Field(default=10, ge=1, le=200)
    offset: int = Field(default=0, ge=0)
    sort_by: str = "relevance"
    fuzzy: bool = False


class FusionRequest(BaseModel):
    entity_ids: Optional[List[int]] = Field(
        default=None, description="Entities to fuse (None = every active entity)"
    )
    strategy: Optional[str] = None
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    consider_type: Optional[bool] = None
    consider_context: Optional[bool] = None


class MergeRequest(BaseModel):
    source_id: int
    target_id: int


def _results_payload(query: Any, results) -> Dict[str, Any]:
    return {
        "query": query,
        "count": len(results),
        "results": [r.to_dict() for r in results],
    }


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@app.post("/v1/documents")
async def create_document(req: DocumentRequest) -> Dict[str, Any]:
    """Run the full pipeline for one document; storage failures propagate."""
    processor: DocumentProcessor = _require(_processor, "Processor")
    result = await processor.process_document(req.to_document())
    return result.to_dict()


@app.post("/v1/documents/batch")
async def create_documents(req: BatchRequest) -> Dict[str, Any]:
    processor: DocumentProcessor = _require(_processor, "Processor")
    results = await processor.process_batch([d.to_document() for d in req.documents])
    return {
        "count": len(results),
        "failed": sum(1 for r in results if not r.ok),
        "results": [r.to_dict() for r in results],
    }


@app.get("/v1/documents/{doc_id}")
async def get_document(doc_id: str) -> Dict[str, Any]:
    storage: StorageBackend = _require(_storage, "Storage")
    doc = storage.get_document(doc_id)
    if doc is None:
        raise HTTPException(404, f"Document {doc_id} not found")
    return {
        "document": doc.to_dict(),
        "entities": [e.to_dict() for e in storage.get_entities(doc_id=doc_id)],
    }


@app.delete("/v1/documents/{doc_id}")
async def delete_document(doc_id: str) -> Dict[str, Any]:
    storage: StorageBackend = _require(_storage, "Storage")
    if not storage.delete_document(doc_id):
        raise HTTPException(404, f"Document {doc_id} not found")
    return {"deleted": True, "doc_id": doc_id}


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@app.get("/v1/search")
async def search_documents(
    query: str = Query(..., min_length=1),
    limit: int = Query(default=10, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    sort_by: str = Query(default="relevance"),
    fuzzy: bool = Query(default=False),
) -> Dict[str, Any]:
    search: SearchAPI = _require(_search, "Search")
    options = SearchOptions(limit=limit, offset=offset, sort_by=sort_by, fuzzy=fuzzy)
    return _results_payload(query, search.search_documents(query, options))


@app.post("/v1/search/advanced")
async def search_advanced(req: AdvancedSearchRequest) -> Dict[str, Any]:
    search: SearchAPI = _require(_search, "Search")
    query = AdvancedQuery(
        text=req.text,
        entity_types=req.entity_types,
        date_from=req.date_from,
        date_to=req.date_to,
        tags=req.tags,
    )
    options = SearchOptions(limit=req.limit, offset=req.offset, sort_by=req.sort_by, fuzzy=req.fuzzy)
    return _results_payload(req.text, search.advanced_search(query, options))


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@app.get("/v1/entities")
async def list_entities(
    doc_id: Optional[str] = Query(default=None),
    type: Optional[str] = Query(default=None),
    include_merged: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> Dict[str, Any]:
    storage: StorageBackend = _require(_storage, "Storage")
    entities = storage.get_entities(doc_id=doc_id, entity_type=type, include_merged=include_merged)
    page = entities[offset:offset + limit]
    return {
        "total": len(entities),
        "count": len(page),
        "entities": [e.to_dict() for e in page],
    }


@app.get("/v1/entities/search")
async def search_entities(
    query: str = Query(..., min_length=1),
    types: Optional[List[str]] = Query(default=None),
    limit: int = Query(default=10, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> Dict[str, Any]:
    search: SearchAPI = _require(_search, "Search")
    options = SearchOptions(limit=limit, offset=offset, entity_types=list(types or []))
    return _results_payload(query, search.search_entities(query, options))


@app.get("/v1/entities/similar")
async def similar_entities(
    text: str = Query(..., min_length=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> Dict[str, Any]:
    search: SearchAPI = _require(_search, "Search")
    return _results_payload(text, await search.search_similar_entities(text, limit))


@app.post("/v1/entities/merge")
async def merge_entities(req: MergeRequest) -> Dict[str, Any]:
    fusion: EntityFusion = _require(_fusion, "Fusion")
    merged = fusion.merge_entities(req.source_id, req.target_id)
    return {"merged": True, "entity": merged.to_dict()}


@app.get("/v1/entities/{entity_id}")
async def get_entity(entity_id: int) -> Dict[str, Any]:
    storage: StorageBackend = _require(_storage, "Storage")
    ent = storage.get_entity(entity_id)
    if ent is None:
        raise EntityNotFoundError(f"entity {entity_id} not found")
    return {
        "entity": ent.to_dict(),
        "alias_records": storage.get_entity_aliases(entity_id),
        "similarities": [s.to_dict() for s in storage.get_entity_similarities(entity_id)],
    }


@app.get("/v1/entities/{entity_id}/graph")
async def entity_graph(
    entity_id: int,
    depth: int = Query(default=2, ge=0, le=6),
    include_reverse: bool = Query(default=True),
) -> Dict[str, Any]:
    search: SearchAPI = _require(_search, "Search")
    return search.get_entity_graph(entity_id, depth=depth, include_reverse=include_reverse).to_dict()


# ---------------------------------------------------------------------------
# Relationships & paths
# ---------------------------------------------------------------------------

@app.get("/v1/relationships")
async def list_relationships(
    source_id: Optional[int] = Query(default=None),
    target_id: Optional[int] = Query(default=None),
    type: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> Dict[str, Any]:
    search: SearchAPI = _require(_search, "Search")
    rels = search.search_relationships(source_id, target_id, type, limit=limit, offset=offset)
    return {"count": len(rels), "relationships": [r.to_dict() for r in rels]}


@app.get("/v1/path")
async def entity_path(
    source_id: int = Query(...),
    target_id: int = Query(...),
    max_depth: int = Query(default=3, ge=1, le=10),
) -> Dict[str, Any]:
    search: SearchAPI = _require(_search, "Search")
    path = search.find_entity_path(source_id, target_id, max_depth=max_depth)
    return {
        "found": bool(path),
        "length": len(path),
        "path": [r.to_dict() for r in path],
    }


# ---------------------------------------------------------------------------
# Fusion
# ---------------------------------------------------------------------------

@app.post("/v1/fusion")
async def run_fusion(req: FusionRequest) -> Dict[str, Any]:
    storage: StorageBackend = _require(_storage, "Storage")
    fusion: EntityFusion = _require(_fusion, "Fusion")

    base = fusion.config
    config = FusionConfig(
        strategy=req.strategy or base.strategy,
        threshold=base.threshold if req.threshold is None else req.threshold,
        consider_type=base.consider_type if req.consider_type is None else req.consider_type,
        consider_context=(
            base.consider_context if req.consider_context is None else req.consider_context
        ),
    )

    if req.entity_ids is None:
        entities = storage.get_entities(include_merged=False)
    else:
        entities = []
        for entity_id in req.entity_ids:
            ent = storage.get_entity(entity_id)
            if ent is None:
                raise EntityNotFoundError(f"entity {entity_id} not found")
            entities.append(ent)

    before = len(storage.get_entities(include_merged=False))
    fused = await fusion.execute(entities, config)
    after = len(storage.get_entities(include_merged=False))
    return {
        "strategy": config.strategy.value,
        "threshold": config.threshold,
        "merged": before - after,
        "count": len(fused),
        "entities": [e.to_dict() for e in fused],
    }


# ---------------------------------------------------------------------------
# Graph, stats & health
# ---------------------------------------------------------------------------

@app.get("/v1/graph")
async def graph(
    query: Optional[str] = Query(default=None),
    depth: int = Query(default=2, ge=0, le=6),
) -> Dict[str, Any]:
    graph_service: GraphService = _require(_graph, "Graph")
    if query:
        return graph_service.graph_from_search(query, depth=depth).to_dict()
    return graph_service.full_graph().to_dict()


@app.get("/v1/stats")
async def stats() -> Dict[str, Any]:
    storage: StorageBackend = _require(_storage, "Storage")
    s = storage.stats()
    s["vectors"] = _vector_index.count() if _vector_index is not None else None
    return s


@app.get("/v1/health")
async def health() -> Dict[str, Any]:
    """Returns 200 with status "ok" or "down" plus per-component checks."""
    checks: Dict[str, bool] = {"storage": False}
    if _storage is not None:
        try:
            _storage.stats()
            checks["storage"] = True
        except Exception as exc:
            logger.warning("Health probe failed: %s", exc)

    return {
        "status": "ok" if checks["storage"] else "down",
        "checks": checks,
        "llm": bool(_config and _config.llm_enabled),
        "vector_search": bool(_search and _search.vector_search_available),
        "uptime_seconds": round(time.time() - _start_time, 1),
    }


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run the API server via uvicorn."""
    import uvicorn

    cfg = load_config()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    logger.info("Starting Doc Graph API on %s:%d", cfg.api_host, cfg.api_port)
    uvicorn.run(
        "doc_graph.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
