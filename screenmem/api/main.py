"""
Downstream search boundary: keyword search, semantic search, recent records, stats and health.
"""

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional

from .schemas import (
    HealthResponse,
    MemoryItem,
    RecentResponse,
    SearchResponse,
    SemanticHit,
    SemanticSearchResponse,
    StatsResponse,
)
from ..core.config import VERSION, debug_enabled
from ..core.orchestrator import IngestionOrchestrator
from ..util.logging import logger, sanitize_text


def create_app(orchestrator: IngestionOrchestrator) -> FastAPI:
    """Build the API over an initialized orchestrator; all reads go through its keyword store and indexer."""
    app = FastAPI(
        title="screenmem search API",
        version=VERSION,
        description="Keyword and semantic search over captured screen memory",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None,
    )

    # Local overlay apps query from the browser
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    store = orchestrator.store

    @app.get("/health", response_model=HealthResponse)
    def health_endpoint():
        """Per-component health; the process being up is enough to answer."""
        health = orchestrator.health_check()
        return HealthResponse(
            status="healthy" if health["healthy"] else "degraded",
            version=health["version"],
            components=health["components"],
            total_records=health["total_records"],
            app_count=health["app_count"],
            errors=health["errors"],
        )

    @app.get("/search", response_model=SearchResponse)
    def search_endpoint(q: str = Query(..., min_length=1), limit: int = Query(50, ge=1, le=500),
                        offset: int = Query(0, ge=0)):
        """Ranked keyword search over OCR text, window titles, apps and hosts."""
        if not q.strip():
            raise HTTPException(status_code=400, detail="q cannot be empty")

        records = store.query(q, limit=limit, offset=offset)
        logger.log_operation("api.search", "success", {"query": sanitize_text(q), "results": len(records)})
        return SearchResponse(
            query=q,
            results=[MemoryItem.from_record(r) for r in records],
            limit=limit,
            offset=offset,
        )

    @app.get("/search/semantic", response_model=SemanticSearchResponse)
    def semantic_search_endpoint(q: str = Query(..., min_length=1), top_k: int = Query(10, ge=1, le=100),
                                 app_name: Optional[str] = Query(None, alias="app")):
        """Nearest records by embedding. Empty when vectors are disabled or the provider is down."""
        indexer = orchestrator.indexer
        if indexer is None:
            return SemanticSearchResponse(query=q, hits=[], vector_enabled=False)

        filters = {"app": app_name} if app_name else None
        results = indexer.semantic_search(q, top_k, filters)
        records = {r.id: r for r in store.get_many([res.id for res in results])}

        hits = [
            SemanticHit(
                id=res.id,
                score=res.score,
                metadata=res.metadata,
                record=MemoryItem.from_record(records[res.id]) if res.id in records else None,
            )
            for res in results
        ]
        return SemanticSearchResponse(query=q, hits=hits, vector_enabled=True)

    @app.get("/recent", response_model=RecentResponse)
    def recent_endpoint(since: Optional[int] = None, limit: int = Query(100, ge=1, le=1000),
                        app_name: Optional[str] = Query(None, alias="app"), url_host: Optional[str] = None):
        records = store.recent(since_ts=since, limit=limit, app=app_name, url_host=url_host)
        return RecentResponse(results=[MemoryItem.from_record(r) for r in records])

    @app.get("/stats", response_model=StatsResponse)
    def stats_endpoint():
        stats = store.stats()
        return StatsResponse(
            total=stats.total,
            oldest_ts=stats.oldest_ts,
            newest_ts=stats.newest_ts,
            app_counts=stats.app_counts,
            ingestion=orchestrator.get_stats(),
        )

    return app
