"""
Search API: online recommendations plus feature-flagged administrative
endpoints for indexing runs and version maintenance.
"""

import threading
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .schemas import (
    CompactRequest,
    CompactResponse,
    ErrorBody,
    ErrorResponse,
    HealthResponse,
    IndexStatusResponse,
    RecommendationResponse,
    ReindexAccepted,
    ReindexRequest,
    SearchRequest,
    SearchResponse,
)
from ..core import config
from ..core.db import health_check
from ..core.errors import CatalogMatchError, InvalidQuery, RateLimited
from ..indexing.feed import iter_feed_file
from ..indexing.pipeline import IndexingPipeline, RunState
from ..query.engine import QueryEngine
from ..util.logging import logger
from ..vector.embeddings import EmbeddingClient
from ..vector.store import COMPACTED, VersionedVectorStore

app = FastAPI(
    title="Catalog Match API",
    version=config.VERSION,
    description="Recommends catalog items by similarity to historical records",
    docs_url="/docs" if config.debug_enabled() else None,
    redoc_url="/redoc" if config.debug_enabled() else None
)

HTTP_ERROR_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
}


@dataclass
class Services:
    store: VersionedVectorStore
    client: EmbeddingClient
    pipeline: IndexingPipeline
    engine: QueryEngine


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    """Lazy initialization of the store, embedding client, pipeline and engine."""
    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                issues = config.validate_config()
                for issue in issues:
                    logger.warning(f"Configuration issue: {issue}")
                store = config.get_vector_store()
                client = config.get_embedding_client(store)
                _services = Services(
                    store=store,
                    client=client,
                    pipeline=config.get_indexing_pipeline(store, client),
                    engine=config.get_query_engine(store, client),
                )
    return _services


def require_admin(authorization: Optional[str] = Header(default=None)):
    if not config.admin_api_enabled():
        raise HTTPException(status_code=403, detail="Admin endpoints disabled")
    token = config.admin_auth_token()
    if token and authorization != f"Bearer {token}":
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")


def _error_response(status_code: int, code: str, message: str, details=None, headers=None):
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorBody(code=code, message=message, details=details or {})).model_dump(),
        headers=headers,
    )


@app.exception_handler(CatalogMatchError)
async def catalog_match_error_handler(request: Request, exc: CatalogMatchError):
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after:
        headers = {"Retry-After": str(int(round(exc.retry_after)))}
    logger.log_operation("http_error", "rejected", {"path": request.url.path, "code": exc.code})
    body = exc.to_dict()
    return _error_response(exc.http_status, body["code"], body["message"], body["details"], headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    details = {"errors": [
        {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg")} for e in errors
    ]}
    return _error_response(400, InvalidQuery.code, message, details)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    code = HTTP_ERROR_CODES.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _error_response(exc.status_code, code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {type(exc).__name__}: {exc}")
    return _error_response(500, "INTERNAL_ERROR", "Internal server error")


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(services: Services = Depends(get_services)):
    """Check system health."""
    with services.store.db_lock:
        db_health = health_check(services.store.conn)
    active = services.store.active_version
    return HealthResponse(
        status="healthy" if db_health and active is not None else "degraded" if db_health else "unhealthy",
        version=config.VERSION,
        db_health=db_health,
        active_version=active,
        record_count=services.store.count() if active is not None else 0,
    )


@app.post("/search", response_model=SearchResponse)
def search_endpoint(request: SearchRequest, services: Services = Depends(get_services)):
    """Recommend catalog items for a free-text query."""
    result = services.engine.search(request.query_text, top_k=request.top_k, filters=request.filters)
    return SearchResponse(
        recommendations=[
            RecommendationResponse(
                catalog_item_id=r.catalog_item_id,
                confidence_score=r.confidence_score,
                rank=r.rank,
                supporting_hit_count=r.supporting_hit_count,
            )
            for r in result.recommendations
        ],
        query_latency_ms=result.latency_ms,
        index_version=result.index_version,
        degraded=result.degraded,
    )


@app.post("/admin/reindex", dependencies=[Depends(require_admin)])
def reindex_endpoint(request: ReindexRequest, services: Services = Depends(get_services)):
    """Start an indexing run from a feed file or inline records."""
    if request.records is not None:
        feed = list(request.records)
    elif request.feed_path:
        try:
            feed = list(iter_feed_file(request.feed_path))
        except (FileNotFoundError, ValueError) as e:
            raise InvalidQuery(str(e), details={"feed_path": request.feed_path}) from e
    else:
        raise InvalidQuery("feedPath or records is required")

    if not request.wait:
        run_id = services.pipeline.submit(feed, mode=request.mode)
        return JSONResponse(
            status_code=202,
            content=ReindexAccepted(run_id=run_id).model_dump(by_alias=True),
        )

    report = services.pipeline.run(feed, mode=request.mode)
    if report.state == RunState.FAILED:
        return JSONResponse(status_code=500, content={"error": report.error, "report": report.to_dict()})
    return report.to_dict()


@app.get("/admin/runs/{run_id}", dependencies=[Depends(require_admin)])
def run_report_endpoint(run_id: str, services: Services = Depends(get_services)):
    report = services.pipeline.get_report(run_id)
    if report is None:
        raise HTTPException(status_code=404, detail=f"Unknown run: {run_id}")
    return report.to_dict()


@app.get("/admin/index", response_model=IndexStatusResponse, dependencies=[Depends(require_admin)])
def index_status_endpoint(services: Services = Depends(get_services)):
    return IndexStatusResponse(**services.store.stats())


@app.post("/admin/compact", response_model=CompactResponse, dependencies=[Depends(require_admin)])
def compact_endpoint(request: CompactRequest = None, services: Services = Depends(get_services)):
    """Drop retired and failed index versions."""
    retain = request.retain if request is not None else None
    dropped = services.pipeline.compact(retain)
    retained = [v["version"] for v in services.store.versions() if v["status"] != COMPACTED]
    return CompactResponse(dropped=dropped, retained=retained)
