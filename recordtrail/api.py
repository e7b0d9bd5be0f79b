"""HTTP read API over the audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .errors import StoreUnavailableError
from .logging_utils import get_logger
from .query import AuditQueryService
from .schemas import SearchFilters
from .settings import settings
from .storage import SnapshotStore, get_default_store, to_iso


logger = get_logger(__name__)

router = APIRouter(prefix="/api/audit-trail", tags=["audit-trail"])

_MAX_PAGE_SIZE = int(settings.api.get("max_page_size", 100))


def get_service(request: Request) -> AuditQueryService:
    return request.app.state.query_service


@router.get("/timeline/{identifier}")
def timeline(identifier: str, service: AuditQueryService = Depends(get_service)) -> dict:
    entries = service.timeline(identifier)
    return {
        "identifier": identifier,
        "record_count": len(entries),
        "entries": [e.model_dump() for e in entries],
    }


@router.get("/status-changes/{identifier}")
def status_changes(identifier: str, service: AuditQueryService = Depends(get_service)) -> dict:
    changes = service.status_changes(identifier)
    return {
        "identifier": identifier,
        "change_count": len(changes),
        "changes": [c.model_dump() for c in changes],
    }


@router.get("/status-changes")
def recent_status_changes(
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    service: AuditQueryService = Depends(get_service),
) -> dict:
    changes = service.recent_status_changes(since, until, limit=limit)
    return {
        "since": to_iso(since),
        "until": to_iso(until),
        "change_count": len(changes),
        "changes": [c.model_dump() for c in changes],
    }


@router.get("/request-volume")
def request_volume(months: int = Query(6, ge=1, le=60), service: AuditQueryService = Depends(get_service)) -> dict:
    return service.request_volume(months).model_dump()


@router.get("/search")
def search(
    q: Optional[str] = None,
    account_name: Optional[str] = None,
    status: Optional[str] = None,
    captured_from: Optional[datetime] = None,
    captured_to: Optional[datetime] = None,
    latest_only: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=_MAX_PAGE_SIZE),
    service: AuditQueryService = Depends(get_service),
) -> dict:
    filters = SearchFilters(
        query=q or None,
        account_name=account_name or None,
        status=status or None,
        captured_from=to_iso(captured_from),
        captured_to=to_iso(captured_to),
        latest_only=latest_only,
    )
    return service.search(filters, page=page, limit=limit).model_dump()


@router.get("/stats")
def stats(service: AuditQueryService = Depends(get_service)) -> dict:
    return service.stats().model_dump()


@router.get("/runs")
def runs(limit: int = Query(20, ge=1, le=_MAX_PAGE_SIZE), service: AuditQueryService = Depends(get_service)) -> dict:
    items = service.runs(limit)
    return {"count": len(items), "runs": [r.model_dump() for r in items]}


@router.get("/health")
def health() -> dict:
    return {"status": "healthy"}


async def _store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    logger.error("Store unavailable while serving %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def create_app(store: Optional[SnapshotStore] = None) -> FastAPI:
    app = FastAPI(
        title="recordtrail",
        description="Audit trail of captured request records",
        version="0.1.0",
    )
    app.state.query_service = AuditQueryService(store or get_default_store())
    app.add_exception_handler(StoreUnavailableError, _store_unavailable)
    app.include_router(router)
    return app
