"""
Civitai Mirror API Routers

FastAPI routers for local model store operations.
All endpoints return the same JSON format as CLI --json output.

Usage:
    from fastapi import FastAPI
    from src.store.api import create_store_routers

    app = FastAPI()
    for router in create_store_routers():
        app.include_router(router, prefix="/api")
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import (
    BatchDeleteError,
    CatalogError,
    DeleteConfirmationError,
    Err,
    ModelVersionDeleteError,
    ScanError,
)
from .models import ScanOptions

# Setup logger
logger = logging.getLogger(__name__)


# =============================================================================
# Request Models
# =============================================================================

class VersionIdsRequest(BaseModel):
    """Request naming the model versions to delete."""
    version_ids: List[int] = Field(min_length=1)


class TokenRequest(BaseModel):
    token: str


# =============================================================================
# Store Instance Management
# =============================================================================

_store_instance = None


def get_store():
    """
    Get or create Store singleton.

    Reads configuration from config/settings.py so the API uses the same
    base directory and database as the CLI.
    """
    global _store_instance
    if _store_instance is None:
        from . import Store
        _store_instance = Store()
    return _store_instance


def reset_store():
    """Reset Store singleton (useful for config changes)."""
    global _store_instance
    _store_instance = None


CONFIRMATION_STATUS = {
    "missing": 404,
    "expired": 410,
    "invalid": 400,
}


def _scan_error(error: ScanError) -> HTTPException:
    status = 409 if error.operation == "scan" else 500
    return HTTPException(
        status_code=status,
        detail={"message": str(error), "operation": error.operation, "path": error.path},
    )


def _delete_error(error: Exception, version_status: int = 500) -> HTTPException:
    if isinstance(error, DeleteConfirmationError):
        return HTTPException(
            status_code=CONFIRMATION_STATUS.get(error.reason, 400),
            detail={"message": str(error), "reason": error.reason},
        )
    if isinstance(error, ModelVersionDeleteError):
        return HTTPException(
            status_code=version_status,
            detail={"message": str(error), "model_id": error.model_id, "version_id": error.version_id},
        )
    if isinstance(error, CatalogError):
        return HTTPException(status_code=502, detail={"message": str(error)})
    return HTTPException(status_code=500, detail={"message": str(error)})


def _batch_response(result) -> Any:
    """Summary on success, 207 with per-item outcomes on partial failure."""
    if isinstance(result, Err):
        error = result.error
        if isinstance(error, BatchDeleteError):
            return JSONResponse(
                status_code=207,
                content={
                    "total": error.total,
                    "succeeded": error.succeeded,
                    "failed": error.failed,
                    "failed_items": error.failed_items,
                    "results": [r.model_dump(mode="json") for r in error.results],
                },
            )
        raise _delete_error(error)
    return result.value.model_dump(mode="json")


# =============================================================================
# Local Models Router
# =============================================================================

local_models_router = APIRouter(prefix="/local-models", tags=["local-models"])


@local_models_router.post("/scan", response_model=Dict[str, Any])
def scan(options: Optional[ScanOptions] = None, store=Depends(get_store)):
    """Scan the mirror; per-file failures are embedded in the result."""
    options = options or ScanOptions()
    logger.info(f"[API] Scan requested: {options.model_dump()}")
    result = store.reconciler.perform_incremental_scan(options)
    if isinstance(result, Err):
        raise _scan_error(result.error)
    return result.value.model_dump(mode="json")


@local_models_router.get("/consistency", response_model=Dict[str, Any])
def consistency(store=Depends(get_store)):
    result = store.check_consistency()
    if isinstance(result, Err):
        raise _scan_error(result.error)
    reports = result.value
    return {
        "total": len(reports),
        "inconsistent": sum(1 for r in reports if not r.is_consistent),
        "reports": [r.model_dump(mode="json") for r in reports],
    }


@local_models_router.post("/repair", response_model=Dict[str, Any])
def repair(store=Depends(get_store)):
    result = store.repair()
    if isinstance(result, Err):
        raise _scan_error(result.error)
    return result.value.model_dump(mode="json")


@local_models_router.get("/versions", response_model=Dict[str, Any])
def list_versions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=500),
    store=Depends(get_store),
):
    result = store.query_versions(page=page, page_size=page_size)
    return {
        "versions": [r.model_dump(mode="json") for r in result.items],
        "page": result.page,
        "page_size": result.page_size,
        "total_items": result.total_items,
        "total_pages": result.total_pages,
    }


@local_models_router.get("/models/{model_id}/with-disk-status", response_model=Dict[str, Any])
def model_with_disk_status(model_id: int, store=Depends(get_store)):
    """Catalog model plus the versions that have files on disk."""
    try:
        model = store.catalog.get_model(model_id)
    except CatalogError as e:
        logger.warning(f"[API] Catalog lookup failed for model {model_id}: {e}")
        raise HTTPException(status_code=502, detail={"message": str(e)})

    on_disk = store.reconciler.check_model_on_disk(model)
    return {
        "model": model.to_json_dict(),
        "versions_on_disk": [v.model_dump(mode="json") for v in on_disk],
    }


# =============================================================================
# Deletion Router
# =============================================================================

deletion_router = APIRouter(prefix="/local-models/delete", tags=["deletion"])


@deletion_router.post("/request", response_model=Dict[str, Any])
def request_deletion(request: VersionIdsRequest, store=Depends(get_store)):
    """Describe what would be deleted and return a confirmation token."""
    result = store.request_deletion(request.version_ids)
    if isinstance(result, Err):
        raise _delete_error(result.error, version_status=404)
    return result.value.model_dump(mode="json")


@deletion_router.post("/confirm", response_model=Dict[str, Any])
def confirm_deletion(request: TokenRequest, store=Depends(get_store)):
    result = store.confirm_single_deletion(request.token)
    if isinstance(result, Err):
        raise _delete_error(result.error)
    return result.value.model_dump(mode="json")


@deletion_router.post("/confirm-batch")
def confirm_batch_deletion(request: TokenRequest, store=Depends(get_store)):
    return _batch_response(store.confirm_deletion(request.token))


@deletion_router.post("/direct")
def delete_directly(request: VersionIdsRequest, store=Depends(get_store)):
    """Delete without a confirmation token."""
    return _batch_response(store.delete_versions(request.version_ids))


@deletion_router.get("/stats", response_model=Dict[str, Any])
def confirmation_stats(store=Depends(get_store)):
    return store.confirmation_stats().model_dump(mode="json")


def create_store_routers() -> List[APIRouter]:
    """
    Create all store routers.

    Returns:
        List of APIRouter instances to be included in FastAPI app
    """
    return [
        local_models_router,
        deletion_router,
    ]


def create_app() -> FastAPI:
    """Standalone application serving the store routers under /api."""
    app = FastAPI(title="Civitai Mirror")
    for router in create_store_routers():
        app.include_router(router, prefix="/api")
    return app
