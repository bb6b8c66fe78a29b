"""
Site API
Thin request/response mapping over the pool manager and orchestrator.
Errors raised by the services are turned into ``{"error": ...}`` responses
by the handlers registered in ``main.py``.
"""
from fastapi import APIRouter, Body, Depends, Query
from typing import Optional
import logging

from ..schemas import CleanupResponse, CreateSiteRequest, CreateSiteResponse, PoolStatus, SiteListResponse
from ..services.pool_manager import PoolManager, get_pool_manager
from ..services.site_orchestrator import SiteOrchestrator, get_site_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sites"])


@router.get("/api/sites", response_model=SiteListResponse)
@router.get("/sites", response_model=SiteListResponse, include_in_schema=False)
async def list_sites(
    source: str = Query("store", pattern="^(store|runtime)$"),
    orchestrator: SiteOrchestrator = Depends(get_site_orchestrator),
):
    """List allocated sites, newest first."""
    sites = await orchestrator.list_sites(source=source)
    return SiteListResponse(sites=sites)


@router.post("/api/site", response_model=CreateSiteResponse)
@router.post("/api/create-site", response_model=CreateSiteResponse)
@router.post("/create-site", response_model=CreateSiteResponse, include_in_schema=False)
@router.post("/site", response_model=CreateSiteResponse, include_in_schema=False)
async def create_site(
    request: Optional[CreateSiteRequest] = Body(None),
    pool: PoolManager = Depends(get_pool_manager),
):
    """Allocate a site from the pool, provisioning one if the pool is empty."""
    username = request.username if request else None
    site = await pool.allocate(username)
    logger.info(f"[API] Site {site.site_id} handed to {username or 'anonymous'}")
    return CreateSiteResponse.from_descriptor(site)


@router.delete("/api/sites/{site_id}")
async def delete_site(
    site_id: str,
    orchestrator: SiteOrchestrator = Depends(get_site_orchestrator),
):
    await orchestrator.destroy_site(site_id)
    return {"success": True}


@router.post("/cleanup", response_model=CleanupResponse)
@router.post("/api/cleanup", response_model=CleanupResponse)
async def cleanup(orchestrator: SiteOrchestrator = Depends(get_site_orchestrator)):
    """Run the reclamation sweep now and wait for it to finish."""
    report = await orchestrator.cleanup_expired()
    return CleanupResponse(report=report.to_dict())


@router.post("/api/reconcile")
async def reconcile(
    prune: bool = False,
    orchestrator: SiteOrchestrator = Depends(get_site_orchestrator),
):
    """Compare store rows with running containers; optionally prune dead rows."""
    report = await orchestrator.reconcile(prune=prune)
    return {"success": True, "report": report.to_dict()}


@router.get("/api/pool", response_model=PoolStatus)
async def pool_status(pool: PoolManager = Depends(get_pool_manager)):
    return await pool.status()


@router.post("/api/pool/refill")
async def refill_pool(pool: PoolManager = Depends(get_pool_manager)):
    task = pool.trigger_refill()
    return {"success": True, "task_id": task.id if task else None}
