from typing import Annotated

from fastapi import APIRouter, Depends, Request

from analytics_engine.core import schemas
from analytics_engine.core.security import validate_admin_scope

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("/cache")
async def cache_health(
    request: Request,
    context: Annotated[schemas.SecurityContext, Depends(validate_admin_scope)],
):
    """Admin-only: cache reachability and hit/miss counters."""
    store = request.app.state.cache_store
    cache = request.app.state.orchestrator.executor.cache
    return {
        "redis_reachable": await store.ping(),
        "stats": dict(cache.stats),
    }
