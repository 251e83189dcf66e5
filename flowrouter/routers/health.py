from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from flowrouter.container import ServiceContainer
from flowrouter.routers.deps import get_container
from flowrouter.services.health_service import STATUS_ERROR, get_system_health

router = APIRouter()


@router.get("/health")
async def health(container: ServiceContainer = Depends(get_container)):
    report = await get_system_health(
        container.connections,
        fallback_store=container.fallback_store,
        schema_cache=container.schema_cache,
        rate_limiter=container.rate_limiter,
        side_effects=container.side_effects,
    )
    status_code = 503 if report["status"] == STATUS_ERROR else 200
    return JSONResponse(status_code=status_code, content=report)
