from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from flowrouter.config import settings
from flowrouter.container import ServiceContainer
from flowrouter.exceptions import RateLimitExceededError, RouterError
from flowrouter.logging_config import get_logger, setup_logging
from flowrouter.routers import health, internal, webhook

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Flowrouter",
    description="Multi-tenant Telegram bot webhook router",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(internal.router)
app.include_router(health.router)


@app.exception_handler(RouterError)
async def router_error_handler(request: Request, exc: RouterError):
    """Map the error taxonomy to HTTP statuses for internal routes."""
    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            extra={"context": {"path": request.url.path, "error": str(exc), "code": exc.code}},
        )
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitExceededError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.code, "message": str(exc)},
        headers=headers,
    )


@app.on_event("startup")
async def start_services() -> None:
    if getattr(app.state, "container", None) is None:
        app.state.container = await ServiceContainer.create(settings)
    logger.info("Flowrouter started", extra={"context": {"serverless": settings.serverless}})


@app.on_event("shutdown")
async def stop_services() -> None:
    container = getattr(app.state, "container", None)
    if container is None:
        return
    await container.shutdown()
    app.state.container = None
