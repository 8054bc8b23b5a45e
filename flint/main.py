import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from flint.config import get_settings
from flint.database import SessionLocal, init_db
from flint.dependencies import ProviderContext
from flint.exceptions import (
    CredentialError,
    ErrorCode,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from flint.logging_config import configure_logging
from flint.routers import connections, goals, trading, webhooks

# Configure logging at startup
configure_logging()

logger = logging.getLogger(__name__)

PROVIDER_ERROR_STATUS = {
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.CONNECTION_DISABLED: 409,
    ErrorCode.ALREADY_REGISTERED: 409,
    ErrorCode.MFA_REQUIRED: 409,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.VALIDATION_ERROR: 422,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db()
    context = getattr(app.state, "context", None)
    if context is None:
        context = ProviderContext.build(settings, SessionLocal)
        app.state.context = context
        if context.snaptrade is not None:
            await context.snaptrade.check_api_status()
        if context.scheduler is not None and settings.enable_background_sync:
            context.scheduler.start()
    yield
    await context.aclose()


app = FastAPI(title="Flint", lifespan=lifespan)

# Routers
app.include_router(connections.router, prefix="/connections", tags=["connections"])
app.include_router(trading.router, prefix="/trading", tags=["trading"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(goals.router, prefix="/goals", tags=["goals"])


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc), "field": exc.field})


@app.exception_handler(CredentialError)
async def credential_handler(request: Request, exc: CredentialError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc), "code": "NOT_CONNECTED"})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    status = PROVIDER_ERROR_STATUS.get(exc.code, 502)
    logger.error(
        "%s %s failed with %s (correlation %s)",
        request.method,
        request.url.path,
        exc.code.value,
        exc.correlation_id,
    )
    headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
    return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}
