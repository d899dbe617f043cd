"""FastAPI application for the deal workflow service."""

from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from deal_workflow.clients.memory_client import InMemoryDealSource
from deal_workflow.clients.postgres_client import PostgresClient
from deal_workflow.errors import (
    DealWorkflowError,
    NotFoundError,
    StateTransitionError,
    TransientIOError,
    ValidationError,
)
from deal_workflow.repository import DealRepository
from deal_workflow.service import DealEvaluationService

from .config import get_settings
from .routes.deals import router as deals_router
from .routes.health import router as health_router

logger = structlog.get_logger(__name__)


def status_code_for(exc: DealWorkflowError) -> int:
    """HTTP status for a domain error."""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, StateTransitionError):
        return 409
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, TransientIOError):
        return 503
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Pick the data source at startup, release it at shutdown."""
    settings = get_settings()

    postgres: PostgresClient | None = None
    if settings.USE_MEMORY_STORE or not settings.DATABASE_URL:
        source = InMemoryDealSource()
        logger.info("lifespan.startup", store="memory")
    else:
        postgres = PostgresClient(settings.DATABASE_URL)
        await postgres.connect()
        source = DealRepository(postgres)
        logger.info("lifespan.startup", store="postgres")

    # Store on app.state for request handlers
    app.state.postgres = postgres
    app.state.source = source
    app.state.service = DealEvaluationService(source)

    logger.info("lifespan.ready")
    yield

    # Shutdown
    logger.info("lifespan.shutdown")
    if postgres is not None:
        await postgres.close()


app = FastAPI(
    title="deal-workflow",
    description="Packet field resolution, calculated fields, participant gating and deal status",
    lifespan=lifespan,
)


@app.exception_handler(DealWorkflowError)
async def deal_workflow_error_handler(request: Request, exc: DealWorkflowError):
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "api.request_failed",
        path=request.url.path,
        status_code=status_code,
        error=exc.message,
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.message, "error_type": type(exc).__name__, "context": exc.context},
    )


app.include_router(health_router)
app.include_router(deals_router)


def run() -> None:
    """Serve the app with uvicorn (the deal-workflow-api console script)."""
    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
