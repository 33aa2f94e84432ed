"""
QuoteFlow API - FastAPI application entry point.
"""
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from quoteflow.api import assignments, audit, automation, costs, customers, inquiries, production, quotes
from quoteflow.core.config import settings
from quoteflow.core.errors import WorkflowError
from quoteflow.core.logging import get_logger, setup_logging
from quoteflow.db.session import init_db

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    init_db()
    logger.info(f"{settings.APP_NAME} API starting up (version {settings.APP_VERSION})")
    yield
    logger.info(f"{settings.APP_NAME} API shutting down")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Quote and production order management",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkflowError)
    async def handle_workflow_error(request: Request, exc: WorkflowError):
        if exc.http_status >= 500:
            logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    app.include_router(customers.router)
    app.include_router(inquiries.router)
    app.include_router(assignments.router)
    app.include_router(costs.router)
    app.include_router(quotes.router)
    app.include_router(production.router)
    app.include_router(automation.router)
    app.include_router(audit.router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": settings.APP_VERSION}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
