"""
Ledger API Application Factory
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..logging_config import log_action
from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .dependencies import close_ledger_system, get_ledger_system, logger


class RequestLogger:
    """Logs method, path, status and duration of every request"""

    async def __call__(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        log_action(
            logger, "info", f"{request.method} {request.url.path} {response.status_code}",
            action="http_request",
            resource=request.url.path,
            extra={
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2)
            }
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the ledger storage on shutdown"""
    yield
    close_ledger_system()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Ledger Consistency Engine API",
        description="Double-entry ledger with deferred balance validation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(RequestLogger())

    # Include routers
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint; pings storage"""
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            system = get_ledger_system()
            account_count = system.storage.count("accounts")
            audit_events = system.audit_trail.count_events()
        except Exception as e:
            logger.warning(f"Health check failed: {e!r}")
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "timestamp": timestamp,
                    "database": "disconnected",
                    "error": str(e) or type(e).__name__
                }
            )
        return {
            "status": "healthy",
            "timestamp": timestamp,
            "database": "connected",
            "service": "ledger_engine_api",
            "version": __version__,
            "storage": type(system.storage).__name__,
            "accounts": account_count,
            "audit_events": audit_events
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Ledger Consistency Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "accounts": "/accounts",
                "transactions": "/transactions"
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "ledger_engine.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
